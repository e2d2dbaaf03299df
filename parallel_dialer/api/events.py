"""WebSocket channel pushing dialer events to the agent's UI."""
import logging
from typing import Optional

from fastapi import APIRouter, Depends, Query, WebSocket, WebSocketDisconnect, status

from parallel_dialer.core.dependencies import Dialer, get_dialer
from parallel_dialer.core.errors import InvalidTokenError
from parallel_dialer.core.logging import security_logger
from parallel_dialer.core.security import API_PURPOSE, verify_token

router = APIRouter()
logger = logging.getLogger(__name__)


@router.websocket("/ws/dialer")
async def dialer_events(
    websocket: WebSocket,
    token: Optional[str] = Query(None),
    dialer: Dialer = Depends(get_dialer),
):
    """
    Stream ``{"type": ..., "data": ...}`` frames for the token's user.

    Messages sent by the client are read and ignored; they only keep the
    connection alive.
    """
    try:
        user_id = verify_token(token or "", API_PURPOSE)
    except InvalidTokenError as e:
        security_logger.warning(f"[SECURITY] Rejected event channel connection - reason: {e}")
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return

    await dialer.notifier.connect(user_id, websocket)
    try:
        while True:
            await websocket.receive_text()
    except WebSocketDisconnect:
        logger.debug(f"[EVENTS] WebSocket closed by client for user {user_id}")
    finally:
        dialer.notifier.disconnect(user_id, websocket)
