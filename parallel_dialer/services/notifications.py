"""Per-user event channel pushing dialer updates to connected UI clients."""
import logging
import time
from typing import Any, Dict, Set

from fastapi import WebSocket

logger = logging.getLogger(__name__)

# Event names understood by the dialer UI
CALL_STARTED = "parallel_call_started"
CALL_CONNECTED = "parallel_call_connected"
CALL_STATUS = "parallel_call_status"
CALL_ENDED = "parallel_call_ended"
PRIMARY_CONNECTED = "parallel_dialer_primary_connected"
CALL_ON_HOLD = "parallel_dialer_call_on_hold"
QUEUE_PROMOTED = "parallel_dialer_queue_promoted"
SESSION_ENDED = "parallel_dialer_session_ended"
AMD_RESULT = "parallel_dialer_amd_result"
CONFERENCE_READY = "conference-ready"
CONFERENCE_STATUS = "conference_status"


class NotificationHub:
    """Tracks WebSocket connections per user and fans events out to them."""

    def __init__(self):
        self._connections: Dict[int, Set[WebSocket]] = {}

    async def connect(self, user_id: int, websocket: WebSocket) -> None:
        await websocket.accept()
        self._connections.setdefault(user_id, set()).add(websocket)
        logger.info(f"[EVENTS] Client connected for user {user_id}")

    def disconnect(self, user_id: int, websocket: WebSocket) -> None:
        clients = self._connections.get(user_id)
        if not clients:
            return
        clients.discard(websocket)
        if not clients:
            del self._connections[user_id]
        logger.info(f"[EVENTS] Client disconnected for user {user_id}")

    def connection_count(self, user_id: int) -> int:
        return len(self._connections.get(user_id, ()))

    async def broadcast(self, user_id: int, event: str, data: Dict[str, Any]) -> None:
        """Send an event to every client of ``user_id``. Never raises."""
        payload = {"type": event, "data": {**data, "timestamp": int(time.time() * 1000)}}
        clients = list(self._connections.get(user_id, ()))
        for websocket in clients:
            try:
                await websocket.send_json(payload)
            except Exception as e:
                logger.warning(
                    f"[EVENTS] Dropping client for user {user_id} after send failure: "
                    f"{type(e).__name__}: {e}"
                )
                self.disconnect(user_id, websocket)
        logger.debug(f"[EVENTS] Broadcast '{event}' to {len(clients)} client(s) for user {user_id}")
