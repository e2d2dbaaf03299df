"""Twilio voice webhook endpoints for the parallel dialer."""
import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from fastapi.responses import Response
from pydantic import ValidationError
from sqlalchemy.ext.asyncio import AsyncSession
from twilio.request_validator import RequestValidator

from parallel_dialer.core.config import settings
from parallel_dialer.core.dependencies import Dialer, get_base_url, get_dialer
from parallel_dialer.core.errors import InvalidTokenError, WebhookAttributionError
from parallel_dialer.core.logging import security_logger
from parallel_dialer.core.security import WEBHOOK_PURPOSE, verify_token
from parallel_dialer.db.database import get_db
from parallel_dialer.services.dialer.events import (
    AMD_RESULT,
    CALL_STATUS,
    CONFERENCE_STATUS,
    DIAL_STATUS,
    VOICE_CONNECT,
    parse_event,
)
from parallel_dialer.services.dialer.conference import owns_conference
from parallel_dialer.services.telephony import twiml
from parallel_dialer.services.telephony.urls import CallbackUrls

logger = logging.getLogger(__name__)


async def verify_twilio_signature(request: Request) -> None:
    """Reject requests without a valid X-Twilio-Signature when validation is on."""
    if not settings.validate_twilio_signature:
        return

    if settings.base_url:
        url = settings.base_url.rstrip("/") + request.url.path
        if request.url.query:
            url = f"{url}?{request.url.query}"
    else:
        url = str(request.url)

    form = await request.form()
    signature = request.headers.get("X-Twilio-Signature", "")
    validator = RequestValidator(settings.twilio_auth_token)
    if not validator.validate(url, dict(form), signature):
        security_logger.warning(
            f"[SECURITY] Invalid Twilio signature on {request.url.path} - "
            f"Client: {request.client.host if request.client else 'unknown'}"
        )
        raise HTTPException(status_code=403, detail="Invalid signature")


router = APIRouter(prefix="/voice", dependencies=[Depends(verify_twilio_signature)])


def xml_response(content: Optional[str]) -> Response:
    if content is None:
        return Response(status_code=200)
    return Response(content=content, media_type="application/xml")


async def handle_provider_event(kind: str, request: Request, db: AsyncSession, dialer: Dialer) -> Response:
    """Parse a callback into its typed event and hand it to the event router."""
    form = await request.form()
    try:
        event = parse_event(kind, form, request.query_params)
    except ValidationError as e:
        logger.warning(f"[WEBHOOK] Malformed {kind} callback: {e.error_count()} error(s)")
        raise HTTPException(status_code=400, detail=f"Malformed {kind} callback")

    try:
        content = await dialer.router.dispatch(db, event, get_base_url(request))
    except WebhookAttributionError:
        raise HTTPException(status_code=403, detail="Forbidden")
    return xml_response(content)


def webhook_user(token: Optional[str], path: str) -> int:
    """User id from a webhook token, or 403."""
    try:
        return verify_token(token or "", WEBHOOK_PURPOSE)
    except InvalidTokenError as e:
        security_logger.warning(f"[SECURITY] Rejected {path} - reason: {e}")
        raise HTTPException(status_code=403, detail="Forbidden")


def require_own_conference(user_id: int, conference: str, path: str) -> None:
    if not owns_conference(user_id, conference):
        security_logger.warning(
            f"[SECURITY] Rejected {path} - user {user_id} does not own conference {conference}"
        )
        raise HTTPException(status_code=403, detail="Forbidden")


@router.post("/parallel-dialer")
async def voice_connect(
    request: Request,
    db: AsyncSession = Depends(get_db),
    dialer: Dialer = Depends(get_dialer),
):
    """
    Handle an answered dialer call.

    Returns TwiML that bridges the call, holds it, or hangs up on a machine.
    """
    return await handle_provider_event(VOICE_CONNECT, request, db, dialer)


@router.post("/amd-status")
async def amd_status(
    request: Request,
    db: AsyncSession = Depends(get_db),
    dialer: Dialer = Depends(get_dialer),
):
    """Handle the asynchronous answering-machine detection verdict."""
    return await handle_provider_event(AMD_RESULT, request, db, dialer)


@router.post("/dial-status")
async def dial_status(
    request: Request,
    db: AsyncSession = Depends(get_db),
    dialer: Dialer = Depends(get_dialer),
):
    """Handle the end of a <Dial>. Always answers with <Hangup/>."""
    return await handle_provider_event(DIAL_STATUS, request, db, dialer)


@router.post("/conference-status")
async def conference_status(
    request: Request,
    db: AsyncSession = Depends(get_db),
    dialer: Dialer = Depends(get_dialer),
):
    return await handle_provider_event(CONFERENCE_STATUS, request, db, dialer)


@router.post("/status")
async def call_status(
    request: Request,
    db: AsyncSession = Depends(get_db),
    dialer: Dialer = Depends(get_dialer),
):
    """
    Handle call status updates from Twilio.

    Terminal statuses end the call and promote past it if it was the primary.
    """
    return await handle_provider_event(CALL_STATUS, request, db, dialer)


@router.post("/conference/join-agent")
async def join_agent(
    request: Request,
    token: Optional[str] = Query(None),
    conference: str = Query(...),
):
    """TwiML for the agent's own leg of the dialing session conference."""
    user_id = webhook_user(token, request.url.path)
    require_own_conference(user_id, conference, request.url.path)
    logger.info(f"[CONFERENCE] Agent {user_id} joining {conference}")
    urls = CallbackUrls.for_user(get_base_url(request), user_id)
    return xml_response(twiml.agent_conference_twiml(conference, urls.conference_status_url()))


@router.post("/queue/join-conference")
async def queue_join_conference(
    request: Request,
    token: Optional[str] = Query(None),
    conference: str = Query(...),
    lineId: str = Query(...),
):
    """TwiML for a promoted held call moving into the conference."""
    user_id = webhook_user(token, request.url.path)
    require_own_conference(user_id, conference, request.url.path)
    logger.info(f"[QUEUE] {lineId} joining {conference} for user {user_id}")
    urls = CallbackUrls.for_user(get_base_url(request), user_id)
    return xml_response(
        twiml.queue_join_twiml(
            conference,
            lineId,
            urls.dial_status_url(),
            urls.conference_status_url(),
        )
    )
