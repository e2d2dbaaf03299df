"""Parallel dialer command API."""
import logging
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from parallel_dialer.core.dependencies import Dialer, get_base_url, get_current_user, get_dialer
from parallel_dialer.db.database import get_db
from parallel_dialer.services.dialer.initiator import DialRequest
from parallel_dialer.services.notifications import CALL_CONNECTED, CALL_ENDED
from parallel_dialer.services.persistence.calls import CallAttemptService
from parallel_dialer.services.persistence.events import WebhookEventLedger
from parallel_dialer.services.telephony.urls import CallbackUrls

router = APIRouter(prefix="/api/dialer")
logger = logging.getLogger(__name__)


class CallReference(BaseModel):
    """A call the client is reporting on."""
    call_sid: str = Field(alias="callSid")
    line_id: Optional[str] = Field(default=None, alias="lineId")
    reason: Optional[str] = None

    model_config = {"populate_by_name": True}


def callback_urls(request: Request, user_id: int) -> CallbackUrls:
    return CallbackUrls.for_user(get_base_url(request), user_id)


@router.post("/parallel-call")
async def start_parallel_call(
    body: DialRequest,
    request: Request,
    user_id: int = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    dialer: Dialer = Depends(get_dialer),
):
    """Place one outbound call on one dialer line."""
    attempt = await dialer.initiator.initiate(db, user_id, body, callback_urls(request, user_id))
    return {
        "success": True,
        "attemptId": attempt.id,
        "callSid": attempt.call_sid,
        "lineId": attempt.line_id,
        "status": attempt.status,
    }


@router.post("/call-connected")
async def call_connected(
    body: CallReference,
    user_id: int = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    dialer: Dialer = Depends(get_dialer),
):
    """The agent's client reports that a call was connected."""
    attempt = await CallAttemptService(db).get_for_user(user_id, body.call_sid)
    if attempt is None:
        raise HTTPException(status_code=404, detail="Call not found")
    await dialer.notifier.broadcast(user_id, CALL_CONNECTED, {
        "callSid": attempt.call_sid,
        "lineId": attempt.line_id,
        "name": attempt.contact_name,
        "phone": attempt.phone,
    })
    return {"success": True}


@router.post("/call-rejected")
async def call_rejected(
    body: CallReference,
    request: Request,
    user_id: int = Depends(get_current_user),
    dialer: Dialer = Depends(get_dialer),
):
    """The agent's client rejected a call: hang it up and move the queue on."""
    result = await dialer.conference.hangup(user_id, body.call_sid, callback_urls(request, user_id))
    await dialer.notifier.broadcast(user_id, CALL_ENDED, {
        "callSid": body.call_sid,
        "lineId": result["lineId"],
        "status": "rejected",
        "reason": body.reason or "rejected_by_agent",
    })
    return {"success": True, **result}


@router.post("/hangup")
async def hangup_call(
    body: CallReference,
    request: Request,
    user_id: int = Depends(get_current_user),
    dialer: Dialer = Depends(get_dialer),
):
    """Hang up a customer call; the next held call is promoted if it was the primary."""
    result = await dialer.conference.hangup(user_id, body.call_sid, callback_urls(request, user_id))
    return {"success": True, **result}


@router.post("/conference/start")
async def start_conference(
    request: Request,
    user_id: int = Depends(get_current_user),
    dialer: Dialer = Depends(get_dialer),
):
    descriptor = await dialer.conference.start_session(user_id, callback_urls(request, user_id))
    return {"success": True, "conference": descriptor.model_dump(mode="json")}


@router.post("/conference/end")
async def end_conference(
    user_id: int = Depends(get_current_user),
    dialer: Dialer = Depends(get_dialer),
):
    """Stop dialing: end the conference, cancel ringing lines and clear the queue."""
    summary = await dialer.conference.end_session(user_id, reason="agent_stopped")
    return {"success": True, **summary}


@router.get("/conference/status")
async def conference_status(
    user_id: int = Depends(get_current_user),
    dialer: Dialer = Depends(get_dialer),
):
    descriptor = await dialer.conference.get_active(user_id)
    return {
        "active": descriptor is not None,
        "conference": descriptor.model_dump(mode="json") if descriptor else None,
    }


@router.post("/clear-primary-call")
async def clear_primary_call(
    user_id: int = Depends(get_current_user),
    dialer: Dialer = Depends(get_dialer),
):
    """Clear the primary marker without promoting a held call."""
    cleared = await dialer.queue.clear_primary(user_id)
    logger.info(f"[QUEUE] Primary cleared by user {user_id}: {cleared.line_id if cleared else None}")
    return {
        "success": True,
        "cleared": cleared is not None,
        "primary": cleared.model_dump(mode="json") if cleared else None,
    }


@router.get("/queue")
async def queue_snapshot(
    user_id: int = Depends(get_current_user),
    dialer: Dialer = Depends(get_dialer),
):
    snapshot = await dialer.queue.snapshot(user_id)
    descriptor = await dialer.conference.get_active(user_id)
    snapshot["conference"] = descriptor.model_dump(mode="json") if descriptor else None
    return snapshot


@router.get("/verify/resource-leaks")
async def verify_resource_leaks(
    user_id: int = Depends(get_current_user),
    dialer: Dialer = Depends(get_dialer),
):
    return await dialer.verification.resource_leaks(user_id)


@router.post("/cleanup/stale-calls")
async def cleanup_stale_calls(
    user_id: int = Depends(get_current_user),
    dialer: Dialer = Depends(get_dialer),
):
    return await dialer.verification.cleanup_stale_calls(user_id)


@router.post("/cleanup/markers")
async def cleanup_markers(
    request: Request,
    user_id: int = Depends(get_current_user),
    dialer: Dialer = Depends(get_dialer),
):
    return await dialer.verification.heal_markers(user_id, callback_urls(request, user_id))


@router.get("/verify/amd-performance")
async def verify_amd_performance(
    since: Optional[datetime] = Query(None),
    user_id: int = Depends(get_current_user),
    dialer: Dialer = Depends(get_dialer),
):
    return await dialer.verification.amd_performance(user_id, since=since)


@router.get("/verify/disposition-accuracy")
async def verify_disposition_accuracy(
    since: Optional[datetime] = Query(None),
    user_id: int = Depends(get_current_user),
    dialer: Dialer = Depends(get_dialer),
):
    return await dialer.verification.disposition_accuracy(user_id, since=since)


@router.get("/webhook-failures")
async def webhook_failures(
    limit: int = Query(100, ge=1, le=1000),
    user_id: int = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    dialer: Dialer = Depends(get_dialer),
):
    """Webhook callbacks and background jobs that failed."""
    events = await WebhookEventLedger(db).list_failures(user_id, limit=limit)
    return {
        "webhooks": [
            {
                "id": e.id,
                "kind": e.kind,
                "callSid": e.call_sid,
                "error": e.error,
                "createdAt": e.created_at.isoformat() if e.created_at else None,
            }
            for e in events
        ],
        "jobs": [
            {
                "name": f.name,
                "error": f.error,
                "attempts": f.attempts,
                "failedAt": f.failed_at.isoformat(),
            }
            for f in dialer.jobs.failures
        ],
    }
