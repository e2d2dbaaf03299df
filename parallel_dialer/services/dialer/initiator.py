"""Dial initiator: places one outbound call on one dialer line."""
import logging
import re
from typing import Optional

from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession
from twilio.base.exceptions import TwilioRestException

from parallel_dialer.core.errors import DialError
from parallel_dialer.db.models import CallAttempt
from parallel_dialer.services.dialer.amd import SENSITIVITIES, amd_params
from parallel_dialer.services.markers.base import line_index
from parallel_dialer.services.notifications import CALL_STARTED, NotificationHub
from parallel_dialer.services.persistence.calls import CallAttemptService
from parallel_dialer.services.telephony.client import TelephonyClient, classify_placement_error
from parallel_dialer.services.telephony.urls import CallbackUrls

logger = logging.getLogger(__name__)

E164_PATTERN = re.compile(r"^\+[1-9]\d{1,14}$")


class DialRequest(BaseModel):
    """Request to place a parallel call on one line."""

    to: str
    line_id: str = Field(alias="lineId")
    contact_id: Optional[int] = Field(default=None, alias="contactId")
    contact_name: Optional[str] = Field(default=None, alias="contactName")
    amd_enabled: bool = Field(default=True, alias="amdEnabled")
    amd_timeout: int = Field(default=30, alias="amdTimeout", ge=2, le=60)
    amd_sensitivity: str = Field(default="standard", alias="amdSensitivity")

    model_config = {"populate_by_name": True}


def normalize_phone(phone: str) -> str:
    """Strip formatting characters from a dialed number."""
    return re.sub(r"[\s\-().]", "", phone or "")


class DialInitiator:
    """Places calls and records their CallAttempt rows."""

    def __init__(self, telephony: TelephonyClient, notifier: NotificationHub, max_lines: int = 10):
        self.telephony = telephony
        self.notifier = notifier
        self.max_lines = max_lines

    def validate(self, request: DialRequest) -> str:
        """Return the normalized destination or raise DialError."""
        index = line_index(request.line_id)
        if index is None or index >= self.max_lines:
            raise DialError(
                "INVALID_LINE",
                f"Line must be one of line-0 .. line-{self.max_lines - 1}.",
                status_code=400,
                line_id=request.line_id,
            )
        to = normalize_phone(request.to)
        if not E164_PATTERN.match(to):
            raise DialError(
                "INVALID_PHONE_NUMBER",
                "Phone number is not formatted correctly. Use E.164 format (+1234567890).",
                status_code=400,
                line_id=request.line_id,
            )
        if request.amd_sensitivity not in SENSITIVITIES:
            raise DialError(
                "INVALID_AMD_SENSITIVITY",
                f"AMD sensitivity must be one of: {', '.join(SENSITIVITIES)}.",
                status_code=400,
                line_id=request.line_id,
            )
        return to

    async def initiate(
        self,
        db: AsyncSession,
        user_id: int,
        request: DialRequest,
        urls: CallbackUrls,
    ) -> CallAttempt:
        """Place one outbound call on ``request.line_id``.

        Raises:
            DialError: validation or provider failure, with a distinct code
        """
        to = self.validate(request)
        calls = CallAttemptService(db)
        attempt = await calls.create_attempt(
            user_id=user_id,
            line_id=request.line_id,
            phone=to,
            contact_id=request.contact_id,
            contact_name=request.contact_name,
            amd_enabled=request.amd_enabled,
            amd_timeout=request.amd_timeout,
            amd_sensitivity=request.amd_sensitivity,
        )

        options = amd_params(
            request.amd_enabled,
            request.amd_timeout,
            request.amd_sensitivity,
            async_callback_url=urls.amd_status_url(),
        )
        try:
            placed = await self.telephony.place_call(
                to=to,
                url=urls.voice_url(request.line_id, request.contact_name),
                status_callback=urls.status_url(),
                amd_options=options,
            )
        except TwilioRestException as e:
            error = classify_placement_error(e, request.line_id)
            await calls.mark_placement_failed(attempt.id, error.code)
            logger.error(
                f"[DIAL] Placement failed on {request.line_id} for user {user_id} - "
                f"code: {error.code}, provider code: {e.code}, message: {e.msg}"
            )
            raise error

        attempt = await calls.attach_call_sid(attempt.id, placed.sid)
        logger.info(
            f"[DIAL] Placed {request.line_id} for user {user_id} - CallSid: {placed.sid}, "
            f"AMD: {request.amd_enabled} ({request.amd_sensitivity})"
        )
        await self.notifier.broadcast(user_id, CALL_STARTED, {
            "callSid": placed.sid,
            "lineId": request.line_id,
            "phone": to,
            "contactId": request.contact_id,
            "contactName": request.contact_name,
            "amdEnabled": request.amd_enabled,
        })
        return attempt
