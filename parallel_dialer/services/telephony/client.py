"""Telephony provider client (Twilio REST)."""
import asyncio
import logging
from dataclasses import dataclass
from functools import partial
from typing import Any, Dict, List, Optional

from twilio.base.exceptions import TwilioRestException
from twilio.rest import Client

from parallel_dialer.core.errors import DialError

logger = logging.getLogger(__name__)

# Provider answers that mean "the thing you tried to end is already gone"
ALREADY_GONE_CODES = {20404, 21220}

CALL_STATUS_EVENTS = ["initiated", "ringing", "answered", "completed"]


@dataclass
class PlacedCall:
    """Result of a successful call placement."""

    sid: str
    status: str


def is_already_gone(exc: TwilioRestException) -> bool:
    return exc.status == 404 or exc.code in ALREADY_GONE_CODES


def classify_placement_error(exc: Exception, line_id: Optional[str] = None) -> DialError:
    """Map a provider error from call placement to a caller-visible DialError."""
    code = getattr(exc, "code", None)
    status = getattr(exc, "status", None)

    if code == 21219:
        return DialError(
            "TRIAL_ACCOUNT_RESTRICTION",
            "Trial account can only call verified numbers. Verify this number or upgrade the account.",
            status_code=403,
            provider_code=code,
            line_id=line_id,
        )
    if code == 20429 or status == 429:
        return DialError(
            "RATE_LIMIT_EXCEEDED",
            "Rate limit exceeded. Reduce the number of parallel lines or slow down call initiation.",
            status_code=429,
            provider_code=code,
            line_id=line_id,
        )
    if code == 21217:
        return DialError(
            "INVALID_PHONE_NUMBER",
            "Phone number is not formatted correctly. Use E.164 format (+1234567890).",
            status_code=400,
            provider_code=code,
            line_id=line_id,
        )
    if code == 21614:
        return DialError(
            "INVALID_TO_NUMBER",
            "'To' number is not a valid phone number.",
            status_code=400,
            provider_code=code,
            line_id=line_id,
        )
    return DialError(
        "PROVIDER_ERROR",
        f"Telephony provider rejected the call: {getattr(exc, 'msg', None) or exc}",
        status_code=502,
        provider_code=code,
        line_id=line_id,
    )


class TelephonyClient:
    """Async facade over the synchronous Twilio REST client.

    Blocking SDK calls run in the default executor so a slow provider request
    only suspends the handler that made it.
    """

    def __init__(
        self,
        account_sid: str,
        auth_token: str,
        phone_number: str,
        client: Optional[Client] = None,
    ):
        self.account_sid = account_sid
        self.auth_token = auth_token
        self.phone_number = phone_number
        self._client = client

    @property
    def client(self) -> Client:
        """Lazy-load Twilio client."""
        if self._client is None:
            self._client = Client(self.account_sid, self.auth_token)
        return self._client

    async def _run(self, fn, *args, **kwargs) -> Any:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, partial(fn, *args, **kwargs))

    async def place_call(
        self,
        to: str,
        url: str,
        status_callback: str,
        amd_options: Optional[Dict[str, Any]] = None,
        from_: Optional[str] = None,
    ) -> PlacedCall:
        """Place an outbound call. Provider errors propagate as TwilioRestException."""
        params: Dict[str, Any] = {
            "to": to,
            "from_": from_ or self.phone_number,
            "url": url,
            "method": "POST",
            "status_callback": status_callback,
            "status_callback_event": CALL_STATUS_EVENTS,
            "status_callback_method": "POST",
        }
        if amd_options:
            params.update(amd_options)
        call = await self._run(self.client.calls.create, **params)
        logger.info(f"[TELEPHONY] Placed call {call.sid} to {to} (status: {call.status})")
        return PlacedCall(sid=call.sid, status=call.status)

    async def _update_call(self, call_sid: str, **params: Any) -> bool:
        try:
            await self._run(self.client.calls(call_sid).update, **params)
            return True
        except TwilioRestException as e:
            if is_already_gone(e):
                logger.info(
                    f"[TELEPHONY] Call {call_sid} already ended, update {params} not needed "
                    f"(code: {e.code})"
                )
                return False
            raise

    async def hangup_call(self, call_sid: str) -> bool:
        """Hang up a call. Returns False if the call was already gone."""
        return await self._update_call(call_sid, status="completed")

    async def cancel_call(self, call_sid: str) -> bool:
        """Cancel a queued or ringing call. Returns False if it was already gone."""
        return await self._update_call(call_sid, status="canceled")

    async def redirect_call(self, call_sid: str, url: str) -> bool:
        """Point a live call at new TwiML. Returns False if the call was already gone."""
        return await self._update_call(call_sid, url=url, method="POST")

    async def end_conference(self, conference_name: str) -> bool:
        """End every in-progress conference with this friendly name.

        Returns False when no such conference was running.
        """
        conferences: List[Any] = await self._run(
            self.client.conferences.list,
            friendly_name=conference_name,
            status="in-progress",
            limit=5,
        )
        ended = False
        for conference in conferences:
            try:
                await self._run(
                    self.client.conferences(conference.sid).update, status="completed"
                )
                ended = True
            except TwilioRestException as e:
                if not is_already_gone(e):
                    raise
                logger.info(f"[TELEPHONY] Conference {conference.sid} already ended")
        return ended
