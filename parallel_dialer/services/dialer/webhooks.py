"""Webhook event router: attribution, de-duplication and dispatch of provider callbacks."""
import logging
from typing import Awaitable, Callable, Dict, Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from parallel_dialer.core.errors import InvalidTokenError, WebhookAttributionError
from parallel_dialer.core.logging import security_logger
from parallel_dialer.core.security import WEBHOOK_PURPOSE, verify_token
from parallel_dialer.services.dialer.amd import AmdResult, classify_answered_by
from parallel_dialer.services.dialer.conference import ConferenceController
from parallel_dialer.services.dialer.disposition import infer_disposition
from parallel_dialer.services.dialer.events import (
    AMD_RESULT,
    CALL_STATUS,
    CONFERENCE_STATUS,
    DIAL_STATUS,
    VOICE_CONNECT,
    AmdResultEvent,
    CallStatusEvent,
    ConferenceStatusEvent,
    DialStatusEvent,
    ProviderEvent,
    VoiceConnectEvent,
)
from parallel_dialer.services.dialer.queue import QueueManager
from parallel_dialer.services.notifications import (
    AMD_RESULT as AMD_RESULT_EVENT,
    CALL_ENDED,
    CALL_STATUS as CALL_STATUS_EVENT,
    NotificationHub,
)
from parallel_dialer.services.persistence.calls import CallAttemptService
from parallel_dialer.services.persistence.events import WebhookEventLedger
from parallel_dialer.services.tasks import BackgroundJobQueue
from parallel_dialer.services.telephony import twiml
from parallel_dialer.services.telephony.client import TelephonyClient
from parallel_dialer.services.telephony.urls import CallbackUrls

logger = logging.getLogger(__name__)

Handler = Callable[[AsyncSession, int, ProviderEvent, CallbackUrls], Awaitable[Optional[str]]]


class WebhookEventRouter:
    """Routes typed provider callbacks to their handlers.

    Handlers return TwiML for the provider, or None for an empty 200.
    """

    def __init__(
        self,
        queue: QueueManager,
        conference: ConferenceController,
        telephony: TelephonyClient,
        notifier: NotificationHub,
        jobs: BackgroundJobQueue,
        session_factory: async_sessionmaker,
        admit_unknown_answers: bool = True,
        cancel_ringing_on_human: bool = False,
        hold_message: str = "",
        hold_music_url: str = "",
        greeting_url: str = "",
        auto_record: bool = True,
    ):
        self.queue = queue
        self.conference = conference
        self.telephony = telephony
        self.notifier = notifier
        self.jobs = jobs
        self.session_factory = session_factory
        self.admit_unknown_answers = admit_unknown_answers
        self.cancel_ringing_on_human = cancel_ringing_on_human
        self.hold_message = hold_message
        self.hold_music_url = hold_music_url
        self.greeting_url = greeting_url
        self.auto_record = auto_record
        self._handlers: Dict[str, Handler] = {
            VOICE_CONNECT: self.handle_voice_connect,
            AMD_RESULT: self.handle_amd_result,
            DIAL_STATUS: self.handle_dial_status,
            CONFERENCE_STATUS: self.handle_conference_status,
            CALL_STATUS: self.handle_call_status,
        }

    # Attribution

    async def attribute(self, db: AsyncSession, event: ProviderEvent) -> int:
        """Resolve the user a callback belongs to.

        Raises:
            WebhookAttributionError: no valid token and no owning call record,
                or a token that disagrees with the call record's owner
        """
        token_user: Optional[int] = None
        if event.token:
            try:
                token_user = verify_token(event.token, WEBHOOK_PURPOSE)
            except InvalidTokenError as e:
                raise WebhookAttributionError(f"Invalid webhook token: {e}")

        attempt = await CallAttemptService(db).get_by_sid(event.call_sid)
        if attempt is not None:
            if token_user is not None and attempt.user_id != token_user:
                raise WebhookAttributionError(
                    f"Token user {token_user} does not own call {event.call_sid}"
                )
            return attempt.user_id

        if token_user is None:
            raise WebhookAttributionError(f"No token and no call record for {event.call_sid}")
        return token_user

    # Dispatch

    def fallback_response(self, event: ProviderEvent) -> Optional[str]:
        """What the provider gets when processing failed or was skipped."""
        if event.kind == VOICE_CONNECT:
            return twiml.error_twiml()
        if event.kind == DIAL_STATUS:
            return twiml.hangup_twiml()
        return None

    async def dispatch(self, db: AsyncSession, event: ProviderEvent, base_url: str) -> Optional[str]:
        """Attribute, de-duplicate and handle one callback.

        Attribution failures propagate. Any other failure is recorded on the
        ledger and answered with the fallback response.
        """
        try:
            user_id = await self.attribute(db, event)
        except WebhookAttributionError as e:
            security_logger.warning(
                f"[SECURITY] Rejected {event.kind} callback - CallSid: {event.call_sid}, reason: {e}"
            )
            raise

        ledger = WebhookEventLedger(db)
        record = await ledger.record(event.event_key(), event.kind, user_id, event.call_sid)
        if record is None and event.kind != VOICE_CONNECT:
            # Duplicate delivery; voice-connect re-renders from current state instead
            return self.fallback_response(event)

        urls = CallbackUrls.for_user(base_url, user_id)
        try:
            # Expires a conference that outlived its TTL before anything reads it
            await self.conference.get_active(user_id)
            response = await self._handlers[event.kind](db, user_id, event, urls)
        except Exception as e:
            logger.error(
                f"[WEBHOOK] {event.kind} handler failed - CallSid: {event.call_sid}, "
                f"Error: {type(e).__name__}: {e}",
                exc_info=True,
            )
            if record is not None:
                await ledger.mark_failed(record, f"{type(e).__name__}: {e}")
            return self.fallback_response(event)

        if record is not None:
            await ledger.mark_processed(record)
        return response

    # TwiML helpers

    def _hold(self) -> str:
        return twiml.hold_twiml(self.hold_message, self.hold_music_url, self.greeting_url)

    async def _bridge(self, user_id: int, call_sid: str, line_id: str, name: str, urls: CallbackUrls) -> str:
        conference = await self.conference.get_active(user_id)
        if conference is not None:
            return twiml.conference_bridge_twiml(
                conference.conference_name,
                agent_present=conference.conference_started,
                dial_status_url=urls.dial_status_url(),
                conference_status_url=urls.conference_status_url(),
                participant_label=line_id,
                wait_url=self.hold_music_url,
                record=self.auto_record,
                greeting_url=self.greeting_url,
            )
        return twiml.direct_client_twiml(
            identity=self.conference.agent_identity(user_id),
            caller_id=self.telephony.phone_number,
            dial_status_url=urls.dial_status_url(),
            status_url=urls.status_url(),
            parameters={"lineId": line_id, "callSid": call_sid, "name": name},
            record=self.auto_record,
            greeting_url=self.greeting_url,
        )

    # Handlers

    async def handle_voice_connect(
        self, db: AsyncSession, user_id: int, event: VoiceConnectEvent, urls: CallbackUrls
    ) -> str:
        calls = CallAttemptService(db)
        attempt = await calls.get_by_sid(event.call_sid)
        line_id = event.line_id or (attempt.line_id if attempt else None)
        if not line_id:
            logger.warning(f"[VOICE CONNECT] No line for call {event.call_sid}, hanging up")
            return twiml.error_twiml()
        name = event.name or (attempt.contact_name if attempt else None) or "Unknown"
        phone = attempt.phone if attempt else event.to_number

        logger.info(
            f"[VOICE CONNECT] {line_id} answered - CallSid: {event.call_sid}, "
            f"AnsweredBy: {event.answered_by}"
        )

        primary = await self.queue.store.get_primary(user_id)
        if primary is not None and primary.call_sid == event.call_sid:
            return await self._bridge(user_id, event.call_sid, line_id, name, urls)
        held = await self.queue.store.get_secondary(user_id, line_id)
        if held is not None and held.call_sid == event.call_sid:
            return self._hold()

        amd = classify_answered_by(event.answered_by)
        if event.answered_by:
            await calls.record_amd_result(event.call_sid, event.answered_by, amd.value)
        if amd.is_non_human:
            await self._announce_amd(user_id, event.call_sid, line_id, amd, event.answered_by)
            logger.info(f"[VOICE CONNECT] {amd.value} on {line_id}, hanging up - CallSid: {event.call_sid}")
            return twiml.hangup_twiml()

        if amd == AmdResult.UNKNOWN:
            awaiting_verdict = not event.answered_by and attempt is not None and attempt.amd_enabled
            if awaiting_verdict:
                # The async AMD callback decides; keep the caller on hold meanwhile
                logger.info(f"[VOICE CONNECT] Awaiting AMD verdict on {line_id} - CallSid: {event.call_sid}")
                return self._hold()
            if not self.admit_unknown_answers:
                return twiml.hangup_twiml()

        await calls.update_status(event.call_sid, "in-progress")
        result = await self.queue.admit(user_id, line_id, event.call_sid, name, phone)
        if result.is_primary:
            return await self._bridge(user_id, event.call_sid, line_id, name, urls)
        return self._hold()

    async def handle_amd_result(
        self, db: AsyncSession, user_id: int, event: AmdResultEvent, urls: CallbackUrls
    ) -> None:
        calls = CallAttemptService(db)
        amd = classify_answered_by(event.answered_by)
        attempt = await calls.record_amd_result(
            event.call_sid, event.answered_by, amd.value, event.machine_detection_duration
        )
        line_id = attempt.line_id if attempt else None
        await self._announce_amd(user_id, event.call_sid, line_id, amd, event.answered_by)

        if amd.is_non_human or (amd == AmdResult.UNKNOWN and not self.admit_unknown_answers):
            logger.info(f"[AMD] {amd.value} on {line_id}, hanging up - CallSid: {event.call_sid}")
            await self.telephony.hangup_call(event.call_sid)
            return None

        if attempt is None:
            logger.warning(f"[AMD] No call record for {event.call_sid}, cannot admit")
            return None

        name = attempt.contact_name or "Unknown"
        await calls.update_status(event.call_sid, "in-progress")
        result = await self.queue.admit(user_id, attempt.line_id, event.call_sid, name, attempt.phone)
        if result.is_primary:
            # The call is playing hold audio; re-fetching the voice URL bridges it
            redirected = await self.telephony.redirect_call(
                event.call_sid, urls.voice_url(attempt.line_id, name)
            )
            if not redirected:
                await self.queue.release_and_promote(user_id, event.call_sid, urls)

        if amd == AmdResult.HUMAN and self.cancel_ringing_on_human:
            self.jobs.enqueue(
                f"cancel-siblings:{event.call_sid}",
                lambda: self.cancel_sibling_lines(user_id, event.call_sid),
            )
        return None

    async def handle_dial_status(
        self, db: AsyncSession, user_id: int, event: DialStatusEvent, urls: CallbackUrls
    ) -> str:
        logger.info(
            f"[DIAL STATUS] CallSid: {event.call_sid}, DialCallStatus: {event.dial_call_status}, "
            f"Duration: {event.dial_call_duration}"
        )
        if event.is_terminal:
            self._enqueue_disposition(event.call_sid, event.dial_call_status, event.dial_call_duration)
            await self._end_customer_call(db, user_id, event.call_sid, urls)
        return twiml.hangup_twiml()

    async def handle_call_status(
        self, db: AsyncSession, user_id: int, event: CallStatusEvent, urls: CallbackUrls
    ) -> None:
        if event.is_terminal and await self.conference.is_agent_leg(user_id, event.call_sid):
            logger.info(f"[CALL STATUS] Agent leg ended for user {user_id}, ending session")
            await self.conference.end_session(user_id, reason="agent_disconnected")
            return None

        calls = CallAttemptService(db)
        attempt = await calls.update_status(event.call_sid, event.call_status, event.call_duration)
        line_id = attempt.line_id if attempt else None
        payload = {
            "callSid": event.call_sid,
            "lineId": line_id,
            "status": event.call_status,
            "duration": event.call_duration,
        }

        if not event.is_terminal:
            await self.notifier.broadcast(user_id, CALL_STATUS_EVENT, payload)
            return None

        logger.info(f"[CALL STATUS] {line_id} ended ({event.call_status}) - CallSid: {event.call_sid}")
        await self.notifier.broadcast(user_id, CALL_ENDED, payload)
        self._enqueue_disposition(event.call_sid, event.call_status, event.call_duration)
        await self._end_customer_call(db, user_id, event.call_sid, urls)
        return None

    async def handle_conference_status(
        self, db: AsyncSession, user_id: int, event: ConferenceStatusEvent, urls: CallbackUrls
    ) -> None:
        logger.info(
            f"[CONFERENCE STATUS] {event.status_callback_event} on {event.friendly_name} - "
            f"CallSid: {event.call_sid}, Label: {event.participant_label}"
        )
        await self.conference.handle_event(
            user_id,
            event.friendly_name,
            event.status_callback_event,
            call_sid=event.call_sid,
            conference_sid=event.conference_sid,
            participant_label=event.participant_label,
            start_on_enter=event.start_conference_on_enter,
        )
        return None

    # Shared steps

    async def _announce_amd(
        self,
        user_id: int,
        call_sid: str,
        line_id: Optional[str],
        amd: AmdResult,
        answered_by: Optional[str],
    ) -> None:
        await self.notifier.broadcast(user_id, AMD_RESULT_EVENT, {
            "callSid": call_sid,
            "lineId": line_id,
            "result": amd.value,
            "answeredBy": answered_by,
        })

    async def _end_customer_call(
        self, db: AsyncSession, user_id: int, call_sid: str, urls: CallbackUrls
    ) -> None:
        """A customer leg ended: drop its held marker or promote past it."""
        attempt = await CallAttemptService(db).get_by_sid(call_sid)
        if attempt is not None:
            await self.queue.drop_secondary(user_id, attempt.line_id, call_sid)
        await self.queue.release_and_promote(user_id, call_sid, urls)

    def _enqueue_disposition(self, call_sid: str, status: Optional[str], duration: Optional[int]) -> None:
        self.jobs.enqueue(
            f"disposition:{call_sid}:{status}",
            lambda: self.record_disposition(call_sid, status, duration),
        )

    async def record_disposition(self, call_sid: str, status: Optional[str], duration: Optional[int]) -> None:
        async with self.session_factory() as db:
            calls = CallAttemptService(db)
            attempt = await calls.get_by_sid(call_sid)
            if attempt is None:
                return
            disposition = infer_disposition(status, attempt.answered_by)
            await calls.set_disposition(call_sid, disposition, status, duration)
        logger.info(f"[DISPOSITION] {call_sid} -> {disposition} (status: {status})")

    async def cancel_sibling_lines(self, user_id: int, call_sid: str) -> None:
        """Cancel the user's other still-ringing lines after a human answered."""
        async with self.session_factory() as db:
            calls = CallAttemptService(db)
            ringing = await calls.list_ringing(user_id, exclude_sid=call_sid)
            canceled = []
            for attempt in ringing:
                await self.telephony.cancel_call(attempt.call_sid)
                canceled.append(attempt.call_sid)
            await calls.mark_canceled(canceled, "human_answered_on_another_line")
        if canceled:
            logger.info(f"[AMD] Canceled {len(canceled)} ringing line(s) for user {user_id}")
