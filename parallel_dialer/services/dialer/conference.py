"""Conference bridge controller: session start, session end and conference events."""
import logging
import time
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy.ext.asyncio import async_sessionmaker
from twilio.base.exceptions import TwilioRestException

from parallel_dialer.core.errors import CommandError
from parallel_dialer.services.markers.base import ConferenceDescriptor, MarkerStore
from parallel_dialer.services.notifications import (
    CONFERENCE_READY,
    CONFERENCE_STATUS,
    SESSION_ENDED,
    NotificationHub,
)
from parallel_dialer.services.dialer.queue import QueueManager
from parallel_dialer.services.persistence.calls import CallAttemptService
from parallel_dialer.services.tasks import BackgroundJobQueue
from parallel_dialer.services.telephony.client import TelephonyClient, classify_placement_error
from parallel_dialer.services.telephony.urls import CallbackUrls

logger = logging.getLogger(__name__)

AGENT_LABEL = "agent"
CONFERENCE_PREFIX = "parallel-dialer"


def conference_name_for(user_id: int, now_ms: Optional[int] = None) -> str:
    """``parallel-dialer-{user_id}-{epoch_ms}``"""
    if now_ms is None:
        now_ms = int(time.time() * 1000)
    return f"{CONFERENCE_PREFIX}-{user_id}-{now_ms}"


def owns_conference(user_id: int, conference_name: str) -> bool:
    return (conference_name or "").startswith(f"{CONFERENCE_PREFIX}-{user_id}-")


class ConferenceController:
    """Owns the agent's conference and the one cleanup path for a dialing session."""

    def __init__(
        self,
        store: MarkerStore,
        telephony: TelephonyClient,
        notifier: NotificationHub,
        queue: QueueManager,
        jobs: BackgroundJobQueue,
        session_factory: async_sessionmaker,
        ttl_seconds: int = 600,
        agent_identity_template: str = "agent-{user_id}",
        clock: Callable[[], datetime] = datetime.utcnow,
    ):
        self.store = store
        self.telephony = telephony
        self.notifier = notifier
        self.queue = queue
        self.jobs = jobs
        self.session_factory = session_factory
        self.ttl_seconds = ttl_seconds
        self.agent_identity_template = agent_identity_template
        self.clock = clock

    def agent_identity(self, user_id: int) -> str:
        return self.agent_identity_template.format(user_id=user_id)

    async def get_active(self, user_id: int) -> Optional[ConferenceDescriptor]:
        """The user's live conference, expiring it first if it outlived its TTL."""
        descriptor = await self.store.get_conference(user_id)
        if descriptor is None or not descriptor.is_active:
            return None
        if descriptor.is_expired(self.ttl_seconds, self.clock()):
            await self.expire(user_id, descriptor)
            return None
        return descriptor

    async def start_session(self, user_id: int, urls: CallbackUrls) -> ConferenceDescriptor:
        """Create the conference and ring the agent's client into it.

        An already active conference is returned unchanged.
        """
        existing = await self.get_active(user_id)
        if existing is not None:
            logger.info(
                f"[CONFERENCE] Reusing active conference {existing.conference_name} for user {user_id}"
            )
            return existing

        descriptor = ConferenceDescriptor(
            conference_name=conference_name_for(user_id),
            start_time=self.clock(),
        )
        async with self.queue.lock_for(user_id):
            previous = await self.store.get_conference(user_id)
            if previous is not None and previous.is_active:
                if not previous.is_expired(self.ttl_seconds, self.clock()):
                    return previous
            if previous is not None:
                # Markers left by an ended session must not leak into the new one
                cleared = await self.store.clear_user(user_id)
                logger.info(
                    f"[CONFERENCE] Cleared {cleared} marker(s) left by {previous.conference_name} "
                    f"for user {user_id}"
                )
            await self.store.put_conference(user_id, descriptor)

        try:
            placed = await self.telephony.place_call(
                to=f"client:{self.agent_identity(user_id)}",
                url=urls.join_agent_url(descriptor.conference_name),
                status_callback=urls.status_url(),
            )
        except TwilioRestException as e:
            await self.store.delete_conference(user_id)
            logger.error(
                f"[CONFERENCE] Failed to ring agent for user {user_id}: {e.code} {e.msg}"
            )
            raise classify_placement_error(e)

        descriptor.agent_call_sid = placed.sid
        await self.store.put_conference(user_id, descriptor)
        logger.info(
            f"[CONFERENCE] Started {descriptor.conference_name} for user {user_id} - "
            f"Agent CallSid: {placed.sid}"
        )
        await self.notifier.broadcast(user_id, CONFERENCE_STATUS, {
            "event": "created",
            "conferenceName": descriptor.conference_name,
            "agentCallSid": placed.sid,
        })
        return descriptor

    async def _teardown(
        self,
        user_id: int,
        descriptor: Optional[ConferenceDescriptor],
        held_sids: List[str],
        primary_sid: Optional[str],
        cancel_ringing: bool = True,
    ) -> Dict[str, Any]:
        """Provider-side cleanup. Calls already gone count as done."""
        summary: Dict[str, Any] = {
            "conferenceEnded": False,
            "agentHungUp": False,
            "heldCallsHungUp": 0,
            "canceledLines": 0,
            "errors": [],
        }

        async def attempt(label: str, operation) -> bool:
            try:
                return await operation
            except TwilioRestException as e:
                logger.warning(
                    f"[CONFERENCE] Teardown step '{label}' failed for user {user_id}: "
                    f"{e.code} {e.msg}"
                )
                summary["errors"].append({"step": label, "code": e.code, "message": e.msg})
                return False

        if descriptor is not None:
            summary["conferenceEnded"] = await attempt(
                "end_conference", self.telephony.end_conference(descriptor.conference_name)
            )
            if descriptor.agent_call_sid:
                summary["agentHungUp"] = await attempt(
                    "hangup_agent", self.telephony.hangup_call(descriptor.agent_call_sid)
                )

        if primary_sid:
            await attempt("hangup_primary", self.telephony.hangup_call(primary_sid))

        for sid in held_sids:
            if await attempt("hangup_held", self.telephony.hangup_call(sid)):
                summary["heldCallsHungUp"] += 1

        if not cancel_ringing:
            return summary

        async with self.session_factory() as db:
            calls = CallAttemptService(db)
            ringing = await calls.list_ringing(user_id)
            canceled = []
            for attempt_row in ringing:
                if await attempt("cancel_ringing", self.telephony.cancel_call(attempt_row.call_sid)):
                    summary["canceledLines"] += 1
                canceled.append(attempt_row.call_sid)
            await calls.mark_canceled(canceled, "session_ended")

        return summary

    async def end_session(self, user_id: int, reason: str = "agent_stopped") -> Dict[str, Any]:
        """End the dialing session and clear every marker. Safe to call repeatedly."""
        async with self.queue.lock_for(user_id):
            descriptor = await self.store.get_conference(user_id)
            primary = await self.store.get_primary(user_id)
            secondaries = await self.store.list_secondaries(user_id)
            cleared = await self.store.clear_user(user_id)

        active = descriptor if descriptor is not None and descriptor.is_active else None
        summary = await self._teardown(
            user_id,
            active,
            [m.call_sid for m in secondaries],
            primary.call_sid if primary else None,
        )
        summary["lateCallsHungUp"] = await self._hang_up_late_admissions(user_id)
        summary["markersCleared"] = cleared
        summary["reason"] = reason

        logger.info(
            f"[CONFERENCE] Session ended for user {user_id} ({reason}) - "
            f"markers cleared: {cleared}, ringing canceled: {summary['canceledLines']}"
        )
        await self.notifier.broadcast(user_id, SESSION_ENDED, {
            "reason": reason,
            "conferenceName": descriptor.conference_name if descriptor else None,
        })
        return summary

    async def _hang_up_late_admissions(self, user_id: int) -> int:
        """Drop calls admitted while teardown ran, unless a new session has started."""
        async with self.queue.lock_for(user_id):
            if await self.store.get_conference(user_id) is not None:
                return 0
            primary = await self.store.get_primary(user_id)
            secondaries = await self.store.list_secondaries(user_id)
            if primary is None and not secondaries:
                return 0
            await self.store.clear_user(user_id)

        late = [m.call_sid for m in secondaries]
        if primary is not None:
            late.append(primary.call_sid)
        logger.warning(
            f"[CONFERENCE] Hanging up {len(late)} call(s) answered during teardown for user {user_id}"
        )
        for sid in late:
            try:
                await self.telephony.hangup_call(sid)
            except TwilioRestException as e:
                logger.warning(f"[CONFERENCE] Could not hang up late call {sid}: {e.code} {e.msg}")
        return len(late)

    async def expire(self, user_id: int, descriptor: ConferenceDescriptor) -> None:
        """Expire an old conference: markers go now, provider teardown runs as a job."""
        async with self.queue.lock_for(user_id):
            current = await self.store.get_conference(user_id)
            if current is None or current.conference_name != descriptor.conference_name:
                return
            primary = await self.store.get_primary(user_id)
            secondaries = await self.store.list_secondaries(user_id)
            cleared = await self.store.clear_user(user_id)

        logger.warning(
            f"[CONFERENCE] {descriptor.conference_name} exceeded {self.ttl_seconds}s, "
            f"cleared {cleared} marker(s) for user {user_id}"
        )
        held_sids = [m.call_sid for m in secondaries]
        primary_sid = primary.call_sid if primary else None

        async def teardown() -> None:
            await self._teardown(user_id, descriptor, held_sids, primary_sid)

        self.jobs.enqueue(f"conference-expiry:{descriptor.conference_name}", teardown)
        await self.notifier.broadcast(user_id, SESSION_ENDED, {
            "reason": "expired",
            "conferenceName": descriptor.conference_name,
        })

    async def handle_event(
        self,
        user_id: int,
        conference_name: Optional[str],
        event: Optional[str],
        call_sid: Optional[str] = None,
        conference_sid: Optional[str] = None,
        participant_label: Optional[str] = None,
        start_on_enter: Optional[bool] = None,
    ) -> bool:
        """Apply a conference status callback. Returns False if it was ignored."""
        descriptor = await self.store.get_conference(user_id)
        if descriptor is None or descriptor.conference_name != conference_name:
            logger.info(
                f"[CONFERENCE] Ignoring '{event}' for {conference_name}, "
                f"not the active conference of user {user_id}"
            )
            return False

        is_agent = participant_label == AGENT_LABEL or (
            call_sid is not None and call_sid == descriptor.agent_call_sid
        )
        changed = ended = False
        ready = False

        if event == "participant-join" and is_agent and start_on_enter:
            descriptor.conference_started = True
            descriptor.conference_sid = conference_sid or descriptor.conference_sid
            if call_sid and not descriptor.agent_call_sid:
                descriptor.agent_call_sid = call_sid
            changed = ready = True
        elif event == "conference-start" and conference_sid:
            descriptor.conference_sid = conference_sid
            changed = True
        elif event == "conference-end" or (event == "participant-leave" and is_agent):
            descriptor.status = "ended"
            changed = ended = True

        primary = None
        secondaries = []
        if changed:
            async with self.queue.lock_for(user_id):
                current = await self.store.get_conference(user_id)
                if current is not None and current.conference_name == descriptor.conference_name:
                    if ended and current.is_active:
                        primary = await self.store.get_primary(user_id)
                        secondaries = await self.store.list_secondaries(user_id)
                        await self.store.clear_user(user_id)
                    await self.store.put_conference(user_id, descriptor)

        if primary is not None or secondaries:
            held_sids = [m.call_sid for m in secondaries]
            primary_sid = primary.call_sid if primary else None
            logger.info(
                f"[CONFERENCE] {conference_name} ended, releasing {len(held_sids)} held call(s) "
                f"and primary {primary_sid} for user {user_id}"
            )

            async def release_calls() -> None:
                await self._teardown(user_id, None, held_sids, primary_sid, cancel_ringing=False)

            self.jobs.enqueue(f"conference-ended:{conference_name}", release_calls)

        await self.notifier.broadcast(user_id, CONFERENCE_STATUS, {
            "event": event,
            "conferenceName": conference_name,
            "conferenceSid": conference_sid,
            "callSid": call_sid,
            "participantLabel": participant_label,
            "status": descriptor.status,
        })
        if ready:
            logger.info(f"[CONFERENCE] Agent joined {conference_name}, conference ready")
            await self.notifier.broadcast(user_id, CONFERENCE_READY, {
                "conferenceName": conference_name,
                "conferenceSid": descriptor.conference_sid,
            })
        return True

    async def is_agent_leg(self, user_id: int, call_sid: str) -> bool:
        descriptor = await self.store.get_conference(user_id)
        return descriptor is not None and descriptor.agent_call_sid == call_sid

    async def hangup(self, user_id: int, call_sid: str, urls: CallbackUrls) -> Dict[str, Any]:
        """Hang up one customer call the user owns, promoting if it was the primary."""
        if await self.is_agent_leg(user_id, call_sid):
            raise CommandError(
                "CANNOT_HANGUP_AGENT_LEG",
                "The agent's conference leg cannot be hung up; end the dialing session instead.",
                status_code=400,
            )

        async with self.session_factory() as db:
            attempt = await CallAttemptService(db).get_for_user(user_id, call_sid)
        if attempt is None:
            raise CommandError("CALL_NOT_FOUND", "Call not found.", status_code=404)

        hung_up = await self.telephony.hangup_call(call_sid)
        held_removed = await self.queue.drop_secondary(user_id, attempt.line_id, call_sid)
        promotion = await self.queue.release_and_promote(user_id, call_sid, urls)
        logger.info(
            f"[HANGUP] User {user_id} hung up {attempt.line_id} - CallSid: {call_sid}, "
            f"promoted: {promotion.line_id if promotion else None}"
        )
        return {
            "callSid": call_sid,
            "lineId": attempt.line_id,
            "hungUp": hung_up,
            "heldMarkerRemoved": held_removed,
            "promotedLineId": promotion.line_id if promotion else None,
        }
