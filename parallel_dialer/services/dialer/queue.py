"""Primary/secondary queue manager.

Every human-answered line goes through ``admit``: the first one claims the
primary marker and is bridged to the agent, later ones are parked as
secondaries. When the primary ends, ``release_and_promote`` clears it and
moves the next held call into the bridge.

Admission and promotion for a user run under that user's lock. The marker
store's conditional operations keep the invariant across worker processes.
"""
import asyncio
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, AsyncIterator, Callable, Dict, List, Optional

from twilio.base.exceptions import TwilioRestException

from parallel_dialer.services.markers.base import (
    MarkerStore,
    PrimaryCallMarker,
    SecondaryCallMarker,
)
from parallel_dialer.services.notifications import (
    CALL_ON_HOLD,
    PRIMARY_CONNECTED,
    QUEUE_PROMOTED,
    NotificationHub,
)
from parallel_dialer.services.telephony.client import TelephonyClient
from parallel_dialer.services.telephony.urls import CallbackUrls

logger = logging.getLogger(__name__)

PRIMARY = "primary"
SECONDARY = "secondary"


@dataclass
class AdmissionResult:
    """Outcome of admitting a human-answered call."""

    role: str
    line_id: str
    call_sid: str
    primary: Optional[PrimaryCallMarker] = None
    secondary: Optional[SecondaryCallMarker] = None
    conference_name: Optional[str] = None

    @property
    def is_primary(self) -> bool:
        return self.role == PRIMARY


@dataclass
class PromotionResult:
    """A held call that became the primary."""

    line_id: str
    call_sid: str
    name: str
    phone: Optional[str]
    previous_line_id: Optional[str]
    previous_call_sid: Optional[str]
    conference_name: Optional[str]


@dataclass
class _UserLock:
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    users: int = 0


class QueueManager:
    """Keeps at most one bridged call per user and promotes held calls in order."""

    def __init__(
        self,
        store: MarkerStore,
        telephony: TelephonyClient,
        notifier: NotificationHub,
        promotion_order: str = "line_index",
        clock: Callable[[], datetime] = datetime.utcnow,
    ):
        self.store = store
        self.telephony = telephony
        self.notifier = notifier
        self.promotion_order = promotion_order
        self.clock = clock
        self._locks: Dict[int, _UserLock] = {}

    @asynccontextmanager
    async def lock_for(self, user_id: int) -> AsyncIterator[None]:
        """Hold the per-user lock serializing admission, promotion and session teardown.

        A user's lock is dropped once nothing holds or waits on it.
        """
        entry = self._locks.get(user_id)
        if entry is None:
            entry = self._locks[user_id] = _UserLock()
        entry.users += 1
        try:
            async with entry.lock:
                yield
        finally:
            entry.users -= 1
            if entry.users == 0:
                del self._locks[user_id]

    def locked_users(self) -> List[int]:
        return list(self._locks)

    async def _active_conference_name(self, user_id: int) -> Optional[str]:
        conference = await self.store.get_conference(user_id)
        if conference is None or not conference.is_active:
            return None
        return conference.conference_name

    async def admit(
        self,
        user_id: int,
        line_id: str,
        call_sid: str,
        name: str = "Unknown",
        phone: Optional[str] = None,
    ) -> AdmissionResult:
        """Admit a human-answered call as primary or secondary.

        Re-admitting a call that already holds a marker returns its existing
        role, so retried callbacks get the same answer.
        """
        async with self.lock_for(user_id):
            conference_name = await self._active_conference_name(user_id)

            primary = await self.store.get_primary(user_id)
            if primary is not None and primary.call_sid == call_sid:
                return AdmissionResult(PRIMARY, line_id, call_sid, primary=primary,
                                       conference_name=conference_name)
            held = await self.store.get_secondary(user_id, line_id)
            if held is not None and held.call_sid == call_sid:
                return AdmissionResult(SECONDARY, line_id, call_sid, secondary=held,
                                       conference_name=conference_name)

            marker = PrimaryCallMarker(
                line_id=line_id,
                call_sid=call_sid,
                timestamp=self.clock(),
                in_conference=conference_name is not None,
            )
            if await self.store.claim_primary(user_id, marker):
                result = AdmissionResult(PRIMARY, line_id, call_sid, primary=marker,
                                         conference_name=conference_name)
            else:
                secondary = SecondaryCallMarker(
                    line_id=line_id,
                    call_sid=call_sid,
                    timestamp=self.clock(),
                    on_hold=True,
                    name=name or "Unknown",
                    phone=phone,
                )
                await self.store.put_secondary(user_id, secondary)
                result = AdmissionResult(SECONDARY, line_id, call_sid, secondary=secondary,
                                         conference_name=conference_name)

        if result.is_primary:
            logger.info(f"[QUEUE] {line_id} is primary for user {user_id} - CallSid: {call_sid}")
            await self.notifier.broadcast(user_id, PRIMARY_CONNECTED, {
                "lineId": line_id,
                "callSid": call_sid,
                "name": name,
                "phone": phone,
                "conferenceName": conference_name,
            })
        else:
            logger.info(f"[QUEUE] {line_id} placed on hold for user {user_id} - CallSid: {call_sid}")
            await self.notifier.broadcast(user_id, CALL_ON_HOLD, {
                "lineId": line_id,
                "callSid": call_sid,
                "name": name,
                "phone": phone,
            })
        return result

    async def release_and_promote(
        self, user_id: int, call_sid: str, urls: CallbackUrls
    ) -> Optional[PromotionResult]:
        """Clear the primary if it is ``call_sid`` and promote the next held call.

        Only the caller whose conditional release succeeded promotes; a
        duplicate end signal for the same call returns None.
        """
        async with self.lock_for(user_id):
            released = await self.store.release_primary(user_id, call_sid)
            if released is None:
                logger.debug(
                    f"[QUEUE] {call_sid} is not the primary for user {user_id}, nothing to promote"
                )
                return None
            logger.info(
                f"[QUEUE] Primary {released.line_id} ended for user {user_id} - CallSid: {call_sid}"
            )
            promotion = await self._promote_locked(user_id, urls, released)

        if promotion is not None:
            await self._announce(user_id, promotion)
        return promotion

    async def promote_next(self, user_id: int, urls: CallbackUrls) -> Optional[PromotionResult]:
        """Promote the next held call if the user has no primary."""
        async with self.lock_for(user_id):
            if await self.store.get_primary(user_id) is not None:
                return None
            promotion = await self._promote_locked(user_id, urls, None)

        if promotion is not None:
            await self._announce(user_id, promotion)
        return promotion

    def _order(self, markers: List[SecondaryCallMarker]) -> List[SecondaryCallMarker]:
        candidates = [m for m in markers if m.on_hold]
        if self.promotion_order == "hold_time":
            # Stable sort keeps line order among equal timestamps
            return sorted(candidates, key=lambda m: m.timestamp)
        return candidates

    async def _promote_locked(
        self,
        user_id: int,
        urls: CallbackUrls,
        previous: Optional[PrimaryCallMarker],
    ) -> Optional[PromotionResult]:
        conference_name = await self._active_conference_name(user_id)
        candidates = self._order(await self.store.list_secondaries(user_id))

        for candidate in candidates:
            taken = await self.store.take_secondary(user_id, candidate.line_id, candidate.call_sid)
            if taken is None:
                continue

            marker = PrimaryCallMarker(
                line_id=taken.line_id,
                call_sid=taken.call_sid,
                timestamp=self.clock(),
                in_conference=conference_name is not None,
            )
            if not await self.store.claim_primary(user_id, marker):
                # Another worker admitted a primary in the meantime
                await self.store.put_secondary(user_id, taken)
                logger.warning(
                    f"[QUEUE] Primary claimed elsewhere while promoting {taken.line_id} "
                    f"for user {user_id}, leaving it on hold"
                )
                return None

            if conference_name:
                target = urls.queue_join_url(conference_name, taken.line_id)
            else:
                target = urls.voice_url(taken.line_id, taken.name)

            try:
                redirected = await self.telephony.redirect_call(taken.call_sid, target)
            except TwilioRestException:
                await self.store.release_primary(user_id, taken.call_sid)
                await self.store.put_secondary(user_id, taken)
                raise

            if not redirected:
                await self.store.release_primary(user_id, taken.call_sid)
                logger.warning(
                    f"[QUEUE] Held call on {taken.line_id} is gone, dropping it - "
                    f"CallSid: {taken.call_sid}"
                )
                continue

            return PromotionResult(
                line_id=taken.line_id,
                call_sid=taken.call_sid,
                name=taken.name,
                phone=taken.phone,
                previous_line_id=previous.line_id if previous else None,
                previous_call_sid=previous.call_sid if previous else None,
                conference_name=conference_name,
            )

        logger.info(f"[QUEUE] No held calls to promote for user {user_id}")
        return None

    async def _announce(self, user_id: int, promotion: PromotionResult) -> None:
        logger.info(
            f"[QUEUE] Promoted {promotion.line_id} for user {user_id} - "
            f"CallSid: {promotion.call_sid}"
        )
        await self.notifier.broadcast(user_id, QUEUE_PROMOTED, {
            "lineId": promotion.line_id,
            "callSid": promotion.call_sid,
            "name": promotion.name,
            "phone": promotion.phone,
            "previousLineId": promotion.previous_line_id,
            "previousCallSid": promotion.previous_call_sid,
            "conferenceName": promotion.conference_name,
        })

    async def drop_secondary(self, user_id: int, line_id: str, call_sid: str) -> bool:
        """Remove a held call's marker after the caller hung up."""
        async with self.lock_for(user_id):
            removed = await self.store.take_secondary(user_id, line_id, call_sid)
        if removed is not None:
            logger.info(f"[QUEUE] Held caller on {line_id} hung up - CallSid: {call_sid}")
        return removed is not None

    async def clear_primary(self, user_id: int) -> Optional[PrimaryCallMarker]:
        """Clear the primary marker without promoting anyone."""
        async with self.lock_for(user_id):
            return await self.store.release_primary(user_id)

    async def snapshot(self, user_id: int) -> Dict[str, Any]:
        primary = await self.store.get_primary(user_id)
        secondaries = await self.store.list_secondaries(user_id)
        return {
            "primary": primary.model_dump(mode="json") if primary else None,
            "secondaries": [m.model_dump(mode="json") for m in self._order(secondaries)],
        }
