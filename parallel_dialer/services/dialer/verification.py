"""Integrity checks and cleanup over call records and per-user markers."""
import logging
from collections import Counter
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy.ext.asyncio import async_sessionmaker

from parallel_dialer.db.models import CallAttempt
from parallel_dialer.services.dialer.amd import AmdResult
from parallel_dialer.services.dialer.disposition import infer_disposition
from parallel_dialer.services.dialer.queue import QueueManager
from parallel_dialer.services.markers.base import MarkerStore
from parallel_dialer.services.persistence.calls import (
    ACTIVE_STATUSES,
    RINGING_STATUSES,
    TERMINAL_STATUSES,
    CallAttemptService,
)
from parallel_dialer.services.telephony.urls import CallbackUrls

logger = logging.getLogger(__name__)

STALE_CALL_REASON = "cleanup_stale_call"


def _summary(attempt: CallAttempt) -> Dict[str, Any]:
    return {
        "id": attempt.id,
        "callSid": attempt.call_sid,
        "lineId": attempt.line_id,
        "status": attempt.status,
        "duration": attempt.duration,
        "createdAt": attempt.created_at.isoformat() if attempt.created_at else None,
    }


class VerificationService:
    """Finds leaked calls and markers, repairs them and reports AMD/disposition quality."""

    def __init__(
        self,
        session_factory: async_sessionmaker,
        store: MarkerStore,
        queue: QueueManager,
        stale_ringing_minutes: int = 30,
        stale_in_progress_minutes: int = 120,
        clock: Callable[[], datetime] = datetime.utcnow,
    ):
        self.session_factory = session_factory
        self.store = store
        self.queue = queue
        self.stale_ringing_minutes = stale_ringing_minutes
        self.stale_in_progress_minutes = stale_in_progress_minutes
        self.clock = clock

    def _find_stale(self, attempts: List[CallAttempt]) -> Dict[str, List[CallAttempt]]:
        now = self.clock()
        ringing_cutoff = now - timedelta(minutes=self.stale_ringing_minutes)
        in_progress_cutoff = now - timedelta(minutes=self.stale_in_progress_minutes)
        return {
            "stuckRinging": [
                a for a in attempts
                if a.status in RINGING_STATUSES and a.created_at < ringing_cutoff
            ],
            "longInProgress": [
                a for a in attempts
                if a.status == "in-progress" and a.created_at < in_progress_cutoff
            ],
            # A duration means the provider finished the call, but no terminal status arrived
            "ghostCalls": [
                a for a in attempts
                if (a.duration or 0) > 0 and a.status not in TERMINAL_STATUSES
            ],
        }

    async def _marker_issues(self, user_id: int, calls: CallAttemptService) -> List[Dict[str, Any]]:
        issues = []
        primary = await self.store.get_primary(user_id)
        secondaries = await self.store.list_secondaries(user_id)
        if primary is not None:
            attempt = await calls.get_by_sid(primary.call_sid)
            if attempt is not None and attempt.status in TERMINAL_STATUSES:
                issues.append({"type": "primary_call_ended", "lineId": primary.line_id,
                               "callSid": primary.call_sid})
        elif secondaries:
            issues.append({"type": "secondary_without_primary",
                           "lineIds": [m.line_id for m in secondaries]})
        for marker in secondaries:
            attempt = await calls.get_by_sid(marker.call_sid)
            if attempt is not None and attempt.status in TERMINAL_STATUSES:
                issues.append({"type": "secondary_call_ended", "lineId": marker.line_id,
                               "callSid": marker.call_sid})
        return issues

    async def resource_leaks(self, user_id: int) -> Dict[str, Any]:
        """Report calls and markers that should have been cleaned up."""
        async with self.session_factory() as db:
            calls = CallAttemptService(db)
            attempts = await calls.list_for_user(user_id, statuses=ACTIVE_STATUSES)
            stale = self._find_stale(attempts)
            markers = await self._marker_issues(user_id, calls)

        report: Dict[str, Any] = {key: [_summary(a) for a in found] for key, found in stale.items()}
        report["markerIssues"] = markers
        report["totalLeaks"] = sum(len(found) for found in stale.values()) + len(markers)
        if report["totalLeaks"]:
            logger.warning(f"[VERIFY] {report['totalLeaks']} leak(s) found for user {user_id}")
        return report

    async def cleanup_stale_calls(self, user_id: int) -> Dict[str, Any]:
        """Mark stale calls as failed so they stop counting as live."""
        async with self.session_factory() as db:
            calls = CallAttemptService(db)
            attempts = await calls.list_for_user(user_id, statuses=ACTIVE_STATUSES)
            stale = self._find_stale(attempts)
            targets = {a.id: a for found in stale.values() for a in found}
            now = self.clock()
            for attempt in targets.values():
                attempt.status = "failed"
                attempt.ended_at = now
                attempt.extra = {**(attempt.extra or {}), "hangupReason": STALE_CALL_REASON}
            await db.commit()

        logger.info(f"[VERIFY] Cleaned up {len(targets)} stale call(s) for user {user_id}")
        return {"cleaned": len(targets), "callIds": sorted(targets)}

    async def heal_markers(self, user_id: int, urls: CallbackUrls) -> Dict[str, Any]:
        """Drop markers that point at ended calls and promote orphaned held calls."""
        removed: List[str] = []
        promoted: Optional[str] = None

        async with self.session_factory() as db:
            calls = CallAttemptService(db)
            for marker in await self.store.list_secondaries(user_id):
                attempt = await calls.get_by_sid(marker.call_sid)
                if attempt is not None and attempt.status in TERMINAL_STATUSES:
                    if await self.queue.drop_secondary(user_id, marker.line_id, marker.call_sid):
                        removed.append(marker.line_id)

            primary = await self.store.get_primary(user_id)
            if primary is not None:
                attempt = await calls.get_by_sid(primary.call_sid)
                if attempt is not None and attempt.status in TERMINAL_STATUSES:
                    removed.append(primary.line_id)
                    promotion = await self.queue.release_and_promote(user_id, primary.call_sid, urls)
                    promoted = promotion.line_id if promotion else None

        if promoted is None:
            promotion = await self.queue.promote_next(user_id, urls)
            promoted = promotion.line_id if promotion else None

        if removed or promoted:
            logger.info(
                f"[VERIFY] Healed markers for user {user_id} - removed: {removed}, promoted: {promoted}"
            )
        return {"removed": removed, "promotedLineId": promoted}

    async def amd_performance(self, user_id: int, since: Optional[datetime] = None) -> Dict[str, Any]:
        async with self.session_factory() as db:
            attempts = await CallAttemptService(db).list_for_user(user_id, since=since)

        with_amd = [a for a in attempts if a.amd_enabled]
        counts = Counter(a.amd_result or "pending" for a in with_amd)
        durations = [a.machine_detection_duration for a in with_amd if a.machine_detection_duration]
        decided = sum(counts[r.value] for r in AmdResult)
        return {
            "total": len(with_amd),
            "human": counts[AmdResult.HUMAN.value],
            "machine": counts[AmdResult.MACHINE.value],
            "fax": counts[AmdResult.FAX.value],
            "unknown": counts[AmdResult.UNKNOWN.value],
            "pending": counts["pending"],
            "humanRate": round(counts[AmdResult.HUMAN.value] / decided, 4) if decided else 0.0,
            "averageDetectionMs": round(sum(durations) / len(durations), 1) if durations else None,
        }

    async def disposition_accuracy(self, user_id: int, since: Optional[datetime] = None) -> Dict[str, Any]:
        async with self.session_factory() as db:
            attempts = await CallAttemptService(db).list_for_user(
                user_id, statuses=TERMINAL_STATUSES, since=since
            )

        missing = [a for a in attempts if not a.disposition]
        inconsistent = []
        for attempt in attempts:
            if not attempt.disposition:
                continue
            expected = infer_disposition(attempt.dial_status or attempt.status, attempt.answered_by)
            if expected != attempt.disposition:
                inconsistent.append({**_summary(attempt), "disposition": attempt.disposition,
                                     "expected": expected})
        with_disposition = len(attempts) - len(missing)
        return {
            "total": len(attempts),
            "breakdown": dict(Counter(a.disposition for a in attempts if a.disposition)),
            "missing": len(missing),
            "inconsistent": inconsistent,
            "accuracy": round((with_disposition - len(inconsistent)) / with_disposition, 4)
            if with_disposition else None,
        }
