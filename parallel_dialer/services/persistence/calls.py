"""Call attempt persistence service."""
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from parallel_dialer.db.models import CallAttempt

RINGING_STATUSES = ("initiated", "queued", "ringing")
ACTIVE_STATUSES = RINGING_STATUSES + ("in-progress", "answered")
TERMINAL_STATUSES = ("completed", "busy", "failed", "no-answer", "canceled")


class CallAttemptService:
    """Service for persisting call attempts."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def create_attempt(
        self,
        user_id: int,
        line_id: str,
        phone: str,
        contact_id: Optional[int] = None,
        contact_name: Optional[str] = None,
        amd_enabled: bool = False,
        amd_timeout: int = 30,
        amd_sensitivity: str = "standard",
    ) -> CallAttempt:
        """Create a call attempt in ``initiated`` status before the call is placed."""
        attempt = CallAttempt(
            user_id=user_id,
            line_id=line_id,
            phone=phone,
            contact_id=contact_id,
            contact_name=contact_name,
            amd_enabled=amd_enabled,
            amd_timeout=amd_timeout,
            amd_sensitivity=amd_sensitivity,
            status="initiated",
            extra={},
        )
        self.db.add(attempt)
        await self.db.commit()
        await self.db.refresh(attempt)
        return attempt

    async def attach_call_sid(self, attempt_id: int, call_sid: str) -> Optional[CallAttempt]:
        attempt = await self.db.get(CallAttempt, attempt_id)
        if attempt:
            attempt.call_sid = call_sid
            await self.db.commit()
            await self.db.refresh(attempt)
        return attempt

    async def mark_placement_failed(self, attempt_id: int, error_code: str) -> Optional[CallAttempt]:
        attempt = await self.db.get(CallAttempt, attempt_id)
        if attempt:
            attempt.status = "failed"
            attempt.error_code = error_code
            attempt.ended_at = datetime.utcnow()
            await self.db.commit()
            await self.db.refresh(attempt)
        return attempt

    async def get_by_sid(self, call_sid: str) -> Optional[CallAttempt]:
        """Get call attempt by provider call SID."""
        if not call_sid:
            return None
        result = await self.db.execute(
            select(CallAttempt).where(CallAttempt.call_sid == call_sid)
        )
        return result.scalar_one_or_none()

    async def get_for_user(self, user_id: int, call_sid: str) -> Optional[CallAttempt]:
        """Get a call attempt only if it belongs to ``user_id``."""
        attempt = await self.get_by_sid(call_sid)
        if attempt is None or attempt.user_id != user_id:
            return None
        return attempt

    async def update_status(
        self,
        call_sid: str,
        status: str,
        duration: Optional[int] = None,
    ) -> Optional[CallAttempt]:
        """Move a call to ``status``.

        Terminal statuses are final: a late non-terminal callback never
        overwrites them.
        """
        attempt = await self.get_by_sid(call_sid)
        if attempt is None:
            return None
        if attempt.status in TERMINAL_STATUSES and status not in TERMINAL_STATUSES:
            return attempt
        attempt.status = status
        if duration is not None:
            attempt.duration = duration
        if status in TERMINAL_STATUSES and attempt.ended_at is None:
            attempt.ended_at = datetime.utcnow()
        await self.db.commit()
        await self.db.refresh(attempt)
        return attempt

    async def record_amd_result(
        self,
        call_sid: str,
        answered_by: Optional[str],
        amd_result: str,
        detection_duration: Optional[int] = None,
    ) -> Optional[CallAttempt]:
        attempt = await self.get_by_sid(call_sid)
        if attempt is None:
            return None
        attempt.answered_by = answered_by
        attempt.amd_result = amd_result
        if detection_duration is not None:
            attempt.machine_detection_duration = detection_duration
        await self.db.commit()
        await self.db.refresh(attempt)
        return attempt

    async def set_disposition(
        self,
        call_sid: str,
        disposition: str,
        dial_status: Optional[str] = None,
        duration: Optional[int] = None,
    ) -> Optional[CallAttempt]:
        attempt = await self.get_by_sid(call_sid)
        if attempt is None:
            return None
        attempt.disposition = disposition
        if dial_status:
            attempt.dial_status = dial_status
        if duration is not None:
            attempt.duration = duration
        await self.db.commit()
        await self.db.refresh(attempt)
        return attempt

    async def merge_metadata(self, attempt_id: int, values: Dict[str, Any]) -> Optional[CallAttempt]:
        attempt = await self.db.get(CallAttempt, attempt_id)
        if attempt:
            # Reassign so the JSON column is flagged dirty
            attempt.extra = {**(attempt.extra or {}), **values}
            await self.db.commit()
            await self.db.refresh(attempt)
        return attempt

    async def list_for_user(
        self,
        user_id: int,
        statuses: Optional[Iterable[str]] = None,
        since: Optional[datetime] = None,
        until: Optional[datetime] = None,
    ) -> List[CallAttempt]:
        query = select(CallAttempt).where(CallAttempt.user_id == user_id)
        if statuses is not None:
            query = query.where(CallAttempt.status.in_(list(statuses)))
        if since is not None:
            query = query.where(CallAttempt.created_at >= since)
        if until is not None:
            query = query.where(CallAttempt.created_at <= until)
        result = await self.db.execute(query.order_by(CallAttempt.created_at))
        return list(result.scalars().all())

    async def list_ringing(self, user_id: int, exclude_sid: Optional[str] = None) -> List[CallAttempt]:
        attempts = await self.list_for_user(user_id, statuses=RINGING_STATUSES)
        return [a for a in attempts if a.call_sid and a.call_sid != exclude_sid]

    async def mark_canceled(self, call_sids: List[str], reason: str) -> int:
        """Mark non-terminal attempts as canceled. Returns rows changed."""
        if not call_sids:
            return 0
        now = datetime.utcnow()
        result = await self.db.execute(
            update(CallAttempt)
            .where(
                CallAttempt.call_sid.in_(call_sids),
                CallAttempt.status.not_in(TERMINAL_STATUSES),
            )
            .values(status="canceled", ended_at=now, updated_at=now, error_code=reason)
        )
        await self.db.commit()
        return result.rowcount or 0
