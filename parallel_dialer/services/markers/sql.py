"""Database-backed marker store shared by every worker process.

Primary admission relies on the ``(user_id, key)`` unique constraint: two
workers inserting the primary row for the same user cannot both commit.
Releases and secondary pops are conditional deletes whose row count tells the
caller whether it won.
"""
import logging
from datetime import datetime, timedelta
from typing import Callable, List, Optional, Type, TypeVar

from pydantic import BaseModel
from sqlalchemy import delete, or_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from parallel_dialer.db.models import DialerMarker
from parallel_dialer.services.markers.base import (
    CONFERENCE_KEY,
    PRIMARY_KEY,
    SECONDARY_PREFIX,
    ConferenceDescriptor,
    MarkerStore,
    PrimaryCallMarker,
    SecondaryCallMarker,
    secondary_key,
    sort_by_line,
)

logger = logging.getLogger(__name__)

M = TypeVar("M", bound=BaseModel)


class SqlMarkerStore(MarkerStore):
    """Marker store persisted in the ``dialer_markers`` table."""

    def __init__(
        self,
        session_factory: async_sessionmaker,
        ttl_seconds: Optional[int] = None,
        clock: Callable[[], datetime] = datetime.utcnow,
    ):
        self.session_factory = session_factory
        self.ttl_seconds = ttl_seconds
        self.clock = clock

    def _expiry(self) -> Optional[datetime]:
        if not self.ttl_seconds:
            return None
        return self.clock() + timedelta(seconds=self.ttl_seconds)

    def _live(self, now: datetime):
        return or_(DialerMarker.expires_at.is_(None), DialerMarker.expires_at > now)

    async def _fetch(self, session: AsyncSession, user_id: int, key: str) -> Optional[DialerMarker]:
        result = await session.execute(
            select(DialerMarker).where(
                DialerMarker.user_id == user_id,
                DialerMarker.key == key,
                self._live(self.clock()),
            )
        )
        return result.scalar_one_or_none()

    async def _read(self, user_id: int, key: str, model: Type[M]) -> Optional[M]:
        async with self.session_factory() as session:
            row = await self._fetch(session, user_id, key)
            return model.model_validate(row.value) if row else None

    async def _upsert(self, user_id: int, key: str, value: BaseModel, call_sid: Optional[str]) -> None:
        for attempt in range(2):
            async with self.session_factory() as session:
                await session.execute(
                    delete(DialerMarker).where(
                        DialerMarker.user_id == user_id, DialerMarker.key == key
                    )
                )
                session.add(
                    DialerMarker(
                        user_id=user_id,
                        key=key,
                        call_sid=call_sid,
                        value=value.model_dump(mode="json"),
                        created_at=self.clock(),
                        expires_at=self._expiry(),
                    )
                )
                try:
                    await session.commit()
                    return
                except IntegrityError:
                    await session.rollback()
                    if attempt:
                        raise
                    logger.debug(f"[MARKERS] Concurrent write on {key} for user {user_id}, retrying")

    async def _pop(
        self, user_id: int, key: str, model: Type[M], call_sid: Optional[str]
    ) -> Optional[M]:
        async with self.session_factory() as session:
            row = await self._fetch(session, user_id, key)
            if row is None:
                return None
            if call_sid is not None and row.call_sid != call_sid:
                return None
            value = model.model_validate(row.value)
            statement = delete(DialerMarker).where(DialerMarker.id == row.id)
            if row.call_sid is not None:
                statement = statement.where(DialerMarker.call_sid == row.call_sid)
            result = await session.execute(statement)
            await session.commit()
            if result.rowcount != 1:
                # Another worker removed it first
                return None
            return value

    async def claim_primary(self, user_id: int, marker: PrimaryCallMarker) -> bool:
        async with self.session_factory() as session:
            now = self.clock()
            await session.execute(
                delete(DialerMarker).where(
                    DialerMarker.user_id == user_id,
                    DialerMarker.key == PRIMARY_KEY,
                    DialerMarker.expires_at.is_not(None),
                    DialerMarker.expires_at <= now,
                )
            )
            session.add(
                DialerMarker(
                    user_id=user_id,
                    key=PRIMARY_KEY,
                    call_sid=marker.call_sid,
                    value=marker.model_dump(mode="json"),
                    created_at=now,
                    expires_at=self._expiry(),
                )
            )
            try:
                await session.commit()
            except IntegrityError:
                await session.rollback()
                return False
            return True

    async def get_primary(self, user_id: int) -> Optional[PrimaryCallMarker]:
        return await self._read(user_id, PRIMARY_KEY, PrimaryCallMarker)

    async def release_primary(
        self, user_id: int, call_sid: Optional[str] = None
    ) -> Optional[PrimaryCallMarker]:
        return await self._pop(user_id, PRIMARY_KEY, PrimaryCallMarker, call_sid)

    async def put_secondary(self, user_id: int, marker: SecondaryCallMarker) -> None:
        await self._upsert(user_id, secondary_key(marker.line_id), marker, marker.call_sid)

    async def get_secondary(self, user_id: int, line_id: str) -> Optional[SecondaryCallMarker]:
        return await self._read(user_id, secondary_key(line_id), SecondaryCallMarker)

    async def take_secondary(
        self, user_id: int, line_id: str, call_sid: Optional[str] = None
    ) -> Optional[SecondaryCallMarker]:
        return await self._pop(user_id, secondary_key(line_id), SecondaryCallMarker, call_sid)

    async def list_secondaries(self, user_id: int) -> List[SecondaryCallMarker]:
        async with self.session_factory() as session:
            result = await session.execute(
                select(DialerMarker).where(
                    DialerMarker.user_id == user_id,
                    DialerMarker.key.startswith(SECONDARY_PREFIX),
                    self._live(self.clock()),
                )
            )
            rows = result.scalars().all()
        return sort_by_line([SecondaryCallMarker.model_validate(row.value) for row in rows])

    async def get_conference(self, user_id: int) -> Optional[ConferenceDescriptor]:
        return await self._read(user_id, CONFERENCE_KEY, ConferenceDescriptor)

    async def put_conference(self, user_id: int, descriptor: ConferenceDescriptor) -> None:
        await self._upsert(user_id, CONFERENCE_KEY, descriptor, descriptor.agent_call_sid)

    async def delete_conference(self, user_id: int) -> None:
        async with self.session_factory() as session:
            await session.execute(
                delete(DialerMarker).where(
                    DialerMarker.user_id == user_id, DialerMarker.key == CONFERENCE_KEY
                )
            )
            await session.commit()

    async def clear_user(self, user_id: int) -> int:
        async with self.session_factory() as session:
            result = await session.execute(
                delete(DialerMarker).where(DialerMarker.user_id == user_id)
            )
            await session.commit()
        return result.rowcount or 0

    async def list_users(self) -> List[int]:
        async with self.session_factory() as session:
            result = await session.execute(
                select(DialerMarker.user_id).where(self._live(self.clock())).distinct()
            )
            return sorted(result.scalars().all())
