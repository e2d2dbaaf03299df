"""In-memory marker store."""
import asyncio
import logging
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional, Tuple

from pydantic import BaseModel

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


class InMemoryMarkerStore(MarkerStore):
    """Marker store for a single process.

    All mutations happen under one asyncio lock, so each operation is atomic
    with respect to every other coroutine on the event loop.
    """

    def __init__(
        self,
        ttl_seconds: Optional[int] = None,
        clock: Callable[[], datetime] = datetime.utcnow,
    ):
        self.ttl_seconds = ttl_seconds
        self.clock = clock
        self._entries: Dict[Tuple[int, str], Tuple[BaseModel, Optional[datetime]]] = {}
        self._lock = asyncio.Lock()

    def _expiry(self) -> Optional[datetime]:
        if not self.ttl_seconds:
            return None
        return self.clock() + timedelta(seconds=self.ttl_seconds)

    def _get(self, user_id: int, key: str) -> Optional[BaseModel]:
        entry = self._entries.get((user_id, key))
        if entry is None:
            return None
        value, expires_at = entry
        if expires_at is not None and expires_at <= self.clock():
            del self._entries[(user_id, key)]
            return None
        return value.model_copy()

    def _put(self, user_id: int, key: str, value: BaseModel) -> None:
        self._entries[(user_id, key)] = (value.model_copy(), self._expiry())

    async def claim_primary(self, user_id: int, marker: PrimaryCallMarker) -> bool:
        async with self._lock:
            if self._get(user_id, PRIMARY_KEY) is not None:
                return False
            self._put(user_id, PRIMARY_KEY, marker)
            return True

    async def get_primary(self, user_id: int) -> Optional[PrimaryCallMarker]:
        async with self._lock:
            return self._get(user_id, PRIMARY_KEY)

    async def release_primary(
        self, user_id: int, call_sid: Optional[str] = None
    ) -> Optional[PrimaryCallMarker]:
        async with self._lock:
            current = self._get(user_id, PRIMARY_KEY)
            if current is None:
                return None
            if call_sid is not None and current.call_sid != call_sid:
                return None
            del self._entries[(user_id, PRIMARY_KEY)]
            return current

    async def put_secondary(self, user_id: int, marker: SecondaryCallMarker) -> None:
        async with self._lock:
            self._put(user_id, secondary_key(marker.line_id), marker)

    async def get_secondary(self, user_id: int, line_id: str) -> Optional[SecondaryCallMarker]:
        async with self._lock:
            return self._get(user_id, secondary_key(line_id))

    async def take_secondary(
        self, user_id: int, line_id: str, call_sid: Optional[str] = None
    ) -> Optional[SecondaryCallMarker]:
        async with self._lock:
            current = self._get(user_id, secondary_key(line_id))
            if current is None:
                return None
            if call_sid is not None and current.call_sid != call_sid:
                return None
            del self._entries[(user_id, secondary_key(line_id))]
            return current

    async def list_secondaries(self, user_id: int) -> List[SecondaryCallMarker]:
        async with self._lock:
            keys = [
                key
                for (owner, key) in list(self._entries)
                if owner == user_id and key.startswith(SECONDARY_PREFIX)
            ]
            markers = [self._get(user_id, key) for key in keys]
        markers = [m for m in markers if m is not None]
        return sort_by_line(markers)

    async def get_conference(self, user_id: int) -> Optional[ConferenceDescriptor]:
        async with self._lock:
            return self._get(user_id, CONFERENCE_KEY)

    async def put_conference(self, user_id: int, descriptor: ConferenceDescriptor) -> None:
        async with self._lock:
            self._put(user_id, CONFERENCE_KEY, descriptor)

    async def delete_conference(self, user_id: int) -> None:
        async with self._lock:
            self._entries.pop((user_id, CONFERENCE_KEY), None)

    async def clear_user(self, user_id: int) -> int:
        async with self._lock:
            keys = [k for k in self._entries if k[0] == user_id]
            for key in keys:
                del self._entries[key]
        if keys:
            logger.debug(f"[MARKERS] Cleared {len(keys)} entries for user {user_id}")
        return len(keys)

    async def list_users(self) -> List[int]:
        async with self._lock:
            return sorted({owner for (owner, _key) in self._entries})

