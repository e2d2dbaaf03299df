"""Per-user marker store interface.

The marker store is the only shared mutable state of the dialer. Every
operation that can race across concurrent webhooks is a single conditional
operation here rather than a read followed by a write in the caller.
"""
from abc import ABC, abstractmethod
from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel

PRIMARY_KEY = "primary"
CONFERENCE_KEY = "conference"
SECONDARY_PREFIX = "secondary:"


def secondary_key(line_id: str) -> str:
    return f"{SECONDARY_PREFIX}{line_id}"


def line_index(line_id: str) -> Optional[int]:
    """Return N for ``line-N``, or None for anything else."""
    prefix, _, number = (line_id or "").partition("-")
    if prefix != "line" or not number.isdigit():
        return None
    return int(number)


def line_ids(max_lines: int) -> List[str]:
    return [f"line-{i}" for i in range(max_lines)]


class PrimaryCallMarker(BaseModel):
    """The single call currently bridged to the agent."""

    line_id: str
    call_sid: str
    timestamp: datetime
    in_conference: bool = False


class SecondaryCallMarker(BaseModel):
    """A human-answered call parked on hold behind the primary."""

    line_id: str
    call_sid: str
    timestamp: datetime
    on_hold: bool = True
    name: str = "Unknown"
    phone: Optional[str] = None


class ConferenceDescriptor(BaseModel):
    """The agent's dialing session conference."""

    conference_name: str
    agent_call_sid: Optional[str] = None
    start_time: datetime
    status: str = "active"  # active, ended
    conference_started: bool = False
    conference_sid: Optional[str] = None

    @property
    def is_active(self) -> bool:
        return self.status == "active"

    def is_expired(self, ttl_seconds: int, now: datetime) -> bool:
        return (now - self.start_time).total_seconds() > ttl_seconds


class MarkerStore(ABC):
    """Abstract base class for marker stores."""

    @abstractmethod
    async def claim_primary(self, user_id: int, marker: PrimaryCallMarker) -> bool:
        """Create the primary marker only if none exists. Returns True if claimed."""
        pass

    @abstractmethod
    async def get_primary(self, user_id: int) -> Optional[PrimaryCallMarker]:
        pass

    @abstractmethod
    async def release_primary(
        self, user_id: int, call_sid: Optional[str] = None
    ) -> Optional[PrimaryCallMarker]:
        """Delete the primary marker, only if it names ``call_sid`` when given.

        Returns the deleted marker, or None if nothing was deleted by this call.
        """
        pass

    @abstractmethod
    async def put_secondary(self, user_id: int, marker: SecondaryCallMarker) -> None:
        pass

    @abstractmethod
    async def get_secondary(self, user_id: int, line_id: str) -> Optional[SecondaryCallMarker]:
        pass

    @abstractmethod
    async def take_secondary(
        self, user_id: int, line_id: str, call_sid: Optional[str] = None
    ) -> Optional[SecondaryCallMarker]:
        """Atomically remove and return the line's secondary marker."""
        pass

    @abstractmethod
    async def list_secondaries(self, user_id: int) -> List[SecondaryCallMarker]:
        pass

    @abstractmethod
    async def get_conference(self, user_id: int) -> Optional[ConferenceDescriptor]:
        pass

    @abstractmethod
    async def put_conference(self, user_id: int, descriptor: ConferenceDescriptor) -> None:
        pass

    @abstractmethod
    async def delete_conference(self, user_id: int) -> None:
        pass

    @abstractmethod
    async def clear_user(self, user_id: int) -> int:
        """Remove every marker and the conference descriptor. Returns entries removed."""
        pass

    @abstractmethod
    async def list_users(self) -> List[int]:
        """Users that currently hold any marker."""
        pass


def sort_by_line(markers: List[SecondaryCallMarker]) -> List[SecondaryCallMarker]:
    """Order secondary markers line-0 upward; unparseable line ids go last."""

    def key(marker: SecondaryCallMarker):
        index = line_index(marker.line_id)
        return (index is None, index if index is not None else 0, marker.line_id)

    return sorted(markers, key=key)
