"""Unit tests for the per-user marker stores (in-memory and SQL)."""
import asyncio
import pytest
from datetime import datetime

from parallel_dialer.services.markers.base import (
    ConferenceDescriptor,
    PrimaryCallMarker,
    SecondaryCallMarker,
    line_index,
    line_ids,
)
from parallel_dialer.services.markers.in_memory import InMemoryMarkerStore
from parallel_dialer.services.markers.sql import SqlMarkerStore


@pytest.fixture(params=["memory", "sql"])
def store(request, session_factory, clock):
    """Both marker store backends, with a 60 second TTL."""
    if request.param == "memory":
        return InMemoryMarkerStore(ttl_seconds=60, clock=clock)
    return SqlMarkerStore(session_factory, ttl_seconds=60, clock=clock)


def primary(line_id: str, call_sid: str) -> PrimaryCallMarker:
    return PrimaryCallMarker(line_id=line_id, call_sid=call_sid, timestamp=datetime(2024, 1, 1))


def secondary(line_id: str, call_sid: str, **kwargs) -> SecondaryCallMarker:
    return SecondaryCallMarker(
        line_id=line_id, call_sid=call_sid, timestamp=datetime(2024, 1, 1), **kwargs
    )


class TestLineHelpers:
    """Test line id helpers."""

    def test_line_index(self):
        assert line_index("line-0") == 0
        assert line_index("line-9") == 9
        assert line_index("line-x") is None
        assert line_index("trunk-1") is None
        assert line_index("") is None

    def test_line_ids(self):
        assert line_ids(3) == ["line-0", "line-1", "line-2"]


class TestPrimaryMarker:
    """Test primary marker admission and release."""

    @pytest.mark.asyncio
    async def test_claim_only_once(self, store):
        assert await store.claim_primary(1, primary("line-1", "CA1")) is True
        assert await store.claim_primary(1, primary("line-2", "CA2")) is False

        current = await store.get_primary(1)
        assert current.line_id == "line-1"
        assert current.call_sid == "CA1"

    @pytest.mark.asyncio
    async def test_users_are_independent(self, store):
        assert await store.claim_primary(1, primary("line-0", "CA1")) is True
        assert await store.claim_primary(2, primary("line-0", "CA2")) is True

    @pytest.mark.asyncio
    async def test_release_is_conditional_on_call(self, store):
        await store.claim_primary(1, primary("line-1", "CA1"))

        assert await store.release_primary(1, "CA-other") is None
        assert await store.get_primary(1) is not None

        released = await store.release_primary(1, "CA1")
        assert released.call_sid == "CA1"
        assert await store.get_primary(1) is None

    @pytest.mark.asyncio
    async def test_second_release_returns_none(self, store):
        await store.claim_primary(1, primary("line-1", "CA1"))

        assert await store.release_primary(1, "CA1") is not None
        assert await store.release_primary(1, "CA1") is None

    @pytest.mark.asyncio
    async def test_unconditional_release(self, store):
        await store.claim_primary(1, primary("line-1", "CA1"))

        assert (await store.release_primary(1)).line_id == "line-1"

    @pytest.mark.asyncio
    async def test_expired_primary_reads_absent_and_can_be_reclaimed(self, store, clock):
        await store.claim_primary(1, primary("line-1", "CA1"))
        clock.advance(seconds=61)

        assert await store.get_primary(1) is None
        assert await store.claim_primary(1, primary("line-2", "CA2")) is True


class TestSecondaryMarkers:
    """Test secondary (held) markers."""

    @pytest.mark.asyncio
    async def test_list_in_line_order(self, store):
        await store.put_secondary(1, secondary("line-10", "CA10"))
        await store.put_secondary(1, secondary("line-2", "CA2"))
        await store.put_secondary(1, secondary("line-1", "CA1"))

        markers = await store.list_secondaries(1)

        assert [m.line_id for m in markers] == ["line-1", "line-2", "line-10"]

    @pytest.mark.asyncio
    async def test_one_marker_per_line(self, store):
        await store.put_secondary(1, secondary("line-1", "CA1"))
        await store.put_secondary(1, secondary("line-1", "CA1b", name="Bob"))

        markers = await store.list_secondaries(1)

        assert len(markers) == 1
        assert markers[0].call_sid == "CA1b"
        assert markers[0].name == "Bob"

    @pytest.mark.asyncio
    async def test_take_is_atomic_pop(self, store):
        await store.put_secondary(1, secondary("line-1", "CA1", phone="+15551234567"))

        taken = await store.take_secondary(1, "line-1")
        assert taken.phone == "+15551234567"
        assert taken.on_hold is True
        assert await store.take_secondary(1, "line-1") is None
        assert await store.get_secondary(1, "line-1") is None

    @pytest.mark.asyncio
    async def test_take_checks_call(self, store):
        await store.put_secondary(1, secondary("line-1", "CA1"))

        assert await store.take_secondary(1, "line-1", "CA-other") is None
        assert await store.take_secondary(1, "line-1", "CA1") is not None


class TestConferenceAndClear:
    """Test the conference descriptor and user clearing."""

    @pytest.mark.asyncio
    async def test_conference_round_trip(self, store, clock):
        descriptor = ConferenceDescriptor(
            conference_name="parallel-dialer-1-1000", start_time=clock(), agent_call_sid="CAagent"
        )
        await store.put_conference(1, descriptor)

        stored = await store.get_conference(1)
        assert stored.conference_name == "parallel-dialer-1-1000"
        assert stored.agent_call_sid == "CAagent"
        assert stored.is_active
        assert stored.conference_started is False

        await store.delete_conference(1)
        assert await store.get_conference(1) is None

    @pytest.mark.asyncio
    async def test_clear_user_removes_everything(self, store, clock):
        await store.claim_primary(1, primary("line-0", "CA0"))
        await store.put_secondary(1, secondary("line-1", "CA1"))
        await store.put_conference(
            1, ConferenceDescriptor(conference_name="parallel-dialer-1-1", start_time=clock())
        )
        await store.claim_primary(2, primary("line-0", "CB0"))

        assert await store.list_users() == [1, 2]
        assert await store.clear_user(1) == 3
        assert await store.get_primary(1) is None
        assert await store.list_secondaries(1) == []
        assert await store.get_conference(1) is None
        assert await store.get_primary(2) is not None
        assert await store.list_users() == [2]

    @pytest.mark.asyncio
    async def test_clear_is_idempotent(self, store):
        assert await store.clear_user(1) == 0
        assert await store.clear_user(1) == 0


def test_conference_expiry():
    descriptor = ConferenceDescriptor(conference_name="c", start_time=datetime(2024, 1, 1, 12, 0))

    assert not descriptor.is_expired(600, datetime(2024, 1, 1, 12, 10))
    assert descriptor.is_expired(600, datetime(2024, 1, 1, 12, 10, 1))


@pytest.mark.asyncio
async def test_concurrent_claims_single_winner():
    store = InMemoryMarkerStore()

    results = await asyncio.gather(*[
        store.claim_primary(1, primary(f"line-{i}", f"CA{i}")) for i in range(5)
    ])

    assert results.count(True) == 1
    assert (await store.get_primary(1)).call_sid == f"CA{results.index(True)}"
