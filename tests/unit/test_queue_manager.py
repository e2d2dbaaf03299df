"""Unit tests for primary/secondary admission and promotion."""
import asyncio
import pytest
from datetime import datetime

from parallel_dialer.services.dialer.queue import QueueManager
from parallel_dialer.services.markers.base import ConferenceDescriptor
from parallel_dialer.services.markers.sql import SqlMarkerStore
from parallel_dialer.services.notifications import (
    CALL_ON_HOLD,
    PRIMARY_CONNECTED,
    QUEUE_PROMOTED,
)


@pytest.fixture
def queue(dialer):
    return dialer.queue


class TestAdmission:
    """Test admitting human-answered calls."""

    @pytest.mark.asyncio
    async def test_first_human_becomes_primary(self, queue, marker_store, notifier):
        result = await queue.admit(1, "line-0", "CA0", "Alice", "+15551110000")

        assert result.is_primary
        primary = await marker_store.get_primary(1)
        assert primary.line_id == "line-0"
        assert primary.in_conference is False
        assert notifier.of_type(PRIMARY_CONNECTED)[0]["lineId"] == "line-0"

    @pytest.mark.asyncio
    async def test_second_human_is_held(self, queue, marker_store, notifier):
        await queue.admit(1, "line-0", "CA0")
        result = await queue.admit(1, "line-1", "CA1", "Bob", "+15551110001")

        assert not result.is_primary
        held = await marker_store.get_secondary(1, "line-1")
        assert held.on_hold is True
        assert held.name == "Bob"
        assert held.phone == "+15551110001"
        assert notifier.of_type(CALL_ON_HOLD)[0]["lineId"] == "line-1"

    @pytest.mark.asyncio
    async def test_scenario_a_simultaneous_humans(self, queue, marker_store):
        """line-1 and line-2 report human at the same instant: one primary, one held."""
        results = await asyncio.gather(
            queue.admit(1, "line-1", "CA1"),
            queue.admit(1, "line-2", "CA2"),
        )

        roles = sorted(r.role for r in results)
        assert roles == ["primary", "secondary"]

        primary = await marker_store.get_primary(1)
        held = await marker_store.list_secondaries(1)
        assert len(held) == 1
        assert held[0].on_hold is True
        assert {primary.line_id, held[0].line_id} == {"line-1", "line-2"}

    @pytest.mark.asyncio
    async def test_single_primary_across_many_lines(self, queue, marker_store, notifier):
        await asyncio.gather(*[queue.admit(1, f"line-{i}", f"CA{i}") for i in range(10)])

        assert len(notifier.of_type(PRIMARY_CONNECTED)) == 1
        assert len(await marker_store.list_secondaries(1)) == 9

    @pytest.mark.asyncio
    async def test_readmit_is_idempotent(self, queue, notifier):
        first = await queue.admit(1, "line-0", "CA0")
        again = await queue.admit(1, "line-0", "CA0")
        await queue.admit(1, "line-1", "CA1")
        held_again = await queue.admit(1, "line-1", "CA1")

        assert first.is_primary and again.is_primary
        assert not held_again.is_primary
        assert len(notifier.of_type(PRIMARY_CONNECTED)) == 1
        assert len(notifier.of_type(CALL_ON_HOLD)) == 1

    @pytest.mark.asyncio
    async def test_primary_marks_conference(self, queue, marker_store):
        await marker_store.put_conference(
            1, ConferenceDescriptor(conference_name="parallel-dialer-1-1", start_time=datetime.utcnow())
        )

        result = await queue.admit(1, "line-0", "CA0")

        assert result.conference_name == "parallel-dialer-1-1"
        assert (await marker_store.get_primary(1)).in_conference is True


class TestPromotion:
    """Test promotion when the primary ends."""

    @pytest.mark.asyncio
    async def test_scenario_b_promotes_held_call_once(self, queue, marker_store, notifier, telephony, urls):
        await queue.admit(1, "line-1", "CA1")
        await queue.admit(1, "line-2", "CA2", "Bob")

        promotion = await queue.release_and_promote(1, "CA1", urls)

        assert promotion.line_id == "line-2"
        assert promotion.previous_line_id == "line-1"
        primary = await marker_store.get_primary(1)
        assert primary.line_id == "line-2"
        assert await marker_store.get_secondary(1, "line-2") is None

        sid, url = telephony.redirects[0]
        assert sid == "CA2"
        assert "/webhooks/voice/parallel-dialer" in url
        assert "lineId=line-2" in url

        # A duplicate end signal for line-1 must not promote again
        assert await queue.release_and_promote(1, "CA1", urls) is None
        assert len(notifier.of_type(QUEUE_PROMOTED)) == 1

    @pytest.mark.asyncio
    async def test_promotes_into_active_conference(self, queue, marker_store, telephony, urls):
        await marker_store.put_conference(
            1, ConferenceDescriptor(conference_name="parallel-dialer-1-5", start_time=datetime.utcnow())
        )
        await queue.admit(1, "line-0", "CA0")
        await queue.admit(1, "line-1", "CA1")

        await queue.release_and_promote(1, "CA0", urls)

        _, url = telephony.redirects[0]
        assert "/webhooks/voice/queue/join-conference" in url
        assert "conference=parallel-dialer-1-5" in url
        assert (await marker_store.get_primary(1)).in_conference is True

    @pytest.mark.asyncio
    async def test_lowest_line_index_wins(self, queue, marker_store, urls):
        await queue.admit(1, "line-0", "CA0")
        for line in ("line-3", "line-1", "line-2"):
            await queue.admit(1, line, f"CA-{line}")

        promotion = await queue.release_and_promote(1, "CA0", urls)

        assert promotion.line_id == "line-1"
        remaining = [m.line_id for m in await marker_store.list_secondaries(1)]
        assert remaining == ["line-2", "line-3"]

    @pytest.mark.asyncio
    async def test_hold_time_order(self, marker_store, telephony, notifier, urls, clock):
        queue = QueueManager(marker_store, telephony, notifier, promotion_order="hold_time", clock=clock)
        await queue.admit(1, "line-0", "CA0")
        await queue.admit(1, "line-3", "CA3")
        clock.advance(seconds=5)
        await queue.admit(1, "line-1", "CA1")

        promotion = await queue.release_and_promote(1, "CA0", urls)

        assert promotion.line_id == "line-3"

    @pytest.mark.asyncio
    async def test_gone_held_call_is_skipped(self, queue, marker_store, telephony, urls):
        await queue.admit(1, "line-0", "CA0")
        await queue.admit(1, "line-1", "CA1")
        await queue.admit(1, "line-2", "CA2")
        telephony.gone.add("CA1")

        promotion = await queue.release_and_promote(1, "CA0", urls)

        assert promotion.line_id == "line-2"
        assert (await marker_store.get_primary(1)).call_sid == "CA2"
        assert await marker_store.list_secondaries(1) == []

    @pytest.mark.asyncio
    async def test_no_held_calls_leaves_no_primary(self, queue, marker_store, notifier, urls):
        await queue.admit(1, "line-0", "CA0")

        assert await queue.release_and_promote(1, "CA0", urls) is None
        assert await marker_store.get_primary(1) is None
        assert notifier.of_type(QUEUE_PROMOTED) == []

    @pytest.mark.asyncio
    async def test_ending_a_non_primary_call_changes_nothing(self, queue, marker_store, urls):
        await queue.admit(1, "line-0", "CA0")
        await queue.admit(1, "line-1", "CA1")

        assert await queue.release_and_promote(1, "CA-unrelated", urls) is None
        assert (await marker_store.get_primary(1)).call_sid == "CA0"
        assert len(await marker_store.list_secondaries(1)) == 1

    @pytest.mark.asyncio
    async def test_concurrent_end_signals_promote_once(self, queue, notifier, urls):
        await queue.admit(1, "line-0", "CA0")
        await queue.admit(1, "line-1", "CA1")
        await queue.admit(1, "line-2", "CA2")

        results = await asyncio.gather(
            queue.release_and_promote(1, "CA0", urls),
            queue.release_and_promote(1, "CA0", urls),
        )

        assert len([r for r in results if r is not None]) == 1
        assert len(notifier.of_type(QUEUE_PROMOTED)) == 1

    @pytest.mark.asyncio
    async def test_promote_next_only_without_primary(self, queue, marker_store, urls):
        await queue.admit(1, "line-0", "CA0")
        await queue.admit(1, "line-1", "CA1")

        assert await queue.promote_next(1, urls) is None

        await marker_store.release_primary(1)
        promotion = await queue.promote_next(1, urls)
        assert promotion.line_id == "line-1"
        assert promotion.previous_line_id is None


class TestQueueMaintenance:
    """Test held-call removal, primary clearing and snapshots."""

    @pytest.mark.asyncio
    async def test_drop_secondary(self, queue, marker_store):
        await queue.admit(1, "line-0", "CA0")
        await queue.admit(1, "line-1", "CA1")

        assert await queue.drop_secondary(1, "line-1", "CA1") is True
        assert await queue.drop_secondary(1, "line-1", "CA1") is False
        assert await marker_store.list_secondaries(1) == []

    @pytest.mark.asyncio
    async def test_clear_primary_does_not_promote(self, queue, marker_store, telephony):
        await queue.admit(1, "line-0", "CA0")
        await queue.admit(1, "line-1", "CA1")

        cleared = await queue.clear_primary(1)

        assert cleared.call_sid == "CA0"
        assert await marker_store.get_primary(1) is None
        assert len(await marker_store.list_secondaries(1)) == 1
        assert telephony.redirects == []

    @pytest.mark.asyncio
    async def test_snapshot(self, queue):
        await queue.admit(1, "line-0", "CA0")
        await queue.admit(1, "line-2", "CA2")

        snapshot = await queue.snapshot(1)

        assert snapshot["primary"]["line_id"] == "line-0"
        assert [m["line_id"] for m in snapshot["secondaries"]] == ["line-2"]


class TestUserLocks:
    """Test the per-user lock bookkeeping."""

    @pytest.mark.asyncio
    async def test_idle_locks_are_dropped(self, queue, urls):
        await asyncio.gather(*[queue.admit(user_id, "line-0", f"CA{user_id}") for user_id in range(1, 6)])
        await queue.release_and_promote(1, "CA1", urls)

        assert queue.locked_users() == []

    @pytest.mark.asyncio
    async def test_lock_is_tracked_while_held(self, queue):
        async with queue.lock_for(7):
            assert queue.locked_users() == [7]

        assert queue.locked_users() == []


class TestSharedSqlStore:
    """Two workers with their own locks sharing one database-backed store."""

    @pytest.fixture
    def workers(self, session_factory, telephony, notifier):
        store = SqlMarkerStore(session_factory, ttl_seconds=7200)
        return store, QueueManager(store, telephony, notifier), QueueManager(store, telephony, notifier)

    @pytest.mark.asyncio
    async def test_scenario_a_across_workers(self, workers):
        store, first, second = workers

        results = await asyncio.gather(
            first.admit(1, "line-1", "CA1"),
            second.admit(1, "line-2", "CA2"),
        )

        assert sorted(r.role for r in results) == ["primary", "secondary"]
        primary = await store.get_primary(1)
        held = await store.list_secondaries(1)
        assert len(held) == 1
        assert {primary.line_id, held[0].line_id} == {"line-1", "line-2"}

    @pytest.mark.asyncio
    async def test_promotion_across_workers_happens_once(self, workers, notifier, urls):
        store, first, second = workers
        await first.admit(1, "line-0", "CA0")
        await second.admit(1, "line-2", "CA2")
        await first.admit(1, "line-1", "CA1")

        results = await asyncio.gather(
            first.release_and_promote(1, "CA0", urls),
            second.release_and_promote(1, "CA0", urls),
        )

        promoted = [r for r in results if r is not None]
        assert len(promoted) == 1
        assert promoted[0].line_id == "line-1"
        assert (await store.get_primary(1)).call_sid == "CA1"
        assert len(notifier.of_type(QUEUE_PROMOTED)) == 1
