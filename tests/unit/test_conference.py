"""Unit tests for the conference bridge controller."""
import pytest
from twilio.base.exceptions import TwilioRestException

from parallel_dialer.core.errors import CommandError, DialError
from parallel_dialer.services.dialer.conference import owns_conference
from parallel_dialer.services.notifications import (
    CONFERENCE_READY,
    CONFERENCE_STATUS,
    QUEUE_PROMOTED,
    SESSION_ENDED,
)


@pytest.fixture
def controller(dialer, clock):
    dialer.conference.clock = clock
    return dialer.conference


class TestSessionStart:
    """Test opening a dialing session."""

    @pytest.mark.asyncio
    async def test_start_rings_agent_client(self, controller, telephony, marker_store, urls):
        descriptor = await controller.start_session(1, urls)

        assert descriptor.conference_name.startswith("parallel-dialer-1-")
        placed = telephony.placed[0]
        assert placed["to"] == "client:agent-1"
        assert "/webhooks/voice/conference/join-agent" in placed["url"]
        stored = await marker_store.get_conference(1)
        assert stored.agent_call_sid == placed["sid"]
        assert stored.is_active

    @pytest.mark.asyncio
    async def test_start_reuses_active_conference(self, controller, telephony, urls):
        first = await controller.start_session(1, urls)
        second = await controller.start_session(1, urls)

        assert first.conference_name == second.conference_name
        assert len(telephony.placed) == 1

    @pytest.mark.asyncio
    async def test_start_failure_leaves_no_conference(self, controller, telephony, marker_store, urls):
        telephony.place_error = TwilioRestException(400, "/Calls", msg="Bad client", code=21217)

        with pytest.raises(DialError) as exc_info:
            await controller.start_session(1, urls)

        assert exc_info.value.code == "INVALID_PHONE_NUMBER"
        assert await marker_store.get_conference(1) is None

    @pytest.mark.asyncio
    async def test_start_clears_markers_left_by_ended_session(self, controller, dialer, marker_store, urls):
        old = await controller.start_session(1, urls)
        await dialer.queue.admit(1, "line-0", "CA-old")
        old.status = "ended"
        await marker_store.put_conference(1, old)

        fresh = await controller.start_session(1, urls)

        assert await marker_store.get_primary(1) is None
        assert (await marker_store.get_conference(1)).agent_call_sid == fresh.agent_call_sid
        assert (await dialer.queue.admit(1, "line-1", "CA-new")).is_primary


class TestSessionEnd:
    """Test the session cleanup path."""

    @pytest.mark.asyncio
    async def test_end_session_tears_everything_down(
        self, controller, dialer, telephony, marker_store, notifier, make_attempt, urls
    ):
        descriptor = await controller.start_session(1, urls)
        await make_attempt("CA0", "line-0", status="in-progress")
        await make_attempt("CA1", "line-1", status="in-progress")
        await make_attempt("CA2", "line-2", status="ringing")
        await dialer.queue.admit(1, "line-0", "CA0")
        await dialer.queue.admit(1, "line-1", "CA1")

        summary = await controller.end_session(1)

        assert telephony.ended_conferences == [descriptor.conference_name]
        assert descriptor.agent_call_sid in telephony.hung_up
        assert "CA0" in telephony.hung_up
        assert "CA1" in telephony.hung_up
        assert telephony.canceled == ["CA2"]
        assert summary["canceledLines"] == 1
        assert summary["heldCallsHungUp"] == 1
        assert summary["markersCleared"] == 3
        assert await marker_store.get_primary(1) is None
        assert await marker_store.list_secondaries(1) == []
        assert await marker_store.get_conference(1) is None
        assert notifier.of_type(SESSION_ENDED)[0]["reason"] == "agent_stopped"

    @pytest.mark.asyncio
    async def test_end_session_is_idempotent(self, controller, dialer, marker_store, telephony, urls):
        await controller.start_session(1, urls)
        await dialer.queue.admit(1, "line-0", "CA0")

        await controller.end_session(1)
        second = await controller.end_session(1)

        assert second["markersCleared"] == 0
        assert second["canceledLines"] == 0
        assert second["errors"] == []
        assert await marker_store.get_conference(1) is None
        assert await marker_store.get_primary(1) is None
        assert len(telephony.ended_conferences) == 1

    @pytest.mark.asyncio
    async def test_already_gone_calls_count_as_done(self, controller, dialer, telephony, urls):
        descriptor = await controller.start_session(1, urls)
        await dialer.queue.admit(1, "line-0", "CA0")
        telephony.gone.update({descriptor.agent_call_sid, "CA0"})

        summary = await controller.end_session(1)

        assert summary["errors"] == []
        assert summary["agentHungUp"] is False

    @pytest.mark.asyncio
    async def test_call_answered_during_teardown_is_hung_up(
        self, controller, dialer, telephony, marker_store, make_attempt, urls, monkeypatch
    ):
        await controller.start_session(1, urls)
        await make_attempt("CA2", "line-2", status="ringing")
        cancel_call = telephony.cancel_call

        async def cancel_while_another_line_answers(call_sid):
            await dialer.queue.admit(1, "line-3", "CA-late")
            return await cancel_call(call_sid)

        monkeypatch.setattr(telephony, "cancel_call", cancel_while_another_line_answers)
        summary = await controller.end_session(1)

        assert summary["lateCallsHungUp"] == 1
        assert "CA-late" in telephony.hung_up
        assert await marker_store.get_primary(1) is None
        assert await marker_store.get_conference(1) is None


class TestConferenceExpiry:
    """Test the conference TTL."""

    @pytest.mark.asyncio
    async def test_scenario_c_expired_conference_is_cleared(
        self, controller, dialer, marker_store, jobs, telephony, clock, urls
    ):
        old = await controller.start_session(1, urls)
        await dialer.queue.admit(1, "line-0", "CA0")
        await dialer.queue.admit(1, "line-1", "CA1")

        clock.advance(minutes=10, seconds=1)
        assert await controller.get_active(1) is None

        # Markers are gone at once; provider teardown waits in the job queue
        assert await marker_store.get_primary(1) is None
        assert await marker_store.list_secondaries(1) == []
        assert await marker_store.get_conference(1) is None
        assert jobs.names == [f"conference-expiry:{old.conference_name}"]

        await jobs.run_pending()
        assert telephony.ended_conferences == [old.conference_name]
        assert "CA1" in telephony.hung_up

        clock.advance(seconds=1)
        fresh = await controller.start_session(1, urls)
        assert fresh.start_time == clock()
        assert (await dialer.queue.admit(1, "line-0", "CA9")).is_primary

    @pytest.mark.asyncio
    async def test_conference_within_ttl_stays(self, controller, clock, urls):
        descriptor = await controller.start_session(1, urls)
        clock.advance(minutes=9, seconds=59)

        active = await controller.get_active(1)
        assert active.conference_name == descriptor.conference_name


class TestConferenceEvents:
    """Test conference status callbacks."""

    @pytest.mark.asyncio
    async def test_agent_join_marks_ready(self, controller, marker_store, notifier, urls):
        descriptor = await controller.start_session(1, urls)

        handled = await controller.handle_event(
            1,
            descriptor.conference_name,
            "participant-join",
            call_sid=descriptor.agent_call_sid,
            conference_sid="CF1",
            participant_label="agent",
            start_on_enter=True,
        )

        assert handled is True
        stored = await marker_store.get_conference(1)
        assert stored.conference_started is True
        assert stored.conference_sid == "CF1"
        assert notifier.of_type(CONFERENCE_READY)[0]["conferenceSid"] == "CF1"

    @pytest.mark.asyncio
    async def test_customer_join_does_not_start(self, controller, marker_store, notifier, urls):
        descriptor = await controller.start_session(1, urls)

        await controller.handle_event(
            1, descriptor.conference_name, "participant-join",
            call_sid="CA0", participant_label="line-0", start_on_enter=False,
        )

        assert (await marker_store.get_conference(1)).conference_started is False
        assert notifier.of_type(CONFERENCE_READY) == []
        assert notifier.of_type(CONFERENCE_STATUS)[-1]["event"] == "participant-join"

    @pytest.mark.asyncio
    async def test_agent_leave_ends_conference(self, controller, marker_store, urls):
        descriptor = await controller.start_session(1, urls)

        await controller.handle_event(
            1, descriptor.conference_name, "participant-leave",
            call_sid=descriptor.agent_call_sid, participant_label="agent",
        )

        assert (await marker_store.get_conference(1)).status == "ended"
        assert await controller.get_active(1) is None

    @pytest.mark.asyncio
    async def test_other_conference_is_ignored(self, controller, marker_store, notifier, urls):
        await controller.start_session(1, urls)
        before = len(notifier.events)

        handled = await controller.handle_event(
            1, "parallel-dialer-1-999", "conference-end", conference_sid="CFold"
        )

        assert handled is False
        assert (await marker_store.get_conference(1)).is_active
        assert len(notifier.events) == before

    @pytest.mark.asyncio
    async def test_conference_end_releases_calls_before_next_session(
        self, controller, dialer, marker_store, jobs, telephony, urls
    ):
        descriptor = await controller.start_session(1, urls)
        await dialer.queue.admit(1, "line-0", "CA-old")
        await dialer.queue.admit(1, "line-2", "CA-held")

        await controller.handle_event(1, descriptor.conference_name, "conference-end", conference_sid="CF1")

        assert await marker_store.get_primary(1) is None
        assert await marker_store.list_secondaries(1) == []
        assert (await marker_store.get_conference(1)).status == "ended"
        assert jobs.names == [f"conference-ended:{descriptor.conference_name}"]

        await jobs.run_pending()
        assert {"CA-old", "CA-held"} <= set(telephony.hung_up)
        assert telephony.canceled == []

        await controller.start_session(1, urls)
        result = await dialer.queue.admit(1, "line-1", "CA-new")
        assert result.is_primary
        assert (await marker_store.get_primary(1)).call_sid == "CA-new"


class TestHangup:
    """Test the agent hangup command."""

    @pytest.mark.asyncio
    async def test_agent_leg_is_refused(self, controller, urls):
        descriptor = await controller.start_session(1, urls)

        with pytest.raises(CommandError) as exc_info:
            await controller.hangup(1, descriptor.agent_call_sid, urls)

        assert exc_info.value.code == "CANNOT_HANGUP_AGENT_LEG"

    @pytest.mark.asyncio
    async def test_hangup_primary_promotes(self, controller, dialer, telephony, notifier, make_attempt, urls):
        await make_attempt("CA0", "line-0", status="in-progress")
        await make_attempt("CA1", "line-1", status="in-progress")
        await dialer.queue.admit(1, "line-0", "CA0")
        await dialer.queue.admit(1, "line-1", "CA1")

        result = await controller.hangup(1, "CA0", urls)

        assert telephony.hung_up == ["CA0"]
        assert result["promotedLineId"] == "line-1"
        assert len(notifier.of_type(QUEUE_PROMOTED)) == 1

    @pytest.mark.asyncio
    async def test_hangup_other_users_call_is_not_found(self, controller, make_attempt, urls):
        await make_attempt("CA-other", "line-0", user_id=2)

        with pytest.raises(CommandError) as exc_info:
            await controller.hangup(1, "CA-other", urls)

        assert exc_info.value.status_code == 404


def test_owns_conference():
    assert owns_conference(1, "parallel-dialer-1-1700000000000")
    assert not owns_conference(1, "parallel-dialer-12-1700000000000")
    assert not owns_conference(1, "")
