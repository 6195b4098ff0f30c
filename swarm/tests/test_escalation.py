"""Tests for the escalation gate."""

import asyncio

import pytest

from swarm.errors import EscalationError
from swarm.escalation import (
    EscalationAction,
    EscalationGate,
    EscalationRequest,
    PolicyResponder,
)
from swarm.events import EventBus, EventKind


def request(task_id: str = "1") -> EscalationRequest:
    return EscalationRequest(
        task_id=task_id,
        task_title=f"Task {task_id}",
        reason="Layer 3 (Build + Tests) failed",
        attempts=3,
        validation_summary="Layer 3 (Build + Tests): FAIL",
        worktree_path="/tmp/wt",
    )


@pytest.fixture
def bus():
    return EventBus()


@pytest.fixture
def events(bus):
    received = []
    bus.subscribe(received.append)
    return received


class BrokenResponder:
    """Responder whose input source has gone away."""

    async def decide(self, request: EscalationRequest) -> EscalationAction:
        raise EOFError("stdin closed")

    async def manual_fix_done(self, request: EscalationRequest) -> None:
        raise EOFError("stdin closed")


async def until(condition, timeout: float = 2.0) -> None:
    """Yield to the loop until condition() holds."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not condition():
        if loop.time() > deadline:
            raise AssertionError("condition not reached")
        await asyncio.sleep(0.01)


class TestEscalationAction:
    """Tests for EscalationAction.parse()."""

    @pytest.mark.parametrize(
        "value,expected",
        [
            ("retry", EscalationAction.RETRY),
            ("S", EscalationAction.SKIP),
            ("manual", EscalationAction.MANUAL_FIX),
            ("manual-fix", EscalationAction.MANUAL_FIX),
            (" abort ", EscalationAction.ABORT),
        ],
    )
    def test_parse(self, value, expected):
        assert EscalationAction.parse(value) == expected

    def test_unknown_action(self):
        with pytest.raises(EscalationError, match="Unknown escalation action"):
            EscalationAction.parse("later")


class TestEscalationGate:
    """Tests for EscalationGate."""

    @pytest.mark.asyncio
    async def test_publishes_event_and_waits_for_answer(self, bus, events):
        gate = EscalationGate(bus)

        waiter = asyncio.create_task(gate.escalate(request()))
        await until(lambda: gate.in_progress)
        gate.respond(EscalationAction.SKIP)

        assert await waiter == EscalationAction.SKIP
        escalation = events[0]
        assert escalation.kind == EventKind.TASK_ESCALATION
        assert escalation.metadata["attempts"] == 3
        assert escalation.metadata["worktree_path"] == "/tmp/wt"
        assert not gate.in_progress

    def test_respond_without_escalation_raises(self, bus):
        with pytest.raises(EscalationError, match="no escalation in progress"):
            EscalationGate(bus).respond(EscalationAction.RETRY)

    @pytest.mark.asyncio
    async def test_timeout_aborts(self, bus):
        gate = EscalationGate(bus, timeout=0.05)

        assert await gate.escalate(request()) == EscalationAction.ABORT

    @pytest.mark.asyncio
    async def test_responder_answers(self, bus):
        gate = EscalationGate(bus, responder=PolicyResponder(EscalationAction.RETRY))

        assert await gate.escalate(request()) == EscalationAction.RETRY

    @pytest.mark.asyncio
    async def test_concurrent_escalations_are_serialised(self, bus, events):
        gate = EscalationGate(bus)

        first = asyncio.create_task(gate.escalate(request("1")))
        second = asyncio.create_task(gate.escalate(request("2")))
        await until(lambda: gate.in_progress)
        await asyncio.sleep(0.02)

        assert [e.task_id for e in events] == ["1"]
        gate.respond(EscalationAction.SKIP)
        assert await first == EscalationAction.SKIP

        await until(lambda: gate.in_progress)
        assert gate.current.task_id == "2"
        gate.respond(EscalationAction.ABORT)
        assert await second == EscalationAction.ABORT

    @pytest.mark.asyncio
    async def test_manual_fix_waits_for_resume(self, bus):
        gate = EscalationGate(bus)
        req = request()

        waiter = asyncio.create_task(gate.wait_for_resume(req))
        await asyncio.sleep(0.01)
        assert not waiter.done()

        gate.resume()
        await asyncio.wait_for(waiter, 1)

    @pytest.mark.asyncio
    async def test_failing_responder_aborts(self, bus, caplog):
        """A responder error resolves the escalation instead of hanging it."""
        gate = EscalationGate(bus, responder=BrokenResponder(), timeout=None)

        action = await asyncio.wait_for(gate.escalate(request()), 1)

        assert action == EscalationAction.ABORT
        assert not gate.in_progress
        assert "Escalation responder failed for 1" in caplog.text

    @pytest.mark.asyncio
    async def test_failing_manual_fix_responder_raises(self, bus, caplog):
        gate = EscalationGate(bus, responder=BrokenResponder())

        with pytest.raises(EscalationError, match="manual fix for 1 failed"):
            await asyncio.wait_for(gate.wait_for_resume(request()), 1)

        assert gate.awaiting_manual_fix == []
        assert "Manual fix responder failed for 1" in caplog.text

    @pytest.mark.asyncio
    async def test_awaiting_manual_fix_lists_waiting_tasks(self, bus):
        gate = EscalationGate(bus)

        first = asyncio.create_task(gate.wait_for_resume(request("1")))
        second = asyncio.create_task(gate.wait_for_resume(request("2")))
        await until(lambda: len(gate.awaiting_manual_fix) == 2)

        gate.resume("2")
        await asyncio.wait_for(second, 1)
        assert gate.awaiting_manual_fix == ["1"]
        gate.resume()
        await asyncio.wait_for(first, 1)

    def test_resume_without_manual_fix_raises(self, bus):
        with pytest.raises(EscalationError):
            EscalationGate(bus).resume("1")


class TestPolicyResponder:
    """Tests for PolicyResponder."""

    def test_manual_fix_rejected(self):
        with pytest.raises(ValueError):
            PolicyResponder(EscalationAction.MANUAL_FIX)

    @pytest.mark.asyncio
    async def test_always_same_action(self):
        responder = PolicyResponder(EscalationAction.SKIP)

        assert await responder.decide(request("1")) == EscalationAction.SKIP
        assert await responder.decide(request("2")) == EscalationAction.SKIP
