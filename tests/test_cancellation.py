"""Tests for cancellation primitives.

Features:
- One-shot cancel token with callbacks
- Process termination escalation (request, grace period, force kill)
"""

import asyncio

import pytest

from renderfleet.exceptions import ExportCancelledError
from renderfleet.export.cancellation import CancelToken, ProcessTerminator, TerminationState


class FakeProcess:
    """Process stand-in that optionally exits when asked to stop."""

    def __init__(self, alive: bool = True, exits_on_stop: bool = True, stop_error: Exception | None = None):
        self.alive = alive
        self.exits_on_stop = exits_on_stop
        self.stop_error = stop_error
        self.stop_calls = 0
        self.kill_calls = 0

    def request_stop(self):
        self.stop_calls += 1
        if self.stop_error:
            raise self.stop_error
        if self.exits_on_stop:
            self.alive = False

    def kill(self):
        self.kill_calls += 1
        self.alive = False

    def is_alive(self):
        return self.alive

    def terminator(self, grace_s: float = 0.2) -> ProcessTerminator:
        return ProcessTerminator(
            "fake",
            request_stop=self.request_stop,
            force_kill=self.kill,
            is_alive=self.is_alive,
            grace_s=grace_s,
            poll_interval_s=0.01,
        )


class TestCancelToken:
    """Tests for CancelToken."""

    def test_cancel_once(self):
        token = CancelToken()

        assert token.cancel("stop") is True
        assert token.cancel("again") is False
        assert token.cancelled is True
        assert token.reason == "stop"

    def test_callbacks_run_once(self):
        token = CancelToken()
        calls = []
        token.add_callback(lambda: calls.append("a"))

        token.cancel()
        token.cancel()

        assert calls == ["a"]

    def test_callback_after_cancel_runs_immediately(self):
        token = CancelToken()
        token.cancel()
        calls = []

        token.add_callback(lambda: calls.append("late"))

        assert calls == ["late"]

    def test_removed_callback_not_called(self):
        token = CancelToken()
        calls = []
        remove = token.add_callback(lambda: calls.append("x"))

        remove()
        token.cancel()

        assert calls == []

    def test_failing_callback_does_not_block_others(self):
        token = CancelToken()
        calls = []

        def boom():
            raise RuntimeError("callback failed")

        token.add_callback(boom)
        token.add_callback(lambda: calls.append("ok"))
        token.cancel()

        assert calls == ["ok"]

    def test_raise_if_cancelled(self):
        token = CancelToken()
        token.raise_if_cancelled()

        token.cancel("user pressed cancel")

        with pytest.raises(ExportCancelledError, match="user pressed cancel") as exc_info:
            token.raise_if_cancelled()
        assert exc_info.value.kind == "cancelled"

    @pytest.mark.asyncio
    async def test_wait(self):
        token = CancelToken()
        waiter = asyncio.create_task(token.wait())
        await asyncio.sleep(0)
        assert not waiter.done()

        token.cancel()

        await asyncio.wait_for(waiter, timeout=1)


class TestProcessTerminator:
    """Tests for ProcessTerminator escalation."""

    @pytest.mark.asyncio
    async def test_cooperative_exit(self):
        process = FakeProcess()
        terminator = process.terminator()

        state = await terminator.terminate()

        assert state is TerminationState.EXITED
        assert terminator.history == [
            TerminationState.RUNNING,
            TerminationState.CANCEL_REQUESTED,
            TerminationState.GRACE_PERIOD,
            TerminationState.EXITED,
        ]
        assert process.kill_calls == 0

    @pytest.mark.asyncio
    async def test_force_kill_after_grace(self):
        process = FakeProcess(exits_on_stop=False)
        terminator = process.terminator(grace_s=0.05)

        state = await terminator.terminate()

        assert state is TerminationState.FORCE_TERMINATED
        assert terminator.history[-2:] == [TerminationState.GRACE_PERIOD, TerminationState.FORCE_TERMINATED]
        assert process.stop_calls == 1
        assert process.kill_calls == 1

    @pytest.mark.asyncio
    async def test_already_exited(self):
        process = FakeProcess(alive=False)
        terminator = process.terminator()

        state = await terminator.terminate()

        assert state is TerminationState.EXITED
        assert terminator.history == [TerminationState.RUNNING, TerminationState.EXITED]
        assert process.stop_calls == 0

    @pytest.mark.asyncio
    async def test_stop_request_failure_still_escalates(self):
        process = FakeProcess(exits_on_stop=False, stop_error=OSError("pipe closed"))
        terminator = process.terminator(grace_s=0.05)

        state = await terminator.terminate()

        assert state is TerminationState.FORCE_TERMINATED
        assert process.kill_calls == 1

    @pytest.mark.asyncio
    async def test_terminate_is_idempotent(self):
        process = FakeProcess(exits_on_stop=False)
        terminator = process.terminator(grace_s=0.05)
        await terminator.terminate()

        state = await terminator.terminate()

        assert state is TerminationState.FORCE_TERMINATED
        assert process.stop_calls == 1
        assert process.kill_calls == 1

    @pytest.mark.asyncio
    async def test_terminal_states_have_no_transitions(self):
        process = FakeProcess(alive=False)
        terminator = process.terminator()
        await terminator.terminate()

        with pytest.raises(RuntimeError, match="Invalid termination transition"):
            terminator._transition(TerminationState.FORCE_TERMINATED)
