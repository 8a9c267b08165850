"""Cancellation primitives.

``CancelToken`` is the one cancellation signal of an export session (and of
the render running inside a worker). ``ProcessTerminator`` escalates stopping
a process through ``RUNNING -> CANCEL_REQUESTED -> GRACE_PERIOD ->
FORCE_TERMINATED``, or ends in ``EXITED`` as soon as the process goes away.
"""

import asyncio
import logging
from enum import Enum
from typing import Callable, Optional

from renderfleet.exceptions import ExportCancelledError

logger = logging.getLogger(__name__)


class CancelToken:
    """One-shot cancellation signal, used from a single event loop."""

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self._callbacks: list[Callable[[], None]] = []
        self.reason: Optional[str] = None

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: str = "Export cancelled by user") -> bool:
        """Signal cancellation. Returns False if already cancelled."""
        if self._event.is_set():
            return False
        self.reason = reason
        self._event.set()
        callbacks, self._callbacks = self._callbacks, []
        for callback in callbacks:
            try:
                callback()
            except Exception:
                logger.exception("[CANCEL] Cancel callback failed")
        return True

    def add_callback(self, callback: Callable[[], None]) -> Callable[[], None]:
        """Run ``callback`` on cancellation; returns a function that unregisters it.

        Runs immediately if the token is already cancelled.
        """
        if self._event.is_set():
            callback()
            return lambda: None
        self._callbacks.append(callback)

        def remove() -> None:
            if callback in self._callbacks:
                self._callbacks.remove(callback)

        return remove

    async def wait(self) -> None:
        await self._event.wait()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise ExportCancelledError(self.reason)


class TerminationState(str, Enum):
    """Escalation states while stopping a process."""

    RUNNING = "running"
    CANCEL_REQUESTED = "cancel_requested"
    GRACE_PERIOD = "grace_period"
    FORCE_TERMINATED = "force_terminated"
    EXITED = "exited"


_ALLOWED_TRANSITIONS: dict[TerminationState, set[TerminationState]] = {
    TerminationState.RUNNING: {TerminationState.CANCEL_REQUESTED, TerminationState.EXITED},
    TerminationState.CANCEL_REQUESTED: {TerminationState.GRACE_PERIOD, TerminationState.EXITED},
    TerminationState.GRACE_PERIOD: {TerminationState.FORCE_TERMINATED, TerminationState.EXITED},
    TerminationState.FORCE_TERMINATED: set(),
    TerminationState.EXITED: set(),
}


class ProcessTerminator:
    """Stop one process: polite request, grace period, then force kill.

    The three callables decouple the escalation from the process type, so the
    same machine drives worker processes (cancel message / SIGTERM / SIGKILL)
    and transcoder subprocesses (SIGTERM / SIGKILL).
    """

    def __init__(
        self,
        name: str,
        *,
        request_stop: Callable[[], None],
        force_kill: Callable[[], None],
        is_alive: Callable[[], bool],
        grace_s: float,
        poll_interval_s: float = 0.05,
    ):
        self.name = name
        self._request_stop = request_stop
        self._force_kill = force_kill
        self._is_alive = is_alive
        self.grace_s = grace_s
        self.poll_interval_s = poll_interval_s
        self.state = TerminationState.RUNNING
        self.history: list[TerminationState] = [TerminationState.RUNNING]

    def _transition(self, new_state: TerminationState) -> None:
        if new_state not in _ALLOWED_TRANSITIONS[self.state]:
            raise RuntimeError(f"Invalid termination transition {self.state.value} -> {new_state.value}")
        logger.debug(f"[TERMINATE] {self.name}: {self.state.value} -> {new_state.value}")
        self.state = new_state
        self.history.append(new_state)

    async def terminate(self) -> TerminationState:
        """Run the escalation to completion and return the final state."""
        if self.state is not TerminationState.RUNNING:
            return self.state

        if not self._is_alive():
            self._transition(TerminationState.EXITED)
            return self.state

        self._transition(TerminationState.CANCEL_REQUESTED)
        try:
            self._request_stop()
        except (OSError, ValueError) as e:
            logger.debug(f"[TERMINATE] {self.name}: stop request failed: {e}")

        self._transition(TerminationState.GRACE_PERIOD)
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.grace_s
        while loop.time() < deadline:
            if not self._is_alive():
                self._transition(TerminationState.EXITED)
                return self.state
            await asyncio.sleep(self.poll_interval_s)

        if not self._is_alive():
            self._transition(TerminationState.EXITED)
            return self.state

        logger.warning(f"[TERMINATE] {self.name} ignored stop for {self.grace_s:.1f}s, killing")
        self._transition(TerminationState.FORCE_TERMINATED)
        try:
            self._force_kill()
        except (OSError, ValueError) as e:
            logger.debug(f"[TERMINATE] {self.name}: kill failed: {e}")
        return self.state
