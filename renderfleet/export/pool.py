"""Supervised pool of long-lived render worker processes.

Workers are addressed by name. The pool spawns a worker on first use, talks
to it over two one-way pipes, watches its heartbeats and restarts it a
bounded number of times when it dies or goes silent. Requests carry their
own timeout; a timed-out request rejects without killing the worker.
"""

import asyncio
import logging
import multiprocessing
import time
from dataclasses import dataclass, field
from enum import Enum
from multiprocessing.connection import Connection
from multiprocessing.context import BaseContext
from multiprocessing.process import BaseProcess
from typing import Any, Optional

from renderfleet.config import Settings, get_settings
from renderfleet.exceptions import WorkerExitedError, WorkerSpawnError, WorkerTimeoutError
from renderfleet.export.cancellation import ProcessTerminator
from renderfleet.export.ipc import (
    Command,
    ExportRequest,
    ExportResponse,
    Heartbeat,
    PipeReader,
    ProgressMessage,
    Request,
    Response,
    ShutdownRequest,
    StatusRequest,
    StatusResponse,
    WorkerReady,
    new_request_id,
)
from renderfleet.export.models import ProgressEvent
from renderfleet.export.progress import LatestValueChannel
from renderfleet.export.worker import worker_main

logger = logging.getLogger(__name__)


class WorkerState(str, Enum):
    STARTING = "starting"
    IDLE = "idle"
    BUSY = "busy"
    RESTARTING = "restarting"
    FAILED = "failed"
    STOPPED = "stopped"


@dataclass(eq=False)
class WorkerHandle:
    """Parent-side view of one worker process."""

    name: str
    memory_limit_mb: Optional[int]
    max_restarts: int
    state: WorkerState = WorkerState.STARTING
    restarts: int = 0
    pid: Optional[int] = None
    last_heartbeat: float = 0.0
    last_rss_mb: float = 0.0
    process: Optional[BaseProcess] = None
    requests: Optional[Connection] = None
    events: Optional[Connection] = None
    reader: Optional[PipeReader] = None
    # Bumped on every spawn so callbacks from a dead process are ignored
    generation: int = 0
    pending: dict[str, asyncio.Future] = field(default_factory=dict)
    ready: Optional[asyncio.Future] = None
    progress: LatestValueChannel[ProgressEvent] = field(default_factory=LatestValueChannel)

    @property
    def is_alive(self) -> bool:
        return self.process is not None and self.process.is_alive()

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "state": self.state.value,
            "pid": self.pid,
            "restarts": self.restarts,
            "memory_limit_mb": self.memory_limit_mb,
            "rss_mb": round(self.last_rss_mb, 1),
        }


class SupervisedWorkerPool:
    """Spawns, supervises and tears down named worker processes."""

    def __init__(self, settings: Optional[Settings] = None, mp_context: Optional[BaseContext] = None):
        self.settings = settings or get_settings()
        # spawn: workers must not inherit the parent's event loop or threads
        self._ctx = mp_context or multiprocessing.get_context("spawn")
        self._workers: dict[str, WorkerHandle] = {}
        self._monitor_task: Optional[asyncio.Task] = None
        self._restart_tasks: set[asyncio.Task] = set()

    def get(self, name: str) -> Optional[WorkerHandle]:
        return self._workers.get(name)

    def handles(self) -> list[WorkerHandle]:
        return list(self._workers.values())

    # ========================================================================
    # Lifecycle
    # ========================================================================

    async def get_or_create(
        self,
        name: str,
        *,
        memory_limit_mb: Optional[int] = None,
        max_restarts: Optional[int] = None,
    ) -> WorkerHandle:
        """Return the live worker called ``name``, spawning it if needed.

        Raises:
            WorkerSpawnError: If the process does not report ready in time
        """
        handle = self._workers.get(name)
        if handle is not None:
            if handle.state is WorkerState.RESTARTING and handle.ready is not None:
                await self._wait_ready(handle)
                return handle
            if handle.state in (WorkerState.IDLE, WorkerState.BUSY) and handle.is_alive:
                return handle
            # Failed or dead: replace it with a fresh worker and a fresh restart budget
            await self.destroy(name)

        handle = WorkerHandle(
            name=name,
            memory_limit_mb=memory_limit_mb,
            max_restarts=self.settings.worker_primary_max_restarts if max_restarts is None else max_restarts,
        )
        self._workers[name] = handle
        self._ensure_monitor()
        try:
            await self._spawn(handle)
        except WorkerSpawnError:
            await self.destroy(name)
            raise
        return handle

    async def _spawn(self, handle: WorkerHandle) -> None:
        loop = asyncio.get_running_loop()
        handle.generation += 1
        generation = handle.generation
        handle.state = WorkerState.STARTING
        if handle.ready is None or handle.ready.done():
            handle.ready = loop.create_future()

        request_reader, request_writer = self._ctx.Pipe(duplex=False)
        event_reader, event_writer = self._ctx.Pipe(duplex=False)
        process = self._ctx.Process(
            target=worker_main,
            args=(handle.name, request_reader, event_writer, self.settings.model_dump(), handle.memory_limit_mb),
            name=f"renderfleet-{handle.name}",
            daemon=True,
        )
        try:
            process.start()
        except OSError as e:
            for conn in (request_reader, request_writer, event_reader, event_writer):
                conn.close()
            raise WorkerSpawnError(handle.name, str(e)) from e

        # Drop the child's ends so a dead child shows up as EOF
        request_reader.close()
        event_writer.close()

        handle.process = process
        handle.pid = process.pid
        handle.requests = request_writer
        handle.events = event_reader
        handle.last_heartbeat = time.monotonic()
        handle.reader = PipeReader(
            event_reader,
            loop,
            lambda message: self._on_message(handle, generation, message),
            lambda: self._on_closed(handle, generation),
            name=f"{handle.name}-events",
        )
        handle.reader.start()
        logger.info(
            f"[POOL] Spawned worker {handle.name} (pid {process.pid}, "
            f"memory limit {handle.memory_limit_mb or 'none'}MB)"
        )
        await self._wait_ready(handle)

    async def _wait_ready(self, handle: WorkerHandle) -> None:
        assert handle.ready is not None
        try:
            await asyncio.wait_for(asyncio.shield(handle.ready), self.settings.worker_spawn_timeout_s)
        except asyncio.TimeoutError as e:
            raise WorkerSpawnError(
                handle.name, f"not ready after {self.settings.worker_spawn_timeout_s:.0f}s"
            ) from e
        except WorkerExitedError as e:
            raise WorkerSpawnError(handle.name, e.message) from e

    def _close_connections(self, handle: WorkerHandle) -> None:
        if handle.reader is not None:
            handle.reader.stop()
            handle.reader = None
        for conn in (handle.requests, handle.events):
            if conn is not None:
                try:
                    conn.close()
                except OSError:
                    pass
        handle.requests = None
        handle.events = None

    def _fail_pending(self, handle: WorkerHandle, error: Exception) -> None:
        pending, handle.pending = handle.pending, {}
        for future in pending.values():
            if not future.done():
                future.set_exception(error)
        if handle.ready is not None and not handle.ready.done():
            handle.ready.set_exception(error)
            # Nobody may be awaiting a restart's readiness
            handle.ready.exception()

    # ========================================================================
    # Worker events
    # ========================================================================

    def _on_message(self, handle: WorkerHandle, generation: int, message: Any) -> None:
        if generation != handle.generation:
            return

        match message:
            case WorkerReady(pid=pid):
                handle.pid = pid
                handle.state = WorkerState.IDLE
                handle.last_heartbeat = time.monotonic()
                if handle.ready is not None and not handle.ready.done():
                    handle.ready.set_result(None)
                logger.info(f"[POOL] Worker {handle.name} ready (pid {pid})")
            case Heartbeat(rss_mb=rss_mb):
                handle.last_heartbeat = time.monotonic()
                handle.last_rss_mb = rss_mb
                if handle.memory_limit_mb and rss_mb > handle.memory_limit_mb:
                    logger.warning(
                        f"[POOL] Worker {handle.name} RSS {rss_mb:.0f}MB above its {handle.memory_limit_mb}MB ceiling"
                    )
            case ProgressMessage(event=event):
                handle.progress.publish(event)
            case ExportResponse(request_id=request_id) | StatusResponse(request_id=request_id):
                future = handle.pending.pop(request_id, None)
                if future is not None and not future.done():
                    future.set_result(message)
            case _:
                logger.warning(f"[POOL] Worker {handle.name} sent unknown message {type(message).__name__}")

    def _on_closed(self, handle: WorkerHandle, generation: int) -> None:
        if generation != handle.generation or handle.state is WorkerState.STOPPED:
            return

        exitcode = handle.process.exitcode if handle.process is not None else None
        logger.warning(f"[POOL] Worker {handle.name} exited unexpectedly (exit code {exitcode})")
        self._close_connections(handle)
        self._fail_pending(handle, WorkerExitedError(handle.name, exitcode))
        self._schedule_restart(handle)

    def _schedule_restart(self, handle: WorkerHandle) -> None:
        if handle.restarts >= handle.max_restarts:
            handle.state = WorkerState.FAILED
            logger.error(f"[POOL] Worker {handle.name} failed permanently after {handle.restarts} restarts")
            self._fail_pending(handle, WorkerSpawnError(handle.name, "restart limit reached"))
            return

        handle.restarts += 1
        handle.state = WorkerState.RESTARTING
        # Callers arriving during the restart wait on this
        handle.ready = asyncio.get_running_loop().create_future()
        logger.info(f"[POOL] Restarting worker {handle.name} ({handle.restarts}/{handle.max_restarts})")
        task = asyncio.create_task(self._restart(handle))
        self._restart_tasks.add(task)
        task.add_done_callback(self._restart_tasks.discard)

    async def _restart(self, handle: WorkerHandle) -> None:
        if handle.process is not None:
            handle.process.join(timeout=0)
        if self._workers.get(handle.name) is not handle:
            return
        try:
            await self._spawn(handle)
        except WorkerSpawnError as e:
            logger.error(f"[POOL] Restart of {handle.name} failed: {e.message}")
            if handle.state is not WorkerState.STARTING:
                # Stopped, or the exit callback already scheduled the next attempt
                return
            # Silence callbacks from the unresponsive process before retrying
            handle.generation += 1
            if handle.is_alive:
                handle.process.kill()
            self._close_connections(handle)
            self._schedule_restart(handle)

    def _ensure_monitor(self) -> None:
        if self._monitor_task is None or self._monitor_task.done():
            self._monitor_task = asyncio.create_task(self._monitor())

    async def _monitor(self) -> None:
        """Kill workers that stopped heartbeating; their exit triggers a restart."""
        s = self.settings
        while True:
            await asyncio.sleep(s.worker_heartbeat_interval_s)
            now = time.monotonic()
            for handle in list(self._workers.values()):
                if handle.state not in (WorkerState.IDLE, WorkerState.BUSY):
                    continue
                silent_for = now - handle.last_heartbeat
                if silent_for > s.worker_heartbeat_timeout_s and handle.is_alive:
                    logger.warning(f"[POOL] Worker {handle.name} missed heartbeats for {silent_for:.0f}s, killing")
                    handle.process.kill()

    # ========================================================================
    # Messaging
    # ========================================================================

    def send(self, handle: WorkerHandle, message: Command) -> bool:
        """Fire-and-forget. Returns False if the worker is unreachable."""
        if handle.requests is None:
            return False
        try:
            handle.requests.send(message)
            return True
        except (OSError, ValueError) as e:
            logger.debug(f"[POOL] Send to {handle.name} failed: {e}")
            return False

    async def request(self, handle: WorkerHandle, request: Request, timeout_ms: int) -> Response:
        """Send ``request`` and wait for its response.

        Raises:
            WorkerTimeoutError: No response within ``timeout_ms``
            WorkerExitedError: The worker died (or was unreachable) before answering
        """
        if handle.state in (WorkerState.RESTARTING, WorkerState.STARTING) and handle.ready is not None:
            await self._wait_ready(handle)
        if handle.state in (WorkerState.FAILED, WorkerState.STOPPED) or not handle.is_alive:
            raise WorkerExitedError(handle.name, handle.process.exitcode if handle.process else None)

        future: asyncio.Future = asyncio.get_running_loop().create_future()
        handle.pending[request.request_id] = future
        is_export = isinstance(request, ExportRequest)
        if is_export:
            handle.state = WorkerState.BUSY

        try:
            if not self.send(handle, request):
                raise WorkerExitedError(handle.name, handle.process.exitcode if handle.process else None)
            try:
                return await asyncio.wait_for(asyncio.shield(future), timeout_ms / 1000)
            except asyncio.TimeoutError as e:
                logger.warning(f"[POOL] Request to {handle.name} timed out after {timeout_ms}ms")
                raise WorkerTimeoutError(handle.name, timeout_ms) from e
        finally:
            handle.pending.pop(request.request_id, None)
            if not future.done():
                future.cancel()
            if is_export and handle.state is WorkerState.BUSY:
                handle.state = WorkerState.IDLE

    async def status(self, handle: WorkerHandle) -> StatusResponse:
        """Ask the worker whether it is exporting, within ``worker_status_timeout_ms``."""
        return await self.request(handle, StatusRequest(new_request_id()), self.settings.worker_status_timeout_ms)

    # ========================================================================
    # Teardown
    # ========================================================================

    async def destroy(self, name: str) -> None:
        """Stop and forget a worker. Safe to call for unknown or dead workers."""
        handle = self._workers.pop(name, None)
        if handle is None:
            return

        handle.state = WorkerState.STOPPED
        process = handle.process
        if process is not None:
            terminator = ProcessTerminator(
                handle.name,
                request_stop=lambda: self.send(handle, ShutdownRequest()),
                force_kill=process.kill,
                is_alive=process.is_alive,
                grace_s=self.settings.worker_cancel_grace_s,
            )
            final_state = await terminator.terminate()
            await asyncio.to_thread(process.join, 1.0)
            logger.info(f"[POOL] Worker {handle.name} stopped ({final_state.value})")

        self._close_connections(handle)
        self._fail_pending(handle, WorkerExitedError(handle.name, process.exitcode if process else None))
        handle.progress.close()

    async def destroy_all(self) -> None:
        await asyncio.gather(*(self.destroy(name) for name in list(self._workers)))
        for task in list(self._restart_tasks):
            task.cancel()
        if self._monitor_task is not None:
            self._monitor_task.cancel()
            await asyncio.gather(self._monitor_task, return_exceptions=True)
            self._monitor_task = None
