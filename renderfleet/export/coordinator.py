"""Export coordinator.

Owns one export session at a time: profiles the machine, plans chunks and
workers, applies export constraints, then renders either sequentially on the
primary worker or in parallel across ``export-par-{i}`` workers and combines
the chunks centrally. Every await on a worker races the session's cancel
token, so cancellation settles promptly even when a worker does not react.
"""

import asyncio
import logging
import os
import tempfile
import time
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Awaitable, Callable, Optional, TypeVar
from uuid import uuid4

from renderfleet.config import Settings, get_settings
from renderfleet.exceptions import (
    ExportCancelledError,
    ExportError,
    ExportInProgressError,
    RenderError,
    error_from_kind,
)
from renderfleet.export.cancellation import CancelToken
from renderfleet.export.combiner import ChunkCombiner
from renderfleet.export.ipc import CancelRequest, ExportRequest, new_request_id
from renderfleet.export.models import (
    ChunkPlanEntry,
    ChunkResult,
    ContentMetrics,
    ExportJob,
    ExportResult,
    MachineProfile,
    ProgressEvent,
    WorkerAllocation,
    build_chunk_plan,
)
from renderfleet.export.planner import ExportPlanner
from renderfleet.export.pool import SupervisedWorkerPool, WorkerHandle
from renderfleet.export.presets import (
    FAST_PRESET_MAX_CONCURRENCY,
    QualityPreset,
    effective_memory_gb,
    primary_worker_memory_mb,
    resolve_encode_settings,
    video_cache_size_bytes,
)
from renderfleet.export.profiler import MachineProfiler
from renderfleet.export.progress import LatestValueChannel, ProgressTracker

logger = logging.getLogger(__name__)

T = TypeVar("T")

PRIMARY_WORKER = "export"
PARALLEL_WORKER_PREFIX = "export-par-"

# Decoding these forces single-threaded rendering
SINGLE_THREADED_DECODE_CODECS = frozenset({"hevc", "h265", "prores", "dnxhd"})

FOUR_K_MEGAPIXELS = 8.3


@dataclass(frozen=True)
class ExportSpec:
    """What the caller asks to export."""

    composition: dict[str, Any]
    output_path: str
    total_frames: int
    fps: float
    width: int = 1920
    height: int = 1080
    quality: QualityPreset = "balanced"
    chunk_size_frames: Optional[int] = None
    input_props: dict[str, Any] = field(default_factory=dict)
    # name -> list of timed entries ({"time_ms": ...}) filtered per chunk
    metadata: dict[str, Any] = field(default_factory=dict)
    source_codec: Optional[str] = None
    source_path: Optional[str] = None
    source_width: Optional[int] = None
    source_height: Optional[int] = None
    max_zoom_scale: float = 1.0
    force_single_threaded: bool = False
    use_gpu: Optional[bool] = None

    def content_metrics(self) -> ContentMetrics:
        return ContentMetrics(
            total_frames=self.total_frames,
            fps=self.fps,
            width=self.width,
            height=self.height,
            chunk_size_frames=self.chunk_size_frames,
        )


class SessionState(str, Enum):
    IDLE = "idle"
    PROFILING = "profiling"
    PLANNING = "planning"
    RENDERING = "rendering"
    COMBINING = "combining"
    FINALIZING = "finalizing"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"


TERMINAL_STATES = frozenset({SessionState.SUCCEEDED, SessionState.FAILED, SessionState.CANCELLED})


@dataclass(eq=False)
class ExportSession:
    """One export request from planning through settlement. Never reused."""

    spec: ExportSpec
    tracker: ProgressTracker
    id: str = field(default_factory=lambda: uuid4().hex)
    token: CancelToken = field(default_factory=CancelToken)
    state: SessionState = SessionState.IDLE
    started_at: float = field(default_factory=time.time)
    finished_at: Optional[float] = None
    profile: Optional[MachineProfile] = None
    allocation: Optional[WorkerAllocation] = None
    chunk_count: int = 0
    output_path: Optional[str] = None
    # Rendered here, moved onto spec.output_path only on success
    partial_path: Optional[str] = None
    error: Optional[ExportError] = None
    task: Optional[asyncio.Task] = None
    settled: asyncio.Event = field(default_factory=asyncio.Event)

    @property
    def is_active(self) -> bool:
        return self.state not in TERMINAL_STATES

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "id": self.id,
            "state": self.state.value,
            "started_at": self.started_at,
            "finished_at": self.finished_at,
            "output_path": self.output_path,
            "chunk_count": self.chunk_count,
            "progress": self.tracker.last_event.to_dict() if self.tracker.last_event else None,
        }
        if self.allocation is not None:
            data["allocation"] = self.allocation.to_dict()
        if self.profile is not None:
            data["profile"] = self.profile.to_dict()
        if self.error is not None:
            data["error"] = self.error.to_error_info()
        return data


# ============================================================================
# Planning helpers
# ============================================================================


def requires_single_threaded_decode(spec: ExportSpec) -> bool:
    if spec.force_single_threaded:
        return True
    if spec.source_codec and spec.source_codec.lower() in SINGLE_THREADED_DECODE_CODECS:
        return True
    return bool(spec.source_path) and spec.source_path.lower().endswith(".mov")


def apply_export_constraints(
    allocation: WorkerAllocation, profile: MachineProfile, spec: ExportSpec
) -> WorkerAllocation:
    """Lower the planner's allocation for workloads known to thrash memory.

    Every adjustment goes through ``WorkerAllocation.constrained``, so values
    only ever move down and each change is logged.
    """
    total_gb = profile.total_memory_gb
    effective_gb = effective_memory_gb(profile)
    duration_s = spec.total_frames / spec.fps
    high_fps = spec.fps > 30
    output_megapixels = spec.width * spec.height / 1_000_000
    source_megapixels = (spec.source_width or spec.width) * (spec.source_height or spec.height) / 1_000_000

    if requires_single_threaded_decode(spec):
        allocation = allocation.constrained(reason="codec compatibility", concurrency=1)

    if spec.max_zoom_scale > 1.25 and total_gb <= 16:
        allocation = allocation.constrained(
            reason=f"zoom scale {spec.max_zoom_scale:.2f}",
            worker_count=2 if effective_gb < 8 else 3,
        )

    if total_gb <= 12 and duration_s >= 30 and output_megapixels > FOUR_K_MEGAPIXELS and high_fps:
        allocation = allocation.constrained(reason="4K high-fps output on a small machine", worker_count=1)

    decode_heavy = source_megapixels > FOUR_K_MEGAPIXELS and high_fps and duration_s >= 30
    if decode_heavy and 0 < total_gb <= 16:
        allocation = allocation.constrained(reason="decode-heavy source", worker_count=1)

    if not allocation.use_parallel and 0 < total_gb <= 16:
        allocation = allocation.constrained(reason="sequential export on 16GB", concurrency=2)

    if spec.quality == "fast":
        allocation = allocation.constrained(reason="fast preset", concurrency=FAST_PRESET_MAX_CONCURRENCY)

    return allocation


def partition_chunks(chunks: list[ChunkPlanEntry], worker_count: int) -> list[list[ChunkPlanEntry]]:
    """Split a plan into contiguous index groups, one per worker.

    Group sizes differ by at most one, earlier groups taking the remainder.
    There are never more groups than chunks, and no group is empty.
    """
    group_count = min(len(chunks), max(1, worker_count))
    if group_count == 0:
        return []
    base, remainder = divmod(len(chunks), group_count)
    groups: list[list[ChunkPlanEntry]] = []
    start = 0
    for index in range(group_count):
        size = base + (1 if index < remainder else 0)
        groups.append(chunks[start : start + size])
        start += size
    return groups


def filter_metadata_for_chunk(metadata: dict[str, Any], chunk: ChunkPlanEntry) -> dict[str, Any]:
    """Keep only the timed entries that fall inside the chunk's time range.

    Lists of dicts carrying ``time_ms`` are filtered; everything else is
    passed through unchanged.
    """
    filtered: dict[str, Any] = {}
    for key, value in metadata.items():
        if isinstance(value, list) and value and all(isinstance(v, dict) and "time_ms" in v for v in value):
            filtered[key] = [v for v in value if chunk.start_time_ms <= v["time_ms"] < chunk.end_time_ms]
        else:
            filtered[key] = value
    return filtered


def partial_output_path(output_path: str, session_id: str) -> str:
    """Sibling of ``output_path`` that a session renders into, keeping its extension."""
    root, ext = os.path.splitext(output_path)
    return f"{root}.renderfleet-{session_id}.partial{ext}"


def _remove(path: Optional[str]) -> None:
    if not path:
        return
    try:
        os.remove(path)
    except FileNotFoundError:
        pass
    except OSError as e:
        logger.warning(f"[COORDINATOR] Failed to remove {path}: {e}")


# ============================================================================
# Coordinator
# ============================================================================


class ExportCoordinator:
    """Runs at most one export session at a time."""

    def __init__(
        self,
        pool: Optional[SupervisedWorkerPool] = None,
        profiler: Optional[MachineProfiler] = None,
        planner: Optional[ExportPlanner] = None,
        combiner: Optional[ChunkCombiner] = None,
        settings: Optional[Settings] = None,
    ):
        self.settings = settings or get_settings()
        self.pool = pool or SupervisedWorkerPool(self.settings)
        self.profiler = profiler or MachineProfiler(self.settings)
        self.planner = planner or ExportPlanner(self.settings)
        self.combiner = combiner or ChunkCombiner(settings=self.settings)
        # Shared across sessions so subscribers survive session turnover
        self.progress: LatestValueChannel[ProgressEvent] = LatestValueChannel()
        self._active: Optional[ExportSession] = None
        self._last: Optional[ExportSession] = None

    @property
    def active_session(self) -> Optional[ExportSession]:
        return self._active

    def is_export_in_progress(self) -> bool:
        return self._active is not None

    def status(self) -> dict[str, Any]:
        session = self._active or self._last
        return {
            "in_progress": self._active is not None,
            "session": session.to_dict() if session is not None else None,
        }

    # ========================================================================
    # Session control
    # ========================================================================

    def _begin(self, spec: ExportSpec) -> ExportSession:
        # Check-and-set with no await in between
        if self._active is not None:
            raise ExportInProgressError(details={"session_id": self._active.id})
        session = ExportSession(spec=spec, tracker=ProgressTracker(self.progress, self.settings))
        self._active = session
        logger.info(f"[COORDINATOR] Session {session.id} started -> {spec.output_path}")
        return session

    async def start(self, spec: ExportSpec) -> ExportSession:
        """Start an export in the background and return its session.

        Raises:
            ExportInProgressError: If another session is active
        """
        session = self._begin(spec)
        session.task = asyncio.create_task(self._settle(session), name=f"export-{session.id}")
        return session

    async def export(self, spec: ExportSpec) -> ExportSession:
        """Run an export to completion.

        Raises:
            ExportInProgressError: If another session is active
            ExportError: The failure (or cancellation) the session ended with
        """
        session = self._begin(spec)
        await self._settle(session)
        if session.error is not None:
            raise session.error
        return session

    async def cancel(self, reason: str = "Export cancelled by user") -> bool:
        """Best-effort cancel of the active session. Returns False if none is active."""
        session = self._active
        if session is None:
            return False
        if session.token.cancel(reason):
            logger.info(f"[COORDINATOR] Cancel requested for session {session.id}")
        return True

    async def shutdown(self) -> None:
        session = self._active
        if session is not None:
            session.token.cancel("Server shutting down")
            if session.task is not None:
                await asyncio.gather(session.task, return_exceptions=True)
        await self.pool.destroy_all()
        self.progress.close()

    async def _settle(self, session: ExportSession) -> None:
        try:
            await self._run(session)
            session.state = SessionState.SUCCEEDED
            logger.info(f"[COORDINATOR] Session {session.id} succeeded: {session.output_path}")
        except ExportCancelledError as e:
            session.state = SessionState.CANCELLED
            session.error = e
            logger.info(f"[COORDINATOR] Session {session.id} cancelled")
        except ExportError as e:
            if session.token.cancelled:
                # Worker teardown after a cancel surfaces as exit errors
                session.state = SessionState.CANCELLED
                session.error = ExportCancelledError(session.token.reason)
                logger.info(f"[COORDINATOR] Session {session.id} cancelled ({e.kind}: {e.message})")
            else:
                session.state = SessionState.FAILED
                session.error = e
                logger.error(f"[COORDINATOR] Session {session.id} failed ({e.kind}): {e.message}")
        except Exception as e:
            session.state = SessionState.FAILED
            session.error = ExportError(str(e) or type(e).__name__)
            logger.exception(f"[COORDINATOR] Session {session.id} failed unexpectedly")
        finally:
            if session.state is not SessionState.SUCCEEDED:
                # spec.output_path is never touched; it may hold a file we did not write
                _remove(session.partial_path)
            session.finished_at = time.time()
            if session.error is not None:
                session.tracker.send_progress(
                    session.tracker.last_event.progress if session.tracker.last_event else 0,
                    "finalizing",
                    session.error.message,
                )
            session.tracker.detach_all()
            self._last = session
            if self._active is session:
                self._active = None
            session.settled.set()

    # ========================================================================
    # Pipeline
    # ========================================================================

    async def _run(self, session: ExportSession) -> None:
        spec = session.spec
        tracker = session.tracker
        token = session.token

        session.state = SessionState.PROFILING
        tracker.send_progress(0, "preparing", "Profiling machine...")
        profile = await asyncio.to_thread(self.profiler.profile)
        session.profile = profile
        token.raise_if_cancelled()

        session.state = SessionState.PLANNING
        tracker.send_progress(2, "preparing", "Planning export...")
        chunks, allocation = self.planner.plan(profile, spec.content_metrics())
        allocation = apply_export_constraints(allocation, profile, spec)
        chunk_size = chunks[0].frame_count

        if not allocation.use_parallel:
            if len(chunks) > 1:
                # Sequential exports render as a single chunk
                chunk_size = spec.total_frames
                chunks = build_chunk_plan(spec.total_frames, chunk_size, spec.fps)
            allocation = replace(allocation, memory_per_worker_mb=primary_worker_memory_mb(profile))
        session.allocation = allocation
        session.chunk_count = len(chunks)

        session.partial_path = partial_output_path(spec.output_path, session.id)
        effective_gb = effective_memory_gb(profile)
        job = ExportJob(
            job_id=session.id,
            composition=spec.composition,
            output_path=session.partial_path,
            settings=resolve_encode_settings(spec.quality, spec.width, spec.height, spec.fps),
            total_frames=spec.total_frames,
            input_props=dict(spec.input_props),
            total_chunks=len(chunks),
            chunk_size_frames=chunk_size,
            concurrency=allocation.concurrency,
            pre_filtered_metadata={c.index: filter_metadata_for_chunk(spec.metadata, c) for c in chunks}
            if spec.metadata
            else {},
            use_gpu=profile.gpu_available if spec.use_gpu is None else spec.use_gpu,
            video_cache_size_bytes=video_cache_size_bytes(effective_gb),
            temp_dir=self.settings.export_temp_dir or None,
        )
        logger.info(
            f"[COORDINATOR] {len(chunks)} chunks, workers={allocation.worker_count}, "
            f"concurrency={allocation.concurrency}, parallel={allocation.use_parallel}, "
            f"video cache {job.video_cache_size_bytes // (1024 * 1024)}MB"
        )

        tracker.reset(spec.total_frames, len(chunks))
        tracker.send_progress(5, "preparing", "Starting export workers...")
        token.raise_if_cancelled()

        session.state = SessionState.RENDERING
        if allocation.use_parallel:
            await self._run_parallel(session, job, chunks, allocation)
        else:
            await self._run_sequential(session, job, allocation)

        session.state = SessionState.FINALIZING
        if not os.path.exists(session.partial_path):
            raise RenderError(f"Export finished but {session.partial_path} was not written")
        os.replace(session.partial_path, spec.output_path)
        session.output_path = spec.output_path
        tracker.send_progress(100, "finalizing", "Export complete")

    async def _race_cancel(
        self,
        awaitable: Awaitable[T],
        token: CancelToken,
        on_cancel: Callable[[], None],
    ) -> T:
        """Await ``awaitable`` unless the token fires first.

        On cancellation ``on_cancel`` runs, the pending await is abandoned and
        ExportCancelledError is raised without waiting for the worker.
        """
        token.raise_if_cancelled()
        task = asyncio.ensure_future(awaitable)
        waiter = asyncio.ensure_future(token.wait())
        try:
            await asyncio.wait({task, waiter}, return_when=asyncio.FIRST_COMPLETED)
            if task.done():
                return task.result()
            on_cancel()
            raise ExportCancelledError(token.reason)
        finally:
            waiter.cancel()
            if not task.done():
                task.cancel()
                await asyncio.gather(task, return_exceptions=True)

    def _send_cancel(self, handle: WorkerHandle) -> None:
        if self.pool.send(handle, CancelRequest()):
            logger.info(f"[COORDINATOR] Sent cancel to {handle.name}")

    @staticmethod
    def _raise_for_result(result: ExportResult, worker_name: str) -> None:
        if not result.success:
            raise error_from_kind(
                result.error_kind,
                result.error or f"Worker {worker_name} failed to export",
                result.error_code,
            )

    # ========================================================================
    # Sequential
    # ========================================================================

    async def _run_sequential(self, session: ExportSession, job: ExportJob, allocation: WorkerAllocation) -> None:
        token = session.token
        handle = await self._race_cancel(
            self.pool.get_or_create(
                PRIMARY_WORKER,
                memory_limit_mb=allocation.memory_per_worker_mb,
                max_restarts=self.settings.worker_primary_max_restarts,
            ),
            token,
            lambda: None,
        )
        handle.progress.discard_latest()
        detach = session.tracker.attach(handle.name, handle.progress.subscribe())
        succeeded = False
        try:
            response = await self._race_cancel(
                self.pool.request(handle, ExportRequest(new_request_id(), job), allocation.timeout_ms),
                token,
                lambda: self._send_cancel(handle),
            )
            self._raise_for_result(response.result, handle.name)
            succeeded = True
        finally:
            detach()
            if not succeeded:
                # A worker that failed or may still be rendering is not reused
                await self.pool.destroy(handle.name)

    # ========================================================================
    # Parallel
    # ========================================================================

    async def _run_parallel(
        self,
        session: ExportSession,
        job: ExportJob,
        chunks: list[ChunkPlanEntry],
        allocation: WorkerAllocation,
    ) -> None:
        token = session.token
        tracker = session.tracker
        groups = partition_chunks(chunks, allocation.worker_count)
        handles: dict[str, WorkerHandle] = {}
        pending_paths: list[str] = []
        temp_dir = job.temp_dir or tempfile.gettempdir()

        logger.info(
            f"[COORDINATOR] Parallel plan: {len(groups)} workers, "
            f"{len(groups[0]) if groups else 0} chunks per worker, {len(chunks)} chunks, "
            f"{allocation.memory_per_worker_mb}MB per worker"
        )

        def broadcast_cancel() -> None:
            for handle in handles.values():
                self._send_cancel(handle)

        async def run_group(index: int, group: list[ChunkPlanEntry]) -> list[ChunkResult]:
            name = f"{PARALLEL_WORKER_PREFIX}{index}"
            handle = await self.pool.get_or_create(
                name,
                memory_limit_mb=allocation.memory_per_worker_mb,
                max_restarts=self.settings.worker_parallel_max_restarts,
            )
            handles[name] = handle
            token.raise_if_cancelled()

            handle.progress.discard_latest()
            detach = tracker.attach(name, handle.progress.subscribe())
            try:
                group_job = replace(
                    job,
                    output_path=os.path.join(temp_dir, f"export-worker-{int(time.time() * 1000)}-{index}.mp4"),
                    assigned_chunks=tuple(group),
                    combine_chunks_in_worker=False,
                    pre_filtered_metadata={
                        c.index: job.pre_filtered_metadata[c.index]
                        for c in group
                        if c.index in job.pre_filtered_metadata
                    },
                )
                response = await self.pool.request(handle, ExportRequest(new_request_id(), group_job), allocation.timeout_ms)
                self._raise_for_result(response.result, name)
                results = sorted(response.result.chunk_results, key=lambda r: r.index)
                pending_paths.extend(r.path for r in results if r.path)
                return results
            finally:
                detach()

        tasks = [asyncio.create_task(run_group(i, group), name=f"export-group-{i}") for i, group in enumerate(groups)]
        remove_cancel_callback = token.add_callback(broadcast_cancel)
        try:
            try:
                group_results = await self._race_cancel(self._gather_first_error(tasks), token, broadcast_cancel)
            except BaseException:
                # First failure cancels every sibling
                broadcast_cancel()
                for task in tasks:
                    task.cancel()
                await asyncio.gather(*tasks, return_exceptions=True)
                raise

            combined = sorted((r for results in group_results for r in results), key=lambda r: r.index)
            missing = sorted({c.index for c in chunks} - {r.index for r in combined if r.success})
            if missing:
                raise RenderError(f"Chunks missing after render: {missing}")

            session.state = SessionState.COMBINING
            tracker.send_progress(90, "finalizing", "Combining video chunks...")
            token.raise_if_cancelled()
            # The combiner owns the chunk files from here on
            pending_paths.clear()
            await self.combiner.combine(combined, job.output_path, cancel_token=token)
            tracker.send_progress(self.settings.progress_finalize, "finalizing", "Finalizing video...")
        finally:
            remove_cancel_callback()
            for path in pending_paths:
                _remove(path)
            for index in range(len(groups)):
                await self.pool.destroy(f"{PARALLEL_WORKER_PREFIX}{index}")

    @staticmethod
    async def _gather_first_error(tasks: list[asyncio.Task]) -> list[Any]:
        """Wait for all tasks; raise the first failure as soon as it happens."""
        pending = set(tasks)
        while pending:
            done, pending = await asyncio.wait(pending, return_when=asyncio.FIRST_EXCEPTION)
            for task in done:
                if not task.cancelled() and task.exception() is not None:
                    raise task.exception()
        return [task.result() for task in tasks]
