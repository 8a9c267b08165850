"""Render worker, running inside a supervised worker process.

``RenderWorker`` renders one ExportJob at a time: either a single pass over
the whole range in frame batches, or chunk by chunk. Between batches and
chunks it samples memory and lets its AdaptiveConcurrencyController adjust
render concurrency. ``WorkerServer`` connects a RenderWorker to the pool's
pipes, and ``worker_main`` is the process entry point.
"""

import asyncio
import logging
import os
import shutil
import tempfile
import time
from dataclasses import dataclass, field
from multiprocessing.connection import Connection
from typing import Any, Callable, Optional

import psutil

from renderfleet.config import Settings, get_settings
from renderfleet.exceptions import ExportError, RenderError
from renderfleet.export.cancellation import CancelToken
from renderfleet.export.combiner import ChunkCombiner
from renderfleet.export.concurrency import (
    AdaptiveConcurrencyController,
    MemorySnapshot,
    detect_memory_pressure,
    take_memory_snapshot,
    worker_concurrency_bounds,
)
from renderfleet.export.ipc import (
    CancelRequest,
    ExportRequest,
    ExportResponse,
    Heartbeat,
    PipeReader,
    ProgressMessage,
    ShutdownRequest,
    StatusRequest,
    StatusResponse,
    WorkerReady,
)
from renderfleet.export.models import (
    ChunkPlanEntry,
    ChunkResult,
    ExportJob,
    ExportResult,
    ProgressEvent,
    build_chunk_plan,
)
from renderfleet.export.progress import LatestValueChannel
from renderfleet.export.renderer import RenderCall, Renderer, create_renderer

logger = logging.getLogger(__name__)

GB = 1024 ** 3


@dataclass
class _ActiveExport:
    """State of the export currently running in this worker."""

    token: CancelToken = field(default_factory=CancelToken)
    temp_files: list[str] = field(default_factory=list)
    temp_dirs: list[str] = field(default_factory=list)


class RenderWorker:
    """Renders ExportJobs with an external Renderer."""

    def __init__(
        self,
        renderer: Renderer,
        *,
        settings: Optional[Settings] = None,
        combiner: Optional[ChunkCombiner] = None,
        memory_limit_mb: Optional[int] = None,
        snapshot: Callable[[], MemorySnapshot] = take_memory_snapshot,
    ):
        self.renderer = renderer
        self.settings = settings or get_settings()
        self.combiner = combiner or ChunkCombiner(settings=self.settings)
        self.memory_limit_mb = memory_limit_mb
        self._snapshot = snapshot
        self.progress: LatestValueChannel[ProgressEvent] = LatestValueChannel()
        self._export: Optional[_ActiveExport] = None
        # Number of chunk renders started over this worker's life
        self.chunks_started = 0

    @property
    def is_exporting(self) -> bool:
        return self._export is not None and not self._export.token.cancelled

    def status(self) -> dict[str, bool]:
        return {"is_exporting": self.is_exporting}

    def _emit(self, progress: float, stage: str, message: str, **extra: Any) -> None:
        self.progress.publish(ProgressEvent(progress=progress, stage=stage, message=message, **extra))

    def _total_memory_gb(self) -> float:
        return psutil.virtual_memory().total / GB

    def _temp_dir(self, job: ExportJob) -> str:
        return job.temp_dir or self.settings.export_temp_dir or tempfile.gettempdir()

    # ========================================================================
    # Entry points
    # ========================================================================

    async def render(self, job: ExportJob) -> ExportResult:
        """Render one job. Failures come back as an unsuccessful result."""
        if self._export is not None:
            return ExportResult(success=False, error="Worker is already exporting", error_kind="render")

        export = _ActiveExport()
        self._export = export
        started = time.monotonic()

        try:
            self._emit(5, "preparing", "Initializing export...")

            total = job.total_frames
            requested = job.chunk_size_frames if job.chunk_size_frames and job.chunk_size_frames > 0 else None
            chunk_size = requested or min(total, 2000)
            # Every chunk restarts a render session, so short jobs render in one pass
            needs_chunking = (
                bool(job.assigned_chunks)
                or (requested is not None and requested < total)
                or total > self.settings.short_video_threshold_frames
            )

            if needs_chunking:
                logger.info(f"[WORKER] Chunked rendering for {total} frames (chunk size {chunk_size})")
                result = await self._render_chunked(job, export, chunk_size)
            else:
                logger.info(f"[WORKER] Single-pass rendering for {total} frames")
                result = await self._render_single(job, export)

            elapsed = time.monotonic() - started
            logger.info(f"[WORKER] Job {job.job_id} done in {elapsed:.1f}s ({total / max(elapsed, 1e-6):.1f} fps)")
            return result

        except ExportError as e:
            if e.kind == "cancelled":
                logger.info(f"[WORKER] Job {job.job_id} cancelled")
            else:
                logger.error(f"[WORKER] Job {job.job_id} failed: {e.message}")
            return ExportResult(success=False, error=e.message, error_kind=e.kind, error_code=e.code)
        except Exception as e:
            logger.exception(f"[WORKER] Job {job.job_id} failed")
            return ExportResult(success=False, error=str(e) or type(e).__name__, error_kind="render")
        finally:
            self._cleanup(export)
            if self._export is export:
                self._export = None

    async def cancel(self) -> None:
        """Abort the in-flight render; cleanup runs as the render unwinds."""
        export = self._export
        if export is None:
            return
        logger.info("[WORKER] Cancelling export...")
        export.token.cancel()

    def _cleanup(self, export: _ActiveExport) -> None:
        for path in export.temp_files:
            try:
                os.remove(path)
            except FileNotFoundError:
                pass
            except OSError as e:
                logger.warning(f"[WORKER] Failed to remove {path}: {e}")
        export.temp_files.clear()
        for path in export.temp_dirs:
            shutil.rmtree(path, ignore_errors=True)
        export.temp_dirs.clear()

    # ========================================================================
    # Adaptive concurrency
    # ========================================================================

    def _controller(self, job: ExportJob) -> AdaptiveConcurrencyController:
        min_c, max_c = worker_concurrency_bounds(
            self._total_memory_gb(), job.settings.width, job.settings.height, job.concurrency
        )
        return AdaptiveConcurrencyController(
            min_c,
            max_c,
            increase_every=self.settings.concurrency_increase_every,
            cooldown_batches=self.settings.concurrency_cooldown_batches,
        )

    def _adapt(self, controller: AdaptiveConcurrencyController, before: MemorySnapshot) -> None:
        after = self._snapshot()
        pressure = detect_memory_pressure(
            before,
            after,
            min_free_mb=self.settings.pressure_min_free_mb,
            max_rss_ratio=self.settings.pressure_max_rss_ratio,
            rss_limit_mb=self.memory_limit_mb,
        )
        adjustment = controller.on_batch_complete(pressure)
        if adjustment.adjusted:
            logger.info(f"[WORKER] Adaptive concurrency -> {adjustment.value} ({adjustment.reason})")

    # ========================================================================
    # Single pass
    # ========================================================================

    async def _render_single(self, job: ExportJob, export: _ActiveExport) -> ExportResult:
        total = job.total_frames
        controller = self._controller(job)
        batch_size = min(600, max(120, total // 8))
        frames_dir = tempfile.mkdtemp(prefix="renderfleet-frames-", dir=self._temp_dir(job))
        export.temp_dirs.append(frames_dir)

        self._emit(10, "rendering", "Starting render engine...")

        rendered_so_far = 0
        for start in range(0, total, batch_size):
            export.token.raise_if_cancelled()
            end = min(total - 1, start + batch_size - 1)

            def on_frames(count: int, base: int = rendered_so_far) -> None:
                done = min(total, base + count)
                self._emit(
                    10 + round(done / total * 85),
                    "rendering",
                    f"Rendering frame {done} of {total}",
                    current_frame=done,
                    total_frames=total,
                )

            before = self._snapshot()
            concurrency = controller.get_concurrency()
            logger.info(f"[WORKER] Rendering frames {start}-{end} with concurrency={concurrency}")
            call = RenderCall(
                composition=job.composition,
                frame_range=(start, end),
                concurrency=concurrency,
                settings=job.settings,
                output=frames_dir,
                input_props=job.input_props,
                video_cache_size_bytes=job.video_cache_size_bytes,
                use_gpu=job.use_gpu,
            )
            rendered_so_far += await self.renderer.render_frames(call, export.token, on_frames)
            self._adapt(controller, before)

        if rendered_so_far == 0:
            raise RenderError("No frames rendered")

        await self.renderer.stitch_frames(frames_dir, 0, job.output_path, job.settings, export.token)
        self._emit(95, "finalizing", "Finalizing video...")
        return ExportResult(success=True, output_path=job.output_path)

    # ========================================================================
    # Chunked
    # ========================================================================

    def _chunk_input_props(self, job: ExportJob, chunk: ChunkPlanEntry) -> dict[str, Any]:
        props = dict(job.input_props)
        metadata = job.pre_filtered_metadata.get(chunk.index)
        if metadata:
            logger.debug(f"[WORKER] Using pre-filtered metadata for chunk {chunk.index + 1} ({len(metadata)} entries)")
            props["metadata"] = metadata
        props["frame_offset"] = chunk.start_frame
        return props

    async def _render_chunked(self, job: ExportJob, export: _ActiveExport, chunk_size: int) -> ExportResult:
        total = job.total_frames
        if job.assigned_chunks:
            plan = sorted(job.assigned_chunks, key=lambda c: c.index)
        else:
            plan = build_chunk_plan(total, chunk_size, job.fps)
        chunk_count = max(job.total_chunks, len(plan))
        controller = self._controller(job)
        temp_dir = self._temp_dir(job)
        results: list[ChunkResult] = []

        for chunk in plan:
            # No new chunk starts once cancelled
            export.token.raise_if_cancelled()
            if chunk.frame_count <= 0:
                logger.warning(f"[WORKER] Skipping empty chunk {chunk.index + 1}/{chunk_count}")
                continue

            # Global chunk index keeps names unique across parallel workers
            chunk_path = os.path.join(temp_dir, f"chunk-{chunk.index}-{os.getpid()}-{int(time.time() * 1000)}.mp4")
            export.temp_files.append(chunk_path)
            self.chunks_started += 1

            def on_frames(count: int, chunk: ChunkPlanEntry = chunk) -> None:
                self._emit(
                    10 + round((chunk.index + min(count, chunk.frame_count) / chunk.frame_count) / chunk_count * 80),
                    "rendering",
                    f"Rendering chunk {chunk.index + 1} of {chunk_count}...",
                    chunk_index=chunk.index,
                    chunk_count=chunk_count,
                    chunk_rendered_frames=min(count, chunk.frame_count),
                    chunk_total_frames=chunk.frame_count,
                )

            on_frames(0)
            chunk_started = time.monotonic()
            before = self._snapshot()
            concurrency = controller.get_concurrency()
            logger.info(
                f"[WORKER] Rendering chunk {chunk.index + 1}/{chunk_count}: frames "
                f"{chunk.start_frame}-{chunk.end_frame - 1} (concurrency={concurrency})"
            )
            call = RenderCall(
                composition=job.composition,
                frame_range=chunk.frame_range,
                concurrency=concurrency,
                settings=job.settings,
                output=chunk_path,
                input_props=self._chunk_input_props(job, chunk),
                video_cache_size_bytes=job.video_cache_size_bytes,
                use_gpu=job.use_gpu,
            )
            await self.renderer.render_media(call, export.token, on_frames)
            on_frames(chunk.frame_count)
            self._adapt(controller, before)

            results.append(ChunkResult(index=chunk.index, success=True, path=chunk_path))
            logger.info(f"[WORKER] Chunk {chunk.index + 1}/{chunk_count} done in {time.monotonic() - chunk_started:.1f}s")

        if job.combine_chunks_in_worker:
            self._emit(90, "finalizing", "Combining video chunks...")
            # The combiner takes ownership of the chunk files
            export.temp_files.clear()
            await self.combiner.combine(results, job.output_path, cancel_token=export.token)
            self._emit(95, "finalizing", "Finalizing video...")
            return ExportResult(success=True, output_path=job.output_path)

        # Combined centrally: hand the files over instead of deleting them
        handed_over = {r.path for r in results}
        export.temp_files[:] = [p for p in export.temp_files if p not in handed_over]
        return ExportResult(success=True, chunk_results=tuple(results))


# ============================================================================
# Process side
# ============================================================================


class WorkerServer:
    """Serves pool requests for one RenderWorker over a pair of pipes."""

    def __init__(
        self,
        name: str,
        requests: Connection,
        events: Connection,
        worker: RenderWorker,
        heartbeat_interval_s: float = 2.0,
    ):
        self.name = name
        self._requests = requests
        self._events = events
        self.worker = worker
        self.heartbeat_interval_s = heartbeat_interval_s
        self._export_task: Optional[asyncio.Task] = None
        self._closed = False

    def _send(self, message: Any) -> None:
        if self._closed:
            return
        try:
            self._events.send(message)
        except (OSError, ValueError) as e:
            # Parent went away; nothing left to report to
            logger.warning(f"[WORKER] {self.name}: event pipe closed: {e}")
            self._closed = True

    async def _heartbeat_loop(self) -> None:
        process = psutil.Process()
        while True:
            try:
                rss_mb = process.memory_info().rss / 1024 / 1024
            except psutil.Error:
                rss_mb = 0.0
            self._send(Heartbeat(pid=os.getpid(), rss_mb=rss_mb))
            await asyncio.sleep(self.heartbeat_interval_s)

    async def _forward_progress(self) -> None:
        async for event in self.worker.progress.subscribe():
            self._send(ProgressMessage(event))

    async def _run_export(self, request_id: str, job: ExportJob) -> None:
        result = await self.worker.render(job)
        self._send(ExportResponse(request_id, result))

    async def serve(self) -> None:
        loop = asyncio.get_running_loop()
        inbox: asyncio.Queue[Any] = asyncio.Queue()
        reader = PipeReader(
            self._requests,
            loop,
            inbox.put_nowait,
            lambda: inbox.put_nowait(None),
            name=f"{self.name}-requests",
        )
        reader.start()

        self._send(WorkerReady(pid=os.getpid()))
        heartbeat = asyncio.create_task(self._heartbeat_loop())
        forwarder = asyncio.create_task(self._forward_progress())
        logger.info(f"[WORKER] {self.name} started (pid {os.getpid()})")

        try:
            while not self._closed:
                message = await inbox.get()
                if message is None:
                    logger.info(f"[WORKER] {self.name}: request pipe closed, exiting")
                    break

                match message:
                    case ExportRequest(request_id=request_id, job=job):
                        if self._export_task is not None and not self._export_task.done():
                            self._send(
                                ExportResponse(
                                    request_id,
                                    ExportResult(success=False, error="Worker is busy", error_kind="render"),
                                )
                            )
                        else:
                            self._export_task = asyncio.create_task(self._run_export(request_id, job))
                    case StatusRequest(request_id=request_id):
                        self._send(StatusResponse(request_id, self.worker.is_exporting))
                    case CancelRequest():
                        await self.worker.cancel()
                    case ShutdownRequest():
                        logger.info(f"[WORKER] {self.name}: shutdown requested")
                        break
                    case _:
                        logger.warning(f"[WORKER] {self.name}: ignoring unknown message {type(message).__name__}")
        finally:
            reader.stop()
            if self._export_task is not None and not self._export_task.done():
                await self.worker.cancel()
                await asyncio.gather(self._export_task, return_exceptions=True)
            self.worker.progress.close()
            heartbeat.cancel()
            forwarder.cancel()
            await asyncio.gather(heartbeat, forwarder, return_exceptions=True)


def worker_main(
    name: str,
    requests: Connection,
    events: Connection,
    settings_data: dict[str, Any],
    memory_limit_mb: Optional[int] = None,
) -> None:
    """Worker process entry point."""
    settings = Settings(**settings_data)
    logging.basicConfig(
        level=settings.log_level,
        format=f"%(asctime)s [{name}] %(levelname)s %(name)s: %(message)s",
    )
    worker = RenderWorker(create_renderer(settings), settings=settings, memory_limit_mb=memory_limit_mb)
    server = WorkerServer(name, requests, events, worker, settings.worker_heartbeat_interval_s)
    try:
        asyncio.run(server.serve())
    except KeyboardInterrupt:
        pass
