"""Chunk planning and worker allocation.

Pure functions of ``(MachineProfile, ContentMetrics)``: the same inputs always
give the same chunk plan and allocation, which keeps every heuristic testable
without touching the machine.
"""

import logging
import math
from typing import Optional

from renderfleet.config import Settings, get_settings
from renderfleet.exceptions import PlanningError
from renderfleet.export.models import (
    ChunkPlanEntry,
    ContentMetrics,
    MachineProfile,
    WorkerAllocation,
    build_chunk_plan,
)
from renderfleet.export.presets import primary_worker_memory_mb

logger = logging.getLogger(__name__)

PIXELS_1080P = 1920 * 1080


class ExportPlanner:
    """Derives a ChunkPlan and a WorkerAllocation for one export."""

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()

    def plan(
        self, profile: MachineProfile, content: ContentMetrics
    ) -> tuple[list[ChunkPlanEntry], WorkerAllocation]:
        """Plan an export.

        Raises:
            PlanningError: If the content metrics are degenerate
        """
        self._validate(content)

        chunk_size = self.choose_chunk_size(profile, content)
        chunks = build_chunk_plan(content.total_frames, chunk_size, content.fps)
        allocation = self.allocate(profile, content, len(chunks))

        logger.info(
            f"[PLANNER] {content.total_frames} frames @ {content.fps}fps "
            f"({content.duration_s:.1f}s, {content.width}x{content.height}) -> "
            f"{len(chunks)} chunks of {chunk_size} frames, workers={allocation.worker_count}, "
            f"concurrency={allocation.concurrency}, parallel={allocation.use_parallel}, "
            f"timeout={allocation.timeout_ms / 60000:.0f}min"
        )
        return chunks, allocation

    def _validate(self, content: ContentMetrics) -> None:
        if content.total_frames < 1:
            raise PlanningError(
                f"Nothing to export: total_frames={content.total_frames}", code="EMPTY_CHUNK_PLAN"
            )
        if content.fps <= 0:
            raise PlanningError(f"Invalid frame rate: {content.fps}")
        if content.width <= 0 or content.height <= 0:
            raise PlanningError(f"Invalid output size: {content.width}x{content.height}")
        if content.chunk_size_frames is not None and content.chunk_size_frames < 1:
            raise PlanningError(f"Invalid chunk size: {content.chunk_size_frames}")

    # ========================================================================
    # Chunk size
    # ========================================================================

    def choose_chunk_size(self, profile: MachineProfile, content: ContentMetrics) -> int:
        """Pick a chunk size in frames.

        Every chunk pays a fixed render-session restart, so short videos stay
        in one chunk. Past that, higher resolutions, longer videos and tight
        memory all shrink chunks to bound the per-chunk footprint.
        """
        s = self.settings
        total = content.total_frames

        if content.chunk_size_frames is not None:
            return min(total, content.chunk_size_frames)

        if total <= s.short_video_threshold_frames:
            return total

        size = float(s.chunk_base_frames)
        if content.pixels > PIXELS_1080P * 1.5:
            size *= 0.5
        if content.duration_s > s.chunk_long_video_s:
            size *= 0.75
        if profile.available_memory_gb < s.chunk_low_memory_gb:
            size *= 0.5

        size = min(max(int(size), s.chunk_min_frames), s.chunk_max_frames)
        return max(1, min(total, size))

    # ========================================================================
    # Worker allocation
    # ========================================================================

    def is_parallel_eligible(
        self, profile: MachineProfile, content: ContentMetrics, chunk_count: int
    ) -> bool:
        s = self.settings
        return (
            chunk_count > 1
            and content.duration_s >= s.parallel_min_duration_s
            and profile.total_memory_gb >= s.parallel_min_total_memory_gb
            and profile.available_memory_gb >= s.parallel_min_available_memory_gb
            and profile.cpu_cores >= s.parallel_min_cpu_cores
        )

    def allocate(
        self, profile: MachineProfile, content: ContentMetrics, chunk_count: int
    ) -> WorkerAllocation:
        s = self.settings
        concurrency = self.choose_concurrency(profile, content)

        if self.is_parallel_eligible(profile, content, chunk_count):
            cpu_estimate = max(1, math.floor(profile.cpu_cores * s.worker_cpu_fraction))
            memory_estimate = max(1, math.floor(profile.available_memory_gb / s.worker_memory_budget_gb))
            worker_count = min(cpu_estimate, memory_estimate, chunk_count)
            worker_count = max(2, min(worker_count, s.parallel_max_workers))
            # Total system concurrency is workers x per-worker concurrency
            concurrency = min(concurrency, s.parallel_max_concurrency_per_worker)
            memory_per_worker_mb = int(profile.available_memory_gb * 1024 * 0.8 / worker_count)
            memory_per_worker_mb = min(max(memory_per_worker_mb, s.worker_min_memory_mb), s.worker_max_memory_mb)
            use_parallel = True
        else:
            worker_count = 1
            memory_per_worker_mb = primary_worker_memory_mb(profile)
            use_parallel = False

        return WorkerAllocation(
            worker_count=worker_count,
            concurrency=concurrency,
            use_parallel=use_parallel,
            memory_per_worker_mb=memory_per_worker_mb,
            timeout_ms=self.estimate_timeout_ms(content, chunk_count, worker_count, concurrency),
        )

    def choose_concurrency(self, profile: MachineProfile, content: ContentMetrics) -> int:
        """Per-worker render concurrency from CPU and memory budgets."""
        s = self.settings
        available = profile.available_memory_gb

        cpu_based = max(1, math.floor(profile.cpu_cores * s.concurrency_cpu_fraction))
        memory_based = max(1, math.floor(available / s.concurrency_memory_per_task_gb))
        concurrency = min(cpu_based, memory_based, s.max_concurrency)

        if available < s.concurrency_critical_memory_gb:
            concurrency = 1
        elif available < s.concurrency_low_memory_gb:
            concurrency = min(concurrency, 2)
        elif content.duration_s < s.concurrency_short_video_s and available >= s.concurrency_comfortable_memory_gb:
            concurrency = min(concurrency + 1, profile.cpu_cores)

        return max(1, min(concurrency, s.max_concurrency))

    def estimate_timeout_ms(
        self,
        content: ContentMetrics,
        chunk_count: int,
        worker_count: int,
        concurrency: int,
    ) -> int:
        """Timeout for one worker request.

        Estimated render time times a safety multiplier that grows with the
        number of chunks each worker has to get through.
        """
        s = self.settings
        pixel_scale = max(1.0, content.pixels / PIXELS_1080P)
        throughput = s.timeout_frames_per_second_per_slot * concurrency * worker_count / pixel_scale
        estimated_ms = content.total_frames / throughput * 1000

        chunk_pressure = chunk_count / max(1, worker_count)
        multiplier = min(s.timeout_max_multiplier, s.timeout_base_multiplier + s.timeout_pressure_multiplier * chunk_pressure)

        timeout_ms = int(estimated_ms * multiplier)
        return min(max(timeout_ms, s.timeout_min_ms), s.timeout_max_ms)
