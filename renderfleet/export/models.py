"""Data model shared by the coordinator, the planner and the worker processes.

Everything here crosses the process boundary by pickling, so types stay plain
dataclasses without references to loops, locks or open files.
"""

import logging
import math
from dataclasses import asdict, dataclass, field, replace
from typing import Any, Literal, Optional

logger = logging.getLogger(__name__)

ProgressStage = Literal["preparing", "rendering", "finalizing"]


@dataclass(frozen=True)
class MachineProfile:
    """Snapshot of machine resources, taken fresh for each export."""

    cpu_cores: int
    total_memory_gb: float
    available_memory_gb: float
    gpu_available: bool = False

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class ContentMetrics:
    """What the planner needs to know about the composition."""

    total_frames: int
    fps: float
    width: int = 1920
    height: int = 1080
    # Explicit chunk size request; None lets the planner decide.
    chunk_size_frames: Optional[int] = None

    @property
    def duration_s(self) -> float:
        return self.total_frames / self.fps if self.fps > 0 else 0.0

    @property
    def pixels(self) -> int:
        return self.width * self.height


@dataclass(frozen=True)
class ChunkPlanEntry:
    """A contiguous frame range rendered as one unit.

    ``end_frame`` is exclusive: the entry covers ``[start_frame, end_frame)``.
    """

    index: int
    start_frame: int
    end_frame: int
    start_time_ms: float
    end_time_ms: float

    @property
    def frame_count(self) -> int:
        return self.end_frame - self.start_frame

    @property
    def frame_range(self) -> tuple[int, int]:
        """Inclusive ``(first, last)`` pair as render engines address frames."""
        return self.start_frame, self.end_frame - 1


@dataclass(frozen=True)
class WorkerAllocation:
    """How many workers to run and how hard each one may push."""

    worker_count: int
    concurrency: int
    use_parallel: bool
    memory_per_worker_mb: int
    timeout_ms: int

    def constrained(
        self,
        *,
        reason: str,
        worker_count: Optional[int] = None,
        concurrency: Optional[int] = None,
    ) -> "WorkerAllocation":
        """Return a copy lowered to the given ceilings.

        Values only ever move down. Dropping below two workers turns parallel
        mode off.
        """
        new_workers = self.worker_count
        if worker_count is not None:
            new_workers = max(1, min(self.worker_count, worker_count))
        new_concurrency = self.concurrency
        if concurrency is not None:
            new_concurrency = max(1, min(self.concurrency, concurrency))
        use_parallel = self.use_parallel and new_workers >= 2
        if not use_parallel:
            new_workers = 1

        updated = replace(
            self,
            worker_count=new_workers,
            concurrency=new_concurrency,
            use_parallel=use_parallel,
        )
        if updated != self:
            logger.info(
                f"[ALLOCATION] {reason}: workers {self.worker_count}->{updated.worker_count}, "
                f"concurrency {self.concurrency}->{updated.concurrency}, "
                f"parallel {self.use_parallel}->{updated.use_parallel}"
            )
        return updated

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class EncodeSettings:
    """Encode parameters resolved from the quality preset."""

    width: int = 1920
    height: int = 1080
    fps: float = 30.0
    quality: str = "balanced"
    codec: str = "h264"
    video_bitrate: str = "8M"
    x264_preset: str = "veryfast"
    jpeg_quality: int = 85


@dataclass(frozen=True)
class ExportJob:
    """Immutable job description sent to one worker."""

    job_id: str
    composition: dict[str, Any]
    output_path: str
    settings: EncodeSettings
    total_frames: int
    input_props: dict[str, Any] = field(default_factory=dict)
    assigned_chunks: tuple[ChunkPlanEntry, ...] = ()
    total_chunks: int = 0
    chunk_size_frames: Optional[int] = None
    concurrency: int = 3
    combine_chunks_in_worker: bool = True
    # chunk index -> auxiliary data already filtered to that chunk's range
    pre_filtered_metadata: dict[int, dict[str, Any]] = field(default_factory=dict)
    use_gpu: bool = False
    video_cache_size_bytes: int = 512 * 1024 * 1024
    temp_dir: Optional[str] = None

    @property
    def fps(self) -> float:
        return self.settings.fps


@dataclass(frozen=True)
class ChunkResult:
    """Outcome of one rendered chunk."""

    index: int
    success: bool
    path: Optional[str] = None
    error: Optional[str] = None


@dataclass(frozen=True)
class ExportResult:
    """What a worker returns for one ExportJob."""

    success: bool
    output_path: Optional[str] = None
    chunk_results: tuple[ChunkResult, ...] = ()
    error: Optional[str] = None
    error_kind: Optional[str] = None
    error_code: Optional[str] = None


@dataclass(frozen=True)
class ProgressEvent:
    """Progress report, from a worker or from the coordinator."""

    progress: float
    stage: ProgressStage
    message: str
    chunk_index: Optional[int] = None
    chunk_count: Optional[int] = None
    chunk_rendered_frames: Optional[int] = None
    chunk_total_frames: Optional[int] = None
    current_frame: Optional[int] = None
    total_frames: Optional[int] = None
    avg_fps: Optional[float] = None
    eta_s: Optional[float] = None

    def to_dict(self) -> dict[str, Any]:
        """Serialize to dictionary, dropping unset fields."""
        return {key: value for key, value in asdict(self).items() if value is not None}


def build_chunk_plan(total_frames: int, chunk_size: int, fps: float) -> list[ChunkPlanEntry]:
    """Split ``[0, total_frames)`` into contiguous chunks of ``chunk_size`` frames.

    The last chunk takes the remainder. Entries are sorted by index and their
    union is exactly ``[0, total_frames)``.
    """
    if total_frames < 1:
        raise ValueError(f"total_frames must be >= 1, got {total_frames}")
    if chunk_size < 1:
        raise ValueError(f"chunk_size must be >= 1, got {chunk_size}")
    if fps <= 0:
        raise ValueError(f"fps must be > 0, got {fps}")

    plan: list[ChunkPlanEntry] = []
    for index in range(math.ceil(total_frames / chunk_size)):
        start_frame = index * chunk_size
        end_frame = min(start_frame + chunk_size, total_frames)
        plan.append(
            ChunkPlanEntry(
                index=index,
                start_frame=start_frame,
                end_frame=end_frame,
                start_time_ms=start_frame / fps * 1000,
                end_time_ms=end_frame / fps * 1000,
            )
        )
    return plan
