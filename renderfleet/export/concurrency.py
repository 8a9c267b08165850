"""Adaptive per-worker render concurrency.

Between successive batches a worker samples memory, checks for pressure and
lets an AIMD controller move its render concurrency: additive increase while
batches complete cleanly, halving on pressure, then a cooldown so one noisy
batch does not cause oscillation.
"""

import logging
from dataclasses import dataclass
from typing import Optional

import psutil

logger = logging.getLogger(__name__)

MB = 1024 * 1024


@dataclass(frozen=True)
class MemorySnapshot:
    """Memory reading taken around a rendered batch."""

    rss_mb: float
    free_mb: float
    total_mb: float


@dataclass(frozen=True)
class PressureCheck:
    """Whether a batch left the machine under memory pressure."""

    has_pressure: bool
    reason: Optional[str] = None


@dataclass(frozen=True)
class ConcurrencyAdjustment:
    """Result of feeding one batch outcome to the controller."""

    adjusted: bool
    value: int
    reason: Optional[str] = None


def take_memory_snapshot(process: Optional[psutil.Process] = None) -> MemorySnapshot:
    """Sample this worker's resident set (including child processes) and free memory."""
    process = process or psutil.Process()
    rss = 0
    try:
        rss = process.memory_info().rss
        for child in process.children(recursive=True):
            try:
                rss += child.memory_info().rss
            except (psutil.NoSuchProcess, psutil.AccessDenied):
                continue
    except (psutil.NoSuchProcess, psutil.AccessDenied) as e:
        logger.debug(f"[MEMORY] rss unavailable: {e}")

    vm = psutil.virtual_memory()
    return MemorySnapshot(
        rss_mb=rss / MB,
        free_mb=vm.available / MB,
        total_mb=vm.total / MB,
    )


def detect_memory_pressure(
    before: MemorySnapshot,
    after: MemorySnapshot,
    *,
    min_free_mb: float = 256.0,
    max_rss_ratio: float = 0.6,
    rss_limit_mb: Optional[float] = None,
) -> PressureCheck:
    """Compare the snapshots around a batch.

    Pressure is signalled when free memory after the batch fell below an
    absolute floor, the worker's resident set grew past a fraction of total
    memory, or past the worker's declared memory ceiling. A zero free reading
    means the stat was unavailable and is ignored.
    """
    if after.free_mb > 0 and after.free_mb < min_free_mb:
        return PressureCheck(True, "low-free-mem-absolute")

    rss_ratio = after.rss_mb / after.total_mb if after.total_mb > 0 else 0.0
    if rss_ratio > max_rss_ratio:
        return PressureCheck(True, "high-rss")

    if rss_limit_mb and after.rss_mb > rss_limit_mb:
        return PressureCheck(True, "rss-over-limit")

    if before.free_mb > 0 and after.free_mb > 0 and after.free_mb < before.free_mb:
        logger.debug(f"[MEMORY] free memory {before.free_mb:.0f}MB -> {after.free_mb:.0f}MB")

    return PressureCheck(False)


class AdaptiveConcurrencyController:
    """AIMD controller over a worker's in-process render concurrency.

    Starts at ``min``. ``min <= current <= max`` holds at all times.
    """

    def __init__(self, min_value: int, max_value: int, increase_every: int = 2, cooldown_batches: int = 2):
        self.min = max(1, int(min_value))
        self.max = max(self.min, int(max_value))
        self.increase_every = max(1, int(increase_every))
        self.cooldown_batches = max(0, int(cooldown_batches))
        self.current = self.min
        self.cooldown = 0
        self.success_streak = 0

    def get_concurrency(self) -> int:
        return self.current

    def on_batch_complete(self, pressure: PressureCheck) -> ConcurrencyAdjustment:
        if pressure.has_pressure:
            halved = self.current // 2 or self.min
            next_value = max(self.min, halved)
            adjusted = next_value != self.current
            self.current = next_value
            self.cooldown = self.cooldown_batches
            self.success_streak = 0
            return ConcurrencyAdjustment(adjusted, self.current, pressure.reason or "pressure")

        self.success_streak += 1
        if self.cooldown > 0:
            self.cooldown -= 1
            return ConcurrencyAdjustment(False, self.current)

        if self.current < self.max and self.success_streak % self.increase_every == 0:
            self.current += 1
            return ConcurrencyAdjustment(True, self.current, "steady")

        return ConcurrencyAdjustment(False, self.current)


def worker_concurrency_bounds(
    total_memory_gb: float,
    width: int,
    height: int,
    requested: int,
) -> tuple[int, int]:
    """Concurrency range a worker ramps within for one job.

    The upper bound is set by machine memory and output size; the lower bound
    is 1 only when the job explicitly forces single-threaded rendering.
    """
    is_1080p_or_less = width * height <= 1920 * 1080
    if total_memory_gb <= 16:
        max_concurrency = 3 if is_1080p_or_less else 2
    elif total_memory_gb <= 24:
        max_concurrency = 4
    else:
        max_concurrency = 6

    min_concurrency = 1 if requested == 1 else 2
    render_concurrency = max(min_concurrency, min(requested or 3, max_concurrency))
    return min_concurrency, render_concurrency
