"""Machine profiling for export planning.

Reads CPU count, total and available memory and GPU availability. Reported
"available" memory is unreliable on some platforms (macOS counts disk cache as
used), so the raw reading is normalized against a reserve-based floor. A stat
that cannot be read is replaced with a conservative default; profiling never
fails an export.
"""

import logging
import os
import re
import shutil
import subprocess
import sys
from typing import Optional

import psutil

from renderfleet.config import Settings, get_settings
from renderfleet.export.models import MachineProfile

logger = logging.getLogger(__name__)

GB = 1024 ** 3


# ============================================================================
# Raw readings
# ============================================================================


def get_container_memory_limit() -> Optional[int]:
    """Detect a container memory limit from cgroup files.

    Returns:
        Limit in bytes, or None when unlimited or not in a container.
    """
    for path in ("/sys/fs/cgroup/memory.max", "/sys/fs/cgroup/memory/memory.limit_in_bytes"):
        try:
            with open(path) as f:
                raw = f.read().strip()
        except (FileNotFoundError, PermissionError, OSError):
            continue
        if raw == "max":
            return None
        try:
            limit = int(raw)
        except ValueError:
            continue
        # cgroup v1 reports "unlimited" as a huge page-aligned number
        if 0 < limit < 1 << 60:
            return limit
    return None


def get_darwin_available_memory_bytes() -> Optional[int]:
    """Sum free, inactive, speculative and purgeable pages from ``vm_stat``."""
    try:
        result = subprocess.run(["vm_stat"], capture_output=True, text=True, timeout=5)
    except (OSError, subprocess.SubprocessError) as e:
        logger.debug(f"[PROFILER] vm_stat unavailable: {e}")
        return None
    if result.returncode != 0:
        return None
    return parse_vm_stat(result.stdout)


def parse_vm_stat(output: str) -> Optional[int]:
    """Parse ``vm_stat`` output into available bytes."""
    page_size_match = re.search(r"page size of (\d+) bytes", output)
    page_size = int(page_size_match.group(1)) if page_size_match else 4096

    def read_pages(label: str) -> int:
        match = re.search(rf"{label}:\s+(\d+)\.", output)
        return int(match.group(1)) if match else 0

    pages = (
        read_pages("Pages free")
        + read_pages("Pages inactive")
        + read_pages("Pages speculative")
        + read_pages("Pages purgeable")
    )
    if pages == 0:
        return None
    return pages * page_size


def detect_gpu() -> bool:
    """Assume a usable GPU on desktop platforms, probe for NVIDIA elsewhere."""
    if sys.platform in ("darwin", "win32"):
        return True
    return shutil.which("nvidia-smi") is not None


# ============================================================================
# Normalization
# ============================================================================


def normalize_available_memory(
    raw_bytes: int,
    total_bytes: int,
    *,
    platform: str,
    vm_stat_bytes: Optional[int] = None,
    settings: Optional[Settings] = None,
) -> int:
    """Normalize reported available memory.

    Takes the larger of the raw reading and a reserve floor of
    ``max(total * reserve_fraction, min_reserve)``, clamped to total memory.
    Deterministic for the same inputs, and re-applying it to its own output
    returns the same value.
    """
    settings = settings or get_settings()
    normalized = max(0, raw_bytes)
    if total_bytes <= 0:
        return normalized

    if platform == "darwin":
        if vm_stat_bytes and vm_stat_bytes > 0:
            normalized = max(normalized, vm_stat_bytes)
        reserve = max(
            total_bytes * settings.profiler_darwin_reserve_fraction,
            settings.profiler_darwin_min_reserve_gb * GB,
        )
    else:
        reserve = max(
            total_bytes * settings.profiler_reserve_fraction,
            settings.profiler_min_reserve_gb * GB,
        )

    if normalized < reserve:
        normalized = min(total_bytes, int(reserve))

    return int(min(max(normalized, raw_bytes), total_bytes))


# ============================================================================
# Profiler
# ============================================================================


class MachineProfiler:
    """Produces a fresh MachineProfile for each export request."""

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()

    def _cpu_cores(self) -> int:
        try:
            cores = psutil.cpu_count(logical=True)
        except (OSError, RuntimeError) as e:
            logger.warning(f"[PROFILER] cpu_count failed: {e}")
            cores = None
        if not cores:
            cores = os.cpu_count()
        if not cores:
            logger.warning(
                f"[PROFILER] CPU count unknown, assuming {self.settings.profiler_fallback_cpu_cores} cores"
            )
            return self.settings.profiler_fallback_cpu_cores
        return cores

    def _memory_bytes(self) -> tuple[int, int]:
        """Return (total, raw available) bytes."""
        fallback = int(self.settings.profiler_fallback_memory_gb * GB)
        try:
            vm = psutil.virtual_memory()
            total, available = int(vm.total), int(vm.available)
        except (OSError, RuntimeError) as e:
            logger.warning(f"[PROFILER] virtual_memory failed, assuming {fallback / GB:.0f}GB: {e}")
            return fallback, fallback // 2

        container_limit = get_container_memory_limit()
        if container_limit and container_limit < total:
            logger.info(f"[PROFILER] Container limit {container_limit / GB:.1f}GB below host {total / GB:.1f}GB")
            available = max(0, available - (total - container_limit))
            total = container_limit

        if total <= 0:
            return fallback, fallback // 2
        return total, available

    def profile(self) -> MachineProfile:
        cores = self._cpu_cores()
        total, raw_available = self._memory_bytes()

        vm_stat_bytes = get_darwin_available_memory_bytes() if sys.platform == "darwin" else None
        available = normalize_available_memory(
            raw_available,
            total,
            platform=sys.platform,
            vm_stat_bytes=vm_stat_bytes,
            settings=self.settings,
        )

        profile = MachineProfile(
            cpu_cores=cores,
            total_memory_gb=total / GB,
            available_memory_gb=available / GB,
            gpu_available=detect_gpu(),
        )
        logger.info(
            f"[PROFILER] cores={profile.cpu_cores}, total={profile.total_memory_gb:.1f}GB, "
            f"available={profile.available_memory_gb:.1f}GB (raw {raw_available / GB:.1f}GB), "
            f"gpu={profile.gpu_available}"
        )
        return profile
