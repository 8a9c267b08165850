"""Quality presets and memory-derived encode parameters."""

import logging
from typing import Literal

from renderfleet.export.models import EncodeSettings, MachineProfile

logger = logging.getLogger(__name__)

QualityPreset = Literal["fast", "balanced", "quality"]

MB = 1024 * 1024

# preset -> (jpeg quality, video bitrate, x264 preset)
QUALITY_PRESETS: dict[str, tuple[int, str, str]] = {
    "fast": (65, "5M", "ultrafast"),
    "balanced": (85, "8M", "veryfast"),
    "quality": (90, "12M", "fast"),
}

# Ceiling on render concurrency for the "fast" preset
FAST_PRESET_MAX_CONCURRENCY = 4


def effective_memory_gb(profile: MachineProfile) -> float:
    """Memory the export may plan around.

    Reported availability is floored at 40% of total (and 2GB), never above
    total.
    """
    total = profile.total_memory_gb or 16.0
    return min(total, max(profile.available_memory_gb, total * 0.4, 2.0))


def video_cache_size_bytes(effective_gb: float) -> int:
    """Decoded-video cache size, tiered by effective memory."""
    if effective_gb < 2:
        return 128 * MB
    if effective_gb < 4:
        return 256 * MB
    if effective_gb < 8:
        return 512 * MB
    return 1024 * MB


def primary_worker_memory_mb(profile: MachineProfile) -> int:
    """Memory ceiling for the sequential (primary) worker."""
    return int(min(4096, effective_memory_gb(profile) * 1024 / 4))


def resolve_encode_settings(
    quality: QualityPreset,
    width: int,
    height: int,
    fps: float,
) -> EncodeSettings:
    """Resolve a quality preset into encode settings for the given output."""
    if quality not in QUALITY_PRESETS:
        logger.warning(f"[PRESETS] Unknown quality preset '{quality}', using balanced")
        quality = "balanced"
    jpeg_quality, bitrate, x264_preset = QUALITY_PRESETS[quality]

    if width >= 3840:
        bitrate = "20M" if quality == "quality" else "15M"

    return EncodeSettings(
        width=width,
        height=height,
        fps=fps,
        quality=quality,
        video_bitrate=bitrate,
        x264_preset=x264_preset,
        jpeg_quality=jpeg_quality,
    )
