import json
from functools import lru_cache
from typing import Literal

from pydantic import computed_field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    # Application
    app_name: str = "Renderfleet Export API"
    app_version: str = "0.1.0"
    git_hash: str = "unknown"  # Set via GIT_HASH env var at build time
    environment: Literal["development", "staging", "production"] = "development"
    debug: bool = True
    log_level: str = "INFO"

    # CORS - stored as string, parsed via computed property
    cors_origins_raw: str = "http://localhost:5173,http://localhost:3000"

    @computed_field
    @property
    def cors_origins(self) -> list[str]:
        """Parse CORS origins from a comma-separated string or JSON array."""
        v = self.cors_origins_raw
        if v.startswith("["):
            try:
                return json.loads(v)
            except json.JSONDecodeError:
                pass
        return [origin.strip() for origin in v.split(",") if origin.strip()]

    # FFmpeg
    ffmpeg_path: str = "ffmpeg"

    # Temp files (chunk outputs, concat lists, frame batches). Empty = system temp dir.
    export_temp_dir: str = ""

    # Machine profiling
    # OS-reported free memory under-reports on macOS (inactive/purgeable pages),
    # so the floor is larger there.
    profiler_darwin_reserve_fraction: float = 0.15
    profiler_darwin_min_reserve_gb: float = 1.5
    profiler_reserve_fraction: float = 0.10
    profiler_min_reserve_gb: float = 0.75
    profiler_fallback_cpu_cores: int = 4
    profiler_fallback_memory_gb: float = 4.0

    # Chunk planning
    short_video_threshold_frames: int = 7200
    chunk_base_frames: int = 2000
    chunk_min_frames: int = 300
    chunk_max_frames: int = 4000
    chunk_long_video_s: float = 600.0
    chunk_low_memory_gb: float = 4.0

    # Parallel eligibility (all must hold)
    parallel_min_duration_s: float = 60.0
    parallel_min_total_memory_gb: float = 16.0
    parallel_min_available_memory_gb: float = 4.0
    parallel_min_cpu_cores: int = 6

    # Worker allocation
    worker_cpu_fraction: float = 0.8
    worker_memory_budget_gb: float = 1.0
    parallel_max_workers: int = 4
    worker_min_memory_mb: int = 1024
    worker_max_memory_mb: int = 4096

    # Per-worker render concurrency
    max_concurrency: int = 10
    concurrency_cpu_fraction: float = 0.75
    concurrency_memory_per_task_gb: float = 1.0
    concurrency_low_memory_gb: float = 4.0
    concurrency_critical_memory_gb: float = 2.0
    concurrency_short_video_s: float = 30.0
    concurrency_comfortable_memory_gb: float = 8.0
    parallel_max_concurrency_per_worker: int = 3

    # Worker timeout = estimated render time * multiplier, clamped
    timeout_frames_per_second_per_slot: float = 4.0
    timeout_base_multiplier: float = 3.0
    timeout_pressure_multiplier: float = 0.25
    timeout_max_multiplier: float = 10.0
    timeout_min_ms: int = 30 * 60 * 1000
    timeout_max_ms: int = 12 * 60 * 60 * 1000

    # Adaptive concurrency / memory pressure (tune against target hardware)
    pressure_min_free_mb: float = 256.0
    pressure_max_rss_ratio: float = 0.6
    concurrency_increase_every: int = 2
    concurrency_cooldown_batches: int = 2

    # Worker pool
    worker_renderer: Literal["ffmpeg", "synthetic"] = "ffmpeg"
    worker_spawn_timeout_s: float = 30.0
    worker_heartbeat_interval_s: float = 2.0
    worker_heartbeat_timeout_s: float = 15.0
    worker_primary_max_restarts: int = 2
    worker_parallel_max_restarts: int = 1
    worker_cancel_grace_s: float = 3.0
    worker_status_timeout_ms: int = 5000
    synthetic_render_fps: float = 240.0

    # Chunk combine (concat + stream copy, one re-encode fallback)
    combine_min_output_bytes: int = 100 * 1024
    combine_min_output_ratio: float = 0.05
    combine_kill_grace_s: float = 1.0
    combine_fallback_video_codec: str = "libx264"
    combine_fallback_preset: str = "veryfast"
    combine_fallback_crf: int = 20
    combine_fallback_audio_codec: str = "aac"
    combine_fallback_audio_bitrate: str = "160k"

    # Progress bands (preparing 0-10, rendering 10-90, combining/finalizing 90-100)
    progress_render_start: float = 10.0
    progress_render_end: float = 90.0
    progress_finalize: float = 95.0
    progress_log_delta: float = 1.0


@lru_cache
def get_settings() -> Settings:
    return Settings()
