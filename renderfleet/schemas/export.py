from typing import Any, Literal

from pydantic import BaseModel, Field


class ExportStartRequest(BaseModel):
    composition: dict[str, Any] = Field(default_factory=dict)
    output_path: str
    total_frames: int = Field(ge=1)
    fps: float = Field(gt=0)
    width: int = Field(default=1920, ge=2)
    height: int = Field(default=1080, ge=2)
    quality: Literal["fast", "balanced", "quality"] = "balanced"
    chunk_size_frames: int | None = Field(default=None, ge=1)
    input_props: dict[str, Any] = Field(default_factory=dict)
    metadata: dict[str, Any] = Field(default_factory=dict)
    source_codec: str | None = None  # e.g. "hevc", "prores"
    source_path: str | None = None
    source_width: int | None = None
    source_height: int | None = None
    max_zoom_scale: float = Field(default=1.0, ge=0)
    force_single_threaded: bool = False
    use_gpu: bool | None = None


class ExportStartResponse(BaseModel):
    session_id: str
    state: str


class ExportCancelResponse(BaseModel):
    success: bool
    session_id: str | None = None


class ExportStatusResponse(BaseModel):
    in_progress: bool
    session: dict[str, Any] | None = None


class MachineProfileResponse(BaseModel):
    cpu_cores: int
    total_memory_gb: float
    available_memory_gb: float
    gpu_available: bool


class ExportErrorResponse(BaseModel):
    detail: str
    error: dict[str, Any]
