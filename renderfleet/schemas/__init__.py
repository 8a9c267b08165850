from renderfleet.schemas.export import (
    ExportCancelResponse,
    ExportErrorResponse,
    ExportStartRequest,
    ExportStartResponse,
    ExportStatusResponse,
    MachineProfileResponse,
)

__all__ = [
    "ExportStartRequest",
    "ExportStartResponse",
    "ExportCancelResponse",
    "ExportStatusResponse",
    "MachineProfileResponse",
    "ExportErrorResponse",
]
