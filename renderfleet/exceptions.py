"""Custom exceptions for the export subsystem.

Every failure an export can end with maps to one taxonomy ``kind`` so callers
can branch on it programmatically, plus a single human-readable message.
Cancellation is a distinct kind so it is never presented as a failure.
"""

from typing import Any

from renderfleet.constants.error_codes import get_error_spec


class ExportError(Exception):
    """Base exception for all export errors."""

    code: str = "INTERNAL_ERROR"
    kind: str = "internal"
    status_code: int = 500
    message: str = "An unexpected export error occurred"

    def __init__(
        self,
        message: str | None = None,
        *,
        code: str | None = None,
        status_code: int | None = None,
        details: dict[str, Any] | None = None,
    ):
        self.message = message or self.__class__.message
        if code:
            self.code = code
        if status_code:
            self.status_code = status_code
        self.details = details or {}
        super().__init__(self.message)

    def to_error_info(self) -> dict[str, Any]:
        """Convert exception to a machine-readable error payload."""
        spec = get_error_spec(self.code)
        info: dict[str, Any] = {
            "code": self.code,
            "kind": self.kind,
            "message": self.message,
            "retryable": spec.get("retryable", False),
        }
        if "suggested_fix" in spec:
            info["suggested_fix"] = spec["suggested_fix"]
        if self.details:
            info["details"] = self.details
        return info


# =============================================================================
# Planning
# =============================================================================


class PlanningError(ExportError):
    """Invalid or degenerate content metrics (e.g. zero duration)."""

    code = "INVALID_CONTENT_METRICS"
    kind = "planning"
    status_code = 422
    message = "Cannot plan export for the given content"


# =============================================================================
# Worker lifecycle
# =============================================================================


class WorkerSpawnError(ExportError):
    """A worker process could not be started or never reported ready."""

    code = "WORKER_SPAWN_FAILED"
    kind = "worker_spawn"
    message = "Failed to start export worker"

    def __init__(self, worker_name: str | None = None, reason: str | None = None):
        message = self.message
        if worker_name:
            message = f"Failed to start export worker '{worker_name}'"
        if reason:
            message = f"{message}: {reason}"
        super().__init__(message, details={"worker": worker_name} if worker_name else None)


class WorkerTimeoutError(ExportError):
    """A worker request did not settle within its timeout."""

    code = "WORKER_TIMEOUT"
    kind = "worker_timeout"
    status_code = 504
    message = "Export worker timed out"

    def __init__(self, worker_name: str | None = None, timeout_ms: int | None = None):
        message = self.message
        if worker_name and timeout_ms is not None:
            message = f"Export worker '{worker_name}' timed out after {timeout_ms / 1000:.0f}s"
        super().__init__(message, details={"worker": worker_name, "timeout_ms": timeout_ms})


class RenderError(ExportError):
    """The renderer collaborator failed."""

    code = "RENDER_FAILED"
    kind = "render"
    message = "Render failed"


class WorkerExitedError(RenderError):
    """A worker process exited while a request was in flight."""

    code = "WORKER_EXITED"
    message = "Export worker exited unexpectedly"

    def __init__(self, worker_name: str | None = None, exitcode: int | None = None):
        message = self.message
        if worker_name:
            message = f"Export worker '{worker_name}' exited unexpectedly (exit code {exitcode})"
        super().__init__(message, details={"worker": worker_name, "exitcode": exitcode})


# =============================================================================
# Combine
# =============================================================================


class CombineError(ExportError):
    """Transcoder failure or undersized output after the re-encode fallback."""

    code = "COMBINE_FAILED"
    kind = "combine"
    message = "Failed to combine video chunks"


# =============================================================================
# Session
# =============================================================================


class ExportCancelledError(ExportError):
    """The export was cancelled by the user."""

    code = "EXPORT_CANCELLED"
    kind = "cancelled"
    status_code = 409
    message = "Export cancelled by user"


class ExportInProgressError(ExportError):
    """A second export was requested while one is active."""

    code = "EXPORT_IN_PROGRESS"
    kind = "conflict"
    status_code = 409
    message = "An export is already in progress"


_KIND_TO_ERROR: dict[str, type[ExportError]] = {
    "planning": PlanningError,
    "worker_spawn": WorkerSpawnError,
    "worker_timeout": WorkerTimeoutError,
    "render": RenderError,
    "combine": CombineError,
    "cancelled": ExportCancelledError,
    "conflict": ExportInProgressError,
}


def error_from_kind(kind: str | None, message: str | None, code: str | None = None) -> ExportError:
    """Rebuild an ExportError from a ``{error, error_kind}`` pair sent by a worker."""
    cls = _KIND_TO_ERROR.get(kind or "", RenderError)
    # Worker-side constructors take positional context, not a message.
    error = ExportError.__new__(cls)
    ExportError.__init__(error, message or cls.message, code=code)
    return error
