"""Error codes dictionary for the export subsystem.

Single source of truth for every error code, its taxonomy kind, whether a
caller may retry, and a short suggested fix. Used by the exception classes
and by the HTTP error handlers to build machine-readable error payloads.
"""

from typing import TypedDict


class ErrorCodeSpec(TypedDict, total=False):
    """Specification for an error code."""

    kind: str
    retryable: bool
    suggested_fix: str


# Error codes dictionary - single source of truth
ERROR_CODES: dict[str, ErrorCodeSpec] = {
    # ==========================================================================
    # Planning errors (fix input)
    # ==========================================================================
    "INVALID_CONTENT_METRICS": {
        "kind": "planning",
        "retryable": False,
        "suggested_fix": "Provide a positive frame count, frame rate and output size",
    },
    "EMPTY_CHUNK_PLAN": {
        "kind": "planning",
        "retryable": False,
    },
    # ==========================================================================
    # Worker lifecycle errors (retryable, machine state may change)
    # ==========================================================================
    "WORKER_SPAWN_FAILED": {
        "kind": "worker_spawn",
        "retryable": True,
        "suggested_fix": "Free memory or close other exports, then retry",
    },
    "WORKER_TIMEOUT": {
        "kind": "worker_timeout",
        "retryable": True,
        "suggested_fix": "Retry with a lower quality preset or shorter range",
    },
    "WORKER_EXITED": {
        "kind": "render",
        "retryable": True,
        "suggested_fix": "The render process exited unexpectedly; retry the export",
    },
    # ==========================================================================
    # Render / combine errors
    # ==========================================================================
    "RENDER_FAILED": {
        "kind": "render",
        "retryable": False,
    },
    "COMBINE_FAILED": {
        "kind": "combine",
        "retryable": True,
        "suggested_fix": "Check free disk space and that ffmpeg is installed",
    },
    "NO_CHUNKS_TO_COMBINE": {
        "kind": "combine",
        "retryable": False,
    },
    # ==========================================================================
    # Session errors
    # ==========================================================================
    "EXPORT_CANCELLED": {
        "kind": "cancelled",
        "retryable": False,
    },
    "EXPORT_IN_PROGRESS": {
        "kind": "conflict",
        "retryable": True,
        "suggested_fix": "Wait for the current export to finish or cancel it",
    },
    "INTERNAL_ERROR": {
        "kind": "internal",
        "retryable": False,
    },
}


def get_error_spec(code: str) -> ErrorCodeSpec:
    """Get error specification by code.

    Args:
        code: Error code string

    Returns:
        ErrorCodeSpec for the code, or the INTERNAL_ERROR spec if not found
    """
    return ERROR_CODES.get(code, ERROR_CODES["INTERNAL_ERROR"])
