"""Error codes dictionary for the render API.

Single table of every error code, whether a client may retry the same
request, and a human-readable fix. Used by exception handlers to build
machine-readable error responses.
"""

from typing import TypedDict


class ErrorCodeSpec(TypedDict, total=False):
    """Specification for an error code."""

    retryable: bool
    suggested_fix: str


ERROR_CODES: dict[str, ErrorCodeSpec] = {
    # ==========================================================================
    # Submission errors
    # ==========================================================================
    "VALIDATION_ERROR": {
        "retryable": False,
    },
    "EMPTY_TIMELINE": {
        "retryable": False,
        "suggested_fix": "Provide at least one clip (or videoMedia/audioMedia item)",
    },
    "INVALID_TRIM": {
        "retryable": False,
        "suggested_fix": "Use a non-negative trim start and an end/duration after it",
    },
    "INVALID_PARAMETER": {
        "retryable": False,
        "suggested_fix": "Check filter, speed, volume and overlay values against their ranges",
    },
    # ==========================================================================
    # Pipeline errors (stored on the failed job)
    # ==========================================================================
    "COMPILE_ERROR": {
        "retryable": False,
    },
    "MISSING_ASSET": {
        "retryable": False,
    },
    "ASSET_NOT_FOUND": {
        "retryable": False,
        "suggested_fix": "Verify the media URL or upload id is reachable",
    },
    "ASSET_EMPTY": {
        "retryable": True,
        "suggested_fix": "Re-upload the media file; the server returned no bytes",
    },
    "ASSET_TIMEOUT": {
        "retryable": True,
        "suggested_fix": "Retry the render or host the media closer to the renderer",
    },
    "ASSET_TRANSPORT": {
        "retryable": True,
    },
    "ASSET_CORRUPT": {
        "retryable": False,
        "suggested_fix": "The file could not be read as media; re-encode it and retry",
    },
    "ENGINE_FAILED": {
        "retryable": False,
    },
    "OUTPUT_INVALID": {
        "retryable": True,
        "suggested_fix": "The engine produced an empty or truncated file; retry the render",
    },
    # ==========================================================================
    # Lookup errors
    # ==========================================================================
    "JOB_NOT_FOUND": {
        "retryable": False,
        "suggested_fix": "The job never existed or was removed by retention",
    },
    "JOB_NOT_READY": {
        "retryable": True,
        "suggested_fix": "Poll GET /jobs/{job_id} until state is completed",
    },
    "PAYLOAD_TOO_LARGE": {
        "retryable": False,
        "suggested_fix": "Upload files up to MAX_UPLOAD_SIZE_MB or host them at a URL",
    },
    "SERVICE_UNAVAILABLE": {
        "retryable": True,
        "suggested_fix": "The renderer is shutting down; retry against another instance",
    },
    "INTERNAL_ERROR": {
        "retryable": False,
    },
}


def get_error_spec(code: str) -> ErrorCodeSpec:
    """Get error specification by code.

    Args:
        code: The error code

    Returns:
        ErrorCodeSpec with retryable flag and suggested fix
    """
    return ERROR_CODES.get(code, {"retryable": False})


def is_retryable(code: str) -> bool:
    """Check if an error code is retryable."""
    spec = get_error_spec(code)
    return spec.get("retryable", False)
