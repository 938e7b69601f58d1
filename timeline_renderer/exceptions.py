"""Custom exceptions for the timeline renderer.

Every error carries a machine-readable code (see constants.error_codes), an
HTTP status for the API layer and a human-readable message. Pipeline errors
(fetch, compile, engine) never leave the job task: the orchestrator stores
their message on the failed job.
"""

from typing import Any

from timeline_renderer.constants.error_codes import get_error_spec
from timeline_renderer.schemas.render import ErrorInfo


class RenderServiceError(Exception):
    """Base exception for all timeline renderer errors."""

    code: str = "INTERNAL_ERROR"
    status_code: int = 500
    message: str = "An unexpected error occurred"

    def __init__(
        self,
        message: str | None = None,
        *,
        code: str | None = None,
        status_code: int | None = None,
        field: str | None = None,
    ):
        self.message = message or self.__class__.message
        if code:
            self.code = code
        if status_code:
            self.status_code = status_code
        self.field = field
        super().__init__(self.message)

    def to_error_info(self) -> ErrorInfo:
        """Convert exception to ErrorInfo for API response."""
        spec = get_error_spec(self.code)
        return ErrorInfo(
            code=self.code,
            message=self.message,
            field=self.field,
            retryable=spec.get("retryable", False),
            suggested_fix=spec.get("suggested_fix"),
        )


# =============================================================================
# Submission Errors (400)
# =============================================================================


class ValidationError(RenderServiceError):
    """Malformed timeline, rejected before a job exists."""

    code = "VALIDATION_ERROR"
    status_code = 400
    message = "Invalid timeline"

    @classmethod
    def from_compile_error(cls, exc: "CompileError") -> "ValidationError":
        return cls(exc.message, code=exc.code, field=exc.field)


# =============================================================================
# Compile Errors
# =============================================================================


class CompileError(RenderServiceError):
    """Timeline cannot be lowered into an execution plan."""

    code = "COMPILE_ERROR"
    status_code = 422
    message = "Timeline could not be compiled"


class EmptyTimelineError(CompileError):
    code = "EMPTY_TIMELINE"
    message = "Timeline has no clips"


class MissingAssetError(CompileError):
    code = "MISSING_ASSET"
    message = "Clip source was not fetched"

    def __init__(self, source: str | None = None, *, field: str | None = None):
        message = f"No fetched asset for source: {source}" if source else self.message
        super().__init__(message, field=field)


class InvalidTrimError(CompileError):
    code = "INVALID_TRIM"
    message = "Invalid trim range"

    def __init__(
        self,
        message: str | None = None,
        *,
        start: float | None = None,
        end: float | None = None,
        field: str | None = None,
    ):
        msg = message or self.message
        if start is not None and end is not None:
            msg = f"Invalid trim range: {start}s to {end}s"
        super().__init__(msg, field=field)


class InvalidParameterError(CompileError):
    code = "INVALID_PARAMETER"
    message = "Invalid parameter value"

    def __init__(
        self,
        message: str | None = None,
        *,
        field: str | None = None,
        value: Any = None,
        min_value: Any = None,
        max_value: Any = None,
    ):
        msg = message or self.message
        if field and value is not None:
            msg = f"Invalid value for '{field}': {value}"
            if min_value is not None and max_value is not None:
                msg += f" (allowed: {min_value} to {max_value})"
        super().__init__(msg, field=field)


# =============================================================================
# Fetch Errors
# =============================================================================


class FetchError(RenderServiceError):
    """Asset unavailable or corrupt."""

    code = "ASSET_TRANSPORT"
    status_code = 502
    message = "Asset could not be fetched"

    def __init__(self, message: str | None = None, *, source: str | None = None):
        self.source = source
        msg = message or self.message
        if source and not message:
            msg = f"{self.message}: {source}"
        super().__init__(msg)


class AssetNotFoundError(FetchError):
    code = "ASSET_NOT_FOUND"
    status_code = 404
    message = "Asset not found"


class EmptyPayloadError(FetchError):
    code = "ASSET_EMPTY"
    message = "Downloaded file is empty"


class FetchTimeoutError(FetchError):
    code = "ASSET_TIMEOUT"
    status_code = 504
    message = "Timed out fetching asset"


class TransportError(FetchError):
    code = "ASSET_TRANSPORT"
    message = "Transport error fetching asset"


class CorruptAssetError(FetchError):
    code = "ASSET_CORRUPT"
    status_code = 422
    message = "Asset is not readable media"


# =============================================================================
# Engine Errors
# =============================================================================


class EngineError(RenderServiceError):
    """External engine invocation failed or produced an invalid artifact."""

    code = "ENGINE_FAILED"
    status_code = 500
    message = "FFmpeg failed"

    def __init__(
        self,
        message: str | None = None,
        *,
        exit_code: int | None = None,
        diagnostics: str = "",
    ):
        self.exit_code = exit_code
        self.diagnostics = diagnostics
        msg = message or self.message
        if exit_code is not None and not message:
            msg = f"{self.message} (exit code {exit_code})"
        if diagnostics:
            msg = f"{msg}: {diagnostics}"
        super().__init__(msg)


class OutputInvalidError(EngineError):
    code = "OUTPUT_INVALID"
    message = "Output video invalid or empty"


# =============================================================================
# Lookup Errors
# =============================================================================


class NotFoundError(RenderServiceError):
    """Job id never existed or was removed by retention."""

    code = "JOB_NOT_FOUND"
    status_code = 404
    message = "Job not found"

    def __init__(self, job_id: str | None = None):
        self.job_id = job_id
        message = f"Job not found: {job_id}" if job_id else self.message
        super().__init__(message)


class NotReadyError(RenderServiceError):
    """Job exists but has no completed output."""

    code = "JOB_NOT_READY"
    status_code = 409
    message = "Job output is not ready"

    def __init__(self, job_id: str | None = None, state: str | None = None):
        self.job_id = job_id
        self.state = state
        message = self.message
        if job_id and state:
            message = f"Job {job_id} is {state}, output is not available"
        super().__init__(message)


# =============================================================================
# Service Errors
# =============================================================================


class PayloadTooLargeError(RenderServiceError):
    code = "PAYLOAD_TOO_LARGE"
    status_code = 413
    message = "Upload exceeds the size limit"


class ServiceUnavailableError(RenderServiceError):
    code = "SERVICE_UNAVAILABLE"
    status_code = 503
    message = "Renderer is shutting down"
