from timeline_renderer.schemas.render import (
    ErrorInfo,
    ErrorResponse,
    JobStatusResponse,
    SubmitResponse,
    UploadResponse,
)
from timeline_renderer.schemas.timeline import (
    Clip,
    LegacyRenderRequest,
    MediaSource,
    OutputSettings,
    Overlay,
    Timeline,
    Trim,
    VisualFilter,
    parse_render_request,
)

__all__ = [
    "Clip",
    "ErrorInfo",
    "ErrorResponse",
    "JobStatusResponse",
    "LegacyRenderRequest",
    "MediaSource",
    "OutputSettings",
    "Overlay",
    "SubmitResponse",
    "Timeline",
    "Trim",
    "UploadResponse",
    "VisualFilter",
    "parse_render_request",
]
