import asyncio
import contextlib
import logging
from contextlib import asynccontextmanager
from typing import AsyncGenerator

from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from timeline_renderer.api import render, uploads
from timeline_renderer.config import get_settings
from timeline_renderer.constants.error_codes import get_error_spec
from timeline_renderer.exceptions import RenderServiceError
from timeline_renderer.schemas.render import ErrorInfo, ErrorResponse
from timeline_renderer.services.orchestrator import JobOrchestrator

settings = get_settings()
logging.basicConfig(
    level=settings.log_level,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    # Startup
    orchestrator = JobOrchestrator(settings)
    app.state.orchestrator = orchestrator
    retention = asyncio.create_task(orchestrator.run_retention_loop(), name="retention")
    logger.info(f"{settings.app_name} {settings.app_version} ({settings.git_hash}) ready on port {settings.port}")
    yield
    # Shutdown
    await orchestrator.drain(settings.shutdown_drain_timeout_s)
    retention.cancel()
    with contextlib.suppress(asyncio.CancelledError):
        await retention


app = FastAPI(
    title=settings.app_name,
    version=settings.app_version,
    lifespan=lifespan,
)

# CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_origin_regex=settings.cors_origin_regex,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def _error_response(error: ErrorInfo, status_code: int) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content=jsonable_encoder(ErrorResponse(error=error).model_dump(exclude_none=True)),
    )


@app.exception_handler(RenderServiceError)
async def render_service_exception_handler(request: Request, exc: RenderServiceError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc.message}")
    return _error_response(exc.to_error_info(), exc.status_code)


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    """Request bodies that are not JSON objects get the same 400 as bad timelines."""
    spec = get_error_spec("VALIDATION_ERROR")
    errors = exc.errors()
    if errors:
        first_error = errors[0]
        loc = " -> ".join(str(x) for x in first_error.get("loc", []))
        msg = first_error.get("msg", "Validation error")
        message = f"{loc}: {msg}" if loc else msg
    else:
        message = "Request validation failed"

    error = ErrorInfo(
        code="VALIDATION_ERROR",
        message=message,
        retryable=spec.get("retryable", False),
        suggested_fix=spec.get("suggested_fix"),
    )
    return _error_response(error, 400)


# Global exception handler to ensure errors return proper JSON
@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception(f"Unhandled exception: {exc}")
    spec = get_error_spec("INTERNAL_ERROR")
    error = ErrorInfo(
        code="INTERNAL_ERROR",
        message="Internal server error",
        retryable=spec.get("retryable", False),
    )
    return _error_response(error, 500)


# Routers
app.include_router(render.router, tags=["render"])
app.include_router(uploads.router, tags=["uploads"])


@app.get("/health")
async def health_check(request: Request) -> dict[str, str | int]:
    orchestrator: JobOrchestrator = request.app.state.orchestrator
    return {
        "status": "healthy",
        "version": settings.app_version,
        "git_hash": settings.git_hash,
        "in_flight": orchestrator.in_flight,
    }


def run() -> None:
    """Console entry point: serve the app with uvicorn."""
    import uvicorn

    uvicorn.run("timeline_renderer.main:app", host="0.0.0.0", port=settings.port)
