"""Render API endpoints: submit a timeline, poll the job, fetch the MP4."""

import logging
from typing import Any

from fastapi import APIRouter, Body, Response, status
from fastapi.responses import StreamingResponse

from timeline_renderer.api.deps import Orchestrator
from timeline_renderer.config import get_settings
from timeline_renderer.schemas.render import JobStatusResponse, SubmitResponse

settings = get_settings()
router = APIRouter()
logger = logging.getLogger(__name__)


@router.post(
    "/render",
    response_model=SubmitResponse,
    response_model_by_alias=True,
    status_code=status.HTTP_202_ACCEPTED,
)
async def submit_render(
    orchestrator: Orchestrator,
    payload: dict[str, Any] = Body(...),
) -> SubmitResponse:
    """
    Start a render job.

    Accepts a timeline ({"clips": [...], "settings": {...}, "soundtrack": [...]})
    or the legacy {"videoMedia": [...], "audioMedia": [...]} body. Returns as
    soon as the job is queued; poll GET /jobs/{job_id} for progress.
    """
    job_id = await orchestrator.submit(payload)
    return SubmitResponse(job_id=job_id)


@router.get(
    "/jobs/{job_id}",
    response_model=JobStatusResponse,
    response_model_by_alias=True,
)
async def get_job(job_id: str, orchestrator: Orchestrator) -> JobStatusResponse:
    job = await orchestrator.get_status(job_id)
    return JobStatusResponse(
        job_id=job.job_id,
        state=job.state.value,
        error=job.error,
        current_stage=job.current_stage,
        output_size=job.output_size,
        created_at=job.created_at,
        started_at=job.started_at,
        completed_at=job.completed_at,
    )


@router.get("/jobs/{job_id}/output")
async def download_output(job_id: str, orchestrator: Orchestrator) -> StreamingResponse:
    """Stream the rendered MP4. 409 until the job has completed."""
    handle = await orchestrator.open_output(job_id)

    def iter_file():
        # The handle was opened under the store lock and survives deletion
        try:
            while chunk := handle.read(settings.fetch_chunk_size):
                yield chunk
        finally:
            handle.close()

    return StreamingResponse(
        iter_file(),
        media_type="video/mp4",
        headers={"Content-Disposition": f'attachment; filename="{job_id}.mp4"'},
    )


@router.delete("/jobs/{job_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_job(job_id: str, orchestrator: Orchestrator) -> Response:
    """Cancel the job if running and remove it with its files."""
    await orchestrator.delete_job(job_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)
