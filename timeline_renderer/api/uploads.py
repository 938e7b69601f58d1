"""Upload endpoint: raw request body stored under an upload id.

Clips reference uploads with {"source": {"uploadId": "..."}}.
"""

import logging
import re
import uuid
from pathlib import Path

from fastapi import APIRouter, Request, status

from timeline_renderer.config import get_settings
from timeline_renderer.exceptions import PayloadTooLargeError, ValidationError
from timeline_renderer.schemas.render import UploadResponse

settings = get_settings()
router = APIRouter()
logger = logging.getLogger(__name__)

_SUFFIX_RE = re.compile(r"^\.[A-Za-z0-9]{1,5}$")


@router.put(
    "/uploads/{name}",
    response_model=UploadResponse,
    response_model_by_alias=True,
    status_code=status.HTTP_201_CREATED,
)
async def upload_file(name: str, request: Request) -> UploadResponse:
    """Store the request body; the original name only contributes its suffix."""
    upload_dir = Path(settings.upload_dir)
    upload_dir.mkdir(parents=True, exist_ok=True)

    suffix = Path(name).suffix.lower()
    upload_id = uuid.uuid4().hex + (suffix if _SUFFIX_RE.match(suffix) else "")
    target = upload_dir / upload_id
    part = target.with_name(target.name + ".part")
    limit = settings.max_upload_size_mb * 1024 * 1024

    size = 0
    try:
        with open(part, "wb") as f:
            async for chunk in request.stream():
                size += len(chunk)
                if size > limit:
                    raise PayloadTooLargeError(
                        f"Upload exceeds {settings.max_upload_size_mb} MB"
                    )
                f.write(chunk)
        if size == 0:
            raise ValidationError("No file data provided")
        part.replace(target)
    finally:
        part.unlink(missing_ok=True)

    logger.info(f"[UPLOAD] {name} -> {upload_id} ({size} bytes)")
    return UploadResponse(upload_id=upload_id, size=size)
