from datetime import datetime

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel


class ErrorInfo(BaseModel):
    code: str
    message: str
    field: str | None = None
    retryable: bool = False
    suggested_fix: str | None = None  # Human-readable fix suggestion


class ErrorResponse(BaseModel):
    error: ErrorInfo


class CamelResponse(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class SubmitResponse(CamelResponse):
    job_id: str


class JobStatusResponse(CamelResponse):
    job_id: str
    state: str
    error: str | None = None
    current_stage: str | None = None
    output_size: int | None = None
    created_at: datetime
    started_at: datetime | None = None
    completed_at: datetime | None = None


class UploadResponse(CamelResponse):
    upload_id: str
    size: int
