"""Pydantic request/response schemas for the check-in service API.

The browser client speaks camelCase JSON, so every model aliases its
fields with ``to_camel`` while still accepting snake_case names.
"""

from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# -- Object storage -----------------------------------------------------------


class PresignRequest(_CamelModel):
    object_key: str = Field(..., min_length=1, max_length=1024)
    content_type: str = Field(..., min_length=1, max_length=255)


class PresignResponse(_CamelModel):
    url: str
    object_key: str


class ClearStorageResponse(_CamelModel):
    deleted: int
    message: str


# -- Jobs ---------------------------------------------------------------------


class StartMassUploadRequest(_CamelModel):
    source_object_key: str = Field(..., min_length=1, max_length=1024)
    access_token: str | None = Field(None, description="Signed-in user's Drive access token")
    refresh_token: str | None = None


class StartCheckInRequest(_CamelModel):
    student_id: str = Field(..., min_length=1, max_length=200)
    qr_code_url: str | None = Field(None, max_length=2048)
    region: str | None = Field(None, max_length=200)


class StartJobResponse(_CamelModel):
    job_id: str


class BatchSummary(_CamelModel):
    total_students_in_pdf: int
    matched_students: int
    successful_uploads: int
    failed_uploads: int
    uploaded_students: list[str]
    failed_students: list[str]


class ProgressEvent(_CamelModel):
    progress: int | None = Field(None, ge=0, le=100)
    message: str | None = None
    status: str | None = None
    done: bool = False
    error: str | None = None
    summary: BatchSummary | None = None
    qr_code: str | None = None

    @property
    def is_terminal(self) -> bool:
        return self.done or self.error is not None

    def to_json(self) -> str:
        return self.model_dump_json(by_alias=True, exclude_none=True)


# -- QR image -----------------------------------------------------------------


class QRImageRequest(_CamelModel):
    qr_code_url: str | None = Field(None, max_length=2048)
    student_id: str | None = Field(None, max_length=200)


class QRImageResponse(_CamelModel):
    image_data: str
    qr_code_url: str
    source_mime_type: str


# -- Health -------------------------------------------------------------------


class HealthResponse(BaseModel):
    status: str
    error: str | None = None
