from __future__ import annotations

from datetime import datetime, timezone
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field

from avatar_ingest.db.models import ImageKind


class HealthResponse(BaseModel):
    status: str = Field(default="ok", description="Health status indicator.")
    time: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    storage_backend: str
    inflight: int = Field(default=0, description="Ingests currently holding a fingerprint.")


class PullRequest(BaseModel):
    url: str = Field(
        ...,
        json_schema_extra={"example": "https://cdn.discordapp.com/attachments/123/456/avatar.png"},
    )
    kind: ImageKind = ImageKind.avatar
    uploaded_by: Optional[int] = Field(default=None, ge=0, description="Account that requested the image.")
    system_id: Optional[str] = Field(default=None, max_length=36, description="System the image belongs to.")
    force: bool = Field(default=False, description="Fetch again even if the attachment is already catalogued.")


class ImageResponse(BaseModel):
    id: str
    url: str
    new: bool
    width: int
    height: int
    kind: ImageKind
    file_size: int
    content_type: str


class ImageRecordResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    url: str
    kind: ImageKind
    content_type: str
    animated: bool
    width: int
    height: int
    file_size: int
    source_fingerprint: str
    original_url: Optional[str]
    original_file_size: Optional[int]
    original_type: Optional[str]
    original_attachment_id: Optional[int]
    uploaded_at: datetime
    uploaded_by_account: Optional[int]
    uploaded_by_system: Optional[str]


class StatsResponse(BaseModel):
    total_images: int
    total_file_size: int


class MigrateRequest(BaseModel):
    urls: List[str] = Field(..., min_length=1, max_length=1000)
    kind: ImageKind = ImageKind.avatar


class MigrateAcceptedResponse(BaseModel):
    queued: List[int]


class QueueStatusResponse(BaseModel):
    queue_length: int


class ErrorResponse(BaseModel):
    error: str
    stage: Optional[str] = None
    fingerprint: Optional[str] = None
    retryable: bool = False


__all__ = [
    "HealthResponse",
    "PullRequest",
    "ImageResponse",
    "ImageRecordResponse",
    "StatsResponse",
    "MigrateRequest",
    "MigrateAcceptedResponse",
    "QueueStatusResponse",
    "ErrorResponse",
]
