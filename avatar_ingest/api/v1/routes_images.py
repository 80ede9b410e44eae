from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, File, Form, HTTPException, Query, UploadFile, status

from avatar_ingest.api import deps
from avatar_ingest.core.auth import AuthContext
from avatar_ingest.db.models import ImageKind, ImageRecord
from avatar_ingest.domain import SourceImage
from avatar_ingest.ingest.errors import PolicyViolation
from avatar_ingest.services.ingest_service import Attribution, IngestOutcome

from . import schemas


router = APIRouter(tags=["images"])

INGEST_ERROR_RESPONSES: dict[int | str, dict[str, object]] = {
    status.HTTP_400_BAD_REQUEST: {"model": schemas.ErrorResponse, "description": "Undecodable image, policy violation or unusable source"},
    status.HTTP_500_INTERNAL_SERVER_ERROR: {"model": schemas.ErrorResponse, "description": "Object store refused the write"},
    status.HTTP_502_BAD_GATEWAY: {"model": schemas.ErrorResponse, "description": "Upstream CDN failure"},
    status.HTTP_503_SERVICE_UNAVAILABLE: {"model": schemas.ErrorResponse, "description": "Retryable storage or catalog failure"},
}


def _account_from(uploaded_by: Optional[int], context: AuthContext) -> Optional[int]:
    if uploaded_by is not None:
        return uploaded_by
    if context.subject and context.subject.isascii() and context.subject.isdigit():
        return int(context.subject)
    return None


def _image_response(outcome: IngestOutcome) -> schemas.ImageResponse:
    record = outcome.record
    return schemas.ImageResponse(
        id=record.id,
        url=record.url,
        new=outcome.new,
        width=record.width,
        height=record.height,
        kind=outcome.kind,
        file_size=record.file_size,
        content_type=record.content_type,
    )


@router.post(
    "/pull",
    response_model=schemas.ImageResponse,
    responses=INGEST_ERROR_RESPONSES,
    summary="Pull an image from the upstream CDN",
)
async def pull_image(
    payload: schemas.PullRequest,
    service: deps.ServiceDependency,
    context: deps.AuthDependency,
) -> schemas.ImageResponse:
    attribution = Attribution(
        uploaded_by_account=_account_from(payload.uploaded_by, context),
        uploaded_by_system=payload.system_id,
    )
    outcome = await service.pull(payload.url, payload.kind, attribution, force=payload.force)
    return _image_response(outcome)


@router.post(
    "/upload",
    response_model=schemas.ImageResponse,
    responses=INGEST_ERROR_RESPONSES,
    summary="Upload image bytes directly",
)
async def upload_image(
    service: deps.ServiceDependency,
    context: deps.AuthDependency,
    file: UploadFile = File(...),
    kind: ImageKind = Form(ImageKind.avatar),
    uploaded_by: Optional[int] = Form(None),
) -> schemas.ImageResponse:
    limit = service.limits.max_source_bytes
    data = await file.read(limit + 1)
    await file.close()
    if len(data) > limit:
        raise PolicyViolation(f"image file size too large (> {limit})", stage="requested")

    source = SourceImage(data=data, original_type=file.content_type)
    attribution = Attribution(uploaded_by_account=_account_from(uploaded_by, context))
    outcome = await service.ingest(source, kind, attribution)
    return _image_response(outcome)


@router.get("/images/{image_id}", response_model=schemas.ImageRecordResponse, summary="Fetch an image record")
async def get_image(image_id: str, catalog: deps.CatalogDependency) -> schemas.ImageRecordResponse:
    record = await catalog.get_by_id(image_id)
    if record is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="image_not_found")
    return schemas.ImageRecordResponse.model_validate(record)


@router.get("/images", response_model=schemas.ImageRecordResponse, summary="Look up an image by its source")
async def lookup_image(
    catalog: deps.CatalogDependency,
    original_url: Optional[str] = Query(default=None),
    attachment_id: Optional[int] = Query(default=None, ge=0),
) -> schemas.ImageRecordResponse:
    record: ImageRecord | None
    if original_url is not None:
        record = await catalog.get_by_original_url(original_url)
    elif attachment_id is not None:
        record = await catalog.get_by_attachment_id(attachment_id)
    else:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="original_url_or_attachment_id_required")
    if record is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="image_not_found")
    return schemas.ImageRecordResponse.model_validate(record)


@router.get("/stats", response_model=schemas.StatsResponse, summary="Catalog totals")
async def stats(catalog: deps.CatalogDependency) -> schemas.StatsResponse:
    return schemas.StatsResponse(**await catalog.get_stats())


__all__ = ["router"]
