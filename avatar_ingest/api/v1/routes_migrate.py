from __future__ import annotations

from fastapi import APIRouter, status

from avatar_ingest.api import deps
from avatar_ingest.core.jobs import get_job_backend
from avatar_ingest.core.logging import get_logger

from . import schemas


router = APIRouter(prefix="/migrate", tags=["migrate"])
logger = get_logger(component="migrate_api")


@router.post(
    "",
    response_model=schemas.MigrateAcceptedResponse,
    status_code=status.HTTP_202_ACCEPTED,
    summary="Queue legacy image URLs for migration",
)
async def queue_migration(
    payload: schemas.MigrateRequest,
    service: deps.ServiceDependency,
    context: deps.AdminDependency,
) -> schemas.MigrateAcceptedResponse:
    entries = await service.catalog.push_queue(payload.urls, payload.kind)
    logger.info("migrate_queued", count=len(entries), kind=payload.kind.value, subject=context.subject)

    backend = get_job_backend()
    for entry in entries:
        await backend.enqueue(entry.itemid, service)
    return schemas.MigrateAcceptedResponse(queued=[entry.itemid for entry in entries])


@router.get("", response_model=schemas.QueueStatusResponse, summary="Migration queue length")
async def queue_status(catalog: deps.CatalogDependency) -> schemas.QueueStatusResponse:
    return schemas.QueueStatusResponse(queue_length=await catalog.get_queue_length())


__all__ = ["router"]
