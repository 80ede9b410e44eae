from __future__ import annotations

from fastapi import APIRouter

from avatar_ingest.api import deps

from .schemas import HealthResponse


router = APIRouter(tags=["system"])


@router.get("/health", response_model=HealthResponse, summary="Liveness check")
async def health(service: deps.ServiceDependency) -> HealthResponse:
    return HealthResponse(
        storage_backend=service.settings.storage_backend,
        inflight=len(service.guard),
    )


__all__ = ["router"]
