from __future__ import annotations

from typing import Annotated

from fastapi import Depends, Request

from avatar_ingest.core.auth import AuthContext, get_auth_context, require_admin
from avatar_ingest.services.catalog import Catalog
from avatar_ingest.services.ingest_service import IngestService


def get_ingest_service(request: Request) -> IngestService:
    service = getattr(request.app.state, "ingest_service", None)
    if not isinstance(service, IngestService):  # pragma: no cover - lifespan always sets it
        raise RuntimeError("ingest_service_not_configured")
    return service


def get_catalog(service: IngestService = Depends(get_ingest_service)) -> Catalog:
    return service.catalog


ServiceDependency = Annotated[IngestService, Depends(get_ingest_service)]
CatalogDependency = Annotated[Catalog, Depends(get_catalog)]
AuthDependency = Annotated[AuthContext, Depends(get_auth_context)]
AdminDependency = Annotated[AuthContext, Depends(require_admin)]


__all__ = [
    "get_ingest_service",
    "get_catalog",
    "ServiceDependency",
    "CatalogDependency",
    "AuthDependency",
    "AdminDependency",
]
