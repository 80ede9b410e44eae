from __future__ import annotations

import uuid
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse

from avatar_ingest.api.v1 import get_api_router
from avatar_ingest.core.config import get_settings
from avatar_ingest.core.db import create_engine, create_session_factory
from avatar_ingest.core.logging import bind_request_context, clear_request_context, configure_logging, get_logger
from avatar_ingest.ingest.errors import (
    CatalogError,
    DecodeError,
    FetchError,
    IngestError,
    PolicyViolation,
    SourceError,
    StorageError,
)
from avatar_ingest.services.ingest_service import build_ingest_service

logger = get_logger(component="api")


def status_for(exc: IngestError) -> int:
    if isinstance(exc, FetchError):
        return status.HTTP_502_BAD_GATEWAY
    if isinstance(exc, (DecodeError, PolicyViolation, SourceError)):
        return status.HTTP_400_BAD_REQUEST
    if isinstance(exc, StorageError) and not exc.retryable:
        return status.HTTP_500_INTERNAL_SERVER_ERROR
    if exc.retryable or isinstance(exc, CatalogError):
        return status.HTTP_503_SERVICE_UNAVAILABLE
    return status.HTTP_500_INTERNAL_SERVER_ERROR


async def handle_ingest_error(request: Request, exc: IngestError) -> JSONResponse:
    code = status_for(exc)
    log = logger.error if code >= 500 else logger.info
    log("ingest_error_response", path=request.url.path, status=code, **exc.to_dict())
    return JSONResponse(status_code=code, content=exc.to_dict())


def create_app() -> FastAPI:
    settings = get_settings()
    configure_logging(level=settings.log_level)
    engine = create_engine(settings)
    session_factory = create_session_factory(engine)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        service = build_ingest_service(settings, session_factory)
        app.state.settings = settings
        app.state.engine = engine
        app.state.session_factory = session_factory
        app.state.ingest_service = service
        try:
            yield
        finally:
            await service.aclose()
            await engine.dispose()

    app = FastAPI(
        title=settings.app_name,
        version=settings.version,
        lifespan=lifespan,
        openapi_url="/openapi.json",
        docs_url="/docs",
    )

    @app.middleware("http")
    async def request_context(request: Request, call_next):
        bind_request_context(request_id=request.headers.get("X-Request-Id") or uuid.uuid4().hex)
        try:
            return await call_next(request)
        finally:
            clear_request_context()

    app.add_exception_handler(IngestError, handle_ingest_error)
    app.include_router(get_api_router())
    return app


__all__ = ["create_app", "status_for"]
