"""Versioned API routing for the avatar ingest service."""

from fastapi import APIRouter

from . import routes_admin, routes_images, routes_migrate, routes_system


def get_api_router() -> APIRouter:
    router = APIRouter(prefix="/v1")
    router.include_router(routes_system.router)
    router.include_router(routes_admin.router)
    router.include_router(routes_images.router)
    router.include_router(routes_migrate.router)
    return router


__all__ = ["get_api_router"]
