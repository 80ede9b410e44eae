from __future__ import annotations

import asyncio

from avatar_ingest.core.config import get_settings
from avatar_ingest.core.db import lifespan
from avatar_ingest.core.logging import configure_logging
from avatar_ingest.services.ingest_service import build_ingest_service, drain_queue, process_queue_item


def run_queue_item(itemid: int) -> str:
    """RQ entry point for one migration queue item."""

    settings = get_settings()
    configure_logging(settings.log_level)

    async def _runner() -> str:
        async with lifespan(settings) as state:
            service = build_ingest_service(settings, state["session_factory"])
            try:
                return await process_queue_item(itemid, service)
            finally:
                await service.aclose()

    return asyncio.run(_runner())


def run_drain(worker_id: int = 0, worker_count: int = 1) -> dict[str, int]:
    """Drain this worker's share of the migration queue once."""

    settings = get_settings()
    configure_logging(settings.log_level)

    async def _runner() -> dict[str, int]:
        async with lifespan(settings) as state:
            service = build_ingest_service(settings, state["session_factory"])
            try:
                return await drain_queue(service, worker_id=worker_id, worker_count=worker_count)
            finally:
                await service.aclose()

    return asyncio.run(_runner())


__all__ = ["run_queue_item", "run_drain"]
