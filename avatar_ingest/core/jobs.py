from __future__ import annotations

from abc import ABC, abstractmethod
from functools import lru_cache
from typing import TYPE_CHECKING

from redis import Redis
from rq import Queue, Retry

from avatar_ingest.ingest.errors import IngestError

from .config import get_settings
from .logging import get_logger

if TYPE_CHECKING:
    from avatar_ingest.services.ingest_service import IngestService

logger = get_logger(component="jobs")


class BaseJobBackend(ABC):
    @abstractmethod
    async def enqueue(self, itemid: int, service: "IngestService") -> None: ...


class ImmediateJobBackend(BaseJobBackend):
    """Migrates queued items in-process on the shared ingest service.

    The work is scheduled as a task and ``enqueue`` returns at once.  Running
    on the app's service means migrations and uploads share one in-flight
    guard.  Retryable failures leave the item queued for ``drain-queue``.
    """

    async def enqueue(self, itemid: int, service: "IngestService") -> None:
        service.spawn(self._migrate(itemid, service))

    @staticmethod
    async def _migrate(itemid: int, service: "IngestService") -> str | None:
        from avatar_ingest.services.ingest_service import process_queue_item

        try:
            return await process_queue_item(itemid, service)
        except IngestError as exc:
            logger.warning("migrate_deferred", itemid=itemid, error=exc.message, stage=exc.stage)
            return None


class RQJobBackend(BaseJobBackend):
    def __init__(self, queue: Queue, *, max_retries: int = 3):
        self.queue = queue
        self.max_retries = max_retries

    async def enqueue(self, itemid: int, service: "IngestService") -> None:  # pragma: no cover - exercised via worker
        from avatar_ingest.workers.tasks import run_queue_item

        retry = Retry(max=self.max_retries, interval=[10, 30, 60]) if self.max_retries > 0 else None
        self.queue.enqueue(run_queue_item, itemid, retry=retry)


@lru_cache()
def get_job_backend() -> BaseJobBackend:
    settings = get_settings()
    backend = settings.normalized_job_backend
    if backend == "immediate":
        return ImmediateJobBackend()
    if backend == "rq":  # pragma: no cover - requires redis
        connection = Redis.from_url(settings.redis_url)
        return RQJobBackend(Queue("avatar-migrate", connection=connection), max_retries=settings.job_max_retries)
    raise ValueError(f"Unsupported job backend: {settings.job_queue_backend}")


__all__ = ["BaseJobBackend", "ImmediateJobBackend", "RQJobBackend", "get_job_backend"]
