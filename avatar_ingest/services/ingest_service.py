from __future__ import annotations

import asyncio
import enum
from dataclasses import dataclass
from typing import Any, Callable, Coroutine, TypeVar

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from structlog.typing import FilteringBoundLogger

from avatar_ingest.core.config import Settings
from avatar_ingest.core.guard import InflightGuard
from avatar_ingest.core.logging import get_logger
from avatar_ingest.core.storage import ObjectStoreWriter, Storage, get_storage
from avatar_ingest.db.models import ImageKind, ImageRecord
from avatar_ingest.domain import (
    PolicyAction,
    PolicyLimits,
    SourceFetcher,
    SourceImage,
    TranscodeResult,
    classify,
    compute_fingerprint,
    ensure_decodable,
    evaluate,
    object_key_for,
    parse_url,
    transcode,
)
from avatar_ingest.ingest.errors import DecodeError, IngestError, PolicyViolation, SourceError

from .catalog import Catalog, NewImage

T = TypeVar("T")


class IngestStage(str, enum.Enum):
    requested = "requested"
    deduplicating = "deduplicating"
    hit_existing = "hit_existing"
    decoding = "decoding"
    policy_evaluated = "policy_evaluated"
    pass_through = "pass_through"
    transcoding = "transcoding"
    uploading = "uploading"
    cataloging = "cataloging"
    committed = "committed"
    rejected = "rejected"
    failed = "failed"


@dataclass(slots=True)
class Attribution:
    uploaded_by_account: int | None = None
    uploaded_by_system: str | None = None


@dataclass(slots=True)
class IngestOutcome:
    record: ImageRecord
    stage: IngestStage
    new: bool
    kind: ImageKind


@dataclass(slots=True)
class _Progress:
    fingerprint: str
    logger: FilteringBoundLogger
    stage: IngestStage = IngestStage.requested

    def advance(self, stage: IngestStage) -> None:
        self.stage = stage
        self.logger.debug("ingest_stage", stage=stage.value)


def is_terminal_rejection(exc: IngestError) -> bool:
    """Failures that no retry will fix: bad bytes, policy, unusable source references."""
    if isinstance(exc, (DecodeError, PolicyViolation)):
        return True
    return isinstance(exc, SourceError) and not exc.retryable


class IngestService:
    """Sequences fingerprint, dedup, classify, policy, transcode, upload and catalog.

    One instance is shared by every request in the process so that the
    in-flight guard sees all of them.
    """

    def __init__(
        self,
        settings: Settings,
        storage: Storage,
        catalog: Catalog,
        *,
        guard: InflightGuard | None = None,
        fetcher: SourceFetcher | None = None,
        limits: PolicyLimits | None = None,
        writer: ObjectStoreWriter | None = None,
        transcoder: Callable[..., TranscodeResult] = transcode,
    ) -> None:
        self.settings = settings
        self.storage = storage
        self.catalog = catalog
        self.guard = guard or InflightGuard()
        self.fetcher = fetcher or SourceFetcher(timeout_s=settings.fetch_timeout_s, max_bytes=settings.fetch_max_bytes)
        self.limits = limits or PolicyLimits.from_settings(settings)
        self.writer = writer or ObjectStoreWriter.from_settings(storage, settings)
        self.transcoder = transcoder
        self.logger = get_logger(component="ingest_service")
        self._pending: set[asyncio.Task[Any]] = set()

    async def aclose(self) -> None:
        if self._pending:
            await asyncio.gather(*self._pending, return_exceptions=True)
        await self.fetcher.aclose()

    async def ingest(
        self,
        source: SourceImage,
        kind: ImageKind,
        attribution: Attribution | None = None,
    ) -> IngestOutcome:
        """Ingest raw source bytes and return the catalog record for them.

        The guarded work runs in its own task.  If the caller is cancelled the
        task keeps going, so writes that were already issued complete and the
        guard is released when the work ends rather than when the caller leaves.

        Raises:
            IngestError: Rejected (decode/policy) or failed (storage/catalog).
        """
        fingerprint = await asyncio.to_thread(compute_fingerprint, source.data)
        task = self.spawn(self._run_guarded(source, fingerprint, kind, attribution or Attribution()))
        return await asyncio.shield(task)

    def spawn(self, work: Coroutine[Any, Any, T]) -> asyncio.Task[T]:
        """Run ``work`` as a task owned by the service; ``aclose`` waits for it."""
        task = asyncio.ensure_future(work)
        self._pending.add(task)
        task.add_done_callback(self._forget)
        return task

    def _forget(self, task: asyncio.Task[Any]) -> None:
        self._pending.discard(task)
        if not task.cancelled() and task.exception() is not None:
            # retrieved here so an abandoned task does not warn on garbage collection
            self.logger.debug("service_task_errored", error=str(task.exception()))

    async def _run_guarded(
        self,
        source: SourceImage,
        fingerprint: str,
        kind: ImageKind,
        attribution: Attribution,
    ) -> IngestOutcome:
        progress = _Progress(fingerprint=fingerprint, logger=self.logger.bind(fingerprint=fingerprint, kind=kind.value))
        # one unit of work per (source bytes, role)
        async with self.guard.hold(f"{fingerprint}:{kind.value}") as waited:
            progress.advance(IngestStage.deduplicating)
            existing = await self.catalog.get_by_source(fingerprint, kind)
            if existing is not None:
                progress.advance(IngestStage.hit_existing)
                progress.logger.info("ingest_hit_existing", image_id=existing.id, waited=waited)
                return IngestOutcome(record=existing, stage=IngestStage.hit_existing, new=False, kind=kind)

            try:
                return await self._process(source, kind, attribution, progress)
            except IngestError as exc:
                exc.at(progress.stage.value, fingerprint)
                terminal = IngestStage.rejected if is_terminal_rejection(exc) else IngestStage.failed
                progress.logger.warning(
                    f"ingest_{terminal.value}",
                    stage=exc.stage,
                    error=exc.message,
                    retryable=exc.retryable,
                )
                progress.advance(terminal)
                raise

    async def _process(
        self,
        source: SourceImage,
        kind: ImageKind,
        attribution: Attribution,
        progress: _Progress,
    ) -> IngestOutcome:
        progress.advance(IngestStage.decoding)
        info = await asyncio.to_thread(classify, source.data)

        progress.advance(IngestStage.policy_evaluated)
        decision = evaluate(info, self.limits, kind)
        if decision.action is PolicyAction.reject:
            raise PolicyViolation(decision.reason or "rejected by policy")

        if decision.action is PolicyAction.pass_through:
            progress.advance(IngestStage.pass_through)
            await asyncio.to_thread(ensure_decodable, source.data)
            result = TranscodeResult(
                data=source.data,
                width=info.width,
                height=info.height,
                format=info.format,
                animated=info.animated,
            )
        else:
            progress.advance(IngestStage.transcoding)
            result = await asyncio.to_thread(self.transcoder, source.data, info, decision, self.limits)

        image_id = await asyncio.to_thread(compute_fingerprint, result.data)
        key = object_key_for(image_id, result.extension)

        progress.advance(IngestStage.uploading)
        await self.writer.write(key, result.data, content_type=result.content_type)

        progress.advance(IngestStage.cataloging)
        record, created = await self.catalog.insert_image(
            NewImage(
                id=image_id,
                url=f"{self.settings.normalized_base_url}{key}",
                source_fingerprint=progress.fingerprint,
                file_size=len(result.data),
                width=result.width,
                height=result.height,
                kind=kind,
                content_type=result.content_type,
                animated=result.animated,
                original_url=source.original_url,
                original_file_size=source.byte_size,
                original_type=source.original_type,
                original_attachment_id=source.original_attachment_id,
                uploaded_by_account=attribution.uploaded_by_account,
                uploaded_by_system=attribution.uploaded_by_system,
            )
        )

        progress.advance(IngestStage.committed)
        progress.logger.info(
            "ingest_committed",
            image_id=record.id,
            new=created,
            passed_through=decision.action is PolicyAction.pass_through,
            source_bytes=source.byte_size,
            stored_bytes=record.file_size,
            width=record.width,
            height=record.height,
        )
        return IngestOutcome(record=record, stage=IngestStage.committed, new=created, kind=kind)

    async def pull(
        self,
        url: str,
        kind: ImageKind,
        attribution: Attribution | None = None,
        *,
        force: bool = False,
    ) -> IngestOutcome:
        """Fetch an upstream CDN attachment and ingest it.

        Attachment ids are immutable upstream, so a catalog hit on the id skips
        the fetch entirely unless ``force`` is set.
        """
        parsed = parse_url(url, self.settings.cdn_hosts)
        if not force:
            existing = await self.catalog.get_by_attachment_id(parsed.attachment_id, kind)
            if existing is not None:
                self.logger.info("pull_hit_attachment", attachment_id=parsed.attachment_id, image_id=existing.id)
                return IngestOutcome(record=existing, stage=IngestStage.hit_existing, new=False, kind=kind)

        pulled = await self.fetcher.fetch(parsed)
        source = SourceImage(
            data=pulled.data,
            original_url=parsed.full_url,
            original_type=pulled.content_type,
            original_attachment_id=parsed.attachment_id,
        )
        return await self.ingest(source, kind, attribution)


def build_ingest_service(
    settings: Settings,
    session_factory: async_sessionmaker[AsyncSession],
    *,
    storage: Storage | None = None,
) -> IngestService:
    storage = storage or get_storage(settings)
    catalog = Catalog(session_factory, max_attempts=settings.catalog_max_attempts)
    return IngestService(settings, storage, catalog)


async def process_queue_item(itemid: int, service: IngestService) -> str:
    """Migrate one queued legacy URL.

    Returns ``migrated``, ``skipped`` (the item can never succeed and is
    dropped) or ``missing``.  Retryable failures propagate and leave the item
    queued.
    """
    logger = get_logger(component="migrate", itemid=itemid)
    entry = await service.catalog.get_queue_entry(itemid)
    if entry is None:
        logger.info("queue_item_missing")
        return "missing"

    try:
        outcome = await service.pull(entry.url, entry.kind)
    except IngestError as exc:
        if not is_terminal_rejection(exc):
            raise
        logger.warning("migrate_skipped", url=entry.url, error=exc.message, stage=exc.stage)
        await service.catalog.delete_queue_entry(itemid)
        return "skipped"

    await service.catalog.delete_queue_entry(itemid)
    logger.info(
        "migrated",
        url=outcome.record.url,
        original_bytes=outcome.record.original_file_size,
        stored_bytes=outcome.record.file_size,
    )
    return "migrated"


async def drain_queue(service: IngestService, *, worker_id: int = 0, worker_count: int = 1, batch_size: int = 100) -> dict[str, int]:
    """Process every queued item in this worker's partition once, oldest first."""
    logger = get_logger(component="migrate", worker_id=worker_id)
    counts = {"migrated": 0, "skipped": 0, "missing": 0, "deferred": 0}
    logger.info("migrate_queue_length", queue_length=await service.catalog.get_queue_length())

    cursor = 0
    while True:
        entries = await service.catalog.list_queue(
            limit=batch_size, after=cursor, worker_id=worker_id, worker_count=worker_count
        )
        if not entries:
            return counts
        for entry in entries:
            cursor = entry.itemid
            try:
                counts[await process_queue_item(entry.itemid, service)] += 1
            except IngestError as exc:
                counts["deferred"] += 1
                logger.error("migrate_deferred", itemid=entry.itemid, error=exc.message, stage=exc.stage)


__all__ = [
    "IngestStage",
    "Attribution",
    "IngestOutcome",
    "IngestService",
    "build_ingest_service",
    "is_terminal_rejection",
    "process_queue_item",
    "drain_queue",
]
