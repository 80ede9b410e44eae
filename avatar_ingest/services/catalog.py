from __future__ import annotations

from dataclasses import asdict, dataclass
from typing import Any, Sequence

from sqlalchemy import delete, func, select
from sqlalchemy.exc import DBAPIError, IntegrityError, OperationalError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from tenacity import AsyncRetrying, RetryCallState, retry_if_exception, stop_after_attempt, wait_exponential

from avatar_ingest.core.logging import get_logger
from avatar_ingest.db.models import ImageKind, ImageQueueEntry, ImageRecord, ImageSource
from avatar_ingest.ingest.errors import CatalogError


@dataclass(slots=True)
class NewImage:
    """Column values for a catalog insert; ``uploaded_at`` is set by the database."""

    id: str
    url: str
    source_fingerprint: str
    file_size: int
    width: int
    height: int
    kind: ImageKind
    content_type: str
    animated: bool = False
    original_url: str | None = None
    original_file_size: int | None = None
    original_type: str | None = None
    original_attachment_id: int | None = None
    uploaded_by_account: int | None = None
    uploaded_by_system: str | None = None


def _source_link(new: NewImage) -> ImageSource:
    return ImageSource(source_fingerprint=new.source_fingerprint, kind=new.kind, image_id=new.id)


def _is_transient_db_error(exc: BaseException) -> bool:
    if isinstance(exc, IntegrityError):
        return False
    if isinstance(exc, OperationalError):
        return True
    return isinstance(exc, DBAPIError) and bool(exc.connection_invalidated)


class Catalog:
    """Relational catalog of stored images: dedup lookups, inserts, stats and the migration queue."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        max_attempts: int = 3,
        retry_delay_s: float = 0.2,
    ) -> None:
        self.session_factory = session_factory
        self.max_attempts = max_attempts
        self.retry_delay_s = retry_delay_s
        self.logger = get_logger(component="catalog")

    async def get_by_id(self, image_id: str) -> ImageRecord | None:
        async with self.session_factory() as session:
            return await session.get(ImageRecord, image_id)

    async def get_by_source(self, fingerprint: str, kind: ImageKind) -> ImageRecord | None:
        """Image previously produced from these source bytes for this role."""
        stmt = (
            select(ImageRecord)
            .join(ImageSource, ImageSource.image_id == ImageRecord.id)
            .where(ImageSource.source_fingerprint == fingerprint, ImageSource.kind == kind)
        )
        return await self._first(stmt)

    async def get_by_original_url(self, original_url: str) -> ImageRecord | None:
        stmt = select(ImageRecord).where(ImageRecord.original_url == original_url)
        return await self._first(stmt)

    async def get_by_attachment_id(self, attachment_id: int, kind: ImageKind | None = None) -> ImageRecord | None:
        """Image stored from this attachment, optionally only if it was ingested for ``kind``."""
        stmt = select(ImageRecord).where(ImageRecord.original_attachment_id == attachment_id)
        if kind is not None:
            stmt = stmt.join(ImageSource, ImageSource.image_id == ImageRecord.id).where(ImageSource.kind == kind)
        return await self._first(stmt)

    async def _first(self, stmt: Any) -> ImageRecord | None:
        stmt = stmt.order_by(ImageRecord.uploaded_at.desc()).limit(1)
        async with self.session_factory() as session:
            result = await session.execute(stmt)
            return result.scalars().first()

    async def insert_image(self, new: NewImage) -> tuple[ImageRecord, bool]:
        """Insert one record keyed by ``new.id`` and link its source to it.

        Returns the stored row and whether this call created it.  A primary
        key conflict means another writer stored the same bytes first; its row
        is returned instead and the source is linked to it, so later ingests
        of this source hit the dedup lookup.  Transient database errors are
        retried with the same values, which is safe because both inserts are
        keyed by content.

        Raises:
            CatalogError: The insert kept failing.
        """
        retrying = AsyncRetrying(
            stop=stop_after_attempt(self.max_attempts),
            wait=wait_exponential(multiplier=self.retry_delay_s, max=5),
            retry=retry_if_exception(_is_transient_db_error),
            before_sleep=self._log_retry,
            reraise=True,
        )
        try:
            async for attempt in retrying:
                with attempt:
                    return await self._insert_once(new)
        except DBAPIError as exc:
            raise CatalogError(
                f"catalog insert failed: {exc.orig if exc.orig is not None else exc}",
                stage="cataloging",
                fingerprint=new.id,
            ) from exc
        raise AssertionError("unreachable")  # pragma: no cover

    def _log_retry(self, retry_state: RetryCallState) -> None:
        exc = retry_state.outcome.exception() if retry_state.outcome else None
        self.logger.warning("catalog_insert_retry", attempt=retry_state.attempt_number, error=str(exc))

    async def _insert_once(self, new: NewImage) -> tuple[ImageRecord, bool]:
        async with self.session_factory() as session:
            record = ImageRecord(**asdict(new))
            session.add(record)
            try:
                await session.flush()
                session.add(_source_link(new))
                await session.commit()
            except IntegrityError:
                await session.rollback()
            else:
                await session.refresh(record)
                return record, True
        return await self._adopt(new), False

    async def _adopt(self, new: NewImage) -> ImageRecord:
        linked = await self.get_by_source(new.source_fingerprint, new.kind)
        if linked is not None:
            self.logger.info("catalog_conflict_adopted", image_id=linked.id)
            return linked

        async with self.session_factory() as session:
            existing = await session.get(ImageRecord, new.id)
            if existing is None:
                raise CatalogError(
                    "catalog insert conflicted but no matching row exists",
                    stage="cataloging",
                    fingerprint=new.id,
                )
            session.add(_source_link(new))
            try:
                await session.commit()
            except IntegrityError:
                await session.rollback()
                linked = await self.get_by_source(new.source_fingerprint, new.kind)
                if linked is None:
                    raise
                return linked
        self.logger.info("catalog_source_linked", image_id=existing.id, source_fingerprint=new.source_fingerprint)
        return existing

    async def get_stats(self) -> dict[str, int]:
        stmt = select(func.count(ImageRecord.id), func.coalesce(func.sum(ImageRecord.file_size), 0))
        async with self.session_factory() as session:
            total_images, total_file_size = (await session.execute(stmt)).one()
        return {"total_images": int(total_images), "total_file_size": int(total_file_size)}

    async def push_queue(self, urls: Sequence[str], kind: ImageKind) -> list[ImageQueueEntry]:
        async with self.session_factory() as session:
            entries = [ImageQueueEntry(url=url, kind=kind) for url in urls]
            session.add_all(entries)
            await session.commit()
            for entry in entries:
                await session.refresh(entry)
            return entries

    async def get_queue_entry(self, itemid: int) -> ImageQueueEntry | None:
        async with self.session_factory() as session:
            return await session.get(ImageQueueEntry, itemid)

    async def list_queue(
        self,
        limit: int = 100,
        *,
        after: int = 0,
        worker_id: int = 0,
        worker_count: int = 1,
    ) -> list[ImageQueueEntry]:
        """Oldest queued items with ``itemid > after`` in this worker's partition."""
        stmt = (
            select(ImageQueueEntry)
            .where(ImageQueueEntry.itemid > after)
            .where(ImageQueueEntry.itemid % worker_count == worker_id)
            .order_by(ImageQueueEntry.itemid)
            .limit(limit)
        )
        async with self.session_factory() as session:
            return list((await session.execute(stmt)).scalars().all())

    async def delete_queue_entry(self, itemid: int) -> None:
        async with self.session_factory() as session:
            await session.execute(delete(ImageQueueEntry).where(ImageQueueEntry.itemid == itemid))
            await session.commit()

    async def get_queue_length(self) -> int:
        async with self.session_factory() as session:
            return int((await session.execute(select(func.count(ImageQueueEntry.itemid)))).scalar_one())


__all__ = ["Catalog", "NewImage"]
