from __future__ import annotations

from contextlib import asynccontextmanager
from typing import AsyncIterator

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase

from .config import Settings


class Base(DeclarativeBase):
    """Declarative base for SQLAlchemy models."""


def create_engine(settings: Settings) -> AsyncEngine:
    return create_async_engine(settings.database_url, echo=False, future=True, pool_pre_ping=True)


def create_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


async def create_schema(engine: AsyncEngine) -> None:
    """Create all tables directly from metadata (development and tests; production uses Alembic)."""
    import avatar_ingest.db.models  # noqa: F401 - ensure models are registered on the metadata

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


@asynccontextmanager
async def lifespan(settings: Settings) -> AsyncIterator[dict[str, object]]:
    engine = create_engine(settings)
    session_factory = create_session_factory(engine)
    state: dict[str, object] = {"engine": engine, "session_factory": session_factory}
    try:
        yield state
    finally:
        await engine.dispose()


__all__ = ["Base", "create_engine", "create_session_factory", "create_schema", "lifespan"]
