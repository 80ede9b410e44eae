from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from typing import AsyncIterator

from .logging import get_logger

logger = get_logger(component="inflight_guard")


class InflightGuard:
    """Per-key mutual exclusion for work on the current event loop.

    Each held key maps to a future that resolves when the holder leaves the
    ``hold`` block, whatever the outcome.  Later callers wait on that future
    and then take the key themselves, so they can re-check whether the work
    they wanted has already been done.  Entries are removed on release.
    """

    def __init__(self) -> None:
        self._inflight: dict[str, asyncio.Future[None]] = {}

    def __contains__(self, key: str) -> bool:
        return key in self._inflight

    def __len__(self) -> int:
        return len(self._inflight)

    @asynccontextmanager
    async def hold(self, key: str) -> AsyncIterator[bool]:
        """Hold ``key`` for the duration of the block.

        Yields True when the caller had to wait for an earlier holder.
        """
        waited = False
        while (pending := self._inflight.get(key)) is not None:
            waited = True
            logger.debug("guard_wait", key=key)
            # shield: a cancelled waiter must not cancel the holder's future
            await asyncio.shield(pending)

        release: asyncio.Future[None] = asyncio.get_running_loop().create_future()
        self._inflight[key] = release
        try:
            yield waited
        finally:
            del self._inflight[key]
            release.set_result(None)


__all__ = ["InflightGuard"]
