"""Background expiry of positions past the retention window."""

from __future__ import annotations

import asyncio
import logging

from loco_tracker.config import settings
from loco_tracker.storage.store import STORE_ERRORS, ObservationStore

logger = logging.getLogger(__name__)


class RetentionReaper:
    """Periodically delete expired rows, like a TTL index would.

    The collector never deletes anything; expiry belongs to the storage
    layer and runs on its own schedule.
    """

    def __init__(self, store: ObservationStore, *, interval: float | None = None) -> None:
        self._store = store
        self.interval = interval if interval is not None else settings.reaper_interval_seconds
        self._stop = asyncio.Event()
        self._task: asyncio.Task[None] | None = None

    async def run_once(self) -> int:
        removed = await self._store.purge_expired()
        if removed:
            logger.info("[STORE] Expired %d positions", removed)
        return removed

    def start(self) -> None:
        if self._task is None or self._task.done():
            self._stop.clear()
            self._task = asyncio.create_task(self._loop(), name="retention-reaper")

    async def stop(self) -> None:
        self._stop.set()
        if self._task is not None:
            task, self._task = self._task, None
            try:
                await task
            except Exception:
                logger.exception("[STORE] Retention reaper had stopped with an error")

    async def _loop(self) -> None:
        while True:
            try:
                await self.run_once()
            except STORE_ERRORS as e:
                logger.warning("[STORE] Retention purge failed: %s", e)
            except Exception:
                logger.exception("[STORE] Unexpected error during retention purge")
            try:
                await asyncio.wait_for(self._stop.wait(), timeout=self.interval)
            except TimeoutError:
                continue
            return
