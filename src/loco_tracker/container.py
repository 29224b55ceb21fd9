"""Explicit wiring of the collector's components.

Both the API process and the CLI build one ServiceContainer at startup and
pass it around; there is no module-level store or client.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from dataclasses import dataclass, field

from loco_tracker.clients.upstream import UpstreamClient
from loco_tracker.collection.live import LiveLookupService
from loco_tracker.collection.orchestrator import CycleOrchestrator
from loco_tracker.collection.scheduler import ChunkedScheduler
from loco_tracker.config import Settings, settings
from loco_tracker.db import build_engine
from loco_tracker.storage.reaper import RetentionReaper
from loco_tracker.storage.store import ObservationStore

logger = logging.getLogger(__name__)


@dataclass
class ServiceContainer:
    """The long-lived objects of one process."""

    store: ObservationStore
    client: UpstreamClient
    orchestrator: CycleOrchestrator
    live: LiveLookupService
    reaper: RetentionReaper
    _collector_task: asyncio.Task[None] | None = field(default=None, repr=False)

    @classmethod
    def build(cls, config: Settings | None = None) -> ServiceContainer:
        config = config or settings
        store = ObservationStore(
            build_engine(config.database_url, echo=config.database_echo),
        )
        client = UpstreamClient(
            directory_url=config.directory_url,
            detail_url=config.detail_url,
            user_agent=config.user_agent,
            timeout=config.http_timeout_seconds,
        )
        scheduler = ChunkedScheduler(
            config.fetch_chunk_size,
            config.fetch_chunk_delay_seconds,
        )
        orchestrator = CycleOrchestrator(
            client,
            store,
            scheduler,
            interval=config.collection_interval_seconds,
            shutdown_grace=config.shutdown_grace_seconds,
            upstream_timezone=config.upstream_timezone,
        )
        return cls(
            store=store,
            client=client,
            orchestrator=orchestrator,
            live=LiveLookupService(client, store, upstream_timezone=config.upstream_timezone),
            reaper=RetentionReaper(store, interval=config.reaper_interval_seconds),
        )

    def start_background(self) -> None:
        """Start the collector loop and the retention reaper."""
        self.reaper.start()
        if self._collector_task is None or self._collector_task.done():
            self._collector_task = asyncio.create_task(
                self.orchestrator.run_forever(), name="collector"
            )
            self._collector_task.add_done_callback(_log_collector_exit)

    async def aclose(self) -> None:
        """Drain background work, then release connections."""
        await self.orchestrator.stop()
        if self._collector_task is not None:
            with contextlib.suppress(Exception):
                await self._collector_task
            self._collector_task = None
        await self.reaper.stop()
        await self.live.drain()
        await self.client.close()
        await self.store.dispose()


def _log_collector_exit(task: asyncio.Task[None]) -> None:
    if task.cancelled():
        return
    error = task.exception()
    if error is not None:
        logger.error("[CYCLE] Collector stopped: %s", error)
