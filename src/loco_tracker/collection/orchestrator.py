"""Collection cycle orchestration.

One cycle is: directory fetch → chunked detail fetches → reconcile →
one bulk upsert. ``run_forever`` repeats it at a fixed period; a cycle
that is still running when the next one is due makes the new trigger a
no-op instead of overlapping.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import TYPE_CHECKING
from zoneinfo import ZoneInfo

from loco_tracker.collection.reconciler import reconcile
from loco_tracker.config import settings
from loco_tracker.models.enums import CollectorState

if TYPE_CHECKING:
    from loco_tracker.clients.upstream import UpstreamClient
    from loco_tracker.collection.scheduler import ChunkedScheduler
    from loco_tracker.storage.store import ObservationStore

logger = logging.getLogger(__name__)


class CollectorStartupError(RuntimeError):
    """The store could not be reached or initialised at startup."""


@dataclass
class CycleReport:
    """What one collection cycle did."""

    started_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    skipped: bool = False
    error: str | None = None
    directory_size: int = 0
    fetched: int = 0
    failed: int = 0
    no_data: int = 0
    rejected: int = 0
    inserted: int = 0
    updated: int = 0
    write_failed: int = 0
    duration_seconds: float = 0.0


class CycleOrchestrator:
    """Own the collection schedule and contain per-cycle failures.

    States: DISCONNECTED → CONNECTING → IDLE ⇄ COLLECTING; FAILED when the
    store cannot be reached at startup; STOPPED after ``stop()``.

    Usage:
        orchestrator = CycleOrchestrator(client, store, scheduler)
        await orchestrator.connect()
        report = await orchestrator.collect_cycle()
    """

    def __init__(
        self,
        client: UpstreamClient,
        store: ObservationStore,
        scheduler: ChunkedScheduler,
        *,
        interval: float | None = None,
        shutdown_grace: float | None = None,
        upstream_timezone: str | None = None,
    ) -> None:
        self._client = client
        self._store = store
        self._scheduler = scheduler
        self.interval = interval if interval is not None else settings.collection_interval_seconds
        self.shutdown_grace = (
            shutdown_grace if shutdown_grace is not None else settings.shutdown_grace_seconds
        )
        self._tz = ZoneInfo(upstream_timezone or settings.upstream_timezone)

        self.state = CollectorState.DISCONNECTED
        self.last_report: CycleReport | None = None
        self._cycle_lock = asyncio.Lock()
        self._stop = asyncio.Event()
        self._current: asyncio.Task[CycleReport] | None = None

    @property
    def cycle_in_progress(self) -> bool:
        return self._cycle_lock.locked()

    async def connect(self) -> None:
        """Prepare the schema and check the store is reachable.

        Raises:
            CollectorStartupError: the store is unreachable; state is FAILED.
        """
        self.state = CollectorState.CONNECTING
        try:
            await self._store.init_schema()
            alive = await self._store.ping()
        except Exception as e:
            self.state = CollectorState.FAILED
            raise CollectorStartupError(f"Store initialisation failed: {e}") from e
        if not alive:
            self.state = CollectorState.FAILED
            raise CollectorStartupError("Store is not reachable")
        self.state = CollectorState.IDLE
        logger.info("[CYCLE] Store connected")

    async def collect_cycle(self) -> CycleReport | None:
        """Run one collection cycle.

        Returns:
            The cycle's report, or None when another cycle is already
            running. Never raises for upstream or store trouble.
        """
        if self._cycle_lock.locked():
            logger.warning("[CYCLE] Previous cycle still running, skipping trigger")
            return None

        async with self._cycle_lock:
            self.state = CollectorState.COLLECTING
            report = CycleReport()
            start = time.monotonic()
            try:
                await self._run_cycle(report)
            except Exception as e:
                report.error = f"{type(e).__name__}: {e}"
                logger.exception("[CYCLE] Cycle failed")
            finally:
                report.duration_seconds = time.monotonic() - start
                self.last_report = report
                if self.state is CollectorState.COLLECTING:
                    self.state = CollectorState.IDLE
            return report

    async def _run_cycle(self, report: CycleReport) -> None:
        if not await self._store.ping():
            report.skipped = True
            logger.warning("[CYCLE] Store not connected, skipping cycle")
            return

        logger.info("[CYCLE] Starting collection cycle")
        directory_result = await self._client.fetch_directory()
        if not directory_result.ok:
            report.error = f"directory fetch failed: {directory_result.reason}"
            logger.error("[CYCLE] Directory fetch failed (%s); ending cycle", directory_result.reason)
            return

        directory = directory_result.data
        report.directory_size = len(directory)
        if not directory:
            logger.info("[CYCLE] No active locos in directory; ending cycle")
            return

        results = await self._scheduler.run(directory, self._client.fetch_detail)
        reconciled = reconcile(results, directory, tz=self._tz)
        report.fetched = sum(1 for r in results if r.ok)
        report.failed = reconciled.failed
        report.no_data = reconciled.no_data
        report.rejected = reconciled.rejected
        logger.info(
            "[CYCLE] Parsed %d/%d locos (%d failed, %d without data, %d rejected)",
            len(reconciled.operations),
            len(directory),
            reconciled.failed,
            reconciled.no_data,
            reconciled.rejected,
        )

        if not reconciled.operations:
            logger.info("[CYCLE] No valid positions to write")
            return

        written = await self._store.bulk_upsert(reconciled.operations)
        report.inserted = written.inserted
        report.updated = written.updated
        report.write_failed = written.failed
        logger.info(
            "[CYCLE] Store updated: %d added, %d modified, %d failed",
            written.inserted,
            written.updated,
            written.failed,
        )

    async def run_forever(self) -> None:
        """Connect, then run cycles at a fixed period until ``stop()``.

        The first cycle runs immediately. Each wait is measured from the
        previous cycle's start.

        Raises:
            CollectorStartupError: the store could not be reached.
        """
        if self.state in (CollectorState.DISCONNECTED, CollectorState.FAILED):
            await self.connect()
        logger.info("[CYCLE] Collection scheduled every %.0fs", self.interval)

        while not self._stop.is_set():
            started = time.monotonic()
            self._current = asyncio.create_task(self._scheduled_cycle(), name="collect-cycle")
            try:
                await asyncio.shield(self._current)
            except asyncio.CancelledError:
                if self._stop.is_set():
                    break
                raise
            finally:
                if self._current is not None and self._current.done():
                    self._current = None

            remaining = max(0.0, self.interval - (time.monotonic() - started))
            try:
                await asyncio.wait_for(self._stop.wait(), timeout=remaining)
            except TimeoutError:
                pass

        self.state = CollectorState.STOPPED

    async def _scheduled_cycle(self) -> CycleReport:
        report = await self.collect_cycle()
        return report or CycleReport(skipped=True)

    async def stop(self) -> None:
        """Stop scheduling and drain the running cycle.

        Waits up to ``shutdown_grace`` seconds for a running cycle to
        finish, then cancels it.
        """
        self._stop.set()
        current = self._current
        if current is not None and not current.done():
            logger.info("[CYCLE] Waiting up to %.0fs for running cycle", self.shutdown_grace)
            done, _ = await asyncio.wait({current}, timeout=self.shutdown_grace)
            if not done:
                logger.warning("[CYCLE] Cycle did not finish in time, cancelling")
                current.cancel()
                await asyncio.gather(current, return_exceptions=True)
        self.state = CollectorState.STOPPED
