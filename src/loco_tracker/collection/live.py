"""On-demand lookup of a single loco.

Serves a fresh position straight from the upstream detail endpoint and
caches it with a detached write. The caller never waits for, or sees the
result of, that write.
"""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING
from zoneinfo import ZoneInfo

from loco_tracker.config import settings
from loco_tracker.extraction.popup import parse_detail_payload
from loco_tracker.models.observation import LocoObservation, UpsertOperation
from loco_tracker.storage.store import STORE_ERRORS

if TYPE_CHECKING:
    from loco_tracker.clients.upstream import UpstreamClient
    from loco_tracker.storage.store import ObservationStore, WriteReport

logger = logging.getLogger(__name__)


class LiveLookupError(RuntimeError):
    """The upstream detail fetch failed for an on-demand lookup."""

    def __init__(self, loco_no: int, reason: str | None) -> None:
        super().__init__(f"Upstream lookup for loco {loco_no} failed: {reason}")
        self.loco_no = loco_no
        self.reason = reason


class LiveLookupService:
    """Fetch, parse and opportunistically cache one loco's position."""

    def __init__(
        self,
        client: UpstreamClient,
        store: ObservationStore,
        *,
        upstream_timezone: str | None = None,
    ) -> None:
        self._client = client
        self._store = store
        self._tz = ZoneInfo(upstream_timezone or settings.upstream_timezone)
        # Strong references so pending writes are not garbage collected
        self._pending: set[asyncio.Task[WriteReport]] = set()

    @property
    def pending_writes(self) -> int:
        return len(self._pending)

    async def fetch_and_cache_one(self, loco_no: int) -> LocoObservation | None:
        """Return the live position for ``loco_no``.

        Returns:
            The observation, or None when the upstream has no usable
            position for this loco.

        Raises:
            LiveLookupError: the upstream request itself failed.
        """
        result = await self._client.fetch_detail(loco_no)
        if not result.ok:
            raise LiveLookupError(loco_no, result.reason)

        observation = parse_detail_payload(loco_no, result.data, tz=self._tz)
        if observation is None:
            return None
        if not observation.has_valid_position:
            logger.warning("[LIVE] Loco %s has invalid coordinates, not serving", loco_no)
            return None

        await self._attach_train_no(observation)
        self._schedule_write(UpsertOperation.from_observation(observation))
        return observation

    async def _attach_train_no(self, observation: LocoObservation) -> None:
        """Copy the train number from the latest stored row, if any."""
        try:
            latest = await self._store.latest_for_loco(observation.loco_no)
        except STORE_ERRORS as e:
            logger.warning("[LIVE] Could not read stored train for loco %s: %s", observation.loco_no, e)
            return
        if latest is not None and latest.train_no:
            observation.train_no = latest.train_no

    def _schedule_write(self, operation: UpsertOperation) -> None:
        task = asyncio.create_task(
            self._store.upsert_one(operation), name=f"cache-loco-{operation.match[0]}"
        )
        self._pending.add(task)
        task.add_done_callback(self._on_write_done)

    def _on_write_done(self, task: asyncio.Task[WriteReport]) -> None:
        self._pending.discard(task)
        if task.cancelled():
            logger.debug("[LIVE] Cache write cancelled")
            return
        error = task.exception()
        if error is not None:
            logger.warning("[LIVE] Cache write failed: %s", error)
            return
        report = task.result()
        if report.failed:
            logger.warning("[LIVE] Cache write rejected by store")
        else:
            logger.debug("[LIVE] Cached position (%d new, %d updated)", report.inserted, report.updated)

    async def drain(self) -> None:
        """Wait for pending cache writes (used at shutdown)."""
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)
