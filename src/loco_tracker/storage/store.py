"""Persistent store for loco positions.

Writes are keyed upserts on (loco_no, observed_at), so applying the same
operation twice leaves the table unchanged. Rows past the retention window
are invisible to reads and removed by ``purge_expired`` (driven by
RetentionReaper).
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import Any

from sqlalchemy import Delete, Select, delete, func, or_, select
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession

from loco_tracker.config import settings
from loco_tracker.db import build_engine, build_session_factory, init_db, ping
from loco_tracker.models.observation import UpsertOperation, ensure_utc
from loco_tracker.models.position import LocoPosition

logger = logging.getLogger(__name__)

# Columns overwritten when an upsert hits an existing (loco_no, observed_at)
_UPDATE_COLUMNS = (
    "train_no",
    "latitude",
    "longitude",
    "station",
    "event",
    "speed",
    "timestamp_estimated",
)
_KEY_COLUMNS = ("loco_no", "observed_at")

# Bound parameters per existence lookup
_LOOKUP_BATCH = 500

DEFAULT_HISTORY_LIMIT = 200

# Raised by the store when the database misbehaves or is unreachable;
# asyncpg surfaces refused connections as plain OSError
STORE_ERRORS: tuple[type[Exception], ...] = (SQLAlchemyError, OSError)


@dataclass
class WriteReport:
    """Counts from one write call."""

    inserted: int = 0
    updated: int = 0
    failed: int = 0

    @property
    def written(self) -> int:
        return self.inserted + self.updated


def _key(loco_no: int, observed_at: datetime) -> tuple[int, datetime]:
    return (loco_no, ensure_utc(observed_at))


class ObservationStore:
    """Async store for LocoPosition rows.

    Usage:
        store = ObservationStore(build_engine())
        await store.init_schema()
        report = await store.bulk_upsert(operations)
    """

    def __init__(self, engine: AsyncEngine, *, retention: timedelta | None = None) -> None:
        self._engine = engine
        self._session_factory = build_session_factory(engine)
        self.retention = retention or timedelta(hours=settings.retention_hours)

    @classmethod
    def from_settings(cls, **engine_kwargs: Any) -> ObservationStore:
        """Build a store for the configured database."""
        return cls(build_engine(**engine_kwargs))

    @property
    def dialect(self) -> str:
        return self._engine.dialect.name

    async def init_schema(self) -> None:
        await init_db(self._engine)

    async def ping(self) -> bool:
        """Whether the database answers; never raises on connection errors."""
        try:
            await ping(self._engine)
        except STORE_ERRORS as e:
            logger.warning("[STORE] Database ping failed: %s", e)
            return False
        return True

    async def dispose(self) -> None:
        await self._engine.dispose()

    # ── Writes ───────────────────────────────────────────────────────────────

    def _upsert_statement(self) -> Any:
        if self.dialect == "postgresql":
            stmt = postgresql.insert(LocoPosition.__table__)
        elif self.dialect == "sqlite":
            stmt = sqlite.insert(LocoPosition.__table__)
        else:
            raise NotImplementedError(f"Upsert not supported for dialect {self.dialect!r}")

        set_ = {name: getattr(stmt.excluded, name) for name in _UPDATE_COLUMNS}
        set_["updated_at"] = func.now()
        # Re-applying identical values leaves the row, updated_at included, untouched
        table = LocoPosition.__table__
        changed = or_(
            *(table.c[name].is_distinct_from(stmt.excluded[name]) for name in _UPDATE_COLUMNS)
        )
        return stmt.on_conflict_do_update(
            index_elements=list(_KEY_COLUMNS), set_=set_, where=changed
        )

    async def _existing_keys(
        self, session: AsyncSession, operations: Sequence[UpsertOperation]
    ) -> set[tuple[int, datetime]]:
        """Keys among ``operations`` that already have a row."""
        wanted = {_key(*op.match) for op in operations}
        found: set[tuple[int, datetime]] = set()
        ops = list(operations)
        for i in range(0, len(ops), _LOOKUP_BATCH):
            batch = ops[i : i + _LOOKUP_BATCH]
            stmt = select(LocoPosition.loco_no, LocoPosition.observed_at).where(
                LocoPosition.loco_no.in_(list({op.match[0] for op in batch})),
                LocoPosition.observed_at.in_(list({op.match[1] for op in batch})),
            )
            result = await session.execute(stmt)
            for loco_no, observed_at in result.all():
                key = _key(loco_no, observed_at)
                if key in wanted:
                    found.add(key)
        return found

    async def bulk_upsert(self, operations: Sequence[UpsertOperation]) -> WriteReport:
        """Apply upserts as one unordered batch.

        The batch is tried as a single statement. If it fails, every
        operation is retried in its own transaction so one bad row cannot
        stop the others.

        Returns:
            WriteReport with inserted/updated/failed counts. An empty input
            does not touch the database.
        """
        if not operations:
            return WriteReport()

        try:
            async with self._session_factory() as session, session.begin():
                existing = await self._existing_keys(session, operations)
                await session.execute(self._upsert_statement(), [op.values for op in operations])
        except STORE_ERRORS as e:
            logger.warning(
                "[STORE] Bulk upsert of %d rows failed (%s); applying individually",
                len(operations),
                type(e).__name__,
            )
            return await self._upsert_individually(operations)

        updated = sum(1 for op in operations if _key(*op.match) in existing)
        return WriteReport(inserted=len(operations) - updated, updated=updated)

    async def _upsert_individually(self, operations: Sequence[UpsertOperation]) -> WriteReport:
        report = WriteReport()
        stmt = self._upsert_statement()
        for op in operations:
            try:
                async with self._session_factory() as session, session.begin():
                    existed = bool(await self._existing_keys(session, [op]))
                    await session.execute(stmt, [op.values])
            except STORE_ERRORS as e:
                report.failed += 1
                logger.warning("[STORE] Upsert failed for loco %s: %s", op.match[0], e)
                continue
            if existed:
                report.updated += 1
            else:
                report.inserted += 1
        return report

    async def upsert_one(self, operation: UpsertOperation) -> WriteReport:
        """Single-record upsert used by the on-demand path."""
        return await self.bulk_upsert([operation])

    # ── Retention ────────────────────────────────────────────────────────────

    def cutoff(self, now: datetime | None = None) -> datetime:
        """Oldest observed_at still inside the retention window."""
        return ensure_utc(now or datetime.now(UTC)) - self.retention

    async def purge_expired(self, now: datetime | None = None) -> int:
        """Delete rows older than the retention window; returns the count."""
        stmt: Delete = delete(LocoPosition).where(LocoPosition.observed_at < self.cutoff(now))
        async with self._session_factory() as session, session.begin():
            result = await session.execute(stmt)
        return result.rowcount or 0

    # ── Reads ────────────────────────────────────────────────────────────────

    def _live(self, stmt: Select[Any], now: datetime | None) -> Select[Any]:
        return stmt.where(LocoPosition.observed_at >= self.cutoff(now))

    async def latest_for_loco(
        self, loco_no: int, *, now: datetime | None = None
    ) -> LocoPosition | None:
        stmt = self._live(select(LocoPosition).where(LocoPosition.loco_no == loco_no), now)
        stmt = stmt.order_by(LocoPosition.observed_at.desc()).limit(1)
        async with self._session_factory() as session:
            result = await session.execute(stmt)
            return result.scalars().first()

    async def latest_for_train(
        self, train_no: int, *, now: datetime | None = None
    ) -> LocoPosition | None:
        stmt = self._live(select(LocoPosition).where(LocoPosition.train_no == train_no), now)
        stmt = stmt.order_by(LocoPosition.observed_at.desc()).limit(1)
        async with self._session_factory() as session:
            result = await session.execute(stmt)
            return result.scalars().first()

    async def history(
        self,
        loco_no: int,
        *,
        limit: int = DEFAULT_HISTORY_LIMIT,
        now: datetime | None = None,
    ) -> list[LocoPosition]:
        """Positions for a loco, newest first."""
        stmt = self._live(select(LocoPosition).where(LocoPosition.loco_no == loco_no), now)
        stmt = stmt.order_by(LocoPosition.observed_at.desc()).limit(limit)
        async with self._session_factory() as session:
            result = await session.execute(stmt)
            return list(result.scalars().all())

    async def count(self) -> int:
        """Total rows, expired or not."""
        async with self._session_factory() as session:
            result = await session.execute(select(func.count()).select_from(LocoPosition))
            return int(result.scalar_one())
