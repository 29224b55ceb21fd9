"""Tests for the collection cycle orchestrator."""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Any
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from loco_tracker.clients.upstream import FetchResult
from loco_tracker.collection.orchestrator import CollectorStartupError, CycleOrchestrator
from loco_tracker.collection.scheduler import ChunkedScheduler
from loco_tracker.models import CollectorState, DirectoryEntry, ensure_utc
from loco_tracker.storage.store import ObservationStore

from conftest import IST

if TYPE_CHECKING:
    from conftest import MakePayload


def current_year() -> int:
    return datetime.now(IST).year


def expected_ts(day: int = 5, month: int = 6, hour: int = 14, minute: int = 30) -> datetime:
    return datetime(current_year(), month, day, hour, minute, 0, tzinfo=IST)


def fake_client(
    directory: list[DirectoryEntry] | FetchResult,
    details: dict[int, FetchResult] | None = None,
) -> MagicMock:
    client = MagicMock()
    if isinstance(directory, FetchResult):
        client.fetch_directory = AsyncMock(return_value=directory)
    else:
        client.fetch_directory = AsyncMock(return_value=FetchResult.success(directory))

    details = details or {}

    async def fetch_detail(loco_no: int) -> FetchResult:
        return details.get(loco_no, FetchResult.failure("not stubbed", loco_no=loco_no))

    client.fetch_detail = AsyncMock(side_effect=fetch_detail)
    return client


def make_orchestrator(client: Any, store: Any, **kwargs: Any) -> CycleOrchestrator:
    kwargs.setdefault("interval", 3600)
    kwargs.setdefault("shutdown_grace", 1.0)
    return CycleOrchestrator(
        client, store, ChunkedScheduler(2, 0), upstream_timezone="Asia/Kolkata", **kwargs
    )


async def wait_until(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
    async with asyncio.timeout(timeout):
        while not predicate():
            await asyncio.sleep(0.001)


class TestCollectCycle:
    async def test_writes_enriched_observation_and_skips_failed_loco(
        self, store: ObservationStore, make_payload: MakePayload
    ) -> None:
        client = fake_client(
            [DirectoryEntry(101, 555), DirectoryEntry(102)],
            {
                101: FetchResult.success(
                    make_payload(station="DELHI", speed="45", timestamp="05-06 14:30:00"),
                    loco_no=101,
                ),
                102: FetchResult.failure("ConnectError: network error", loco_no=102),
            },
        )
        orchestrator = make_orchestrator(client, store)
        await orchestrator.connect()

        report = await orchestrator.collect_cycle()

        assert report is not None
        assert report.error is None
        assert report.directory_size == 2
        assert (report.inserted, report.updated, report.failed) == (1, 0, 1)
        assert await store.count() == 1

        rows = await store.history(101, now=expected_ts() + timedelta(minutes=1))
        assert len(rows) == 1
        row = rows[0]
        assert row.train_no == 555
        assert row.speed == 45
        assert row.station == "DELHI"
        assert ensure_utc(row.observed_at) == expected_ts()
        assert await store.history(102, now=expected_ts() + timedelta(minutes=1)) == []
        assert orchestrator.state is CollectorState.IDLE

    async def test_no_data_means_no_store_write(self, store: ObservationStore) -> None:
        client = fake_client(
            [DirectoryEntry(101)],
            {101: FetchResult.success({"LocoDtls": []}, loco_no=101)},
        )
        orchestrator = make_orchestrator(client, store)

        with patch.object(store, "bulk_upsert", AsyncMock()) as bulk_upsert:
            report = await orchestrator.collect_cycle()

        assert report is not None
        assert report.no_data == 1
        bulk_upsert.assert_not_awaited()

    async def test_repeat_cycle_updates_in_place(
        self, store: ObservationStore, make_payload: MakePayload
    ) -> None:
        details = {101: FetchResult.success(make_payload(speed="45"), loco_no=101)}
        client = fake_client([DirectoryEntry(101)], details)
        orchestrator = make_orchestrator(client, store)

        await orchestrator.collect_cycle()
        details[101] = FetchResult.success(make_payload(speed="60"), loco_no=101)
        second = await orchestrator.collect_cycle()

        assert second is not None
        assert (second.inserted, second.updated) == (0, 1)
        assert await store.count() == 1
        rows = await store.history(101, now=expected_ts() + timedelta(minutes=1))
        assert [r.speed for r in rows] == [60]

    async def test_directory_failure_ends_cycle(self, store: ObservationStore) -> None:
        client = fake_client(FetchResult.failure("HTTP 503"))
        orchestrator = make_orchestrator(client, store)

        report = await orchestrator.collect_cycle()

        assert report is not None
        assert report.error is not None
        assert "HTTP 503" in report.error
        client.fetch_detail.assert_not_awaited()
        assert orchestrator.state is CollectorState.IDLE

    async def test_empty_directory(self, store: ObservationStore) -> None:
        client = fake_client([])
        orchestrator = make_orchestrator(client, store)

        report = await orchestrator.collect_cycle()

        assert report is not None
        assert report.error is None
        assert report.directory_size == 0
        client.fetch_detail.assert_not_awaited()

    async def test_disconnected_store_skips_cycle(self, store: ObservationStore) -> None:
        client = fake_client([DirectoryEntry(101)])
        orchestrator = make_orchestrator(client, store)

        with patch.object(store, "ping", AsyncMock(return_value=False)):
            report = await orchestrator.collect_cycle()

        assert report is not None
        assert report.skipped is True
        client.fetch_directory.assert_not_awaited()

    async def test_unexpected_error_is_contained(
        self, store: ObservationStore, make_payload: MakePayload
    ) -> None:
        client = fake_client(
            [DirectoryEntry(101)], {101: FetchResult.success(make_payload(), loco_no=101)}
        )
        orchestrator = make_orchestrator(client, store)

        with patch.object(store, "bulk_upsert", AsyncMock(side_effect=RuntimeError("disk full"))):
            report = await orchestrator.collect_cycle()

        assert report is not None
        assert report.error == "RuntimeError: disk full"
        assert orchestrator.state is CollectorState.IDLE

        # The next cycle runs normally
        report = await orchestrator.collect_cycle()
        assert report is not None
        assert report.inserted == 1

    async def test_overlapping_trigger_is_skipped(self, store: ObservationStore) -> None:
        release = asyncio.Event()
        client = fake_client([])

        async def slow_directory() -> FetchResult:
            await release.wait()
            return FetchResult.success([])

        client.fetch_directory = AsyncMock(side_effect=slow_directory)
        orchestrator = make_orchestrator(client, store)

        first = asyncio.create_task(orchestrator.collect_cycle())
        await wait_until(lambda: client.fetch_directory.await_count == 1)

        assert orchestrator.cycle_in_progress
        assert orchestrator.state is CollectorState.COLLECTING
        assert await orchestrator.collect_cycle() is None

        release.set()
        report = await first
        assert report is not None
        assert client.fetch_directory.await_count == 1
        assert not orchestrator.cycle_in_progress


class TestConnect:
    async def test_connect_moves_to_idle(self, store: ObservationStore) -> None:
        orchestrator = make_orchestrator(fake_client([]), store)
        assert orchestrator.state is CollectorState.DISCONNECTED

        await orchestrator.connect()

        assert orchestrator.state is CollectorState.IDLE

    async def test_unreachable_store_fails(self) -> None:
        store = MagicMock()
        store.init_schema = AsyncMock()
        store.ping = AsyncMock(return_value=False)
        orchestrator = make_orchestrator(fake_client([]), store)

        with pytest.raises(CollectorStartupError):
            await orchestrator.connect()
        assert orchestrator.state is CollectorState.FAILED

    async def test_schema_error_fails(self) -> None:
        store = MagicMock()
        store.init_schema = AsyncMock(side_effect=OSError("connection refused"))
        orchestrator = make_orchestrator(fake_client([]), store)

        with pytest.raises(CollectorStartupError, match="connection refused"):
            await orchestrator.run_forever()
        assert orchestrator.state is CollectorState.FAILED


class TestSchedule:
    async def test_runs_immediately_then_stops(self, store: ObservationStore) -> None:
        client = fake_client([])
        orchestrator = make_orchestrator(client, store, interval=3600)

        task = asyncio.create_task(orchestrator.run_forever())
        await wait_until(lambda: orchestrator.last_report is not None)
        await orchestrator.stop()
        await asyncio.wait_for(task, timeout=2)

        assert client.fetch_directory.await_count == 1
        assert orchestrator.state is CollectorState.STOPPED

    async def test_repeats_at_interval(self, store: ObservationStore) -> None:
        client = fake_client([])
        orchestrator = make_orchestrator(client, store, interval=0.01)

        task = asyncio.create_task(orchestrator.run_forever())
        await wait_until(lambda: client.fetch_directory.await_count >= 3)
        await orchestrator.stop()
        await asyncio.wait_for(task, timeout=2)

        assert orchestrator.state is CollectorState.STOPPED

    async def test_stop_drains_running_cycle(self, store: ObservationStore) -> None:
        release = asyncio.Event()
        client = fake_client([])

        async def slow_directory() -> FetchResult:
            await release.wait()
            return FetchResult.success([])

        client.fetch_directory = AsyncMock(side_effect=slow_directory)
        orchestrator = make_orchestrator(client, store, shutdown_grace=5)

        task = asyncio.create_task(orchestrator.run_forever())
        await wait_until(lambda: orchestrator.cycle_in_progress)

        stopper = asyncio.create_task(orchestrator.stop())
        await asyncio.sleep(0.01)
        assert not stopper.done()

        release.set()
        await asyncio.wait_for(stopper, timeout=2)
        await asyncio.wait_for(task, timeout=2)

        assert orchestrator.last_report is not None
        assert orchestrator.last_report.error is None
        assert orchestrator.state is CollectorState.STOPPED

    async def test_stop_cancels_after_grace(self, store: ObservationStore) -> None:
        client = fake_client([])

        async def hang() -> FetchResult:
            await asyncio.Event().wait()
            return FetchResult.success([])

        client.fetch_directory = AsyncMock(side_effect=hang)
        orchestrator = make_orchestrator(client, store, shutdown_grace=0.01)

        task = asyncio.create_task(orchestrator.run_forever())
        await wait_until(lambda: orchestrator.cycle_in_progress)

        await asyncio.wait_for(orchestrator.stop(), timeout=2)
        await asyncio.wait_for(task, timeout=2)

        assert not orchestrator.cycle_in_progress
        assert orchestrator.state is CollectorState.STOPPED
