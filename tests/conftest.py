"""Shared pytest fixtures for loco-tracker tests."""

from __future__ import annotations

from collections.abc import AsyncGenerator, Callable
from datetime import datetime
from typing import Any
from zoneinfo import ZoneInfo

import pytest
from sqlalchemy.pool import StaticPool

from loco_tracker.db import build_engine
from loco_tracker.models import LocoObservation
from loco_tracker.storage.store import ObservationStore

IST = ZoneInfo("Asia/Kolkata")

# Fixed capture time used across parser/reconciler tests
CAPTURE_TIME = datetime(2026, 6, 5, 15, 0, 0, tzinfo=IST)


@pytest.fixture
async def store() -> AsyncGenerator[ObservationStore, None]:
    """ObservationStore on a fresh in-memory SQLite database.

    StaticPool keeps a single connection so every session sees the same
    in-memory database.
    """
    engine = build_engine("sqlite+aiosqlite://", echo=False, poolclass=StaticPool)
    store = ObservationStore(engine)
    await store.init_schema()

    yield store

    await store.dispose()


MakePayload = Callable[..., dict[str, Any]]
MakeObservation = Callable[..., LocoObservation]


@pytest.fixture
def make_payload() -> MakePayload:
    """Factory fixture for upstream detail payloads."""

    def _make(
        *,
        station: str | None = "DELHI",
        event: str | None = "ARRIVED",
        speed: str | None = "45",
        timestamp: str | None = "05-06 14:30:00",
        lat: Any = "28.6139",
        lon: Any = "77.2090",
    ) -> dict[str, Any]:
        parts = []
        if station is not None:
            parts.append(f"<b>Station:</b> {station}")
        if event is not None:
            parts.append(f"Event: {event}")
        if speed is not None:
            parts.append(f"Speed: {speed}")
        message = "<br>".join(parts)
        if timestamp is not None:
            message += f"<br><div>Last reported ({timestamp})</div>"
        return {"LocoDtls": [{"Lttd": lat, "Lgtd": lon, "PopUpMsg": message}]}

    return _make


@pytest.fixture
def make_observation() -> MakeObservation:
    """Factory fixture for LocoObservation instances."""

    def _make(
        *,
        loco_no: int = 101,
        observed_at: datetime | None = None,
        speed: int = 45,
        train_no: int | None = None,
        latitude: float = 28.6139,
        longitude: float = 77.2090,
    ) -> LocoObservation:
        return LocoObservation(
            loco_no=loco_no,
            latitude=latitude,
            longitude=longitude,
            observed_at=observed_at or datetime(2026, 6, 5, 14, 30, tzinfo=IST),
            station="DELHI",
            event="ARRIVED",
            speed=speed,
            train_no=train_no,
        )

    return _make
