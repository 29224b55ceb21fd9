"""In-memory observation types passed between collection stages."""

from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any

from pydantic import BaseModel


def ensure_utc(value: datetime) -> datetime:
    """Return ``value`` as an aware UTC datetime.

    Naive values are taken to be UTC already; that is how they come back
    from backends without timezone support (SQLite).
    """
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


@dataclass
class LocoObservation:
    """A parsed position report, before it is written to the store.

    ``train_no`` is filled in by enrichment (directory metadata or the
    latest stored row) and stays None when unknown.
    """

    loco_no: int
    latitude: float
    longitude: float
    observed_at: datetime
    station: str = "N/A"
    event: str = "N/A"
    speed: int = 0
    train_no: int | None = None
    timestamp_estimated: bool = False

    @property
    def has_valid_position(self) -> bool:
        """Whether both coordinates are finite and inside WGS84 bounds."""
        lat, lon = self.latitude, self.longitude
        if not (math.isfinite(lat) and math.isfinite(lon)):
            return False
        return -90.0 <= lat <= 90.0 and -180.0 <= lon <= 180.0

    def to_values(self) -> dict[str, Any]:
        """Column values for an upsert into loco_positions.

        ``observed_at`` is stored in UTC so the uniqueness key compares
        equal across backends.
        """
        return {
            "loco_no": self.loco_no,
            "train_no": self.train_no,
            "latitude": self.latitude,
            "longitude": self.longitude,
            "station": self.station,
            "event": self.event,
            "speed": self.speed,
            "observed_at": ensure_utc(self.observed_at),
            "timestamp_estimated": self.timestamp_estimated,
        }

    def to_public(self) -> PositionOut:
        """Serializable form returned to API callers."""
        return PositionOut(
            loco_no=self.loco_no,
            train_no=self.train_no,
            latitude=self.latitude,
            longitude=self.longitude,
            station=self.station,
            event=self.event,
            speed=self.speed,
            timestamp=self.observed_at.isoformat(),
            timestamp_estimated=self.timestamp_estimated,
        )


@dataclass(frozen=True)
class DirectoryEntry:
    """One row of the active-loco directory."""

    loco_no: int
    train_no: int | None = None


class PositionOut(BaseModel):
    """Position as exposed over HTTP. ``timestamp`` is ISO-8601 text."""

    loco_no: int
    train_no: int | None = None
    latitude: float
    longitude: float
    station: str
    event: str
    speed: int
    timestamp: str
    timestamp_estimated: bool = False

    @classmethod
    def from_row(cls, row: Any) -> PositionOut:
        return cls(
            loco_no=row.loco_no,
            train_no=row.train_no,
            latitude=row.latitude,
            longitude=row.longitude,
            station=row.station,
            event=row.event,
            speed=row.speed,
            timestamp=ensure_utc(row.observed_at).isoformat(),
            timestamp_estimated=bool(row.timestamp_estimated),
        )


@dataclass(frozen=True)
class UpsertOperation:
    """Update-or-insert of one position, matched on (loco_no, observed_at)."""

    match: tuple[int, datetime]
    values: dict[str, Any]

    @classmethod
    def from_observation(cls, observation: LocoObservation) -> UpsertOperation:
        values = observation.to_values()
        return cls(match=(values["loco_no"], values["observed_at"]), values=values)
