"""Data model for loco-tracker."""

from loco_tracker.models.base import Base
from loco_tracker.models.enums import CollectorState, FetchStatus
from loco_tracker.models.observation import (
    DirectoryEntry,
    LocoObservation,
    PositionOut,
    UpsertOperation,
    ensure_utc,
)
from loco_tracker.models.position import LocoPosition

__all__ = [
    "Base",
    "CollectorState",
    "DirectoryEntry",
    "FetchStatus",
    "LocoObservation",
    "LocoPosition",
    "PositionOut",
    "UpsertOperation",
    "ensure_utc",
]
