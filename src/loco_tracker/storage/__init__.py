"""Storage layer: keyed upserts, reads and retention."""

from loco_tracker.storage.reaper import RetentionReaper
from loco_tracker.storage.store import STORE_ERRORS, ObservationStore, WriteReport

__all__ = ["STORE_ERRORS", "ObservationStore", "RetentionReaper", "WriteReport"]
