"""Collection pipeline: scheduling, reconciliation and orchestration.

Main entry points:
    from loco_tracker.collection import CycleOrchestrator, LiveLookupService

    report = await orchestrator.collect_cycle()
    observation = await live.fetch_and_cache_one(12345)
"""

from loco_tracker.collection.live import LiveLookupError, LiveLookupService
from loco_tracker.collection.orchestrator import (
    CollectorStartupError,
    CycleOrchestrator,
    CycleReport,
)
from loco_tracker.collection.reconciler import ReconcileReport, index_directory, reconcile
from loco_tracker.collection.scheduler import ChunkedScheduler

__all__ = [
    "ChunkedScheduler",
    "CollectorStartupError",
    "CycleOrchestrator",
    "CycleReport",
    "LiveLookupError",
    "LiveLookupService",
    "ReconcileReport",
    "index_directory",
    "reconcile",
]
