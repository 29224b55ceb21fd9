"""Turn fetch results into idempotent upsert operations.

Each successful detail fetch is parsed, validated, enriched with the
train number from the directory and keyed by (loco_no, observed_at).
Anything that cannot be stored is counted and left for the next cycle.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from datetime import datetime, tzinfo

from loco_tracker.clients.upstream import FetchResult
from loco_tracker.extraction.popup import parse_detail_payload
from loco_tracker.models.observation import DirectoryEntry, UpsertOperation

logger = logging.getLogger(__name__)


@dataclass
class ReconcileReport:
    """Outcome of reconciling one cycle's fetch results."""

    operations: list[UpsertOperation] = field(default_factory=list)
    failed: int = 0
    """Detail fetches that failed (network, HTTP status, bad body)."""

    no_data: int = 0
    """Payloads without a position message."""

    rejected: int = 0
    """Parsed observations with unusable coordinates."""

    enriched: int = 0
    """Observations that received a train number from the directory."""


def index_directory(directory: Iterable[DirectoryEntry]) -> dict[int, DirectoryEntry]:
    """Map loco number to directory entry; the first entry for a loco wins."""
    index: dict[int, DirectoryEntry] = {}
    for entry in directory:
        index.setdefault(entry.loco_no, entry)
    return index


def reconcile(
    results: Sequence[FetchResult],
    directory: Sequence[DirectoryEntry],
    *,
    now: datetime | None = None,
    tz: tzinfo | None = None,
) -> ReconcileReport:
    """Build upsert operations from per-loco fetch results.

    Args:
        results: One FetchResult per directory entry.
        directory: The directory the fetches were made for.
        now: Capture time passed to the parser.
        tz: Upstream timezone passed to the parser.

    Returns:
        ReconcileReport with operations deduplicated on their match key
        (the last observation for a key wins).
    """
    report = ReconcileReport()
    by_loco = index_directory(directory)
    by_key: dict[tuple[int, datetime], UpsertOperation] = {}

    for result in results:
        if not result.ok or result.loco_no is None:
            report.failed += 1
            logger.debug("[CYCLE] Loco %s excluded: %s", result.loco_no, result.reason)
            continue

        observation = parse_detail_payload(result.loco_no, result.data, now=now, tz=tz)
        if observation is None:
            report.no_data += 1
            continue

        if not observation.has_valid_position:
            report.rejected += 1
            logger.warning(
                "[CYCLE] Loco %s rejected: invalid coordinates (%r, %r)",
                observation.loco_no,
                observation.latitude,
                observation.longitude,
            )
            continue

        entry = by_loco.get(observation.loco_no)
        if entry is not None and entry.train_no is not None:
            observation.train_no = entry.train_no
            report.enriched += 1

        op = UpsertOperation.from_observation(observation)
        by_key[op.match] = op

    report.operations = list(by_key.values())

    if report.failed:
        logger.info("[CYCLE] %d loco fetches failed; retrying next cycle", report.failed)
    return report
