"""Chunked fan-out of per-loco detail fetches.

The upstream publishes no rate limit, so load is bounded empirically:
at most ``chunk_size`` requests are in flight, and a fixed pause separates
consecutive chunks.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Sequence
from typing import TypeVar

from loco_tracker.clients.upstream import FetchResult
from loco_tracker.models.observation import DirectoryEntry

logger = logging.getLogger(__name__)

T = TypeVar("T")

DetailFetcher = Callable[[int], Awaitable[FetchResult]]
Sleeper = Callable[[float], Awaitable[None]]


class ChunkedScheduler:
    """Run detail fetches chunk by chunk with a pause in between.

    All requests inside a chunk run concurrently and are joined before the
    next chunk starts. Every input entry yields exactly one FetchResult;
    order across chunks is preserved, order inside a chunk follows input.
    """

    def __init__(
        self,
        chunk_size: int,
        inter_chunk_delay: float,
        *,
        sleep: Sleeper = asyncio.sleep,
    ) -> None:
        if chunk_size < 1:
            raise ValueError(f"chunk_size must be >= 1, got {chunk_size}")
        if inter_chunk_delay < 0:
            raise ValueError(f"inter_chunk_delay must be >= 0, got {inter_chunk_delay}")
        self.chunk_size = chunk_size
        self.inter_chunk_delay = inter_chunk_delay
        self._sleep = sleep

    def chunks(self, items: Sequence[T]) -> list[list[T]]:
        """Split items into consecutive chunks of at most chunk_size."""
        size = self.chunk_size
        return [list(items[i : i + size]) for i in range(0, len(items), size)]

    async def run(
        self,
        entries: Sequence[DirectoryEntry],
        fetch: DetailFetcher,
    ) -> list[FetchResult]:
        """Fetch details for every entry.

        Args:
            entries: Directory entries to fetch.
            fetch: Coroutine function taking a loco number.

        Returns:
            One FetchResult per entry. An exception escaping ``fetch`` is
            turned into a failure result for that entry.
        """
        chunks = self.chunks(entries)
        results: list[FetchResult] = []

        for index, chunk in enumerate(chunks):
            outcomes = await asyncio.gather(
                *(fetch(entry.loco_no) for entry in chunk),
                return_exceptions=True,
            )
            for entry, outcome in zip(chunk, outcomes, strict=True):
                if isinstance(outcome, BaseException):
                    if isinstance(outcome, asyncio.CancelledError):
                        raise outcome
                    results.append(
                        FetchResult.failure(
                            f"{type(outcome).__name__}: {outcome}", loco_no=entry.loco_no
                        )
                    )
                else:
                    results.append(outcome)

            logger.debug("[FETCH] Chunk %d/%d done (%d locos)", index + 1, len(chunks), len(chunk))

            if index < len(chunks) - 1 and self.inter_chunk_delay > 0:
                await self._sleep(self.inter_chunk_delay)

        return results
