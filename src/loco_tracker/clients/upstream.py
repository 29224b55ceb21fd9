"""Async client for the upstream loco directory and detail endpoints."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from types import TracebackType
from typing import Any

import httpx

from loco_tracker.config import settings
from loco_tracker.models.enums import FetchStatus
from loco_tracker.models.observation import DirectoryEntry

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class FetchResult:
    """Tagged outcome of one upstream call.

    Upstream failures are reported as values so that one bad loco never
    aborts the rest of a batch.
    """

    status: FetchStatus
    loco_no: int | None = None
    data: Any = None
    reason: str | None = None

    @property
    def ok(self) -> bool:
        return self.status is FetchStatus.SUCCESS

    @classmethod
    def success(cls, data: Any, loco_no: int | None = None) -> FetchResult:
        return cls(status=FetchStatus.SUCCESS, loco_no=loco_no, data=data)

    @classmethod
    def failure(cls, reason: str, loco_no: int | None = None) -> FetchResult:
        return cls(status=FetchStatus.FAILURE, loco_no=loco_no, reason=reason)


def _as_int(value: Any) -> int | None:
    if value is None or isinstance(value, bool):
        return None
    try:
        return int(str(value).strip())
    except ValueError:
        return None


def parse_directory(body: Any) -> list[DirectoryEntry]:
    """Extract directory entries from the directory response body.

    Entries without a usable loco number are dropped; an unusable train
    number becomes None.
    """
    if not isinstance(body, dict):
        raise ValueError("directory body is not a JSON object")
    raw = body.get("locoData")
    if not isinstance(raw, list):
        return []

    entries: list[DirectoryEntry] = []
    skipped = 0
    for item in raw:
        if not isinstance(item, dict):
            skipped += 1
            continue
        loco_no = _as_int(item.get("loco_no"))
        if loco_no is None:
            skipped += 1
            continue
        entries.append(DirectoryEntry(loco_no=loco_no, train_no=_as_int(item.get("train_no"))))

    if skipped:
        logger.warning("[FETCH] Skipped %d directory entries without a loco number", skipped)
    return entries


class UpstreamClient:
    """Async client for the directory and per-loco detail endpoints.

    Usage:
        async with UpstreamClient() as client:
            directory = await client.fetch_directory()
            detail = await client.fetch_detail(12345)

    Neither method raises on upstream trouble; check ``FetchResult.ok``.
    """

    def __init__(
        self,
        *,
        directory_url: str | None = None,
        detail_url: str | None = None,
        user_agent: str | None = None,
        timeout: float | None = None,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self._directory_url = directory_url or settings.directory_url
        self._detail_url = detail_url or settings.detail_url
        self._user_agent = user_agent or settings.user_agent

        # Caller-supplied clients are left open on close()
        self._owns_client = http_client is None
        self._http = http_client or httpx.AsyncClient(
            timeout=timeout if timeout is not None else settings.http_timeout_seconds,
        )

    async def __aenter__(self) -> UpstreamClient:
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        await self.close()

    async def close(self) -> None:
        if self._owns_client:
            await self._http.aclose()

    async def fetch_directory(self) -> FetchResult:
        """Fetch the list of currently active locos.

        Returns:
            FetchResult whose ``data`` is a list of DirectoryEntry.
        """
        start_time = time.time()
        try:
            response = await self._http.post(
                self._directory_url,
                data={"action": settings.directory_action},
            )
            response.raise_for_status()
            entries = parse_directory(response.json())
        except (httpx.HTTPError, ValueError) as e:
            logger.warning("[FETCH] Directory request failed: %s", _describe(e))
            return FetchResult.failure(_describe(e))

        if settings.log_api_calls:
            elapsed = (time.time() - start_time) * 1000  # ms
            logger.info("[FETCH] directory → %d locos (%.0fms)", len(entries), elapsed)
        return FetchResult.success(entries)

    async def fetch_detail(self, loco_no: int) -> FetchResult:
        """Fetch the current reporting payload for one loco.

        Returns:
            FetchResult whose ``data`` is the decoded JSON body.
        """
        start_time = time.time()
        try:
            response = await self._http.get(
                self._detail_url,
                params={"Optn": settings.detail_option, "Loco": str(loco_no)},
                headers={"User-Agent": self._user_agent},
            )
            response.raise_for_status()
            body = response.json()
        except (httpx.HTTPError, ValueError) as e:
            logger.debug("[FETCH] Detail for loco %s failed: %s", loco_no, _describe(e))
            return FetchResult.failure(_describe(e), loco_no=loco_no)

        if settings.log_api_calls:
            elapsed = (time.time() - start_time) * 1000  # ms
            logger.info("[FETCH] detail loco=%s (%.0fms)", loco_no, elapsed)
        return FetchResult.success(body, loco_no=loco_no)


def _describe(error: Exception) -> str:
    if isinstance(error, httpx.HTTPStatusError):
        return f"HTTP {error.response.status_code}"
    if isinstance(error, httpx.TimeoutException):
        return "timeout"
    return f"{type(error).__name__}: {error}" if str(error) else type(error).__name__
