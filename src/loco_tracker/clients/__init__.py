"""Outbound HTTP clients."""

from loco_tracker.clients.upstream import FetchResult, UpstreamClient, parse_directory

__all__ = ["FetchResult", "UpstreamClient", "parse_directory"]
