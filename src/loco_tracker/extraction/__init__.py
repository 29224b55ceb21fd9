"""Parsing of upstream payloads into observations.

Main entry point:
    from loco_tracker.extraction import parse_detail_payload

    observation = parse_detail_payload(loco_no, payload)
"""

from loco_tracker.extraction.popup import (
    NOT_AVAILABLE,
    parse_detail_payload,
    reconstruct_timestamp,
    strip_markup,
)

__all__ = [
    "NOT_AVAILABLE",
    "parse_detail_payload",
    "reconstruct_timestamp",
    "strip_markup",
]
