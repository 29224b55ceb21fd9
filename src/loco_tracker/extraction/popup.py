"""Parser for upstream loco detail payloads.

The detail endpoint returns JSON of the form::

    {"LocoDtls": [{"Lttd": "28.61", "Lgtd": "77.21",
                   "PopUpMsg": "<b>Station:</b> DELHI<br>Event: ARRIVED<br>"
                               "Speed: 45 Kmph<br>(05-06 14:30:00)"}]}

Everything of interest except the coordinates lives inside the free-text
``PopUpMsg`` HTML fragment, so fields are located by label and cut at the
next markup boundary. The upstream shape is not under our control; any
missing piece degrades to a default instead of failing.
"""

from __future__ import annotations

import logging
import math
import re
from datetime import datetime, tzinfo
from typing import Any
from zoneinfo import ZoneInfo

from loco_tracker.config import settings
from loco_tracker.models.observation import LocoObservation

logger = logging.getLogger(__name__)

NOT_AVAILABLE = "N/A"

# A label's value runs until the next <br / <div or the end of the message
_STATION_RE = re.compile(r"Station:\s*(.*?)(?=<br|<div|\Z)", re.DOTALL)
_EVENT_RE = re.compile(r"Event:\s*(.*?)(?=<br|<div|\Z)", re.DOTALL)
_SPEED_RE = re.compile(r"Speed:\s*(.*?)(?=<br|<div|\Z)", re.DOTALL)
# Report time, e.g. "(05-06 14:30:00)" = 5 June, 14:30:00
_TIMESTAMP_RE = re.compile(r"\((\d{2}-\d{2}\s\d{2}:\d{2}:\d{2})\)")

_TAG_RE = re.compile(r"<[^>]*>")
_LEADING_INT_RE = re.compile(r"^\s*([+-]?\d+)")
_LEADING_FLOAT_RE = re.compile(r"^\s*([+-]?(?:\d+\.?\d*|\.\d+)(?:[eE][+-]?\d+)?)")


def strip_markup(fragment: str | None) -> str:
    """Remove HTML tags and surrounding whitespace."""
    if not fragment:
        return ""
    return _TAG_RE.sub("", fragment).strip()


def parse_leading_int(text: str) -> int | None:
    """Parse the integer prefix of ``text`` ("45 Kmph" -> 45)."""
    match = _LEADING_INT_RE.match(text)
    return int(match.group(1)) if match else None


def parse_leading_float(value: Any) -> float:
    """Parse the numeric prefix of ``value``; NaN when there is none."""
    if isinstance(value, bool):
        return math.nan
    if isinstance(value, int | float):
        return float(value)
    if not isinstance(value, str):
        return math.nan
    match = _LEADING_FLOAT_RE.match(value)
    return float(match.group(1)) if match else math.nan


def reconstruct_timestamp(fragment: str, now: datetime) -> datetime | None:
    """Build a full timestamp from a ``DD-MM HH:MM:SS`` fragment.

    The year is taken from ``now`` and the result carries ``now``'s tzinfo.
    Returns None when the fragment does not describe a real date/time.
    """
    try:
        date_part, time_part = fragment.split()
        day, month = (int(p) for p in date_part.split("-"))
        hour, minute, second = (int(p) for p in time_part.split(":"))
        return datetime(now.year, month, day, hour, minute, second, tzinfo=now.tzinfo)
    except ValueError:
        return None


def _labelled(pattern: re.Pattern[str], message: str) -> str | None:
    match = pattern.search(message)
    if match is None:
        return None
    return strip_markup(match.group(1))


def parse_detail_payload(
    loco_no: int,
    payload: Any,
    *,
    now: datetime | None = None,
    tz: tzinfo | None = None,
) -> LocoObservation | None:
    """Turn a raw detail payload into a LocoObservation.

    Args:
        loco_no: The loco number the payload was requested for.
        payload: Decoded JSON body from the detail endpoint.
        now: Capture time; defaults to the current time in ``tz``.
        tz: Upstream timezone; defaults to ``settings.upstream_timezone``.

    Returns:
        The parsed observation, or None when the payload carries no
        position message ("no data" is not an error).

    Coordinates that do not parse come back as NaN; callers decide
    whether to keep the observation (see LocoObservation.has_valid_position).
    """
    if not isinstance(payload, dict):
        return None
    details_list = payload.get("LocoDtls")
    if not isinstance(details_list, list) or not details_list:
        return None
    details = details_list[0]
    if not isinstance(details, dict):
        return None
    message = details.get("PopUpMsg")
    if not message or not isinstance(message, str):
        return None

    if tz is None:
        tz = ZoneInfo(settings.upstream_timezone)
    if now is None:
        now = datetime.now(tz)
    elif now.tzinfo is None:
        now = now.replace(tzinfo=tz)
    else:
        now = now.astimezone(tz)

    station = _labelled(_STATION_RE, message) or NOT_AVAILABLE
    event = _labelled(_EVENT_RE, message) or NOT_AVAILABLE

    speed = 0
    speed_text = _labelled(_SPEED_RE, message)
    if speed_text:
        speed = max(parse_leading_int(speed_text) or 0, 0)

    observed_at = None
    ts_match = _TIMESTAMP_RE.search(message)
    if ts_match:
        observed_at = reconstruct_timestamp(ts_match.group(1), now)
    estimated = observed_at is None
    if estimated:
        logger.debug("Loco %s: no usable report time, using capture time", loco_no)
        observed_at = now

    return LocoObservation(
        loco_no=int(loco_no),
        latitude=parse_leading_float(details.get("Lttd")),
        longitude=parse_leading_float(details.get("Lgtd")),
        station=station,
        event=event,
        speed=speed,
        observed_at=observed_at,
        timestamp_estimated=estimated,
    )
