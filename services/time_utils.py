"""
Timestamp helpers shared by the scheduling and sync code.

Everything we store is timezone-aware UTC ISO-8601 text. Weekdays follow the
web client's convention (0 = Sunday ... 6 = Saturday) so stored preference blobs
can be used as-is.
"""
from __future__ import annotations

import logging
from datetime import date, datetime, time, timedelta, timezone, tzinfo
from typing import Optional, Tuple, Union
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

logger = logging.getLogger(__name__)

DAY_NAMES = ["Sunday", "Monday", "Tuesday", "Wednesday", "Thursday", "Friday", "Saturday"]

Timestamp = Union[str, datetime, date]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def parse_timestamp(value: Optional[Timestamp]) -> Optional[datetime]:
    """
    Parse an ISO string / date / datetime into an aware UTC datetime.

    Naive values are assumed to be UTC. All-day values ("2025-03-04") become
    midnight UTC. Returns None for empty input.
    """
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        dt = value
    elif isinstance(value, date):
        dt = datetime.combine(value, time.min)
    else:
        text = str(value).strip()
        # Google returns "Z" suffixes; older fromisoformat can't read them
        dt = datetime.fromisoformat(text.replace("Z", "+00:00"))
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def to_storage(value: Timestamp) -> str:
    """Format a timestamp the way every table stores it."""
    dt = parse_timestamp(value)
    if dt is None:
        raise ValueError("Cannot store an empty timestamp")
    return dt.isoformat()


def day_of_week(dt: date) -> int:
    """Weekday with 0 = Sunday."""
    return (dt.weekday() + 1) % 7


def resolve_timezone(name: Optional[str]) -> tzinfo:
    """Return a tzinfo for an IANA name, falling back to UTC."""
    if not name or name.upper() in ("UTC", "Z", "GMT"):
        return timezone.utc
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError):
        logger.warning(f"Unknown time zone {name!r}; using UTC")
        return timezone.utc


def parse_clock(value: str) -> Tuple[int, int]:
    """Parse "HH:MM" into (hour, minute), raising ValueError on junk."""
    hour_text, _, minute_text = str(value).partition(":")
    hour = int(hour_text)
    minute = int(minute_text or 0)
    if not (0 <= hour <= 24 and 0 <= minute < 60) or (hour == 24 and minute):
        raise ValueError(f"Invalid clock time: {value!r}")
    return hour, minute


def at_clock(day: date, clock: str, tz: tzinfo) -> datetime:
    """The instant at which `clock` ("HH:MM") occurs on `day` in zone `tz`."""
    hour, minute = parse_clock(clock)
    local = datetime.combine(day, time.min, tzinfo=tz)
    return local + timedelta(hours=hour, minutes=minute)


def minutes_between(start: datetime, end: datetime) -> float:
    return (end - start).total_seconds() / 60
