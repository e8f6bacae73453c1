"""
Per-user scheduling preferences.

The profile row carries working hours and time zone; the `scheduling_preferences`
blob in `user_preferences` may override any field. Stored blobs come from the web
client (camelCase) or from older code (snake_case), so both spellings are accepted.
Every field is validated on its own: a bad value is logged and the default kept.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace
from typing import Any, Callable, Dict, List, Optional

from models import get_preference, get_user_by_id
from services.time_utils import parse_clock, resolve_timezone

logger = logging.getLogger(__name__)

PREFERENCE_KEY = "scheduling_preferences"


@dataclass(frozen=True)
class SchedulingPreferences:
    working_hours_start: str = "09:00"
    working_hours_end: str = "17:00"
    working_days: List[int] = field(default_factory=lambda: [1, 2, 3, 4, 5])
    time_zone: str = "UTC"
    buffer_time_minutes: int = 15
    preferred_meeting_length_minutes: int = 30
    avoid_back_to_back: bool = True
    max_meetings_per_day: int = 8

    @property
    def tzinfo(self):
        return resolve_timezone(self.time_zone)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "working_hours": {"start": self.working_hours_start, "end": self.working_hours_end},
            "working_days": list(self.working_days),
            "time_zone": self.time_zone,
            "buffer_time_minutes": self.buffer_time_minutes,
            "preferred_meeting_length_minutes": self.preferred_meeting_length_minutes,
            "avoid_back_to_back": self.avoid_back_to_back,
            "max_meetings_per_day": self.max_meetings_per_day,
        }

    @classmethod
    def from_records(
        cls,
        user: Optional[Dict[str, Any]] = None,
        blob: Optional[Dict[str, Any]] = None,
    ) -> "SchedulingPreferences":
        """Build preferences from a users row and a stored preference blob."""
        raw: Dict[str, Any] = {}
        if user:
            if user.get("working_hours_start"):
                raw["working_hours_start"] = user["working_hours_start"]
            if user.get("working_hours_end"):
                raw["working_hours_end"] = user["working_hours_end"]
            if user.get("timezone"):
                raw["time_zone"] = user["timezone"]
        if isinstance(blob, dict):
            raw.update(_normalise_keys(blob))
        elif blob is not None:
            logger.warning("Ignoring non-object scheduling preferences: %r", blob)

        prefs = cls()
        for name, value in raw.items():
            validator = _VALIDATORS.get(name)
            if validator is None:
                continue
            try:
                prefs = replace(prefs, **{name: validator(value)})
            except (TypeError, ValueError) as e:
                logger.warning(f"Invalid scheduling preference {name}={value!r}: {e}; keeping default")

        if _clock_minutes(prefs.working_hours_end) <= _clock_minutes(prefs.working_hours_start):
            logger.warning(
                "Working hours %s-%s are empty; using defaults",
                prefs.working_hours_start,
                prefs.working_hours_end,
            )
            prefs = replace(
                prefs,
                working_hours_start=cls.working_hours_start,
                working_hours_end=cls.working_hours_end,
            )
        return prefs


_CAMEL_KEYS = {
    "workingDays": "working_days",
    "timeZone": "time_zone",
    "timezone": "time_zone",
    "bufferTime": "buffer_time_minutes",
    "buffer_time": "buffer_time_minutes",
    "preferredMeetingLength": "preferred_meeting_length_minutes",
    "preferred_meeting_length": "preferred_meeting_length_minutes",
    "avoidBackToBack": "avoid_back_to_back",
    "maxMeetingsPerDay": "max_meetings_per_day",
}


def _normalise_keys(blob: Dict[str, Any]) -> Dict[str, Any]:
    result: Dict[str, Any] = {}
    for key, value in blob.items():
        if key in ("workingHours", "working_hours"):
            if isinstance(value, dict):
                if "start" in value:
                    result["working_hours_start"] = value["start"]
                if "end" in value:
                    result["working_hours_end"] = value["end"]
            else:
                logger.warning("Ignoring malformed working hours: %r", value)
            continue
        result[_CAMEL_KEYS.get(key, key)] = value
    return result


def _clock_minutes(value: str) -> int:
    hour, minute = parse_clock(value)
    return hour * 60 + minute


def _clock(value: Any) -> str:
    hour, minute = parse_clock(value)
    return f"{hour:02d}:{minute:02d}"


def _weekdays(value: Any) -> List[int]:
    if not isinstance(value, (list, tuple)):
        raise TypeError("expected a list of weekdays")
    days = []
    for day in value:
        if isinstance(day, bool) or not isinstance(day, int) or not 0 <= day <= 6:
            raise ValueError(f"weekday {day!r} outside 0-6")
        if day not in days:
            days.append(day)
    return sorted(days)


def _zone(value: Any) -> str:
    if not isinstance(value, str) or not value:
        raise TypeError("expected a time zone name")
    if value.upper() not in ("UTC", "Z", "GMT"):
        from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

        try:
            ZoneInfo(value)
        except (ZoneInfoNotFoundError, ValueError):
            raise ValueError(f"unknown time zone {value!r}")
    return value


def _positive_int(value: Any) -> int:
    if isinstance(value, bool):
        raise TypeError("expected a number")
    number = int(value)
    if number <= 0:
        raise ValueError("must be positive")
    return number


def _non_negative_int(value: Any) -> int:
    if isinstance(value, bool):
        raise TypeError("expected a number")
    number = int(value)
    if number < 0:
        raise ValueError("must not be negative")
    return number


def _flag(value: Any) -> bool:
    if not isinstance(value, bool):
        raise TypeError("expected true/false")
    return value


_VALIDATORS: Dict[str, Callable[[Any], Any]] = {
    "working_hours_start": _clock,
    "working_hours_end": _clock,
    "working_days": _weekdays,
    "time_zone": _zone,
    "buffer_time_minutes": _non_negative_int,
    "preferred_meeting_length_minutes": _positive_int,
    "avoid_back_to_back": _flag,
    "max_meetings_per_day": _positive_int,
}


def get_user_scheduling_preferences(user_id: int) -> SchedulingPreferences:
    """Load a user's preferences, falling back to defaults for anything missing."""
    user = get_user_by_id(user_id)
    blob = get_preference(user_id, PREFERENCE_KEY)
    return SchedulingPreferences.from_records(user, blob)
