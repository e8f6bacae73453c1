"""
Conflict detection for proposed calendar slots.

Given a proposed interval this module:
- Finds events and tasks that overlap it or sit too close to it
- Classifies each hit (direct / buffer / travel / task overlap) with a severity
- Rolls the hits up into an overall severity, a go/no-go flag and recommendations
- Optionally searches the following days for conflict-free alternatives

Working hours, weekdays and time-of-day quality are judged in the user's time zone.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field, fields, replace
from datetime import date, datetime, timedelta, timezone, tzinfo
from enum import Enum
from typing import Any, Dict, List, Optional, Union

from models import fetch_events_in_range, fetch_tasks_in_range
from services.commitments import (
    DEFAULT_TASK_DURATION,
    Commitment,
    CommitmentKind,
    commitment_from_event_row,
    commitment_from_task_row,
)
from services.preferences import SchedulingPreferences, get_user_scheduling_preferences
from services.time_utils import (
    DAY_NAMES,
    Timestamp,
    at_clock,
    day_of_week,
    minutes_between,
    parse_timestamp,
    resolve_timezone,
)

logger = logging.getLogger(__name__)

# Alternatives are tried on a fixed half-hour grid
ALTERNATIVE_STEP = timedelta(minutes=30)


class Severity(str, Enum):
    NONE = "none"
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        return _SEVERITY_RANK[self]


_SEVERITY_RANK = {
    Severity.NONE: 0,
    Severity.LOW: 1,
    Severity.MEDIUM: 2,
    Severity.HIGH: 3,
    Severity.CRITICAL: 4,
}


class ConflictType(str, Enum):
    DIRECT = "direct"
    BUFFER = "buffer"
    TRAVEL = "travel"
    PREPARATION = "preparation"
    OVERLAP = "overlap"


class TimeQuality(str, Enum):
    OPTIMAL = "optimal"
    GOOD = "good"
    ACCEPTABLE = "acceptable"
    POOR = "poor"

    @property
    def score(self) -> int:
        return {"optimal": 4, "good": 3, "acceptable": 2, "poor": 1}[self.value]


@dataclass
class TimeOverlap:
    start: datetime
    end: datetime
    duration_minutes: float

    def to_dict(self) -> Dict[str, Any]:
        return {
            "start": self.start.isoformat(),
            "end": self.end.isoformat(),
            "duration_minutes": self.duration_minutes,
        }


@dataclass
class ConflictInfo:
    type: ConflictType
    severity: Severity
    description: str
    conflicting: Commitment
    suggested_action: Optional[str] = None
    overlap: Optional[TimeOverlap] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.type.value,
            "severity": self.severity.value,
            "description": self.description,
            "suggested_action": self.suggested_action,
            "conflicting": self.conflicting.to_dict(),
            "overlap": self.overlap.to_dict() if self.overlap else None,
        }


@dataclass
class AvailabilityWindow:
    start: datetime
    end: datetime
    duration_minutes: float
    quality: TimeQuality
    reasoning: List[str] = field(default_factory=list)
    conflicts: List[ConflictInfo] = field(default_factory=list)

    @property
    def score(self) -> float:
        return self.quality.score - 0.5 * len(self.conflicts)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "start": self.start.isoformat(),
            "end": self.end.isoformat(),
            "duration_minutes": self.duration_minutes,
            "quality": self.quality.value,
            "reasoning": list(self.reasoning),
            "conflicts": [conflict.to_dict() for conflict in self.conflicts],
        }


@dataclass
class ConflictCheckResult:
    has_conflicts: bool
    conflicts: List[ConflictInfo]
    severity: Severity
    can_proceed: bool
    alternatives: List[AvailabilityWindow] = field(default_factory=list)
    recommendations: List[str] = field(default_factory=list)
    # True when the check itself failed and this is a stand-in result
    degraded: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "has_conflicts": self.has_conflicts,
            "conflicts": [conflict.to_dict() for conflict in self.conflicts],
            "severity": self.severity.value,
            "can_proceed": self.can_proceed,
            "alternatives": [window.to_dict() for window in self.alternatives],
            "recommendations": list(self.recommendations),
            "degraded": self.degraded,
        }


@dataclass
class ConflictDetectorConfig:
    buffer_time_minutes: int = 15
    travel_time_minutes: int = 30
    working_hours_start: str = "09:00"
    working_hours_end: str = "17:00"
    working_days: List[int] = field(default_factory=lambda: [1, 2, 3, 4, 5])
    include_task_conflicts: bool = True
    include_travel_time: bool = True
    max_alternatives: int = 5
    look_ahead_days: int = 14
    time_zone: str = "UTC"
    # On an internal error: True reports "no conflicts", False blocks scheduling
    fail_open: bool = True

    @classmethod
    def from_preferences(cls, prefs: SchedulingPreferences, **overrides: Any) -> "ConflictDetectorConfig":
        config = cls(
            buffer_time_minutes=prefs.buffer_time_minutes,
            working_hours_start=prefs.working_hours_start,
            working_hours_end=prefs.working_hours_end,
            working_days=list(prefs.working_days),
            time_zone=prefs.time_zone,
        )
        return config.merged(overrides) if overrides else config

    def merged(self, overrides: Dict[str, Any]) -> "ConflictDetectorConfig":
        """Apply a partial override dict; unknown keys are ignored."""
        known = {f.name for f in fields(self)}
        return replace(self, **{key: value for key, value in overrides.items() if key in known})

    @property
    def search_padding(self) -> timedelta:
        return timedelta(minutes=max(self.buffer_time_minutes, self.travel_time_minutes))


# ---------------------------------------------------------------------------
# Time quality
# ---------------------------------------------------------------------------

def assess_time_quality(local_start: datetime) -> TimeQuality:
    """Grade a slot by the local hour and weekday it starts on."""
    hour = local_start.hour
    weekday = day_of_week(local_start)
    is_workday = weekday in (1, 2, 3, 4, 5)

    if 9 <= hour <= 11 and weekday in (2, 3, 4):
        return TimeQuality.OPTIMAL
    if ((9 <= hour <= 12) or (13 <= hour <= 15)) and is_workday:
        return TimeQuality.GOOD
    if 8 <= hour <= 17 and is_workday:
        return TimeQuality.ACCEPTABLE
    return TimeQuality.POOR


def time_quality_reasoning(local_start: datetime) -> List[str]:
    hour = local_start.hour
    reasoning = []
    if 9 <= hour <= 11:
        reasoning.append("optimal morning time")
    elif 13 <= hour <= 15:
        reasoning.append("good afternoon time")
    elif hour < 9:
        reasoning.append("early morning")
    elif hour > 16:
        reasoning.append("late afternoon")
    reasoning.append(f"{DAY_NAMES[day_of_week(local_start)]} scheduling")
    return reasoning


# ---------------------------------------------------------------------------
# Per-commitment analysis
# ---------------------------------------------------------------------------

def _gap_minutes(start: datetime, end: datetime, commitment: Commitment) -> float:
    """Minutes between the proposed interval and a non-overlapping commitment."""
    if start >= commitment.end:
        return minutes_between(commitment.end, start)
    return minutes_between(end, commitment.start)


def analyze_event_conflict(
    start: datetime,
    end: datetime,
    event: Commitment,
    config: ConflictDetectorConfig,
) -> Optional[ConflictInfo]:
    """Classify one event against the proposed interval; first match wins."""
    if event.overlaps(start, end):
        overlap_start = max(start, event.start)
        overlap_end = min(end, event.end)
        return ConflictInfo(
            type=ConflictType.DIRECT,
            severity=Severity.CRITICAL,
            description=f'Direct time conflict with "{event.title}"',
            suggested_action="Choose a different time",
            conflicting=event,
            overlap=TimeOverlap(overlap_start, overlap_end, minutes_between(overlap_start, overlap_end)),
        )

    buffer = timedelta(minutes=config.buffer_time_minutes)
    if (start - buffer) < (event.end + buffer) and (end + buffer) > (event.start - buffer):
        gap = _gap_minutes(start, end, event)
        return ConflictInfo(
            type=ConflictType.BUFFER,
            severity=Severity.MEDIUM,
            description=f'Insufficient buffer time with "{event.title}" ({gap:.0f} minutes apart)',
            suggested_action=f"Add {config.buffer_time_minutes} minutes buffer",
            conflicting=event,
        )

    if config.include_travel_time and event.location:
        travel = timedelta(minutes=config.travel_time_minutes)
        if abs(start - event.end) < travel or abs(event.start - end) < travel:
            gap = _gap_minutes(start, end, event)
            return ConflictInfo(
                type=ConflictType.TRAVEL,
                severity=Severity.MEDIUM,
                description=(
                    f'Insufficient travel time to/from "{event.title}" '
                    f"({gap:.0f} minutes apart, {config.travel_time_minutes} needed)"
                ),
                suggested_action=f"Allow {config.travel_time_minutes} minutes for travel",
                conflicting=event,
            )
    return None


def analyze_task_conflict(start: datetime, end: datetime, task: Commitment) -> Optional[ConflictInfo]:
    if not task.overlaps(start, end):
        return None
    overlap_start = max(start, task.start)
    overlap_end = min(end, task.end)
    return ConflictInfo(
        type=ConflictType.OVERLAP,
        severity=Severity.HIGH if task.priority == "high" else Severity.MEDIUM,
        description=f'Overlaps with task "{task.title}"',
        suggested_action="Reschedule task or choose different time",
        conflicting=task,
        overlap=TimeOverlap(overlap_start, overlap_end, minutes_between(overlap_start, overlap_end)),
    )


def calculate_severity(conflicts: List[ConflictInfo]) -> Severity:
    if not conflicts:
        return Severity.NONE
    return max((conflict.severity for conflict in conflicts), key=lambda severity: severity.rank)


def generate_recommendations(conflicts: List[ConflictInfo], config: ConflictDetectorConfig) -> List[str]:
    present = {conflict.type for conflict in conflicts}
    recommendations = []
    if ConflictType.DIRECT in present:
        recommendations.append("Choose a completely different time slot - direct conflicts detected")
    if ConflictType.BUFFER in present:
        recommendations.append(f"Add {config.buffer_time_minutes} minutes buffer between meetings")
    if ConflictType.TRAVEL in present:
        recommendations.append(f"Allow {config.travel_time_minutes} minutes for travel time")
    if any(conflict.conflicting.kind == CommitmentKind.TASK for conflict in conflicts):
        recommendations.append("Consider rescheduling conflicting tasks")
    if not recommendations:
        recommendations.append("No conflicts detected - time slot looks good!")
    return recommendations


# ---------------------------------------------------------------------------
# Detector
# ---------------------------------------------------------------------------

ConfigInput = Union[ConflictDetectorConfig, Dict[str, Any], None]


class ConflictDetector:
    """Checks proposed intervals against a user's stored events and tasks."""

    def __init__(self, config: ConfigInput = None):
        self.config = config

    def resolve_config(self, user_id: int, config: ConfigInput = None) -> ConflictDetectorConfig:
        """Per-call config wins; otherwise the detector's, layered on the user's preferences."""
        for candidate in (config, self.config):
            if isinstance(candidate, ConflictDetectorConfig):
                return candidate
        base = ConflictDetectorConfig.from_preferences(get_user_scheduling_preferences(user_id))
        for candidate in (self.config, config):
            if isinstance(candidate, dict):
                base = base.merged(candidate)
        return base

    def check_conflicts(
        self,
        user_id: int,
        proposed_start: Timestamp,
        proposed_end: Timestamp,
        exclude_id: Optional[int] = None,
        include_alternatives: bool = False,
        config: ConfigInput = None,
    ) -> ConflictCheckResult:
        """
        Check a proposed interval for conflicts.

        Never raises. If the check itself fails, the stand-in result either lets
        scheduling proceed (fail_open) or blocks it, and is flagged `degraded`.
        """
        fail_open = True
        try:
            resolved = self.resolve_config(user_id, config)
            fail_open = resolved.fail_open
            start = parse_timestamp(proposed_start)
            end = parse_timestamp(proposed_end)
            if start is None or end is None:
                raise ValueError("Proposed start and end are required")
            if end < start:
                raise ValueError("Proposed end is before proposed start")

            conflicts = self.find_conflicts(user_id, start, end, resolved, exclude_id)
            severity = calculate_severity(conflicts)
            alternatives: List[AvailabilityWindow] = []
            if include_alternatives and conflicts:
                alternatives = self.find_alternative_time_slots(user_id, start, end, resolved, exclude_id)

            return ConflictCheckResult(
                has_conflicts=bool(conflicts),
                conflicts=conflicts,
                severity=severity,
                can_proceed=severity != Severity.CRITICAL,
                alternatives=alternatives,
                recommendations=generate_recommendations(conflicts, resolved),
            )
        except Exception:
            logger.exception("Conflict detection failed for user %s", user_id)
            if fail_open:
                logger.warning("Conflict check for user %s failed open; scheduling may double-book", user_id)
                return ConflictCheckResult(
                    has_conflicts=False,
                    conflicts=[],
                    severity=Severity.NONE,
                    can_proceed=True,
                    recommendations=["Conflict detection temporarily unavailable"],
                    degraded=True,
                )
            return ConflictCheckResult(
                has_conflicts=False,
                conflicts=[],
                severity=Severity.CRITICAL,
                can_proceed=False,
                recommendations=["Conflict detection temporarily unavailable"],
                degraded=True,
            )

    def find_conflicts(
        self,
        user_id: int,
        start: datetime,
        end: datetime,
        config: ConflictDetectorConfig,
        exclude_id: Optional[int] = None,
    ) -> List[ConflictInfo]:
        search_start = start - config.search_padding
        search_end = end + config.search_padding
        conflicts: List[ConflictInfo] = []

        for row in fetch_events_in_range(user_id, search_start, search_end, exclude_id=exclude_id):
            conflict = analyze_event_conflict(start, end, commitment_from_event_row(row), config)
            if conflict:
                conflicts.append(conflict)

        if config.include_task_conflicts:
            task_rows = fetch_tasks_in_range(
                user_id,
                search_start,
                search_end,
                due_padding_end=search_end + DEFAULT_TASK_DURATION,
            )
            for row in task_rows:
                task = commitment_from_task_row(row)
                if task is None:
                    continue
                conflict = analyze_task_conflict(start, end, task)
                if conflict:
                    conflicts.append(conflict)
        return conflicts

    def find_alternative_time_slots(
        self,
        user_id: int,
        original_start: datetime,
        original_end: datetime,
        config: ConflictDetectorConfig,
        exclude_id: Optional[int] = None,
    ) -> List[AvailabilityWindow]:
        """Scan the following working days for free slots of the same length."""
        tz = resolve_timezone(config.time_zone)
        duration = original_end - original_start
        first_day = original_start.astimezone(tz).date()
        alternatives: List[AvailabilityWindow] = []

        for offset in range(config.look_ahead_days):
            if len(alternatives) >= config.max_alternatives:
                break
            day = first_day + timedelta(days=offset)
            if day_of_week(day) not in config.working_days:
                continue
            alternatives.extend(self._day_alternatives(user_id, day, duration, config, tz, exclude_id))

        alternatives.sort(key=lambda window: window.score, reverse=True)
        return alternatives[: config.max_alternatives]

    def _day_alternatives(
        self,
        user_id: int,
        day: date,
        duration: timedelta,
        config: ConflictDetectorConfig,
        tz: tzinfo,
        exclude_id: Optional[int],
    ) -> List[AvailabilityWindow]:
        day_start = at_clock(day, config.working_hours_start, tz)
        day_end = at_clock(day, config.working_hours_end, tz)
        existing = [
            commitment_from_event_row(row)
            for row in fetch_events_in_range(user_id, day_start, day_end, exclude_id=exclude_id)
        ]

        windows: List[AvailabilityWindow] = []
        slot = day_start
        while slot + duration <= day_end:
            slot_end = slot + duration
            if not any(event.overlaps(slot, slot_end) for event in existing):
                local = slot.astimezone(tz)
                windows.append(AvailabilityWindow(
                    start=slot.astimezone(timezone.utc),
                    end=slot_end.astimezone(timezone.utc),
                    duration_minutes=duration.total_seconds() / 60,
                    quality=assess_time_quality(local),
                    reasoning=time_quality_reasoning(local),
                ))
            slot += ALTERNATIVE_STEP
        return windows


_default_detector = ConflictDetector()


def check_conflicts(
    user_id: int,
    proposed_start: Timestamp,
    proposed_end: Timestamp,
    exclude_id: Optional[int] = None,
    include_alternatives: bool = False,
    config: ConfigInput = None,
) -> ConflictCheckResult:
    """Module-level shortcut for ConflictDetector().check_conflicts()."""
    return _default_detector.check_conflicts(
        user_id,
        proposed_start,
        proposed_end,
        exclude_id=exclude_id,
        include_alternatives=include_alternatives,
        config=config,
    )
