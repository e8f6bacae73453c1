"""
Meeting scheduling engine.

This module turns a meeting request into concrete calendar slots:
- Building the availability grid for a date range (working days/hours only)
- Scoring free slots against time-of-day, weekday, priority and preferred times
- Ranking suggestions (with optional prep-time windows)
- Auto-scheduling: commit the best slot after a final conflict check

Slots are generated in the user's time zone and returned as UTC datetimes.
"""
from __future__ import annotations

import logging
from collections import Counter
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Sequence

from models import EventStatus, create_event, fetch_events_in_range, fetch_tasks_in_range
from services.commitments import (
    DEFAULT_TASK_DURATION,
    Commitment,
    CommitmentKind,
    TimeSlot,
    commitment_from_event_row,
    commitment_from_task_row,
)
from services.conflict_detector import ConflictDetector
from services.preferences import SchedulingPreferences, get_user_scheduling_preferences
from services.time_utils import (
    DAY_NAMES,
    Timestamp,
    at_clock,
    day_of_week,
    parse_timestamp,
    utcnow,
)

logger = logging.getLogger(__name__)

MAX_SUGGESTIONS = 10
PREFERRED_TIME_WINDOW = timedelta(hours=2)


class Priority(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


@dataclass
class MeetingRequest:
    title: str
    duration_minutes: int
    description: Optional[str] = None
    attendees: List[str] = field(default_factory=list)
    preferred_times: List[datetime] = field(default_factory=list)
    deadline: Optional[datetime] = None
    priority: Priority = Priority.MEDIUM
    location: Optional[str] = None
    requires_prep: bool = False
    prep_time_minutes: Optional[int] = None

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> "MeetingRequest":
        """
        Build a request from a JSON body (camelCase or snake_case keys).

        Raises ValueError with a user-readable message on bad input.
        """
        title = (payload.get("title") or "").strip()
        if not title:
            raise ValueError("Meeting title is required")

        raw_duration = _first(payload, "duration", "durationMinutes", "duration_minutes")
        try:
            duration = int(raw_duration)
        except (TypeError, ValueError):
            raise ValueError("Meeting duration must be a whole number of minutes")
        if duration <= 0:
            raise ValueError("Meeting duration must be positive")

        try:
            priority = Priority(payload.get("priority") or Priority.MEDIUM.value)
        except ValueError:
            raise ValueError("Priority must be one of: low, medium, high")

        try:
            preferred = [
                parse_timestamp(value)
                for value in _first(payload, "preferredTimes", "preferred_times") or []
                if value
            ]
            deadline = parse_timestamp(payload.get("deadline"))
        except (TypeError, ValueError):
            raise ValueError("Preferred times and deadline must be ISO-8601 timestamps")

        prep = _first(payload, "prepTime", "prep_time_minutes", "prepTimeMinutes")
        try:
            prep_minutes = int(prep) if prep not in (None, "") else None
        except (TypeError, ValueError):
            raise ValueError("Prep time must be a whole number of minutes")
        if prep_minutes is not None and prep_minutes < 0:
            raise ValueError("Prep time must not be negative")

        attendees = payload.get("attendees") or []
        if not isinstance(attendees, list):
            raise ValueError("Attendees must be a list")

        return cls(
            title=title,
            duration_minutes=duration,
            description=payload.get("description"),
            attendees=[str(attendee) for attendee in attendees],
            preferred_times=preferred,
            deadline=deadline,
            priority=priority,
            location=payload.get("location") or None,
            requires_prep=bool(_first(payload, "requiresPrep", "requires_prep")),
            prep_time_minutes=prep_minutes,
        )


def _first(payload: Dict[str, Any], *keys: str) -> Any:
    for key in keys:
        if payload.get(key) is not None:
            return payload[key]
    return None


@dataclass
class SuggestedSlot:
    start: datetime
    end: datetime
    confidence: float
    reasoning: str
    conflicts: List[str] = field(default_factory=list)
    prep_start: Optional[datetime] = None
    prep_end: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "start": self.start.isoformat(),
            "end": self.end.isoformat(),
            "confidence": round(self.confidence, 3),
            "reasoning": self.reasoning,
            "conflicts": list(self.conflicts),
            "prep_time": None,
        }
        if self.prep_start and self.prep_end:
            data["prep_time"] = {"start": self.prep_start.isoformat(), "end": self.prep_end.isoformat()}
        return data


# ---------------------------------------------------------------------------
# Commitments
# ---------------------------------------------------------------------------

def get_user_commitments(
    user_id: int,
    start: datetime,
    end: datetime,
    include_tasks: bool = True,
) -> List[Commitment]:
    """Events (non-cancelled) and time-holding tasks overlapping [start, end)."""
    commitments = [commitment_from_event_row(row) for row in fetch_events_in_range(user_id, start, end)]
    if include_tasks:
        for row in fetch_tasks_in_range(user_id, start, end, due_padding_end=end + DEFAULT_TASK_DURATION):
            task = commitment_from_task_row(row)
            if task is not None and task.overlaps(start, end):
                commitments.append(task)
    return commitments


# ---------------------------------------------------------------------------
# Availability grid
# ---------------------------------------------------------------------------

def _local_days(start: datetime, end: datetime, tz) -> Iterable[date]:
    day = start.astimezone(tz).date()
    last = end.astimezone(tz).date()
    while day <= last:
        yield day
        day += timedelta(days=1)


def generate_available_slots(
    user_id: int,
    start: Timestamp,
    end: Timestamp,
    slot_duration_minutes: int = 30,
    preferences: Optional[SchedulingPreferences] = None,
    commitments: Optional[Sequence[Commitment]] = None,
) -> List[TimeSlot]:
    """
    Every working-hours slot in [start, end], each marked available or not.

    Slots step from the start of the working day by `slot_duration_minutes`; a
    slot that would run past the end of the working day is dropped.
    """
    if slot_duration_minutes <= 0:
        raise ValueError("Slot duration must be positive")
    range_start = parse_timestamp(start)
    range_end = parse_timestamp(end)
    if range_start is None or range_end is None:
        raise ValueError("Start and end are required")

    preferences = preferences or get_user_scheduling_preferences(user_id)
    if commitments is None:
        commitments = get_user_commitments(user_id, range_start, range_end)
    tz = preferences.tzinfo
    step = timedelta(minutes=slot_duration_minutes)

    slots: List[TimeSlot] = []
    for day in _local_days(range_start, range_end, tz):
        if day_of_week(day) not in preferences.working_days:
            continue
        day_start = at_clock(day, preferences.working_hours_start, tz)
        day_end = at_clock(day, preferences.working_hours_end, tz)

        slot_start = day_start
        while slot_start + step <= day_end:
            slot_end = slot_start + step
            utc_start = slot_start.astimezone(timezone.utc)
            utc_end = slot_end.astimezone(timezone.utc)
            if utc_start >= range_start and utc_end <= range_end:
                busy = any(commitment.overlaps(utc_start, utc_end) for commitment in commitments)
                slots.append(TimeSlot(start=utc_start, end=utc_end, available=not busy))
            slot_start = slot_end
    return slots


# ---------------------------------------------------------------------------
# Scoring
# ---------------------------------------------------------------------------

def score_time_slot(
    slot: TimeSlot,
    request: MeetingRequest,
    preferences: SchedulingPreferences,
    existing: Sequence[Commitment],
) -> float:
    """Score a slot in [0, 1]; higher is better."""
    score = 1.0
    local_start = slot.start.astimezone(preferences.tzinfo)
    hour = local_start.hour

    if 9 <= hour <= 11:
        score += 0.3
    elif 13 <= hour <= 15:
        score += 0.2
    elif hour >= 16:
        score -= 0.2

    buffer = timedelta(minutes=preferences.buffer_time_minutes)
    back_to_back = any(
        commitment.overlaps(slot.start - buffer, slot.end + buffer) for commitment in existing
    )
    if back_to_back and preferences.avoid_back_to_back:
        score -= 0.4

    weekday = day_of_week(local_start)
    if weekday in (1, 2):
        score += 0.1
    elif weekday == 5:
        score -= 0.1

    if request.priority == Priority.HIGH:
        score += 0.2
    elif request.priority == Priority.LOW:
        score -= 0.1

    if any(abs(slot.start - preferred) < PREFERRED_TIME_WINDOW for preferred in request.preferred_times):
        score += 0.5

    if slot.duration_minutes == request.duration_minutes:
        score += 0.2

    return max(0.0, min(1.0, score))


def generate_slot_reasoning(
    slot: TimeSlot,
    request: MeetingRequest,
    preferences: SchedulingPreferences,
    score: float,
) -> str:
    local_start = slot.start.astimezone(preferences.tzinfo)
    hour = local_start.hour
    reasons = []
    if 9 <= hour <= 11:
        reasons.append("optimal morning time")
    elif 13 <= hour <= 15:
        reasons.append("good afternoon slot")

    if score > 0.8:
        reasons.append("high availability")
    elif score > 0.6:
        reasons.append("good availability")

    if request.priority == Priority.HIGH:
        reasons.append("priority meeting accommodation")

    reasons.append(f"{DAY_NAMES[day_of_week(local_start)]} scheduling")
    return ", ".join(reasons)


def _preferred_distance(start: datetime, preferred_times: Sequence[datetime]) -> float:
    if not preferred_times:
        return 0.0
    return min(abs((start - preferred).total_seconds()) for preferred in preferred_times)


def find_optimal_meeting_times(
    user_id: int,
    request: MeetingRequest,
    search_days: int = 14,
    now: Optional[datetime] = None,
) -> List[SuggestedSlot]:
    """
    Rank free slots for a meeting request and return the best ten.

    The window is [now, now + search_days], cut short at the request deadline.
    Days already holding `max_meetings_per_day` events are skipped.
    """
    preferences = get_user_scheduling_preferences(user_id)
    tz = preferences.tzinfo
    window_start = now or utcnow()
    window_end = window_start + timedelta(days=search_days)
    if request.deadline is not None and request.deadline < window_end:
        window_end = request.deadline
    if window_end <= window_start:
        return []

    commitments = get_user_commitments(user_id, window_start, window_end)
    meetings_per_day = Counter(
        commitment.start.astimezone(tz).date()
        for commitment in commitments
        if commitment.kind == CommitmentKind.EVENT
    )
    full_days = {day for day, count in meetings_per_day.items() if count >= preferences.max_meetings_per_day}

    grid = generate_available_slots(
        user_id,
        window_start,
        window_end,
        request.duration_minutes,
        preferences=preferences,
        commitments=commitments,
    )

    suggestions: List[SuggestedSlot] = []
    for slot in grid:
        if not slot.available or slot.start.astimezone(tz).date() in full_days:
            continue
        score = score_time_slot(slot, request, preferences, commitments)
        suggestion = SuggestedSlot(
            start=slot.start,
            end=slot.end,
            confidence=score,
            reasoning=generate_slot_reasoning(slot, request, preferences, score),
        )
        if request.requires_prep and request.prep_time_minutes:
            suggestion.prep_start = slot.start - timedelta(minutes=request.prep_time_minutes)
            suggestion.prep_end = slot.start
        suggestions.append(suggestion)

    suggestions.sort(
        key=lambda s: (-s.confidence, _preferred_distance(s.start, request.preferred_times), s.start)
    )
    return suggestions[:MAX_SUGGESTIONS]


# ---------------------------------------------------------------------------
# Auto-scheduling
# ---------------------------------------------------------------------------

def auto_schedule_meeting(
    user_id: int,
    request: MeetingRequest,
    search_days: int = 14,
    now: Optional[datetime] = None,
    detector: Optional[ConflictDetector] = None,
) -> Dict[str, Any]:
    """
    Pick the best slot for a request and store it as a pending AI-generated event.

    Never raises; any failure comes back as {"success": False}.
    """
    try:
        suggestions = find_optimal_meeting_times(user_id, request, search_days=search_days, now=now)
        if not suggestions:
            logger.info("No free slot found for %r (user %s)", request.title, user_id)
            return {"success": False}

        best = suggestions[0]
        check = (detector or ConflictDetector()).check_conflicts(user_id, best.start, best.end)
        if check.has_conflicts or not check.can_proceed:
            logger.info(
                "Best slot %s for %r failed the final conflict check (%s)",
                best.start.isoformat(),
                request.title,
                check.severity.value,
            )
            best.conflicts = [conflict.description for conflict in check.conflicts]
            return {
                "success": False,
                "suggested_slot": best,
                "conflicts": check.conflicts,
            }

        event = create_event(
            user_id=user_id,
            title=request.title,
            description=request.description,
            start_time=best.start,
            end_time=best.end,
            location=request.location,
            attendees=[{"email": attendee} for attendee in request.attendees],
            ai_generated=True,
            confidence_score=best.confidence,
            status=EventStatus.PENDING.value,
        )
        logger.info(
            "Auto-scheduled %r for user %s at %s (confidence %.2f)",
            request.title,
            user_id,
            best.start.isoformat(),
            best.confidence,
        )
        return {"success": True, "suggested_slot": best, "event_id": event["id"]}
    except Exception:
        logger.exception("Error auto-scheduling meeting %r for user %s", request.title, user_id)
        return {"success": False}
