"""
Commitments: one shape for everything that occupies time.

Events and tasks are stored differently, but conflict checks and the availability
grid only care about "who holds which interval". Tasks without a scheduled block
are assumed to take the hour before their due date.
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Dict, Optional

from services.time_utils import minutes_between, parse_timestamp

# Assumed length of a task that only has a due date
DEFAULT_TASK_DURATION = timedelta(hours=1)


class CommitmentKind(str, Enum):
    EVENT = "event"
    TASK = "task"


@dataclass
class Commitment:
    id: Any
    kind: CommitmentKind
    title: str
    start: datetime
    end: datetime
    location: Optional[str] = None
    priority: Optional[str] = None
    calendar_id: Optional[int] = None

    def __post_init__(self) -> None:
        if self.end < self.start:
            raise ValueError(f"Commitment {self.id!r} ends before it starts")

    def overlaps(self, start: datetime, end: datetime) -> bool:
        """Half-open overlap test against [start, end)."""
        return start < self.end and end > self.start

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "kind": self.kind.value,
            "title": self.title,
            "start": self.start.isoformat(),
            "end": self.end.isoformat(),
            "location": self.location,
            "priority": self.priority,
            "calendar_id": self.calendar_id,
        }


@dataclass
class TimeSlot:
    start: datetime
    end: datetime
    available: bool = True
    calendar_id: Optional[int] = None

    @property
    def duration_minutes(self) -> float:
        return minutes_between(self.start, self.end)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "start": self.start.isoformat(),
            "end": self.end.isoformat(),
            "available": self.available,
            "calendar_id": self.calendar_id,
        }


def commitment_from_event_row(row: Dict[str, Any]) -> Commitment:
    return Commitment(
        id=row["id"],
        kind=CommitmentKind.EVENT,
        title=row.get("title") or "Untitled Event",
        start=parse_timestamp(row["start_time"]),
        end=parse_timestamp(row["end_time"]),
        location=row.get("location") or None,
        calendar_id=row.get("calendar_id"),
    )


def commitment_from_task_row(row: Dict[str, Any]) -> Optional[Commitment]:
    """
    Convert a task row, or return None if the task holds no time.

    An explicit scheduled block wins; otherwise a due date yields a one-hour
    interval ending at the due date.
    """
    start = parse_timestamp(row.get("scheduled_start"))
    end = parse_timestamp(row.get("scheduled_end"))
    if start is None or end is None:
        due = parse_timestamp(row.get("due_date"))
        if due is None:
            return None
        start, end = due - DEFAULT_TASK_DURATION, due
    return Commitment(
        id=row["id"],
        kind=CommitmentKind.TASK,
        title=row.get("title") or "Untitled Task",
        start=start,
        end=end,
        priority=row.get("priority"),
    )
