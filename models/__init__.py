"""Model layer - re-exports from db module."""
from __future__ import annotations

from typing import Any, Dict, List, Optional

from . import db

EventStatus = db.EventStatus
RecordNotFoundError = db.RecordNotFoundError
init_app = db.init_app
ensure_tables = db.ensure_tables

# Re-export all db functions
create_user = db.create_user
get_user_by_google_id = db.get_user_by_google_id
get_user_by_id = db.get_user_by_id
get_or_create_user = db.get_or_create_user
upsert_credentials = db.upsert_credentials
get_credentials_for_user = db.get_credentials_for_user
upsert_calendar = db.upsert_calendar
fetch_calendars = db.fetch_calendars
get_calendar_by_id = db.get_calendar_by_id
get_primary_calendar = db.get_primary_calendar
create_event = db.create_event
upsert_synced_event = db.upsert_synced_event
update_event = db.update_event
delete_event = db.delete_event
get_event = db.get_event
fetch_events_in_range = db.fetch_events_in_range
fetch_unsynced_events = db.fetch_unsynced_events
fetch_stale_synced_events = db.fetch_stale_synced_events
mark_events_review_needed = db.mark_events_review_needed
get_event_counts = db.get_event_counts
get_last_event_update = db.get_last_event_update
create_task = db.create_task
fetch_tasks_in_range = db.fetch_tasks_in_range
get_preference = db.get_preference
set_preference = db.set_preference
insert_audit_log = db.insert_audit_log
fetch_audit_logs = db.fetch_audit_logs


def fetch_events_by_remote_id(
    user_id: int,
    start: Any,
    end: Any,
    calendar_id: Optional[int] = None,
) -> Dict[str, Dict[str, Any]]:
    """Index events in a window by remote event id (local row id when never pushed)."""
    rows = db.fetch_events_in_range(user_id, start, end, calendar_id=calendar_id, include_cancelled=True)
    indexed: Dict[str, Dict[str, Any]] = {}
    for row in rows:
        key = row.get("google_event_id") or f"local:{row['id']}"
        indexed[key] = row
    return indexed


def fetch_calendar_summary(user_id: int) -> List[Dict[str, Any]]:
    """Return dashboard-friendly calendar rows for a user."""
    return [
        {
            "id": calendar["id"],
            "name": calendar.get("name"),
            "provider": calendar.get("provider"),
            "is_primary": calendar.get("is_primary"),
            "sync_enabled": calendar.get("sync_enabled"),
        }
        for calendar in db.fetch_calendars(user_id)
    ]
