"""
Google Calendar <-> local database reconciliation.

A sync run goes through these stages, all sharing one SyncResult:
1. Calendar list: upsert every remote calendar
2. Events: per sync-enabled calendar, create/update/skip remote events locally and
   drop local copies of events that vanished remotely
3. Push (bidirectional / to_google): send never-synced local events to Google
4. Orphan cleanup (forced full sync only): flag stale mirrored events for review

One calendar failing never stops the others; its error is recorded and the run
moves on. Re-running against unchanged remote state changes nothing locally.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Set

from models import (
    EventStatus,
    delete_event,
    fetch_calendars,
    fetch_events_by_remote_id,
    fetch_stale_synced_events,
    fetch_unsynced_events,
    get_calendar_by_id,
    get_event,
    get_event_counts,
    get_last_event_update,
    get_primary_calendar,
    mark_events_review_needed,
    update_event,
    upsert_calendar,
    upsert_synced_event,
)
from services.calendar_client import GoogleCalendarProvider, event_body_from_row
from services.calendar_errors import classify_error, get_user_friendly_message
from services.time_utils import parse_timestamp, utcnow

logger = logging.getLogger(__name__)

ORPHAN_AGE = timedelta(hours=24)
ORPHAN_NOTE = "Event may have been deleted from Google Calendar"
RECENT_EVENT_WINDOW = timedelta(days=7)


class SyncDirection(str, Enum):
    BIDIRECTIONAL = "bidirectional"
    FROM_GOOGLE = "from_google"
    TO_GOOGLE = "to_google"

    @property
    def pulls(self) -> bool:
        return self in (SyncDirection.BIDIRECTIONAL, SyncDirection.FROM_GOOGLE)

    @property
    def pushes(self) -> bool:
        return self in (SyncDirection.BIDIRECTIONAL, SyncDirection.TO_GOOGLE)


@dataclass
class SyncOptions:
    # Provider calendar id (or local calendar id) to restrict the run to
    calendar_id: Optional[str] = None
    force_full_sync: bool = False
    sync_direction: SyncDirection = SyncDirection.BIDIRECTIONAL
    days_back: int = 7
    days_ahead: int = 60
    batch_size: int = 50

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any], config: Optional[Mapping[str, Any]] = None) -> "SyncOptions":
        """Build options from a request body, taking window defaults from app config."""
        config = config or {}
        try:
            direction = SyncDirection(payload.get("syncDirection") or payload.get("sync_direction") or "bidirectional")
        except ValueError:
            raise ValueError("syncDirection must be one of: bidirectional, from_google, to_google")
        calendar_id = payload.get("calendarId") or payload.get("calendar_id")
        return cls(
            calendar_id=str(calendar_id) if calendar_id else None,
            force_full_sync=bool(payload.get("forceFullSync") or payload.get("force_full_sync")),
            sync_direction=direction,
            days_back=int(config.get("CALENDAR_SYNC_DAYS_BACK", cls.days_back)),
            days_ahead=int(config.get("CALENDAR_SYNC_DAYS_AHEAD", cls.days_ahead)),
            batch_size=int(config.get("CALENDAR_SYNC_BATCH_SIZE", cls.batch_size)),
        )


@dataclass
class SyncStats:
    created: int = 0
    updated: int = 0
    deleted: int = 0
    skipped: int = 0


@dataclass
class SyncResult:
    success: bool = False
    calendars_processed: int = 0
    events_processed: int = 0
    errors: List[str] = field(default_factory=list)
    last_sync_time: str = ""
    stats: SyncStats = field(default_factory=SyncStats)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "calendars_processed": self.calendars_processed,
            "events_processed": self.events_processed,
            "errors": list(self.errors),
            "last_sync_time": self.last_sync_time,
            "stats": {
                "created": self.stats.created,
                "updated": self.stats.updated,
                "deleted": self.stats.deleted,
                "skipped": self.stats.skipped,
            },
        }


def map_google_event_status(status: Optional[str]) -> str:
    return {
        "confirmed": EventStatus.CONFIRMED.value,
        "tentative": EventStatus.PENDING.value,
        "cancelled": EventStatus.CANCELLED.value,
    }.get((status or "").lower(), EventStatus.PENDING.value)


def google_event_times(g_event: Dict[str, Any]):
    """(start, end) of a Calendar API event; all-day events use their dates."""
    start = g_event.get("start") or {}
    end = g_event.get("end") or {}
    return (
        parse_timestamp(start.get("dateTime") or start.get("date")),
        parse_timestamp(end.get("dateTime") or end.get("date")),
    )


def _same_text(local: Optional[str], remote: Optional[str]) -> bool:
    return (local or "") == (remote or "")


def should_update_event(db_event: Dict[str, Any], g_event: Dict[str, Any]) -> bool:
    """
    True when the remote copy is newer than ours or any key field differs.

    Field comparison runs even when the timestamps agree, so clock skew
    between us and Google cannot hide a real change.
    """
    # Flagged as possibly deleted, yet still present remotely: restore it
    if db_event.get("status") == EventStatus.REVIEW_NEEDED.value:
        return True

    local_updated = parse_timestamp(db_event.get("updated_at") or db_event.get("created_at"))
    remote_updated = parse_timestamp(g_event.get("updated"))
    if remote_updated and (local_updated is None or remote_updated > local_updated):
        return True

    start, end = google_event_times(g_event)
    return (
        not _same_text(db_event.get("title"), g_event.get("summary") or "Untitled Event")
        or not _same_text(db_event.get("description"), g_event.get("description"))
        or parse_timestamp(db_event.get("start_time")) != start
        or parse_timestamp(db_event.get("end_time")) != end
        or not _same_text(db_event.get("location"), g_event.get("location"))
    )


class CalendarSyncService:
    """Reconciles one user's Google calendars with the local tables."""

    def __init__(self, user_id: int, provider: Optional[Any] = None):
        self.user_id = user_id
        self.provider = provider or GoogleCalendarProvider(user_id)

    # ------------------------------------------------------------------
    # Full run
    # ------------------------------------------------------------------

    def sync_calendars(self, options: Optional[SyncOptions] = None) -> SyncResult:
        options = options or SyncOptions()
        result = SyncResult(last_sync_time=utcnow().isoformat())
        seen_remote_ids: Set[str] = set()
        pulled_calendar_ids: Set[int] = set()
        logger.info(
            "Starting calendar sync for user %s (%s, full=%s)",
            self.user_id,
            options.sync_direction.value,
            options.force_full_sync,
        )
        try:
            if options.sync_direction.pulls:
                self._sync_calendar_list(result)

            self._sync_events(options, result, seen_remote_ids, pulled_calendar_ids)

            if options.force_full_sync:
                self._cleanup_orphaned_events(result, seen_remote_ids, pulled_calendar_ids)

            result.success = not result.errors
        except Exception as e:
            logger.exception("Calendar sync failed for user %s", self.user_id)
            result.errors.append(str(e) or "Unknown sync error")

        logger.info(
            "Calendar sync finished for user %s: created=%s updated=%s deleted=%s skipped=%s errors=%s",
            self.user_id,
            result.stats.created,
            result.stats.updated,
            result.stats.deleted,
            result.stats.skipped,
            len(result.errors),
        )
        return result

    # ------------------------------------------------------------------
    # Stages
    # ------------------------------------------------------------------

    def _sync_calendar_list(self, result: SyncResult) -> None:
        try:
            remote_calendars = self.provider.fetch_user_calendars(fallback=False)
        except Exception as e:
            result.errors.append(f"Failed to fetch calendars from Google: {classify_error(e).message}")
            return

        existing = {
            calendar["provider_calendar_id"]: calendar
            for calendar in fetch_calendars(self.user_id)
            if calendar.get("provider") == GoogleCalendarProvider.provider_name
        }
        for remote in remote_calendars:
            name = remote.get("name") or remote.get("id")
            try:
                known = existing.get(remote["id"])
                # A user's own enable/disable choice outlives the remote "selected" flag
                sync_enabled = known["sync_enabled"] if known else remote.get("selected", True) is not False
                upsert_calendar(
                    user_id=self.user_id,
                    provider_calendar_id=remote["id"],
                    name=name,
                    provider=GoogleCalendarProvider.provider_name,
                    is_primary=bool(remote.get("primary")),
                    sync_enabled=sync_enabled,
                    settings={
                        "background_color": remote.get("background_color"),
                        "foreground_color": remote.get("foreground_color"),
                        "time_zone": remote.get("time_zone"),
                        "access_role": remote.get("access_role"),
                    },
                )
                result.calendars_processed += 1
            except Exception as e:
                logger.warning("Failed to store calendar %s: %s", name, e)
                result.errors.append(f"Failed to sync calendar {name}: {e}")

    def _sync_events(
        self,
        options: SyncOptions,
        result: SyncResult,
        seen_remote_ids: Set[str],
        pulled_calendar_ids: Set[int],
    ) -> None:
        calendars = [
            calendar
            for calendar in fetch_calendars(self.user_id, sync_enabled_only=True)
            if calendar.get("provider") == GoogleCalendarProvider.provider_name
        ]
        if options.calendar_id:
            calendars = [
                calendar
                for calendar in calendars
                if options.calendar_id in (calendar["provider_calendar_id"], str(calendar["id"]))
            ]
        if not calendars:
            logger.info("No calendars enabled for sync for user %s", self.user_id)
            return

        now = utcnow()
        time_min = now - timedelta(days=options.days_back)
        time_max = now + timedelta(days=options.days_ahead)

        for calendar in calendars:
            try:
                if options.sync_direction.pulls:
                    self._sync_calendar_events(calendar, time_min, time_max, options, result, seen_remote_ids)
                    pulled_calendar_ids.add(calendar["id"])
                if options.sync_direction.pushes:
                    self._push_local_events(calendar, result)
            except Exception as e:
                logger.warning("Event sync failed for calendar %s: %s", calendar.get("name"), e)
                result.errors.append(
                    f"Failed to sync events for calendar {calendar.get('name')}: {classify_error(e).message}"
                )

    def _sync_calendar_events(
        self,
        calendar: Dict[str, Any],
        time_min: datetime,
        time_max: datetime,
        options: SyncOptions,
        result: SyncResult,
        seen_remote_ids: Set[str],
    ) -> None:
        # Page size only; the provider follows nextPageToken to the end of the window
        remote_events = self.provider.fetch_calendar_events(
            calendar["provider_calendar_id"],
            time_min,
            time_max,
            max_results=options.batch_size * 5,
            fallback=False,
        )
        local_events = fetch_events_by_remote_id(self.user_id, time_min, time_max, calendar_id=calendar["id"])
        remote_ids = {g_event.get("id") for g_event in remote_events if g_event.get("id")}
        seen_remote_ids.update(remote_ids)

        for g_event in remote_events:
            label = g_event.get("summary") or g_event.get("id")
            try:
                db_event = local_events.get(g_event.get("id"))
                if db_event is None:
                    self._store_remote_event(calendar, g_event)
                    result.stats.created += 1
                elif should_update_event(db_event, g_event):
                    self._store_remote_event(calendar, g_event)
                    result.stats.updated += 1
                else:
                    result.stats.skipped += 1
                result.events_processed += 1
            except Exception as e:
                logger.warning("Failed to process event %s: %s", label, e)
                result.errors.append(f"Failed to process event {label}: {e}")

        # Local copies whose remote event is gone were deleted in Google
        for key, db_event in local_events.items():
            if not db_event.get("google_event_id") or key in remote_ids:
                continue
            try:
                delete_event(db_event["id"])
                result.stats.deleted += 1
            except Exception as e:
                result.errors.append(f"Failed to delete event {db_event.get('title')}: {e}")

    def _store_remote_event(self, calendar: Dict[str, Any], g_event: Dict[str, Any]) -> Dict[str, Any]:
        start, end = google_event_times(g_event)
        if start is None or end is None:
            raise ValueError("event has no start/end time")
        return upsert_synced_event(
            user_id=self.user_id,
            calendar_id=calendar["id"],
            google_event_id=g_event["id"],
            title=g_event.get("summary") or "Untitled Event",
            description=g_event.get("description"),
            start_time=start,
            end_time=end,
            location=g_event.get("location"),
            attendees=g_event.get("attendees") or [],
            status=map_google_event_status(g_event.get("status")),
            google_data={
                "created": g_event.get("created"),
                "updated": g_event.get("updated"),
                "htmlLink": g_event.get("htmlLink"),
                "organizer": g_event.get("organizer"),
                "transparency": g_event.get("transparency"),
            },
        )

    def _push_local_events(self, calendar: Dict[str, Any], result: SyncResult) -> None:
        for event in fetch_unsynced_events(self.user_id, calendar["id"]):
            outcome = self.sync_event_to_google(event["id"])
            if outcome["success"]:
                result.stats.created += 1
                result.events_processed += 1
            else:
                result.errors.append(f"Failed to push event {event.get('title')}: {outcome['error']}")

    def _cleanup_orphaned_events(
        self,
        result: SyncResult,
        seen_remote_ids: Set[str],
        pulled_calendar_ids: Set[int],
    ) -> None:
        """
        Flag mirrored events untouched for a day; never delete them.

        Only calendars whose events were fetched successfully in this run are
        considered, so a failed or filtered-out calendar never looks empty.
        """
        if not pulled_calendar_ids:
            return
        try:
            stale = fetch_stale_synced_events(self.user_id, utcnow() - ORPHAN_AGE)
            orphan_ids = [
                event["id"]
                for event in stale
                if event["calendar_id"] in pulled_calendar_ids and event["google_event_id"] not in seen_remote_ids
            ]
            if not orphan_ids:
                return
            logger.info("Found %s potentially orphaned events for user %s", len(orphan_ids), self.user_id)
            result.stats.updated += mark_events_review_needed(orphan_ids, ORPHAN_NOTE)
        except Exception as e:
            result.errors.append(f"Failed to mark orphaned events: {e}")

    # ------------------------------------------------------------------
    # Single-event push + status
    # ------------------------------------------------------------------

    def sync_event_to_google(self, event_id: int) -> Dict[str, Any]:
        """
        Push one local event to Google and stamp it with the remote id.

        Returns {"success", "remote_event_id"?, "error"?}; never raises.
        """
        event = get_event(self.user_id, event_id)
        if not event:
            return {"success": False, "error": "Event not found"}

        calendar = get_calendar_by_id(event["calendar_id"]) if event.get("calendar_id") else None
        if calendar is None:
            calendar = get_primary_calendar(self.user_id, GoogleCalendarProvider.provider_name)
        if not calendar or calendar.get("provider") != GoogleCalendarProvider.provider_name:
            return {"success": False, "error": "Calendar not configured for Google sync"}

        body = event_body_from_row(event)
        try:
            if event.get("google_event_id"):
                remote = self.provider.update_event(calendar["provider_calendar_id"], event["google_event_id"], body)
            else:
                remote = self.provider.create_event(calendar["provider_calendar_id"], body)
            update_event(
                event["id"],
                {
                    "google_event_id": remote["id"],
                    "calendar_id": calendar["id"],
                    "status": EventStatus.CONFIRMED.value,
                },
            )
        except Exception as e:
            classified = classify_error(e, "sync_event_to_google")
            logger.exception("Failed to sync event %s to Google", event_id)
            return {
                "success": False,
                "error": get_user_friendly_message(classified),
                "error_code": classified.code,
            }
        logger.info("Pushed event %s to Google as %s", event_id, remote["id"])
        return {"success": True, "remote_event_id": remote["id"]}

    def get_sync_status(self) -> Dict[str, Any]:
        calendars = fetch_calendars(self.user_id)
        counts = get_event_counts(self.user_id, utcnow() - RECENT_EVENT_WINDOW)
        return {
            "last_sync": get_last_event_update(self.user_id),
            "total_calendars": len(calendars),
            "enabled_calendars": sum(1 for calendar in calendars if calendar["sync_enabled"]),
            "total_events": counts["total"],
            "recent_events": counts["recent"],
            "pending_actions": counts["pending"],
        }
