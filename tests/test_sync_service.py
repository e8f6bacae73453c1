"""
Tests for the Google Calendar sync reconciler.

Tests cover:
- First sync creating local copies, re-sync being a no-op
- Remote edits and remote deletions
- Per-calendar failure isolation
- Orphan flagging on a forced full sync, scoped to calendars fetched in the run
- Pushing local events (to_google / single event)
- Status mapping, change detection, status summary and option parsing
"""

from datetime import timedelta

import pytest

from conftest import FakeCalendarProvider, google_event, make_http_error
from models import (
    create_event,
    fetch_calendars,
    fetch_events_in_range,
    get_event,
    mark_events_review_needed,
    upsert_calendar,
)
from models.db import cursor
from services.sync_service import (
    ORPHAN_NOTE,
    CalendarSyncService,
    SyncDirection,
    SyncOptions,
    map_google_event_status,
    should_update_event,
)
from services.time_utils import utcnow

WORK = "work@example.com"


@pytest.fixture
def soon():
    """Tomorrow at 10:00 UTC; inside the default sync window."""
    return utcnow().replace(hour=10, minute=0, second=0, microsecond=0) + timedelta(days=1)


@pytest.fixture
def service(app, user_id, fake_provider):
    return CalendarSyncService(user_id, provider=fake_provider)


def local_events(user_id, around):
    return fetch_events_in_range(user_id, around - timedelta(days=30), around + timedelta(days=30))


def backdate(event_id, when):
    with cursor() as cur:
        cur.execute("UPDATE events SET updated_at = ? WHERE id = ?", (when.isoformat(), event_id))


class TestPull:
    def test_first_sync_creates_local_copies(self, service, fake_provider, user_id, soon):
        fake_provider.events[WORK] = [
            google_event("g1", "Planning", soon, soon + timedelta(hours=1), location="Room 4"),
            google_event("g2", "Review", soon + timedelta(hours=3), soon + timedelta(hours=4)),
        ]

        result = service.sync_calendars()

        assert result.success is True
        assert result.errors == []
        assert result.calendars_processed == 1
        assert result.events_processed == 2
        assert (result.stats.created, result.stats.updated, result.stats.deleted) == (2, 0, 0)

        events = local_events(user_id, soon)
        assert [e["google_event_id"] for e in events] == ["g1", "g2"]
        assert events[0]["location"] == "Room 4"
        assert events[0]["status"] == "confirmed"
        assert events[0]["calendar_name"] == "Work"
        assert events[0]["google_data"]["htmlLink"].endswith("eid=g1")

    def test_second_sync_changes_nothing(self, service, fake_provider, user_id, soon):
        fake_provider.events[WORK] = [
            google_event("g1", "Planning", soon, soon + timedelta(hours=1)),
            google_event("g2", "Review", soon + timedelta(hours=3), soon + timedelta(hours=4)),
        ]
        service.sync_calendars()
        before = local_events(user_id, soon)

        result = service.sync_calendars()

        assert result.success is True
        assert (result.stats.created, result.stats.updated, result.stats.deleted) == (0, 0, 0)
        assert result.stats.skipped == 2
        assert local_events(user_id, soon) == before

    def test_remote_edit_updates_local_copy(self, service, fake_provider, user_id, soon):
        fake_provider.events[WORK] = [google_event("g1", "Planning", soon, soon + timedelta(hours=1))]
        service.sync_calendars()

        fake_provider.events[WORK] = [
            google_event("g1", "Planning (moved)", soon + timedelta(hours=2), soon + timedelta(hours=3))
        ]
        result = service.sync_calendars()

        assert result.stats.updated == 1
        [event] = local_events(user_id, soon)
        assert event["title"] == "Planning (moved)"
        assert event["start_time"] == (soon + timedelta(hours=2)).isoformat()

    def test_remote_deletion_removes_local_copy(self, service, fake_provider, user_id, soon):
        fake_provider.events[WORK] = [
            google_event("g1", "Planning", soon, soon + timedelta(hours=1)),
            google_event("g2", "Review", soon + timedelta(hours=3), soon + timedelta(hours=4)),
        ]
        service.sync_calendars()

        fake_provider.events[WORK] = [google_event("g1", "Planning", soon, soon + timedelta(hours=1))]
        result = service.sync_calendars()

        assert result.stats.deleted == 1
        assert [e["google_event_id"] for e in local_events(user_id, soon)] == ["g1"]

    def test_untitled_and_all_day_events(self, service, fake_provider, user_id, soon):
        day = soon.date()
        all_day = google_event("g1", "", soon, soon)
        all_day["start"] = {"date": day.isoformat()}
        all_day["end"] = {"date": (day + timedelta(days=1)).isoformat()}
        fake_provider.events[WORK] = [all_day]

        service.sync_calendars()

        [event] = local_events(user_id, soon)
        assert event["title"] == "Untitled Event"
        assert event["start_time"].startswith(day.isoformat() + "T00:00:00")

    def test_failing_calendar_does_not_stop_the_others(self, app, user_id, soon):
        provider = FakeCalendarProvider(calendars=[
            {"id": WORK, "name": "Work", "primary": True},
            {"id": "team@example.com", "name": "Team"},
        ])
        provider.failing_calendars.add(WORK)
        provider.events["team@example.com"] = [google_event("t1", "Team lunch", soon, soon + timedelta(hours=1))]

        result = CalendarSyncService(user_id, provider=provider).sync_calendars()

        assert result.success is False
        assert len(result.errors) == 1
        assert "Work" in result.errors[0]
        assert "temporarily unavailable" in result.errors[0]
        assert result.calendars_processed == 2
        assert [e["google_event_id"] for e in local_events(user_id, soon)] == ["t1"]

    def test_user_disabled_calendar_stays_disabled(self, service, fake_provider, user_id, soon):
        upsert_calendar(user_id, WORK, "Work", is_primary=True, sync_enabled=False)
        fake_provider.events[WORK] = [google_event("g1", "Planning", soon, soon + timedelta(hours=1))]

        result = service.sync_calendars()

        assert fetch_calendars(user_id)[0]["sync_enabled"] is False
        assert result.events_processed == 0
        assert local_events(user_id, soon) == []

    def test_calendar_filter(self, app, user_id, soon):
        provider = FakeCalendarProvider(calendars=[
            {"id": WORK, "name": "Work", "primary": True},
            {"id": "team@example.com", "name": "Team"},
        ])
        provider.events[WORK] = [google_event("g1", "Planning", soon, soon + timedelta(hours=1))]
        provider.events["team@example.com"] = [google_event("t1", "Team lunch", soon, soon + timedelta(hours=1))]

        CalendarSyncService(user_id, provider=provider).sync_calendars(SyncOptions(calendar_id="team@example.com"))

        assert [e["google_event_id"] for e in local_events(user_id, soon)] == ["t1"]


class TestOrphanCleanup:
    def test_stale_unseen_events_are_flagged(self, service, fake_provider, user_id, soon):
        long_ago = soon - timedelta(days=30)
        fake_provider.events[WORK] = [
            google_event("g1", "Planning", soon, soon + timedelta(hours=1), updated=utcnow() - timedelta(days=3)),
        ]
        service.sync_calendars()
        [seen] = local_events(user_id, soon)
        calendar_id = seen["calendar_id"]
        ghost = create_event(
            user_id, "Old offsite", long_ago, long_ago + timedelta(hours=2),
            calendar_id=calendar_id, google_event_id="gone", status="confirmed",
        )
        backdate(ghost["id"], utcnow() - timedelta(days=2))
        backdate(seen["id"], utcnow() - timedelta(days=2))

        result = service.sync_calendars(SyncOptions(force_full_sync=True))

        assert result.success is True
        assert result.stats.updated == 1
        flagged = get_event(user_id, ghost["id"])
        assert flagged["status"] == "review_needed"
        assert flagged["notes"] == ORPHAN_NOTE
        # Seen in this run, so left alone even though its row is old
        assert get_event(user_id, seen["id"])["status"] == "confirmed"

    def test_provider_outage_flags_nothing(self, service, fake_provider, user_id, soon):
        fake_provider.events[WORK] = [
            google_event("g1", "Planning", soon, soon + timedelta(hours=1), updated=utcnow() - timedelta(days=3)),
        ]
        service.sync_calendars()
        [event] = local_events(user_id, soon)
        backdate(event["id"], utcnow() - timedelta(days=3))
        fake_provider.failing_calendars.add(WORK)

        result = service.sync_calendars(SyncOptions(force_full_sync=True))

        assert result.success is False
        assert "temporarily unavailable" in result.errors[0]
        assert result.stats.updated == 0
        assert get_event(user_id, event["id"])["status"] == "confirmed"

    def test_filtered_out_calendar_is_left_alone(self, app, user_id, soon):
        provider = FakeCalendarProvider(calendars=[
            {"id": WORK, "name": "Work", "primary": True},
            {"id": "team@example.com", "name": "Team"},
        ])
        provider.events[WORK] = [google_event("g1", "Planning", soon, soon + timedelta(hours=1))]
        provider.events["team@example.com"] = [google_event("t1", "Team lunch", soon, soon + timedelta(hours=1))]
        service = CalendarSyncService(user_id, provider=provider)
        service.sync_calendars()
        for event in local_events(user_id, soon):
            backdate(event["id"], utcnow() - timedelta(days=2))

        service.sync_calendars(SyncOptions(calendar_id=WORK, force_full_sync=True))

        statuses = {e["google_event_id"]: e["status"] for e in local_events(user_id, soon)}
        assert statuses == {"g1": "confirmed", "t1": "confirmed"}

    def test_flagged_event_seen_again_is_restored(self, service, fake_provider, user_id, soon):
        fake_provider.events[WORK] = [
            google_event("g1", "Planning", soon, soon + timedelta(hours=1), updated=utcnow() - timedelta(days=3)),
        ]
        service.sync_calendars()
        [event] = local_events(user_id, soon)
        mark_events_review_needed([event["id"]], ORPHAN_NOTE)

        result = service.sync_calendars()

        assert result.stats.updated == 1
        restored = get_event(user_id, event["id"])
        assert restored["status"] == "confirmed"
        assert restored["notes"] is None

    def test_no_cleanup_without_full_sync(self, service, user_id, soon):
        long_ago = soon - timedelta(days=30)
        ghost = create_event(user_id, "Old offsite", long_ago, long_ago + timedelta(hours=1),
                             google_event_id="gone", status="confirmed")
        backdate(ghost["id"], utcnow() - timedelta(days=2))

        service.sync_calendars()

        assert get_event(user_id, ghost["id"])["status"] == "confirmed"


class TestPush:
    def test_to_google_pushes_unsynced_events(self, service, fake_provider, user_id, soon):
        calendar = upsert_calendar(user_id, WORK, "Work", is_primary=True)
        local = create_event(user_id, "Draft meeting", soon, soon + timedelta(minutes=30), calendar_id=calendar["id"])

        result = service.sync_calendars(SyncOptions(sync_direction=SyncDirection.TO_GOOGLE))

        assert result.success is True
        assert result.stats.created == 1
        assert fake_provider.created[0]["calendar_id"] == WORK
        assert fake_provider.created[0]["summary"] == "Draft meeting"
        pushed = get_event(user_id, local["id"])
        assert pushed["google_event_id"] == "remote-1"
        assert pushed["status"] == "confirmed"

    def test_from_google_does_not_push(self, service, fake_provider, user_id, soon):
        calendar = upsert_calendar(user_id, WORK, "Work", is_primary=True)
        create_event(user_id, "Draft meeting", soon, soon + timedelta(minutes=30), calendar_id=calendar["id"])

        service.sync_calendars(SyncOptions(sync_direction=SyncDirection.FROM_GOOGLE))

        assert fake_provider.created == []

    def test_single_event_uses_primary_calendar(self, service, fake_provider, user_id, soon):
        primary = upsert_calendar(user_id, WORK, "Work", is_primary=True)
        local = create_event(user_id, "Loose event", soon, soon + timedelta(hours=1))

        outcome = service.sync_event_to_google(local["id"])

        assert outcome == {"success": True, "remote_event_id": "remote-1"}
        assert get_event(user_id, local["id"])["calendar_id"] == primary["id"]

    def test_single_event_already_remote_is_updated(self, service, fake_provider, user_id, soon):
        upsert_calendar(user_id, WORK, "Work", is_primary=True)
        local = create_event(user_id, "Mirrored", soon, soon + timedelta(hours=1), google_event_id="g9")

        outcome = service.sync_event_to_google(local["id"])

        assert outcome["remote_event_id"] == "g9"
        assert fake_provider.created == []

    def test_missing_event(self, service):
        assert service.sync_event_to_google(999) == {"success": False, "error": "Event not found"}

    def test_no_google_calendar(self, service, user_id, soon):
        local = create_event(user_id, "Nowhere", soon, soon + timedelta(hours=1))
        assert service.sync_event_to_google(local["id"]) == {
            "success": False,
            "error": "Calendar not configured for Google sync",
        }

    def test_provider_error_is_reported_in_user_terms(self, service, fake_provider, user_id, soon):
        upsert_calendar(user_id, WORK, "Work", is_primary=True)
        local = create_event(user_id, "Forbidden", soon, soon + timedelta(hours=1))
        fake_provider.create_error = make_http_error(403, "The caller does not have permission")

        outcome = service.sync_event_to_google(local["id"])

        assert outcome["success"] is False
        assert outcome["error_code"] == 403
        assert outcome["error"].startswith("Calendar permissions are insufficient")
        assert get_event(user_id, local["id"])["google_event_id"] is None


class TestSyncStatus:
    def test_status_after_sync(self, service, fake_provider, soon):
        fake_provider.events[WORK] = [
            google_event("g1", "Planning", soon, soon + timedelta(hours=1)),
            google_event("g2", "Maybe", soon + timedelta(hours=2), soon + timedelta(hours=3), status="tentative"),
        ]
        service.sync_calendars()

        status = service.get_sync_status()

        assert status["total_calendars"] == 1
        assert status["enabled_calendars"] == 1
        assert status["total_events"] == 2
        assert status["recent_events"] == 2
        assert status["pending_actions"] == 1
        assert status["last_sync"] is not None

    def test_status_for_new_user(self, service):
        status = service.get_sync_status()
        assert status["total_events"] == 0
        assert status["last_sync"] is None


class TestHelpers:
    @pytest.mark.parametrize(
        "remote, local",
        [
            ("confirmed", "confirmed"),
            ("tentative", "pending"),
            ("cancelled", "cancelled"),
            ("CONFIRMED", "confirmed"),
            (None, "pending"),
            ("something-new", "pending"),
        ],
    )
    def test_status_mapping(self, remote, local):
        assert map_google_event_status(remote) == local

    def test_change_detection_survives_clock_skew(self, soon):
        g_event = google_event("g1", "Planning", soon, soon + timedelta(hours=1), updated=soon - timedelta(days=5))
        db_event = {
            "title": "Planning",
            "description": None,
            "location": None,
            "start_time": soon.isoformat(),
            "end_time": (soon + timedelta(hours=1)).isoformat(),
            "updated_at": soon.isoformat(),
        }

        assert should_update_event(db_event, g_event) is False
        # Remote "updated" is older than ours, but the title really changed
        assert should_update_event({**db_event, "title": "Old title"}, g_event) is True
        assert should_update_event({**db_event, "description": ""}, g_event) is False
        assert should_update_event({**db_event, "status": "review_needed"}, g_event) is True
        newer = {**g_event, "updated": (soon + timedelta(minutes=1)).isoformat()}
        assert should_update_event(db_event, newer) is True

    def test_sync_options_from_payload(self):
        options = SyncOptions.from_payload(
            {"calendarId": WORK, "forceFullSync": True, "syncDirection": "to_google"},
            {"CALENDAR_SYNC_DAYS_BACK": 3, "CALENDAR_SYNC_DAYS_AHEAD": 30, "CALENDAR_SYNC_BATCH_SIZE": 10},
        )

        assert options.calendar_id == WORK
        assert options.force_full_sync is True
        assert options.sync_direction == SyncDirection.TO_GOOGLE
        assert (options.days_back, options.days_ahead, options.batch_size) == (3, 30, 10)
        assert SyncOptions.from_payload({}).sync_direction == SyncDirection.BIDIRECTIONAL

    def test_sync_options_reject_unknown_direction(self):
        with pytest.raises(ValueError, match="syncDirection"):
            SyncOptions.from_payload({"syncDirection": "sideways"})

    def test_direction_flags(self):
        assert SyncDirection.BIDIRECTIONAL.pulls and SyncDirection.BIDIRECTIONAL.pushes
        assert SyncDirection.FROM_GOOGLE.pulls and not SyncDirection.FROM_GOOGLE.pushes
        assert SyncDirection.TO_GOOGLE.pushes and not SyncDirection.TO_GOOGLE.pulls
