"""
Pytest fixtures for the scheduling dashboard.

Provides:
- A Flask app bound to a throwaway SQLite file, with an app context pushed
- A stored user
- An in-memory stand-in for the Google Calendar provider
- Helpers for building Calendar API event payloads and HttpErrors
"""

import json
import os
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

import pytest

# Set before the application modules are imported so config doesn't warn
os.environ.setdefault("FLASK_SECRET_KEY", "test-secret-key")
os.environ.setdefault("GOOGLE_CLIENT_ID", "test-client-id")
os.environ.setdefault("GOOGLE_CLIENT_SECRET", "test-client-secret")

from googleapiclient.errors import HttpError  # noqa: E402

from app import create_app  # noqa: E402
from config import TestConfig  # noqa: E402
from models import create_user  # noqa: E402

# 2030-01-07 is a Monday
MONDAY = datetime(2030, 1, 7, tzinfo=timezone.utc)
TUESDAY = MONDAY + timedelta(days=1)


def at(day: datetime, hour: int, minute: int = 0) -> datetime:
    return day.replace(hour=hour, minute=minute)


# =============================================================================
# APP + DATABASE
# =============================================================================

@pytest.fixture
def app(tmp_path):
    """Flask app on a fresh database; the app context stays pushed for the test."""

    class _Config(TestConfig):
        DATABASE_PATH = str(tmp_path / "scheduler-test.sqlite3")

    application = create_app(_Config)
    with application.app_context():
        yield application


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def user_id(app) -> int:
    return create_user("google-user-1", "planner@example.com")["id"]


@pytest.fixture
def logged_in_client(client, user_id):
    with client.session_transaction() as sess:
        sess["user_id"] = user_id
    return client


# =============================================================================
# GOOGLE CALENDAR STAND-INS
# =============================================================================

class FakeResponse(dict):
    """Minimal httplib2-style response: a header dict with status/reason."""

    def __init__(self, status: int, headers: Optional[Dict[str, str]] = None, reason: str = ""):
        super().__init__(headers or {})
        self.status = status
        self.reason = reason


def make_http_error(status: int, message: str = "", headers: Optional[Dict[str, str]] = None) -> HttpError:
    content = json.dumps({"error": {"code": status, "message": message}}).encode("utf-8")
    return HttpError(FakeResponse(status, headers, reason=message), content)


def google_event(
    event_id: str,
    summary: str,
    start: datetime,
    end: datetime,
    updated: Optional[datetime] = None,
    **extra: Any,
) -> Dict[str, Any]:
    event = {
        "id": event_id,
        "summary": summary,
        "start": {"dateTime": start.isoformat()},
        "end": {"dateTime": end.isoformat()},
        "status": "confirmed",
        "created": (updated or datetime.now(timezone.utc) - timedelta(days=2)).isoformat(),
        "updated": (updated or datetime.now(timezone.utc) - timedelta(days=1)).isoformat(),
        "htmlLink": f"https://calendar.google.com/event?eid={event_id}",
    }
    event.update(extra)
    return event


class FakeCalendarProvider:
    """In-memory provider with the GoogleCalendarProvider method set."""

    provider_name = "google"

    def __init__(self, calendars: Optional[List[Dict[str, Any]]] = None):
        self.calendars = calendars if calendars is not None else [
            {"id": "work@example.com", "name": "Work", "primary": True, "selected": True},
        ]
        self.events: Dict[str, List[Dict[str, Any]]] = {}
        self.failing_calendars: set = set()
        self.created: List[Dict[str, Any]] = []
        self.create_error: Optional[Exception] = None

    def fetch_user_calendars(self, fallback: bool = True) -> List[Dict[str, Any]]:
        return list(self.calendars)

    def fetch_calendar_events(self, calendar_id, time_min, time_max, max_results=250, fallback=True):
        if calendar_id in self.failing_calendars:
            raise make_http_error(503, "Backend Error")
        return list(self.events.get(calendar_id, []))

    def create_event(self, calendar_id: str, body: Dict[str, Any]) -> Dict[str, Any]:
        if self.create_error is not None:
            raise self.create_error
        remote = {"id": f"remote-{len(self.created) + 1}", **body}
        self.created.append({"calendar_id": calendar_id, **remote})
        return remote

    def update_event(self, calendar_id: str, event_id: str, body: Dict[str, Any]) -> Dict[str, Any]:
        return {"id": event_id, **body}


@pytest.fixture
def fake_provider() -> FakeCalendarProvider:
    return FakeCalendarProvider()
