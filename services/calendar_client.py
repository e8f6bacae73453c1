"""
Google Calendar client and credential helpers.

This module handles everything that talks to the Calendar API:
- Building credentials from stored tokens
- Refreshing expired access tokens (returned as an explicit TokenRefresh value)
- Persisting a refresh back to the credentials table
- Creating Calendar API service instances
- GoogleCalendarProvider: the calendar and event calls the sync code uses,
  each run under the retry executor
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

from flask import current_app
from google.auth.transport.requests import Request
from google.oauth2.credentials import Credentials
from googleapiclient.discovery import build

from config import Config
from models import get_credentials_for_user, upsert_credentials
from services.calendar_errors import (
    CalendarAuthError,
    create_fallback_response,
    execute_with_retry,
)
from services.time_utils import to_storage

logger = logging.getLogger(__name__)

GOOGLE_TOKEN_URI = "https://oauth2.googleapis.com/token"

# Google caps a single events.list page at 2500
MAX_PAGE_SIZE = 2500


@dataclass(frozen=True)
class TokenRefresh:
    """New token material produced by a refresh, to be persisted by the caller."""
    access_token: str
    refresh_token: str
    token_expiry: Optional[str]


def _oauth_setting(name: str) -> Any:
    """Read an OAuth setting from the running app, or from Config outside one."""
    try:
        return current_app.config.get(name)
    except RuntimeError:
        return getattr(Config, name, None)


def _parse_expiry(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    try:
        expiry = datetime.fromisoformat(value)
    except ValueError:
        return None
    # google-auth compares expiry against a naive UTC clock
    if expiry.tzinfo is not None:
        expiry = expiry.astimezone(timezone.utc).replace(tzinfo=None)
    return expiry


def build_credentials(record: Dict[str, Any]) -> Credentials:
    """
    Build a Credentials object from a stored credential record.

    Takes the tokens we stored in the database and converts them into a Google
    Credentials object that can be used with the Calendar API.
    """
    creds = Credentials(
        token=record.get("access_token"),
        refresh_token=record.get("refresh_token"),
        token_uri=GOOGLE_TOKEN_URI,
        client_id=_oauth_setting("GOOGLE_CLIENT_ID"),
        client_secret=_oauth_setting("GOOGLE_CLIENT_SECRET"),
        scopes=_oauth_setting("GOOGLE_SCOPES"),
    )
    expiry = _parse_expiry(record.get("token_expiry"))
    if expiry:
        creds.expiry = expiry
    return creds


def refresh_credentials(creds: Credentials) -> Optional[TokenRefresh]:
    """
    Refresh an expired access token.

    Returns the new token material, or None when no refresh was needed. Storing
    it is the caller's job (see persist_token_refresh).
    """
    if not (creds.expired and creds.refresh_token):
        return None
    creds.refresh(Request())
    return TokenRefresh(
        access_token=creds.token or "",
        refresh_token=creds.refresh_token or "",
        token_expiry=creds.expiry.isoformat() if creds.expiry else None,
    )


def persist_token_refresh(user_id: int, refresh: TokenRefresh) -> None:
    upsert_credentials(
        user_id=user_id,
        access_token=refresh.access_token,
        refresh_token=refresh.refresh_token,
        token_expiry=refresh.token_expiry,
    )
    logger.info("Persisted refreshed Google token for user %s", user_id)


def build_calendar_service(record: Dict[str, Any]) -> Tuple[Any, Optional[TokenRefresh]]:
    """
    Return a Calendar API service for a credential record plus any token refresh.

    Nothing is written here; the refresh (if any) is handed back to the caller.
    """
    creds = build_credentials(record)
    refresh = refresh_credentials(creds)
    service = build("calendar", "v3", credentials=creds, cache_discovery=False)
    return service, refresh


def _event_time(value: Any) -> Dict[str, str]:
    return {"dateTime": to_storage(value), "timeZone": "UTC"}


def event_body_from_row(event: Dict[str, Any]) -> Dict[str, Any]:
    """Translate a stored event row into a Calendar API event resource."""
    attendees = []
    for attendee in event.get("attendees") or []:
        if isinstance(attendee, dict) and attendee.get("email"):
            attendees.append({"email": attendee["email"]})
        elif isinstance(attendee, str) and attendee:
            attendees.append({"email": attendee})
    body: Dict[str, Any] = {
        "summary": event.get("title") or "Untitled Event",
        "description": event.get("description") or "",
        "start": _event_time(event["start_time"]),
        "end": _event_time(event["end_time"]),
        "attendees": attendees,
    }
    if event.get("location"):
        body["location"] = event["location"]
    return body


class GoogleCalendarProvider:
    """
    Calendar API calls for one user.

    The API service is built lazily on first use. A missing credential record
    raises CalendarAuthError, which the retry executor treats as non-retryable.
    """

    provider_name = "google"

    def __init__(self, user_id: int):
        self.user_id = user_id
        self._service = None

    @property
    def service(self):
        if self._service is None:
            record = get_credentials_for_user(self.user_id)
            if not record or not record.get("access_token"):
                raise CalendarAuthError(f"No Google credentials stored for user {self.user_id}")
            service, refresh = build_calendar_service(record)
            if refresh is not None:
                persist_token_refresh(self.user_id, refresh)
            self._service = service
        return self._service

    def _context(self, **extra: Any) -> Dict[str, Any]:
        return {"user_id": self.user_id, **extra}

    # ------------------------------------------------------------------
    # Calendars
    # ------------------------------------------------------------------

    def fetch_user_calendars(self, fallback: bool = True) -> List[Dict[str, Any]]:
        """List the user's calendars in a provider-neutral shape."""

        def _list() -> List[Dict[str, Any]]:
            calendars: List[Dict[str, Any]] = []
            page_token = None
            while True:
                response = self.service.calendarList().list(pageToken=page_token).execute()
                for item in response.get("items", []):
                    calendars.append({
                        "id": item.get("id"),
                        "name": item.get("summary") or item.get("id"),
                        "primary": bool(item.get("primary", False)),
                        "selected": bool(item.get("selected", True)),
                        "time_zone": item.get("timeZone"),
                        "access_role": item.get("accessRole"),
                        "background_color": item.get("backgroundColor"),
                        "foreground_color": item.get("foregroundColor"),
                    })
                page_token = response.get("nextPageToken")
                if not page_token:
                    return calendars

        try:
            return execute_with_retry(_list, "fetch_calendars", self._context())
        except Exception:
            if not fallback:
                raise
            logger.warning("Using fallback calendar list for user %s", self.user_id)
            return create_fallback_response("fetch_calendars")

    # ------------------------------------------------------------------
    # Events
    # ------------------------------------------------------------------

    def fetch_calendar_events(
        self,
        calendar_id: str,
        time_min: Any,
        time_max: Any,
        max_results: int = 250,
        fallback: bool = True,
    ) -> List[Dict[str, Any]]:
        """Return raw Calendar API events overlapping [time_min, time_max)."""

        def _list() -> List[Dict[str, Any]]:
            events: List[Dict[str, Any]] = []
            page_token = None
            while True:
                response = (
                    self.service.events()
                    .list(
                        calendarId=calendar_id,
                        timeMin=to_storage(time_min),
                        timeMax=to_storage(time_max),
                        maxResults=min(max_results, MAX_PAGE_SIZE),
                        singleEvents=True,
                        orderBy="startTime",
                        pageToken=page_token,
                    )
                    .execute()
                )
                events.extend(response.get("items", []))
                page_token = response.get("nextPageToken")
                if not page_token:
                    return events

        try:
            return execute_with_retry(_list, "fetch_events", self._context(calendar_id=calendar_id))
        except Exception:
            if not fallback:
                raise
            logger.warning("Using fallback event list for calendar %s", calendar_id)
            return create_fallback_response("fetch_events")

    def create_event(self, calendar_id: str, body: Dict[str, Any]) -> Dict[str, Any]:
        return execute_with_retry(
            lambda: self.service.events().insert(calendarId=calendar_id, body=body).execute(),
            "create_event",
            self._context(calendar_id=calendar_id),
        )

    def update_event(self, calendar_id: str, event_id: str, body: Dict[str, Any]) -> Dict[str, Any]:
        return execute_with_retry(
            lambda: self.service.events()
            .patch(calendarId=calendar_id, eventId=event_id, body=body)
            .execute(),
            "update_event",
            self._context(calendar_id=calendar_id, event_id=event_id),
        )
