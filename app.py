"""
Scheduling dashboard Flask application entrypoint.

This is the main Flask application file that sets up all routes, handles Google OAuth
authentication, and provides the JSON API for conflict checks, meeting suggestions,
auto-scheduling and Google Calendar sync.

Run locally with `python app.py`; under Gunicorn use `gunicorn "app:create_app()"`.
"""
from __future__ import annotations

import logging
import os
from typing import Any, Dict, Optional

from dotenv import load_dotenv
from flask import Flask, current_app, jsonify, redirect, request, session
from flask_cors import CORS

from config import Config, apply_production_settings, is_production
from models import (
    ensure_tables,
    fetch_calendar_summary,
    get_credentials_for_user,
    get_or_create_user,
    init_app as init_models,
    upsert_credentials,
)
from services.calendar_client import GoogleCalendarProvider
from services.calendar_errors import create_fallback_response
from services.conflict_detector import ConflictDetector
from services.google_auth import authorization_url, fetch_credentials, fetch_user_profile
from services.preferences import get_user_scheduling_preferences
from services.scheduling_engine import (
    MeetingRequest,
    auto_schedule_meeting,
    find_optimal_meeting_times,
    generate_available_slots,
)
from services.sync_service import CalendarSyncService, SyncOptions
from services.time_utils import parse_timestamp

load_dotenv()

if not is_production():
    # Allow OAuth over plain HTTP on localhost
    os.environ.setdefault("OAUTHLIB_INSECURE_TRANSPORT", "1")

logger = logging.getLogger(__name__)

SCHEDULE_ACTIONS = ("suggest", "auto-schedule", "check-conflicts")


def _validate_required_env_vars() -> None:
    """
    Check that the secrets needed for Google login are set.

    Without these, OAuth won't work and we can't reach Google Calendar.
    """
    redirect_uri = os.getenv("GOOGLE_REDIRECT_URI")
    # Common mistake: setting redirect URI to frontend URL instead of backend callback
    if redirect_uri and redirect_uri == "http://localhost:5173":
        raise RuntimeError(
            "GOOGLE_REDIRECT_URI is incorrectly set to the frontend URL. "
            "It must be the backend callback URL: http://localhost:5001/oauth2callback"
        )

    required_vars = {
        "FLASK_SECRET_KEY": os.getenv("FLASK_SECRET_KEY") or os.getenv("SECRET_KEY"),
        "GOOGLE_CLIENT_ID": os.getenv("GOOGLE_CLIENT_ID"),
        "GOOGLE_CLIENT_SECRET": os.getenv("GOOGLE_CLIENT_SECRET"),
    }
    missing = [var for var, value in required_vars.items() if not value]
    if missing:
        raise ValueError(
            f"Missing required environment variables: {', '.join(missing)}. "
            f"Please set these in your .env file or environment."
        )


def _sync_service(user_id: int) -> CalendarSyncService:
    factory = current_app.config.get("CALENDAR_PROVIDER_FACTORY") or GoogleCalendarProvider
    return CalendarSyncService(user_id, provider=factory(user_id))


def _serialize_auto_schedule(outcome: Dict[str, Any]) -> Dict[str, Any]:
    body: Dict[str, Any] = {"success": outcome["success"]}
    if outcome.get("suggested_slot") is not None:
        body["suggested_slot"] = outcome["suggested_slot"].to_dict()
    if outcome.get("event_id") is not None:
        body["event_id"] = outcome["event_id"]
    if outcome.get("conflicts") is not None:
        body["conflicts"] = [conflict.to_dict() for conflict in outcome["conflicts"]]
    return body


def create_app(config_object: Optional[Any] = None) -> Flask:
    """
    Create and configure the Flask application.

    `config_object` defaults to Config; tests pass TestConfig plus overrides.
    """
    if config_object is None:
        try:
            _validate_required_env_vars()
        except ValueError as e:
            logger.error(str(e))
            # In production, we must have all variables - fail fast
            if is_production():
                raise

    app = Flask(__name__, static_folder=None)
    app.config.from_object(config_object or Config)
    if is_production() and not app.config.get("TESTING"):
        apply_production_settings(app)

    # The web client runs on a different port (5173) than the backend (5001) in development
    frontend_url = os.getenv("FRONTEND_REDIRECT_URL", "http://localhost:5173")
    cors_origins = [
        "http://localhost:5173",
        "http://localhost:3000",
        "http://127.0.0.1:5173",
    ]
    if frontend_url not in cors_origins and frontend_url.startswith("https://"):
        cors_origins.append(frontend_url)
    CORS(app, supports_credentials=True, origins=cors_origins)

    # Initialize database connection and create tables if they don't exist
    init_models(app)
    with app.app_context():
        ensure_tables()

    def _session_user() -> Optional[int]:
        return session.get("user_id")

    def _unauthenticated():
        return jsonify({"error": "Not authenticated"}), 401

    @app.route("/api/health")
    def health():
        return jsonify({"status": "ok"})

    @app.route("/login")
    def login():
        """
        Kick off the Google OAuth flow.

        Generates the authorization URL (calendar scope, offline access), saves the
        state token in the session, and redirects the user to Google.
        """
        try:
            auth_url, state = authorization_url()
        except Exception as e:
            logger.exception("Error in login route: %s", e)
            return (
                f"<h1>Login Error</h1><p>Failed to start OAuth flow: {str(e)}</p>",
                500,
            )
        # Saved so /oauth2callback can prove the redirect came from our own request
        session.permanent = True
        session["oauth_state"] = state
        session.modified = True
        logger.info("OAuth flow started: state=%s (first 8 chars)", state[:8] if state else None)
        return redirect(auth_url)

    @app.route("/oauth2callback")
    def oauth2callback():
        """
        Handle Google's OAuth redirect and persist credentials.

        Validates the state token, exchanges the code for tokens, loads the
        profile, stores the credentials and logs the user in.
        """
        # Empty hits come from reloads/prefetches; answering them avoids loops
        if not request.args:
            current_app.logger.info("Ignoring empty /oauth2callback hit")
            return "", 204

        error = request.args.get("error")
        if error:
            error_description = request.args.get("error_description", "OAuth authentication failed")
            logger.warning("OAuth error from Google: %s - %s", error, error_description)
            return (
                f"<h1>OAuth Error</h1><p>{error_description}</p><p>Please try logging in again.</p>",
                400,
            )

        received_state = request.args.get("state")
        stored_state = session.get("oauth_state")
        if not received_state or not stored_state or received_state != stored_state:
            logger.warning("OAuth state mismatch: received=%s, stored=%s", received_state, stored_state)
            return (
                "<h1>Invalid OAuth State</h1><p>The OAuth state parameter does not match. "
                "This may happen if the session expired or you're using multiple browser tabs. "
                "Please try logging in again.</p>",
                400,
            )

        try:
            credentials = fetch_credentials(authorization_response=request.url, state=received_state)
            profile = fetch_user_profile(credentials)
        except Exception as e:
            logger.exception("OAuth authentication failed: %s", e)
            return (
                f"<h1>Authentication Failed</h1><p>Failed to exchange authorization code: {str(e)}</p>"
                "<p>Please try logging in again.</p>",
                400,
            )

        user = get_or_create_user(
            profile.get("google_user_id", "missing-id"),
            profile.get("email", "unknown@example.com"),
        )
        # Google only sends a refresh token on first consent; keep the old one otherwise
        existing = get_credentials_for_user(user["id"])
        refresh_token = credentials.refresh_token or (existing.get("refresh_token") if existing else None)
        upsert_credentials(
            user_id=user["id"],
            access_token=credentials.token or "",
            refresh_token=refresh_token or "",
            token_expiry=credentials.expiry.isoformat() if credentials.expiry else None,
        )

        session.pop("oauth_state", None)
        session["user_id"] = user["id"]
        session["user_email"] = user["email"]
        session.modified = True

        frontend_redirect = os.getenv("FRONTEND_REDIRECT_URL", "http://localhost:5173")
        logger.info("OAuth login successful for user %s, redirecting to frontend", user["email"])
        return redirect(frontend_redirect)

    @app.route("/logout")
    def logout():
        session.clear()
        return redirect(os.getenv("FRONTEND_REDIRECT_URL", "http://localhost:5173"))

    @app.route("/api/calendar/schedule", methods=["POST"])
    def api_schedule():
        """
        Scheduling actions for the calendar page.

        Body: {"action": "suggest" | "auto-schedule" | "check-conflicts", ...}
        """
        user_id = _session_user()
        if not user_id:
            return _unauthenticated()

        payload = request.get_json(silent=True) or {}
        action = payload.get("action")
        if action not in SCHEDULE_ACTIONS:
            return jsonify({"error": f"action must be one of: {', '.join(SCHEDULE_ACTIONS)}"}), 400

        if action == "check-conflicts":
            try:
                start = parse_timestamp(payload.get("start"))
                end = parse_timestamp(payload.get("end"))
            except ValueError:
                return jsonify({"error": "start and end must be ISO-8601 timestamps"}), 400
            if start is None or end is None:
                return jsonify({"error": "start and end are required"}), 400
            if end <= start:
                return jsonify({"error": "end must be after start"}), 400
            exclude = payload.get("excludeEventId")
            result = ConflictDetector().check_conflicts(
                user_id,
                start,
                end,
                exclude_id=int(exclude) if exclude not in (None, "") else None,
                include_alternatives=bool(payload.get("includeAlternatives")),
            )
            return jsonify(result.to_dict())

        try:
            meeting = MeetingRequest.from_payload(payload)
            search_days = int(payload.get("searchDays") or current_app.config.get("SCHEDULING_SEARCH_DAYS", 14))
        except ValueError as e:
            return jsonify({"error": str(e)}), 400

        if action == "suggest":
            suggestions = find_optimal_meeting_times(user_id, meeting, search_days=search_days)
            return jsonify({"suggestions": [slot.to_dict() for slot in suggestions]})

        outcome = auto_schedule_meeting(user_id, meeting, search_days=search_days)
        return jsonify(_serialize_auto_schedule(outcome))

    @app.route("/api/calendar/availability")
    def api_availability():
        """Availability grid between `start` and `end` in `slot_duration`-minute steps."""
        user_id = _session_user()
        if not user_id:
            return _unauthenticated()
        try:
            start = parse_timestamp(request.args.get("start"))
            end = parse_timestamp(request.args.get("end"))
            slot_duration = int(request.args.get("slot_duration", 30))
            if start is None or end is None:
                raise ValueError("start and end are required")
            if end <= start:
                raise ValueError("end must be after start")
            slots = generate_available_slots(user_id, start, end, slot_duration)
        except ValueError as e:
            return jsonify({"error": str(e)}), 400
        except Exception:
            logger.exception("Availability lookup failed for user %s", user_id)
            return jsonify(create_fallback_response("get_availability")), 503

        prefs = get_user_scheduling_preferences(user_id)
        return jsonify({
            "available": any(slot.available for slot in slots),
            "preferences": prefs.to_dict(),
            "slots": [slot.to_dict() for slot in slots],
        })

    @app.route("/api/calendar/sync", methods=["POST"])
    def api_calendar_sync():
        """Run a Google Calendar sync now. Partial failures come back in `errors`."""
        user_id = _session_user()
        if not user_id:
            return _unauthenticated()
        try:
            options = SyncOptions.from_payload(request.get_json(silent=True) or {}, current_app.config)
        except ValueError as e:
            return jsonify({"error": str(e)}), 400
        result = _sync_service(user_id).sync_calendars(options)
        return jsonify(result.to_dict())

    @app.route("/api/calendar/sync/status")
    def api_calendar_sync_status():
        user_id = _session_user()
        if not user_id:
            return _unauthenticated()
        status = _sync_service(user_id).get_sync_status()
        status["calendars"] = fetch_calendar_summary(user_id)
        return jsonify(status)

    @app.route("/api/calendar/events/<int:event_id>/push", methods=["POST"])
    def api_push_event(event_id: int):
        """Push one stored event to Google Calendar."""
        user_id = _session_user()
        if not user_id:
            return _unauthenticated()
        outcome = _sync_service(user_id).sync_event_to_google(event_id)
        if outcome["success"]:
            return jsonify(outcome)
        status = 404 if outcome["error"] == "Event not found" else 502 if "error_code" in outcome else 400
        return jsonify(outcome), status

    return app


if __name__ == "__main__":
    # Use 5001 instead of 5000 to avoid conflict with macOS AirPlay Receiver
    port = int(os.getenv("PORT", "5001"))
    create_app().run(host="0.0.0.0", port=port, debug=os.getenv("FLASK_DEBUG", "False").lower() == "true")
