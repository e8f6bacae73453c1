"""
Application configuration for the scheduling dashboard.

This file handles all configuration settings for the Flask app, including:
- Database location
- OAuth credentials (Google Client ID/Secret) and Calendar scopes
- Session cookie settings
- Calendar sync and scheduling search defaults
- Environment detection (development vs production)
"""
from __future__ import annotations

import os
import secrets
import warnings
from pathlib import Path

# Get the base directory of the project (where this file is located)
BASE_DIR = Path(__file__).resolve().parent
# SQLite database file path
DB_PATH = BASE_DIR / "scheduler.sqlite3"


def in_railway() -> bool:
    """
    Check if running on Railway platform.

    Railway sets RAILWAY_PUBLIC_DOMAIN when the app is deployed there.
    """
    return bool(os.getenv("RAILWAY_PUBLIC_DOMAIN"))


def is_production() -> bool:
    """Production means running on Railway or FLASK_ENV=production."""
    return in_railway() or os.getenv("FLASK_ENV") == "production"


def _env_int(name: str, default: int) -> int:
    """Read a positive integer from the environment, warning on junk values."""
    raw = os.getenv(name)
    if not raw:
        return default
    try:
        value = int(raw)
    except ValueError:
        warnings.warn(f"{name}={raw!r} is not an integer; using {default}.", UserWarning)
        return default
    if value <= 0:
        warnings.warn(f"{name} must be positive; using {default}.", UserWarning)
        return default
    return value


def _get_secret_key() -> str:
    """
    Get SECRET_KEY from environment.

    The secret key signs the session cookie that carries the OAuth state and the
    logged-in user id. In development we can auto-generate one.
    """
    key = os.getenv("FLASK_SECRET_KEY") or os.getenv("SECRET_KEY")

    if not key:
        # Development: auto-generate a temporary key
        # Sessions won't persist across restarts
        key = secrets.token_urlsafe(32)
        warnings.warn(
            f"FLASK_SECRET_KEY not set. Using auto-generated dev key: {key[:8]}... "
            "Set FLASK_SECRET_KEY in .env for consistent sessions.",
            UserWarning,
        )
    elif key == "dev-secret-key":
        warnings.warn(
            "FLASK_SECRET_KEY is set to default 'dev-secret-key'. "
            "Use a secure random key for production.",
            UserWarning,
        )

    return key


def _get_google_redirect_uri() -> str:
    """
    Get GOOGLE_REDIRECT_URI from env or construct from Railway domain.

    Priority:
    1. GOOGLE_REDIRECT_URI environment variable (if set)
    2. Construct from Railway domain (if on Railway)
    3. Development fallback (localhost:5001)
    """
    redirect_uri = os.getenv("GOOGLE_REDIRECT_URI")

    if redirect_uri:
        return redirect_uri

    railway_domain = os.getenv("RAILWAY_PUBLIC_DOMAIN")
    if railway_domain:
        return f"https://{railway_domain}/oauth2callback"

    return "http://localhost:5001/oauth2callback"


def _optional_env_var(name: str) -> str:
    """Read a credential that is only mandatory in production."""
    value = os.getenv(name)
    if not value:
        warnings.warn(f"{name} not set. Google Calendar features will not work.", UserWarning)
    return value or ""


class BaseConfig:
    """
    Base configuration shared across environments.

    Environment-specific configs inherit from this.
    """

    # SQLite file used by models.db
    DATABASE_PATH = os.getenv("DATABASE_PATH") or str(DB_PATH)

    # Session cookie configuration
    # SameSite=None is required for the OAuth redirect from Google back to our callback
    # Secure=True is required when SameSite=None (enforced by browsers)
    SESSION_COOKIE_SECURE = is_production()
    SESSION_COOKIE_HTTPONLY = True
    SESSION_COOKIE_SAMESITE = "None" if is_production() else "Lax"
    SESSION_COOKIE_DOMAIN = None

    # OAuth scopes - identity plus full calendar access (read + write events)
    GOOGLE_SCOPES = [
        "openid",
        "https://www.googleapis.com/auth/userinfo.email",
        "https://www.googleapis.com/auth/userinfo.profile",
        "https://www.googleapis.com/auth/calendar",
    ]

    SECRET_KEY = _get_secret_key()

    # Google OAuth credentials - get these from Google Cloud Console
    GOOGLE_CLIENT_ID = _optional_env_var("GOOGLE_CLIENT_ID")
    GOOGLE_CLIENT_SECRET = _optional_env_var("GOOGLE_CLIENT_SECRET")
    GOOGLE_REDIRECT_URI = _get_google_redirect_uri()

    # Calendar sync window and page size
    CALENDAR_SYNC_DAYS_BACK = _env_int("CALENDAR_SYNC_DAYS_BACK", 7)
    CALENDAR_SYNC_DAYS_AHEAD = _env_int("CALENDAR_SYNC_DAYS_AHEAD", 60)
    CALENDAR_SYNC_BATCH_SIZE = _env_int("CALENDAR_SYNC_BATCH_SIZE", 50)

    # How far ahead the meeting finder looks by default
    SCHEDULING_SEARCH_DAYS = _env_int("SCHEDULING_SEARCH_DAYS", 14)

    # Callable user_id -> calendar provider; None means GoogleCalendarProvider
    CALENDAR_PROVIDER_FACTORY = None

    RAILWAY_PUBLIC_DOMAIN = os.getenv("RAILWAY_PUBLIC_DOMAIN", "")


def _get_secret_key_prod() -> str:
    """Require SECRET_KEY in production."""
    key = os.getenv("FLASK_SECRET_KEY") or os.getenv("SECRET_KEY")
    if not key or key == "dev-secret-key":
        raise RuntimeError(
            "FLASK_SECRET_KEY missing or invalid in production. "
            "Set a secure random key in Railway → Service → Variables."
        )
    return key


def _get_google_redirect_uri_prod() -> str:
    """Require GOOGLE_REDIRECT_URI in production."""
    redirect_uri = os.getenv("GOOGLE_REDIRECT_URI")
    railway_domain = os.getenv("RAILWAY_PUBLIC_DOMAIN")

    if redirect_uri:
        return redirect_uri

    if railway_domain:
        return f"https://{railway_domain}/oauth2callback"

    raise RuntimeError(
        "GOOGLE_REDIRECT_URI missing. Set GOOGLE_REDIRECT_URI or RAILWAY_PUBLIC_DOMAIN "
        "in Railway → Service → Variables."
    )


def apply_production_settings(app) -> None:
    """
    Enforce the strict production rules on an app's config.

    Called from create_app() rather than at import time, so importing this module
    never fails on a developer machine.
    """
    app.config["SECRET_KEY"] = _get_secret_key_prod()
    app.config["GOOGLE_REDIRECT_URI"] = _get_google_redirect_uri_prod()
    for name in ("GOOGLE_CLIENT_ID", "GOOGLE_CLIENT_SECRET"):
        if not app.config.get(name):
            raise RuntimeError(
                f"{name} missing. Set this in Railway → Service → Variables."
            )


class DevelopmentConfig(BaseConfig):
    """Development configuration; allows localhost defaults and dev keys."""


class TestConfig(BaseConfig):
    """Configuration overrides used for tests."""

    TESTING = True
    SECRET_KEY = "test-secret-key"
    GOOGLE_CLIENT_ID = "test-client-id"
    GOOGLE_CLIENT_SECRET = "test-client-secret"
    GOOGLE_REDIRECT_URI = "http://localhost:5001/oauth2callback"


# Default to BaseConfig which auto-detects environment
Config = BaseConfig
