"""
Google OAuth helpers.

This module handles the login half of the Google integration:
- Creating OAuth flows with the Calendar scopes from config
- Generating authorization URLs
- Exchanging authorization codes for access tokens
- Fetching user profiles
"""
from __future__ import annotations

import os
from typing import Any, Dict, List, Optional, Tuple

from flask import current_app
from google_auth_oauthlib.flow import Flow
from googleapiclient.discovery import build

from config import Config

# Google OAuth endpoints
GOOGLE_TOKEN_URI = "https://oauth2.googleapis.com/token"  # Where to exchange codes for tokens
GOOGLE_AUTH_URI = "https://accounts.google.com/o/oauth2/auth"  # Google's login page

# The web client's dev server; Google must never redirect there
FRONTEND_DEV_URL = "http://localhost:5173"


def _setting(name: str, default: Any = None) -> Any:
    """Read from the running app's config, then the environment, then Config."""
    try:
        value = current_app.config.get(name)
    except RuntimeError:
        # Not in Flask app context
        value = None
    if value:
        return value
    return os.getenv(name) or getattr(Config, name, default) or default


def _get_redirect_uri() -> str:
    """
    Get the OAuth redirect URI.

    The redirect URI is where Google sends users after they log in. It MUST be the
    backend callback, because the backend handles OAuth.
    """
    redirect_uri = _setting("GOOGLE_REDIRECT_URI")
    if not redirect_uri:
        raise RuntimeError(
            "GOOGLE_REDIRECT_URI is not set. OAuth cannot start. "
            "Set GOOGLE_REDIRECT_URI to http://localhost:5001/oauth2callback (local)."
        )
    if redirect_uri == FRONTEND_DEV_URL or redirect_uri.startswith(FRONTEND_DEV_URL + "/"):
        raise RuntimeError(
            "GOOGLE_REDIRECT_URI cannot be the frontend URL (localhost:5173). "
            "It must be the backend callback URL: http://localhost:5001/oauth2callback"
        )
    return redirect_uri


def _scopes() -> List[str]:
    return list(_setting("GOOGLE_SCOPES", Config.GOOGLE_SCOPES))


def _create_oauth_flow(state: Optional[str] = None) -> Flow:
    redirect_uri = _get_redirect_uri()
    client_config = {
        "web": {
            "client_id": _setting("GOOGLE_CLIENT_ID"),
            "client_secret": _setting("GOOGLE_CLIENT_SECRET"),
            "redirect_uris": [redirect_uri],
            "auth_uri": GOOGLE_AUTH_URI,
            "token_uri": GOOGLE_TOKEN_URI,
        }
    }
    flow = Flow.from_client_config(client_config, scopes=_scopes(), state=state)
    flow.redirect_uri = redirect_uri
    return flow


def authorization_url() -> Tuple[str, str]:
    """Return a Google OAuth authorization URL + state."""
    flow = _create_oauth_flow()
    url, state = flow.authorization_url(
        access_type="offline",  # Get a refresh token so calendar sync keeps working
        include_granted_scopes="true",
        prompt="consent",  # Always show consent screen (ensures we get refresh token)
    )
    return url, state


def fetch_credentials(authorization_response: str, state: Optional[str]):
    """
    Exchange the auth code for credentials using the provided state.

    The access token lets us call the Calendar API; the refresh token lets us get
    new access tokens when they expire.
    """
    flow = _create_oauth_flow(state)
    flow.fetch_token(authorization_response=authorization_response)
    return flow.credentials


def fetch_user_profile(credentials) -> Dict[str, str]:
    """Retrieve the user's Google id, email and name via the OAuth2 API."""
    oauth_service = build("oauth2", "v2", credentials=credentials, cache_discovery=False)
    user_info = oauth_service.userinfo().get().execute()
    return {
        "google_user_id": user_info.get("id"),
        "email": user_info.get("email"),
        "name": user_info.get("name"),
    }
