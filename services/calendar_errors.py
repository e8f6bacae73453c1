"""
Calendar error classification and retry handling.

This module decides what to do when a Google Calendar call or a database call fails:
- Classifying errors into codes with retry hints (retryable? wait how long?)
- Running operations under a bounded retry policy with exponential backoff
- Writing failures to the audit log (best effort - never raises)
- Mapping error codes to messages we can show in the UI
- Safe fallback values so a provider outage degrades the dashboard instead of breaking it
"""
from __future__ import annotations

import json
import logging
import random
import socket
import sqlite3
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional, TypeVar

import httplib2
from google.auth.exceptions import RefreshError, TransportError
from googleapiclient.errors import HttpError

from models import RecordNotFoundError, insert_audit_log

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Codes that mean "the calendar connection itself is unhealthy"
CONNECTION_HEALTH_CODES = {401, 403, 429, 503, 504}

# Codes where retrying on our own will never help
NO_AUTO_RECOVERY_CODES = {401, 403, 404}

USER_FRIENDLY_MESSAGES = {
    401: "Calendar connection needs to be refreshed. Please reconnect your Google account.",
    403: "Calendar permissions are insufficient. Please check your Google Calendar access.",
    404: "Calendar or event not found. It may have been deleted.",
    409: "Calendar conflict detected. Please choose a different time.",
    429: "Calendar API rate limit reached. Please try again in a few minutes.",
    503: "Calendar service is temporarily unavailable. Please try again later.",
    504: "Calendar service is temporarily unavailable. Please try again later.",
}
DEFAULT_USER_MESSAGE = "Calendar operation failed. Please try again."


class CalendarAuthError(Exception):
    """The user has no usable Google credentials (missing, revoked, or unrefreshable)."""


@dataclass
class ClassifiedError:
    """An error reduced to the fields the retry policy and the UI care about."""
    code: int
    message: str
    retryable: bool
    retry_after_ms: Optional[int] = None
    details: Any = None
    operation: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "code": self.code,
            "message": self.message,
            "retryable": self.retryable,
            "retry_after_ms": self.retry_after_ms,
            "operation": self.operation,
        }


@dataclass
class RetryConfig:
    max_retries: int = 3
    base_delay_ms: int = 1000
    max_delay_ms: int = 30000
    backoff_multiplier: float = 2


DEFAULT_RETRY_CONFIG = RetryConfig()


# ---------------------------------------------------------------------------
# Classification
# ---------------------------------------------------------------------------

def _http_error_payload(error: HttpError) -> Dict[str, Any]:
    """Decode the JSON body Google attaches to an HttpError (empty dict if none)."""
    content = getattr(error, "content", b"") or b""
    if isinstance(content, bytes):
        content = content.decode("utf-8", errors="replace")
    try:
        payload = json.loads(content)
    except (json.JSONDecodeError, TypeError):
        return {}
    return payload if isinstance(payload, dict) else {}


def _http_error_message(error: HttpError, payload: Dict[str, Any]) -> str:
    err = payload.get("error")
    if isinstance(err, dict) and err.get("message"):
        return str(err["message"])
    if isinstance(err, str):
        return err
    reason = getattr(error, "reason", None)
    return str(reason or error)


def _retry_after_ms(error: HttpError, default_ms: int) -> int:
    """Read the Retry-After header (seconds) off the response, in milliseconds."""
    headers = getattr(error, "resp", None) or {}
    raw = None
    try:
        raw = headers.get("retry-after") or headers.get("Retry-After")
    except AttributeError:
        raw = None
    if raw is None:
        return default_ms
    try:
        return int(float(raw) * 1000)
    except (TypeError, ValueError):
        return default_ms


def _classify_http_error(error: HttpError, operation: str) -> ClassifiedError:
    status = int(getattr(error.resp, "status", 0) or 0)
    payload = _http_error_payload(error)
    message = _http_error_message(error, payload)
    details = payload.get("error") if payload else None

    if status == 400:
        return ClassifiedError(400, f"Bad request: {message}", False, details=details, operation=operation)
    if status == 401:
        # A refreshed token may fix this on the next attempt
        return ClassifiedError(401, "Authentication failed - token may be expired", True,
                               details=details, operation=operation)
    if status == 403:
        lowered = message.lower()
        if "quota" in lowered or "rate" in lowered:
            return ClassifiedError(429, "Rate limit exceeded", True,
                                   retry_after_ms=_retry_after_ms(error, 60000),
                                   details=details, operation=operation)
        return ClassifiedError(403, "Insufficient permissions for calendar access", False,
                               details=details, operation=operation)
    if status == 404:
        return ClassifiedError(404, "Calendar or event not found", False, details=details, operation=operation)
    if status == 409:
        return ClassifiedError(409, "Calendar conflict - event may have been modified", True,
                               retry_after_ms=5000, details=details, operation=operation)
    if status == 429:
        return ClassifiedError(429, "Rate limit exceeded", True,
                               retry_after_ms=_retry_after_ms(error, 60000),
                               details=details, operation=operation)
    if status in (500, 502, 503, 504):
        return ClassifiedError(status, "Calendar service temporarily unavailable", True,
                               retry_after_ms=10000, details=details, operation=operation)
    return ClassifiedError(status or 500, message or "Unknown calendar API error", status >= 500,
                           details=details, operation=operation)


def _is_network_error(error: BaseException) -> bool:
    # httplib2 (the API client transport) reports DNS failures as ServerNotFoundError;
    # google-auth wraps connection failures during a token refresh in TransportError
    return isinstance(
        error,
        (ConnectionError, socket.gaierror, socket.herror, httplib2.ServerNotFoundError, TransportError),
    )


def _is_timeout(error: BaseException) -> bool:
    return isinstance(error, TimeoutError) or "timeout" in str(error).lower()


def _is_auth_error(error: BaseException) -> bool:
    if isinstance(error, (CalendarAuthError, RefreshError)):
        return True
    lowered = str(error).lower()
    return "invalid_grant" in lowered or "unauthorized" in lowered


def classify_error(error: BaseException, operation: str = "") -> ClassifiedError:
    """
    Reduce any exception to a `ClassifiedError`.

    Checked in order: Google HTTP errors, network errors, timeouts, auth/grant
    errors, storage errors, then everything else (non-retryable 500).
    """
    if isinstance(error, HttpError):
        return _classify_http_error(error, operation)

    if _is_network_error(error):
        return ClassifiedError(503, "Calendar service unavailable", True, retry_after_ms=5000,
                               details=str(error), operation=operation)

    if _is_timeout(error):
        return ClassifiedError(408, "Calendar request timed out", True, retry_after_ms=3000,
                               details=str(error), operation=operation)

    if _is_auth_error(error):
        return ClassifiedError(401, "Calendar authorization revoked - please reconnect", False,
                               details=str(error), operation=operation)

    if isinstance(error, RecordNotFoundError):
        return ClassifiedError(500, f"Database error: {error}", False,
                               details={"table": error.table, "id": error.record_id}, operation=operation)

    if isinstance(error, sqlite3.Error):
        return ClassifiedError(500, f"Database error: {error}", True,
                               details=type(error).__name__, operation=operation)

    return ClassifiedError(500, str(error) or "Unknown error occurred", False,
                           details=type(error).__name__, operation=operation)


# ---------------------------------------------------------------------------
# Logging + retry
# ---------------------------------------------------------------------------

def handle_calendar_error(
    error: BaseException,
    operation: str,
    context: Optional[Dict[str, Any]] = None,
) -> ClassifiedError:
    """Classify an error, log it, and append an audit record. Never raises."""
    context = context or {}
    classified = classify_error(error, operation)
    logger.warning(
        "Calendar operation %s failed: code=%s retryable=%s message=%s",
        operation,
        classified.code,
        classified.retryable,
        classified.message,
    )
    try:
        insert_audit_log(
            action="calendar_api_error",
            user_id=context.get("user_id"),
            resource_type="calendar_integration",
            resource_id=context.get("calendar_id") or context.get("event_id"),
            details={
                "operation": operation,
                "error_code": classified.code,
                "error_message": classified.message,
                "retryable": classified.retryable,
                "retry_after": classified.retry_after_ms,
                "context": context,
                "raw_error": str(error),
            },
        )
    except Exception:
        # The audit log is best effort; losing a record must not mask the real error
        logger.exception("Failed to write calendar error to audit log")
    return classified


def calculate_delay(
    attempt: int,
    config: RetryConfig = DEFAULT_RETRY_CONFIG,
    retry_after_ms: Optional[int] = None,
) -> float:
    """Backoff delay in milliseconds for the given (0-based) attempt."""
    if retry_after_ms is not None:
        return float(min(retry_after_ms, config.max_delay_ms))
    exponential = config.base_delay_ms * (config.backoff_multiplier ** attempt)
    jitter = 0.5 + random.random() * 0.5
    return float(min(exponential * jitter, config.max_delay_ms))


def execute_with_retry(
    operation: Callable[[], T],
    operation_name: str,
    context: Optional[Dict[str, Any]] = None,
    config: Optional[RetryConfig] = None,
) -> T:
    """
    Run `operation` with up to `config.max_retries` retries.

    Non-retryable errors and the last failure are re-raised unchanged.
    """
    config = config or DEFAULT_RETRY_CONFIG
    last_error: Optional[BaseException] = None

    for attempt in range(config.max_retries + 1):
        try:
            result = operation()
            if attempt > 0:
                logger.info("%s succeeded on attempt %s", operation_name, attempt + 1)
            return result
        except Exception as e:
            last_error = e
            classified = handle_calendar_error(e, operation_name, {**(context or {}), "attempt": attempt + 1})

            if not classified.retryable or attempt == config.max_retries:
                raise

            delay_ms = calculate_delay(attempt, config, classified.retry_after_ms)
            logger.info(
                "Retrying %s in %.0fms (attempt %s/%s)",
                operation_name,
                delay_ms,
                attempt + 1,
                config.max_retries,
            )
            time.sleep(delay_ms / 1000)

    # Unreachable: the loop either returns or raises
    raise last_error  # type: ignore[misc]


# ---------------------------------------------------------------------------
# Caller-facing helpers
# ---------------------------------------------------------------------------

def _as_classified(error: Any) -> ClassifiedError:
    if isinstance(error, ClassifiedError):
        return error
    return classify_error(error)


def is_connection_health_issue(error: Any) -> bool:
    return _as_classified(error).code in CONNECTION_HEALTH_CODES


def get_user_friendly_message(error: Any) -> str:
    return USER_FRIENDLY_MESSAGES.get(_as_classified(error).code, DEFAULT_USER_MESSAGE)


def should_attempt_auto_recovery(error: Any) -> bool:
    classified = _as_classified(error)
    return classified.retryable and classified.code not in NO_AUTO_RECOVERY_CODES


def create_fallback_response(operation_name: str) -> Any:
    """A safe stand-in result for an operation whose provider call failed for good."""
    if operation_name in ("fetch_calendars", "fetch_events"):
        return []
    if operation_name == "get_availability":
        return {"available": False, "reason": "Calendar service unavailable"}
    if operation_name == "detect_conflicts":
        return {
            "has_conflicts": False,
            "conflicts": [],
            "warning": "Conflict detection unavailable",
        }
    return {"success": False, "error": "Calendar service unavailable"}
