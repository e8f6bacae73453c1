"""
SQLite helpers and schema definitions for the scheduling dashboard.

This module handles all database operations:
- Creating database tables
- Managing database connections
- CRUD operations for users, credentials, calendars, events, tasks, preferences
- Append-only audit logging

The scheduling engine and the sync service only read and write through the
functions here; they never issue SQL themselves.
"""
from __future__ import annotations

import json
import sqlite3
import time
from contextlib import contextmanager
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Iterable, Iterator, List, Optional

from flask import current_app, g

from config import DB_PATH


class EventStatus(str, Enum):
    """Lifecycle states of a stored calendar event."""
    CONFIRMED = "confirmed"
    PENDING = "pending"
    CANCELLED = "cancelled"
    REVIEW_NEEDED = "review_needed"  # Possibly deleted remotely; a human should look


class RecordNotFoundError(LookupError):
    """Raised when a row requested by primary key does not exist."""

    def __init__(self, table: str, record_id: Any) -> None:
        super().__init__(f"{table} row {record_id} not found")
        self.table = table
        self.record_id = record_id


# Key for storing database connection in Flask's g object
_CONNECTION_KEY = "scheduler_db_conn"

DDL_STATEMENTS = [
    """
    CREATE TABLE IF NOT EXISTS users (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        google_user_id TEXT UNIQUE NOT NULL,
        email TEXT UNIQUE NOT NULL,
        timezone TEXT,
        working_hours_start TEXT,
        working_hours_end TEXT,
        created_at TEXT DEFAULT CURRENT_TIMESTAMP
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS credentials (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        user_id INTEGER NOT NULL UNIQUE,
        access_token TEXT,
        refresh_token TEXT,
        token_expiry TEXT,
        created_at TEXT DEFAULT CURRENT_TIMESTAMP,
        FOREIGN KEY (user_id) REFERENCES users(id) ON DELETE CASCADE
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS calendars (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        user_id INTEGER NOT NULL,
        name TEXT,
        provider TEXT NOT NULL DEFAULT 'google',
        provider_calendar_id TEXT NOT NULL,
        is_primary INTEGER DEFAULT 0,
        sync_enabled INTEGER DEFAULT 1,
        settings TEXT,
        created_at TEXT,
        updated_at TEXT,
        UNIQUE (user_id, provider_calendar_id, provider),
        FOREIGN KEY (user_id) REFERENCES users(id) ON DELETE CASCADE
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS events (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        user_id INTEGER NOT NULL,
        calendar_id INTEGER,
        google_event_id TEXT,
        title TEXT,
        description TEXT,
        start_time TEXT NOT NULL,
        end_time TEXT NOT NULL,
        location TEXT,
        attendees TEXT,
        ai_generated INTEGER DEFAULT 0,
        confidence_score REAL,
        status TEXT DEFAULT 'pending',
        notes TEXT,
        google_data TEXT,
        created_at TEXT,
        updated_at TEXT,
        UNIQUE (user_id, google_event_id),
        FOREIGN KEY (user_id) REFERENCES users(id) ON DELETE CASCADE,
        FOREIGN KEY (calendar_id) REFERENCES calendars(id) ON DELETE SET NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS tasks (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        user_id INTEGER NOT NULL,
        title TEXT,
        status TEXT DEFAULT 'pending',
        priority TEXT DEFAULT 'medium',
        scheduled_start TEXT,
        scheduled_end TEXT,
        due_date TEXT,
        created_at TEXT,
        FOREIGN KEY (user_id) REFERENCES users(id) ON DELETE CASCADE
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS user_preferences (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        user_id INTEGER NOT NULL,
        preference_key TEXT NOT NULL,
        preference_value TEXT,
        updated_at TEXT,
        UNIQUE (user_id, preference_key),
        FOREIGN KEY (user_id) REFERENCES users(id) ON DELETE CASCADE
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS audit_logs (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        user_id INTEGER,
        action TEXT NOT NULL,
        resource_type TEXT,
        resource_id TEXT,
        details TEXT,
        created_at TEXT
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_events_user_start ON events(user_id, start_time)",
    "CREATE INDEX IF NOT EXISTS idx_events_calendar ON events(calendar_id)",
    "CREATE INDEX IF NOT EXISTS idx_tasks_user ON tasks(user_id, status)",
]

# Columns callers may change through update_event()
_EVENT_UPDATABLE = {
    "calendar_id",
    "google_event_id",
    "title",
    "description",
    "start_time",
    "end_time",
    "location",
    "attendees",
    "ai_generated",
    "confidence_score",
    "status",
    "notes",
    "google_data",
}
_EVENT_JSON_COLUMNS = ("attendees", "google_data")


def _now() -> str:
    # Imported lazily to keep models free of service imports at module load
    from services.time_utils import utcnow

    return utcnow().isoformat()


def _ts(value: Any) -> Optional[str]:
    """Normalise a timestamp-ish value to the stored UTC text form."""
    if value is None or value == "":
        return None
    from services.time_utils import to_storage

    return to_storage(value)


def _database_path() -> str:
    """Prefer the app's DATABASE_PATH; fall back to the module default."""
    try:
        configured = current_app.config.get("DATABASE_PATH")
    except RuntimeError:
        # Outside of an application context
        configured = None
    return str(configured or DB_PATH)


def _create_connection() -> sqlite3.Connection:
    """Create a new SQLite connection with proper settings for concurrency."""
    conn = sqlite3.connect(_database_path(), timeout=20.0)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys = ON;")
    # WAL allows multiple readers and one writer
    try:
        conn.execute("PRAGMA journal_mode = WAL;")
    except sqlite3.OperationalError:
        pass
    return conn


def get_connection() -> sqlite3.Connection:
    """
    Return a cached SQLite connection stored on the Flask `g` object.

    We cache the connection per request/app context so one scheduling or sync
    operation reuses a single connection.
    """
    try:
        conn = getattr(g, _CONNECTION_KEY, None)
    except RuntimeError:
        # No Flask application context (e.g., a script)
        return _create_connection()

    if conn is None:
        conn = _create_connection()
        setattr(g, _CONNECTION_KEY, conn)
    return conn


def close_connection(_: Optional[BaseException] = None) -> None:
    """Close the cached SQLite connection if it exists."""
    conn = g.pop(_CONNECTION_KEY, None)
    if conn is not None:
        conn.close()


def commit_with_retry(conn: sqlite3.Connection, max_retries: int = 3) -> None:
    """Commit, retrying while SQLite reports "database is locked" (one writer at a time)."""
    for attempt in range(max_retries):
        try:
            conn.commit()
            return
        except sqlite3.OperationalError as e:
            if "database is locked" not in str(e).lower() or attempt == max_retries - 1:
                raise
            # Wait 0.1s, 0.2s before the next attempt
            time.sleep(0.1 * (attempt + 1))


@contextmanager
def cursor() -> Iterator[sqlite3.Cursor]:
    """
    Context manager yielding a SQLite cursor with automatic commit.

    Commits when the block finishes and rolls back on error. A locked database
    at commit time is retried here; errors raised inside the block propagate
    unchanged so the caller's retry policy can classify them.

    Usage:
        with cursor() as cur:
            cur.execute("UPDATE events SET status = ? WHERE id = ?", (status, event_id))
    """
    conn = get_connection()
    cur = conn.cursor()
    try:
        yield cur
        commit_with_retry(conn)
    except Exception:
        conn.rollback()
        raise
    finally:
        cur.close()


def create_tables() -> None:
    """Create all tables defined in `DDL_STATEMENTS`. Safe to call repeatedly."""
    conn = get_connection()
    for statement in DDL_STATEMENTS:
        conn.execute(statement)
    conn.commit()


def ensure_tables() -> None:
    """Create tables immediately."""
    create_tables()


def init_app(app) -> None:
    """Register the teardown hook that closes the per-context connection."""

    @app.teardown_appcontext
    def teardown(exception):  # type: ignore[unused-ignore]
        close_connection(exception)


def _loads(payload: Optional[str], default: Any) -> Any:
    if not payload:
        return default
    try:
        return json.loads(payload)
    except json.JSONDecodeError:
        return default


def _event_from_row(row: sqlite3.Row) -> Dict[str, Any]:
    record = dict(row)
    record["attendees"] = _loads(record.get("attendees"), [])
    record["google_data"] = _loads(record.get("google_data"), {})
    record["ai_generated"] = bool(record.get("ai_generated"))
    return record


def _calendar_from_row(row: sqlite3.Row) -> Dict[str, Any]:
    record = dict(row)
    record["settings"] = _loads(record.get("settings"), {})
    record["is_primary"] = bool(record.get("is_primary"))
    record["sync_enabled"] = bool(record.get("sync_enabled"))
    return record


# ---------------------------------------------------------------------------
# User helpers
# ---------------------------------------------------------------------------

def create_user(
    google_user_id: str,
    email: str,
    timezone: Optional[str] = None,
    working_hours_start: Optional[str] = None,
    working_hours_end: Optional[str] = None,
) -> Dict[str, Any]:
    with cursor() as cur:
        cur.execute(
            """
            INSERT INTO users (
                google_user_id, email, timezone, working_hours_start, working_hours_end, created_at
            ) VALUES (?, ?, ?, ?, ?, ?)
            ON CONFLICT(google_user_id) DO UPDATE SET email=excluded.email
            """,
            (google_user_id, email, timezone, working_hours_start, working_hours_end, _now()),
        )
    return get_user_by_google_id(google_user_id)  # type: ignore[return-value]


def get_user_by_google_id(google_user_id: str) -> Optional[Dict[str, Any]]:
    conn = get_connection()
    row = conn.execute(
        "SELECT * FROM users WHERE google_user_id = ?",
        (google_user_id,),
    ).fetchone()
    return dict(row) if row else None


def get_user_by_id(user_id: int) -> Optional[Dict[str, Any]]:
    conn = get_connection()
    row = conn.execute("SELECT * FROM users WHERE id = ?", (user_id,)).fetchone()
    return dict(row) if row else None


def get_or_create_user(google_user_id: str, email: str) -> Dict[str, Any]:
    user = get_user_by_google_id(google_user_id)
    if user:
        return user
    return create_user(google_user_id, email)


# ---------------------------------------------------------------------------
# Credential helpers
# ---------------------------------------------------------------------------

def upsert_credentials(
    user_id: int,
    access_token: str,
    refresh_token: str,
    token_expiry: Optional[str],
) -> Dict[str, Any]:
    with cursor() as cur:
        cur.execute(
            """
            INSERT INTO credentials (user_id, access_token, refresh_token, token_expiry)
            VALUES (?, ?, ?, ?)
            ON CONFLICT(user_id) DO UPDATE SET
                access_token=excluded.access_token,
                refresh_token=excluded.refresh_token,
                token_expiry=excluded.token_expiry
            """,
            (user_id, access_token, refresh_token, token_expiry),
        )
    return get_credentials_for_user(user_id)  # type: ignore[return-value]


def get_credentials_for_user(user_id: int) -> Optional[Dict[str, Any]]:
    conn = get_connection()
    row = conn.execute(
        "SELECT * FROM credentials WHERE user_id = ?",
        (user_id,),
    ).fetchone()
    return dict(row) if row else None


# ---------------------------------------------------------------------------
# Calendar helpers
# ---------------------------------------------------------------------------

def upsert_calendar(
    user_id: int,
    provider_calendar_id: str,
    name: Optional[str],
    provider: str = "google",
    is_primary: bool = False,
    sync_enabled: bool = True,
    settings: Optional[Dict[str, Any]] = None,
) -> Dict[str, Any]:
    """Insert or refresh a calendar keyed on (user, provider calendar id, provider)."""
    now = _now()
    with cursor() as cur:
        cur.execute(
            """
            INSERT INTO calendars (
                user_id, name, provider, provider_calendar_id, is_primary,
                sync_enabled, settings, created_at, updated_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(user_id, provider_calendar_id, provider) DO UPDATE SET
                name=excluded.name,
                is_primary=excluded.is_primary,
                sync_enabled=excluded.sync_enabled,
                settings=excluded.settings,
                updated_at=excluded.updated_at
            """,
            (
                user_id,
                name,
                provider,
                provider_calendar_id,
                int(is_primary),
                int(sync_enabled),
                json.dumps(settings or {}),
                now,
                now,
            ),
        )
    conn = get_connection()
    row = conn.execute(
        """
        SELECT * FROM calendars
        WHERE user_id = ? AND provider_calendar_id = ? AND provider = ?
        """,
        (user_id, provider_calendar_id, provider),
    ).fetchone()
    return _calendar_from_row(row)


def fetch_calendars(user_id: int, sync_enabled_only: bool = False) -> List[Dict[str, Any]]:
    conn = get_connection()
    query = "SELECT * FROM calendars WHERE user_id = ?"
    if sync_enabled_only:
        query += " AND sync_enabled = 1"
    query += " ORDER BY is_primary DESC, id"
    rows = conn.execute(query, (user_id,)).fetchall()
    return [_calendar_from_row(row) for row in rows]


def get_calendar_by_id(calendar_id: int) -> Optional[Dict[str, Any]]:
    conn = get_connection()
    row = conn.execute("SELECT * FROM calendars WHERE id = ?", (calendar_id,)).fetchone()
    return _calendar_from_row(row) if row else None


def get_primary_calendar(user_id: int, provider: str = "google") -> Optional[Dict[str, Any]]:
    conn = get_connection()
    row = conn.execute(
        """
        SELECT * FROM calendars
        WHERE user_id = ? AND provider = ? AND is_primary = 1
        ORDER BY id LIMIT 1
        """,
        (user_id, provider),
    ).fetchone()
    return _calendar_from_row(row) if row else None


# ---------------------------------------------------------------------------
# Event helpers
# ---------------------------------------------------------------------------

def create_event(
    user_id: int,
    title: Optional[str],
    start_time: Any,
    end_time: Any,
    calendar_id: Optional[int] = None,
    google_event_id: Optional[str] = None,
    description: Optional[str] = None,
    location: Optional[str] = None,
    attendees: Optional[List[Any]] = None,
    ai_generated: bool = False,
    confidence_score: Optional[float] = None,
    status: str = EventStatus.PENDING.value,
    google_data: Optional[Dict[str, Any]] = None,
) -> Dict[str, Any]:
    now = _now()
    with cursor() as cur:
        cur.execute(
            """
            INSERT INTO events (
                user_id, calendar_id, google_event_id, title, description, start_time,
                end_time, location, attendees, ai_generated, confidence_score, status,
                google_data, created_at, updated_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                user_id,
                calendar_id,
                google_event_id,
                title,
                description,
                _ts(start_time),
                _ts(end_time),
                location,
                json.dumps(attendees or []),
                int(ai_generated),
                confidence_score,
                status,
                json.dumps(google_data or {}),
                now,
                now,
            ),
        )
        event_id = cur.lastrowid
    return get_event(user_id, event_id)  # type: ignore[arg-type]


def upsert_synced_event(
    user_id: int,
    calendar_id: int,
    google_event_id: str,
    title: Optional[str],
    start_time: Any,
    end_time: Any,
    description: Optional[str] = None,
    location: Optional[str] = None,
    attendees: Optional[List[Any]] = None,
    status: str = EventStatus.PENDING.value,
    google_data: Optional[Dict[str, Any]] = None,
) -> Dict[str, Any]:
    """Insert or overwrite an event mirrored from the provider, keyed on its remote id."""
    now = _now()
    with cursor() as cur:
        cur.execute(
            """
            INSERT INTO events (
                user_id, calendar_id, google_event_id, title, description, start_time,
                end_time, location, attendees, ai_generated, status, google_data,
                created_at, updated_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, 0, ?, ?, ?, ?)
            ON CONFLICT(user_id, google_event_id) DO UPDATE SET
                calendar_id=excluded.calendar_id,
                title=excluded.title,
                description=excluded.description,
                start_time=excluded.start_time,
                end_time=excluded.end_time,
                location=excluded.location,
                attendees=excluded.attendees,
                notes=CASE WHEN events.status = 'review_needed' THEN NULL ELSE events.notes END,
                status=excluded.status,
                google_data=excluded.google_data,
                updated_at=excluded.updated_at
            """,
            (
                user_id,
                calendar_id,
                google_event_id,
                title,
                description,
                _ts(start_time),
                _ts(end_time),
                location,
                json.dumps(attendees or []),
                status,
                json.dumps(google_data or {}),
                now,
                now,
            ),
        )
    conn = get_connection()
    row = conn.execute(
        "SELECT * FROM events WHERE user_id = ? AND google_event_id = ?",
        (user_id, google_event_id),
    ).fetchone()
    return _event_from_row(row)


def update_event(event_id: int, fields: Dict[str, Any]) -> None:
    """Update selected columns of an event and stamp updated_at."""
    unknown = set(fields) - _EVENT_UPDATABLE
    if unknown:
        raise ValueError(f"Cannot update event columns: {', '.join(sorted(unknown))}")
    values: Dict[str, Any] = {}
    for column, value in fields.items():
        if column in _EVENT_JSON_COLUMNS:
            value = json.dumps(value if value is not None else ([] if column == "attendees" else {}))
        elif column in ("start_time", "end_time"):
            value = _ts(value)
        elif column == "ai_generated":
            value = int(bool(value))
        values[column] = value
    values["updated_at"] = _now()
    assignments = ", ".join(f"{column} = ?" for column in values)
    with cursor() as cur:
        cur.execute(
            f"UPDATE events SET {assignments} WHERE id = ?",
            (*values.values(), event_id),
        )
        if cur.rowcount == 0:
            raise RecordNotFoundError("events", event_id)


def delete_event(event_id: int) -> None:
    with cursor() as cur:
        cur.execute("DELETE FROM events WHERE id = ?", (event_id,))


def get_event(user_id: int, event_id: int) -> Optional[Dict[str, Any]]:
    conn = get_connection()
    row = conn.execute(
        "SELECT * FROM events WHERE id = ? AND user_id = ?",
        (event_id, user_id),
    ).fetchone()
    return _event_from_row(row) if row else None


def fetch_events_in_range(
    user_id: int,
    start: Any,
    end: Any,
    calendar_id: Optional[int] = None,
    exclude_id: Optional[int] = None,
    include_cancelled: bool = False,
) -> List[Dict[str, Any]]:
    """
    Return events overlapping [start, end).

    The exclusion filter is applied only when an id is supplied.
    """
    query = """
        SELECT events.*, calendars.name AS calendar_name
        FROM events
        LEFT JOIN calendars ON calendars.id = events.calendar_id
        WHERE events.user_id = ?
          AND events.start_time < ?
          AND events.end_time > ?
    """
    params: List[Any] = [user_id, _ts(end), _ts(start)]
    if calendar_id is not None:
        query += " AND events.calendar_id = ?"
        params.append(calendar_id)
    if exclude_id is not None:
        query += " AND events.id != ?"
        params.append(exclude_id)
    if not include_cancelled:
        query += " AND (events.status IS NULL OR events.status != 'cancelled')"
    query += " ORDER BY events.start_time"
    rows = get_connection().execute(query, params).fetchall()
    return [_event_from_row(row) for row in rows]


def fetch_unsynced_events(user_id: int, calendar_id: int) -> List[Dict[str, Any]]:
    """Local events of a calendar that have never been pushed to the provider."""
    rows = get_connection().execute(
        """
        SELECT * FROM events
        WHERE user_id = ? AND calendar_id = ? AND google_event_id IS NULL
          AND (status IS NULL OR status != 'cancelled')
        ORDER BY start_time
        """,
        (user_id, calendar_id),
    ).fetchall()
    return [_event_from_row(row) for row in rows]


def fetch_stale_synced_events(user_id: int, cutoff: Any) -> List[Dict[str, Any]]:
    """Mirrored events (remote id present) not touched since `cutoff`."""
    rows = get_connection().execute(
        """
        SELECT id, calendar_id, title, google_event_id FROM events
        WHERE user_id = ? AND google_event_id IS NOT NULL AND updated_at < ?
        """,
        (user_id, _ts(cutoff)),
    ).fetchall()
    return [dict(row) for row in rows]


def mark_events_review_needed(event_ids: Iterable[int], note: str) -> int:
    ids = list(event_ids)
    if not ids:
        return 0
    placeholders = ",".join("?" * len(ids))
    with cursor() as cur:
        cur.execute(
            f"""
            UPDATE events SET status = ?, notes = ?, updated_at = ?
            WHERE id IN ({placeholders})
            """,
            (EventStatus.REVIEW_NEEDED.value, note, _now(), *ids),
        )
        return cur.rowcount


def get_event_counts(user_id: int, recent_since: Any) -> Dict[str, int]:
    conn = get_connection()
    total = conn.execute(
        "SELECT COUNT(*) AS count FROM events WHERE user_id = ?",
        (user_id,),
    ).fetchone()["count"]
    recent = conn.execute(
        "SELECT COUNT(*) AS count FROM events WHERE user_id = ? AND created_at >= ?",
        (user_id, _ts(recent_since)),
    ).fetchone()["count"]
    pending = conn.execute(
        """
        SELECT COUNT(*) AS count FROM events
        WHERE user_id = ? AND status IN ('pending', 'review_needed')
        """,
        (user_id,),
    ).fetchone()["count"]
    return {"total": total, "recent": recent, "pending": pending}


def get_last_event_update(user_id: int) -> Optional[str]:
    row = get_connection().execute(
        "SELECT MAX(updated_at) AS last FROM events WHERE user_id = ?",
        (user_id,),
    ).fetchone()
    return row["last"] if row else None


# ---------------------------------------------------------------------------
# Task helpers
# ---------------------------------------------------------------------------

def create_task(
    user_id: int,
    title: Optional[str],
    priority: str = "medium",
    status: str = "pending",
    scheduled_start: Any = None,
    scheduled_end: Any = None,
    due_date: Any = None,
) -> Dict[str, Any]:
    with cursor() as cur:
        cur.execute(
            """
            INSERT INTO tasks (
                user_id, title, status, priority, scheduled_start, scheduled_end, due_date, created_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                user_id,
                title,
                status,
                priority,
                _ts(scheduled_start),
                _ts(scheduled_end),
                _ts(due_date),
                _now(),
            ),
        )
        task_id = cur.lastrowid
    row = get_connection().execute("SELECT * FROM tasks WHERE id = ?", (task_id,)).fetchone()
    return dict(row)


def fetch_tasks_in_range(
    user_id: int,
    start: Any,
    end: Any,
    due_padding_end: Any = None,
    exclude_id: Optional[int] = None,
) -> List[Dict[str, Any]]:
    """
    Open tasks that may occupy time inside [start, end).

    Scheduled tasks match on interval overlap; unscheduled tasks match when the due
    date falls in [start, due_padding_end] (callers pad the end by the assumed task
    duration).
    """
    query = """
        SELECT * FROM tasks
        WHERE user_id = ?
          AND (status IS NULL OR status != 'completed')
          AND (
            (scheduled_start IS NOT NULL AND scheduled_end IS NOT NULL
             AND scheduled_start < ? AND scheduled_end > ?)
            OR (due_date IS NOT NULL AND due_date > ? AND due_date <= ?)
          )
    """
    params: List[Any] = [
        user_id,
        _ts(end),
        _ts(start),
        _ts(start),
        _ts(due_padding_end or end),
    ]
    if exclude_id is not None:
        query += " AND id != ?"
        params.append(exclude_id)
    rows = get_connection().execute(query, params).fetchall()
    return [dict(row) for row in rows]


# ---------------------------------------------------------------------------
# Preference helpers
# ---------------------------------------------------------------------------

def get_preference(user_id: int, key: str) -> Optional[Any]:
    row = get_connection().execute(
        "SELECT preference_value FROM user_preferences WHERE user_id = ? AND preference_key = ?",
        (user_id, key),
    ).fetchone()
    if not row:
        return None
    return _loads(row["preference_value"], None)


def set_preference(user_id: int, key: str, value: Any) -> None:
    with cursor() as cur:
        cur.execute(
            """
            INSERT INTO user_preferences (user_id, preference_key, preference_value, updated_at)
            VALUES (?, ?, ?, ?)
            ON CONFLICT(user_id, preference_key) DO UPDATE SET
                preference_value=excluded.preference_value,
                updated_at=excluded.updated_at
            """,
            (user_id, key, json.dumps(value), _now()),
        )


# ---------------------------------------------------------------------------
# Audit log
# ---------------------------------------------------------------------------

def insert_audit_log(
    action: str,
    user_id: Optional[int] = None,
    resource_type: Optional[str] = None,
    resource_id: Optional[Any] = None,
    details: Optional[Dict[str, Any]] = None,
) -> None:
    with cursor() as cur:
        cur.execute(
            """
            INSERT INTO audit_logs (user_id, action, resource_type, resource_id, details, created_at)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            (
                user_id,
                action,
                resource_type,
                str(resource_id) if resource_id is not None else None,
                json.dumps(details or {}, default=str),
                _now(),
            ),
        )


def fetch_audit_logs(action: Optional[str] = None, limit: int = 100) -> List[Dict[str, Any]]:
    query = "SELECT * FROM audit_logs"
    params: List[Any] = []
    if action:
        query += " WHERE action = ?"
        params.append(action)
    query += " ORDER BY id DESC LIMIT ?"
    params.append(limit)
    rows = get_connection().execute(query, params).fetchall()
    result = []
    for row in rows:
        record = dict(row)
        record["details"] = _loads(record.get("details"), {})
        result.append(record)
    return result
