"""Event session repository operations for the SQLite backend.

The current-session pointer is the ``is_current`` flag, guarded by a partial
unique index so the database itself refuses a second current row. Swapping
the pointer happens inside the caller's ``BEGIN IMMEDIATE`` transaction.
"""

from __future__ import annotations

import sqlite3

from plate_server.db.connection import connection_scope
from plate_server.db.errors import raise_read_error, raise_write_error
from plate_server.db.types import Session

_SESSION_COLUMNS = "id, name, created_at, is_current"


def get_current_session(conn: sqlite3.Connection | None = None) -> Session | None:
    """Return the session flagged current, if any."""
    query = f"SELECT {_SESSION_COLUMNS} FROM sessions WHERE is_current = 1"
    try:
        if conn is not None:
            row = conn.execute(query).fetchone()
        else:
            with connection_scope() as scoped:
                row = scoped.execute(query).fetchone()
        return Session.from_row(row) if row else None
    except Exception as exc:
        raise_read_error("sessions.get_current_session", exc)


def get_session(session_id: int) -> Session | None:
    """Return one session by id."""
    try:
        with connection_scope() as conn:
            row = conn.execute(
                f"SELECT {_SESSION_COLUMNS} FROM sessions WHERE id = ?", (session_id,)
            ).fetchone()
        return Session.from_row(row) if row else None
    except Exception as exc:
        raise_read_error("sessions.get_session", exc, details=f"session_id={session_id}")


def list_sessions() -> list[Session]:
    """Return every session, newest first."""
    try:
        with connection_scope() as conn:
            rows = conn.execute(
                f"SELECT {_SESSION_COLUMNS} FROM sessions ORDER BY id DESC"
            ).fetchall()
        return [Session.from_row(row) for row in rows]
    except Exception as exc:
        raise_read_error("sessions.list_sessions", exc)


def clear_current_flag(conn: sqlite3.Connection, session_id: int) -> int:
    """Drop the current flag from one session."""
    try:
        cursor = conn.execute(
            "UPDATE sessions SET is_current = 0 WHERE id = ? AND is_current = 1", (session_id,)
        )
        return int(cursor.rowcount or 0)
    except Exception as exc:
        raise_write_error("sessions.clear_current_flag", exc, details=f"session_id={session_id}")


def insert_current_session(conn: sqlite3.Connection, name: str, created_at: str) -> Session:
    """Insert a new session already flagged current and return it."""
    try:
        cursor = conn.execute(
            "INSERT INTO sessions (name, created_at, is_current) VALUES (?, ?, 1)",
            (name, created_at),
        )
        return Session(id=int(cursor.lastrowid), name=name, created_at=created_at, is_current=True)
    except Exception as exc:
        raise_write_error("sessions.insert_current_session", exc, details=f"name={name!r}")
