"""Schema creation and invariant trigger wiring for the SQLite backend.

The schema layer is isolated from query code so schema changes are reviewable
without wading through repository logic. Invariants that must hold for every
writer (including ad-hoc SQL from an operator shell) live here as CHECK
constraints, partial unique indexes and triggers:

- ``0 <= used <= entitled`` on every entitlement record.
- At most one session with ``is_current = 1``.
- ``audit_log`` rows can be inserted but never updated or deleted.
"""

from __future__ import annotations

import logging
import sqlite3

from plate_server.db.connection import connection_scope
from plate_server.db.errors import raise_write_error

logger = logging.getLogger(__name__)

TABLE_STATEMENTS = (
    """
    CREATE TABLE IF NOT EXISTS families (
        id TEXT PRIMARY KEY,
        surname TEXT NOT NULL,
        head_name TEXT NOT NULL,
        phone TEXT,
        size INTEGER NOT NULL CHECK (size >= 1),
        notes TEXT,
        created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
        updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS sessions (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        name TEXT NOT NULL CHECK (length(trim(name)) > 0),
        created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
        is_current INTEGER NOT NULL DEFAULT 0 CHECK (is_current IN (0, 1))
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS entitlement_records (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        session_id INTEGER NOT NULL REFERENCES sessions(id) ON DELETE CASCADE,
        family_id TEXT NOT NULL REFERENCES families(id) ON DELETE CASCADE,
        entitled INTEGER NOT NULL CHECK (entitled >= 0),
        extra_guests INTEGER NOT NULL DEFAULT 0 CHECK (extra_guests >= 0),
        used INTEGER NOT NULL DEFAULT 0 CHECK (used >= 0 AND used <= entitled),
        checked_in_at TIMESTAMP,
        updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
        status TEXT NOT NULL CHECK (status IN ('ACTIVE', 'EXHAUSTED', 'CLOSED')),
        UNIQUE (session_id, family_id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS audit_log (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        actor_role TEXT NOT NULL,
        session_id INTEGER REFERENCES sessions(id) ON DELETE SET NULL,
        family_id TEXT,
        action_kind TEXT NOT NULL,
        before_json TEXT,
        after_json TEXT,
        detail TEXT NOT NULL DEFAULT '',
        station_id TEXT,
        created_at TEXT NOT NULL,
        checksum TEXT NOT NULL
    )
    """,
)

# Hot-path index rationale:
# 1. station search filters families by lower-cased surname/head name and phone.
# 2. roster reconciliation matches by phone, then by lower-cased name pair.
# 3. ledger reads are always (session, family) scoped.
# 4. audit history is session (+ family) scoped and read newest first.
INDEX_STATEMENTS = (
    "CREATE INDEX IF NOT EXISTS idx_families_surname_lower ON families (lower(surname))",
    "CREATE INDEX IF NOT EXISTS idx_families_head_name_lower ON families (lower(head_name))",
    "CREATE INDEX IF NOT EXISTS idx_families_phone ON families (phone)",
    (
        "CREATE INDEX IF NOT EXISTS idx_families_name_pair "
        "ON families (lower(surname), lower(head_name))"
    ),
    (
        "CREATE UNIQUE INDEX IF NOT EXISTS idx_sessions_single_current "
        "ON sessions (is_current) WHERE is_current = 1"
    ),
    "CREATE INDEX IF NOT EXISTS idx_records_session ON entitlement_records (session_id)",
    "CREATE INDEX IF NOT EXISTS idx_records_family ON entitlement_records (family_id)",
    (
        "CREATE INDEX IF NOT EXISTS idx_audit_session_family "
        "ON audit_log (session_id, family_id, id DESC)"
    ),
    "CREATE INDEX IF NOT EXISTS idx_audit_kind ON audit_log (action_kind, id DESC)",
)


def create_audit_append_only_triggers(conn: sqlite3.Connection) -> None:
    """Create triggers that make ``audit_log`` append-only.

    These protect the dispute trail for both Python helper paths and direct
    SQL writes.
    """
    cursor = conn.cursor()
    cursor.execute("DROP TRIGGER IF EXISTS audit_log_no_update")
    cursor.execute("DROP TRIGGER IF EXISTS audit_log_no_delete")

    cursor.execute("""
        CREATE TRIGGER audit_log_no_update
        BEFORE UPDATE ON audit_log
        BEGIN
            SELECT RAISE(ABORT, 'audit invariant violated: audit_log is append-only');
        END;
    """)

    cursor.execute("""
        CREATE TRIGGER audit_log_no_delete
        BEFORE DELETE ON audit_log
        BEGIN
            SELECT RAISE(ABORT, 'audit invariant violated: audit_log is append-only');
        END;
    """)


def init_database() -> None:
    """Initialize the SQLite database schema and baseline triggers.

    Safe to call repeatedly: every statement is idempotent.
    """
    try:
        with connection_scope(write=True) as conn:
            cursor = conn.cursor()
            for statement in TABLE_STATEMENTS:
                cursor.execute(statement)
            for statement in INDEX_STATEMENTS:
                cursor.execute(statement)
            create_audit_append_only_triggers(conn)
    except Exception as exc:
        raise_write_error("schema.init_database", exc)
    logger.info("Database schema ready")
