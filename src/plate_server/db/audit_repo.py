"""Audit log repository operations for the SQLite backend.

Rows are inserted and read only: the schema triggers reject UPDATE and
DELETE. Payload encoding and checksums are owned by
:mod:`plate_server.audit.writer`; this module stores and returns raw rows.
"""

from __future__ import annotations

import sqlite3
from dataclasses import dataclass

from plate_server.db.connection import connection_scope
from plate_server.db.errors import raise_read_error, raise_write_error

_AUDIT_COLUMNS = (
    "id, actor_role, session_id, family_id, action_kind, before_json, after_json, "
    "detail, station_id, created_at, checksum"
)


@dataclass(slots=True, frozen=True)
class AuditRow:
    """One stored audit row with JSON payloads still encoded."""

    id: int
    actor_role: str
    session_id: int | None
    family_id: str | None
    action_kind: str
    before_json: str | None
    after_json: str | None
    detail: str
    station_id: str | None
    created_at: str
    checksum: str

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> AuditRow:
        return cls(
            id=int(row["id"]),
            actor_role=row["actor_role"],
            session_id=row["session_id"],
            family_id=row["family_id"],
            action_kind=row["action_kind"],
            before_json=row["before_json"],
            after_json=row["after_json"],
            detail=row["detail"],
            station_id=row["station_id"],
            created_at=row["created_at"],
            checksum=row["checksum"],
        )


def insert_row(
    conn: sqlite3.Connection,
    *,
    actor_role: str,
    session_id: int | None,
    family_id: str | None,
    action_kind: str,
    before_json: str | None,
    after_json: str | None,
    detail: str,
    station_id: str | None,
    created_at: str,
    checksum: str,
) -> int:
    """Append one audit row inside the caller's transaction and return its id."""
    try:
        cursor = conn.execute(
            """
            INSERT INTO audit_log (
                actor_role, session_id, family_id, action_kind, before_json,
                after_json, detail, station_id, created_at, checksum
            )
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                actor_role,
                session_id,
                family_id,
                action_kind,
                before_json,
                after_json,
                detail,
                station_id,
                created_at,
                checksum,
            ),
        )
        return int(cursor.lastrowid)
    except Exception as exc:
        raise_write_error(
            "audit.insert_row",
            exc,
            details=f"action_kind={action_kind!r}, family_id={family_id!r}",
        )


def list_rows(
    *,
    session_id: int | None = None,
    family_id: str | None = None,
    action_kind: str | None = None,
    limit: int = 100,
) -> list[AuditRow]:
    """Return audit rows newest first, filtered by any combination of keys."""
    clauses: list[str] = []
    params: list[object] = []
    if session_id is not None:
        clauses.append("session_id = ?")
        params.append(session_id)
    if family_id is not None:
        clauses.append("family_id = ?")
        params.append(family_id)
    if action_kind is not None:
        clauses.append("action_kind = ?")
        params.append(action_kind)
    where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
    params.append(limit)
    try:
        with connection_scope() as conn:
            rows = conn.execute(
                f"SELECT {_AUDIT_COLUMNS} FROM audit_log {where} ORDER BY id DESC LIMIT ?",
                tuple(params),
            ).fetchall()
        return [AuditRow.from_row(row) for row in rows]
    except Exception as exc:
        raise_read_error(
            "audit.list_rows",
            exc,
            details=f"session_id={session_id}, family_id={family_id!r}, kind={action_kind!r}",
        )


def get_row(entry_id: int) -> AuditRow | None:
    """Return one audit row by id."""
    try:
        with connection_scope() as conn:
            row = conn.execute(
                f"SELECT {_AUDIT_COLUMNS} FROM audit_log WHERE id = ?", (entry_id,)
            ).fetchone()
        return AuditRow.from_row(row) if row else None
    except Exception as exc:
        raise_read_error("audit.get_row", exc, details=f"entry_id={entry_id}")
