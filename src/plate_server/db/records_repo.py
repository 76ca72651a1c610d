"""Entitlement record repository operations for the SQLite backend.

Every mutation here takes the caller's connection so the ledger service can
pair it with its audit insert inside one write transaction. Mutating
functions return the affected row count; the services turn ``0`` into the
matching domain outcome (``ConcurrencyConflict``, ``NotFound``...).

``compare_and_swap_used`` is the only write path for plate consumption by
stations: it is keyed on the previously read ``used`` value, so a write based
on a stale read affects zero rows instead of overwriting a concurrent serve.
"""

from __future__ import annotations

import sqlite3

from plate_server.db.connection import connection_scope
from plate_server.db.errors import raise_read_error, raise_write_error
from plate_server.db.types import EntitlementRecord, RecordStatus, SessionTotals

_RECORD_COLUMNS = (
    "id, session_id, family_id, entitled, extra_guests, used, checked_in_at, updated_at, status"
)


def get_record(
    session_id: int, family_id: str, conn: sqlite3.Connection | None = None
) -> EntitlementRecord | None:
    """Return the record for (session, family), or None when not checked in.

    Pass ``conn`` to read inside an open ``BEGIN IMMEDIATE`` transaction.
    """
    query = (
        f"SELECT {_RECORD_COLUMNS} FROM entitlement_records "
        "WHERE session_id = ? AND family_id = ?"
    )
    try:
        if conn is not None:
            row = conn.execute(query, (session_id, family_id)).fetchone()
        else:
            with connection_scope() as scoped:
                row = scoped.execute(query, (session_id, family_id)).fetchone()
        return EntitlementRecord.from_row(row) if row else None
    except Exception as exc:
        raise_read_error(
            "records.get_record",
            exc,
            details=f"session_id={session_id}, family_id={family_id!r}",
        )


def get_record_by_id(
    session_id: int, record_id: int, conn: sqlite3.Connection | None = None
) -> EntitlementRecord | None:
    """Return a record by primary key, scoped to the session it must belong to."""
    query = (
        f"SELECT {_RECORD_COLUMNS} FROM entitlement_records "
        "WHERE id = ? AND session_id = ?"
    )
    try:
        if conn is not None:
            row = conn.execute(query, (record_id, session_id)).fetchone()
        else:
            with connection_scope() as scoped:
                row = scoped.execute(query, (record_id, session_id)).fetchone()
        return EntitlementRecord.from_row(row) if row else None
    except Exception as exc:
        raise_read_error(
            "records.get_record_by_id",
            exc,
            details=f"session_id={session_id}, record_id={record_id}",
        )


def get_records_for_families(session_id: int, family_ids: list[str]) -> dict[str, EntitlementRecord]:
    """Return session records keyed by family id for the given families."""
    if not family_ids:
        return {}
    placeholders = ", ".join("?" for _ in family_ids)
    try:
        with connection_scope() as conn:
            rows = conn.execute(
                f"SELECT {_RECORD_COLUMNS} FROM entitlement_records "
                f"WHERE session_id = ? AND family_id IN ({placeholders})",
                (session_id, *family_ids),
            ).fetchall()
        return {row["family_id"]: EntitlementRecord.from_row(row) for row in rows}
    except Exception as exc:
        raise_read_error("records.get_records_for_families", exc, details=f"session_id={session_id}")


def list_records(session_id: int, *, checked_in_only: bool = False) -> list[EntitlementRecord]:
    """Return session records, newest check-in first."""
    where = "WHERE session_id = ?"
    if checked_in_only:
        where += " AND checked_in_at IS NOT NULL"
    try:
        with connection_scope() as conn:
            rows = conn.execute(
                f"SELECT {_RECORD_COLUMNS} FROM entitlement_records {where} "
                "ORDER BY checked_in_at DESC, id DESC",
                (session_id,),
            ).fetchall()
        return [EntitlementRecord.from_row(row) for row in rows]
    except Exception as exc:
        raise_read_error("records.list_records", exc, details=f"session_id={session_id}")


def session_totals(session_id: int, conn: sqlite3.Connection | None = None) -> SessionTotals:
    """Aggregate counters for one session.

    Accepts an open connection so the session swap can read the totals it
    archives inside the same transaction that deletes the records.
    """
    query = """
        SELECT
            (SELECT COUNT(*) FROM families) AS total_families,
            COUNT(r.id) AS families_checked_in,
            COALESCE(SUM(r.entitled), 0) AS plates_entitled,
            COALESCE(SUM(r.used), 0) AS plates_served
        FROM entitlement_records r
        WHERE r.session_id = ? AND r.checked_in_at IS NOT NULL
    """
    try:
        if conn is not None:
            row = conn.execute(query, (session_id,)).fetchone()
        else:
            with connection_scope() as scoped:
                row = scoped.execute(query, (session_id,)).fetchone()
        return SessionTotals(
            total_families=int(row["total_families"]),
            families_checked_in=int(row["families_checked_in"]),
            plates_entitled=int(row["plates_entitled"]),
            plates_served=int(row["plates_served"]),
        )
    except Exception as exc:
        raise_read_error("records.session_totals", exc, details=f"session_id={session_id}")


# ---------------------------------------------------------------------------
# Mutations (caller-owned transaction)
# ---------------------------------------------------------------------------


def insert_record(
    conn: sqlite3.Connection,
    *,
    session_id: int,
    family_id: str,
    entitled: int,
    extra_guests: int,
    status: RecordStatus,
    checked_in_at: str,
) -> int | None:
    """Create the (session, family) record.

    Returns the new record id, or None when a record already exists. The
    UNIQUE (session_id, family_id) constraint decides the race between two
    stations checking in the same family.
    """
    try:
        cursor = conn.execute(
            """
            INSERT INTO entitlement_records (
                session_id, family_id, entitled, extra_guests, used,
                checked_in_at, updated_at, status
            )
            VALUES (?, ?, ?, ?, 0, ?, ?, ?)
            ON CONFLICT(session_id, family_id) DO NOTHING
            """,
            (
                session_id,
                family_id,
                entitled,
                extra_guests,
                checked_in_at,
                checked_in_at,
                status.value,
            ),
        )
        if int(cursor.rowcount or 0) == 0:
            return None
        return int(cursor.lastrowid)
    except Exception as exc:
        raise_write_error(
            "records.insert_record",
            exc,
            details=f"session_id={session_id}, family_id={family_id!r}",
        )


def compare_and_swap_used(
    conn: sqlite3.Connection,
    *,
    record_id: int,
    expected_used: int,
    new_used: int,
    new_status: RecordStatus,
    updated_at: str,
) -> int:
    """Set ``used`` only if the stored value still equals ``expected_used``.

    Also refuses to touch CLOSED records. Returns the affected row count:
    ``0`` means another writer changed the record since it was read.
    """
    try:
        cursor = conn.execute(
            """
            UPDATE entitlement_records
            SET used = ?, status = ?, updated_at = ?
            WHERE id = ? AND used = ? AND status != 'CLOSED'
            """,
            (new_used, new_status.value, updated_at, record_id, expected_used),
        )
        return int(cursor.rowcount or 0)
    except Exception as exc:
        raise_write_error(
            "records.compare_and_swap_used",
            exc,
            details=f"record_id={record_id}, expected_used={expected_used}",
        )


def overwrite_counters(
    conn: sqlite3.Connection,
    *,
    record_id: int,
    entitled: int,
    extra_guests: int,
    used: int,
    status: RecordStatus,
    updated_at: str,
) -> int:
    """Authoritative admin write of the counters and status (no CAS guard)."""
    try:
        cursor = conn.execute(
            """
            UPDATE entitlement_records
            SET entitled = ?, extra_guests = ?, used = ?, status = ?, updated_at = ?
            WHERE id = ?
            """,
            (entitled, extra_guests, used, status.value, updated_at, record_id),
        )
        return int(cursor.rowcount or 0)
    except Exception as exc:
        raise_write_error("records.overwrite_counters", exc, details=f"record_id={record_id}")


def set_status(
    conn: sqlite3.Connection, *, record_id: int, status: RecordStatus, updated_at: str
) -> int:
    """Write a new lifecycle status for one record."""
    try:
        cursor = conn.execute(
            "UPDATE entitlement_records SET status = ?, updated_at = ? WHERE id = ?",
            (status.value, updated_at, record_id),
        )
        return int(cursor.rowcount or 0)
    except Exception as exc:
        raise_write_error("records.set_status", exc, details=f"record_id={record_id}")


def delete_record(conn: sqlite3.Connection, *, record_id: int, expected_used: int | None = None) -> int:
    """Delete one record.

    When ``expected_used`` is given the delete is conditional on it, so a
    volunteer undo cannot remove a record a concurrent serve just touched.
    """
    try:
        if expected_used is None:
            cursor = conn.execute("DELETE FROM entitlement_records WHERE id = ?", (record_id,))
        else:
            cursor = conn.execute(
                "DELETE FROM entitlement_records WHERE id = ? AND used = ?",
                (record_id, expected_used),
            )
        return int(cursor.rowcount or 0)
    except Exception as exc:
        raise_write_error("records.delete_record", exc, details=f"record_id={record_id}")


def delete_records_for_session(conn: sqlite3.Connection, session_id: int) -> int:
    """Delete every record of a session and return the removed row count."""
    try:
        cursor = conn.execute(
            "DELETE FROM entitlement_records WHERE session_id = ?", (session_id,)
        )
        return int(cursor.rowcount or 0)
    except Exception as exc:
        raise_write_error(
            "records.delete_records_for_session", exc, details=f"session_id={session_id}"
        )
