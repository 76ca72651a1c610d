"""Family directory repository operations for the SQLite backend.

The directory is read-mostly: stations only search and look up families,
while roster reconciliation is the exclusive writer (``upsert_family``).
"""

from __future__ import annotations

import sqlite3
from collections.abc import Sequence

from plate_server.db.connection import connection_scope
from plate_server.db.errors import raise_read_error, raise_write_error
from plate_server.db.types import Family

_FAMILY_COLUMNS = "id, surname, head_name, phone, size, notes"


def get_family(family_id: str) -> Family | None:
    """Return one family by its stable identifier."""
    try:
        with connection_scope() as conn:
            row = conn.execute(
                f"SELECT {_FAMILY_COLUMNS} FROM families WHERE id = ?",
                (family_id,),
            ).fetchone()
        return Family.from_row(row) if row else None
    except Exception as exc:
        raise_read_error("families.get_family", exc, details=f"family_id={family_id!r}")


def get_families(family_ids: Sequence[str]) -> dict[str, Family]:
    """Return families keyed by id for the given identifiers."""
    if not family_ids:
        return {}
    placeholders = ", ".join("?" for _ in family_ids)
    try:
        with connection_scope() as conn:
            rows = conn.execute(
                f"SELECT {_FAMILY_COLUMNS} FROM families WHERE id IN ({placeholders})",
                tuple(family_ids),
            ).fetchall()
        return {row["id"]: Family.from_row(row) for row in rows}
    except Exception as exc:
        raise_read_error("families.get_families", exc, details=f"count={len(family_ids)}")


def search_families(query: str, *, limit: int) -> list[Family]:
    """Case-insensitive substring search on surname, head name and phone.

    ``query`` is expected to be trimmed and lower-cased by the caller.
    """
    escaped = query.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
    pattern = f"%{escaped}%"
    try:
        with connection_scope() as conn:
            rows = conn.execute(
                f"""
                SELECT {_FAMILY_COLUMNS}
                FROM families
                WHERE lower(surname) LIKE ? ESCAPE '\\'
                   OR lower(head_name) LIKE ? ESCAPE '\\'
                   OR (phone IS NOT NULL AND phone LIKE ? ESCAPE '\\')
                ORDER BY lower(surname), lower(head_name), id
                LIMIT ?
                """,
                (pattern, pattern, pattern, limit),
            ).fetchall()
        return [Family.from_row(row) for row in rows]
    except Exception as exc:
        raise_read_error("families.search_families", exc, details=f"query={query!r}")


def list_families() -> list[Family]:
    """Return the whole directory ordered for display."""
    try:
        with connection_scope() as conn:
            rows = conn.execute(
                f"SELECT {_FAMILY_COLUMNS} FROM families "
                "ORDER BY lower(surname), lower(head_name), id"
            ).fetchall()
        return [Family.from_row(row) for row in rows]
    except Exception as exc:
        raise_read_error("families.list_families", exc)


def count_families(conn: sqlite3.Connection | None = None) -> int:
    """Return the number of families in the directory."""
    try:
        if conn is not None:
            return int(conn.execute("SELECT COUNT(*) FROM families").fetchone()[0])
        with connection_scope() as scoped:
            return int(scoped.execute("SELECT COUNT(*) FROM families").fetchone()[0])
    except Exception as exc:
        raise_read_error("families.count_families", exc)


# ---------------------------------------------------------------------------
# Reconciliation helpers. These run inside the caller's write transaction so a
# whole batch commits or rolls back together.
# ---------------------------------------------------------------------------


def find_match_id(
    conn: sqlite3.Connection,
    *,
    family_id: str | None,
    phone: str | None,
    surname: str,
    head_name: str,
) -> str | None:
    """Resolve the directory id a roster row refers to.

    A row carrying a stable identifier matches only that identifier, so two
    roster families sharing a phone never collapse into one. Rows without an
    identifier match by phone, then by the case-insensitive (surname, head
    name) pair. Ties resolve to the oldest row so repeated runs always pick
    the same family.
    """
    try:
        if family_id:
            row = conn.execute("SELECT id FROM families WHERE id = ?", (family_id,)).fetchone()
            return str(row["id"]) if row else None
        if phone:
            row = conn.execute(
                "SELECT id FROM families WHERE phone = ? ORDER BY created_at, id LIMIT 1",
                (phone,),
            ).fetchone()
            if row:
                return str(row["id"])
        row = conn.execute(
            """
            SELECT id FROM families
            WHERE lower(surname) = lower(?) AND lower(head_name) = lower(?)
            ORDER BY created_at, id
            LIMIT 1
            """,
            (surname, head_name),
        ).fetchone()
        return str(row["id"]) if row else None
    except Exception as exc:
        raise_read_error(
            "families.find_match_id",
            exc,
            details=f"family_id={family_id!r}, phone={phone!r}",
        )


def upsert_family(conn: sqlite3.Connection, family: Family) -> None:
    """Insert a family or overwrite every field of the row with the same id."""
    try:
        conn.execute(
            """
            INSERT INTO families (id, surname, head_name, phone, size, notes)
            VALUES (?, ?, ?, ?, ?, ?)
            ON CONFLICT(id) DO UPDATE SET
                surname = excluded.surname,
                head_name = excluded.head_name,
                phone = excluded.phone,
                size = excluded.size,
                notes = excluded.notes,
                updated_at = CURRENT_TIMESTAMP
            """,
            (family.id, family.surname, family.head_name, family.phone, family.size, family.notes),
        )
    except Exception as exc:
        raise_write_error("families.upsert_family", exc, details=f"family_id={family.id!r}")
