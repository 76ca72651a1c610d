"""Append-only audit writer for the entitlement ledger.

Overview
--------
The audit log is the **authoritative record** for dispute resolution ("did we
really serve them twice?"). Every state-changing ledger operation appends one
entry, in the same SQLite transaction as the mutation it describes. An entry
therefore exists if and only if its mutation committed: a rejected serve or a
lost compare-and-swap leaves no trace here.

Envelope format
---------------
Each row stores the typed before/after payloads (see
:mod:`plate_server.audit.payloads`) as JSON, plus a checksum computed over the
canonical JSON serialisation of the whole envelope body:

.. code-block:: json

    {
      "actor_role":  "volunteer",
      "session_id":  3,
      "family_id":   "F001",
      "action_kind": "SERVE",
      "before":      {"used": 0, "status": "ACTIVE"},
      "after":       {"used": 2, "status": "ACTIVE"},
      "detail":      "Served 2 plates",
      "station_id":  "food-1",
      "created_at":  "2026-02-27T14:23:01.452345+00:00"
    }

``checksum`` is ``sha256:<hex>`` of that body serialised with
``sort_keys=True``. :func:`verify_entry` recomputes it to detect rows edited
outside the application (the schema triggers already reject UPDATE/DELETE
through SQLite itself).

Failure semantics
-----------------
A failed audit insert raises :class:`~plate_server.db.errors.DatabaseWriteError`
and rolls back the mutation with it. Unlike a best-effort activity log, a
ledger change without its audit entry is never committed.
"""

from __future__ import annotations

import hashlib
import json
import logging
import sqlite3
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any, Literal

from plate_server.audit.payloads import (
    Payload,
    check_payload,
    decode_payload,
    encode_payload,
)
from plate_server.db import audit_repo
from plate_server.db.audit_repo import AuditRow
from plate_server.db.types import ActionKind

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AuditEntry:
    """One decoded audit log entry.

    Attributes:
        id: Monotonic row id; newer entries always have larger ids.
        actor_role: ``"volunteer"``, ``"admin"`` or ``"system"``.
        session_id: Session the change belongs to (None for directory-only
            events recorded while no session exists).
        family_id: Family affected, or None for session-wide events.
        action_kind: What happened.
        before: Typed snapshot prior to the change (schema per kind).
        after: Typed snapshot after the change (schema per kind).
        detail: Human-readable description shown in dispute views.
        station_id: Station that issued the request, when known.
        created_at: ISO-8601 UTC timestamp.
        checksum: ``sha256:`` digest of the canonical envelope body.
    """

    id: int
    actor_role: str
    session_id: int | None
    family_id: str | None
    action_kind: ActionKind
    before: Payload | None
    after: Payload | None
    detail: str
    station_id: str | None
    created_at: str
    checksum: str

    def to_dict(self) -> dict[str, Any]:
        """JSON-ready view used by the HTTP layer."""
        return {
            "id": self.id,
            "actor_role": self.actor_role,
            "session_id": self.session_id,
            "family_id": self.family_id,
            "action_kind": self.action_kind.value,
            "before": encode_payload(self.before),
            "after": encode_payload(self.after),
            "detail": self.detail,
            "station_id": self.station_id,
            "created_at": self.created_at,
        }


@dataclass(frozen=True)
class AuditVerifyResult:
    """Outcome of :func:`verify_entry`."""

    status: Literal["ok", "missing", "corrupt"]
    error_detail: str | None = None


def record_entry(
    conn: sqlite3.Connection,
    *,
    kind: ActionKind,
    actor_role: str,
    session_id: int | None,
    family_id: str | None,
    before: Payload | None = None,
    after: Payload | None = None,
    detail: str = "",
    station_id: str | None = None,
) -> AuditEntry:
    """Append one audit entry inside the caller's write transaction.

    Args:
        conn: Open write connection that already holds the mutation.
        kind: Action kind; selects the payload schema.
        actor_role: Role string of the caller.
        session_id: Owning session (None only for session-less directory syncs).
        family_id: Affected family, None for session-wide events.
        before: Snapshot prior to the change.
        after: Snapshot after the change.
        detail: Human-readable description.
        station_id: Optional issuing station.

    Returns:
        The stored entry.

    Raises:
        ValueError: If a payload does not match the schema for ``kind``.
        DatabaseWriteError: If the insert fails.
    """
    check_payload(kind, "before", before)
    check_payload(kind, "after", after)

    created_at = datetime.now(UTC).isoformat()
    body = _envelope_body(
        actor_role=actor_role,
        session_id=session_id,
        family_id=family_id,
        action_kind=kind.value,
        before=encode_payload(before),
        after=encode_payload(after),
        detail=detail,
        station_id=station_id,
        created_at=created_at,
    )
    checksum = f"sha256:{_compute_checksum(body)}"

    entry_id = audit_repo.insert_row(
        conn,
        actor_role=actor_role,
        session_id=session_id,
        family_id=family_id,
        action_kind=kind.value,
        before_json=_dumps(body["before"]),
        after_json=_dumps(body["after"]),
        detail=detail,
        station_id=station_id,
        created_at=created_at,
        checksum=checksum,
    )
    logger.debug("audit: recorded %s entry %s for family %r", kind.value, entry_id, family_id)
    return AuditEntry(
        id=entry_id,
        actor_role=actor_role,
        session_id=session_id,
        family_id=family_id,
        action_kind=kind,
        before=before,
        after=after,
        detail=detail,
        station_id=station_id,
        created_at=created_at,
        checksum=checksum,
    )


def list_history(
    *,
    session_id: int | None = None,
    family_id: str | None = None,
    kind: ActionKind | None = None,
    limit: int = 100,
) -> list[AuditEntry]:
    """Return decoded entries newest first."""
    rows = audit_repo.list_rows(
        session_id=session_id,
        family_id=family_id,
        action_kind=kind.value if kind is not None else None,
        limit=limit,
    )
    return [decode_row(row) for row in rows]


def latest_entry(kind: ActionKind) -> AuditEntry | None:
    """Return the newest entry of one kind, across all sessions."""
    rows = audit_repo.list_rows(action_kind=kind.value, limit=1)
    return decode_row(rows[0]) if rows else None


def decode_row(row: AuditRow) -> AuditEntry:
    """Turn a stored row into a typed :class:`AuditEntry`."""
    kind = ActionKind(row.action_kind)
    return AuditEntry(
        id=row.id,
        actor_role=row.actor_role,
        session_id=row.session_id,
        family_id=row.family_id,
        action_kind=kind,
        before=decode_payload(kind, "before", _loads(row.before_json)),
        after=decode_payload(kind, "after", _loads(row.after_json)),
        detail=row.detail,
        station_id=row.station_id,
        created_at=row.created_at,
        checksum=row.checksum,
    )


def verify_entry(entry_id: int) -> AuditVerifyResult:
    """Recompute the checksum of one stored entry.

    Returns ``missing`` when no row has that id, ``corrupt`` when the stored
    payload JSON is unreadable or the checksum does not match.
    """
    row = audit_repo.get_row(entry_id)
    if row is None:
        return AuditVerifyResult(status="missing")
    try:
        before = _loads(row.before_json)
        after = _loads(row.after_json)
    except json.JSONDecodeError as exc:
        return AuditVerifyResult(status="corrupt", error_detail=f"Payload is not valid JSON: {exc}")

    body = _envelope_body(
        actor_role=row.actor_role,
        session_id=row.session_id,
        family_id=row.family_id,
        action_kind=row.action_kind,
        before=before,
        after=after,
        detail=row.detail,
        station_id=row.station_id,
        created_at=row.created_at,
    )
    expected = f"sha256:{_compute_checksum(body)}"
    if row.checksum != expected:
        return AuditVerifyResult(
            status="corrupt",
            error_detail=f"Checksum mismatch. Recorded: {row.checksum!r}. Expected: {expected!r}.",
        )
    return AuditVerifyResult(status="ok")


# ── Internal helpers ──────────────────────────────────────────────────────────


def _envelope_body(
    *,
    actor_role: str,
    session_id: int | None,
    family_id: str | None,
    action_kind: str,
    before: dict[str, Any] | None,
    after: dict[str, Any] | None,
    detail: str,
    station_id: str | None,
    created_at: str,
) -> dict[str, Any]:
    return {
        "actor_role": actor_role,
        "session_id": session_id,
        "family_id": family_id,
        "action_kind": action_kind,
        "before": before,
        "after": after,
        "detail": detail,
        "station_id": station_id,
        "created_at": created_at,
    }


def _compute_checksum(payload: dict[str, Any]) -> str:
    """SHA-256 hex digest of the canonical JSON serialisation of ``payload``."""
    canonical = json.dumps(payload, ensure_ascii=False, sort_keys=True)
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


def _dumps(data: dict[str, Any] | None) -> str | None:
    return json.dumps(data, ensure_ascii=False, sort_keys=True) if data is not None else None


def _loads(text: str | None) -> dict[str, Any] | None:
    return json.loads(text) if text is not None else None
