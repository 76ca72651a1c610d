"""Shared DB-layer dataclasses for repository contracts."""

from __future__ import annotations

import sqlite3
from dataclasses import dataclass
from enum import Enum


class RecordStatus(str, Enum):
    """Lifecycle status of an entitlement record.

    ``NOT_CHECKED_IN`` is never stored: it is the implicit status of a family
    with no record in the session.
    """

    NOT_CHECKED_IN = "NOT_CHECKED_IN"
    ACTIVE = "ACTIVE"
    EXHAUSTED = "EXHAUSTED"
    CLOSED = "CLOSED"


class ActionKind(str, Enum):
    """Kinds of state change recorded in the audit log."""

    CHECK_IN = "CHECK_IN"
    SERVE = "SERVE"
    ADJUST = "ADJUST"
    UPDATE_GUESTS = "UPDATE_GUESTS"
    CLOSE = "CLOSE"
    REOPEN = "REOPEN"
    UNDO_CHECK_IN = "UNDO_CHECK_IN"
    RESET = "RESET"
    SYNC = "SYNC"


def derive_status(entitled: int, used: int) -> RecordStatus:
    """Status an open (not CLOSED) record must carry for its counters."""
    return RecordStatus.EXHAUSTED if entitled - used <= 0 else RecordStatus.ACTIVE


@dataclass(slots=True, frozen=True)
class Family:
    """A registered household in the family directory.

    Attributes:
        id: Stable identifier (spreadsheet family id or generated hex id).
        surname: Display name used at the stations.
        head_name: Head of household.
        phone: Secondary natural key for roster matching; may be None.
        size: Base plate entitlement, always >= 1.
        notes: Free text carried over from the roster.
    """

    id: str
    surname: str
    head_name: str
    phone: str | None
    size: int
    notes: str | None = None

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> Family:
        return cls(
            id=row["id"],
            surname=row["surname"],
            head_name=row["head_name"],
            phone=row["phone"],
            size=int(row["size"]),
            notes=row["notes"],
        )


@dataclass(slots=True, frozen=True)
class Session:
    """One live event. Exactly one row carries ``is_current``."""

    id: int
    name: str
    created_at: str
    is_current: bool

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> Session:
        return cls(
            id=int(row["id"]),
            name=row["name"],
            created_at=row["created_at"],
            is_current=bool(row["is_current"]),
        )


@dataclass(slots=True, frozen=True)
class EntitlementRecord:
    """Per-(session, family) ledger row.

    ``entitled`` already includes ``extra_guests``; ``remaining`` is derived
    and never stored.
    """

    id: int
    session_id: int
    family_id: str
    entitled: int
    extra_guests: int
    used: int
    checked_in_at: str | None
    updated_at: str
    status: RecordStatus

    @property
    def remaining(self) -> int:
        return self.entitled - self.used

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> EntitlementRecord:
        return cls(
            id=int(row["id"]),
            session_id=int(row["session_id"]),
            family_id=row["family_id"],
            entitled=int(row["entitled"]),
            extra_guests=int(row["extra_guests"]),
            used=int(row["used"]),
            checked_in_at=row["checked_in_at"],
            updated_at=row["updated_at"],
            status=RecordStatus(row["status"]),
        )


@dataclass(slots=True, frozen=True)
class FamilyStatus:
    """A family joined with its ledger state for one session.

    Families with no record report ``NOT_CHECKED_IN``, zero guests and their
    base size as entitlement.
    """

    family: Family
    record_id: int | None
    extra_guests: int
    entitled: int
    used: int
    checked_in_at: str | None
    status: RecordStatus

    @property
    def remaining(self) -> int:
        return max(0, self.entitled - self.used)

    @classmethod
    def build(cls, family: Family, record: EntitlementRecord | None) -> FamilyStatus:
        if record is None:
            return cls(
                family=family,
                record_id=None,
                extra_guests=0,
                entitled=family.size,
                used=0,
                checked_in_at=None,
                status=RecordStatus.NOT_CHECKED_IN,
            )
        return cls(
            family=family,
            record_id=record.id,
            extra_guests=record.extra_guests,
            entitled=record.entitled,
            used=record.used,
            checked_in_at=record.checked_in_at,
            status=record.status,
        )


@dataclass(slots=True, frozen=True)
class SessionTotals:
    """Aggregate ledger counters for one session.

    Attributes:
        total_families: Families in the directory.
        families_checked_in: Records with a check-in timestamp.
        plates_entitled: Capacity of the checked-in families.
        plates_served: Sum of ``used`` across the session.
    """

    total_families: int
    families_checked_in: int
    plates_entitled: int
    plates_served: int
