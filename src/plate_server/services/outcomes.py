"""Typed outcomes returned by every service operation.

Ledger, session and reconciliation operations never raise for domain
rejections. They return an :class:`ActionResult` whose ``error`` names the
symbolic kind (for the HTTP layer and tests) and whose ``message`` is the
sentence a volunteer reads at the station. Only storage failures
(:class:`~plate_server.db.errors.DatabaseError`) propagate as exceptions.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class ErrorKind(str, Enum):
    """Symbolic rejection kinds."""

    VALIDATION = "Validation"
    NOT_FOUND = "NotFound"
    ALREADY_CHECKED_IN = "AlreadyCheckedIn"
    NOT_CHECKED_IN = "NotCheckedIn"
    INSUFFICIENT_REMAINING = "InsufficientRemaining"
    CONCURRENCY_CONFLICT = "ConcurrencyConflict"
    FOOD_ALREADY_SERVED = "FoodAlreadyServed"
    RECORD_CLOSED = "RecordClosed"
    PERMISSION_DENIED = "PermissionDenied"
    UPSTREAM = "Upstream"


DEFAULT_MESSAGES: dict[ErrorKind, str] = {
    ErrorKind.VALIDATION: "Invalid request.",
    ErrorKind.NOT_FOUND: "Family not found.",
    ErrorKind.ALREADY_CHECKED_IN: "Family already checked in.",
    ErrorKind.NOT_CHECKED_IN: "Check-in record not found. Please check the family in first.",
    ErrorKind.INSUFFICIENT_REMAINING: "Not enough plates remaining.",
    ErrorKind.CONCURRENCY_CONFLICT: (
        "Plate update failed. Someone else may have updated this record. "
        "Please refresh and try again."
    ),
    ErrorKind.FOOD_ALREADY_SERVED: "Food has already been served. Ask an admin to undo this check-in.",
    ErrorKind.RECORD_CLOSED: "This record is closed. Ask an admin to reopen it.",
    ErrorKind.PERMISSION_DENIED: "Only an admin can do that.",
    ErrorKind.UPSTREAM: "Could not reach the roster spreadsheet. Check the network connection.",
}

# Kinds the caller resolves by refreshing rather than fixing the request
CONFLICT_KINDS = frozenset(
    {
        ErrorKind.ALREADY_CHECKED_IN,
        ErrorKind.NOT_CHECKED_IN,
        ErrorKind.INSUFFICIENT_REMAINING,
        ErrorKind.CONCURRENCY_CONFLICT,
        ErrorKind.FOOD_ALREADY_SERVED,
        ErrorKind.RECORD_CLOSED,
    }
)


@dataclass(frozen=True)
class ActionResult:
    """Result of one service operation.

    Attributes:
        success: True when the change committed (or the query ran).
        message: Human-readable outcome for volunteers.
        error: Rejection kind, None on success.
        data: Operation-specific payload (``record_id``, ``remaining``...).
    """

    success: bool
    message: str
    error: ErrorKind | None = None
    data: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def ok(cls, message: str, **data: Any) -> ActionResult:
        return cls(success=True, message=message, data=data)

    @classmethod
    def fail(cls, kind: ErrorKind, message: str | None = None, **data: Any) -> ActionResult:
        return cls(success=False, message=message or DEFAULT_MESSAGES[kind], error=kind, data=data)

    @property
    def is_conflict(self) -> bool:
        return self.error in CONFLICT_KINDS
