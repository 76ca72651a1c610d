"""Typed before/after payloads for audit entries.

Each :class:`~plate_server.db.types.ActionKind` has a fixed payload schema
(see :data:`PAYLOAD_SCHEMAS`). The writer refuses payloads that do not match
their kind and the reader decodes stored JSON back into the same dataclasses,
so tests and dispute tooling can compare entries field by field instead of
poking at untyped blobs.

Schema table
------------
::

    CHECK_IN       before: -                 after: CheckInSnapshot
    SERVE          before: UsageSnapshot     after: UsageSnapshot
    ADJUST         before: UsageSnapshot     after: UsageSnapshot
    UPDATE_GUESTS  before: GuestsSnapshot    after: GuestsSnapshot
    CLOSE          before: StatusSnapshot    after: StatusSnapshot
    REOPEN         before: StatusSnapshot    after: StatusSnapshot
    UNDO_CHECK_IN  before: RecordSnapshot    after: -
    RESET          before: -                 after: SessionSummary
    SYNC           before: -                 after: SyncSummary
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, fields
from typing import Any

from plate_server.db.types import ActionKind


@dataclass(frozen=True)
class CheckInSnapshot:
    entitled: int
    extra_guests: int


@dataclass(frozen=True)
class UsageSnapshot:
    used: int
    status: str


@dataclass(frozen=True)
class GuestsSnapshot:
    extra_guests: int
    entitled: int


@dataclass(frozen=True)
class StatusSnapshot:
    status: str


@dataclass(frozen=True)
class RecordSnapshot:
    record_id: int
    entitled: int
    extra_guests: int
    used: int
    status: str
    checked_in_at: str | None


@dataclass(frozen=True)
class SessionSummary:
    """Aggregate archived when a session is replaced."""

    session_id: int
    session_name: str
    total_families: int
    families_checked_in: int
    plates_entitled: int
    plates_served: int
    archived_at: str
    next_session_name: str


@dataclass(frozen=True)
class SyncSummary:
    total: int
    synced: int
    inserted: int
    updated: int
    skipped: int
    error_count: int


Payload = (
    CheckInSnapshot
    | UsageSnapshot
    | GuestsSnapshot
    | StatusSnapshot
    | RecordSnapshot
    | SessionSummary
    | SyncSummary
)

PAYLOAD_SCHEMAS: dict[ActionKind, tuple[type | None, type | None]] = {
    ActionKind.CHECK_IN: (None, CheckInSnapshot),
    ActionKind.SERVE: (UsageSnapshot, UsageSnapshot),
    ActionKind.ADJUST: (UsageSnapshot, UsageSnapshot),
    ActionKind.UPDATE_GUESTS: (GuestsSnapshot, GuestsSnapshot),
    ActionKind.CLOSE: (StatusSnapshot, StatusSnapshot),
    ActionKind.REOPEN: (StatusSnapshot, StatusSnapshot),
    ActionKind.UNDO_CHECK_IN: (RecordSnapshot, None),
    ActionKind.RESET: (None, SessionSummary),
    ActionKind.SYNC: (None, SyncSummary),
}


def check_payload(kind: ActionKind, slot: str, payload: Payload | None) -> None:
    """Raise ValueError unless ``payload`` matches the schema for ``kind``.

    Args:
        kind: Action kind being recorded.
        slot: ``"before"`` or ``"after"``.
        payload: The dataclass instance (or None) supplied by the caller.
    """
    before_type, after_type = PAYLOAD_SCHEMAS[kind]
    expected = before_type if slot == "before" else after_type
    if expected is None:
        if payload is not None:
            raise ValueError(f"{kind.value} entries carry no {slot} payload")
        return
    if type(payload) is not expected:
        raise ValueError(
            f"{kind.value} {slot} payload must be {expected.__name__}, "
            f"got {type(payload).__name__}"
        )


def encode_payload(payload: Payload | None) -> dict[str, Any] | None:
    """Convert a payload dataclass into a JSON-ready dict."""
    return asdict(payload) if payload is not None else None


def decode_payload(kind: ActionKind, slot: str, data: dict[str, Any] | None) -> Payload | None:
    """Rebuild the typed payload for ``kind``/``slot`` from stored JSON.

    Unknown keys are ignored so older rows stay readable after a payload gains
    a field; missing keys raise ``TypeError`` from the dataclass constructor.
    """
    if data is None:
        return None
    before_type, after_type = PAYLOAD_SCHEMAS[kind]
    target = before_type if slot == "before" else after_type
    if target is None:
        return None
    names = {f.name for f in fields(target)}
    return target(**{key: value for key, value in data.items() if key in names})
