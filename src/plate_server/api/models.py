"""
Pydantic models for API requests and responses.

Stations and the admin dashboard talk to the plate server through these
models. Pydantic rejects malformed payloads (a quantity that is not a whole
number, a missing family id) with 422 before any service runs; the services
still validate domain rules such as "quantity must be positive".

Every mutating request carries ``actor_role`` (``volunteer`` or ``admin``)
and an optional ``station_id`` that ends up in the audit trail.
"""

from typing import Any

from pydantic import BaseModel, Field

from plate_server.audit import AuditEntry
from plate_server.db.types import FamilyStatus, Session, SessionTotals

# ============================================================================
# REQUEST MODELS (Client → Server)
# ============================================================================


class StationRequest(BaseModel):
    """
    Common fields of every ledger mutation.

    Attributes:
        session_id: Session the station believes is current
        actor_role: "volunteer" or "admin"
        station_id: Optional station label recorded in the audit log
    """

    session_id: int
    actor_role: str = "volunteer"
    station_id: str | None = None


class CheckInRequest(StationRequest):
    """Check a family in, optionally with approved extra guests."""

    family_id: str
    extra_guests: int = 0


class ServeRequest(StationRequest):
    """Serve ``quantity`` plates to a checked-in family."""

    family_id: str
    quantity: int


class AdjustRequest(StationRequest):
    """
    Admin correction of the plates-used counter.

    Attributes:
        delta: Signed change applied to ``used`` (clamped to 0..entitled)
        reason: Required explanation stored in the audit log
    """

    family_id: str
    delta: int
    reason: str


class StatusRequest(StationRequest):
    """Admin close (``CLOSED``) or reopen (``ACTIVE``) of a record."""

    family_id: str
    status: str


class UndoCheckInRequest(StationRequest):
    """Undo a check-in by record id."""

    record_id: int


class GuestsRequest(StationRequest):
    """Admin change of a checked-in family's extra guests."""

    family_id: str
    extra_guests: int


class StartSessionRequest(BaseModel):
    """
    Start a new event session (admin only).

    Archives the current session's totals and clears its records.
    """

    name: str
    actor_role: str = "volunteer"


class SyncRequest(BaseModel):
    """
    Run a roster reconciliation.

    Attributes:
        rows: Roster rows in spreadsheet column order, or mappings keyed by
              column name. When omitted the configured Google Sheet is read.
        actor_role: Must be "admin".
    """

    rows: list[list[Any] | dict[str, Any]] | None = None
    actor_role: str = "volunteer"


# ============================================================================
# RESPONSE MODELS (Server → Client)
# ============================================================================


class ActionResponse(BaseModel):
    """Successful ledger or session mutation."""

    success: bool = True
    message: str
    data: dict[str, Any] = Field(default_factory=dict)


class FamilyStatusModel(BaseModel):
    """A family with its computed state in one session."""

    family_id: str
    surname: str
    head_name: str
    phone: str | None
    size: int
    notes: str | None
    record_id: int | None
    extra_guests: int
    entitled: int
    used: int
    remaining: int
    checked_in_at: str | None
    status: str

    @classmethod
    def from_status(cls, status: FamilyStatus) -> "FamilyStatusModel":
        family = status.family
        return cls(
            family_id=family.id,
            surname=family.surname,
            head_name=family.head_name,
            phone=family.phone,
            size=family.size,
            notes=family.notes,
            record_id=status.record_id,
            extra_guests=status.extra_guests,
            entitled=status.entitled,
            used=status.used,
            remaining=status.remaining,
            checked_in_at=status.checked_in_at,
            status=status.status.value,
        )


class FamilyListResponse(BaseModel):
    families: list[FamilyStatusModel]


class SessionModel(BaseModel):
    id: int
    name: str
    created_at: str
    is_current: bool

    @classmethod
    def from_session(cls, session: Session) -> "SessionModel":
        return cls(
            id=session.id,
            name=session.name,
            created_at=session.created_at,
            is_current=session.is_current,
        )


class SessionStatsResponse(BaseModel):
    """
    Dashboard counters for one session.

    Attributes:
        plates_entitled: Capacity of the checked-in families
        plates_served: Plates redeemed so far
        last_sync: Timestamp of the latest roster sync, if any
    """

    session_id: int
    total_families: int
    families_checked_in: int
    plates_entitled: int
    plates_served: int
    last_sync: str | None = None

    @classmethod
    def from_totals(
        cls, session_id: int, totals: SessionTotals, last_sync: str | None
    ) -> "SessionStatsResponse":
        return cls(
            session_id=session_id,
            total_families=totals.total_families,
            families_checked_in=totals.families_checked_in,
            plates_entitled=totals.plates_entitled,
            plates_served=totals.plates_served,
            last_sync=last_sync,
        )


class SessionSummariesResponse(BaseModel):
    """Archived session summaries, newest first."""

    summaries: list[dict[str, Any]]


class AuditEntryModel(BaseModel):
    id: int
    actor_role: str
    session_id: int | None
    family_id: str | None
    action_kind: str
    before: dict[str, Any] | None
    after: dict[str, Any] | None
    detail: str
    station_id: str | None
    created_at: str

    @classmethod
    def from_entry(cls, entry: AuditEntry) -> "AuditEntryModel":
        return cls(**entry.to_dict())


class AuditListResponse(BaseModel):
    entries: list[AuditEntryModel]


class SyncResponse(BaseModel):
    """Result of a roster sync (also returned, with 4xx/5xx, on failure)."""

    success: bool
    message: str
    total: int
    synced: int
    inserted: int
    updated: int
    skipped: int
    error_count: int
    errors: list[str]
    error: str | None = None


class HealthResponse(BaseModel):
    status: str
    version: str
    current_session_id: int | None = None
