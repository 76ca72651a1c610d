"""Entitlement ledger: the guarded check-in / serve state machine.

Every volunteer and admin action that changes a family's plate counters
enters here. Each operation follows the same pattern:

1. Validate input and the caller's role (no storage touched on rejection).
2. Read the family and its (session, family) record.
3. Apply the change inside one write transaction, together with its audit
   entry. If the guarded write affects zero rows the transaction carries no
   audit entry and the caller gets a conflict outcome.
4. After commit, publish a change event on the bus.

Concurrency
-----------
``serve`` is the only operation where two stations can race on the same
counter, so it uses optimistic concurrency: the update is keyed on the
``used`` value read in step 2 (:func:`records_repo.compare_and_swap_used`).
A lost race is reported as ``ConcurrencyConflict`` and is never retried
here; the station refreshes and resubmits.

Every write takes the SQLite write lock up front (``BEGIN IMMEDIATE``), so
two stations wait on each other instead of failing with "database is
locked". For ``serve`` the read happens before the lock, which is what makes
the swap optimistic. Admin operations (adjust, extra guests, status changes,
forced undo) are authoritative: they read the row inside the locked
transaction and are never rejected by a concurrent serve.

Record lifecycle::

    (none) --check_in--> ACTIVE <--adjust/guests--> EXHAUSTED
    ACTIVE/EXHAUSTED --set_status(CLOSED)--> CLOSED
    CLOSED --set_status(ACTIVE)--> ACTIVE or EXHAUSTED
    any --undo_check_in--> (none)
"""

from __future__ import annotations

import logging
from datetime import UTC, datetime

from plate_server.api.permissions import Permission, has_permission
from plate_server.audit import AuditEntry, list_history, record_entry
from plate_server.audit.payloads import (
    CheckInSnapshot,
    GuestsSnapshot,
    RecordSnapshot,
    StatusSnapshot,
    UsageSnapshot,
)
from plate_server.config import config
from plate_server.core.bus import ChangeBus
from plate_server.core.events import Events
from plate_server.db import families_repo, records_repo, sessions_repo
from plate_server.db.connection import connection_scope
from plate_server.db.types import (
    ActionKind,
    EntitlementRecord,
    FamilyStatus,
    RecordStatus,
    derive_status,
)
from plate_server.services.outcomes import ActionResult, ErrorKind

logger = logging.getLogger(__name__)

SESSION_ENDED_MESSAGE = "This event session has ended. Refresh to load the current session."


def _now() -> str:
    return datetime.now(UTC).isoformat()


def _role_value(actor_role: str) -> str:
    return actor_role.strip().lower()


def _is_count(value: object) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


class EntitlementLedger:
    """Guarded operations on per-(session, family) entitlement records.

    Args:
        bus: Change bus to publish committed changes on. Defaults to the
            process-wide singleton.
    """

    def __init__(self, bus: ChangeBus | None = None):
        self.bus = bus if bus is not None else ChangeBus()

    # =========================================================================
    # STATION OPERATIONS
    # =========================================================================

    def check_in(
        self,
        session_id: int,
        family_id: str,
        extra_guests: int,
        actor_role: str,
        station_id: str | None = None,
    ) -> ActionResult:
        """Create the family's record for this session.

        ``extra_guests`` below zero is clamped to zero. A second check-in for
        the same (session, family) is rejected with ``AlreadyCheckedIn``;
        the UNIQUE constraint settles the race between two entry stations.

        Returns:
            ``data`` carries ``record_id``, ``entitled`` and ``status``.
        """
        rejection = self._check_role(actor_role, Permission.CHECK_IN)
        if rejection:
            return rejection
        station, rejection = self._clean_station_id(station_id)
        if rejection:
            return rejection
        rejection = self._check_session(session_id)
        if rejection:
            return rejection
        if not _is_count(extra_guests):
            return ActionResult.fail(ErrorKind.VALIDATION, "Extra guests must be a whole number.")
        extra = max(0, extra_guests)

        family = families_repo.get_family(family_id)
        if family is None:
            return ActionResult.fail(ErrorKind.NOT_FOUND)

        if records_repo.get_record(session_id, family_id) is not None:
            logger.info("check-in rejected: family %r already checked in", family_id)
            return ActionResult.fail(ErrorKind.ALREADY_CHECKED_IN)

        entitled = family.size + extra
        status = derive_status(entitled, 0)
        checked_in_at = _now()

        with connection_scope(immediate=True) as conn:
            current = sessions_repo.get_current_session(conn)
            if current is None or current.id != session_id:
                logger.info("check-in rejected: session %s ended before the write", session_id)
                return ActionResult.fail(ErrorKind.VALIDATION, SESSION_ENDED_MESSAGE)
            record_id = records_repo.insert_record(
                conn,
                session_id=session_id,
                family_id=family_id,
                entitled=entitled,
                extra_guests=extra,
                status=status,
                checked_in_at=checked_in_at,
            )
            if record_id is not None:
                record_entry(
                    conn,
                    kind=ActionKind.CHECK_IN,
                    actor_role=_role_value(actor_role),
                    session_id=session_id,
                    family_id=family_id,
                    after=CheckInSnapshot(entitled=entitled, extra_guests=extra),
                    detail=f"Checked in {family.surname} ({entitled} plates)",
                    station_id=station,
                )

        if record_id is None:
            logger.info("check-in lost race: family %r already checked in", family_id)
            return ActionResult.fail(ErrorKind.ALREADY_CHECKED_IN)

        self.bus.emit(
            Events.LEDGER_CHECKED_IN,
            {
                "session_id": session_id,
                "family_id": family_id,
                "record_id": record_id,
                "entitled": entitled,
                "extra_guests": extra,
                "station_id": station,
            },
        )
        return ActionResult.ok(
            f"Checked in {family.surname} family.",
            record_id=record_id,
            entitled=entitled,
            status=status.value,
        )

    def serve(
        self,
        session_id: int,
        family_id: str,
        quantity: int,
        actor_role: str,
        station_id: str | None = None,
    ) -> ActionResult:
        """Redeem ``quantity`` plates under compare-and-swap.

        Returns:
            ``data`` carries ``used``, ``remaining`` and ``status``.
        """
        rejection = self._check_role(actor_role, Permission.SERVE)
        if rejection:
            return rejection
        if not _is_count(quantity) or quantity < 1:
            return ActionResult.fail(ErrorKind.VALIDATION, "Invalid quantity.")
        station, rejection = self._clean_station_id(station_id)
        if rejection:
            return rejection
        rejection = self._check_session(session_id)
        if rejection:
            return rejection

        family = families_repo.get_family(family_id)
        if family is None:
            return ActionResult.fail(ErrorKind.NOT_FOUND)

        record = records_repo.get_record(session_id, family_id)
        if record is None:
            return ActionResult.fail(ErrorKind.NOT_CHECKED_IN)
        if record.status is RecordStatus.CLOSED:
            logger.info("serve rejected: record %s is closed", record.id)
            return ActionResult.fail(ErrorKind.RECORD_CLOSED)
        if quantity > record.remaining:
            logger.info(
                "serve rejected: %s requested, %s remaining for %r",
                quantity,
                record.remaining,
                family_id,
            )
            return ActionResult.fail(
                ErrorKind.INSUFFICIENT_REMAINING,
                f"Exceeds limit. Remaining: {record.remaining}",
                remaining=record.remaining,
            )

        new_used = record.used + quantity
        new_status = derive_status(record.entitled, new_used)
        before = UsageSnapshot(used=record.used, status=record.status.value)
        after = UsageSnapshot(used=new_used, status=new_status.value)

        with connection_scope(immediate=True) as conn:
            swapped = records_repo.compare_and_swap_used(
                conn,
                record_id=record.id,
                expected_used=record.used,
                new_used=new_used,
                new_status=new_status,
                updated_at=_now(),
            )
            if swapped:
                record_entry(
                    conn,
                    kind=ActionKind.SERVE,
                    actor_role=_role_value(actor_role),
                    session_id=session_id,
                    family_id=family_id,
                    before=before,
                    after=after,
                    detail=f"Served {quantity} plate{'s' if quantity != 1 else ''}",
                    station_id=station,
                )

        if not swapped:
            logger.warning(
                "serve conflict on record %s: used changed since read (expected %s)",
                record.id,
                record.used,
            )
            return ActionResult.fail(ErrorKind.CONCURRENCY_CONFLICT)

        remaining = record.entitled - new_used
        self.bus.emit(
            Events.LEDGER_SERVED,
            {
                "session_id": session_id,
                "family_id": family_id,
                "record_id": record.id,
                "quantity": quantity,
                "used": new_used,
                "remaining": remaining,
                "status": new_status.value,
                "station_id": station,
            },
        )
        return ActionResult.ok(
            f"Served {quantity}. Remaining: {remaining}",
            used=new_used,
            remaining=remaining,
            status=new_status.value,
        )

    def undo_check_in(
        self,
        session_id: int,
        record_id: int,
        actor_role: str,
        station_id: str | None = None,
    ) -> ActionResult:
        """Delete a record entirely.

        Volunteers may only undo while nothing has been served; admins may
        always undo.
        """
        rejection = self._check_role(actor_role, Permission.UNDO_UNSERVED_CHECK_IN)
        if rejection:
            return rejection
        station, rejection = self._clean_station_id(station_id)
        if rejection:
            return rejection
        rejection = self._check_session(session_id)
        if rejection:
            return rejection
        forced = has_permission(actor_role, Permission.FORCE_UNDO_CHECK_IN)

        result: ActionResult | None = None
        record: EntitlementRecord | None = None
        with connection_scope(immediate=True) as conn:
            record = records_repo.get_record_by_id(session_id, record_id, conn)
            if record is None:
                result = ActionResult.fail(ErrorKind.NOT_FOUND, "Check-in record not found.")
            elif not forced and record.used > 0:
                result = ActionResult.fail(ErrorKind.FOOD_ALREADY_SERVED)
            elif not records_repo.delete_record(
                conn, record_id=record.id, expected_used=None if forced else 0
            ):
                result = ActionResult.fail(ErrorKind.CONCURRENCY_CONFLICT)
            else:
                record_entry(
                    conn,
                    kind=ActionKind.UNDO_CHECK_IN,
                    actor_role=_role_value(actor_role),
                    session_id=session_id,
                    family_id=record.family_id,
                    before=RecordSnapshot(
                        record_id=record.id,
                        entitled=record.entitled,
                        extra_guests=record.extra_guests,
                        used=record.used,
                        status=record.status.value,
                        checked_in_at=record.checked_in_at,
                    ),
                    detail=(
                        f"Check-in undone ({record.used} plates already served)"
                        if record.used
                        else "Check-in undone"
                    ),
                    station_id=station,
                )

        if result is not None:
            logger.info("undo check-in %s rejected: %s", record_id, result.error.value)
            return result

        self.bus.emit(
            Events.LEDGER_CHECK_IN_UNDONE,
            {"session_id": session_id, "family_id": record.family_id, "record_id": record.id},
        )
        return ActionResult.ok("Check-in undone.", record_id=record.id, family_id=record.family_id)

    # =========================================================================
    # ADMIN OPERATIONS
    # =========================================================================

    def adjust(
        self,
        session_id: int,
        family_id: str,
        delta: int,
        reason: str,
        actor_role: str,
        station_id: str | None = None,
    ) -> ActionResult:
        """Correct the ``used`` counter by ``delta``.

        The result is clamped to ``0..entitled``. A CLOSED record stays
        closed; otherwise the status follows the new remaining count, which
        reopens an EXHAUSTED record when plates are given back.
        """
        rejection = self._check_role(actor_role, Permission.ADJUST_USAGE)
        if rejection:
            return rejection
        if not _is_count(delta) or delta == 0:
            return ActionResult.fail(ErrorKind.VALIDATION, "Adjustment must be a non-zero whole number.")
        reason = (reason or "").strip()
        if not reason:
            return ActionResult.fail(ErrorKind.VALIDATION, "A reason is required for adjustments.")
        station, rejection = self._clean_station_id(station_id)
        if rejection:
            return rejection
        rejection = self._check_session(session_id)
        if rejection:
            return rejection
        if families_repo.get_family(family_id) is None:
            return ActionResult.fail(ErrorKind.NOT_FOUND)

        result: ActionResult | None = None
        with connection_scope(immediate=True) as conn:
            record = records_repo.get_record(session_id, family_id, conn)
            if record is None:
                result = ActionResult.fail(ErrorKind.NOT_FOUND, "Check-in record not found.")
            else:
                new_used = min(record.entitled, max(0, record.used + delta))
                new_status = (
                    RecordStatus.CLOSED
                    if record.status is RecordStatus.CLOSED
                    else derive_status(record.entitled, new_used)
                )
                records_repo.overwrite_counters(
                    conn,
                    record_id=record.id,
                    entitled=record.entitled,
                    extra_guests=record.extra_guests,
                    used=new_used,
                    status=new_status,
                    updated_at=_now(),
                )
                record_entry(
                    conn,
                    kind=ActionKind.ADJUST,
                    actor_role=_role_value(actor_role),
                    session_id=session_id,
                    family_id=family_id,
                    before=UsageSnapshot(used=record.used, status=record.status.value),
                    after=UsageSnapshot(used=new_used, status=new_status.value),
                    detail=f"Adjusted by {delta:+d}: {reason}",
                    station_id=station,
                )

        if result is not None:
            return result

        remaining = record.entitled - new_used
        self.bus.emit(
            Events.LEDGER_ADJUSTED,
            {
                "session_id": session_id,
                "family_id": family_id,
                "record_id": record.id,
                "delta": delta,
                "used": new_used,
                "remaining": remaining,
                "status": new_status.value,
            },
        )
        return ActionResult.ok(
            f"Adjusted. Used: {new_used}, remaining: {remaining}",
            used=new_used,
            remaining=remaining,
            status=new_status.value,
        )

    def update_extra_guests(
        self,
        session_id: int,
        family_id: str,
        extra_guests: int,
        actor_role: str,
        station_id: str | None = None,
    ) -> ActionResult:
        """Change the approved extra guests of a checked-in family.

        Entitlement becomes family size plus ``extra_guests``. It may not
        drop below the plates already served.
        """
        rejection = self._check_role(actor_role, Permission.UPDATE_GUESTS)
        if rejection:
            return rejection
        if not _is_count(extra_guests) or extra_guests < 0:
            return ActionResult.fail(ErrorKind.VALIDATION, "Extra guests must be zero or more.")
        station, rejection = self._clean_station_id(station_id)
        if rejection:
            return rejection
        rejection = self._check_session(session_id)
        if rejection:
            return rejection
        family = families_repo.get_family(family_id)
        if family is None:
            return ActionResult.fail(ErrorKind.NOT_FOUND)

        new_entitled = family.size + extra_guests
        result: ActionResult | None = None
        with connection_scope(immediate=True) as conn:
            record = records_repo.get_record(session_id, family_id, conn)
            if record is None:
                result = ActionResult.fail(ErrorKind.NOT_FOUND, "Check-in record not found.")
            elif new_entitled < record.used:
                result = ActionResult.fail(
                    ErrorKind.VALIDATION,
                    f"Cannot reduce plates below the {record.used} already served.",
                )
            else:
                new_status = (
                    RecordStatus.CLOSED
                    if record.status is RecordStatus.CLOSED
                    else derive_status(new_entitled, record.used)
                )
                records_repo.overwrite_counters(
                    conn,
                    record_id=record.id,
                    entitled=new_entitled,
                    extra_guests=extra_guests,
                    used=record.used,
                    status=new_status,
                    updated_at=_now(),
                )
                record_entry(
                    conn,
                    kind=ActionKind.UPDATE_GUESTS,
                    actor_role=_role_value(actor_role),
                    session_id=session_id,
                    family_id=family_id,
                    before=GuestsSnapshot(
                        extra_guests=record.extra_guests, entitled=record.entitled
                    ),
                    after=GuestsSnapshot(extra_guests=extra_guests, entitled=new_entitled),
                    detail=f"Extra guests {record.extra_guests} -> {extra_guests}",
                    station_id=station,
                )

        if result is not None:
            return result

        self.bus.emit(
            Events.LEDGER_GUESTS_UPDATED,
            {
                "session_id": session_id,
                "family_id": family_id,
                "record_id": record.id,
                "extra_guests": extra_guests,
                "entitled": new_entitled,
                "status": new_status.value,
            },
        )
        return ActionResult.ok(
            f"Guests updated. Entitled: {new_entitled}",
            entitled=new_entitled,
            remaining=new_entitled - record.used,
            status=new_status.value,
        )

    def set_status(
        self,
        session_id: int,
        family_id: str,
        new_status: RecordStatus | str,
        actor_role: str,
        station_id: str | None = None,
    ) -> ActionResult:
        """Close or reopen a record.

        Reopening (``ACTIVE``) a record with nothing remaining lands on
        EXHAUSTED. Setting the status a record already has is a no-op and
        writes no audit entry.
        """
        rejection = self._check_role(actor_role, Permission.SET_STATUS)
        if rejection:
            return rejection
        try:
            requested = RecordStatus(
                new_status.strip().upper() if isinstance(new_status, str) else new_status
            )
        except ValueError:
            requested = None
        if requested not in (RecordStatus.ACTIVE, RecordStatus.CLOSED):
            return ActionResult.fail(ErrorKind.VALIDATION, "Status must be ACTIVE or CLOSED.")
        station, rejection = self._clean_station_id(station_id)
        if rejection:
            return rejection
        rejection = self._check_session(session_id)
        if rejection:
            return rejection
        if families_repo.get_family(family_id) is None:
            return ActionResult.fail(ErrorKind.NOT_FOUND)

        result: ActionResult | None = None
        with connection_scope(immediate=True) as conn:
            record = records_repo.get_record(session_id, family_id, conn)
            if record is None:
                result = ActionResult.fail(ErrorKind.NOT_FOUND, "Check-in record not found.")
            else:
                target = (
                    RecordStatus.CLOSED
                    if requested is RecordStatus.CLOSED
                    else derive_status(record.entitled, record.used)
                )
                if target is record.status:
                    result = ActionResult.ok(
                        f"Record is already {target.value}.", status=target.value
                    )
                else:
                    records_repo.set_status(
                        conn, record_id=record.id, status=target, updated_at=_now()
                    )
                    record_entry(
                        conn,
                        kind=ActionKind.CLOSE if target is RecordStatus.CLOSED else ActionKind.REOPEN,
                        actor_role=_role_value(actor_role),
                        session_id=session_id,
                        family_id=family_id,
                        before=StatusSnapshot(status=record.status.value),
                        after=StatusSnapshot(status=target.value),
                        detail=f"Status {record.status.value} -> {target.value}",
                        station_id=station,
                    )

        if result is not None:
            return result

        self.bus.emit(
            Events.LEDGER_STATUS_CHANGED,
            {
                "session_id": session_id,
                "family_id": family_id,
                "record_id": record.id,
                "before": record.status.value,
                "after": target.value,
            },
        )
        return ActionResult.ok(f"Status set to {target.value}.", status=target.value)

    # =========================================================================
    # QUERIES
    # =========================================================================

    def search(self, query: str, session_id: int) -> list[FamilyStatus]:
        """Find families by surname, head name or phone with their session state.

        Queries shorter than the configured minimum return an empty list.
        """
        needle = (query or "").strip().lower()
        if len(needle) < config.ledger.search_min_chars:
            return []
        families = families_repo.search_families(needle, limit=config.ledger.search_limit)
        records = records_repo.get_records_for_families(session_id, [f.id for f in families])
        return [FamilyStatus.build(family, records.get(family.id)) for family in families]

    def list_checked_in(self, session_id: int) -> list[FamilyStatus]:
        """Checked-in families, newest check-in first."""
        records = records_repo.list_records(session_id, checked_in_only=True)
        families = families_repo.get_families([record.family_id for record in records])
        return [
            FamilyStatus.build(families[record.family_id], record)
            for record in records
            if record.family_id in families
        ]

    def list_families_with_status(self, session_id: int) -> list[FamilyStatus]:
        """The whole directory joined with this session's records."""
        records = {record.family_id: record for record in records_repo.list_records(session_id)}
        return [
            FamilyStatus.build(family, records.get(family.id))
            for family in families_repo.list_families()
        ]

    def audit_history(
        self, session_id: int, family_id: str | None = None, limit: int | None = None
    ) -> list[AuditEntry]:
        """Audit entries for a session (optionally one family), newest first."""
        page = config.ledger.audit_page_size if limit is None else limit
        page = max(1, min(page, config.ledger.audit_max_page_size))
        return list_history(session_id=session_id, family_id=family_id, limit=page)

    # =========================================================================
    # GUARDS
    # =========================================================================

    def _check_role(self, actor_role: str, permission: Permission) -> ActionResult | None:
        if has_permission(actor_role, permission):
            return None
        logger.info("%s denied for role %r", permission.value, actor_role)
        return ActionResult.fail(ErrorKind.PERMISSION_DENIED)

    def _check_session(self, session_id: int) -> ActionResult | None:
        session = sessions_repo.get_session(session_id)
        if session is None:
            return ActionResult.fail(ErrorKind.NOT_FOUND, "Session not found.")
        if not session.is_current:
            return ActionResult.fail(ErrorKind.VALIDATION, SESSION_ENDED_MESSAGE)
        return None

    def _clean_station_id(self, station_id: str | None) -> tuple[str | None, ActionResult | None]:
        if station_id is None:
            return None, None
        station = station_id.strip()
        if not station:
            return None, None
        if len(station) > config.ledger.station_id_max_length:
            return None, ActionResult.fail(
                ErrorKind.VALIDATION,
                f"Station id must be at most {config.ledger.station_id_max_length} characters.",
            )
        return station, None
