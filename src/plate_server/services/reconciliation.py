"""Roster reconciliation: idempotent upsert of the family directory.

A sync run takes raw roster rows (from a :mod:`~plate_server.services.roster`
provider or straight from an API request) and brings the family directory in
line with them:

1. **Parse** every row on its own. Invalid rows become ``"Row N: ..."``
   errors and are skipped; one bad row never aborts the run.
2. **Match** each valid row to an existing family: by its identifier when it
   has one, otherwise by phone, otherwise by the case-insensitive
   (surname, head name) pair.
3. **Apply** in batches of ``config.sync.batch_size``. Each batch is its own
   write transaction, so a failing batch rolls back alone and earlier batches
   stay committed. Matched rows overwrite every field of the family; new rows
   are inserted under their identifier or a generated one.
4. **Summarize** the run in one ``SYNC`` audit entry and a :class:`SyncResult`.

Replaying the same roster matches every row to the family it created the
first time, so a second run inserts nothing.

The engine never touches entitlement records.
"""

from __future__ import annotations

import logging
import uuid
from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass, field
from typing import Any

from plate_server.api.permissions import Permission, has_permission
from plate_server.audit import record_entry
from plate_server.audit.payloads import SyncSummary
from plate_server.config import config
from plate_server.core.bus import ChangeBus
from plate_server.core.events import Events
from plate_server.db import families_repo, sessions_repo
from plate_server.db.connection import connection_scope
from plate_server.db.errors import DatabaseError
from plate_server.db.types import ActionKind, Family
from plate_server.services.outcomes import DEFAULT_MESSAGES, ErrorKind
from plate_server.services.roster import RosterUnavailableError, RowProvider, default_provider

logger = logging.getLogger(__name__)

# Spreadsheet row 1 is the header
FIRST_DATA_ROW = 2

_COLUMNS = ("family_id", "surname", "head_name", "phone", "size", "notes")


@dataclass(frozen=True)
class RosterRow:
    """One validated roster row."""

    row_number: int
    family_id: str | None
    surname: str
    head_name: str
    phone: str | None
    size: int
    notes: str | None


@dataclass
class SyncResult:
    """Outcome of one reconciliation run.

    Attributes:
        success: False when the roster could not be read, held no valid rows,
            or a batch failed.
        message: Summary for the admin dashboard.
        total: Rows seen.
        synced: ``inserted + updated``.
        inserted: New families.
        updated: Existing families overwritten.
        skipped: Rows rejected by validation or duplicated within the run.
        error_count: Valid rows lost to failed batches.
        errors: Literal per-row and per-batch error strings.
        error: Rejection kind when the whole run was refused.
    """

    success: bool
    message: str
    total: int = 0
    synced: int = 0
    inserted: int = 0
    updated: int = 0
    skipped: int = 0
    error_count: int = 0
    errors: list[str] = field(default_factory=list)
    error: ErrorKind | None = None

    def summary(self) -> SyncSummary:
        return SyncSummary(
            total=self.total,
            synced=self.synced,
            inserted=self.inserted,
            updated=self.updated,
            skipped=self.skipped,
            error_count=self.error_count,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "message": self.message,
            "total": self.total,
            "synced": self.synced,
            "inserted": self.inserted,
            "updated": self.updated,
            "skipped": self.skipped,
            "error_count": self.error_count,
            "errors": list(self.errors),
            "error": self.error.value if self.error else None,
        }


def parse_row(raw: Sequence[Any] | Mapping[str, Any], row_number: int) -> tuple[RosterRow | None, str | None]:
    """Validate one raw roster row.

    Accepts either a positional row in spreadsheet column order or a mapping
    keyed by column name (``id`` is accepted for ``family_id``).

    Returns:
        ``(row, None)`` when valid, ``(None, "Row N: ...")`` otherwise.
    """
    if isinstance(raw, Mapping):
        values = {name: raw.get(name) for name in _COLUMNS}
        if values["family_id"] is None:
            values["family_id"] = raw.get("id")
    else:
        padded = list(raw) + [None] * (len(_COLUMNS) - len(raw))
        values = dict(zip(_COLUMNS, padded))

    family_id = _text(values["family_id"])
    surname = _text(values["surname"])
    head_name = _text(values["head_name"])
    phone = _text(values["phone"])
    notes = _text(values["notes"])

    if not surname:
        return None, f"Row {row_number}: Missing surname (column B)"
    if not head_name:
        return None, f"Row {row_number}: Missing head_name (column C)"
    if not family_id and not phone:
        return None, f"Row {row_number}: Missing phone or family_id (column D or A)"
    size = _parse_size(values["size"])
    if size is None:
        return None, f"Row {row_number}: Invalid size (column E) - must be a whole number >= 1"

    return (
        RosterRow(
            row_number=row_number,
            family_id=family_id,
            surname=surname,
            head_name=head_name,
            phone=phone,
            size=size,
            notes=notes,
        ),
        None,
    )


class ReconciliationEngine:
    """Synchronizes the family directory from roster rows.

    Args:
        bus: Change bus for the ``directory:synced`` event.
        batch_size: Rows per write transaction; defaults to
            ``config.sync.batch_size``.
    """

    def __init__(self, bus: ChangeBus | None = None, batch_size: int | None = None):
        self.bus = bus if bus is not None else ChangeBus()
        self.batch_size = batch_size

    def sync_from_provider(
        self, provider: RowProvider | None = None, actor_role: str = "admin"
    ) -> SyncResult:
        """Fetch rows from ``provider`` (the configured sheet by default) and reconcile.

        An unreachable or misconfigured source fails the whole run with
        ``synced == 0`` and leaves the directory untouched.
        """
        if not has_permission(actor_role, Permission.SYNC_ROSTER):
            return _refused(ErrorKind.PERMISSION_DENIED)
        source = provider if provider is not None else default_provider()
        try:
            rows = source.fetch_rows()
        except RosterUnavailableError as e:
            logger.warning("Roster sync aborted: %s", e.message)
            return SyncResult(
                success=False,
                message=DEFAULT_MESSAGES[ErrorKind.UPSTREAM],
                errors=[e.message],
                error=ErrorKind.UPSTREAM,
            )
        return self.reconcile(rows, actor_role=actor_role)

    def reconcile(
        self,
        rows: Iterable[Sequence[Any] | Mapping[str, Any]],
        actor_role: str = "admin",
    ) -> SyncResult:
        """Validate, match and upsert ``rows`` into the directory.

        Row numbers in error messages count the spreadsheet header, so the
        first row is reported as row 2.
        """
        if not has_permission(actor_role, Permission.SYNC_ROSTER):
            return _refused(ErrorKind.PERMISSION_DENIED)

        raw_rows = list(rows)
        result = SyncResult(success=False, message="", total=len(raw_rows))
        if not raw_rows:
            result.message = "No data in roster."
            result.error = ErrorKind.VALIDATION
            return result

        valid: list[RosterRow] = []
        for index, raw in enumerate(raw_rows):
            row, problem = parse_row(raw, index + FIRST_DATA_ROW)
            if row is None:
                result.errors.append(problem)
                result.skipped += 1
            else:
                valid.append(row)

        if not valid:
            result.message = "No valid rows in roster."
            result.error = ErrorKind.VALIDATION
            logger.info("Roster sync found no valid rows (%s skipped)", result.skipped)
            return result

        size = max(1, self.batch_size or config.sync.batch_size)
        claimed: dict[str, int] = {}
        for number, start in enumerate(range(0, len(valid), size), start=1):
            batch = valid[start : start + size]
            try:
                inserted, updated, duplicates, batch_claims = self._apply_batch(batch, claimed)
            except DatabaseError as exc:
                logger.warning("Roster sync batch %s failed: %s", number, exc, exc_info=True)
                result.errors.append(f"Batch {number}: {exc}")
                result.error_count += len(batch)
                continue
            claimed.update(batch_claims)
            result.inserted += inserted
            result.updated += updated
            result.skipped += len(duplicates)
            result.errors.extend(duplicates)

        result.synced = result.inserted + result.updated
        result.success = result.error_count == 0
        result.message = (
            f"Sync complete! Total: {result.total}, Synced: {result.synced}, "
            f"Skipped: {result.skipped}"
        )
        if result.error_count:
            result.message += f", Failed: {result.error_count}"

        self._record_run(result, actor_role)
        logger.info(
            "Roster sync: total=%s inserted=%s updated=%s skipped=%s failed=%s",
            result.total,
            result.inserted,
            result.updated,
            result.skipped,
            result.error_count,
        )
        if result.synced:
            self.bus.emit(
                Events.DIRECTORY_SYNCED,
                {
                    "total": result.total,
                    "synced": result.synced,
                    "inserted": result.inserted,
                    "updated": result.updated,
                    "skipped": result.skipped,
                    "error_count": result.error_count,
                },
                source="reconciliation",
            )
        return result

    def _apply_batch(
        self, batch: list[RosterRow], claimed: dict[str, int]
    ) -> tuple[int, int, list[str], dict[str, int]]:
        """Upsert one batch inside its own write transaction.

        ``claimed`` maps directory ids already written in this run to the row
        that wrote them; a later row resolving to the same family is reported
        as a duplicate instead of overwriting it.
        """
        inserted = updated = 0
        duplicates: list[str] = []
        batch_claims: dict[str, int] = {}
        with connection_scope(immediate=True) as conn:
            for row in batch:
                match_id = families_repo.find_match_id(
                    conn,
                    family_id=row.family_id,
                    phone=row.phone,
                    surname=row.surname,
                    head_name=row.head_name,
                )
                target_id = match_id or row.family_id or uuid.uuid4().hex
                first = claimed.get(target_id) or batch_claims.get(target_id)
                if first is not None:
                    duplicates.append(f"Row {row.row_number}: Duplicate of row {first}")
                    continue
                families_repo.upsert_family(
                    conn,
                    Family(
                        id=target_id,
                        surname=row.surname,
                        head_name=row.head_name,
                        phone=row.phone,
                        size=row.size,
                        notes=row.notes,
                    ),
                )
                batch_claims[target_id] = row.row_number
                if match_id is None:
                    inserted += 1
                else:
                    updated += 1
        return inserted, updated, duplicates, batch_claims

    def _record_run(self, result: SyncResult, actor_role: str) -> None:
        """Append the SYNC audit entry for a run whose batches already committed.

        A storage failure here is only logged; the result is still returned.
        """
        try:
            current = sessions_repo.get_current_session()
            with connection_scope(immediate=True) as conn:
                record_entry(
                    conn,
                    kind=ActionKind.SYNC,
                    actor_role=actor_role.strip().lower(),
                    session_id=current.id if current else None,
                    family_id=None,
                    after=result.summary(),
                    detail=(
                        f"Synced {result.total} rows. Inserted: {result.inserted}, "
                        f"Updated: {result.updated}. Errors: {len(result.errors)}"
                    ),
                )
        except DatabaseError as exc:
            logger.error("Roster sync audit entry was not written: %s", exc, exc_info=True)


def _refused(kind: ErrorKind) -> SyncResult:
    return SyncResult(success=False, message=DEFAULT_MESSAGES[kind], error=kind)


def _text(value: Any) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _parse_size(value: Any) -> int | None:
    if isinstance(value, bool) or value is None:
        return None
    if isinstance(value, int):
        number = value
    else:
        try:
            parsed = float(str(value).strip())
        except ValueError:
            return None
        if not parsed.is_integer():
            return None
        number = int(parsed)
    return number if number >= 1 else None
