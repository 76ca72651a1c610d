"""
Tests for the entitlement ledger (check-in / serve state machine).

Scenarios follow an event night at the stations:
- Entry station checks a family in, food station serves until exhausted
- Rejections leave counters and the audit log untouched
- Lost compare-and-swap races surface as ConcurrencyConflict
- Admin corrections (adjust, guests, close/reopen, forced undo)
"""

import threading
from unittest.mock import patch

import pytest

from plate_server.audit import list_history, verify_entry
from plate_server.core.events import Events
from plate_server.db import families_repo, records_repo
from plate_server.db.types import (
    ActionKind,
    EntitlementRecord,
    Family,
    FamilyStatus,
    RecordStatus,
)
from plate_server.services.outcomes import ErrorKind
from tests.constants import ADMIN, VOLUNTEER


@pytest.fixture
def sid(seeded_families, current_session) -> int:
    return current_session.id


def _record(session_id, family_id="F001"):
    return records_repo.get_record(session_id, family_id)


def _audit_kinds(session_id, family_id="F001"):
    return [entry.action_kind for entry in list_history(session_id=session_id, family_id=family_id)]


# =============================================================================
# CHECK-IN
# =============================================================================


class TestCheckIn:
    @pytest.mark.db
    def test_check_in_creates_record(self, ledger, sid, bus):
        result = ledger.check_in(sid, "F001", 2, VOLUNTEER, station_id="entry-1")

        assert result.success
        assert result.message == "Checked in Garcia family."
        assert result.data["entitled"] == 6
        record = _record(sid)
        assert record.entitled == 6
        assert record.extra_guests == 2
        assert record.used == 0
        assert record.status is RecordStatus.ACTIVE
        assert record.checked_in_at is not None

        entries = list_history(session_id=sid, family_id="F001")
        assert len(entries) == 1
        assert entries[0].action_kind is ActionKind.CHECK_IN
        assert entries[0].station_id == "entry-1"
        assert entries[0].after.entitled == 6

        events = bus.get_event_log(event_type=Events.LEDGER_CHECKED_IN)
        assert events[-1].detail["record_id"] == result.data["record_id"]

    @pytest.mark.db
    def test_negative_guests_are_clamped(self, ledger, sid):
        result = ledger.check_in(sid, "F002", -3, VOLUNTEER)

        assert result.success
        assert _record(sid, "F002").entitled == 2
        assert _record(sid, "F002").extra_guests == 0

    @pytest.mark.db
    def test_second_check_in_is_rejected(self, ledger, sid):
        ledger.check_in(sid, "F001", 0, VOLUNTEER)

        result = ledger.check_in(sid, "F001", 1, VOLUNTEER)

        assert not result.success
        assert result.error is ErrorKind.ALREADY_CHECKED_IN
        assert result.is_conflict
        assert _record(sid).entitled == 4
        assert _audit_kinds(sid) == [ActionKind.CHECK_IN]

    @pytest.mark.db
    def test_unknown_family(self, ledger, sid):
        result = ledger.check_in(sid, "F999", 0, VOLUNTEER)

        assert result.error is ErrorKind.NOT_FOUND
        assert result.message == "Family not found."

    @pytest.mark.db
    def test_non_integer_guests(self, ledger, sid):
        assert ledger.check_in(sid, "F001", True, VOLUNTEER).error is ErrorKind.VALIDATION
        assert ledger.check_in(sid, "F001", 1.5, VOLUNTEER).error is ErrorKind.VALIDATION
        assert _record(sid) is None

    @pytest.mark.db
    def test_unknown_role_is_denied(self, ledger, sid):
        result = ledger.check_in(sid, "F001", 0, "guest")

        assert result.error is ErrorKind.PERMISSION_DENIED
        assert _record(sid) is None

    @pytest.mark.db
    def test_station_id_too_long(self, ledger, sid):
        result = ledger.check_in(sid, "F001", 0, VOLUNTEER, station_id="x" * 13)

        assert result.error is ErrorKind.VALIDATION
        assert _record(sid) is None

    @pytest.mark.db
    def test_blank_station_id_is_dropped(self, ledger, sid):
        ledger.check_in(sid, "F001", 0, VOLUNTEER, station_id="   ")

        assert list_history(session_id=sid)[0].station_id is None

    @pytest.mark.db
    def test_reset_between_lookup_and_write(self, ledger, sessions, sid):
        real_get_family = families_repo.get_family

        def get_family_during_reset(family_id):
            sessions.start_new_session("Night Two", ADMIN)
            return real_get_family(family_id)

        with patch.object(families_repo, "get_family", side_effect=get_family_during_reset):
            result = ledger.check_in(sid, "F001", 0, VOLUNTEER)

        assert result.error is ErrorKind.VALIDATION
        assert "session has ended" in result.message
        assert records_repo.list_records(sid) == []
        assert ActionKind.CHECK_IN not in _audit_kinds(sid)


# =============================================================================
# SERVE
# =============================================================================


class TestServe:
    @pytest.mark.db
    def test_serve_until_exhausted(self, ledger, sid, bus):
        ledger.check_in(sid, "F001", 0, VOLUNTEER)

        first = ledger.serve(sid, "F001", 3, VOLUNTEER, station_id="food-1")
        assert first.success
        assert first.message == "Served 3. Remaining: 1"
        assert first.data == {"used": 3, "remaining": 1, "status": "ACTIVE"}

        second = ledger.serve(sid, "F001", 1, VOLUNTEER)
        assert second.data["status"] == "EXHAUSTED"
        assert _record(sid).status is RecordStatus.EXHAUSTED

        third = ledger.serve(sid, "F001", 1, VOLUNTEER)
        assert third.error is ErrorKind.INSUFFICIENT_REMAINING
        assert third.message == "Exceeds limit. Remaining: 0"

        assert _audit_kinds(sid) == [ActionKind.SERVE, ActionKind.SERVE, ActionKind.CHECK_IN]
        served = bus.get_event_log(event_type=Events.LEDGER_SERVED)
        assert [e.detail["used"] for e in served] == [3, 4]

    @pytest.mark.db
    def test_over_serve_leaves_everything_unchanged(self, ledger, sid):
        ledger.check_in(sid, "F002", 0, VOLUNTEER)

        result = ledger.serve(sid, "F002", 3, VOLUNTEER)

        assert result.error is ErrorKind.INSUFFICIENT_REMAINING
        assert result.data["remaining"] == 2
        assert _record(sid, "F002").used == 0
        assert _audit_kinds(sid, "F002") == [ActionKind.CHECK_IN]

    @pytest.mark.db
    @pytest.mark.parametrize("quantity", [0, -1, 1.0, True])
    def test_invalid_quantity(self, ledger, sid, quantity):
        ledger.check_in(sid, "F001", 0, VOLUNTEER)

        result = ledger.serve(sid, "F001", quantity, VOLUNTEER)

        assert result.error is ErrorKind.VALIDATION
        assert result.message == "Invalid quantity."

    @pytest.mark.db
    def test_not_checked_in(self, ledger, sid):
        result = ledger.serve(sid, "F001", 1, VOLUNTEER)

        assert result.error is ErrorKind.NOT_CHECKED_IN

    @pytest.mark.db
    def test_closed_record(self, ledger, sid):
        ledger.check_in(sid, "F001", 0, VOLUNTEER)
        ledger.set_status(sid, "F001", "CLOSED", ADMIN)

        result = ledger.serve(sid, "F001", 1, VOLUNTEER)

        assert result.error is ErrorKind.RECORD_CLOSED
        assert _record(sid).used == 0

    @pytest.mark.db
    def test_stale_read_is_a_concurrency_conflict(self, ledger, sid):
        ledger.check_in(sid, "F001", 0, VOLUNTEER)
        stale = _record(sid)
        ledger.serve(sid, "F001", 2, VOLUNTEER)

        with patch.object(records_repo, "get_record", return_value=stale):
            result = ledger.serve(sid, "F001", 1, VOLUNTEER)

        assert result.error is ErrorKind.CONCURRENCY_CONFLICT
        assert "Someone else may have updated this record" in result.message
        assert _record(sid).used == 2
        assert _audit_kinds(sid) == [ActionKind.SERVE, ActionKind.CHECK_IN]

    @pytest.mark.db
    def test_racing_stations_never_over_serve(self, ledger, sid):
        ledger.check_in(sid, "F001", 1, VOLUNTEER)  # entitled 5
        start = threading.Barrier(2)
        results = []

        def station():
            start.wait()
            results.append(ledger.serve(sid, "F001", 5, VOLUNTEER))

        threads = [threading.Thread(target=station) for _ in range(2)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        successes = [r for r in results if r.success]
        failures = [r for r in results if not r.success]
        assert len(successes) == 1
        assert failures[0].error in (ErrorKind.CONCURRENCY_CONFLICT, ErrorKind.INSUFFICIENT_REMAINING)
        assert _record(sid).used == 5
        assert _audit_kinds(sid).count(ActionKind.SERVE) == 1

    @pytest.mark.db
    def test_ended_session_is_rejected(self, ledger, sessions, sid):
        ledger.check_in(sid, "F001", 0, VOLUNTEER)
        sessions.start_new_session("Second Night", ADMIN)

        result = ledger.serve(sid, "F001", 1, VOLUNTEER)

        assert result.error is ErrorKind.VALIDATION
        assert "session has ended" in result.message

    @pytest.mark.db
    def test_unknown_session(self, ledger, sid):
        assert ledger.serve(sid + 100, "F001", 1, VOLUNTEER).error is ErrorKind.NOT_FOUND

    @pytest.mark.db
    def test_every_entry_verifies(self, ledger, sid):
        ledger.check_in(sid, "F001", 0, VOLUNTEER)
        ledger.serve(sid, "F001", 2, VOLUNTEER)

        for entry in list_history(session_id=sid):
            assert verify_entry(entry.id).status == "ok"


# =============================================================================
# UNDO CHECK-IN
# =============================================================================


class TestUndoCheckIn:
    @pytest.mark.db
    def test_volunteer_undo_before_serving(self, ledger, sid, bus):
        record_id = ledger.check_in(sid, "F001", 0, VOLUNTEER).data["record_id"]

        result = ledger.undo_check_in(sid, record_id, VOLUNTEER)

        assert result.success
        assert result.data == {"record_id": record_id, "family_id": "F001"}
        assert _record(sid) is None
        undo = list_history(session_id=sid, family_id="F001")[0]
        assert undo.action_kind is ActionKind.UNDO_CHECK_IN
        assert undo.before.record_id == record_id
        assert bus.get_event_log(event_type=Events.LEDGER_CHECK_IN_UNDONE)

    @pytest.mark.db
    def test_volunteer_cannot_undo_after_serving(self, ledger, sid):
        record_id = ledger.check_in(sid, "F001", 0, VOLUNTEER).data["record_id"]
        ledger.serve(sid, "F001", 1, VOLUNTEER)

        result = ledger.undo_check_in(sid, record_id, VOLUNTEER)

        assert result.error is ErrorKind.FOOD_ALREADY_SERVED
        assert _record(sid).used == 1

    @pytest.mark.db
    def test_admin_can_force_undo(self, ledger, sid):
        record_id = ledger.check_in(sid, "F001", 0, VOLUNTEER).data["record_id"]
        ledger.serve(sid, "F001", 1, VOLUNTEER)

        result = ledger.undo_check_in(sid, record_id, ADMIN)

        assert result.success
        assert _record(sid) is None
        assert list_history(session_id=sid)[0].before.used == 1

    @pytest.mark.db
    def test_family_can_check_in_again_after_undo(self, ledger, sid):
        record_id = ledger.check_in(sid, "F001", 0, VOLUNTEER).data["record_id"]
        ledger.undo_check_in(sid, record_id, VOLUNTEER)

        assert ledger.check_in(sid, "F001", 1, VOLUNTEER).success

    @pytest.mark.db
    def test_unknown_record(self, ledger, sid):
        result = ledger.undo_check_in(sid, 12345, ADMIN)

        assert result.error is ErrorKind.NOT_FOUND
        assert result.message == "Check-in record not found."


# =============================================================================
# ADMIN CORRECTIONS
# =============================================================================


class TestAdjust:
    @pytest.mark.db
    def test_adjust_gives_plates_back_and_reopens(self, ledger, sid, bus):
        ledger.check_in(sid, "F002", 0, VOLUNTEER)
        ledger.serve(sid, "F002", 2, VOLUNTEER)

        result = ledger.adjust(sid, "F002", -1, "Dropped plate", ADMIN)

        assert result.success
        assert result.data == {"used": 1, "remaining": 1, "status": "ACTIVE"}
        entry = list_history(session_id=sid, family_id="F002")[0]
        assert entry.action_kind is ActionKind.ADJUST
        assert entry.detail == "Adjusted by -1: Dropped plate"
        assert entry.before.used == 2
        assert bus.get_event_log(event_type=Events.LEDGER_ADJUSTED)[-1].detail["delta"] == -1

    @pytest.mark.db
    def test_adjust_is_clamped(self, ledger, sid):
        ledger.check_in(sid, "F002", 0, VOLUNTEER)

        assert ledger.adjust(sid, "F002", 10, "Recount", ADMIN).data["used"] == 2
        assert ledger.adjust(sid, "F002", -10, "Recount", ADMIN).data["used"] == 0

    @pytest.mark.db
    def test_adjust_keeps_closed(self, ledger, sid):
        ledger.check_in(sid, "F001", 0, VOLUNTEER)
        ledger.set_status(sid, "F001", "CLOSED", ADMIN)

        result = ledger.adjust(sid, "F001", 1, "Late count", ADMIN)

        assert result.data["status"] == "CLOSED"

    @pytest.mark.db
    def test_adjust_requires_admin_reason_and_delta(self, ledger, sid):
        ledger.check_in(sid, "F001", 0, VOLUNTEER)

        assert ledger.adjust(sid, "F001", 1, "why", VOLUNTEER).error is ErrorKind.PERMISSION_DENIED
        assert ledger.adjust(sid, "F001", 0, "why", ADMIN).error is ErrorKind.VALIDATION
        assert ledger.adjust(sid, "F001", 1, "  ", ADMIN).error is ErrorKind.VALIDATION
        assert _audit_kinds(sid) == [ActionKind.CHECK_IN]

    @pytest.mark.db
    def test_adjust_without_record(self, ledger, sid):
        result = ledger.adjust(sid, "F001", 1, "why", ADMIN)

        assert result.error is ErrorKind.NOT_FOUND
        assert result.message == "Check-in record not found."


class TestExtraGuests:
    @pytest.mark.db
    def test_update_guests_recomputes_entitlement(self, ledger, sid):
        ledger.check_in(sid, "F002", 0, VOLUNTEER)
        ledger.serve(sid, "F002", 2, VOLUNTEER)

        result = ledger.update_extra_guests(sid, "F002", 2, ADMIN)

        assert result.success
        assert result.data == {"entitled": 4, "remaining": 2, "status": "ACTIVE"}
        entry = list_history(session_id=sid, family_id="F002")[0]
        assert entry.action_kind is ActionKind.UPDATE_GUESTS
        assert (entry.before.entitled, entry.after.entitled) == (2, 4)

    @pytest.mark.db
    def test_cannot_drop_below_served(self, ledger, sid):
        ledger.check_in(sid, "F002", 2, VOLUNTEER)
        ledger.serve(sid, "F002", 3, VOLUNTEER)

        result = ledger.update_extra_guests(sid, "F002", 0, ADMIN)

        assert result.error is ErrorKind.VALIDATION
        assert result.message == "Cannot reduce plates below the 3 already served."
        assert _record(sid, "F002").entitled == 4

    @pytest.mark.db
    def test_volunteer_denied(self, ledger, sid):
        ledger.check_in(sid, "F002", 0, VOLUNTEER)

        assert ledger.update_extra_guests(sid, "F002", 1, VOLUNTEER).error is ErrorKind.PERMISSION_DENIED


class TestSetStatus:
    @pytest.mark.db
    def test_close_and_reopen(self, ledger, sid, bus):
        ledger.check_in(sid, "F001", 0, VOLUNTEER)

        closed = ledger.set_status(sid, "F001", "closed", ADMIN)
        reopened = ledger.set_status(sid, "F001", "ACTIVE", ADMIN)

        assert closed.data["status"] == "CLOSED"
        assert reopened.data["status"] == "ACTIVE"
        assert _audit_kinds(sid) == [ActionKind.REOPEN, ActionKind.CLOSE, ActionKind.CHECK_IN]
        changes = bus.get_event_log(event_type=Events.LEDGER_STATUS_CHANGED)
        assert [(e.detail["before"], e.detail["after"]) for e in changes] == [
            ("ACTIVE", "CLOSED"),
            ("CLOSED", "ACTIVE"),
        ]

    @pytest.mark.db
    def test_reopen_with_nothing_left_is_exhausted(self, ledger, sid):
        ledger.check_in(sid, "F003", 0, VOLUNTEER)
        ledger.serve(sid, "F003", 1, VOLUNTEER)
        ledger.set_status(sid, "F003", "CLOSED", ADMIN)

        result = ledger.set_status(sid, "F003", "ACTIVE", ADMIN)

        assert result.data["status"] == "EXHAUSTED"

    @pytest.mark.db
    def test_same_status_is_a_no_op(self, ledger, sid):
        ledger.check_in(sid, "F001", 0, VOLUNTEER)

        result = ledger.set_status(sid, "F001", "ACTIVE", ADMIN)

        assert result.success
        assert result.message == "Record is already ACTIVE."
        assert _audit_kinds(sid) == [ActionKind.CHECK_IN]

    @pytest.mark.db
    @pytest.mark.parametrize("status", ["EXHAUSTED", "NOT_CHECKED_IN", "bogus"])
    def test_only_active_or_closed(self, ledger, sid, status):
        ledger.check_in(sid, "F001", 0, VOLUNTEER)

        assert ledger.set_status(sid, "F001", status, ADMIN).error is ErrorKind.VALIDATION


# =============================================================================
# QUERIES
# =============================================================================


class TestQueries:
    @pytest.mark.db
    def test_search_reports_session_state(self, ledger, sid):
        ledger.check_in(sid, "F001", 1, VOLUNTEER)
        ledger.serve(sid, "F001", 2, VOLUNTEER)

        results = ledger.search("  GARCIA ", sid)

        assert len(results) == 1
        status = results[0]
        assert status.status is RecordStatus.ACTIVE
        assert (status.entitled, status.used, status.remaining) == (5, 2, 3)

    @pytest.mark.db
    def test_search_not_checked_in_family(self, ledger, sid):
        status = ledger.search("nguyen", sid)[0]

        assert status.status is RecordStatus.NOT_CHECKED_IN
        assert status.record_id is None
        assert status.entitled == 2
        assert status.remaining == 2

    @pytest.mark.db
    def test_short_query_returns_nothing(self, ledger, sid):
        assert ledger.search("g", sid) == []
        assert ledger.search("   ", sid) == []

    @pytest.mark.db
    def test_list_checked_in_and_directory(self, ledger, sid):
        ledger.check_in(sid, "F003", 0, VOLUNTEER)

        checked_in = ledger.list_checked_in(sid)
        directory = ledger.list_families_with_status(sid)

        assert [s.family.id for s in checked_in] == ["F003"]
        assert [s.family.id for s in directory] == ["F001", "F002", "F003"]
        assert [s.status for s in directory] == [
            RecordStatus.NOT_CHECKED_IN,
            RecordStatus.NOT_CHECKED_IN,
            RecordStatus.ACTIVE,
        ]

    @pytest.mark.db
    def test_audit_history_page_is_clamped(self, ledger, sid):
        ledger.check_in(sid, "F001", 0, VOLUNTEER)
        ledger.serve(sid, "F001", 1, VOLUNTEER)

        assert len(ledger.audit_history(sid, limit=0)) == 1
        assert len(ledger.audit_history(sid, family_id="F001")) == 2


@pytest.mark.unit
def test_remaining_never_negative_in_views():
    family = Family(id="X", surname="S", head_name="H", phone=None, size=1)
    record = EntitlementRecord(
        id=1,
        session_id=1,
        family_id="X",
        entitled=1,
        extra_guests=0,
        used=2,
        checked_in_at="t",
        updated_at="t",
        status=RecordStatus.EXHAUSTED,
    )

    assert FamilyStatus.build(family, record).remaining == 0
