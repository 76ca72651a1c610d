"""
Tests for the HTTP API.

Covers each endpoint's happy path and the mapping of rejection kinds to
status codes (400 validation, 403 permission, 404 missing, 409 conflicts,
502 upstream, 503 storage).
"""

from unittest.mock import patch

import pytest

from plate_server.config import config
from plate_server.db import families_repo
from plate_server.db.errors import DatabaseOperationContext, DatabaseReadError
from tests.constants import ADMIN, VOLUNTEER


@pytest.fixture
def sid(test_client) -> int:
    return test_client.get("/sessions/current").json()["id"]


def _check_in(client, sid, family_id="F001", extra_guests=0):
    return client.post(
        "/ledger/check-in",
        json={"session_id": sid, "family_id": family_id, "extra_guests": extra_guests},
    )


def _serve(client, sid, quantity, family_id="F001", **extra):
    return client.post(
        "/ledger/serve",
        json={"session_id": sid, "family_id": family_id, "quantity": quantity, **extra},
    )


# ============================================================================
# HEALTH AND SESSIONS
# ============================================================================


class TestHealthAndSessions:
    @pytest.mark.api
    def test_health_reports_current_session(self, test_client, sid):
        response = test_client.get("/health")

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "ok"
        assert data["current_session_id"] == sid

    @pytest.mark.api
    def test_current_session_is_created_at_startup(self, test_client):
        data = test_client.get("/sessions/current").json()

        assert data["is_current"] is True
        assert data["name"] == config.ledger.default_session_name

    @pytest.mark.api
    def test_start_session_requires_admin(self, test_client, sid):
        response = test_client.post("/sessions", json={"name": "Night 2"})

        assert response.status_code == 403
        assert response.json()["detail"]["error"] == "PermissionDenied"

    @pytest.mark.api
    def test_start_session_and_summaries(self, test_client, seeded_families, sid):
        _check_in(test_client, sid)
        _serve(test_client, sid, 2)

        response = test_client.post("/sessions", json={"name": "Night 2", "actor_role": ADMIN})

        assert response.status_code == 200
        body = response.json()
        assert body["message"] == "System fully reset. Summary archived."
        assert body["data"]["archived_summary"]["plates_served"] == 2

        summaries = test_client.get("/sessions/summaries").json()["summaries"]
        assert summaries[0]["session_id"] == sid
        assert test_client.get("/health").json()["current_session_id"] == body["data"]["session"]["id"]

    @pytest.mark.api
    def test_stats(self, test_client, seeded_families, sid):
        _check_in(test_client, sid, extra_guests=1)
        _serve(test_client, sid, 3)

        data = test_client.get(f"/sessions/{sid}/stats").json()

        assert data["total_families"] == 3
        assert data["families_checked_in"] == 1
        assert data["plates_entitled"] == 5
        assert data["plates_served"] == 3
        assert data["last_sync"] is None

    @pytest.mark.api
    def test_unknown_session_views_are_404(self, test_client, sid):
        assert test_client.get(f"/sessions/{sid + 9}/stats").status_code == 404
        assert test_client.get(f"/sessions/{sid + 9}/checked-in").status_code == 404
        assert test_client.get(f"/sessions/{sid + 9}/families").status_code == 404

    @pytest.mark.api
    def test_checked_in_and_directory_views(self, test_client, seeded_families, sid):
        _check_in(test_client, sid, family_id="F002")

        checked_in = test_client.get(f"/sessions/{sid}/checked-in").json()["families"]
        directory = test_client.get(f"/sessions/{sid}/families").json()["families"]

        assert [f["family_id"] for f in checked_in] == ["F002"]
        assert [f["status"] for f in directory] == ["NOT_CHECKED_IN", "ACTIVE", "NOT_CHECKED_IN"]


# ============================================================================
# SEARCH
# ============================================================================


class TestSearch:
    @pytest.mark.api
    def test_search_returns_state(self, test_client, seeded_families, sid):
        _check_in(test_client, sid)
        _serve(test_client, sid, 1)

        families = test_client.get("/families/search", params={"q": "garcia", "session_id": sid}).json()[
            "families"
        ]

        assert len(families) == 1
        assert families[0]["entitled"] == 4
        assert families[0]["used"] == 1
        assert families[0]["remaining"] == 3
        assert families[0]["status"] == "ACTIVE"

    @pytest.mark.api
    def test_short_query(self, test_client, seeded_families, sid):
        response = test_client.get("/families/search", params={"q": "g", "session_id": sid})

        assert response.json() == {"families": []}

    @pytest.mark.api
    def test_storage_failure_is_503(self, test_client, sid):
        error = DatabaseReadError(context=DatabaseOperationContext(operation="families.search_families"))
        with patch.object(families_repo, "search_families", side_effect=error):
            response = test_client.get("/families/search", params={"q": "garcia", "session_id": sid})

        assert response.status_code == 503
        assert response.json()["detail"]["error"] == "StorageUnavailable"


# ============================================================================
# LEDGER MUTATIONS
# ============================================================================


class TestLedger:
    @pytest.mark.api
    def test_check_in_and_serve(self, test_client, seeded_families, sid):
        check_in = _check_in(test_client, sid)
        assert check_in.status_code == 200
        assert check_in.json()["data"]["entitled"] == 4

        served = _serve(test_client, sid, 4, station_id="food-2")
        assert served.status_code == 200
        assert served.json()["data"] == {"used": 4, "remaining": 0, "status": "EXHAUSTED"}

    @pytest.mark.api
    def test_conflicts_are_409(self, test_client, seeded_families, sid):
        _check_in(test_client, sid)

        again = _check_in(test_client, sid)
        over = _serve(test_client, sid, 5)

        assert again.status_code == 409
        assert again.json()["detail"]["error"] == "AlreadyCheckedIn"
        assert over.status_code == 409
        assert over.json()["detail"] == {
            "error": "InsufficientRemaining",
            "message": "Exceeds limit. Remaining: 4",
            "remaining": 4,
        }

    @pytest.mark.api
    def test_validation_is_400(self, test_client, seeded_families, sid):
        _check_in(test_client, sid)

        response = _serve(test_client, sid, 0)

        assert response.status_code == 400
        assert response.json()["detail"]["message"] == "Invalid quantity."

    @pytest.mark.api
    def test_malformed_body_is_422(self, test_client, sid):
        response = test_client.post("/ledger/serve", json={"session_id": sid, "family_id": "F001"})

        assert response.status_code == 422

    @pytest.mark.api
    def test_unknown_family_is_404(self, test_client, sid):
        response = _check_in(test_client, sid, family_id="NOPE")

        assert response.status_code == 404
        assert response.json()["detail"]["message"] == "Family not found."

    @pytest.mark.api
    def test_admin_corrections(self, test_client, seeded_families, sid):
        _check_in(test_client, sid, family_id="F002")
        _serve(test_client, sid, 2, family_id="F002")
        base = {"session_id": sid, "family_id": "F002", "actor_role": ADMIN}

        adjust = test_client.post("/ledger/adjust", json={**base, "delta": -1, "reason": "Spilled"})
        guests = test_client.post("/ledger/guests", json={**base, "extra_guests": 1})
        close = test_client.post("/ledger/status", json={**base, "status": "CLOSED"})

        assert adjust.json()["data"]["used"] == 1
        assert guests.json()["data"]["entitled"] == 3
        assert close.json()["data"]["status"] == "CLOSED"
        assert _serve(test_client, sid, 1, family_id="F002").status_code == 409

    @pytest.mark.api
    def test_volunteer_cannot_adjust(self, test_client, seeded_families, sid):
        _check_in(test_client, sid)

        response = test_client.post(
            "/ledger/adjust",
            json={"session_id": sid, "family_id": "F001", "delta": 1, "reason": "x", "actor_role": VOLUNTEER},
        )

        assert response.status_code == 403

    @pytest.mark.api
    def test_undo_check_in(self, test_client, seeded_families, sid):
        record_id = _check_in(test_client, sid).json()["data"]["record_id"]
        _serve(test_client, sid, 1)

        refused = test_client.post("/ledger/undo-check-in", json={"session_id": sid, "record_id": record_id})
        forced = test_client.post(
            "/ledger/undo-check-in",
            json={"session_id": sid, "record_id": record_id, "actor_role": ADMIN},
        )

        assert refused.status_code == 409
        assert refused.json()["detail"]["error"] == "FoodAlreadyServed"
        assert forced.status_code == 200


# ============================================================================
# AUDIT AND SYNC
# ============================================================================


class TestAuditAndSync:
    @pytest.mark.api
    def test_audit_history_newest_first(self, test_client, seeded_families, sid):
        _check_in(test_client, sid)
        _serve(test_client, sid, 2, station_id="food-1")

        entries = test_client.get("/audit", params={"session_id": sid, "family_id": "F001"}).json()[
            "entries"
        ]

        assert [e["action_kind"] for e in entries] == ["SERVE", "CHECK_IN"]
        assert entries[0]["before"] == {"used": 0, "status": "ACTIVE"}
        assert entries[0]["station_id"] == "food-1"
        assert "checksum" not in entries[0]

    @pytest.mark.api
    def test_sync_rows(self, test_client, sid):
        response = test_client.post(
            "/sync",
            json={
                "actor_role": ADMIN,
                "rows": [
                    ["F001", "Garcia", "Maria", "555-0101", "4", ""],
                    {"family_id": "F002", "surname": "Nguyen", "head_name": "Thanh", "size": 2},
                    ["F003", "", "Chidi", "", "1", ""],
                ],
            },
        )

        assert response.status_code == 200
        data = response.json()
        assert (data["total"], data["synced"], data["skipped"]) == (3, 2, 1)
        assert data["errors"] == ["Row 4: Missing surname (column B)"]
        assert test_client.get(f"/sessions/{sid}/stats").json()["last_sync"] is not None

    @pytest.mark.api
    def test_sync_requires_admin(self, test_client):
        response = test_client.post("/sync", json={"rows": [["F1", "A", "B", "1", "1", ""]]})

        assert response.status_code == 403
        assert response.json()["error"] == "PermissionDenied"

    @pytest.mark.api
    def test_sync_without_sheet_config_is_502(self, test_client, monkeypatch):
        monkeypatch.setattr(config.sync, "sheets_id", "")
        monkeypatch.setattr(config.sync, "sheets_api_key", "")

        response = test_client.post("/sync", json={"actor_role": ADMIN})

        assert response.status_code == 502
        assert response.json()["synced"] == 0
