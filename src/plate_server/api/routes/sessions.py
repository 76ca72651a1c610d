"""Session endpoints (current session, reset, dashboard queries)."""

from dataclasses import asdict

from fastapi import APIRouter, HTTPException

from plate_server.api.models import (
    ActionResponse,
    FamilyListResponse,
    FamilyStatusModel,
    SessionModel,
    SessionStatsResponse,
    SessionSummariesResponse,
    StartSessionRequest,
)
from plate_server.api.routes.utils import respond
from plate_server.db import sessions_repo
from plate_server.services.ledger import EntitlementLedger
from plate_server.services.sessions import SessionManager


def router(sessions: SessionManager, ledger: EntitlementLedger) -> APIRouter:
    """Build the sessions router."""
    api = APIRouter(prefix="/sessions")

    def _require_session(session_id: int) -> None:
        if sessions_repo.get_session(session_id) is None:
            raise HTTPException(
                status_code=404, detail={"error": "NotFound", "message": "Session not found."}
            )

    @api.get("/current", response_model=SessionModel)
    def current_session():
        """Return the current session, creating the default one on first use."""
        return SessionModel.from_session(sessions.ensure_current_session())

    @api.post("", response_model=ActionResponse)
    def start_session(request: StartSessionRequest):
        """Archive the current session and start a new one (admin only)."""
        return respond(sessions.start_new_session(request.name, request.actor_role))

    @api.get("/summaries", response_model=SessionSummariesResponse)
    def session_summaries(limit: int | None = None):
        """Archived session summaries, newest first."""
        summaries = sessions.list_session_summaries(limit=limit)
        return SessionSummariesResponse(summaries=[asdict(summary) for summary in summaries])

    @api.get("/{session_id}/stats", response_model=SessionStatsResponse)
    def session_stats(session_id: int):
        """Dashboard counters for one session."""
        totals = sessions.session_stats(session_id)
        if totals is None:
            raise HTTPException(
                status_code=404, detail={"error": "NotFound", "message": "Session not found."}
            )
        return SessionStatsResponse.from_totals(session_id, totals, sessions.last_sync())

    @api.get("/{session_id}/checked-in", response_model=FamilyListResponse)
    def checked_in(session_id: int):
        """Checked-in families, newest check-in first."""
        _require_session(session_id)
        families = ledger.list_checked_in(session_id)
        return FamilyListResponse(families=[FamilyStatusModel.from_status(f) for f in families])

    @api.get("/{session_id}/families", response_model=FamilyListResponse)
    def families_with_status(session_id: int):
        """The whole directory with this session's state."""
        _require_session(session_id)
        families = ledger.list_families_with_status(session_id)
        return FamilyListResponse(families=[FamilyStatusModel.from_status(f) for f in families])

    return api
