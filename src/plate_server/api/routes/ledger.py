"""Ledger mutation endpoints (check-in, serve, admin corrections).

Handlers are plain ``def`` so FastAPI runs them in its threadpool: the
ledger talks to SQLite synchronously and concurrent stations must not queue
behind one another on the event loop.
"""

from fastapi import APIRouter

from plate_server.api.models import (
    ActionResponse,
    AdjustRequest,
    CheckInRequest,
    GuestsRequest,
    ServeRequest,
    StatusRequest,
    UndoCheckInRequest,
)
from plate_server.api.routes.utils import respond
from plate_server.services.ledger import EntitlementLedger


def router(ledger: EntitlementLedger) -> APIRouter:
    """Build the ledger router."""
    api = APIRouter(prefix="/ledger")

    @api.post("/check-in", response_model=ActionResponse)
    def check_in(request: CheckInRequest):
        """Check a family in to the session."""
        return respond(
            ledger.check_in(
                request.session_id,
                request.family_id,
                request.extra_guests,
                request.actor_role,
                station_id=request.station_id,
            )
        )

    @api.post("/serve", response_model=ActionResponse)
    def serve(request: ServeRequest):
        """
        Serve plates.

        A 409 with ``ConcurrencyConflict`` means another station changed the
        record first; refresh and resubmit.
        """
        return respond(
            ledger.serve(
                request.session_id,
                request.family_id,
                request.quantity,
                request.actor_role,
                station_id=request.station_id,
            )
        )

    @api.post("/adjust", response_model=ActionResponse)
    def adjust(request: AdjustRequest):
        """Correct the plates-used counter (admin only)."""
        return respond(
            ledger.adjust(
                request.session_id,
                request.family_id,
                request.delta,
                request.reason,
                request.actor_role,
                station_id=request.station_id,
            )
        )

    @api.post("/status", response_model=ActionResponse)
    def set_status(request: StatusRequest):
        """Close or reopen a record (admin only)."""
        return respond(
            ledger.set_status(
                request.session_id,
                request.family_id,
                request.status,
                request.actor_role,
                station_id=request.station_id,
            )
        )

    @api.post("/undo-check-in", response_model=ActionResponse)
    def undo_check_in(request: UndoCheckInRequest):
        """Undo a check-in. Volunteers only while nothing has been served."""
        return respond(
            ledger.undo_check_in(
                request.session_id,
                request.record_id,
                request.actor_role,
                station_id=request.station_id,
            )
        )

    @api.post("/guests", response_model=ActionResponse)
    def update_guests(request: GuestsRequest):
        """Change a checked-in family's extra guests (admin only)."""
        return respond(
            ledger.update_extra_guests(
                request.session_id,
                request.family_id,
                request.extra_guests,
                request.actor_role,
                station_id=request.station_id,
            )
        )

    return api
