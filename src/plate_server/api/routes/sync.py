"""Roster sync endpoint."""

from fastapi import APIRouter
from fastapi.responses import JSONResponse

from plate_server.api.models import SyncRequest, SyncResponse
from plate_server.api.routes.utils import status_for
from plate_server.services.reconciliation import ReconciliationEngine


def router(reconciliation: ReconciliationEngine) -> APIRouter:
    """Build the sync router."""
    api = APIRouter()

    @api.post("/sync", response_model=SyncResponse)
    def sync(request: SyncRequest):
        """
        Reconcile the family directory (admin only).

        Uses ``rows`` from the body when given, otherwise reads the configured
        Google Sheet. Refused runs return the full result body with an error
        status so the dashboard can still list per-row errors.
        """
        if request.rows is not None:
            result = reconciliation.reconcile(request.rows, actor_role=request.actor_role)
        else:
            result = reconciliation.sync_from_provider(actor_role=request.actor_role)
        if result.error is not None:
            return JSONResponse(status_code=status_for(result.error), content=result.to_dict())
        return SyncResponse(**result.to_dict())

    return api
