"""Family directory search endpoint used by the entry and food stations."""

from fastapi import APIRouter

from plate_server.api.models import FamilyListResponse, FamilyStatusModel
from plate_server.services.ledger import EntitlementLedger


def router(ledger: EntitlementLedger) -> APIRouter:
    """Build the families router."""
    api = APIRouter(prefix="/families")

    @api.get("/search", response_model=FamilyListResponse)
    def search(q: str, session_id: int):
        """
        Search by surname, head of household or phone.

        Queries shorter than the configured minimum return no families.
        Each family carries its entitled/used/remaining counts for the session.
        """
        families = ledger.search(q, session_id)
        return FamilyListResponse(families=[FamilyStatusModel.from_status(f) for f in families])

    return api
