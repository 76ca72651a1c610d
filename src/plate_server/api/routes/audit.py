"""Audit history endpoint for dispute resolution."""

from fastapi import APIRouter

from plate_server.api.models import AuditEntryModel, AuditListResponse
from plate_server.services.ledger import EntitlementLedger


def router(ledger: EntitlementLedger) -> APIRouter:
    """Build the audit router."""
    api = APIRouter()

    @api.get("/audit", response_model=AuditListResponse)
    def audit_history(session_id: int, family_id: str | None = None, limit: int | None = None):
        """Audit entries for a session, optionally one family, newest first."""
        entries = ledger.audit_history(session_id, family_id=family_id, limit=limit)
        return AuditListResponse(entries=[AuditEntryModel.from_entry(entry) for entry in entries])

    return api
