"""Route registration for the FastAPI app."""

from fastapi import FastAPI

from plate_server.api.routes import audit, families, health, ledger, sessions, sync
from plate_server.services.ledger import EntitlementLedger
from plate_server.services.reconciliation import ReconciliationEngine
from plate_server.services.sessions import SessionManager


def register_routes(
    app: FastAPI,
    ledger_service: EntitlementLedger,
    session_manager: SessionManager,
    reconciliation: ReconciliationEngine,
) -> None:
    """Register all API routers with the FastAPI app."""
    app.include_router(health.router(session_manager))
    app.include_router(sessions.router(session_manager, ledger_service))
    app.include_router(families.router(ledger_service))
    app.include_router(ledger.router(ledger_service))
    app.include_router(audit.router(ledger_service))
    app.include_router(sync.router(reconciliation))
