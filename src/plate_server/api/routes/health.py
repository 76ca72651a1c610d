"""Health endpoint.

Reports liveness, the installed package version and the id of the current
session so stations can notice a session change after a reset.
"""

from fastapi import APIRouter

from plate_server import __version__
from plate_server.api.models import HealthResponse
from plate_server.services.sessions import SessionManager


def router(sessions: SessionManager) -> APIRouter:
    """Build the health router."""
    api = APIRouter()

    @api.get("/health", response_model=HealthResponse)
    def health_check():
        """Health check endpoint."""
        current = sessions.current_session()
        return HealthResponse(
            status="ok",
            version=__version__,
            current_session_id=current.id if current else None,
        )

    return api
