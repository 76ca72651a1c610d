"""
FastAPI backend server for the plate server.

This module builds the FastAPI application the entry stations, food stations
and admin dashboard talk to. It sets up:
- CORS middleware for the browser-based station UIs
- The ledger, session and reconciliation services shared by all routes
- A handler that turns storage failures into 503 responses
- Schema initialization and the current-session bootstrap at startup
"""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from plate_server import __version__
from plate_server.api.routes.register import register_routes
from plate_server.config import config
from plate_server.db import schema
from plate_server.db.errors import DatabaseError
from plate_server.services.ledger import EntitlementLedger
from plate_server.services.reconciliation import ReconciliationEngine
from plate_server.services.sessions import SessionManager

logger = logging.getLogger(__name__)


def create_app(
    ledger: EntitlementLedger | None = None,
    sessions: SessionManager | None = None,
    reconciliation: ReconciliationEngine | None = None,
) -> FastAPI:
    """
    Build the FastAPI application.

    Services default to fresh instances bound to the process-wide change bus;
    tests pass their own.
    """
    ledger = ledger if ledger is not None else EntitlementLedger()
    sessions = sessions if sessions is not None else SessionManager()
    reconciliation = reconciliation if reconciliation is not None else ReconciliationEngine()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        schema.init_database()
        current = sessions.ensure_current_session()
        logger.info("Plate server ready; current session %r (id=%s)", current.name, current.id)
        yield

    app = FastAPI(title="Plate Server", version=__version__, lifespan=lifespan)

    # ========================================================================
    # MIDDLEWARE CONFIGURATION
    # ========================================================================

    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.security.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # ========================================================================
    # ERROR HANDLING
    # ========================================================================

    @app.exception_handler(DatabaseError)
    async def database_error_handler(request: Request, exc: DatabaseError):
        logger.error("Storage failure on %s %s: %s", request.method, request.url.path, exc, exc_info=exc)
        return JSONResponse(
            status_code=503,
            content={
                "detail": {
                    "error": "StorageUnavailable",
                    "message": "The ledger database is unavailable. Please try again.",
                }
            },
        )

    register_routes(app, ledger, sessions, reconciliation)
    return app


def start_server(host: str | None = None, port: int | None = None) -> None:
    """Run the API with uvicorn on the configured (or given) host and port."""
    import uvicorn

    uvicorn.run(
        create_app(),
        host=host or config.server.host,
        port=port or config.server.port,
        log_config=None,
    )
