"""
Shared pytest fixtures for the plate server test suite.

This module provides fixtures that are automatically available to all test files:
- Temporary test databases (schema initialized through the production code)
- A fresh change bus per test
- Ledger, session and reconciliation services bound to that bus
- Seeded families and a current session
- FastAPI TestClient instances with the app lifespan running
"""

import shutil
import tempfile
from collections.abc import Generator
from pathlib import Path

import pytest
from fastapi.testclient import TestClient

from plate_server.config import use_test_database
from plate_server.core.bus import ChangeBus
from plate_server.db import families_repo, schema
from plate_server.db.connection import connection_scope
from plate_server.db.types import Family, Session
from plate_server.services.ledger import EntitlementLedger
from plate_server.services.reconciliation import ReconciliationEngine
from plate_server.services.sessions import SessionManager
from tests.constants import SEED_FAMILIES

# ============================================================================
# DATABASE FIXTURES
# ============================================================================


@pytest.fixture(scope="function")
def temp_db_path() -> Generator[Path, None, None]:
    """
    Create a temporary database file for testing.

    Each test gets its own database file through the config system's
    use_test_database context manager.

    Yields:
        Path to temporary database file
    """
    temp_dir = tempfile.mkdtemp()
    temp_db = Path(temp_dir) / "test_plates.db"

    with use_test_database(temp_db):
        yield temp_db

    shutil.rmtree(temp_dir, ignore_errors=True)


@pytest.fixture(scope="function")
def test_db(temp_db_path: Path) -> Generator[None, None, None]:
    """
    Initialize a test database with schema but no data.

    Yields:
        None (database is initialized and ready to use)
    """
    schema.init_database()

    yield


@pytest.fixture(scope="function")
def seeded_families(test_db) -> dict[str, Family]:
    """
    Insert the standard test families into the directory.

    Returns:
        Dict mapping family id to Family
    """
    families = {
        family_id: Family(
            id=family_id, surname=surname, head_name=head, phone=phone, size=size, notes=None
        )
        for family_id, surname, head, phone, size in SEED_FAMILIES
    }
    with connection_scope(write=True) as conn:
        for family in families.values():
            families_repo.upsert_family(conn, family)
    return families


# ============================================================================
# BUS AND SERVICE FIXTURES
# ============================================================================


@pytest.fixture(autouse=True)
def reset_bus() -> Generator[None, None, None]:
    """Give every test a fresh change bus singleton."""
    ChangeBus.reset_for_testing()
    yield
    ChangeBus.reset_for_testing()


@pytest.fixture
def bus() -> ChangeBus:
    """The (fresh) process-wide change bus."""
    return ChangeBus()


@pytest.fixture
def ledger(bus: ChangeBus) -> EntitlementLedger:
    return EntitlementLedger(bus=bus)


@pytest.fixture
def sessions(bus: ChangeBus) -> SessionManager:
    return SessionManager(bus=bus)


@pytest.fixture
def engine(bus: ChangeBus) -> ReconciliationEngine:
    return ReconciliationEngine(bus=bus)


@pytest.fixture
def current_session(test_db, sessions: SessionManager) -> Session:
    """The current session, created on demand with the default name."""
    return sessions.ensure_current_session()


# ============================================================================
# FASTAPI TEST CLIENT FIXTURES
# ============================================================================


@pytest.fixture(scope="function")
def test_client(
    test_db,
    ledger: EntitlementLedger,
    sessions: SessionManager,
    engine: ReconciliationEngine,
) -> Generator[TestClient, None, None]:
    """
    Create a FastAPI TestClient for API endpoint testing.

    The client is entered as a context manager so the app lifespan runs:
    the schema is (re)initialized and the default session is created.

    Example:
        def test_health(test_client):
            response = test_client.get("/health")
            assert response.status_code == 200
    """
    from plate_server.api.server import create_app

    app = create_app(ledger=ledger, sessions=sessions, reconciliation=engine)
    with TestClient(app) as client:
        yield client
