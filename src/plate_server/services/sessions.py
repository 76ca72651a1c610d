"""Session manager: owner of the single current-session pointer.

Only one session is current at a time. The database enforces it with a
partial unique index on ``sessions(is_current) WHERE is_current = 1``; this
module performs every pointer change inside ``BEGIN IMMEDIATE`` so two
admins starting a session at once serialize instead of both archiving the
same outgoing session.

Starting a new session archives the outgoing session's aggregate counters
as one ``RESET`` audit entry and deletes its entitlement records. Per-family
serving history of that session survives only in the audit log.
"""

from __future__ import annotations

import logging
from dataclasses import asdict
from datetime import UTC, datetime

from plate_server.api.permissions import Permission, has_permission
from plate_server.audit import latest_entry, list_history, record_entry
from plate_server.audit.payloads import SessionSummary
from plate_server.config import config
from plate_server.core.bus import ChangeBus
from plate_server.core.events import Events
from plate_server.db import records_repo, sessions_repo
from plate_server.db.connection import connection_scope
from plate_server.db.types import ActionKind, Session, SessionTotals
from plate_server.services.outcomes import ActionResult, ErrorKind

logger = logging.getLogger(__name__)


class SessionManager:
    """Reads and swaps the current event session."""

    def __init__(self, bus: ChangeBus | None = None):
        self.bus = bus if bus is not None else ChangeBus()

    def current_session(self) -> Session | None:
        return sessions_repo.get_current_session()

    def ensure_current_session(self) -> Session:
        """Return the current session, creating the default one if none exists."""
        session = sessions_repo.get_current_session()
        if session is not None:
            return session

        created = False
        with connection_scope(immediate=True) as conn:
            session = sessions_repo.get_current_session(conn)
            if session is None:
                session = sessions_repo.insert_current_session(
                    conn, config.ledger.default_session_name, datetime.now(UTC).isoformat()
                )
                created = True

        if created:
            logger.info("Created initial session %r (id=%s)", session.name, session.id)
            self.bus.emit(
                Events.SESSION_STARTED,
                {"session_id": session.id, "name": session.name, "previous_session_id": None},
                source="sessions",
            )
        return session

    def start_new_session(self, name: str, actor_role: str) -> ActionResult:
        """Archive the current session and make a new one current.

        Steps, all in one ``BEGIN IMMEDIATE`` transaction:

        1. Read the outgoing session's totals.
        2. Append a ``RESET`` audit entry carrying them.
        3. Delete the outgoing session's entitlement records.
        4. Clear its current flag and insert the new current session.

        Args:
            name: Label for the new session.
            actor_role: Caller role; only admins may start a session.

        Returns:
            ``data`` carries ``session`` (id, name) and ``archived_summary``
            (None when there was no previous session).
        """
        if not has_permission(actor_role, Permission.START_SESSION):
            logger.info("start session denied for role %r", actor_role)
            return ActionResult.fail(ErrorKind.PERMISSION_DENIED)
        name = (name or "").strip()
        if not name:
            return ActionResult.fail(ErrorKind.VALIDATION, "Session name is required.")

        now = datetime.now(UTC).isoformat()
        summary: SessionSummary | None = None
        removed = 0
        with connection_scope(immediate=True) as conn:
            previous = sessions_repo.get_current_session(conn)
            if previous is not None:
                totals = records_repo.session_totals(previous.id, conn)
                summary = SessionSummary(
                    session_id=previous.id,
                    session_name=previous.name,
                    total_families=totals.total_families,
                    families_checked_in=totals.families_checked_in,
                    plates_entitled=totals.plates_entitled,
                    plates_served=totals.plates_served,
                    archived_at=now,
                    next_session_name=name,
                )
                record_entry(
                    conn,
                    kind=ActionKind.RESET,
                    actor_role=actor_role.strip().lower(),
                    session_id=previous.id,
                    family_id=None,
                    after=summary,
                    detail=f"Archived {previous.name}: {totals.plates_served} plates served",
                )
                removed = records_repo.delete_records_for_session(conn, previous.id)
                sessions_repo.clear_current_flag(conn, previous.id)
            session = sessions_repo.insert_current_session(conn, name, now)

        logger.info(
            "Started session %r (id=%s); archived %s, removed %s records",
            session.name,
            session.id,
            summary.session_name if summary else None,
            removed,
        )
        self.bus.emit(
            Events.SESSION_STARTED,
            {
                "session_id": session.id,
                "name": session.name,
                "previous_session_id": summary.session_id if summary else None,
            },
            source="sessions",
        )
        message = "System fully reset. Summary archived." if summary else "Session started."
        return ActionResult.ok(
            message,
            session={"id": session.id, "name": session.name, "created_at": session.created_at},
            archived_summary=asdict(summary) if summary else None,
        )

    def session_stats(self, session_id: int) -> SessionTotals | None:
        """Totals for a session, or None if the session does not exist."""
        if sessions_repo.get_session(session_id) is None:
            return None
        return records_repo.session_totals(session_id)

    def list_session_summaries(self, limit: int | None = None) -> list[SessionSummary]:
        """Archived session summaries, newest first."""
        page = config.ledger.audit_page_size if limit is None else limit
        page = max(1, min(page, config.ledger.audit_max_page_size))
        entries = list_history(kind=ActionKind.RESET, limit=page)
        return [entry.after for entry in entries if isinstance(entry.after, SessionSummary)]

    def last_sync(self) -> str | None:
        """Timestamp of the latest roster sync, if any."""
        entry = latest_entry(ActionKind.SYNC)
        return entry.created_at if entry else None
