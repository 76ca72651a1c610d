"""
Event Type Constants for the Plate Server

Events use "domain:action" format in PAST TENSE, because they are emitted
only after the change they describe has committed:

    Good: "ledger:served", "session:started"
    Bad:  "serve", "ledger:serve_request"

=============================================================================
USAGE
=============================================================================

    from plate_server.core.bus import bus
    from plate_server.core.events import Events

    bus.on(Events.LEDGER_SERVED, refresh_station_display)

=============================================================================
"""


class Events:
    """All event types published on the change bus, grouped by domain."""

    # =========================================================================
    # LEDGER
    # =========================================================================

    LEDGER_CHECKED_IN = "ledger:checked_in"
    """
    A family was checked in to the current session.

    Detail: {"session_id": int, "family_id": str, "record_id": int,
             "entitled": int, "extra_guests": int, "station_id": str | None}
    """

    LEDGER_SERVED = "ledger:served"
    """
    Plates were served at a food station.

    Detail: {"session_id": int, "family_id": str, "record_id": int,
             "quantity": int, "used": int, "remaining": int, "status": str,
             "station_id": str | None}
    """

    LEDGER_ADJUSTED = "ledger:adjusted"
    """
    An admin corrected the ``used`` counter.

    Detail: {"session_id": int, "family_id": str, "record_id": int,
             "delta": int, "used": int, "remaining": int, "status": str}
    """

    LEDGER_GUESTS_UPDATED = "ledger:guests_updated"
    """
    An admin changed the extra-guest count of a checked-in family.

    Detail: {"session_id": int, "family_id": str, "record_id": int,
             "extra_guests": int, "entitled": int, "status": str}
    """

    LEDGER_STATUS_CHANGED = "ledger:status_changed"
    """
    A record was closed or reopened.

    Detail: {"session_id": int, "family_id": str, "record_id": int,
             "before": str, "after": str}
    """

    LEDGER_CHECK_IN_UNDONE = "ledger:check_in_undone"
    """
    A check-in was undone and its record removed.

    Detail: {"session_id": int, "family_id": str, "record_id": int}
    """

    # =========================================================================
    # SESSIONS
    # =========================================================================

    SESSION_STARTED = "session:started"
    """
    A new current session replaced the previous one (or the first session
    was created).

    Detail: {"session_id": int, "name": str, "previous_session_id": int | None}
    """

    # =========================================================================
    # DIRECTORY
    # =========================================================================

    DIRECTORY_SYNCED = "directory:synced"
    """
    A roster reconciliation run finished with at least one row applied.

    Detail: {"total": int, "synced": int, "inserted": int, "updated": int,
             "skipped": int, "error_count": int}
    """
