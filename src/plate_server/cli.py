"""
Command-line interface for the plate server.

Provides CLI commands for event-day operations:
- init-db: Initialize the database schema
- run: Start the HTTP API
- new-session: Archive the current session and start a new one
- sync: Reconcile the family directory from the roster sheet or a CSV export
- stats: Print the current session's counters

Usage:
    plate-server init-db
    plate-server run [--host HOST] [--port PORT]
    plate-server new-session "Gala 2025"
    plate-server sync [--csv roster.csv]
    plate-server stats

Environment Variables:
    PLATE_HOST / PLATE_PORT: API bind address (default: 0.0.0.0:8000)
    PLATE_DB_PATH: SQLite database file
    GOOGLE_SHEETS_ID / GOOGLE_SHEETS_API_KEY: Roster spreadsheet for sync
"""

import argparse
import sys
from pathlib import Path

from plate_server.config import configure_logging

# Role used for CLI-initiated changes and their audit entries
CLI_ROLE = "admin"


def cmd_init_db(args: argparse.Namespace) -> int:
    """
    Initialize the database schema.

    Returns:
        0 on success, 1 on error
    """
    from plate_server.db.schema import init_database

    try:
        init_database()
        print("Database initialized successfully.")
        return 0
    except Exception as e:
        print(f"Error initializing database: {e}", file=sys.stderr)
        return 1


def cmd_run(args: argparse.Namespace) -> int:
    """
    Start the API server.

    Returns:
        0 on clean shutdown, 1 on startup error
    """
    from plate_server.api.server import start_server
    from plate_server.config import print_config_summary

    print_config_summary()
    try:
        start_server(host=args.host, port=args.port)
        return 0
    except KeyboardInterrupt:
        print("\nShutting down...")
        return 0
    except Exception as e:
        print(f"Error starting server: {e}", file=sys.stderr)
        return 1


def cmd_new_session(args: argparse.Namespace) -> int:
    """
    Archive the current session and make ``args.name`` current.

    Returns:
        0 on success, 1 on rejection or error
    """
    from plate_server.db.schema import init_database
    from plate_server.services.sessions import SessionManager

    try:
        init_database()
        result = SessionManager().start_new_session(args.name, CLI_ROLE)
    except Exception as e:
        print(f"Error starting session: {e}", file=sys.stderr)
        return 1

    if not result.success:
        print(f"Error: {result.message}", file=sys.stderr)
        return 1

    print(result.message)
    summary = result.data.get("archived_summary")
    if summary:
        print(
            f"Archived '{summary['session_name']}': "
            f"{summary['families_checked_in']} families checked in, "
            f"{summary['plates_served']}/{summary['plates_entitled']} plates served"
        )
    print(f"Current session: {result.data['session']['name']} (id={result.data['session']['id']})")
    return 0


def cmd_sync(args: argparse.Namespace) -> int:
    """
    Reconcile the family directory.

    Reads ``--csv`` when given, otherwise the configured Google Sheet.

    Returns:
        0 when every batch applied, 1 otherwise
    """
    from plate_server.db.schema import init_database
    from plate_server.services.reconciliation import ReconciliationEngine
    from plate_server.services.roster import CsvRowProvider

    provider = CsvRowProvider(Path(args.csv)) if args.csv else None
    try:
        init_database()
        result = ReconciliationEngine().sync_from_provider(provider, actor_role=CLI_ROLE)
    except Exception as e:
        print(f"Error during sync: {e}", file=sys.stderr)
        return 1

    print(result.message)
    for error in result.errors:
        print(f"  - {error}")
    return 0 if result.success else 1


def cmd_stats(args: argparse.Namespace) -> int:
    """
    Print counters for the current session.

    Returns:
        0 on success, 1 when there is no current session or on error
    """
    from plate_server.db.schema import init_database
    from plate_server.services.sessions import SessionManager

    manager = SessionManager()
    try:
        init_database()
        session = manager.current_session()
        if session is None:
            print("No current session. Run 'plate-server new-session NAME' first.", file=sys.stderr)
            return 1
        totals = manager.session_stats(session.id)
        last_sync = manager.last_sync()
    except Exception as e:
        print(f"Error reading stats: {e}", file=sys.stderr)
        return 1

    print(f"Session:          {session.name} (id={session.id})")
    print(f"Families:         {totals.total_families}")
    print(f"Checked in:       {totals.families_checked_in}")
    print(f"Plates entitled:  {totals.plates_entitled}")
    print(f"Plates served:    {totals.plates_served}")
    print(f"Last sync:        {last_sync or 'never'}")
    return 0


def main() -> int:
    """Main entry point for the CLI."""
    parser = argparse.ArgumentParser(
        prog="plate-server",
        description="Plate Server - entitlement ledger for live community events",
    )

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    init_parser = subparsers.add_parser(
        "init-db",
        help="Initialize the database schema",
        description="Create the database tables, indexes and audit triggers.",
    )
    init_parser.set_defaults(func=cmd_init_db)

    run_parser = subparsers.add_parser(
        "run",
        help="Run the API server",
        description="Start the HTTP API used by the stations and the admin dashboard.",
    )
    run_parser.add_argument(
        "--port",
        "-p",
        type=int,
        help="API server port (default: 8000, or PLATE_PORT env var)",
    )
    run_parser.add_argument(
        "--host",
        type=str,
        help="Host to bind to (default: 0.0.0.0, or PLATE_HOST env var)",
    )
    run_parser.set_defaults(func=cmd_run)

    session_parser = subparsers.add_parser(
        "new-session",
        help="Archive the current session and start a new one",
        description=(
            "Archive the current session's totals to the audit log, clear its "
            "check-ins and make NAME the current session."
        ),
    )
    session_parser.add_argument("name", help="Name of the new session")
    session_parser.set_defaults(func=cmd_new_session)

    sync_parser = subparsers.add_parser(
        "sync",
        help="Reconcile the family directory from the roster",
        description="Upsert families from the configured Google Sheet or a CSV export.",
    )
    sync_parser.add_argument(
        "--csv",
        type=str,
        help="Read the roster from a CSV export (header row skipped) instead of the sheet",
    )
    sync_parser.set_defaults(func=cmd_sync)

    stats_parser = subparsers.add_parser(
        "stats",
        help="Show current session counters",
    )
    stats_parser.set_defaults(func=cmd_stats)

    args = parser.parse_args()

    if args.command is None:
        parser.print_help()
        return 0

    configure_logging()
    return args.func(args)


if __name__ == "__main__":
    sys.exit(main())
