"""Audit package - append-only dispute trail for ledger changes.

Public surface
--------------
- :func:`record_entry`  - append one typed entry inside a write transaction.
- :func:`list_history`  - decoded entries, newest first.
- :func:`latest_entry`  - newest entry of one kind.
- :func:`verify_entry`  - checksum verification for one stored entry.
- :class:`AuditEntry`   - decoded entry with typed before/after payloads.

Usage example
-------------
::

    from plate_server.audit import record_entry
    from plate_server.audit.payloads import UsageSnapshot
    from plate_server.db.types import ActionKind

    with connection_scope(write=True) as conn:
        ...  # guarded mutation
        record_entry(
            conn,
            kind=ActionKind.SERVE,
            actor_role="volunteer",
            session_id=session.id,
            family_id=family.id,
            before=UsageSnapshot(used=0, status="ACTIVE"),
            after=UsageSnapshot(used=2, status="ACTIVE"),
            detail="Served 2 plates",
        )
"""

from plate_server.audit.writer import (
    AuditEntry,
    AuditVerifyResult,
    latest_entry,
    list_history,
    record_entry,
    verify_entry,
)

__all__ = [
    "AuditEntry",
    "AuditVerifyResult",
    "latest_entry",
    "list_history",
    "record_entry",
    "verify_entry",
]
