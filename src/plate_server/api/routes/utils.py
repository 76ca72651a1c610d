"""Shared helpers for API route modules."""

from fastapi import HTTPException

from plate_server.api.models import ActionResponse
from plate_server.services.outcomes import CONFLICT_KINDS, ActionResult, ErrorKind

_STATUS_BY_KIND = {
    ErrorKind.VALIDATION: 400,
    ErrorKind.PERMISSION_DENIED: 403,
    ErrorKind.NOT_FOUND: 404,
    ErrorKind.UPSTREAM: 502,
}


def status_for(kind: ErrorKind) -> int:
    """HTTP status for a rejection kind. Conflict kinds map to 409."""
    if kind in CONFLICT_KINDS:
        return 409
    return _STATUS_BY_KIND.get(kind, 400)


def respond(result: ActionResult) -> ActionResponse:
    """
    Turn a service result into a response, raising HTTPException on rejection.

    The error detail carries both the symbolic kind (for station logic) and
    the volunteer-readable message.
    """
    if not result.success:
        raise HTTPException(
            status_code=status_for(result.error),
            detail={"error": result.error.value, "message": result.message, **result.data},
        )
    return ActionResponse(message=result.message, data=result.data)
