"""
Role-based permission system.

The plate server distinguishes two coarse roles, passed in by the caller
with every mutating request:

    Volunteer → Admin

Volunteers run the entry and food stations: search, check-in, serve and
undoing their own check-in while nothing has been served yet. Admins can
additionally correct counters, change extra guests, close and reopen
records, force an undo, start a new session and run a roster sync.

Permission Design:
- Each role has an explicit set of permissions (no inheritance)
- Services call :func:`has_permission` and turn a denial into a
  ``PermissionDenied`` outcome; they never raise for it
"""

from enum import Enum

# ============================================================================
# ROLE DEFINITIONS
# ============================================================================


class Role(Enum):
    """
    Caller roles, ordered by privilege level.

    Roles travel as lowercase strings in requests and audit rows.
    """

    VOLUNTEER = "volunteer"
    ADMIN = "admin"


# ============================================================================
# PERMISSION DEFINITIONS
# ============================================================================


class Permission(Enum):
    """Specific actions a role may be granted."""

    # Station permissions
    SEARCH = "search"
    CHECK_IN = "check_in"
    SERVE = "serve"
    UNDO_UNSERVED_CHECK_IN = "undo_unserved_check_in"
    VIEW_AUDIT = "view_audit"

    # Admin permissions
    ADJUST_USAGE = "adjust_usage"
    UPDATE_GUESTS = "update_guests"
    SET_STATUS = "set_status"
    FORCE_UNDO_CHECK_IN = "force_undo_check_in"
    START_SESSION = "start_session"
    SYNC_ROSTER = "sync_roster"


# ============================================================================
# ROLE-PERMISSION MAPPING
# ============================================================================

_STATION_PERMISSIONS = {
    Permission.SEARCH,
    Permission.CHECK_IN,
    Permission.SERVE,
    Permission.UNDO_UNSERVED_CHECK_IN,
    Permission.VIEW_AUDIT,
}

ROLE_PERMISSIONS: dict[Role, set[Permission]] = {
    Role.VOLUNTEER: set(_STATION_PERMISSIONS),
    Role.ADMIN: _STATION_PERMISSIONS
    | {
        Permission.ADJUST_USAGE,
        Permission.UPDATE_GUESTS,
        Permission.SET_STATUS,
        Permission.FORCE_UNDO_CHECK_IN,
        Permission.START_SESSION,
        Permission.SYNC_ROSTER,
    },
}


# ============================================================================
# PERMISSION CHECKING FUNCTIONS
# ============================================================================


def parse_role(role: str | Role) -> Role | None:
    """
    Convert a role string to :class:`Role`.

    Returns None for unknown roles so callers can deny rather than crash.
    """
    if isinstance(role, Role):
        return role
    try:
        return Role(role.strip().lower())
    except (AttributeError, ValueError):
        return None


def has_permission(role: str | Role, permission: Permission) -> bool:
    """
    Check if a role has a specific permission.

    Args:
        role: Role string (case-insensitive) or Role enum
        permission: Permission to check

    Returns:
        True if granted, False if not or if the role is unknown

    Example:
        >>> has_permission("admin", Permission.ADJUST_USAGE)
        True
        >>> has_permission("volunteer", Permission.START_SESSION)
        False
    """
    role_enum = parse_role(role)
    if role_enum is None:
        return False
    return permission in ROLE_PERMISSIONS.get(role_enum, set())


def is_admin(role: str | Role) -> bool:
    """Return True for the admin role."""
    return parse_role(role) is Role.ADMIN
