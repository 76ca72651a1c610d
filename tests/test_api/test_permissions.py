"""Tests for the role-based permission table."""

import pytest

from plate_server.api.permissions import (
    ROLE_PERMISSIONS,
    Permission,
    Role,
    has_permission,
    is_admin,
    parse_role,
)

ADMIN_ONLY = [
    Permission.ADJUST_USAGE,
    Permission.UPDATE_GUESTS,
    Permission.SET_STATUS,
    Permission.FORCE_UNDO_CHECK_IN,
    Permission.START_SESSION,
    Permission.SYNC_ROSTER,
]


@pytest.mark.unit
@pytest.mark.parametrize("permission", ADMIN_ONLY)
def test_admin_only_permissions(permission):
    assert has_permission("admin", permission)
    assert not has_permission("volunteer", permission)


@pytest.mark.unit
def test_admin_has_every_volunteer_permission():
    assert ROLE_PERMISSIONS[Role.VOLUNTEER] < ROLE_PERMISSIONS[Role.ADMIN]


@pytest.mark.unit
def test_role_strings_are_case_insensitive():
    assert parse_role(" Admin ") is Role.ADMIN
    assert is_admin("ADMIN")
    assert has_permission("Volunteer", Permission.SERVE)


@pytest.mark.unit
@pytest.mark.parametrize("role", ["", "superuser", None])
def test_unknown_roles_are_denied(role):
    assert parse_role(role) is None
    assert not has_permission(role, Permission.SEARCH)
