"""
Test cases for the role hierarchy.
"""
import pytest

from iam_service.auth.models import Role
from iam_service.auth.roles import RoleAuthority

ORDERED = [Role.USER, Role.MODERATOR, Role.ADMIN, Role.SUPERADMIN, Role.OWNER]


def test_roles_are_strictly_ordered():
    assert ORDERED == sorted(Role)
    assert [r.label for r in ORDERED] == ["user", "moderator", "admin", "superadmin", "owner"]


@pytest.mark.parametrize("value, expected", [
    (Role.ADMIN, Role.ADMIN),
    (3, Role.ADMIN),
    ("admin", Role.ADMIN),
    (" SuperAdmin ", Role.SUPERADMIN),
    ("root", None),
    (0, None),
    (6, None),
    (True, None),
    (None, None),
    (2.0, None),
])
def test_parse(value, expected):
    assert Role.parse(value) == expected


@pytest.mark.parametrize("actor", ORDERED)
@pytest.mark.parametrize("required", ORDERED)
def test_authorize_is_rank_comparison(actor, required):
    assert RoleAuthority.authorize(actor, required) == (actor >= required)


@pytest.mark.parametrize("actor", ORDERED)
@pytest.mark.parametrize("current", ORDERED)
@pytest.mark.parametrize("requested", ORDERED)
def test_can_assign_requires_outranking_both(actor, current, requested):
    allowed = RoleAuthority.can_assign(actor, current, requested)
    assert allowed == (actor > current and actor > requested)
    if actor <= requested or actor <= current:
        assert not allowed


def test_admin_cannot_grant_superadmin():
    assert not RoleAuthority.can_assign("admin", "user", "superadmin")
    assert RoleAuthority.can_assign("admin", "user", "moderator")


def test_nobody_grants_their_own_role():
    for role in ORDERED:
        assert not RoleAuthority.can_assign(role, Role.USER, role)


@pytest.mark.parametrize("bad", ["root", True, None, 99, ""])
def test_unknown_literals_fail_closed(bad):
    assert not RoleAuthority.authorize(bad, Role.USER)
    assert not RoleAuthority.authorize(Role.OWNER, bad)
    assert not RoleAuthority.can_assign(Role.OWNER, bad, Role.USER)
    assert not RoleAuthority.can_assign(Role.OWNER, Role.USER, bad)
    assert not RoleAuthority.can_manage(bad, Role.USER)


def test_can_manage_requires_strictly_higher_rank():
    assert RoleAuthority.can_manage(Role.ADMIN, Role.MODERATOR)
    assert not RoleAuthority.can_manage(Role.ADMIN, Role.ADMIN)
    assert not RoleAuthority.can_manage(Role.ADMIN, Role.SUPERADMIN)
