"""
Tests for the authorization gate and role catalog.
"""

import pytest

from orgadmin.auth.errors import AuthorizationError
from orgadmin.auth.models import Principal, Role, RoleScope
from orgadmin.auth.permissions import (
    SYSTEM_ROLES,
    AuthorizationGate,
    MatchMode,
    Permission,
    PrincipalView,
    scope_filter,
    seed_roles,
)


def principal(role_code=None, role="user", **fields):
    return Principal(
        user_id="u-1",
        name="Test",
        organization_id="org-1",
        role=role,
        role_code=role_code,
        department_id="dept-1",
        branch_ids=["b-1", "b-2"],
        **fields,
    )


@pytest.fixture
def gate(db):
    return AuthorizationGate(db)


class TestCatalog:
    """Test the seeded system roles."""

    def test_twenty_one_permissions(self):
        assert len(Permission) == 21

    def test_seeded_once(self, db):
        assert len(db.list_roles()) == 5
        assert seed_roles(db) == 0

    def test_levels(self):
        levels = {role.code: role.level for role in SYSTEM_ROLES}
        assert levels == {
            "ROLE_ENTERPRISE_ADMIN": 5,
            "ROLE_SUPER_ADMIN": 4,
            "ROLE_ADMIN": 3,
            "ROLE_BRANCH_ADMIN": 2,
            "ROLE_USER": 1,
        }

    def test_enterprise_admin_has_everything(self, db):
        role = db.get_role("ROLE_ENTERPRISE_ADMIN")
        assert role.permissions == frozenset(p.value for p in Permission)

    def test_system_role_is_immutable(self, db):
        with pytest.raises(AuthorizationError):
            db.save_role(Role(code="ROLE_USER", name="User", level=1))

    def test_custom_role_can_be_saved(self, db):
        db.save_role(Role(code="ROLE_AUDITOR", name="Auditor", level=2, permissions=frozenset({"AUDIT_VIEW"})))
        assert db.get_role("ROLE_AUDITOR").permissions == frozenset({"AUDIT_VIEW"})


class TestAuthorize:
    """Test ANY/ALL matching."""

    def test_any_intersects(self, gate):
        decision = gate.authorize(principal("ROLE_USER"), [Permission.USER_READ, Permission.ASSET_READ])
        assert decision.allowed

    def test_any_disjoint(self, gate):
        decision = gate.authorize(principal("ROLE_USER"), [Permission.USER_READ, Permission.USER_UPDATE])
        assert not decision.allowed
        assert decision.reason == AuthorizationError.INSUFFICIENT_PERMISSION

    def test_all_superset(self, gate):
        decision = gate.authorize(
            principal("ROLE_ADMIN"), ["USER_READ", "USER_UPDATE"], mode=MatchMode.ALL
        )
        assert decision.allowed

    def test_all_missing_one(self, gate):
        decision = gate.authorize(
            principal("ROLE_ADMIN"), ["USER_READ", "USER_DELETE"], mode=MatchMode.ALL
        )
        assert not decision.allowed
        assert decision.missing == ["USER_DELETE"]

    def test_no_role_is_distinct(self, gate):
        decision = gate.authorize(principal(role_code="ROLE_NOPE", role="nope"), ["ASSET_READ"])
        assert not decision.allowed
        assert decision.reason == AuthorizationError.NO_ROLE

    def test_inactive_role_is_no_role(self, db, gate):
        db.save_role(Role(
            code="ROLE_RETIRED", name="Retired", level=1,
            permissions=frozenset({"ASSET_READ"}), is_active=False,
        ))
        decision = gate.authorize(principal("ROLE_RETIRED"), ["ASSET_READ"])
        assert decision.reason == AuthorizationError.NO_ROLE

    def test_legacy_role_string(self, gate):
        view = gate.resolve(principal(role_code=None, role="super_admin"))
        assert view.role.code == "ROLE_SUPER_ADMIN"


class TestRequire:
    """Test the raising variants."""

    def test_require_no_role(self, gate):
        with pytest.raises(AuthorizationError, match="No role assigned") as exc:
            gate.require(principal(role_code=None, role="visitor"), [Permission.ASSET_READ])
        assert exc.value.reason == AuthorizationError.NO_ROLE
        assert exc.value.status_code == 403

    def test_require_insufficient(self, gate):
        with pytest.raises(AuthorizationError) as exc:
            gate.require(principal("ROLE_BRANCH_ADMIN"), [Permission.USER_UPDATE])
        assert exc.value.reason == AuthorizationError.INSUFFICIENT_PERMISSION
        assert exc.value.detail["required"] == ["USER_UPDATE"]

    def test_require_returns_view(self, gate):
        view = gate.require(principal("ROLE_ADMIN"), [Permission.USER_UPDATE])
        assert isinstance(view, PrincipalView)
        assert view.role.code == "ROLE_ADMIN"

    def test_levels_and_codes(self, gate):
        admin = principal("ROLE_ADMIN")

        assert gate.role_level_at_least(admin, 3)
        assert not gate.role_level_at_least(admin, 4)
        assert gate.has_role(admin, "ROLE_ADMIN", "ROLE_SUPER_ADMIN")
        assert not gate.has_role(admin, "ROLE_USER")

        with pytest.raises(AuthorizationError, match="role level 4"):
            gate.require_level(admin, 4)


class TestScopeFilter:
    """Test data filters per scope."""

    @pytest.mark.parametrize("role_code,expected", [
        ("ROLE_ENTERPRISE_ADMIN", {}),
        ("ROLE_SUPER_ADMIN", {"organization_id": "org-1"}),
        ("ROLE_ADMIN", {"organization_id": "org-1", "department_id": "dept-1"}),
        ("ROLE_BRANCH_ADMIN", {"organization_id": "org-1", "branch_ids": ["b-1", "b-2"]}),
    ])
    def test_filters(self, gate, role_code, expected):
        assert scope_filter(gate.resolve(principal(role_code))) == expected

    def test_no_role(self):
        with pytest.raises(AuthorizationError):
            scope_filter(PrincipalView(principal(), role=None))

    def test_every_scope_has_a_filter(self):
        view = PrincipalView(principal(), Role(code="X", name="X", level=1, scope=RoleScope.SYSTEM))
        for scope in RoleScope:
            view.role.scope = scope
            assert isinstance(scope_filter(view), dict)
