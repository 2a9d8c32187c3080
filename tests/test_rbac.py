"""Unit tests for the role hierarchy, permission table and AccessPolicy."""

import pytest

from agrilink.service.auth import Identity
from agrilink.service.errors import (
    AuthenticationRequiredError,
    ConfigurationError,
    ForbiddenError,
)
from agrilink.service.rbac import (
    ADMINISTRATIVE_ROLES,
    PERMISSIONS,
    ROLE_HIERARCHY,
    ROLE_NAMES,
    AccessPolicy,
    Role,
    dominated_roles,
)


def _identity(role: str) -> Identity:
    return Identity(
        id=f"user-{role}",
        name="Test",
        email=f"{role}@example.com",
        role=role,
        phone="+15550100",
    )


@pytest.fixture
def policy():
    return AccessPolicy()


class TestHierarchy:
    def test_every_role_dominates_itself(self):
        for role in ROLE_NAMES:
            assert role in ROLE_HIERARCHY[role]

    def test_super_admin_dominates_every_administrative_role(self):
        assert ROLE_HIERARCHY[Role.SUPER_ADMIN.value] == ADMINISTRATIVE_ROLES

    def test_admin_does_not_dominate_super_admin(self):
        admin = ROLE_HIERARCHY[Role.ADMIN.value]
        assert Role.SUPER_ADMIN.value not in admin
        assert Role.PRICING_MANAGER.value in admin

    def test_marketplace_roles_are_outside_the_admin_tree(self):
        assert Role.BUYER.value not in ROLE_HIERARCHY[Role.SUPER_ADMIN.value]
        assert Role.FARMER.value not in ROLE_HIERARCHY[Role.ADMIN.value]

    def test_unknown_role_dominates_nothing(self):
        assert dominated_roles("root") == frozenset()

    def test_tables_are_read_only(self):
        with pytest.raises(TypeError):
            PERMISSIONS["user:read"] = frozenset({"buyer"})  # type: ignore[index]
        with pytest.raises(TypeError):
            ROLE_HIERARCHY["buyer"] = ADMINISTRATIVE_ROLES  # type: ignore[index]


class TestCheckRoles:
    def test_exact_role_passes(self, policy):
        policy.check_roles(_identity("farmer"), {"farmer"})

    def test_dominating_role_passes(self, policy):
        policy.check_roles(_identity("super_admin"), {"produce_manager"})
        policy.check_roles(_identity("admin"), {"analytics_manager"})

    @pytest.mark.parametrize("role", sorted(ADMINISTRATIVE_ROLES))
    def test_super_admin_passes_every_administrative_role(self, policy, role):
        policy.check_roles(_identity("super_admin"), {role})

    def test_peer_role_is_denied_with_detail(self, policy):
        with pytest.raises(ForbiddenError) as excinfo:
            policy.check_roles(_identity("produce_manager"), {"pricing_manager"})
        assert excinfo.value.detail == {
            "required": ["pricing_manager"],
            "current": "produce_manager",
        }

    def test_admin_is_not_super_admin(self, policy):
        with pytest.raises(ForbiddenError):
            policy.super_admin_only(_identity("admin"))

    def test_admin_only_accepts_both_admin_roles(self, policy):
        policy.admin_only(_identity("admin"))
        policy.admin_only(_identity("super_admin"))
        with pytest.raises(ForbiddenError):
            policy.admin_only(_identity("farmer_support"))

    def test_missing_identity_requires_authentication(self, policy):
        with pytest.raises(AuthenticationRequiredError):
            policy.check_roles(None, {"buyer"})

    def test_unknown_role_is_denied(self, policy):
        with pytest.raises(ForbiddenError):
            policy.check_roles(_identity("overlord"), {"buyer"})

    def test_has_role_is_boolean(self, policy):
        assert policy.has_role(_identity("admin"), {"pricing_manager"})
        assert not policy.has_role(_identity("buyer"), {"farmer"})
        assert not policy.has_role(None, {"buyer"})


class TestCheckPermission:
    @pytest.mark.parametrize(
        "role,permission",
        [
            ("farmer_support", "user:read"),
            ("farmer_support", "farmer:approve"),
            ("produce_manager", "product:approve"),
            ("produce_manager", "product:write"),
            ("logistics_coordinator", "order:write"),
            ("pricing_manager", "pricing:write"),
            ("analytics_manager", "analytics:export"),
            ("communication_manager", "announcement:write"),
            ("admin", "system:monitor"),
            ("super_admin", "system:backup"),
        ],
    )
    def test_granted(self, policy, role, permission):
        policy.check_permission(_identity(role), permission)

    @pytest.mark.parametrize(
        "role,permission",
        [
            ("admin", "user:delete"),
            ("admin", "system:configure"),
            ("communication_manager", "announcement:approve"),
            ("produce_manager", "product:delete"),
            ("produce_manager", "order:write"),
            ("buyer", "product:read"),
            ("farmer", "order:read"),
        ],
    )
    def test_denied(self, policy, role, permission):
        with pytest.raises(ForbiddenError) as excinfo:
            policy.check_permission(_identity(role), permission)
        assert excinfo.value.detail == {"required": permission, "current": role}

    def test_unregistered_permission_is_a_server_error(self, policy):
        with pytest.raises(ConfigurationError) as excinfo:
            policy.check_permission(_identity("super_admin"), "crop:harvest")
        assert excinfo.value.status_code == 500
        assert excinfo.value.error_code == "configuration_error"

    def test_missing_identity_requires_authentication(self, policy):
        with pytest.raises(AuthenticationRequiredError):
            policy.check_permission(None, "user:read")


class TestPermissionsFor:
    def test_buyer_has_no_administrative_permissions(self, policy):
        assert policy.permissions_for("buyer") == []

    def test_super_admin_has_every_permission(self, policy):
        assert policy.permissions_for("super_admin") == sorted(PERMISSIONS)

    def test_admin_lacks_super_admin_only_permissions(self, policy):
        granted = set(policy.permissions_for("admin"))
        assert "system:monitor" in granted
        assert {"user:delete", "system:configure", "system:backup"}.isdisjoint(granted)
