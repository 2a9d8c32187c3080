"""Role hierarchy and permission table for the marketplace.

Both tables are built once at import and exposed as read-only mappings of
frozensets, so nothing at request time can widen a grant.

Dominance is precomputed: ``ROLE_HIERARCHY[role]`` is the full set of roles
``role`` satisfies, itself included. A role check or permission check is a
set intersection, never a graph walk.
"""

from __future__ import annotations

from enum import Enum
from types import MappingProxyType
from typing import TYPE_CHECKING, Iterable, Mapping, Optional

from agrilink.logging import get_logger
from agrilink.service.errors import (
    AuthenticationRequiredError,
    ConfigurationError,
    ForbiddenError,
)

if TYPE_CHECKING:
    from agrilink.service.auth import Identity

logger = get_logger(__name__)


class Role(str, Enum):
    SUPER_ADMIN = "super_admin"
    ADMIN = "admin"
    PRODUCE_MANAGER = "produce_manager"
    LOGISTICS_COORDINATOR = "logistics_coordinator"
    FARMER_SUPPORT = "farmer_support"
    COMMUNICATION_MANAGER = "communication_manager"
    ANALYTICS_MANAGER = "analytics_manager"
    PRICING_MANAGER = "pricing_manager"
    BUYER = "buyer"
    FARMER = "farmer"


ROLE_NAMES = frozenset(role.value for role in Role)

# Roles a member can pick at registration; everything else is granted by an admin.
SELF_SERVICE_ROLES = frozenset({Role.BUYER.value, Role.FARMER.value})

ADMINISTRATIVE_ROLES = frozenset(
    {
        Role.SUPER_ADMIN.value,
        Role.ADMIN.value,
        Role.PRODUCE_MANAGER.value,
        Role.LOGISTICS_COORDINATOR.value,
        Role.FARMER_SUPPORT.value,
        Role.COMMUNICATION_MANAGER.value,
        Role.ANALYTICS_MANAGER.value,
        Role.PRICING_MANAGER.value,
    }
)

# Only a super_admin may grant or revoke these.
PRIVILEGED_ROLES = frozenset({Role.SUPER_ADMIN.value, Role.ADMIN.value})


def _build_hierarchy() -> Mapping[str, frozenset[str]]:
    hierarchy: dict[str, frozenset[str]] = {}
    for role in Role:
        if role is Role.SUPER_ADMIN:
            hierarchy[role.value] = ADMINISTRATIVE_ROLES
        elif role is Role.ADMIN:
            hierarchy[role.value] = ADMINISTRATIVE_ROLES - {Role.SUPER_ADMIN.value}
        else:
            hierarchy[role.value] = frozenset({role.value})
    return MappingProxyType(hierarchy)


ROLE_HIERARCHY: Mapping[str, frozenset[str]] = _build_hierarchy()


def _grant(*roles: Role) -> frozenset[str]:
    return frozenset(role.value for role in roles)


_SA, _AD = Role.SUPER_ADMIN, Role.ADMIN

PERMISSIONS: Mapping[str, frozenset[str]] = MappingProxyType(
    {
        "user:read": _grant(_SA, _AD, Role.FARMER_SUPPORT),
        "user:write": _grant(_SA, _AD),
        "user:delete": _grant(_SA),
        "farmer:approve": _grant(_SA, _AD, Role.FARMER_SUPPORT),
        "farmer:suspend": _grant(_SA, _AD),
        "product:read": _grant(_SA, _AD, Role.PRODUCE_MANAGER),
        "product:write": _grant(_SA, _AD, Role.PRODUCE_MANAGER),
        "product:delete": _grant(_SA, _AD),
        "product:approve": _grant(_SA, _AD, Role.PRODUCE_MANAGER),
        "product:suspend": _grant(_SA, _AD, Role.PRODUCE_MANAGER),
        "order:read": _grant(_SA, _AD, Role.LOGISTICS_COORDINATOR),
        "order:write": _grant(_SA, _AD, Role.LOGISTICS_COORDINATOR),
        "order:delete": _grant(_SA, _AD),
        "pricing:read": _grant(_SA, _AD, Role.PRICING_MANAGER),
        "pricing:write": _grant(_SA, _AD, Role.PRICING_MANAGER),
        "analytics:read": _grant(_SA, _AD, Role.ANALYTICS_MANAGER),
        "analytics:export": _grant(_SA, _AD, Role.ANALYTICS_MANAGER),
        "announcement:read": _grant(_SA, _AD, Role.COMMUNICATION_MANAGER),
        "announcement:write": _grant(_SA, _AD, Role.COMMUNICATION_MANAGER),
        "announcement:delete": _grant(_SA, _AD),
        "announcement:approve": _grant(_SA, _AD),
        "system:monitor": _grant(_SA, _AD),
        "system:configure": _grant(_SA),
        "system:backup": _grant(_SA),
    }
)


def is_known_role(role: str) -> bool:
    return role in ROLE_NAMES


def dominated_roles(role: str) -> frozenset[str]:
    """Roles satisfied by ``role``; empty for a role string the system does not know."""
    return ROLE_HIERARCHY.get(role, frozenset())


class AccessPolicy:
    """Role and permission checks over an identity's current role."""

    ADMIN_ROLES = frozenset({Role.ADMIN.value, Role.SUPER_ADMIN.value})
    SUPER_ADMIN_ROLES = frozenset({Role.SUPER_ADMIN.value})

    def __init__(
        self,
        hierarchy: Mapping[str, frozenset[str]] = ROLE_HIERARCHY,
        permissions: Mapping[str, frozenset[str]] = PERMISSIONS,
    ) -> None:
        self.hierarchy = hierarchy
        self.permissions = permissions

    def _satisfies(self, role: str, required: Iterable[str]) -> bool:
        required_set = frozenset(required)
        if role in required_set:
            return True
        return bool(self.hierarchy.get(role, frozenset()) & required_set)

    def has_role(self, identity: Optional["Identity"], roles: Iterable[str]) -> bool:
        return identity is not None and self._satisfies(identity.role, roles)

    def check_roles(self, identity: Optional["Identity"], roles: Iterable[str]) -> None:
        if identity is None:
            raise AuthenticationRequiredError("authentication required")
        required = sorted(frozenset(roles))
        if self._satisfies(identity.role, required):
            return
        logger.warning(
            "role_denied", user_id=identity.id, role=identity.role, required=required
        )
        raise ForbiddenError(
            "access denied: insufficient role",
            detail={"required": required, "current": identity.role},
        )

    def check_permission(self, identity: Optional["Identity"], name: str) -> None:
        if identity is None:
            raise AuthenticationRequiredError("authentication required")
        granted = self.permissions.get(name)
        if granted is None:
            logger.error("permission_not_registered", permission=name)
            raise ConfigurationError(
                "server misconfiguration: permission is not registered",
                detail={"permission": name},
            )
        if self._satisfies(identity.role, granted):
            return
        logger.warning(
            "permission_denied", user_id=identity.id, role=identity.role, permission=name
        )
        raise ForbiddenError(
            "access denied: missing permission",
            detail={"required": name, "current": identity.role},
        )

    def admin_only(self, identity: Optional["Identity"]) -> None:
        self.check_roles(identity, self.ADMIN_ROLES)

    def super_admin_only(self, identity: Optional["Identity"]) -> None:
        self.check_roles(identity, self.SUPER_ADMIN_ROLES)

    def permissions_for(self, role: str) -> list[str]:
        return sorted(
            name for name, granted in self.permissions.items() if self._satisfies(role, granted)
        )
