from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, Optional, Protocol

from agrilink.logging import get_logger
from agrilink.service.auth import Identity
from agrilink.service.errors import (
    AuthenticationRequiredError,
    SecondFactorRequiredError,
)
from agrilink.service.rbac import AccessPolicy

logger = get_logger(__name__)


class SecondFactorStatus(Protocol):
    def is_enabled(self, user_id: str) -> bool: ...


class Requirement(Protocol):
    def check(self, gate: "RequestGate", identity: Identity) -> None: ...


@dataclass(frozen=True)
class RoleRequirement:
    roles: frozenset[str]

    def __init__(self, roles: Iterable[str]) -> None:
        object.__setattr__(self, "roles", frozenset(roles))

    def check(self, gate: "RequestGate", identity: Identity) -> None:
        gate.policy.check_roles(identity, self.roles)


@dataclass(frozen=True)
class PermissionRequirement:
    name: str

    def check(self, gate: "RequestGate", identity: Identity) -> None:
        gate.policy.check_permission(identity, self.name)


@dataclass(frozen=True)
class SecondFactorRequirement:
    """Holds only when the account has no 2FA, or the token was issued after a second-factor proof."""

    def check(self, gate: "RequestGate", identity: Identity) -> None:
        if identity.second_factor_verified:
            return
        if gate.second_factor.is_enabled(identity.id):
            logger.warning("second_factor_required", user_id=identity.id)
            raise SecondFactorRequiredError(
                "two-factor verification required",
                detail={"second_factor": "totp"},
            )


class RequestGate:
    """Run every requirement against an already-resolved identity, in order.

    The first failing requirement raises; all must pass. A missing identity
    fails with ``AuthenticationRequiredError`` before any requirement runs.
    """

    def __init__(self, policy: AccessPolicy, second_factor: SecondFactorStatus) -> None:
        self.policy = policy
        self.second_factor = second_factor

    def authorize(
        self, identity: Optional[Identity], *requirements: Requirement
    ) -> Identity:
        if identity is None:
            raise AuthenticationRequiredError("authentication required")
        for requirement in requirements:
            requirement.check(self, identity)
        return identity


def roles(*names: str) -> RoleRequirement:
    return RoleRequirement(names)


def permission(name: str) -> PermissionRequirement:
    return PermissionRequirement(name)


def second_factor() -> SecondFactorRequirement:
    return SecondFactorRequirement()


ADMIN_ONLY = RoleRequirement(AccessPolicy.ADMIN_ROLES)
SUPER_ADMIN_ONLY = RoleRequirement(AccessPolicy.SUPER_ADMIN_ROLES)
