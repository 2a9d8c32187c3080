"""FastAPI dependencies that resolve and gate the caller's identity.

Other routers declare what they need by name::

    @router.get("/products/pending")
    async def pending(identity: Identity = Depends(require_permission("product:approve"))):
        ...

The resolved ``Identity`` is the dependency's return value; nothing is
stashed on ``request.state``.
"""

from __future__ import annotations

from typing import Callable, Optional

from fastapi import Depends, Header

from agrilink.service.auth import Identity
from agrilink.service.gate import (
    ADMIN_ONLY,
    SUPER_ADMIN_ONLY,
    PermissionRequirement,
    Requirement,
    RoleRequirement,
    SecondFactorRequirement,
)
from agrilink.service.runtime import get_runtime


async def get_identity(authorization: Optional[str] = Header(None)) -> Identity:
    return get_runtime().verifier.resolve(authorization)


def require(*requirements: Requirement) -> Callable:
    """Dependency running ``requirements`` in order against the resolved identity."""

    async def _gate(identity: Identity = Depends(get_identity)) -> Identity:
        return get_runtime().gate.authorize(identity, *requirements)

    return _gate


def require_roles(*roles: str) -> Callable:
    return require(RoleRequirement(roles))


def require_permission(name: str, *, second_factor: bool = False) -> Callable:
    if second_factor:
        return require(SecondFactorRequirement(), PermissionRequirement(name))
    return require(PermissionRequirement(name))


def require_second_factor() -> Callable:
    return require(SecondFactorRequirement())


def admin_only() -> Callable:
    return require(ADMIN_ONLY)


def super_admin_only() -> Callable:
    return require(SUPER_ADMIN_ONLY)
