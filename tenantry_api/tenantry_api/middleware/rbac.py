"""Role-based access control for tenant members.

Defines a three-tier role hierarchy (MEMBER, ADMIN, OWNER).  Each role
inherits every permission of the roles below it.

Usage in routers::

    from tenantry_api.middleware.rbac import Permission, Role, require_permission

    @router.post("/cancel")
    async def cancel(
        ...,
        _role: Role = Depends(require_permission(Permission.MANAGE_BILLING)),
    ) -> ...:

The role checked here comes from the signed session token.  Services that
mutate tenant state re-read the membership row, which stays authoritative.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from enum import Enum, IntEnum

from fastapi import Depends, Request

from tenantry_api.errors import Forbidden, Unauthorized

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Role hierarchy (higher int = more authority)
# ---------------------------------------------------------------------------


class Role(IntEnum):
    """Membership roles ordered by privilege level."""

    MEMBER = 0
    ADMIN = 1
    OWNER = 2


_ROLE_LOOKUP: dict[str, Role] = {r.name.lower(): r for r in Role}


def parse_role(raw: str) -> Role:
    """Convert a stored or claimed role string into a :class:`Role`.

    Raises :class:`ValueError` if the string does not map to a known role.
    """
    try:
        return _ROLE_LOOKUP[raw.strip().lower()]
    except KeyError:
        raise ValueError(f"Unknown role '{raw}'. Valid roles: {sorted(_ROLE_LOOKUP)}")


# ---------------------------------------------------------------------------
# Permissions
# ---------------------------------------------------------------------------


class Permission(str, Enum):
    """Fine-grained permission tokens checked by endpoint guards."""

    READ_WORKSPACE = "read:workspace"
    ACCESS_DATA_PLANE = "access:data_plane"

    MANAGE_ONBOARDING = "manage:onboarding"
    MANAGE_BILLING = "manage:billing"
    PROVISION_TENANT = "provision:tenant"


_MEMBER_PERMS: frozenset[Permission] = frozenset(
    {
        Permission.READ_WORKSPACE,
        Permission.ACCESS_DATA_PLANE,
    }
)

_ADMIN_PERMS: frozenset[Permission] = _MEMBER_PERMS | frozenset(
    {
        Permission.MANAGE_BILLING,
    }
)

_OWNER_PERMS: frozenset[Permission] = _ADMIN_PERMS | frozenset(
    {
        Permission.MANAGE_ONBOARDING,
        Permission.PROVISION_TENANT,
    }
)

ROLE_PERMISSIONS: dict[Role, frozenset[Permission]] = {
    Role.MEMBER: _MEMBER_PERMS,
    Role.ADMIN: _ADMIN_PERMS,
    Role.OWNER: _OWNER_PERMS,
}


def role_has_permission(role: Role, permission: Permission) -> bool:
    """Return ``True`` if *role* grants *permission*."""
    return permission in ROLE_PERMISSIONS.get(role, frozenset())


# ---------------------------------------------------------------------------
# FastAPI dependency: extract role from request.state
# ---------------------------------------------------------------------------


def get_user_role(request: Request) -> Role:
    """Extract and validate the member role from ``request.state.role``.

    Raises
    ------
    Unauthorized
        If the request carries no authenticated identity.
    Forbidden
        If the role claim is missing or not a recognised role.
    """
    if getattr(request.state, "user_id", None) is None:
        raise Unauthorized("Authentication required")

    raw_role: str | None = getattr(request.state, "role", None)
    if raw_role is None:
        logger.warning("Authenticated request (user=%s) has no role claim", request.state.user_id)
        raise Forbidden("Session has no tenant role")

    try:
        return parse_role(raw_role)
    except ValueError:
        logger.warning("Unrecognised role claim '%s'; denying access", raw_role)
        raise Forbidden(f"Unrecognised role '{raw_role}'")


def require_permission(permission: Permission) -> Callable[..., Role]:
    """Return a FastAPI dependency that enforces a specific permission.

    Returns the resolved :class:`Role` so handlers can inspect it.
    """

    def _check(role: Role = Depends(get_user_role)) -> Role:
        if not role_has_permission(role, permission):
            logger.info("Permission %s denied for role %s", permission.value, role.name)
            raise Forbidden(f"Role '{role.name.lower()}' lacks permission '{permission.value}'")
        return role

    return _check
