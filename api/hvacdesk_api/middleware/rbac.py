"""Role-Based Access Control dependencies.

Tenant roles form a hierarchy (TECHNICIAN < ADMIN < OWNER); each inherits
the permissions of the roles below it.  PLATFORM_ADMIN sits outside that
hierarchy: it holds the support permissions (impersonation, audit log)
but no tenant billing permissions of its own.  While impersonating, the
request carries the target user's role instead.

Usage in routers::

    from hvacdesk_api.middleware.rbac import Permission, Role, require_permission

    @router.get("/subscription")
    async def get_subscription(
        ...,
        _role: Role = Depends(require_permission(Permission.READ_SUBSCRIPTION)),
    ) -> ...:
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from enum import Enum, IntEnum

from fastapi import Depends, HTTPException, Request

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Roles
# ---------------------------------------------------------------------------


class Role(IntEnum):
    """User roles ordered by tenant privilege level."""

    TECHNICIAN = 0
    ADMIN = 1
    OWNER = 2
    PLATFORM_ADMIN = 10  # Non-hierarchical: support staff, not a tenant member


_ROLE_LOOKUP: dict[str, Role] = {r.name.lower(): r for r in Role}


def parse_role(raw: str) -> Role:
    """Convert a token ``role`` claim string into a :class:`Role`.

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

    READ_SUBSCRIPTION = "read:subscription"
    MANAGE_BILLING = "manage:billing"
    IMPERSONATE = "impersonate:users"
    READ_AUDIT = "read:audit"


_TECHNICIAN_PERMS: frozenset[Permission] = frozenset({Permission.READ_SUBSCRIPTION})

_ADMIN_PERMS: frozenset[Permission] = _TECHNICIAN_PERMS | frozenset({Permission.MANAGE_BILLING})

_OWNER_PERMS: frozenset[Permission] = _ADMIN_PERMS

_PLATFORM_ADMIN_PERMS: frozenset[Permission] = frozenset(
    {
        Permission.IMPERSONATE,
        Permission.READ_AUDIT,
    }
)

ROLE_PERMISSIONS: dict[Role, frozenset[Permission]] = {
    Role.TECHNICIAN: _TECHNICIAN_PERMS,
    Role.ADMIN: _ADMIN_PERMS,
    Role.OWNER: _OWNER_PERMS,
    Role.PLATFORM_ADMIN: _PLATFORM_ADMIN_PERMS,
}


def role_has_permission(role: Role, permission: Permission) -> bool:
    """Return ``True`` if *role* grants *permission*."""
    return permission in ROLE_PERMISSIONS.get(role, frozenset())


# ---------------------------------------------------------------------------
# FastAPI dependencies
# ---------------------------------------------------------------------------


def get_user_role(request: Request) -> Role:
    """Extract and validate the caller's role from ``request.state.role``.

    Raises
    ------
    HTTPException(401)
        If the request is unauthenticated.
    HTTPException(403)
        If the role claim value is not a recognised role.
    """
    raw_role: str | None = getattr(request.state, "role", None)
    if raw_role is None:
        raise HTTPException(status_code=401, detail="Authentication required")

    try:
        return parse_role(raw_role)
    except ValueError:
        logger.warning("Unrecognised role claim '%s'; denying access", raw_role)
        raise HTTPException(
            status_code=403,
            detail=f"Unrecognised role '{raw_role}'. Valid roles: {sorted(_ROLE_LOOKUP)}",
        )


def require_permission(permission: Permission) -> Callable[..., Role]:
    """Return a FastAPI dependency that enforces a specific permission.

    Returns the resolved :class:`Role` so handlers can inspect it.
    """

    def _guard(role: Role = Depends(get_user_role)) -> Role:
        if not role_has_permission(role, permission):
            logger.info(
                "Permission denied: role=%s requires %s",
                role.name,
                permission.value,
            )
            raise HTTPException(
                status_code=403,
                detail=(f"Permission denied: role '{role.name.lower()}' does not have '{permission.value}' permission"),
            )
        return role

    return _guard
