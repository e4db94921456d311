"""Middleware components for the HVACDesk API."""

from __future__ import annotations

from hvacdesk_api.middleware.auth import AuthenticationMiddleware
from hvacdesk_api.middleware.impersonation import ImpersonationMiddleware
from hvacdesk_api.middleware.logging import RequestLoggingMiddleware
from hvacdesk_api.middleware.rbac import (
    ROLE_PERMISSIONS,
    Permission,
    Role,
    get_user_role,
    require_permission,
)

__all__ = [
    "AuthenticationMiddleware",
    "ImpersonationMiddleware",
    "Permission",
    "ROLE_PERMISSIONS",
    "RequestLoggingMiddleware",
    "Role",
    "get_user_role",
    "require_permission",
]
