"""Platform-admin audit logging service.

Wraps :class:`AuditRepository` with action constants and the request
metadata (client IP, user agent) every entry carries.  Impersonation and
cross-tenant access must be funnelled through this service so the support
trail is complete.
"""

from __future__ import annotations

import logging
from typing import Any

from fastapi import Request
from hvacdesk_core.state.repository import AuditRepository
from sqlalchemy.ext.asyncio import AsyncSession

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Action constants
# ---------------------------------------------------------------------------


class AuditAction:
    """Well-known audit action identifiers."""

    IMPERSONATION_START = "impersonation_start"
    IMPERSONATION_STOP = "impersonation_stop"
    IMPERSONATION_AUTO_TIMEOUT = "impersonation_auto_timeout"


# Actions that must record why the admin acted.
_REASON_REQUIRED: frozenset[str] = frozenset(
    {
        AuditAction.IMPERSONATION_START,
        AuditAction.IMPERSONATION_STOP,
    }
)


def client_metadata(request: Request) -> tuple[str | None, str | None]:
    """Return ``(ip_address, user_agent)`` for *request*.

    The first hop of ``X-Forwarded-For`` wins over the socket peer.
    """
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        ip_address: str | None = forwarded.split(",")[0].strip() or None
    else:
        ip_address = request.client.host if request.client else None
    return ip_address, request.headers.get("user-agent")


# ---------------------------------------------------------------------------
# Service
# ---------------------------------------------------------------------------


class AuditService:
    """Record platform-admin actions.

    Parameters
    ----------
    session:
        The async database session for the current request scope.
    platform_admin_id:
        Id of the platform administrator performing the action.
    platform_admin_email:
        Their email, denormalised onto each entry.
    ip_address, user_agent:
        Client metadata, usually from :func:`client_metadata`.
    """

    def __init__(
        self,
        session: AsyncSession,
        *,
        platform_admin_id: str,
        platform_admin_email: str,
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> None:
        self._repo = AuditRepository(session)
        self._admin_id = platform_admin_id
        self._admin_email = platform_admin_email
        self._ip_address = ip_address
        self._user_agent = user_agent

    async def log(
        self,
        action: str,
        *,
        target_company_id: str | None = None,
        target_user_id: str | None = None,
        reason: str | None = None,
        **details: Any,
    ) -> str:
        """Record an audit event and return its id.

        Extra keyword arguments are stored in the ``details`` column.

        Raises :class:`ValueError` when an impersonation start or stop is
        logged without a reason.
        """
        if action in _REASON_REQUIRED and not (reason and reason.strip()):
            raise ValueError(f"Audit action '{action}' requires a reason")

        return await self._repo.log(
            platform_admin_id=self._admin_id,
            platform_admin_email=self._admin_email,
            action=action,
            target_company_id=target_company_id,
            target_user_id=target_user_id,
            reason=reason,
            details=dict(details) if details else None,
            ip_address=self._ip_address,
            user_agent=self._user_agent,
        )
