"""Impersonation middleware.

Runs after :class:`AuthenticationMiddleware`.  When the caller is a platform
admin holding an impersonation session, the session is evaluated:

- active: ``last_activity_at`` is refreshed and ``request.state`` is
  rewritten to the target user (``tenant_id``, ``sub``, ``role``), with the
  real admin kept in ``platform_admin_id``;
- expired or idle: the session is dropped, the timeout is audited, and the
  request is rejected with 401.

The impersonation endpoints themselves are left untouched so the admin can
always read status and stop the session as themselves.
"""

from __future__ import annotations

import logging

from sqlalchemy.exc import SQLAlchemyError
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import JSONResponse, Response

from hvacdesk_api.services.audit_service import AuditService, client_metadata
from hvacdesk_api.services.impersonation_service import (
    PLATFORM_ADMIN_ROLE,
    ImpersonationGuard,
    ImpersonationService,
    SessionCheck,
    SessionState,
)

logger = logging.getLogger(__name__)

_EXEMPT_PREFIX = "/api/v1/impersonation/"


class ImpersonationMiddleware(BaseHTTPMiddleware):
    """Swap the acting identity for platform admins with a live session."""

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        if getattr(request.state, "role", None) != PLATFORM_ADMIN_ROLE:
            return await call_next(request)
        if request.url.path.startswith(_EXEMPT_PREFIX):
            return await call_next(request)

        guard: ImpersonationGuard = request.app.state.impersonation_guard
        admin_id: str = request.state.sub
        check = guard.check(admin_id, touch=True)

        if check.state is SessionState.NONE:
            return await call_next(request)

        if check.ended:
            await self._record_timeout(request, check)
            return JSONResponse(
                status_code=401,
                content={"detail": "Impersonation session expired"},
            )

        session = check.session
        assert session is not None
        request.state.platform_admin_id = admin_id
        request.state.platform_admin_email = getattr(request.state, "email", "")
        request.state.impersonating = True
        request.state.tenant_id = session.target_company_id
        request.state.sub = session.target_user_id
        request.state.role = session.target_role
        logger.debug(
            "Impersonated request %s %s",
            request.method,
            request.url.path,
            extra={
                "impersonation": {
                    "platform_admin_id": admin_id,
                    "target_user_id": session.target_user_id,
                    "target_company_id": session.target_company_id,
                }
            },
        )
        return await call_next(request)

    @staticmethod
    async def _record_timeout(request: Request, check: SessionCheck) -> None:
        """Audit the timeout in its own transaction."""
        from hvacdesk_api.dependencies import get_session_factory

        session = check.session
        assert session is not None
        try:
            session_factory = get_session_factory()
        except RuntimeError:
            logger.error(
                "Cannot audit impersonation timeout for admin %s: database not initialised",
                session.platform_admin_id,
            )
            return

        ip_address, user_agent = client_metadata(request)
        try:
            async with session_factory() as db_session:
                audit = AuditService(
                    db_session,
                    platform_admin_id=session.platform_admin_id,
                    platform_admin_email=session.platform_admin_email,
                    ip_address=ip_address,
                    user_agent=user_agent,
                )
                service = ImpersonationService(db_session, request.app.state.impersonation_guard, audit)
                await service.record_timeout(check)
                await db_session.commit()
        except SQLAlchemyError:
            logger.error(
                "Failed to audit impersonation timeout for admin %s",
                session.platform_admin_id,
                exc_info=True,
            )
