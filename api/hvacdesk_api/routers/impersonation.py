"""Platform-admin impersonation endpoints.

These paths are exempt from the identity swap in
:class:`ImpersonationMiddleware`, so the caller is always the admin.
"""

from __future__ import annotations

import logging
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import JSONResponse

from hvacdesk_api.dependencies import (
    AdminSessionDep,
    ImpersonationGuardDep,
    SettingsDep,
    UserDep,
)
from hvacdesk_api.middleware.rbac import Permission, Role, require_permission
from hvacdesk_api.schemas import (
    ImpersonationStatusResponse,
    StartImpersonationRequest,
    StartImpersonationResponse,
    StopImpersonationResponse,
)
from hvacdesk_api.services.audit_service import AuditService, client_metadata
from hvacdesk_api.services.impersonation_service import PLATFORM_ADMIN_ROLE, ImpersonationService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/impersonation", tags=["impersonation"])


def _service(
    request: Request,
    session: AdminSessionDep,
    guard: ImpersonationGuardDep,
    settings: SettingsDep,
    admin_id: UserDep,
) -> ImpersonationService:
    ip_address, user_agent = client_metadata(request)
    audit = AuditService(
        session,
        platform_admin_id=admin_id,
        platform_admin_email=getattr(request.state, "email", ""),
        ip_address=ip_address,
        user_agent=user_agent,
    )
    return ImpersonationService(
        session,
        guard,
        audit,
        min_reason_length=settings.impersonation_min_reason_length,
    )


@router.get("/status", response_model=ImpersonationStatusResponse, response_model_exclude_none=True)
async def impersonation_status(
    request: Request,
    admin_id: UserDep,
    service: ImpersonationService = Depends(_service),
) -> dict[str, Any]:
    """Report the caller's impersonation session.

    Reading status does not count as activity, so polling it never keeps
    an idle session alive.
    """
    if getattr(request.state, "role", None) != PLATFORM_ADMIN_ROLE:
        return {"is_impersonating": False}
    return await service.status(platform_admin_id=admin_id)


@router.post("/start", response_model=StartImpersonationResponse)
async def start_impersonation(
    body: StartImpersonationRequest,
    request: Request,
    admin_id: UserDep,
    guard: ImpersonationGuardDep,
    service: ImpersonationService = Depends(_service),
    _role: Role = Depends(require_permission(Permission.IMPERSONATE)),
) -> dict[str, Any]:
    """Begin acting as ``target_user_id``.  Replaces any session the caller holds."""
    try:
        session = await service.start(
            platform_admin_id=admin_id,
            platform_admin_email=getattr(request.state, "email", ""),
            target_user_id=body.target_user_id,
            reason=body.reason,
        )
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except LookupError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except PermissionError as exc:
        raise HTTPException(status_code=403, detail=str(exc)) from exc

    return {
        "success": True,
        "target_user_id": session.target_user_id,
        "target_company_id": session.target_company_id,
        "expires_at": session.expires_at.isoformat(),
        "remaining_minutes": int(guard.max_duration.total_seconds() // 60),
    }


@router.post("/stop", response_model=StopImpersonationResponse)
async def stop_impersonation(
    admin_id: UserDep,
    guard: ImpersonationGuardDep,
    service: ImpersonationService = Depends(_service),
    _role: Role = Depends(require_permission(Permission.IMPERSONATE)),
) -> Any:
    """End the caller's impersonation session."""
    session = await service.stop(platform_admin_id=admin_id)
    if session is None:
        # Returned rather than raised so a timeout audited by stop() still commits.
        return JSONResponse(status_code=400, content={"detail": "No active impersonation session"})
    return {
        "success": True,
        "duration_minutes": int(guard.elapsed(session).total_seconds() // 60),
    }
