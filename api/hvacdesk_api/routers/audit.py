"""Platform-admin audit log query endpoint.

Requires the ``READ_AUDIT`` permission, held only by platform admins.
"""

from __future__ import annotations

import logging
from typing import Any

from fastapi import APIRouter, Depends, Query
from hvacdesk_core.state.repository import AuditRepository

from hvacdesk_api.dependencies import AdminSessionDep
from hvacdesk_api.middleware.rbac import Permission, Role, require_permission
from hvacdesk_api.schemas import AuditLogEntryResponse

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/admin/audit-logs", tags=["audit"])


@router.get("", response_model=list[AuditLogEntryResponse])
async def query_audit_log(
    session: AdminSessionDep,
    platform_admin_id: str | None = Query(default=None, description="Filter by acting admin."),
    target_company_id: str | None = Query(default=None, description="Filter by target company."),
    limit: int = Query(default=100, ge=1, le=500),
    _role: Role = Depends(require_permission(Permission.READ_AUDIT)),
) -> list[dict[str, Any]]:
    """Return audit entries, most recent first."""
    repo = AuditRepository(session)
    entries = await repo.query(
        platform_admin_id=platform_admin_id,
        target_company_id=target_company_id,
        limit=limit,
    )
    return [
        {
            "id": entry.id,
            "platform_admin_id": entry.platform_admin_id,
            "platform_admin_email": entry.platform_admin_email,
            "action": entry.action,
            "target_company_id": entry.target_company_id,
            "target_user_id": entry.target_user_id,
            "reason": entry.reason,
            "details": entry.details,
            "ip_address": entry.ip_address,
            "user_agent": entry.user_agent,
            "created_at": entry.created_at.isoformat() if entry.created_at else None,
        }
        for entry in entries
    ]
