"""Repository classes providing CRUD access to the HVACDesk state store.

Each repository takes an ``AsyncSession`` at construction time and operates
within the caller's transaction boundary.  All writes call ``session.flush()``
so that generated defaults are populated; the caller is responsible for calling
``session.commit()`` (or relying on the request-scoped session dependency).
"""

from __future__ import annotations

import logging
import uuid
from datetime import UTC, datetime
from typing import Any

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from hvacdesk_core.state.tables import (
    AuditLogTable,
    CompanyTable,
    ProcessedWebhookEventTable,
    UserTable,
)

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# CompanyRepository
# ---------------------------------------------------------------------------


class CompanyRepository:
    """Read and update tenant (company) rows, including subscription state."""

    # Columns the subscription reconciler is allowed to overwrite.
    SUBSCRIPTION_FIELDS: frozenset[str] = frozenset(
        {
            "stripe_subscription_id",
            "subscription_status",
            "current_period_end",
            "cancel_at_period_end",
        }
    )

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def get(self, company_id: str) -> CompanyTable | None:
        result = await self._session.execute(select(CompanyTable).where(CompanyTable.id == company_id))
        return result.scalar_one_or_none()

    async def get_by_stripe_customer(self, stripe_customer_id: str) -> CompanyTable | None:
        """Return the company whose Stripe customer id is *stripe_customer_id*."""
        result = await self._session.execute(
            select(CompanyTable).where(CompanyTable.stripe_customer_id == stripe_customer_id)
        )
        return result.scalar_one_or_none()

    async def set_stripe_customer(self, company: CompanyTable, stripe_customer_id: str) -> None:
        """Attach a Stripe customer id to a company that has none.

        Raises :class:`ValueError` if the company is already bound to a
        different customer; the binding is immutable once set.
        """
        if company.stripe_customer_id and company.stripe_customer_id != stripe_customer_id:
            raise ValueError(
                f"Company {company.id} is already bound to Stripe customer {company.stripe_customer_id}"
            )
        company.stripe_customer_id = stripe_customer_id
        await self._session.flush()

    async def update_subscription(self, company: CompanyTable, changes: dict[str, Any]) -> None:
        """Overwrite subscription columns on *company* in a single flush."""
        unknown = set(changes) - self.SUBSCRIPTION_FIELDS
        if unknown:
            raise ValueError(f"Not subscription fields: {sorted(unknown)}")
        for column, value in changes.items():
            setattr(company, column, value)
        await self._session.flush()
        logger.info(
            "Subscription state updated for company %s: %s",
            company.id,
            ", ".join(sorted(changes)),
        )


# ---------------------------------------------------------------------------
# UserRepository
# ---------------------------------------------------------------------------


class UserRepository:
    """Read access to application users."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def get_by_id(self, user_id: str) -> UserTable | None:
        result = await self._session.execute(select(UserTable).where(UserTable.id == user_id))
        return result.scalar_one_or_none()


# ---------------------------------------------------------------------------
# AuditRepository
# ---------------------------------------------------------------------------


class AuditRepository:
    """Append-only platform-admin audit log."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def log(
        self,
        *,
        platform_admin_id: str,
        platform_admin_email: str,
        action: str,
        target_company_id: str | None = None,
        target_user_id: str | None = None,
        reason: str | None = None,
        details: dict[str, Any] | None = None,
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> str:
        """Write an audit entry.  Returns the entry ID."""
        entry_id = uuid.uuid4().hex
        row = AuditLogTable(
            id=entry_id,
            platform_admin_id=platform_admin_id,
            platform_admin_email=platform_admin_email,
            action=action,
            target_company_id=target_company_id,
            target_user_id=target_user_id,
            reason=reason,
            details=details,
            ip_address=ip_address,
            user_agent=user_agent,
            created_at=datetime.now(UTC),
        )
        self._session.add(row)
        await self._session.flush()

        logger.info(
            "Audit: admin=%s action=%s company=%s user=%s",
            platform_admin_id,
            action,
            target_company_id or "-",
            target_user_id or "-",
        )
        return entry_id

    async def query(
        self,
        *,
        platform_admin_id: str | None = None,
        target_company_id: str | None = None,
        limit: int = 100,
    ) -> list[AuditLogTable]:
        """Return the most recent entries first, optionally filtered."""
        stmt = select(AuditLogTable)
        if platform_admin_id is not None:
            stmt = stmt.where(AuditLogTable.platform_admin_id == platform_admin_id)
        if target_company_id is not None:
            stmt = stmt.where(AuditLogTable.target_company_id == target_company_id)
        stmt = stmt.order_by(AuditLogTable.created_at.desc()).limit(limit)
        result = await self._session.execute(stmt)
        return list(result.scalars().all())


# ---------------------------------------------------------------------------
# WebhookEventRepository
# ---------------------------------------------------------------------------


class WebhookEventRepository:
    """Tracks which Stripe event ids have already been applied."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def is_processed(self, event_id: str) -> bool:
        result = await self._session.execute(
            select(ProcessedWebhookEventTable.event_id).where(ProcessedWebhookEventTable.event_id == event_id)
        )
        return result.scalar_one_or_none() is not None

    async def mark_processed(self, event_id: str, event_type: str, company_id: str | None = None) -> None:
        """Record *event_id* as applied.

        The primary key rejects a concurrent second insert, which rolls back
        the duplicate delivery's transaction.
        """
        self._session.add(
            ProcessedWebhookEventTable(
                event_id=event_id,
                event_type=event_type,
                company_id=company_id,
                processed_at=datetime.now(UTC),
            )
        )
        await self._session.flush()
