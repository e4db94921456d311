"""Tenant-facing Stripe billing operations.

Creates the company's Stripe customer on first use, opens Checkout and
Customer Portal sessions, and reports the subscription state the
:class:`SubscriptionReconciler` keeps in sync.  This service never writes
the subscription columns itself.
"""

from __future__ import annotations

import logging
from typing import Any

from hvacdesk_core.state.repository import CompanyRepository
from hvacdesk_core.state.tables import CompanyTable
from sqlalchemy.ext.asyncio import AsyncSession

from hvacdesk_api.config import APISettings
from hvacdesk_api.services.billing_errors import BillingNotConfigured
from hvacdesk_api.services.stripe_gateway import StripeGateway
from hvacdesk_api.services.subscription_reconciler import COMPANY_METADATA_KEY

logger = logging.getLogger(__name__)


class BillingService:
    """Stripe billing operations for a single company.

    Parameters
    ----------
    session:
        Active database session.
    settings:
        API settings containing the price id, trial length and redirect base.
    gateway:
        The application's :class:`StripeGateway`.
    tenant_id:
        The company performing billing operations.
    """

    def __init__(
        self,
        session: AsyncSession,
        settings: APISettings,
        gateway: StripeGateway,
        *,
        tenant_id: str,
    ) -> None:
        self._companies = CompanyRepository(session)
        self._settings = settings
        self._gateway = gateway
        self._tenant_id = tenant_id

    async def _company(self) -> CompanyTable:
        company = await self._companies.get(self._tenant_id)
        if company is None:
            raise LookupError(f"Company '{self._tenant_id}' not found")
        return company

    def _require_api(self) -> None:
        if not self._gateway.api_configured:
            raise BillingNotConfigured("Stripe API key is not configured")

    async def get_subscription_info(self) -> dict[str, Any]:
        """Return the company's locally stored subscription state."""
        company = await self._company()
        return {
            "subscription_status": company.subscription_status,
            "subscription_plan": company.subscription_plan,
            "trial_ends_at": company.trial_ends_at.isoformat() if company.trial_ends_at else None,
            "current_period_end": company.current_period_end.isoformat() if company.current_period_end else None,
            "cancel_at_period_end": company.cancel_at_period_end,
            "has_stripe_customer": company.stripe_customer_id is not None,
        }

    async def get_or_create_customer(self, customer_email: str | None = None) -> str:
        """Return the company's Stripe customer id, creating the customer if needed."""
        company = await self._company()
        if company.stripe_customer_id:
            return company.stripe_customer_id

        self._require_api()
        customer_id = self._gateway.create_customer(
            email=customer_email or company.email,
            metadata={COMPANY_METADATA_KEY: company.id, "company_name": company.name},
        )
        await self._companies.set_stripe_customer(company, customer_id)
        logger.info("Bound company %s to Stripe customer %s", company.id, customer_id)
        return customer_id

    async def create_checkout_session(self, customer_email: str | None = None) -> dict[str, str]:
        """Create a Checkout session for the configured subscription price.

        Returns
        -------
        dict
            ``checkout_url`` to redirect the user to and the ``session_id``.
        """
        self._require_api()
        if not self._settings.stripe_price_id:
            raise BillingNotConfigured("Stripe price id is not configured")

        customer_id = await self.get_or_create_customer(customer_email)
        base_url = self._settings.app_base_url.rstrip("/")
        checkout = self._gateway.create_checkout_session(
            customer_id=customer_id,
            price_id=self._settings.stripe_price_id,
            success_url=f"{base_url}/?success=true",
            cancel_url=f"{base_url}/?canceled=true",
            trial_days=self._settings.stripe_trial_days,
            metadata={COMPANY_METADATA_KEY: self._tenant_id},
        )
        return {"checkout_url": checkout["url"], "session_id": checkout["id"]}

    async def create_portal_session(self, return_url: str | None = None) -> dict[str, str]:
        """Create a Customer Portal session.

        Raises :class:`ValueError` if the company has never been through
        checkout.
        """
        self._require_api()
        company = await self._company()
        if not company.stripe_customer_id:
            raise ValueError("No Stripe customer on file for this company")

        url = self._gateway.create_portal_session(
            customer_id=company.stripe_customer_id,
            return_url=return_url or f"{self._settings.app_base_url.rstrip('/')}/settings",
        )
        return {"url": url}
