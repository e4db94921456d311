"""Apply verified Stripe events to company subscription state.

Handled event types:

- ``customer.subscription.created`` / ``.updated`` / ``.deleted`` copy the
  subscription id, status, period end and cancellation flag onto the
  company.
- ``checkout.session.completed`` marks the company ``active`` and records
  the new subscription id.

Every other type is acknowledged as ``ignored``.  A company is only ever
mutated by an event whose customer id exactly equals the company's stored
Stripe customer id.
"""

from __future__ import annotations

import logging
from datetime import UTC, datetime
from typing import Any

from hvacdesk_core.state.repository import CompanyRepository, WebhookEventRepository
from hvacdesk_core.state.tables import CompanyTable
from sqlalchemy.ext.asyncio import AsyncSession

from hvacdesk_api.services.billing_errors import CustomerIdentityMismatch, TenantNotFound

logger = logging.getLogger(__name__)

SUBSCRIPTION_EVENTS: frozenset[str] = frozenset(
    {
        "customer.subscription.created",
        "customer.subscription.updated",
        "customer.subscription.deleted",
    }
)
CHECKOUT_COMPLETED = "checkout.session.completed"

# Set on Checkout sessions by BillingService; used when the customer id is
# not yet bound to a company.
COMPANY_METADATA_KEY = "hvacdesk_company_id"


def _stripe_id(value: Any) -> str | None:
    """Return the id of a Stripe reference that may be expanded into an object."""
    if isinstance(value, dict):
        return value.get("id")
    return value or None


def _period_end(subscription: dict[str, Any]) -> datetime | None:
    """Return the subscription's current period end as a UTC timestamp.

    Newer API versions carry the period on each subscription item rather
    than on the subscription itself.
    """
    epoch = subscription.get("current_period_end")
    if epoch is None:
        items = (subscription.get("items") or {}).get("data") or []
        if items:
            epoch = items[0].get("current_period_end")
    if epoch is None:
        return None
    return datetime.fromtimestamp(int(epoch), tz=UTC)


class SubscriptionReconciler:
    """Map verified webhook events onto ``companies`` rows.

    Parameters
    ----------
    session:
        Session for the webhook request.  All writes for one event happen in
        its transaction; the caller commits.
    """

    def __init__(self, session: AsyncSession) -> None:
        self._companies = CompanyRepository(session)
        self._events = WebhookEventRepository(session)

    async def reconcile(self, event: dict[str, Any]) -> dict[str, str]:
        """Apply *event* and return an acknowledgement body.

        Returns
        -------
        dict
            ``{"status": "processed"}``, ``{"status": "duplicate"}``,
            ``{"status": "ignored"}``, or
            ``{"status": "ignored", "reason": "unknown_tenant"}``.

        Raises
        ------
        CustomerIdentityMismatch
            If the resolved company is bound to a different customer.
        """
        event_id: str = event["id"]
        event_type: str = event["type"]

        if event_type not in SUBSCRIPTION_EVENTS and event_type != CHECKOUT_COMPLETED:
            logger.debug("Unhandled Stripe event type: %s", event_type)
            return {"status": "ignored"}

        if await self._events.is_processed(event_id):
            logger.info("Stripe event %s already processed; acknowledging duplicate", event_id)
            return {"status": "duplicate"}

        data_object: dict[str, Any] = (event.get("data") or {}).get("object") or {}
        customer_id = _stripe_id(data_object.get("customer"))

        if event_type == CHECKOUT_COMPLETED:
            subscription_id = _stripe_id(data_object.get("subscription"))
            if not customer_id or not subscription_id:
                logger.info("Checkout session %s has no subscription; ignoring", data_object.get("id"))
                return {"status": "ignored"}
            changes: dict[str, Any] = {
                "stripe_subscription_id": subscription_id,
                "subscription_status": "active",
            }
        else:
            changes = {
                "stripe_subscription_id": data_object.get("id"),
                "subscription_status": data_object.get("status"),
                "cancel_at_period_end": bool(data_object.get("cancel_at_period_end", False)),
            }
            period_end = _period_end(data_object)
            if period_end is not None:
                changes["current_period_end"] = period_end

        try:
            company = await self._resolve_company(customer_id, data_object.get("metadata") or {})
        except TenantNotFound as exc:
            logger.warning(
                "Stripe event %s (%s) has no resolvable company: %s",
                event_id,
                event_type,
                exc,
            )
            return {"status": "ignored", "reason": "unknown_tenant"}

        if company.stripe_customer_id != customer_id:
            mismatch = CustomerIdentityMismatch(company.id, company.stripe_customer_id, customer_id)
            logger.error("Rejected Stripe event %s: %s", event_id, mismatch)
            raise mismatch

        await self._companies.update_subscription(company, changes)
        await self._events.mark_processed(event_id, event_type, company.id)
        logger.info("Applied Stripe event %s (%s) to company %s", event_id, event_type, company.id)
        return {"status": "processed"}

    async def _resolve_company(self, customer_id: str | None, metadata: dict[str, Any]) -> CompanyTable:
        """Find the company an event belongs to.

        Looks up the customer id first, then the company id Checkout stamps
        into the session metadata. An event without a customer id never
        resolves, whatever its metadata says.
        """
        if not customer_id:
            raise TenantNotFound(None)

        company = await self._companies.get_by_stripe_customer(customer_id)
        if company is not None:
            return company

        company_id = metadata.get(COMPANY_METADATA_KEY)
        if company_id:
            company = await self._companies.get(company_id)
            if company is not None:
                return company

        raise TenantNotFound(customer_id)
