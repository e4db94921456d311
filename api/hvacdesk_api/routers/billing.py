"""Billing endpoints: subscription status, Checkout, Customer Portal, Stripe webhooks."""

from __future__ import annotations

import logging
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Request
from hvacdesk_core.state.repository import UserRepository

from hvacdesk_api.dependencies import (
    PublicSessionDep,
    SessionDep,
    SettingsDep,
    StripeGatewayDep,
    TenantDep,
    UserDep,
)
from hvacdesk_api.middleware.rbac import Permission, Role, require_permission
from hvacdesk_api.schemas import (
    CheckoutSessionResponse,
    PortalRequest,
    PortalSessionResponse,
    SubscriptionResponse,
    WebhookAckResponse,
)
from hvacdesk_api.services.billing_errors import BillingNotConfigured
from hvacdesk_api.services.billing_service import BillingService
from hvacdesk_api.services.subscription_reconciler import SubscriptionReconciler
from hvacdesk_api.services.webhook_receiver import WebhookReceiver

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/billing", tags=["billing"])


def _require_billing(enabled: bool) -> None:
    if not enabled:
        raise HTTPException(
            status_code=404,
            detail="Billing is not enabled for this installation.",
        )


# ---------------------------------------------------------------------------
# Tenant endpoints
# ---------------------------------------------------------------------------


@router.get("/subscription", response_model=SubscriptionResponse)
async def get_subscription(
    session: SessionDep,
    settings: SettingsDep,
    gateway: StripeGatewayDep,
    tenant_id: TenantDep,
    _role: Role = Depends(require_permission(Permission.READ_SUBSCRIPTION)),
) -> dict[str, Any]:
    """Return the subscription state for the authenticated company."""
    service = BillingService(session, settings, gateway, tenant_id=tenant_id)
    try:
        info = await service.get_subscription_info()
    except LookupError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    info["billing_enabled"] = settings.billing_enabled
    return info


@router.post("/checkout", response_model=CheckoutSessionResponse)
async def create_checkout_session(
    session: SessionDep,
    settings: SettingsDep,
    gateway: StripeGatewayDep,
    tenant_id: TenantDep,
    user_id: UserDep,
    _role: Role = Depends(require_permission(Permission.MANAGE_BILLING)),
) -> dict[str, str]:
    """Create a Stripe Checkout session for the configured plan.

    Creates the company's Stripe customer first if it has none.  Stripe
    redirects back to ``/?success=true`` or ``/?canceled=true``.
    """
    _require_billing(settings.billing_enabled)

    user = await UserRepository(session).get_by_id(user_id)
    service = BillingService(session, settings, gateway, tenant_id=tenant_id)
    try:
        return await service.create_checkout_session(customer_email=user.email if user else None)
    except LookupError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc


@router.post("/portal", response_model=PortalSessionResponse)
async def create_portal_session(
    session: SessionDep,
    settings: SettingsDep,
    gateway: StripeGatewayDep,
    tenant_id: TenantDep,
    body: PortalRequest | None = None,
    _role: Role = Depends(require_permission(Permission.MANAGE_BILLING)),
) -> dict[str, str]:
    """Create a Stripe Customer Portal session for managing the subscription."""
    _require_billing(settings.billing_enabled)

    service = BillingService(session, settings, gateway, tenant_id=tenant_id)
    try:
        return await service.create_portal_session(return_url=body.return_url if body else None)
    except LookupError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc


# ---------------------------------------------------------------------------
# Stripe webhook (public; authenticated by signature)
# ---------------------------------------------------------------------------


@router.post("/webhooks", response_model=WebhookAckResponse, response_model_exclude_none=True)
async def stripe_webhook(
    request: Request,
    session: PublicSessionDep,
    settings: SettingsDep,
    gateway: StripeGatewayDep,
) -> dict[str, str]:
    """Verify and apply a Stripe event.

    The raw body is verified before anything is parsed.  Any 2xx tells
    Stripe to stop retrying, so failures surface as 4xx/5xx via the
    :class:`BillingError` handler.
    """
    if not settings.billing_enabled:
        return {"status": "billing_disabled"}
    if not gateway.webhook_configured:
        raise BillingNotConfigured("Stripe webhook secret is not configured")

    payload = await request.body()
    event = WebhookReceiver(gateway).verify(payload, request.headers.get("stripe-signature"))
    result = await SubscriptionReconciler(session).reconcile(event)

    logger.info(
        "Stripe webhook %s",
        result["status"],
        extra={"stripe_event": {"id": event["id"], "type": event["type"], **result}},
    )
    return result
