"""Shared Pydantic request/response models for API endpoints.

Routers import from here so responses are validated and documented in the
OpenAPI schema.
"""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, Field

# ---------------------------------------------------------------------------
# Billing schemas
# ---------------------------------------------------------------------------


class SubscriptionResponse(BaseModel):
    """Locally stored subscription state for the caller's company."""

    subscription_status: str
    subscription_plan: str | None = None
    trial_ends_at: str | None = None
    current_period_end: str | None = None
    cancel_at_period_end: bool = False
    has_stripe_customer: bool = False
    billing_enabled: bool = False


class CheckoutSessionResponse(BaseModel):
    """Stripe Checkout session response."""

    checkout_url: str
    session_id: str


class PortalRequest(BaseModel):
    """Request body for ``POST /billing/portal``."""

    return_url: str | None = Field(
        default=None,
        description="URL to return to after leaving the portal. Defaults to the app settings page.",
    )


class PortalSessionResponse(BaseModel):
    """Stripe Customer Portal session response."""

    url: str


class WebhookAckResponse(BaseModel):
    """Acknowledgement returned to Stripe for every accepted delivery."""

    status: str
    reason: str | None = None


# ---------------------------------------------------------------------------
# Impersonation schemas
# ---------------------------------------------------------------------------


class StartImpersonationRequest(BaseModel):
    """Request body for ``POST /impersonation/start``."""

    target_user_id: str = Field(default="", description="User to act as.")
    reason: str = Field(default="", description="Why support needs access. At least 10 characters.")


class CountdownResponse(BaseModel):
    minutes: int
    seconds: int


class ImpersonationSessionResponse(BaseModel):
    """A live impersonation session as seen by the admin who holds it."""

    target_user_id: str
    target_company_id: str
    platform_admin_id: str
    platform_admin_email: str
    reason: str
    started_at: str
    expires_at: str
    remaining_time: CountdownResponse
    idle_time_remaining: CountdownResponse
    warning: bool


class ImpersonationStatusResponse(BaseModel):
    is_impersonating: bool
    session: ImpersonationSessionResponse | None = None


class StartImpersonationResponse(BaseModel):
    success: bool = True
    target_user_id: str
    target_company_id: str
    expires_at: str
    remaining_minutes: int


class StopImpersonationResponse(BaseModel):
    success: bool = True
    duration_minutes: int


# ---------------------------------------------------------------------------
# Audit schemas
# ---------------------------------------------------------------------------


class AuditLogEntryResponse(BaseModel):
    """One platform-admin audit entry."""

    id: str
    platform_admin_id: str
    platform_admin_email: str
    action: str
    target_company_id: str | None = None
    target_user_id: str | None = None
    reason: str | None = None
    details: dict[str, Any] | None = None
    ip_address: str | None = None
    user_agent: str | None = None
    created_at: str | None = None
