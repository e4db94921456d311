"""Application-scoped Stripe client.

A single :class:`StripeGateway` is built at startup from settings and held on
``app.state``.  Every outbound call passes the API key explicitly instead of
mutating the module-global ``stripe.api_key``.
"""

from __future__ import annotations

import json
import logging
from typing import Any

import stripe

from hvacdesk_api.config import APISettings

logger = logging.getLogger(__name__)


class StripeGateway:
    """Thin wrapper over the ``stripe`` SDK calls the billing code uses.

    Parameters
    ----------
    api_key:
        Stripe secret key (``sk_...``).  Empty disables outbound calls.
    webhook_secret:
        Endpoint signing secret (``whsec_...``).  Empty disables webhooks.
    tolerance:
        Maximum accepted age of a webhook signature timestamp, in seconds.
    """

    def __init__(
        self,
        api_key: str,
        webhook_secret: str,
        *,
        tolerance: int = stripe.Webhook.DEFAULT_TOLERANCE,
    ) -> None:
        self._api_key = api_key
        self._webhook_secret = webhook_secret
        self._tolerance = tolerance

    @classmethod
    def from_settings(cls, settings: APISettings) -> StripeGateway:
        return cls(
            api_key=settings.stripe_secret_key.get_secret_value(),
            webhook_secret=settings.stripe_webhook_secret.get_secret_value(),
        )

    @property
    def api_configured(self) -> bool:
        return bool(self._api_key)

    @property
    def webhook_configured(self) -> bool:
        return bool(self._webhook_secret)

    # ------------------------------------------------------------------
    # Webhooks
    # ------------------------------------------------------------------

    def construct_event(self, payload: bytes, sig_header: str) -> dict[str, Any]:
        """Verify *sig_header* over *payload* and return the decoded event.

        Raises ``stripe.SignatureVerificationError`` when the signature does
        not match and ``ValueError`` when the verified body is not JSON.
        """
        stripe.WebhookSignature.verify_header(
            payload.decode("utf-8"),
            sig_header,
            self._webhook_secret,
            self._tolerance,
        )
        return json.loads(payload)

    # ------------------------------------------------------------------
    # Outbound API calls
    # ------------------------------------------------------------------

    def create_customer(self, *, email: str | None, metadata: dict[str, str]) -> str:
        """Create a Stripe customer and return its id."""
        params: dict[str, Any] = {"metadata": metadata}
        if email:
            params["email"] = email
        customer = stripe.Customer.create(api_key=self._api_key, **params)
        logger.info("Created Stripe customer %s", customer["id"])
        return customer["id"]

    def create_checkout_session(
        self,
        *,
        customer_id: str,
        price_id: str,
        success_url: str,
        cancel_url: str,
        trial_days: int = 0,
        metadata: dict[str, str] | None = None,
    ) -> dict[str, Any]:
        """Create a subscription-mode Checkout session."""
        params: dict[str, Any] = {
            "customer": customer_id,
            "mode": "subscription",
            "payment_method_types": ["card"],
            "line_items": [{"price": price_id, "quantity": 1}],
            "success_url": success_url,
            "cancel_url": cancel_url,
            "metadata": metadata or {},
        }
        if trial_days > 0:
            params["subscription_data"] = {"trial_period_days": trial_days}
        session = stripe.checkout.Session.create(api_key=self._api_key, **params)
        return {"id": session["id"], "url": session["url"]}

    def create_portal_session(self, *, customer_id: str, return_url: str) -> str:
        """Create a Customer Portal session and return its URL."""
        session = stripe.billing_portal.Session.create(
            api_key=self._api_key,
            customer=customer_id,
            return_url=return_url,
        )
        return session["url"]

