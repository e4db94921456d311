"""Inbound Stripe webhook verification.

The receiver only authenticates and decodes.  Applying an event to tenant
state is the :class:`SubscriptionReconciler`'s job.
"""

from __future__ import annotations

import logging
from typing import Any

import stripe

from hvacdesk_api.services.billing_errors import (
    InvalidPayloadType,
    MalformedPayload,
    SignatureVerificationFailed,
)
from hvacdesk_api.services.stripe_gateway import StripeGateway

logger = logging.getLogger(__name__)


class WebhookReceiver:
    """Verify Stripe webhook deliveries against the endpoint secret.

    Parameters
    ----------
    gateway:
        The application's :class:`StripeGateway`.
    """

    def __init__(self, gateway: StripeGateway) -> None:
        self._gateway = gateway

    def verify(self, payload: Any, signature: str | None) -> dict[str, Any]:
        """Return the verified event carried by *payload*.

        Parameters
        ----------
        payload:
            The request body exactly as received.  Must be ``bytes``.
        signature:
            Value of the ``stripe-signature`` header.

        Raises
        ------
        InvalidPayloadType
            If *payload* is not raw bytes (already decoded or parsed).
        SignatureVerificationFailed
            If the header is missing or does not match the payload.
        MalformedPayload
            If the signed body is not a Stripe event object.
        """
        if not isinstance(payload, (bytes, bytearray)):
            logger.error("Webhook payload arrived as %s, expected raw bytes", type(payload).__name__)
            raise InvalidPayloadType()

        if not signature:
            raise SignatureVerificationFailed("Missing Stripe signature")

        try:
            event = self._gateway.construct_event(bytes(payload), signature)
        except stripe.SignatureVerificationError as exc:
            logger.warning("Stripe webhook signature verification failed: %s", exc)
            raise SignatureVerificationFailed()
        except ValueError as exc:
            logger.warning("Stripe webhook payload could not be decoded: %s", exc)
            raise MalformedPayload()

        if not isinstance(event, dict) or not event.get("id") or not event.get("type"):
            raise MalformedPayload("Event is missing id or type")

        logger.debug("Verified Stripe event %s (%s)", event["id"], event["type"])
        return event
