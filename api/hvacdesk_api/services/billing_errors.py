"""Billing error hierarchy.

Every error carries the HTTP status the application exception handler
translates it to.  ``TenantNotFound`` never reaches the handler: the
reconciler catches it and acknowledges the event as ignored.
"""

from __future__ import annotations


class BillingError(Exception):
    """Base class for webhook and Stripe integration failures."""

    status_code: int = 500
    detail: str = "Billing error"

    def __init__(self, message: str | None = None) -> None:
        super().__init__(message or self.detail)


class InvalidPayloadType(BillingError):
    """The webhook body was parsed before signature verification.

    Signatures are computed over the exact raw bytes, so a decoded body can
    never verify.  This is a server wiring fault, not a client error.
    """

    status_code = 500
    detail = "Webhook payload must be the raw request body"


class SignatureVerificationFailed(BillingError):
    """The ``stripe-signature`` header is missing or does not match."""

    status_code = 400
    detail = "Signature verification failed"


class MalformedPayload(BillingError):
    """The signed body is not a valid event object."""

    status_code = 400
    detail = "Invalid payload"


class CustomerIdentityMismatch(BillingError):
    """An event's customer id differs from the tenant's stored customer id."""

    status_code = 409
    detail = "Customer identity mismatch"

    def __init__(self, company_id: str, stored_customer_id: str | None, event_customer_id: str | None) -> None:
        self.company_id = company_id
        self.stored_customer_id = stored_customer_id
        self.event_customer_id = event_customer_id
        super().__init__(
            f"Company {company_id} is bound to customer {stored_customer_id!r}, event references {event_customer_id!r}"
        )


class TenantNotFound(BillingError):
    """No company is bound to the event's customer id."""

    status_code = 200
    detail = "Unknown tenant"

    def __init__(self, customer_id: str | None) -> None:
        self.customer_id = customer_id
        super().__init__(f"No company bound to Stripe customer {customer_id!r}")


class BillingNotConfigured(BillingError):
    """Stripe keys or the price id are not configured."""

    status_code = 503
    detail = "Billing is not configured for this installation"
