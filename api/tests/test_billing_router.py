"""Tests for api/hvacdesk_api/routers/billing.py

Covers:
- GET /billing/subscription: response shape, RBAC, unknown company
- POST /billing/checkout: customer creation, redirect URLs, disabled / unconfigured billing
- POST /billing/portal: default and explicit return URLs, companies without a customer
- POST /billing/webhooks: signature enforcement, reconciliation outcomes, status codes
"""

from __future__ import annotations

import json
from typing import Any

import pytest
from hvacdesk_api.dependencies import get_stripe_gateway
from hvacdesk_api.services.stripe_gateway import StripeGateway
from hvacdesk_core.state.repository import CompanyRepository, WebhookEventRepository

# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture()
def mocked_stripe(app, mock_gateway):
    """Route outbound Stripe calls to ``mock_gateway``."""
    app.dependency_overrides[get_stripe_gateway] = lambda: mock_gateway
    return mock_gateway


def _subscription_event(event_id: str = "evt_1", customer: str = "cus_AAA", **obj: Any) -> bytes:
    data_object: dict[str, Any] = {
        "id": "sub_123",
        "object": "subscription",
        "customer": customer,
        "status": "active",
        "cancel_at_period_end": False,
        "current_period_end": 1793491200,
    }
    data_object.update(obj)
    event = {"id": event_id, "type": "customer.subscription.updated", "data": {"object": data_object}}
    return json.dumps(event).encode("utf-8")


async def _post_webhook(client, payload: bytes, signature: str | None):
    headers = {"Content-Type": "application/json"}
    if signature is not None:
        headers["Stripe-Signature"] = signature
    return await client.post("/api/v1/billing/webhooks", content=payload, headers=headers)


# ---------------------------------------------------------------------------
# GET /billing/subscription
# ---------------------------------------------------------------------------


class TestGetSubscription:
    @pytest.mark.asyncio
    async def test_returns_company_state(self, client, auth_headers) -> None:
        resp = await client.get("/api/v1/billing/subscription", headers=auth_headers("technician"))

        assert resp.status_code == 200
        assert resp.json() == {
            "subscription_status": "trial",
            "subscription_plan": None,
            "trial_ends_at": None,
            "current_period_end": None,
            "cancel_at_period_end": False,
            "has_stripe_customer": True,
            "billing_enabled": True,
        }

    @pytest.mark.asyncio
    async def test_reflects_billing_disabled(self, client, auth_headers, test_settings) -> None:
        test_settings.billing_enabled = False
        resp = await client.get("/api/v1/billing/subscription", headers=auth_headers("owner"))
        assert resp.status_code == 200
        assert resp.json()["billing_enabled"] is False

    @pytest.mark.asyncio
    async def test_unknown_company(self, client, auth_headers) -> None:
        resp = await client.get(
            "/api/v1/billing/subscription",
            headers=auth_headers("owner", tenant_id="co-deleted"),
        )
        assert resp.status_code == 404

    @pytest.mark.asyncio
    async def test_requires_authentication(self, client) -> None:
        resp = await client.get("/api/v1/billing/subscription")
        assert resp.status_code == 401
        assert resp.json()["detail"] == "Missing Authorization header"


# ---------------------------------------------------------------------------
# POST /billing/checkout
# ---------------------------------------------------------------------------


class TestCheckout:
    @pytest.mark.asyncio
    async def test_creates_customer_then_session(self, client, auth_headers, mocked_stripe, db_session) -> None:
        resp = await client.post("/api/v1/billing/checkout", headers=auth_headers("summit_admin"))

        assert resp.status_code == 200
        assert resp.json() == {
            "checkout_url": "https://checkout.stripe.com/c/pay/cs_test_123",
            "session_id": "cs_test_123",
        }

        mocked_stripe.create_customer.assert_called_once_with(
            email="ops@summit.test",
            metadata={"hvacdesk_company_id": "co-2", "company_name": "Summit Refrigeration"},
        )
        kwargs = mocked_stripe.create_checkout_session.call_args.kwargs
        assert kwargs["customer_id"] == "cus_NEW"
        assert kwargs["price_id"] == "price_pro_monthly"
        assert kwargs["success_url"] == "https://app.hvacdesk.test/?success=true"
        assert kwargs["cancel_url"] == "https://app.hvacdesk.test/?canceled=true"
        assert kwargs["metadata"] == {"hvacdesk_company_id": "co-2"}

        company = await CompanyRepository(db_session).get("co-2")
        assert company.stripe_customer_id == "cus_NEW"

    @pytest.mark.asyncio
    async def test_existing_customer_reused(self, client, auth_headers, mocked_stripe) -> None:
        resp = await client.post("/api/v1/billing/checkout", headers=auth_headers("owner"))

        assert resp.status_code == 200
        mocked_stripe.create_customer.assert_not_called()
        assert mocked_stripe.create_checkout_session.call_args.kwargs["customer_id"] == "cus_AAA"

    @pytest.mark.asyncio
    async def test_technician_forbidden(self, client, auth_headers, mocked_stripe) -> None:
        resp = await client.post("/api/v1/billing/checkout", headers=auth_headers("technician"))
        assert resp.status_code == 403
        mocked_stripe.create_checkout_session.assert_not_called()

    @pytest.mark.asyncio
    async def test_billing_disabled(self, client, auth_headers, mocked_stripe, test_settings) -> None:
        test_settings.billing_enabled = False
        resp = await client.post("/api/v1/billing/checkout", headers=auth_headers("owner"))
        assert resp.status_code == 404

    @pytest.mark.asyncio
    async def test_stripe_not_configured(self, client, auth_headers, mocked_stripe) -> None:
        mocked_stripe.api_configured = False
        resp = await client.post("/api/v1/billing/checkout", headers=auth_headers("owner"))
        assert resp.status_code == 503
        assert resp.json() == {"detail": "Billing is not configured for this installation"}

    @pytest.mark.asyncio
    async def test_price_not_configured(self, client, auth_headers, mocked_stripe, test_settings) -> None:
        test_settings.stripe_price_id = ""
        resp = await client.post("/api/v1/billing/checkout", headers=auth_headers("owner"))
        assert resp.status_code == 503


# ---------------------------------------------------------------------------
# POST /billing/portal
# ---------------------------------------------------------------------------


class TestPortal:
    @pytest.mark.asyncio
    async def test_default_return_url(self, client, auth_headers, mocked_stripe) -> None:
        resp = await client.post("/api/v1/billing/portal", headers=auth_headers("owner"))

        assert resp.status_code == 200
        assert resp.json() == {"url": "https://billing.stripe.com/p/session/test_123"}
        mocked_stripe.create_portal_session.assert_called_once_with(
            customer_id="cus_AAA",
            return_url="https://app.hvacdesk.test/settings",
        )

    @pytest.mark.asyncio
    async def test_explicit_return_url(self, client, auth_headers, mocked_stripe) -> None:
        resp = await client.post(
            "/api/v1/billing/portal",
            json={"return_url": "https://app.hvacdesk.test/billing"},
            headers=auth_headers("owner"),
        )
        assert resp.status_code == 200
        assert mocked_stripe.create_portal_session.call_args.kwargs["return_url"] == "https://app.hvacdesk.test/billing"

    @pytest.mark.asyncio
    async def test_company_without_customer(self, client, auth_headers, mocked_stripe) -> None:
        resp = await client.post("/api/v1/billing/portal", headers=auth_headers("summit_admin"))
        assert resp.status_code == 400
        assert resp.json()["detail"] == "No Stripe customer on file for this company"
        mocked_stripe.create_portal_session.assert_not_called()


# ---------------------------------------------------------------------------
# POST /billing/webhooks
# ---------------------------------------------------------------------------


class TestWebhook:
    @pytest.mark.asyncio
    async def test_applies_signed_event(self, client, stripe_signature, db_session) -> None:
        payload = _subscription_event(status="past_due", cancel_at_period_end=True)

        resp = await _post_webhook(client, payload, stripe_signature(payload))

        assert resp.status_code == 200
        assert resp.json() == {"status": "processed"}
        company = await CompanyRepository(db_session).get("co-1")
        assert company.subscription_status == "past_due"
        assert company.cancel_at_period_end is True
        assert await WebhookEventRepository(db_session).is_processed("evt_1")

    @pytest.mark.asyncio
    async def test_no_bearer_token_needed(self, client, stripe_signature) -> None:
        payload = _subscription_event()
        resp = await _post_webhook(client, payload, stripe_signature(payload))
        assert resp.status_code == 200

    @pytest.mark.asyncio
    async def test_missing_signature(self, client, db_session) -> None:
        resp = await _post_webhook(client, _subscription_event(), None)

        assert resp.status_code == 400
        assert resp.json() == {"detail": "Signature verification failed"}
        assert (await CompanyRepository(db_session).get("co-1")).subscription_status == "trial"

    @pytest.mark.asyncio
    async def test_forged_signature(self, client, stripe_signature, db_session) -> None:
        payload = _subscription_event(status="canceled")
        resp = await _post_webhook(client, payload, stripe_signature(payload, secret="whsec_attacker"))

        assert resp.status_code == 400
        assert (await CompanyRepository(db_session).get("co-1")).subscription_status == "trial"

    @pytest.mark.asyncio
    async def test_signed_garbage(self, client, stripe_signature) -> None:
        payload = b"{not json"
        resp = await _post_webhook(client, payload, stripe_signature(payload))
        assert resp.status_code == 400
        assert resp.json() == {"detail": "Invalid payload"}

    @pytest.mark.asyncio
    async def test_replay_acknowledged_as_duplicate(self, client, stripe_signature) -> None:
        payload = _subscription_event()
        first = await _post_webhook(client, payload, stripe_signature(payload))
        second = await _post_webhook(client, payload, stripe_signature(payload))

        assert first.json() == {"status": "processed"}
        assert second.status_code == 200
        assert second.json() == {"status": "duplicate"}

    @pytest.mark.asyncio
    async def test_unknown_tenant_acknowledged(self, client, stripe_signature) -> None:
        payload = _subscription_event(customer="cus_UNKNOWN")
        resp = await _post_webhook(client, payload, stripe_signature(payload))

        assert resp.status_code == 200
        assert resp.json() == {"status": "ignored", "reason": "unknown_tenant"}

    @pytest.mark.asyncio
    async def test_identity_mismatch_conflict(self, client, stripe_signature, db_session) -> None:
        payload = _subscription_event(
            customer="cus_EVIL",
            status="canceled",
            metadata={"hvacdesk_company_id": "co-1"},
        )
        resp = await _post_webhook(client, payload, stripe_signature(payload))

        assert resp.status_code == 409
        assert resp.json() == {"detail": "Customer identity mismatch"}
        company = await CompanyRepository(db_session).get("co-1")
        assert company.subscription_status == "trial"
        assert company.stripe_customer_id == "cus_AAA"

    @pytest.mark.asyncio
    async def test_unhandled_type_ignored(self, client, stripe_signature) -> None:
        payload = json.dumps({"id": "evt_x", "type": "invoice.created", "data": {"object": {}}}).encode("utf-8")
        resp = await _post_webhook(client, payload, stripe_signature(payload))
        assert resp.json() == {"status": "ignored"}

    @pytest.mark.asyncio
    async def test_billing_disabled(self, client, test_settings) -> None:
        test_settings.billing_enabled = False
        resp = await _post_webhook(client, _subscription_event(), None)
        assert resp.status_code == 200
        assert resp.json() == {"status": "billing_disabled"}

    @pytest.mark.asyncio
    async def test_webhook_secret_missing(self, app, client, stripe_signature) -> None:
        app.state.stripe_gateway = StripeGateway(api_key="sk_test_hvacdesk", webhook_secret="")
        payload = _subscription_event()
        resp = await _post_webhook(client, payload, stripe_signature(payload))
        assert resp.status_code == 503
