"""Shared fixtures for HVACDesk API tests.

Provides an in-memory SQLite session seeded with two companies, bearer
token helpers, a controllable clock for impersonation timing, a mock
Stripe gateway, and an httpx client bound to the application.
"""

from __future__ import annotations

import hashlib
import hmac
import os
import time
from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from typing import Any
from unittest.mock import MagicMock

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from jose import jwt

# Set JWT_SECRET env var BEFORE importing application modules so the
# AuthenticationMiddleware picks up a deterministic secret in dev mode
# instead of generating a random one.
_TEST_JWT_SECRET = os.environ.setdefault("JWT_SECRET", "test-secret-key-for-hvacdesk-tests")
_TEST_WEBHOOK_SECRET = "whsec_test_hvacdesk"

from hvacdesk_api.config import APISettings
from hvacdesk_api.dependencies import (
    get_admin_session,
    get_db_session,
    get_settings,
    get_tenant_session,
)
from hvacdesk_api.main import create_app
from hvacdesk_api.security import TOKEN_ALGORITHM
from hvacdesk_api.services.impersonation_service import ImpersonationGuard
from hvacdesk_api.services.stripe_gateway import StripeGateway
from hvacdesk_core.state.tables import Base, CompanyTable, UserTable
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine

# ---------------------------------------------------------------------------
# Bearer tokens
# ---------------------------------------------------------------------------


def _encode_token(claims: dict[str, Any], secret: str = _TEST_JWT_SECRET) -> str:
    """Sign *claims* the way :class:`hvacdesk_api.security.TokenManager` does."""
    return jwt.encode(claims, secret, algorithm=TOKEN_ALGORITHM)


def _make_token(
    *,
    sub: str = "u-owner",
    tenant_id: str = "co-1",
    role: str = "owner",
    email: str = "owner@polarair.test",
    ttl: int = 3600,
) -> str:
    now = int(time.time())
    return _encode_token(
        {
            "sub": sub,
            "tenant_id": tenant_id,
            "email": email,
            "role": role,
            "iss": "hvacdesk",
            "iat": now,
            "exp": now + ttl,
            "jti": "test-jti-conftest",
        }
    )


# Identities seeded by ``db_session``.
IDENTITIES: dict[str, dict[str, str]] = {
    "owner": {"sub": "u-owner", "tenant_id": "co-1", "role": "owner", "email": "owner@polarair.test"},
    "technician": {"sub": "u-tech", "tenant_id": "co-1", "role": "technician", "email": "tech@polarair.test"},
    "summit_admin": {"sub": "u-summit", "tenant_id": "co-2", "role": "admin", "email": "ops@summit.test"},
    "platform_admin": {
        "sub": "u-support",
        "tenant_id": "co-hq",
        "role": "platform_admin",
        "email": "support@hvacdesk.test",
    },
}


@pytest.fixture()
def encode_token() -> Callable[..., str]:
    """Return the raw token signer, for hand-built claims."""
    return _encode_token


@pytest.fixture()
def auth_headers() -> Callable[..., dict[str, str]]:
    """Return a factory producing ``Authorization`` headers.

    ``auth_headers("technician")`` signs a token for one of the seeded
    identities; keyword arguments override individual claims.
    """

    def _headers(identity: str = "owner", **overrides: Any) -> dict[str, str]:
        claims: dict[str, Any] = {**IDENTITIES[identity], **overrides}
        return {"Authorization": f"Bearer {_make_token(**claims)}"}

    return _headers


# ---------------------------------------------------------------------------
# Stripe signatures
# ---------------------------------------------------------------------------


@pytest.fixture()
def stripe_signature() -> Callable[..., str]:
    """Return a function computing a ``stripe-signature`` header for a payload."""

    def _sign(payload: bytes, secret: str = _TEST_WEBHOOK_SECRET, timestamp: int | None = None) -> str:
        ts = int(time.time()) if timestamp is None else timestamp
        signed = f"{ts}.".encode("utf-8") + payload
        digest = hmac.new(secret.encode("utf-8"), signed, hashlib.sha256).hexdigest()
        return f"t={ts},v1={digest}"

    return _sign


@pytest.fixture()
def webhook_secret() -> str:
    return _TEST_WEBHOOK_SECRET


# ---------------------------------------------------------------------------
# Clock
# ---------------------------------------------------------------------------


class FakeClock:
    """Manually advanced clock for :class:`ImpersonationGuard`."""

    def __init__(self, start: datetime) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now += timedelta(**kwargs)


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock(datetime(2026, 10, 1, 9, 0, tzinfo=UTC))


@pytest.fixture()
def guard(clock: FakeClock) -> ImpersonationGuard:
    """A guard with the default 60 minute ceiling and 15 minute idle timeout."""
    return ImpersonationGuard(
        max_duration=timedelta(minutes=60),
        idle_timeout=timedelta(minutes=15),
        clock=clock,
    )


# ---------------------------------------------------------------------------
# Settings
# ---------------------------------------------------------------------------


@pytest.fixture()
def test_settings() -> APISettings:
    """Return a settings object with billing enabled and Stripe configured."""
    return APISettings(
        debug=True,
        database_url="sqlite+aiosqlite://",
        platform_env="dev",
        cors_origins=["http://localhost:5173"],
        billing_enabled=True,
        stripe_secret_key="sk_test_hvacdesk",
        stripe_webhook_secret=_TEST_WEBHOOK_SECRET,
        stripe_price_id="price_pro_monthly",
        app_base_url="https://app.hvacdesk.test",
    )


# ---------------------------------------------------------------------------
# Database
# ---------------------------------------------------------------------------


@pytest_asyncio.fixture()
async def db_engine():
    engine = create_async_engine("sqlite+aiosqlite://", echo=False)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest_asyncio.fixture()
async def db_session(db_engine):
    """Session seeded with two tenant companies, their users and a support admin.

    - ``co-1`` Polar Air HVAC, bound to Stripe customer ``cus_AAA``
    - ``co-2`` Summit Refrigeration, no Stripe customer yet
    - ``co-hq`` HVACDesk, home of the platform admin
    """
    factory = async_sessionmaker(db_engine, expire_on_commit=False)
    async with factory() as session:
        session.add_all(
            [
                CompanyTable(
                    id="co-1", name="Polar Air HVAC", email="office@polarair.test", stripe_customer_id="cus_AAA"
                ),
                CompanyTable(id="co-2", name="Summit Refrigeration", email="billing@summit.test"),
                CompanyTable(id="co-hq", name="HVACDesk"),
            ]
        )
        await session.flush()
        session.add_all(
            [
                UserTable(**_user("owner")),
                UserTable(**_user("technician")),
                UserTable(**_user("summit_admin")),
                UserTable(**_user("platform_admin")),
            ]
        )
        await session.flush()
        yield session


def _user(identity: str) -> dict[str, str]:
    ident = IDENTITIES[identity]
    return {"id": ident["sub"], "company_id": ident["tenant_id"], "email": ident["email"], "role": ident["role"]}


# ---------------------------------------------------------------------------
# Stripe gateway
# ---------------------------------------------------------------------------


@pytest.fixture()
def mock_gateway() -> MagicMock:
    """A configured :class:`StripeGateway` whose outbound calls are mocked."""
    gateway = MagicMock(spec=StripeGateway)
    gateway.api_configured = True
    gateway.webhook_configured = True
    gateway.create_customer.return_value = "cus_NEW"
    gateway.create_checkout_session.return_value = {
        "id": "cs_test_123",
        "url": "https://checkout.stripe.com/c/pay/cs_test_123",
    }
    gateway.create_portal_session.return_value = "https://billing.stripe.com/p/session/test_123"
    return gateway


# ---------------------------------------------------------------------------
# Application and client
# ---------------------------------------------------------------------------


@pytest.fixture()
def app(test_settings: APISettings, db_session, guard: ImpersonationGuard):
    """Create the FastAPI app wired to the seeded session and the fake-clock guard.

    ``app.state.stripe_gateway`` is the real gateway built from
    ``test_settings``; tests replace it when they need mocked outbound calls.
    """
    application = create_app(test_settings)
    application.state.impersonation_guard = guard

    async def _override_session():
        yield db_session

    def _override_settings():
        return test_settings

    application.dependency_overrides[get_db_session] = _override_session
    application.dependency_overrides[get_tenant_session] = _override_session
    application.dependency_overrides[get_admin_session] = _override_session
    application.dependency_overrides[get_settings] = _override_settings
    return application


@pytest_asyncio.fixture()
async def client(app) -> AsyncClient:
    """Yield an async httpx client bound to the test app.

    Uses ASGITransport so requests go directly to the ASGI app without
    opening a real TCP socket.  No auth header is set; tests pass
    ``headers=auth_headers(...)`` per request.
    """
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac
