"""FastAPI dependency injection for settings, database sessions and app-scoped clients."""

from __future__ import annotations

import logging
from collections.abc import AsyncGenerator
from typing import Annotated

from fastapi import Depends, HTTPException, Request
from hvacdesk_core.state.database import create_session_factory, get_engine, session_scope
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from hvacdesk_api.config import APISettings, load_api_settings
from hvacdesk_api.services.impersonation_service import ImpersonationGuard
from hvacdesk_api.services.stripe_gateway import StripeGateway

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Settings
# ---------------------------------------------------------------------------

_settings_cache: APISettings | None = None


def get_settings() -> APISettings:
    """Return the cached :class:`APISettings` singleton."""
    global _settings_cache  # noqa: PLW0603
    if _settings_cache is None:
        _settings_cache = load_api_settings()
    return _settings_cache


SettingsDep = Annotated[APISettings, Depends(get_settings)]

# ---------------------------------------------------------------------------
# Database session
# ---------------------------------------------------------------------------

_engine: AsyncEngine | None = None
_session_factory: async_sessionmaker[AsyncSession] | None = None


def init_engine(settings: APISettings) -> AsyncEngine:
    """Create and cache the global async engine."""
    global _engine, _session_factory  # noqa: PLW0603
    _engine = get_engine(settings.database_url)
    _session_factory = create_session_factory(_engine)
    return _engine


async def dispose_engine() -> None:
    """Dispose the global engine pool (call during shutdown)."""
    global _engine, _session_factory  # noqa: PLW0603
    if _engine is not None:
        await _engine.dispose()
        _engine = None
        _session_factory = None


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    """Return the global async session factory.

    Used by components outside FastAPI's dependency injection (Starlette
    middleware) that need their own session.
    """
    if _session_factory is None:
        raise RuntimeError(
            "Database engine has not been initialised. Ensure init_engine() is called during application startup."
        )
    return _session_factory


async def get_db_session() -> AsyncGenerator[AsyncSession, None]:
    """Yield an ``AsyncSession`` that is not tied to an authenticated tenant.

    For the Stripe webhook, which resolves its tenant from the event, and
    for health probes.  The session commits on clean exit and rolls back
    on exception.
    """
    async with session_scope(get_session_factory()) as session:
        yield session


async def get_tenant_session(request: Request) -> AsyncGenerator[AsyncSession, None]:
    """Yield an ``AsyncSession`` for an authenticated tenant request.

    Rejects the request with 401 when no tenant identity is present.
    """
    if getattr(request.state, "tenant_id", None) is None:
        raise HTTPException(status_code=401, detail="Authentication required")

    async with session_scope(get_session_factory()) as session:
        yield session


async def get_admin_session() -> AsyncGenerator[AsyncSession, None]:
    """Yield an ``AsyncSession`` for platform-admin endpoints.

    Reads across every company.  Only use behind a platform-admin
    permission guard.
    """
    async with session_scope(get_session_factory()) as session:
        yield session


SessionDep = Annotated[AsyncSession, Depends(get_tenant_session)]
PublicSessionDep = Annotated[AsyncSession, Depends(get_db_session)]
AdminSessionDep = Annotated[AsyncSession, Depends(get_admin_session)]

# ---------------------------------------------------------------------------
# App-scoped clients (built in create_app, held on app.state)
# ---------------------------------------------------------------------------


def get_stripe_gateway(request: Request) -> StripeGateway:
    """Return the application's :class:`StripeGateway`."""
    return request.app.state.stripe_gateway


StripeGatewayDep = Annotated[StripeGateway, Depends(get_stripe_gateway)]


def get_impersonation_guard(request: Request) -> ImpersonationGuard:
    """Return the application's :class:`ImpersonationGuard`."""
    return request.app.state.impersonation_guard


ImpersonationGuardDep = Annotated[ImpersonationGuard, Depends(get_impersonation_guard)]

# ---------------------------------------------------------------------------
# Tenant / user identity (populated by the auth and impersonation middleware)
# ---------------------------------------------------------------------------


def get_tenant_id(request: Request) -> str:
    """Extract tenant_id from authenticated request state."""
    tenant_id = getattr(request.state, "tenant_id", None)
    if tenant_id is None:
        raise HTTPException(status_code=401, detail="Authentication required")
    return tenant_id


TenantDep = Annotated[str, Depends(get_tenant_id)]


def get_user_identity(request: Request) -> str:
    """Extract the acting user id from authenticated request state."""
    sub = getattr(request.state, "sub", None)
    if sub is None:
        raise HTTPException(status_code=401, detail="Authentication required")
    return sub


UserDep = Annotated[str, Depends(get_user_identity)]
