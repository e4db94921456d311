"""FastAPI application entry-point for the HVACDesk billing and support API."""

from __future__ import annotations

import logging
import os
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from datetime import timedelta

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError

from hvacdesk_api import __version__
from hvacdesk_api.config import APISettings, PlatformEnv, load_api_settings
from hvacdesk_api.dependencies import dispose_engine, init_engine
from hvacdesk_api.middleware.auth import AuthenticationMiddleware
from hvacdesk_api.middleware.impersonation import ImpersonationMiddleware
from hvacdesk_api.middleware.logging import RequestLoggingMiddleware
from hvacdesk_api.routers import audit, billing, health, impersonation
from hvacdesk_api.services.billing_errors import BillingError
from hvacdesk_api.services.impersonation_service import ImpersonationGuard
from hvacdesk_api.services.stripe_gateway import StripeGateway

logger = logging.getLogger(__name__)


def configure_logging(settings: APISettings) -> None:
    """Install single-line JSON logging on the root logger when enabled."""
    if not settings.structured_logging:
        return
    from hvacdesk_api.middleware.json_formatter import JSONFormatter

    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    handler = logging.StreamHandler()
    handler.setFormatter(JSONFormatter())
    root_logger.addHandler(handler)
    root_logger.setLevel(logging.DEBUG if settings.debug else logging.INFO)
    logger.info("Structured JSON logging enabled")


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application startup / shutdown lifecycle.

    On startup:
    - Initialise the async database engine.
    - Create tables in dev or local SQLite mode (production uses Alembic).

    On shutdown:
    - Dispose the database engine connection pool.
    """
    settings: APISettings = load_api_settings()
    configure_logging(settings)

    if settings.platform_env in (PlatformEnv.STAGING, PlatformEnv.PRODUCTION) and not os.environ.get("JWT_SECRET"):
        raise RuntimeError(
            f"JWT_SECRET environment variable is required in {settings.platform_env.value} mode. Refusing to start."
        )

    engine = init_engine(settings)
    is_local = settings.database_url.startswith("sqlite")
    logger.info("Database engine initialised (%s)", "local" if is_local else "postgres")

    if settings.platform_env == PlatformEnv.DEV or is_local:
        from hvacdesk_core.state.sqlite_adapter import create_local_tables

        await create_local_tables(engine)

    if settings.billing_enabled and not settings.stripe_configured:
        logger.warning("Billing is enabled but Stripe keys are missing; billing endpoints will return 503")

    yield

    await dispose_engine()
    logger.info("Application shutdown complete")


# ---------------------------------------------------------------------------
# Application factory
# ---------------------------------------------------------------------------


def create_app(settings: APISettings | None = None) -> FastAPI:
    """Construct and configure the FastAPI application.

    The Stripe gateway and the impersonation guard are built here, once per
    application, and shared by every request through ``app.state``.
    """
    settings = settings or load_api_settings()

    app = FastAPI(
        title="HVACDesk API",
        description="Billing and platform-support control plane for HVACDesk.",
        version=__version__,
        lifespan=lifespan,
    )

    app.state.stripe_gateway = StripeGateway.from_settings(settings)
    app.state.impersonation_guard = ImpersonationGuard(
        max_duration=timedelta(minutes=settings.impersonation_max_minutes),
        idle_timeout=timedelta(minutes=settings.impersonation_idle_minutes),
    )

    # -- Middleware (innermost first) ----------------------------------------

    app.add_middleware(ImpersonationMiddleware)
    app.add_middleware(AuthenticationMiddleware)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=settings.cors_allow_credentials,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=[
            "Authorization",
            "Content-Type",
            "X-Correlation-ID",
            "Accept",
        ],
    )
    app.add_middleware(RequestLoggingMiddleware)

    # -- Routers -------------------------------------------------------------

    app.include_router(health.router, prefix="/api/v1")
    app.include_router(billing.router, prefix="/api/v1")
    app.include_router(impersonation.router, prefix="/api/v1")
    app.include_router(audit.router, prefix="/api/v1")

    # -- Exception handlers --------------------------------------------------

    @app.exception_handler(BillingError)
    async def billing_error_handler(request: Request, exc: BillingError) -> JSONResponse:
        if exc.status_code >= 500:
            logger.error("%s on %s: %s", type(exc).__name__, request.url.path, exc)
        else:
            logger.warning("%s on %s: %s", type(exc).__name__, request.url.path, exc)
        return JSONResponse(status_code=exc.status_code, content={"detail": exc.detail})

    @app.exception_handler(ValueError)
    async def value_error_handler(request: Request, exc: ValueError) -> JSONResponse:
        logger.warning("ValueError on %s: %s", request.url.path, exc)
        return JSONResponse(status_code=400, content={"detail": "Invalid request"})

    @app.exception_handler(PermissionError)
    async def permission_error_handler(request: Request, exc: PermissionError) -> JSONResponse:
        logger.warning("PermissionError on %s: %s", request.url.path, exc)
        return JSONResponse(status_code=403, content={"detail": "Permission denied"})

    @app.exception_handler(SQLAlchemyError)
    async def sqlalchemy_error_handler(request: Request, exc: SQLAlchemyError) -> JSONResponse:
        logger.error("Database error: %s", exc, exc_info=True)
        return JSONResponse(
            status_code=500,
            content={"detail": "Internal database error"},
        )

    return app


# Module-level application instance used by ``uvicorn hvacdesk_api.main:app``.
app = create_app()
