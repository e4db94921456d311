"""Authentication middleware that validates bearer tokens.

Extracts ``Authorization: Bearer <token>`` from every request, validates it
via :class:`TokenManager`, and populates ``request.state`` with
``tenant_id``, ``sub`` (user id), ``email`` and ``role``.

Endpoints listed in ``_PUBLIC_PATHS`` bypass authentication.  The Stripe
webhook is one of them: it authenticates by signature instead.
"""

from __future__ import annotations

import logging
import os
import secrets
from typing import Any

from pydantic import SecretStr
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import JSONResponse, Response

from hvacdesk_api.security import TokenConfig, TokenManager

logger = logging.getLogger(__name__)

# Paths that do not require authentication.
_PUBLIC_PATHS: frozenset[str] = frozenset(
    {
        "/api/v1/health",
        "/docs",
        "/openapi.json",
        "/redoc",
        "/favicon.ico",
        "/api/v1/billing/webhooks",
    }
)

# Prefixes that skip auth (static docs assets).
_PUBLIC_PREFIXES: tuple[str, ...] = (
    "/docs",
    "/redoc",
)


def _build_token_config() -> TokenConfig:
    """Construct a :class:`TokenConfig` from environment variables.

    - ``JWT_SECRET`` -- signing/verification secret.  Required outside
      ``API_PLATFORM_ENV=dev``; in dev a random per-process secret is used.
    - ``TOKEN_TTL_SECONDS`` -- default token lifetime.
    """
    secret = os.environ.get("JWT_SECRET", "")
    if not secret:
        platform_env = os.environ.get("API_PLATFORM_ENV", "dev").lower()
        if platform_env != "dev":
            raise RuntimeError(
                f"JWT_SECRET environment variable must be set when API_PLATFORM_ENV={platform_env}. "
                "Refusing to start with an insecure default secret."
            )
        secret = f"dev-{secrets.token_hex(32)}"
        logger.warning(
            "JWT_SECRET not set; generated random per-process dev secret. Tokens will not survive process restarts."
        )

    return TokenConfig(
        secret=SecretStr(secret),
        token_ttl_seconds=int(os.environ.get("TOKEN_TTL_SECONDS", "3600")),
    )


def _is_public_path(path: str) -> bool:
    """Return ``True`` if the path should bypass authentication."""
    if path in _PUBLIC_PATHS:
        return True
    return any(path.startswith(prefix) for prefix in _PUBLIC_PREFIXES)


class AuthenticationMiddleware(BaseHTTPMiddleware):
    """Starlette middleware that enforces Bearer token authentication.

    On each request the middleware:

    1. Skips public paths (health, docs, Stripe webhook).
    2. Extracts the ``Authorization: Bearer <token>`` header.
    3. Validates the token via :class:`TokenManager`.
    4. Stores ``tenant_id``, ``sub``, ``email`` and ``role`` on ``request.state``.
    5. Returns a 401/403 JSON response on failure.
    """

    def __init__(self, app: Any) -> None:
        super().__init__(app)
        self._token_manager = TokenManager(_build_token_config())
        logger.info("AuthenticationMiddleware initialised")

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        if request.method == "OPTIONS" or _is_public_path(request.url.path):
            return await call_next(request)

        auth_header = request.headers.get("authorization")
        if not auth_header:
            return JSONResponse(
                status_code=401,
                content={"detail": "Missing Authorization header"},
            )

        parts = auth_header.split(None, 1)
        if len(parts) != 2 or parts[0].lower() != "bearer":
            return JSONResponse(
                status_code=401,
                content={"detail": "Authorization header must use Bearer scheme"},
            )

        try:
            claims = self._token_manager.validate_token(parts[1])
        except PermissionError as exc:
            error_msg = str(exc)
            # Expired tokens are 403 so clients know to refresh rather than re-login.
            if "expired" in error_msg.lower():
                return JSONResponse(
                    status_code=403,
                    content={"detail": "Token has expired"},
                )
            return JSONResponse(
                status_code=401,
                content={"detail": f"Invalid token: {error_msg}"},
            )

        request.state.tenant_id = claims.tenant_id
        request.state.sub = claims.sub
        request.state.email = claims.email
        request.state.role = claims.role
        return await call_next(request)
