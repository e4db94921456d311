"""Bearer token signing and validation.

Tokens are HS256 JWTs signed with the shared ``JWT_SECRET`` and carrying
the caller's user id, tenant, role and e-mail alongside the registered
``iss``/``iat``/``exp``/``jti`` claims.
"""

from __future__ import annotations

import logging
import time
import uuid

from jose import ExpiredSignatureError, JWTError, jwt
from pydantic import BaseModel, Field, SecretStr, ValidationError

logger = logging.getLogger(__name__)

TOKEN_ALGORITHM = "HS256"
TOKEN_ISSUER = "hvacdesk"


class TokenConfig(BaseModel):
    """Signing configuration for :class:`TokenManager`."""

    secret: SecretStr
    token_ttl_seconds: int = 3600
    max_token_ttl_seconds: int = 86400


class TokenClaims(BaseModel):
    """Validated claims carried by a bearer token."""

    sub: str
    tenant_id: str
    email: str = ""
    role: str = "technician"
    iss: str = TOKEN_ISSUER
    iat: int
    exp: int
    jti: str = Field(default_factory=lambda: uuid.uuid4().hex)


class TokenManager:
    """Issue and validate HS256 bearer tokens.

    Parameters
    ----------
    config:
        Secret and lifetime limits.
    """

    def __init__(self, config: TokenConfig) -> None:
        self._config = config
        self._secret = config.secret.get_secret_value()

    def generate_token(
        self,
        *,
        sub: str,
        tenant_id: str,
        role: str,
        email: str = "",
        ttl_seconds: int | None = None,
    ) -> str:
        """Return a signed token for the given identity.

        ``ttl_seconds`` is capped at ``max_token_ttl_seconds``.
        """
        ttl = min(ttl_seconds or self._config.token_ttl_seconds, self._config.max_token_ttl_seconds)
        now = int(time.time())
        claims = TokenClaims(sub=sub, tenant_id=tenant_id, email=email, role=role, iat=now, exp=now + ttl)
        return jwt.encode(claims.model_dump(), self._secret, algorithm=TOKEN_ALGORITHM)

    def validate_token(self, token: str) -> TokenClaims:
        """Verify *token* and return its claims.

        Raises
        ------
        PermissionError
            If the token is malformed, carries a bad signature or issuer,
            or has expired.
        """
        try:
            payload = jwt.decode(token, self._secret, algorithms=[TOKEN_ALGORITHM], issuer=TOKEN_ISSUER)
        except ExpiredSignatureError:
            raise PermissionError("Token expired")
        except JWTError as exc:
            raise PermissionError(str(exc) or "Malformed token")

        try:
            return TokenClaims.model_validate(payload)
        except ValidationError:
            raise PermissionError("Malformed token claims")
