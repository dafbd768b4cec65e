"""Bearer token validation.

Tokens are HS256 JWTs carrying a ``user_id`` claim. The relay only
validates them; :func:`issue_token` exists for development and tests.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from datetime import datetime, timedelta, timezone

import jwt

from termrelay.config.settings import AuthConfig
from termrelay.domain.errors import AuthRejected
from termrelay.domain.models import Identity

logger = logging.getLogger(__name__)


class TokenValidator(ABC):
    """Turns an opaque bearer credential into an identity."""

    @abstractmethod
    def validate_token(self, token: str | None) -> Identity:
        """Validate ``token``.

        Raises:
            AuthRejected: If the token is absent or invalid.
        """
        ...


class JwtTokenValidator(TokenValidator):
    """Validates HS256 JWTs signed with a shared secret."""

    def __init__(self, secret: str, algorithm: str = "HS256") -> None:
        self._secret = secret
        self._algorithm = algorithm

    @classmethod
    def from_config(cls, config: AuthConfig) -> JwtTokenValidator:
        return cls(config.jwt_secret.get_secret_value(), algorithm=config.algorithm)

    def validate_token(self, token: str | None) -> Identity:
        if not token:
            raise AuthRejected("Token required")
        try:
            claims = jwt.decode(
                token,
                self._secret,
                algorithms=[self._algorithm],
                options={"require": ["exp", "user_id"]},
            )
        except jwt.ExpiredSignatureError as e:
            raise AuthRejected("Token expired") from e
        except jwt.InvalidTokenError as e:
            logger.debug("Rejected token: %s", e)
            raise AuthRejected("Invalid or expired token") from e

        user_id = claims.get("user_id")
        if not isinstance(user_id, int) or isinstance(user_id, bool):
            raise AuthRejected("Invalid or expired token")
        return Identity(user_id=user_id, email=claims.get("email"))


def issue_token(
    user_id: int,
    secret: str,
    email: str | None = None,
    ttl: timedelta = timedelta(days=7),
    issuer: str = "termrelay",
    algorithm: str = "HS256",
) -> str:
    """Create a signed token for ``user_id``."""
    now = datetime.now(timezone.utc)
    claims = {
        "user_id": user_id,
        "iat": now,
        "exp": now + ttl,
        "iss": issuer,
    }
    if email:
        claims["email"] = email
    return jwt.encode(claims, secret, algorithm=algorithm)
