"""
codegrant_tokens.py — stateless bearer tokens (HS256 JWT).

Tokens are never stored. A token is valid iff its signature checks out
against the configured key and ``exp`` is in the future, so rotating the
key silently invalidates every outstanding token. Each token carries a
``jti`` for a future denylist.
"""

import logging
import secrets
import time
from dataclasses import dataclass
from typing import Any, Callable

import jwt

logger = logging.getLogger("codegrant-tokens")

JWT_ALGORITHM = "HS256"
TOKEN_EXPIRY_SECONDS = 24 * 3600  # 24 hours


class TokenSigningError(Exception):
    """The access token could not be signed."""


@dataclass
class IssuedToken:
    access_token: str
    expires_in: int
    jti: str
    token_type: str = "Bearer"

    def as_response(self) -> dict[str, Any]:
        return {
            "access_token": self.access_token,
            "token_type": self.token_type,
            "expires_in": self.expires_in,
        }


class TokenIssuer:
    """Signs and verifies access tokens with a single process-wide key."""

    def __init__(
        self,
        signing_key: str,
        issuer: str | None = None,
        expires_in: int = TOKEN_EXPIRY_SECONDS,
        algorithm: str = JWT_ALGORITHM,
        clock: Callable[[], float] = time.time,
    ):
        if not signing_key:
            raise ValueError("signing_key must not be empty")
        self._key = signing_key
        self.issuer = issuer
        self.expires_in = expires_in
        self.algorithm = algorithm
        self._clock = clock

    def issue(self, client_id: str) -> IssuedToken:
        now = int(self._clock())
        jti = secrets.token_hex(16)
        payload = {
            "client_id": client_id,
            "iat": now,
            "exp": now + self.expires_in,
            "jti": jti,
        }
        if self.issuer:
            payload["iss"] = self.issuer
        try:
            token = jwt.encode(payload, self._key, algorithm=self.algorithm)
        except (jwt.PyJWTError, NotImplementedError, TypeError, ValueError) as e:
            raise TokenSigningError(f"failed to sign token for {client_id}: {e}") from e
        return IssuedToken(access_token=token, expires_in=self.expires_in, jti=jti)

    def verify(self, token: str) -> dict[str, Any]:
        """Decode and validate a token; raises jwt.InvalidTokenError on failure."""
        options = {"require": ["client_id", "iat", "exp"]}
        return jwt.decode(
            token,
            self._key,
            algorithms=[self.algorithm],
            issuer=self.issuer,
            options=options,
        )
