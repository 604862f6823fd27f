"""
Bearer token verification for realtime connections.

Tokens are HS256 JWTs issued by the auth layer. The account id is read
from `sub`, or from `userId` for tokens minted by older clients.
"""

from datetime import datetime, timedelta, timezone
from typing import Any

import jwt

from parceldesk.errors import AuthenticationError


class TokenVerifier:
    """Verifies signature and expiry, returns the account id."""

    def __init__(self, secret: str, algorithm: str = "HS256", leeway_seconds: float = 0):
        if not secret:
            raise ValueError("JWT secret must not be empty")
        self.secret = secret
        self.algorithm = algorithm
        self.leeway_seconds = leeway_seconds

    def decode(self, token: str) -> dict[str, Any]:
        if not token:
            raise AuthenticationError("Token required")
        try:
            return jwt.decode(
                token,
                self.secret,
                algorithms=[self.algorithm],
                leeway=self.leeway_seconds,
                options={"require": ["exp"]},
            )
        except jwt.ExpiredSignatureError as e:
            raise AuthenticationError("Token expired") from e
        except jwt.InvalidTokenError as e:
            raise AuthenticationError("Invalid token") from e

    def account_id(self, token: str) -> str:
        claims = self.decode(token)
        account_id = claims.get("sub") or claims.get("userId")
        if not account_id or not isinstance(account_id, str):
            raise AuthenticationError("Token carries no account id")
        return account_id


def issue_token(
    account_id: str,
    secret: str,
    role: str | None = None,
    ttl: timedelta = timedelta(hours=24),
    algorithm: str = "HS256",
) -> str:
    """Mint a token the verifier accepts (CLI and tests)."""
    now = datetime.now(timezone.utc)
    payload: dict[str, Any] = {"sub": account_id, "iat": now, "exp": now + ttl}
    if role:
        payload["role"] = role
    return jwt.encode(payload, secret, algorithm=algorithm)
