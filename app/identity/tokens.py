"""Signed session tokens carrying the identity returned by the login provider."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any

import jwt

from .context import Identity

SUPPORTED_ALGORITHMS = frozenset({"HS256", "HS384", "HS512"})


class InvalidSessionToken(ValueError):
    """Raised when a session token is malformed, expired or not signed by us."""


class SessionTokenCodec:
    """Issue and verify HMAC signed JWT session tokens.

    The token is the only credential accepted by the service. It records who
    the caller is; whether that caller is a trader is decided on every request
    by ``PrivilegePolicy`` and never read from the token.
    """

    def __init__(
        self,
        secret: str,
        *,
        algorithm: str = "HS256",
        issuer: str = "ticket-desk",
        ttl: timedelta = timedelta(hours=24),
    ) -> None:
        if not secret:
            raise ValueError("secret cannot be empty")
        if algorithm not in SUPPORTED_ALGORITHMS:
            raise ValueError(f"Unsupported session token algorithm: {algorithm}")
        self._secret = secret
        self._algorithm = algorithm
        self._issuer = issuer
        self._ttl = ttl

    def issue(self, identity: Identity, *, now: datetime | None = None) -> str:
        issued_at = now or datetime.now(timezone.utc)
        payload: dict[str, Any] = {
            "sub": identity.id,
            "name": identity.display_name,
            "iss": self._issuer,
            "iat": issued_at,
            "exp": issued_at + self._ttl,
        }
        return jwt.encode(payload, self._secret, algorithm=self._algorithm)

    def decode(self, token: str) -> Identity:
        try:
            claims = jwt.decode(
                token,
                self._secret,
                algorithms=[self._algorithm],
                issuer=self._issuer,
                options={"require": ["sub", "exp", "iat"]},
            )
        except jwt.InvalidTokenError as exc:
            raise InvalidSessionToken(str(exc)) from exc

        subject = str(claims.get("sub") or "").strip()
        if not subject:
            raise InvalidSessionToken("Session token has an empty subject")
        display_name = str(claims.get("name") or subject)
        return Identity(id=subject, display_name=display_name)
