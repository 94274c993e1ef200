from __future__ import annotations

import logging
from typing import Any, Protocol, Sequence

from jose import JWTError, jwt

from .errors import AuthError

log = logging.getLogger("chatrelay.core.auth")

INVALID_TOKEN = "Invalid or expired token"


class IdentityVerifier(Protocol):
    def verify(self, token: str) -> str: ...


class JwtVerifier:
    """Resolves a bearer token to a durable user id.

    Signature and expiry are checked against a shared secret; the identity is
    read from a single claim. Missing, malformed, expired and badly signed
    tokens all raise the same AuthError.
    """

    def __init__(self, secret: str, algorithms: Sequence[str] = ("HS256",), claim: str = "userId") -> None:
        self.secret = secret
        self.algorithms = list(algorithms)
        self.claim = claim

    def verify(self, token: Any) -> str:
        if not token or not isinstance(token, str):
            raise AuthError(INVALID_TOKEN)
        try:
            claims = jwt.decode(token, self.secret, algorithms=self.algorithms)
        except JWTError as exc:
            log.debug("Token rejected: %s", exc)
            raise AuthError(INVALID_TOKEN) from None
        identity = claims.get(self.claim)
        if not isinstance(identity, str) or not identity:
            raise AuthError(INVALID_TOKEN)
        return identity


__all__ = ["IdentityVerifier", "JwtVerifier", "INVALID_TOKEN"]
