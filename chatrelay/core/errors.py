from __future__ import annotations


class RelayError(Exception):
    """Base class for failures raised while handling a client frame.

    The message is sent to the client verbatim inside an ``error`` frame.
    """

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class AuthError(RelayError):
    """Bad, expired or missing bearer token. Terminal for the connection."""


class ProtocolError(RelayError):
    """Malformed frame, unknown type, missing field or re-auth attempt."""


class AuthorizationError(RelayError):
    """Sender and target are not in an authorized relationship."""


class PersistenceError(RelayError):
    """Message store unavailable or write failed."""


class FanoutUnavailable(RelayError):
    """Publish/subscribe backbone unreachable. Never surfaced to clients."""


__all__ = [
    "RelayError",
    "AuthError",
    "ProtocolError",
    "AuthorizationError",
    "PersistenceError",
    "FanoutUnavailable",
]
