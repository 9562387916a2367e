"""Error taxonomy shared by the realtime transports."""

from __future__ import annotations


class TransportError(RuntimeError):
    """Raised when a channel cannot be opened or is lost unexpectedly."""


class ConnectionClosedError(TransportError):
    """The channel closed while an operation was still waiting on it."""


class NotConnectedError(TransportError):
    """An operation that needs an open channel was attempted without one."""


class ConnectionTimeoutError(TransportError, TimeoutError):
    """The channel did not open before ``connection_timeout`` expired."""


class RequestTimeoutError(TransportError, TimeoutError):
    """No correlated reply arrived before the request timeout."""


class ProtocolError(ValueError):
    """Inbound data could not be decoded into a message.

    Raised internally only; transports drop the offending frame and log it.
    """


class AuthError(RuntimeError):
    """Authentication failure reported by the server through its own protocol."""


class ResourceError(OSError):
    """Local storage is unavailable; callers degrade to in-memory state."""


__all__ = [
    "AuthError",
    "ConnectionClosedError",
    "ConnectionTimeoutError",
    "NotConnectedError",
    "ProtocolError",
    "RequestTimeoutError",
    "ResourceError",
    "TransportError",
]
