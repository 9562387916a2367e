"""Realtime channels: WebSocket, HTTP polling and the facade over both."""

from __future__ import annotations

from .channel import RealtimeChannel, SessionIdentity, TransportKind
from .client import RealtimeClient
from .credentials import CredentialStore
from .errors import (
    AuthError,
    ConnectionClosedError,
    ConnectionTimeoutError,
    NotConnectedError,
    ProtocolError,
    RequestTimeoutError,
    ResourceError,
    TransportError,
)
from .events import ConnectionState, EventType, RealtimeEvent
from .messages import Message, parse_message, serialize_message
from .persistent import PersistentChannelClient, compute_reconnect_delay
from .polling import PollingChannelClient

__all__ = [
    "AuthError",
    "ConnectionClosedError",
    "ConnectionState",
    "ConnectionTimeoutError",
    "CredentialStore",
    "EventType",
    "Message",
    "NotConnectedError",
    "PersistentChannelClient",
    "PollingChannelClient",
    "ProtocolError",
    "RealtimeChannel",
    "RealtimeClient",
    "RealtimeEvent",
    "RequestTimeoutError",
    "ResourceError",
    "SessionIdentity",
    "TransportError",
    "TransportKind",
    "compute_reconnect_delay",
    "parse_message",
    "serialize_message",
]
