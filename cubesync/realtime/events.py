"""
Connection states, event kinds and the listener tables used by every channel.

Listeners are plain callables receiving a ``RealtimeEvent``. They run
synchronously on the loop thread in registration order; a listener that
raises is logged and skipped so its siblings still see the event.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from .messages import utc_now_iso

LOGGER = logging.getLogger(__name__)


class ConnectionState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"
    ERROR = "error"


class EventType(str, Enum):
    OPEN = "open"
    CLOSE = "close"
    ERROR = "error"
    MESSAGE = "message"
    RECONNECTING = "reconnecting"
    RECONNECTED = "reconnected"
    MAX_RECONNECTS = "max_reconnects"
    STATE_CHANGED = "state_changed"


@dataclass(frozen=True)
class OpenEventData:
    url: str


@dataclass(frozen=True)
class CloseEventData:
    code: int
    reason: str
    was_clean: bool


@dataclass(frozen=True)
class ErrorEventData:
    message: str
    error: Optional[BaseException] = None


@dataclass(frozen=True)
class StateChangeEventData:
    previous_state: ConnectionState
    current_state: ConnectionState
    reason: Optional[str] = None


@dataclass(frozen=True)
class ReconnectingEventData:
    attempt: int
    delay: float


@dataclass(frozen=True)
class ReconnectedEventData:
    attempts: int


@dataclass(frozen=True)
class MaxReconnectsEventData:
    attempts: int


@dataclass(frozen=True)
class RealtimeEvent:
    type: EventType
    data: Any
    timestamp: str = field(default_factory=utc_now_iso)


Listener = Callable[[RealtimeEvent], Any]


class EventEmitter:
    """Two listener tables: one keyed by ``EventType``, one by message type."""

    def __init__(self, owner: str = "channel") -> None:
        self._owner = owner
        self._listeners: Dict[EventType, List[Listener]] = {}
        self._message_listeners: Dict[str, List[Listener]] = {}

    # ------------------------------------------------------------------ tables
    def on(self, event_type: EventType, listener: Listener) -> None:
        bucket = self._listeners.setdefault(EventType(event_type), [])
        if listener not in bucket:
            bucket.append(listener)

    def off(self, event_type: EventType, listener: Listener) -> None:
        bucket = self._listeners.get(EventType(event_type))
        if bucket and listener in bucket:
            bucket.remove(listener)
            if not bucket:
                self._listeners.pop(EventType(event_type), None)

    def on_message(self, message_type: str, listener: Listener) -> None:
        bucket = self._message_listeners.setdefault(str(message_type), [])
        if listener not in bucket:
            bucket.append(listener)

    def off_message(self, message_type: str, listener: Listener) -> None:
        bucket = self._message_listeners.get(str(message_type))
        if bucket and listener in bucket:
            bucket.remove(listener)
            if not bucket:
                self._message_listeners.pop(str(message_type), None)

    def listener_count(self, event_type: Optional[EventType] = None) -> int:
        if event_type is not None:
            return len(self._listeners.get(EventType(event_type), ()))
        return sum(len(bucket) for bucket in self._listeners.values()) + sum(
            len(bucket) for bucket in self._message_listeners.values()
        )

    def clear(self) -> None:
        self._listeners.clear()
        self._message_listeners.clear()

    # ---------------------------------------------------------------- dispatch
    def emit(self, event_type: EventType, data: Any = None) -> RealtimeEvent:
        event = RealtimeEvent(type=EventType(event_type), data=data)
        self._dispatch(list(self._listeners.get(event.type, ())), event)
        return event

    def relay(self, event: RealtimeEvent) -> None:
        """Dispatch an event raised elsewhere without re-stamping it."""
        self._dispatch(list(self._listeners.get(event.type, ())), event)

    def emit_message(self, message_type: str, message: Any) -> None:
        listeners = list(self._message_listeners.get(str(message_type), ()))
        if not listeners:
            return
        self._dispatch(listeners, RealtimeEvent(type=EventType.MESSAGE, data=message))

    def _dispatch(self, listeners: List[Listener], event: RealtimeEvent) -> None:
        for listener in listeners:
            try:
                listener(event)
            except Exception:
                LOGGER.exception(
                    "%s listener failed for %s event", self._owner, event.type.value
                )


__all__ = [
    "CloseEventData",
    "ConnectionState",
    "ErrorEventData",
    "EventEmitter",
    "EventType",
    "Listener",
    "MaxReconnectsEventData",
    "OpenEventData",
    "RealtimeEvent",
    "ReconnectedEventData",
    "ReconnectingEventData",
    "StateChangeEventData",
]
