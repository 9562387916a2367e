"""
Transport-neutral contract shared by the WebSocket and polling channels.

``RealtimeChannel`` is what the facade and callers program against.
``ChannelBase`` carries the pieces both implementations share: the state
machine with its observable transitions, the listener tables and the
dispose-once lifecycle.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Mapping, Optional, Protocol, runtime_checkable

from .errors import TransportError
from .events import (
    ConnectionState,
    EventEmitter,
    EventType,
    Listener,
    StateChangeEventData,
)
from .messages import Message


class TransportKind(str, Enum):
    PERSISTENT = "persistent"
    POLLING = "polling"


@dataclass(frozen=True)
class SessionIdentity:
    """Opaque keys threaded through outbound traffic; never interpreted here."""

    session_id: str
    participant_id: str

    def as_params(self) -> Dict[str, str]:
        return {"sessionId": self.session_id, "participantId": self.participant_id}


@runtime_checkable
class RealtimeChannel(Protocol):
    transport: TransportKind
    events: EventEmitter

    @property
    def state(self) -> ConnectionState: ...

    @property
    def is_connected(self) -> bool: ...

    async def connect(
        self,
        session: Optional[SessionIdentity] = None,
        server_url: Optional[str] = None,
    ) -> None: ...

    async def disconnect(self, reason: str = "manual") -> None: ...

    def send(self, message: Message) -> bool: ...

    async def send_with_response(
        self, message: Message, timeout: Optional[float] = None
    ) -> Message: ...

    async def join_session(
        self,
        session_code: str,
        participant_name: str,
        participant_id: Optional[str] = None,
    ) -> Message: ...

    async def leave_session(
        self, session_id: str, participant_id: str, reason: Optional[str] = None
    ) -> None: ...

    async def sync_action(
        self, action: Mapping[str, Any], session_id: str
    ) -> Message: ...

    def request_full_sync(self, session_id: str) -> bool: ...

    async def update_presence(
        self,
        session_id: str,
        participant_id: str,
        status: Optional[str] = None,
        cursor: Optional[Mapping[str, Any]] = None,
    ) -> None: ...

    async def dispose(self) -> None: ...


class ChannelBase:
    transport: TransportKind

    def __init__(self, *, debug: bool = False) -> None:
        self.events = EventEmitter(owner=self.__class__.__name__)
        self.session: Optional[SessionIdentity] = None
        self._state = ConnectionState.DISCONNECTED
        self._debug = debug
        self._disposed = False
        self._logger = logging.getLogger(type(self).__module__)

    # ------------------------------------------------------------------ state
    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def is_connected(self) -> bool:
        return self._state is ConnectionState.CONNECTED

    @property
    def disposed(self) -> bool:
        return self._disposed

    def _set_state(self, new_state: ConnectionState, reason: Optional[str] = None) -> None:
        if new_state is self._state:
            return
        previous = self._state
        self._state = new_state
        self._on_transition(previous, new_state)
        self._trace("State %s -> %s", previous.value, new_state.value)
        self.events.emit(
            EventType.STATE_CHANGED,
            StateChangeEventData(
                previous_state=previous, current_state=new_state, reason=reason
            ),
        )

    def _on_transition(
        self, previous: ConnectionState, current: ConnectionState
    ) -> None:
        """Arm or release the timers owned by ``previous`` and ``current``."""

    def _ensure_usable(self) -> None:
        if self._disposed:
            raise TransportError(f"{self.__class__.__name__} has been disposed")

    # ------------------------------------------------------------------ events
    def on(self, event_type: EventType, listener: Listener) -> None:
        self.events.on(event_type, listener)

    def off(self, event_type: EventType, listener: Listener) -> None:
        self.events.off(event_type, listener)

    def on_message(self, message_type: str, listener: Listener) -> None:
        self.events.on_message(message_type, listener)

    def off_message(self, message_type: str, listener: Listener) -> None:
        self.events.off_message(message_type, listener)

    def _dispatch_message(self, message: Message) -> None:
        self._trace("Received %s %s", message.type, message.id)
        self.events.emit_message(message.type, message)
        self.events.emit(EventType.MESSAGE, message)

    # ------------------------------------------------------------------ lifecycle
    async def disconnect(self, reason: str = "manual") -> None:
        raise NotImplementedError

    async def dispose(self) -> None:
        if self._disposed:
            return
        await self.disconnect("dispose")
        self.events.clear()
        self._disposed = True

    def _trace(self, msg: str, *args: Any) -> None:
        level = logging.INFO if self._debug else logging.DEBUG
        self._logger.log(level, "[%s] " + msg, self.transport.value, *args)


def session_from_join_reply(payload: Mapping[str, Any]) -> Optional[SessionIdentity]:
    """Pull the assigned session and participant ids out of a join reply."""
    session = payload.get("session")
    participant = payload.get("participant")
    if not isinstance(session, Mapping) or not isinstance(participant, Mapping):
        return None
    session_id = session.get("id")
    participant_id = participant.get("id")
    if not session_id or not participant_id:
        return None
    return SessionIdentity(str(session_id), str(participant_id))


__all__ = [
    "ChannelBase",
    "RealtimeChannel",
    "SessionIdentity",
    "TransportKind",
    "session_from_join_reply",
]
