"""
Unified realtime client.

``RealtimeClient`` prefers the WebSocket channel and falls back to HTTP
polling when the socket cannot be opened, or when it gives up reconnecting
mid-session. Events from whichever channel is active are re-emitted on the
client's own tables so callers never need to know which transport won.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable, Dict, Mapping, Optional
from urllib.parse import urlsplit

from cubesync.config.realtime import RealtimeClientConfig

from .channel import RealtimeChannel, SessionIdentity, TransportKind
from .credentials import CredentialStore
from .errors import NotConnectedError, TransportError
from .events import (
    ConnectionState,
    ErrorEventData,
    EventEmitter,
    EventType,
    Listener,
    RealtimeEvent,
)
from .messages import Message
from .persistent import PersistentChannelClient
from .polling import PollingChannelClient

LOGGER = logging.getLogger(__name__)

ChannelFactory = Callable[[RealtimeClientConfig, Optional[CredentialStore]], RealtimeChannel]


def _build_persistent(
    config: RealtimeClientConfig, credentials: Optional[CredentialStore]
) -> RealtimeChannel:
    return PersistentChannelClient(config.persistent, credentials=credentials)


def _build_polling(
    config: RealtimeClientConfig, credentials: Optional[CredentialStore]
) -> RealtimeChannel:
    return PollingChannelClient(config.polling, credentials=credentials)


DEFAULT_FACTORIES: Dict[TransportKind, ChannelFactory] = {
    TransportKind.PERSISTENT: _build_persistent,
    TransportKind.POLLING: _build_polling,
}


def websocket_supported(url: str) -> bool:
    return urlsplit(url).scheme in ("ws", "wss")


class RealtimeClient:
    """Facade over one active ``RealtimeChannel``.

    ``factories`` overrides how channels are built per ``TransportKind`` and
    ``persistent_supported`` decides, from the WebSocket URL, whether the
    persistent channel is worth trying at all.
    """

    def __init__(
        self,
        config: Optional[RealtimeClientConfig] = None,
        *,
        factories: Optional[Mapping[TransportKind, ChannelFactory]] = None,
        persistent_supported: Optional[Callable[[str], bool]] = None,
        credentials: Optional[CredentialStore] = None,
    ) -> None:
        self.config = config or RealtimeClientConfig()
        self.events = EventEmitter(owner=self.__class__.__name__)
        self.session: Optional[SessionIdentity] = None
        self._factories: Dict[TransportKind, ChannelFactory] = dict(DEFAULT_FACTORIES)
        if factories:
            self._factories.update(factories)
        self._persistent_supported = persistent_supported or websocket_supported
        self._credentials = credentials
        self._channels: Dict[TransportKind, Optional[RealtimeChannel]] = {
            TransportKind.PERSISTENT: None,
            TransportKind.POLLING: None,
        }
        self._active: Optional[TransportKind] = None
        self._fallback_task: Optional[asyncio.Task] = None
        self._disposed = False

    # ------------------------------------------------------------------ accessors
    @property
    def active_transport(self) -> Optional[TransportKind]:
        return self._active

    @property
    def active_channel(self) -> Optional[RealtimeChannel]:
        if self._active is None:
            return None
        return self._channels[self._active]

    @property
    def persistent_channel(self) -> Optional[RealtimeChannel]:
        return self._channels[TransportKind.PERSISTENT]

    @property
    def polling_channel(self) -> Optional[RealtimeChannel]:
        return self._channels[TransportKind.POLLING]

    @property
    def state(self) -> ConnectionState:
        channel = self.active_channel
        return channel.state if channel is not None else ConnectionState.DISCONNECTED

    @property
    def is_connected(self) -> bool:
        channel = self.active_channel
        return channel is not None and channel.is_connected

    # ------------------------------------------------------------------ events
    def on(self, event_type: EventType, listener: Listener) -> None:
        self.events.on(event_type, listener)

    def off(self, event_type: EventType, listener: Listener) -> None:
        self.events.off(event_type, listener)

    def on_message(self, message_type: str, listener: Listener) -> None:
        self.events.on_message(message_type, listener)

    def off_message(self, message_type: str, listener: Listener) -> None:
        self.events.off_message(message_type, listener)

    # ------------------------------------------------------------------ lifecycle
    async def connect(
        self,
        session: Optional[SessionIdentity] = None,
        server_url: Optional[str] = None,
    ) -> None:
        """Connect over the preferred transport, falling back to polling.

        Without a session identity the polling channel is created but only
        starts polling once ``join_session`` has produced the session keys.
        """
        if self._disposed:
            raise TransportError("RealtimeClient has been disposed")
        if session is not None:
            self.session = session
        if self.is_connected:
            return
        # channels left idle or failed by an earlier attempt
        self._active = None
        for kind in (TransportKind.PERSISTENT, TransportKind.POLLING):
            await self._release(kind, "reconnect")

        ws_url = server_url or self.config.persistent.server_url
        if self.config.prefer_persistent_channel and self._persistent_supported(ws_url):
            channel = self._create(TransportKind.PERSISTENT)
            self._active = TransportKind.PERSISTENT
            try:
                await channel.connect(self.session, server_url)
            except Exception as exc:
                self._active = None
                await self._release(TransportKind.PERSISTENT, "connect_failed")
                if not self.config.enable_fallback:
                    raise
                LOGGER.warning("Persistent channel unavailable, falling back to polling: %s", exc)
            else:
                return
        else:
            LOGGER.info("Persistent channel not used for %s", ws_url)

        await self._connect_polling()

    async def disconnect(self, reason: str = "manual") -> None:
        task, self._fallback_task = self._fallback_task, None
        if task is not None and task is not asyncio.current_task() and not task.done():
            task.cancel()
        self._active = None
        for kind in (TransportKind.PERSISTENT, TransportKind.POLLING):
            await self._release(kind, reason)

    async def dispose(self) -> None:
        if self._disposed:
            return
        await self.disconnect("dispose")
        self.events.clear()
        self._disposed = True

    # ------------------------------------------------------------------ channel slots
    def _create(self, kind: TransportKind) -> RealtimeChannel:
        if self._channels[kind] is not None:
            raise TransportError(f"{kind.value} channel already exists")
        channel = self._factories[kind](self.config, self._credentials)
        self._channels[kind] = channel
        self._bind(kind, channel)
        return channel

    def _bind(self, kind: TransportKind, channel: RealtimeChannel) -> None:
        def relay(event: RealtimeEvent) -> None:
            if self._channels[kind] is not channel:
                return
            if event.type is EventType.MESSAGE:
                self.events.emit_message(event.data.type, event.data)
            self.events.relay(event)
            if event.type is EventType.MAX_RECONNECTS and kind is TransportKind.PERSISTENT:
                self._on_reconnects_exhausted(channel)

        for event_type in EventType:
            channel.events.on(event_type, relay)

    async def _release(self, kind: TransportKind, reason: str = "dispose") -> None:
        channel = self._channels[kind]
        if channel is None:
            return
        # still bound while it tears down so its close events reach listeners
        try:
            await channel.disconnect(reason)
        finally:
            if self._channels[kind] is channel:
                self._channels[kind] = None
        await channel.dispose()

    async def _connect_polling(self) -> None:
        channel = self._create(TransportKind.POLLING)
        self._active = TransportKind.POLLING
        if self.session is None:
            LOGGER.info("Polling channel waits for join_session before polling")
            return
        try:
            await channel.connect(self.session)
        except Exception:
            self._active = None
            await self._release(TransportKind.POLLING, "connect_failed")
            raise

    def _on_reconnects_exhausted(self, channel: RealtimeChannel) -> None:
        if not self.config.enable_fallback:
            return
        self.session = self.session or getattr(channel, "session", None)
        if self.session is None:
            LOGGER.warning("Reconnects exhausted and no session known; not switching to polling")
            return
        self._fallback_task = asyncio.create_task(self._switch_to_polling())

    async def _switch_to_polling(self) -> None:
        LOGGER.warning("Persistent channel gave up; switching to polling")
        self._active = None
        await self._release(TransportKind.PERSISTENT)
        try:
            await self._connect_polling()
        except Exception as exc:
            LOGGER.warning("Polling fallback failed: %s", exc)
            self.events.emit(
                EventType.ERROR,
                ErrorEventData(message=f"Polling fallback failed: {exc}", error=exc),
            )
        finally:
            if self._fallback_task is asyncio.current_task():
                self._fallback_task = None

    def _require_active(self) -> RealtimeChannel:
        channel = self.active_channel
        if channel is None:
            raise NotConnectedError("No active channel")
        return channel

    # ------------------------------------------------------------------ delegation
    def send(self, message: Message) -> bool:
        channel = self.active_channel
        return channel.send(message) if channel is not None else False

    async def send_with_response(
        self, message: Message, timeout: Optional[float] = None
    ) -> Message:
        return await self._require_active().send_with_response(message, timeout)

    async def join_session(
        self,
        session_code: str,
        participant_name: str,
        participant_id: Optional[str] = None,
    ) -> Message:
        channel = self._require_active()
        reply = await channel.join_session(session_code, participant_name, participant_id)
        joined = getattr(channel, "session", None)
        if joined is not None:
            self.session = joined
        if (
            channel.transport is TransportKind.POLLING
            and not channel.is_connected
            and self.session is not None
        ):
            await channel.connect(self.session)
        return reply

    async def leave_session(
        self, session_id: str, participant_id: str, reason: Optional[str] = None
    ) -> None:
        await self._require_active().leave_session(session_id, participant_id, reason)

    async def sync_action(self, action: Mapping[str, Any], session_id: str) -> Message:
        return await self._require_active().sync_action(action, session_id)

    def request_full_sync(self, session_id: str) -> bool:
        channel = self.active_channel
        return channel.request_full_sync(session_id) if channel is not None else False

    async def update_presence(
        self,
        session_id: str,
        participant_id: str,
        status: Optional[str] = None,
        cursor: Optional[Mapping[str, Any]] = None,
    ) -> None:
        await self._require_active().update_presence(session_id, participant_id, status, cursor)


__all__ = ["ChannelFactory", "DEFAULT_FACTORIES", "RealtimeClient", "websocket_supported"]
