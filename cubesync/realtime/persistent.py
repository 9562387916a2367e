"""
WebSocket channel for collaborative sessions.

``PersistentChannelClient`` keeps one socket open to the session server,
answers heartbeats, correlates request/response pairs by message id and
recovers from abnormal closes with capped exponential backoff. Every timer
it owns is armed and released by a state transition, so a close, a manual
disconnect or a failed reconnect can never leave a stale callback behind.
"""

from __future__ import annotations

import asyncio
import logging
import random
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Mapping, Optional
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

import websockets
from websockets.exceptions import ConnectionClosed

from cubesync.config.realtime import PersistentChannelConfig

from .channel import ChannelBase, SessionIdentity, TransportKind, session_from_join_reply
from .credentials import CredentialStore
from .errors import (
    ConnectionClosedError,
    ConnectionTimeoutError,
    NotConnectedError,
    RequestTimeoutError,
    TransportError,
)
from .events import (
    CloseEventData,
    ConnectionState,
    ErrorEventData,
    EventType,
    MaxReconnectsEventData,
    OpenEventData,
    ReconnectedEventData,
    ReconnectingEventData,
)
from .messages import (
    HEARTBEAT,
    Message,
    create_full_sync_request_message,
    create_heartbeat_message,
    create_join_session_message,
    create_leave_session_message,
    create_presence_update_message,
    create_sync_action_message,
    is_heartbeat_reply,
    parse_message,
    serialize_message,
)
from .timers import TimerSlot

LOGGER = logging.getLogger(__name__)

NORMAL_CLOSURE = 1000
ABNORMAL_CLOSURE = 1006
DEFAULT_REQUEST_TIMEOUT = 10.0
MAX_JITTER = 1.0

Connector = Callable[[str], Awaitable[Any]]


async def _default_connector(url: str) -> Any:
    # Heartbeats are application-level frames; the library pings stay off and
    # the open deadline is enforced by the connection timeout slot.
    return await websockets.connect(url, ping_interval=None, open_timeout=None)


def compute_reconnect_delay(
    attempt: int,
    base_delay: float,
    max_delay: float,
    jitter: Optional[float] = None,
) -> float:
    """Seconds to wait before reconnect ``attempt`` (1-based).

    ``min(max_delay, base_delay * 2 ** (attempt - 1) + jitter)`` where the
    jitter is uniform in ``[0, 1)`` seconds unless given explicitly.
    """
    if attempt < 1:
        raise ValueError("attempt must be >= 1")
    if jitter is None:
        jitter = random.uniform(0.0, MAX_JITTER)
    return min(max_delay, base_delay * (2 ** (attempt - 1)) + jitter)


def _consume_outcome(future: asyncio.Future) -> None:
    if not future.cancelled():
        future.exception()


@dataclass
class PendingRequest:
    """A request waiting for the reply that carries its id."""

    id: str
    future: asyncio.Future
    timer: asyncio.TimerHandle

    def resolve(self, message: Message) -> None:
        self.timer.cancel()
        if not self.future.done():
            self.future.set_result(message)

    def reject(self, error: BaseException) -> None:
        self.timer.cancel()
        if not self.future.done():
            self.future.set_exception(error)


class PersistentChannelClient(ChannelBase):
    """Bidirectional channel over a single WebSocket.

    ``connector`` opens the socket for a URL and defaults to
    ``websockets.connect``; tests hand in a fake. ``clock`` feeds latency
    measurement and ``jitter`` (a zero-argument callable returning seconds)
    replaces the random reconnect jitter.
    """

    transport = TransportKind.PERSISTENT

    def __init__(
        self,
        config: Optional[PersistentChannelConfig] = None,
        *,
        connector: Optional[Connector] = None,
        credentials: Optional[CredentialStore] = None,
        clock: Callable[[], float] = time.monotonic,
        jitter: Optional[Callable[[], float]] = None,
    ) -> None:
        self.config = config or PersistentChannelConfig()
        super().__init__(debug=self.config.debug)
        self._connector: Connector = connector or _default_connector
        self._credentials = credentials
        self._clock = clock
        self._jitter = jitter
        self._url = self.config.server_url

        self._socket: Any = None
        self._outbox: Optional[asyncio.Queue[str]] = None
        self._connection_task: Optional[asyncio.Task] = None
        self._writer_task: Optional[asyncio.Task] = None
        self._connect_future: Optional[asyncio.Future] = None
        self._pending: Dict[str, PendingRequest] = {}
        self._reconnect_attempts = 0

        self._last_heartbeat_id: Optional[str] = None
        self._last_heartbeat_at: Optional[float] = None
        self._latency: Optional[float] = None

        self._connect_timeout = TimerSlot("connection-timeout")
        self._heartbeat = TimerSlot("heartbeat")
        self._reconnect_timer = TimerSlot("reconnect")

    # ------------------------------------------------------------------ properties
    @property
    def url(self) -> str:
        return self._url

    @property
    def latency(self) -> Optional[float]:
        """Round trip of the last answered heartbeat, in milliseconds."""
        return self._latency

    @property
    def reconnect_attempts(self) -> int:
        return self._reconnect_attempts

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    # ------------------------------------------------------------------ lifecycle
    async def connect(
        self,
        session: Optional[SessionIdentity] = None,
        server_url: Optional[str] = None,
    ) -> None:
        """Open the socket; resolves once it is open.

        Calling again while connected is a no-op and calling while an open is
        in flight joins that attempt. Raises ``TransportError`` (or its
        ``ConnectionTimeoutError`` subclass) when the open fails.
        """
        self._ensure_usable()
        if session is not None:
            self.session = session
        if server_url:
            self._url = server_url
        if self._state is ConnectionState.CONNECTED:
            return
        if self._state is ConnectionState.CONNECTING and self._connect_future is not None:
            await asyncio.shield(self._connect_future)
            return
        if self._state is not ConnectionState.RECONNECTING:
            self._reconnect_attempts = 0
        future = self._begin_open()
        await asyncio.shield(future)

    async def disconnect(self, reason: str = "manual") -> None:
        self._trace("Disconnecting: %s", reason)
        socket = self._socket
        connection_task = self._connection_task
        writer_task = self._writer_task
        self._detach()
        self._reconnect_attempts = 0

        closed = ConnectionClosedError(f"Disconnected: {reason}")
        self._fail_connect(closed)
        self._reject_pending(closed)
        self._set_state(ConnectionState.DISCONNECTED, reason)

        current = asyncio.current_task()
        for task in (writer_task, connection_task):
            if task is not None and task is not current and not task.done():
                task.cancel()
        if socket is not None:
            await self._close_socket(socket, NORMAL_CLOSURE, reason)
            self.events.emit(
                EventType.CLOSE,
                CloseEventData(code=NORMAL_CLOSURE, reason=reason, was_clean=True),
            )

    # ------------------------------------------------------------------ sending
    def send(self, message: Message) -> bool:
        """Queue ``message`` for the socket; ``False`` when not connected."""
        if self._state is not ConnectionState.CONNECTED or self._outbox is None:
            self._trace("Cannot send %s: not connected", message.type)
            return False
        try:
            frame = serialize_message(message)
        except (TypeError, ValueError) as exc:
            LOGGER.warning("Cannot serialise %s message %s: %s", message.type, message.id, exc)
            return False
        self._outbox.put_nowait(frame)
        self._trace("Sent %s %s", message.type, message.id)
        return True

    async def send_with_response(
        self, message: Message, timeout: Optional[float] = None
    ) -> Message:
        """Send ``message`` and wait for the inbound message with the same id."""
        if self._state is not ConnectionState.CONNECTED:
            raise NotConnectedError("Not connected")
        timeout = DEFAULT_REQUEST_TIMEOUT if timeout is None else timeout
        loop = asyncio.get_running_loop()
        future = loop.create_future()
        handle = loop.call_later(timeout, self._expire_request, message.id, timeout)
        entry = PendingRequest(id=message.id, future=future, timer=handle)
        self._pending[message.id] = entry
        if not self.send(message):
            self._pending.pop(message.id, None)
            handle.cancel()
            raise TransportError(f"Failed to send {message.type} message")
        try:
            return await future
        finally:
            if self._pending.get(message.id) is entry:
                self._pending.pop(message.id, None)
                handle.cancel()

    def send_heartbeat(self) -> bool:
        session = self.session
        message = create_heartbeat_message(
            session.session_id if session else None,
            session.participant_id if session else None,
        )
        sent = self.send(message)
        if sent:
            self._last_heartbeat_id = message.id
            self._last_heartbeat_at = self._clock()
        return sent

    # ------------------------------------------------------------------ session operations
    async def join_session(
        self,
        session_code: str,
        participant_name: str,
        participant_id: Optional[str] = None,
    ) -> Message:
        message = create_join_session_message(session_code, participant_name, participant_id)
        reply = await self.send_with_response(message)
        self._absorb_join_reply(reply)
        return reply

    async def leave_session(
        self, session_id: str, participant_id: str, reason: Optional[str] = None
    ) -> None:
        self.send(create_leave_session_message(session_id, participant_id, reason))

    async def sync_action(self, action: Mapping[str, Any], session_id: str) -> Message:
        return await self.send_with_response(create_sync_action_message(action, session_id))

    def request_full_sync(self, session_id: str) -> bool:
        return self.send(create_full_sync_request_message(session_id))

    async def update_presence(
        self,
        session_id: str,
        participant_id: str,
        status: Optional[str] = None,
        cursor: Optional[Mapping[str, Any]] = None,
    ) -> None:
        self.send(create_presence_update_message(session_id, participant_id, status, cursor))

    # ------------------------------------------------------------------ state hooks
    def _on_transition(
        self, previous: ConnectionState, current: ConnectionState
    ) -> None:
        if previous is ConnectionState.CONNECTING:
            self._connect_timeout.cancel()
        if previous is ConnectionState.CONNECTED:
            self._heartbeat.cancel()
        if previous is ConnectionState.RECONNECTING:
            self._reconnect_timer.cancel()
        if current is ConnectionState.CONNECTED:
            self._heartbeat.start_repeating(
                self.config.heartbeat_interval, self.send_heartbeat
            )

    # ------------------------------------------------------------------ connection internals
    def _begin_open(self) -> asyncio.Future:
        loop = asyncio.get_running_loop()
        future = loop.create_future()
        future.add_done_callback(_consume_outcome)
        self._connect_future = future
        self._set_state(ConnectionState.CONNECTING)
        self._connect_timeout.start(self.config.connection_timeout, self._on_connect_timeout)
        self._trace("Connecting to %s", self._url)
        self._connection_task = asyncio.create_task(
            self._run_connection(self._authorised_url(), future)
        )
        return future

    def _authorised_url(self) -> str:
        token = self._credentials.get_token() if self._credentials else None
        if not token:
            return self._url
        parts = urlsplit(self._url)
        query = [(k, v) for k, v in parse_qsl(parts.query) if k != "token"]
        query.append(("token", token))
        return urlunsplit(parts._replace(query=urlencode(query)))

    async def _run_connection(self, url: str, future: asyncio.Future) -> None:
        try:
            socket = await self._connector(url)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            if self._connect_future is future and self._state is ConnectionState.CONNECTING:
                self._handle_open_failure(exc)
            return

        if self._connect_future is not future or self._state is not ConnectionState.CONNECTING:
            await self._close_socket(socket, NORMAL_CLOSURE, "superseded")
            return

        self._attach(socket)
        self._handle_open()
        await self._read_loop(socket)

    def _attach(self, socket: Any) -> None:
        self._socket = socket
        self._outbox = asyncio.Queue()
        self._writer_task = asyncio.create_task(self._write_loop(socket, self._outbox))

    def _detach(self) -> None:
        writer = self._writer_task
        self._socket = None
        self._outbox = None
        self._writer_task = None
        self._connection_task = None
        if writer is not None and writer is not asyncio.current_task() and not writer.done():
            writer.cancel()

    def _handle_open(self) -> None:
        attempts = self._reconnect_attempts
        self._reconnect_attempts = 0
        self._set_state(ConnectionState.CONNECTED)
        LOGGER.info("WebSocket connected to %s", self._url)
        self.events.emit(EventType.OPEN, OpenEventData(url=self._url))
        self._settle_connect()
        if attempts:
            self.events.emit(EventType.RECONNECTED, ReconnectedEventData(attempts=attempts))

    def _handle_open_failure(self, exc: Exception) -> None:
        self._connection_task = None
        error = TransportError(f"WebSocket connection failed: {exc}")
        error.__cause__ = exc
        LOGGER.warning("WebSocket connection to %s failed: %s", self._url, exc)
        self.events.emit(EventType.ERROR, ErrorEventData(message=str(error), error=exc))
        self._fail_connect(error)
        self._after_failed_open(str(exc))

    def _on_connect_timeout(self) -> None:
        if self._state is not ConnectionState.CONNECTING:
            return
        task = self._connection_task
        self._connection_task = None
        if task is not None and not task.done():
            task.cancel()
        error = ConnectionTimeoutError(
            f"Connection timeout after {self.config.connection_timeout}s"
        )
        LOGGER.warning("%s (%s)", error, self._url)
        self.events.emit(EventType.ERROR, ErrorEventData(message=str(error), error=error))
        self._fail_connect(error)
        self._after_failed_open("timeout")

    def _after_failed_open(self, reason: str) -> None:
        # Inside a reconnect cycle a failed open counts as another abnormal close.
        if self._reconnect_attempts > 0 and self.config.auto_reconnect:
            self._schedule_reconnect()
        else:
            self._set_state(ConnectionState.ERROR, reason)

    def _settle_connect(self) -> None:
        future = self._connect_future
        self._connect_future = None
        if future is not None and not future.done():
            future.set_result(None)

    def _fail_connect(self, error: BaseException) -> None:
        future = self._connect_future
        self._connect_future = None
        if future is not None and not future.done():
            future.set_exception(error)

    async def _read_loop(self, socket: Any) -> None:
        try:
            async for raw in socket:
                self._handle_frame(raw)
        except ConnectionClosed:
            pass
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            LOGGER.warning("WebSocket read failed: %s", exc)
            self.events.emit(
                EventType.ERROR,
                ErrorEventData(message="WebSocket connection error", error=exc),
            )
        if self._socket is not socket:
            return
        code = getattr(socket, "close_code", None) or ABNORMAL_CLOSURE
        reason = getattr(socket, "close_reason", None) or ""
        self._handle_close(code, reason)

    async def _write_loop(self, socket: Any, outbox: asyncio.Queue[str]) -> None:
        while True:
            frame = await outbox.get()
            try:
                await socket.send(frame)
            except ConnectionClosed:
                return
            except Exception as exc:
                LOGGER.warning("WebSocket send failed: %s", exc)

    async def _close_socket(self, socket: Any, code: int, reason: str) -> None:
        try:
            await socket.close(code, reason)
        except Exception as exc:
            LOGGER.debug("Ignoring error while closing socket: %s", exc)

    def _handle_close(self, code: int, reason: str) -> None:
        self._detach()
        was_clean = code == NORMAL_CLOSURE
        LOGGER.info("WebSocket closed (%s) %s", code, reason)
        self._reject_pending(ConnectionClosedError(f"Connection closed ({code})"))
        self.events.emit(
            EventType.CLOSE,
            CloseEventData(code=code, reason=reason or "Unknown", was_clean=was_clean),
        )
        if self.config.auto_reconnect and not was_clean:
            self._schedule_reconnect()
        else:
            self._set_state(ConnectionState.DISCONNECTED, reason or None)

    def _schedule_reconnect(self) -> None:
        attempts = self._reconnect_attempts
        if attempts >= self.config.max_reconnect_attempts:
            LOGGER.warning("Max reconnection attempts reached (%d)", attempts)
            self._set_state(ConnectionState.ERROR, "max_reconnects")
            self.events.emit(
                EventType.MAX_RECONNECTS, MaxReconnectsEventData(attempts=attempts)
            )
            return
        self._reconnect_attempts = attempt = attempts + 1
        delay = compute_reconnect_delay(
            attempt,
            self.config.reconnect_base_delay,
            self.config.reconnect_max_delay,
            jitter=self._jitter() if self._jitter is not None else None,
        )
        self._set_state(ConnectionState.RECONNECTING)
        LOGGER.info("Reconnecting in %.2fs (attempt %d)", delay, attempt)
        self.events.emit(
            EventType.RECONNECTING, ReconnectingEventData(attempt=attempt, delay=delay)
        )
        self._reconnect_timer.start(delay, self._on_reconnect_due)

    def _on_reconnect_due(self) -> None:
        if self._state is not ConnectionState.RECONNECTING or self._disposed:
            return
        self._begin_open()

    # ------------------------------------------------------------------ inbound
    def _handle_frame(self, raw: Any) -> None:
        message = parse_message(raw)
        if message is None:
            LOGGER.debug("Dropping malformed frame: %.200r", raw)
            return
        if self._is_heartbeat_answer(message):
            self._record_latency()
            return
        entry = self._pending.pop(message.id, None)
        if entry is not None:
            entry.resolve(message)
            return
        self._dispatch_message(message)

    def _is_heartbeat_answer(self, message: Message) -> bool:
        if is_heartbeat_reply(message):
            return True
        return message.type == HEARTBEAT and message.id == self._last_heartbeat_id

    def _record_latency(self) -> None:
        sent_at = self._last_heartbeat_at
        if sent_at is None:
            return
        self._latency = (self._clock() - sent_at) * 1000.0
        self._last_heartbeat_at = None
        self._trace("Heartbeat latency %.1fms", self._latency)

    def _expire_request(self, message_id: str, timeout: float) -> None:
        entry = self._pending.pop(message_id, None)
        if entry is not None:
            entry.reject(RequestTimeoutError(f"Request {message_id} timed out after {timeout}s"))

    def _reject_pending(self, error: BaseException) -> None:
        pending = list(self._pending.values())
        self._pending.clear()
        for entry in pending:
            entry.reject(error)

    def _absorb_join_reply(self, reply: Message) -> None:
        session = session_from_join_reply(reply.payload)
        if session is not None:
            self.session = session
        token = reply.payload.get("authToken")
        if self._credentials is not None and isinstance(token, str) and token:
            self._credentials.set_token(token)


__all__ = [
    "DEFAULT_REQUEST_TIMEOUT",
    "PendingRequest",
    "PersistentChannelClient",
    "compute_reconnect_delay",
]
