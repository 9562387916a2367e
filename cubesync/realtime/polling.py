"""
HTTP polling channel, used where a WebSocket cannot be opened.

Inbound traffic is fetched with ``GET {base}/poll`` on a single recurring
timer that is only rearmed after the previous poll finished, so polls never
overlap. Outbound traffic becomes discrete POST calls. Every call goes
through ``_request``, which applies the request timeout and retries
transport errors and 5xx responses with a linear backoff.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, Mapping, Optional, Set

import httpx

from cubesync.config.realtime import PollingChannelConfig

from .channel import ChannelBase, SessionIdentity, TransportKind, session_from_join_reply
from .credentials import CredentialStore
from .errors import (
    AuthError,
    ConnectionClosedError,
    NotConnectedError,
    ProtocolError,
    RequestTimeoutError,
    TransportError,
)
from .events import CloseEventData, ConnectionState, ErrorEventData, EventType, OpenEventData
from .messages import (
    JOIN_SESSION,
    LEAVE_SESSION,
    PRESENCE_UPDATE,
    SYNC_ACTION,
    Message,
    create_join_session_message,
    create_leave_session_message,
    create_presence_update_message,
    create_sync_action_message,
    decode_message,
    utc_now_iso,
)
from .timers import TimerSlot

LOGGER = logging.getLogger(__name__)

# message type -> endpoint below the base URL
ROUTES: Dict[str, str] = {
    SYNC_ACTION: "action",
    PRESENCE_UPDATE: "presence",
    JOIN_SESSION: "sessions/join",
    LEAVE_SESSION: "sessions/leave",
}
# types ``send`` may fire without waiting for the response
FIRE_AND_FORGET = frozenset({SYNC_ACTION, PRESENCE_UPDATE})
# types that carry the caller's session keys in the request body
_SESSION_SCOPED = frozenset({SYNC_ACTION, PRESENCE_UPDATE, LEAVE_SESSION})


class PollingChannelClient(ChannelBase):
    """Request/response emulation of the realtime channel over plain HTTP.

    ``transport`` is handed to ``httpx.AsyncClient`` and lets tests plug in
    ``httpx.MockTransport``.
    """

    transport = TransportKind.POLLING

    def __init__(
        self,
        config: Optional[PollingChannelConfig] = None,
        *,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        credentials: Optional[CredentialStore] = None,
    ) -> None:
        self.config = config or PollingChannelConfig()
        super().__init__(debug=self.config.debug)
        self.base_url = self.config.server_url.rstrip("/")
        self._http_transport = transport
        self._credentials = credentials
        self._client: Optional[httpx.AsyncClient] = None
        self._interval = self.config.poll_interval
        self._since: Optional[str] = None
        self._poll_timer = TimerSlot("poll")
        self._poll_task: Optional[asyncio.Task] = None
        self._outbound: Set[asyncio.Task] = set()

    # ------------------------------------------------------------------ properties
    @property
    def poll_interval(self) -> float:
        """Seconds between polls; the server may adjust it."""
        return self._interval

    @property
    def watermark(self) -> Optional[str]:
        return self._since

    # ------------------------------------------------------------------ lifecycle
    async def connect(
        self,
        session: Optional[SessionIdentity] = None,
        server_url: Optional[str] = None,
    ) -> None:
        """Validate reachability with one poll, then keep polling."""
        self._ensure_usable()
        session = session or self.session
        if session is None:
            raise ValueError("polling requires a session identity")
        if server_url:
            self.base_url = server_url.rstrip("/")
        if self._state is ConnectionState.CONNECTED and session == self.session:
            return
        self.session = session
        self._set_state(ConnectionState.CONNECTING)
        try:
            await self._poll_once()
        except Exception as exc:
            if self._state is not ConnectionState.CONNECTING:
                # disconnect() closed the client under the first poll
                raise ConnectionClosedError("Disconnected while connecting") from exc
            LOGGER.warning("Polling connect to %s failed: %s", self.base_url, exc)
            self.events.emit(EventType.ERROR, ErrorEventData(message=str(exc), error=exc))
            self._set_state(ConnectionState.ERROR, str(exc))
            raise
        if self._state is not ConnectionState.CONNECTING:
            raise ConnectionClosedError("Disconnected while connecting")
        self._set_state(ConnectionState.CONNECTED)
        LOGGER.info("Polling %s every %.2fs", self.base_url, self._interval)
        self.events.emit(EventType.OPEN, OpenEventData(url=self.base_url))

    async def disconnect(self, reason: str = "manual") -> None:
        self._trace("Disconnecting: %s", reason)
        was_active = self._state is not ConnectionState.DISCONNECTED
        self._set_state(ConnectionState.DISCONNECTED, reason)
        current = asyncio.current_task()
        for task in list(self._outbound):
            if task is not current:
                task.cancel()
        self._outbound.clear()
        self.session = None
        self._since = None
        self._interval = self.config.poll_interval
        if self._client is not None:
            client, self._client = self._client, None
            await client.aclose()
        if was_active:
            self.events.emit(
                EventType.CLOSE, CloseEventData(code=1000, reason=reason, was_clean=True)
            )

    def _on_transition(
        self, previous: ConnectionState, current: ConnectionState
    ) -> None:
        if previous is ConnectionState.CONNECTED:
            self._poll_timer.cancel()
            task, self._poll_task = self._poll_task, None
            if task is not None and task is not asyncio.current_task() and not task.done():
                task.cancel()
        if current is ConnectionState.CONNECTED:
            self._poll_timer.start(self._interval, self._tick)

    # ------------------------------------------------------------------ polling
    def _tick(self) -> None:
        if self._state is not ConnectionState.CONNECTED:
            return
        self._poll_task = asyncio.create_task(self._poll_cycle())

    async def _poll_cycle(self) -> None:
        try:
            await self._poll_once()
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            LOGGER.warning("Poll failed: %s", exc)
            self.events.emit(
                EventType.ERROR, ErrorEventData(message=f"Poll failed: {exc}", error=exc)
            )
        if self._state is ConnectionState.CONNECTED and self._poll_task is asyncio.current_task():
            self._poll_task = None
            self._poll_timer.start(self._interval, self._tick)

    async def _poll_once(self) -> None:
        session = self.session
        if session is None:
            return
        params = session.as_params()
        if self._since:
            params["since"] = self._since
        data = await self._request("GET", "poll", params=params)

        entries = data.get("messages") or []
        if not isinstance(entries, list):
            raise TransportError("poll response 'messages' must be a list")
        for entry in entries:
            try:
                message = decode_message(entry)
            except ProtocolError as exc:
                LOGGER.warning("Dropping poll entry: %s", exc)
                continue
            self._dispatch_message(message)

        delay = data.get("nextPollDelay")
        if isinstance(delay, (int, float)) and not isinstance(delay, bool) and delay > 0:
            interval = delay / 1000.0
            if interval != self._interval:
                self._trace("Server adjusted poll interval to %.2fs", interval)
                self._interval = interval
        server_time = data.get("serverTime")
        self._since = server_time if isinstance(server_time, str) and server_time else utc_now_iso()

    # ------------------------------------------------------------------ http
    async def _ensure_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=httpx.Timeout(self.config.request_timeout),
                transport=self._http_transport,
            )
        return self._client

    def _headers(self) -> Dict[str, str]:
        headers = {"Accept": "application/json"}
        token = self._credentials.get_token() if self._credentials else None
        if token:
            headers["Authorization"] = f"Bearer {token}"
        return headers

    async def _request(
        self,
        method: str,
        path: str,
        *,
        params: Optional[Mapping[str, str]] = None,
        body: Optional[Mapping[str, Any]] = None,
    ) -> Dict[str, Any]:
        client = await self._ensure_client()
        url = f"{self.base_url}/{path}"
        attempt = 0
        last_exc: Optional[Exception] = None
        while True:
            try:
                response = await client.request(
                    method, url, params=params, json=body, headers=self._headers()
                )
                response.raise_for_status()
            except httpx.HTTPStatusError as exc:
                status = exc.response.status_code
                if status in (401, 403):
                    raise AuthError(f"{method} /{path} rejected ({status})") from exc
                if status < 500:
                    raise TransportError(f"{method} /{path} failed ({status})") from exc
                last_exc = exc
                LOGGER.warning("%s /%s failed (%s)", method, path, status)
            except httpx.TransportError as exc:
                last_exc = exc
                LOGGER.warning("%s /%s error: %s", method, path, exc)
            else:
                return self._decode(response, path)

            attempt += 1
            if attempt > self.config.max_retries:
                break
            await asyncio.sleep(self.config.retry_backoff * attempt)

        raise TransportError(
            f"{method} /{path} failed after {attempt} attempts"
        ) from last_exc

    @staticmethod
    def _decode(response: httpx.Response, path: str) -> Dict[str, Any]:
        if not response.content:
            return {}
        try:
            data = response.json()
        except (ValueError, RecursionError) as exc:
            raise TransportError(f"/{path} returned invalid JSON") from exc
        if not isinstance(data, dict):
            raise TransportError(f"/{path} returned {type(data).__name__}, expected an object")
        return data

    async def _post(self, message: Message) -> Dict[str, Any]:
        path = ROUTES[message.type]
        body: Dict[str, Any] = dict(message.payload)
        if message.type in _SESSION_SCOPED and self.session is not None:
            for key, value in self.session.as_params().items():
                body.setdefault(key, value)
        self._trace("POST /%s %s", path, message.id)
        return await self._request("POST", path, body=body)

    # ------------------------------------------------------------------ sending
    def send(self, message: Message) -> bool:
        """Fire ``sync_action`` / ``presence_update`` in the background."""
        if message.type not in FIRE_AND_FORGET:
            self._trace("Cannot send %s over polling", message.type)
            return False
        if self._state is not ConnectionState.CONNECTED:
            self._trace("Cannot send %s: not connected", message.type)
            return False
        task = asyncio.create_task(self._post_in_background(message))
        self._outbound.add(task)
        task.add_done_callback(self._outbound.discard)
        return True

    async def _post_in_background(self, message: Message) -> None:
        try:
            await self._post(message)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            LOGGER.warning("Failed to deliver %s %s: %s", message.type, message.id, exc)
            self.events.emit(EventType.ERROR, ErrorEventData(message=str(exc), error=exc))

    async def send_with_response(
        self, message: Message, timeout: Optional[float] = None
    ) -> Message:
        """POST ``message`` and wrap the JSON body in a reply with the same id."""
        if message.type not in ROUTES:
            raise TransportError(f"{message.type} messages cannot be sent over polling")
        if message.type != JOIN_SESSION and self._state is not ConnectionState.CONNECTED:
            raise NotConnectedError("Not connected")
        if timeout is None:
            data = await self._post(message)
        else:
            try:
                data = await asyncio.wait_for(self._post(message), timeout)
            except asyncio.TimeoutError as exc:
                raise RequestTimeoutError(
                    f"Request {message.id} timed out after {timeout}s"
                ) from exc
        return Message(id=message.id, type=message.type, timestamp=utc_now_iso(), payload=data)

    # ------------------------------------------------------------------ session operations
    async def join_session(
        self,
        session_code: str,
        participant_name: str,
        participant_id: Optional[str] = None,
    ) -> Message:
        """Join over HTTP; allowed before ``connect`` since it yields the session keys."""
        self._ensure_usable()
        reply = await self.send_with_response(
            create_join_session_message(session_code, participant_name, participant_id)
        )
        session = session_from_join_reply(reply.payload)
        if session is not None:
            self.session = session
        token = reply.payload.get("authToken")
        if self._credentials is not None and isinstance(token, str) and token:
            self._credentials.set_token(token)
        return reply

    async def leave_session(
        self, session_id: str, participant_id: str, reason: Optional[str] = None
    ) -> None:
        if self._state is not ConnectionState.CONNECTED:
            return
        try:
            await self._post(create_leave_session_message(session_id, participant_id, reason))
        except TransportError as exc:
            LOGGER.warning("Leave request failed: %s", exc)

    async def sync_action(self, action: Mapping[str, Any], session_id: str) -> Message:
        return await self.send_with_response(create_sync_action_message(action, session_id))

    def request_full_sync(self, session_id: str) -> bool:
        # The polling endpoints have no snapshot request.
        self._trace("Full sync is not available over polling (%s)", session_id)
        return False

    async def update_presence(
        self,
        session_id: str,
        participant_id: str,
        status: Optional[str] = None,
        cursor: Optional[Mapping[str, Any]] = None,
    ) -> None:
        if self._state is not ConnectionState.CONNECTED:
            return
        await self._post(
            create_presence_update_message(session_id, participant_id, status, cursor)
        )


__all__ = ["FIRE_AND_FORGET", "PollingChannelClient", "ROUTES"]
