from __future__ import annotations

import asyncio
import json
from pathlib import Path
from typing import Any, Callable, Dict, List

import httpx
import pytest

from cubesync.config.realtime import PollingChannelConfig
from cubesync.realtime.channel import SessionIdentity
from cubesync.realtime.credentials import CredentialStore
from cubesync.realtime.errors import (
    AuthError,
    ConnectionClosedError,
    NotConnectedError,
    TransportError,
)
from cubesync.realtime.events import ConnectionState, EventType, RealtimeEvent
from cubesync.realtime.messages import (
    create_full_sync_request_message,
    create_presence_update_message,
    create_sync_action_message,
)
from cubesync.realtime.polling import PollingChannelClient
from tests.realtime_fakes import wait_until

SESSION = SessionIdentity("s1", "p1")


class _Server:
    """Scripted polling endpoint recording every request."""

    def __init__(self, poll: Callable[[int], httpx.Response] | None = None) -> None:
        self.requests: List[httpx.Request] = []
        self._poll = poll or (lambda n: httpx.Response(200, json={"success": True, "messages": []}))

    def polls(self) -> List[httpx.Request]:
        return [r for r in self.requests if r.url.path == "/api/poll"]

    def posts(self, path: str) -> List[Dict[str, Any]]:
        return [
            json.loads(r.content)
            for r in self.requests
            if r.method == "POST" and r.url.path == f"/api/{path}"
        ]

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if request.url.path == "/api/poll":
            return self._poll(len(self.polls()))
        if request.url.path == "/api/sessions/join":
            return httpx.Response(
                200,
                json={
                    "success": True,
                    "session": {"id": "s9"},
                    "participant": {"id": "p9"},
                    "authToken": "tok-9",
                },
            )
        return httpx.Response(200, json={"success": True})


def _client(server: _Server, **overrides) -> PollingChannelClient:
    values = {
        "server_url": "http://unit/api/",
        "poll_interval": 0.01,
        "max_retries": 1,
        "retry_backoff": 0.0,
    }
    values.update(overrides)
    credentials = values.pop("credentials", None)
    return PollingChannelClient(
        PollingChannelConfig(**values),
        transport=httpx.MockTransport(server.handler),
        credentials=credentials,
    )


def test_connect_validates_with_a_poll():
    server = _Server()

    async def _run():
        client = _client(server)
        opens: list[RealtimeEvent] = []
        client.on(EventType.OPEN, opens.append)
        await client.connect(SESSION)
        state = client.state
        await client.disconnect()
        return state, opens

    state, opens = asyncio.run(_run())
    assert state is ConnectionState.CONNECTED
    assert opens[0].data.url == "http://unit/api"
    first = server.polls()[0]
    assert first.url.params["sessionId"] == "s1"
    assert first.url.params["participantId"] == "p1"
    assert "since" not in first.url.params


def test_connect_requires_session():
    async def _run():
        await _client(_Server()).connect()

    with pytest.raises(ValueError):
        asyncio.run(_run())


def test_connect_failure_retries_then_errors():
    server = _Server(poll=lambda n: httpx.Response(503))

    async def _run():
        client = _client(server)
        with pytest.raises(TransportError):
            await client.connect(SESSION)
        return client.state

    assert asyncio.run(_run()) is ConnectionState.ERROR
    assert len(server.polls()) == 2


def test_unauthorised_poll_raises_auth_error():
    server = _Server(poll=lambda n: httpx.Response(401, json={"error": "nope"}))

    async def _run():
        await _client(server).connect(SESSION)

    with pytest.raises(AuthError):
        asyncio.run(_run())
    assert len(server.polls()) == 1


def test_disconnect_during_first_poll_wins():
    server = _Server(poll=lambda n: httpx.Response(503))

    async def _run():
        client = _client(server, max_retries=3, retry_backoff=0.05)
        errors: list[RealtimeEvent] = []
        client.on(EventType.ERROR, errors.append)
        connecting = asyncio.create_task(client.connect(SESSION))
        await wait_until(lambda: server.polls())
        await client.disconnect()
        with pytest.raises(ConnectionClosedError):
            await connecting
        return client.state, errors

    state, errors = asyncio.run(_run())
    assert state is ConnectionState.DISCONNECTED
    assert errors == []


def test_poll_loop_dispatches_and_advances_watermark():
    def poll(n: int) -> httpx.Response:
        if n == 2:
            return httpx.Response(
                200,
                json={
                    "messages": [
                        {"id": "m1", "type": "sync_action", "timestamp": "t", "payload": {}},
                        {"type": "broken"},
                    ],
                    "serverTime": "2026-01-01T00:00:05Z",
                    "nextPollDelay": 20,
                },
            )
        return httpx.Response(200, json={"messages": []})

    server = _Server(poll=poll)

    async def _run():
        client = _client(server)
        typed: list[str] = []
        client.on_message("sync_action", lambda event: typed.append(event.data.id))
        await client.connect(SESSION)
        await wait_until(lambda: len(server.polls()) >= 3)
        interval = client.poll_interval
        await client.disconnect()
        return typed, interval

    typed, interval = asyncio.run(_run())
    assert typed == ["m1"]
    assert interval == pytest.approx(0.02)
    polls = server.polls()
    assert polls[1].url.params["since"]
    assert polls[2].url.params["since"] == "2026-01-01T00:00:05Z"


def test_failed_poll_keeps_connection():
    server = _Server(
        poll=lambda n: httpx.Response(200, json={}) if n == 1 else httpx.Response(500)
    )

    async def _run():
        client = _client(server, max_retries=0)
        errors: list[RealtimeEvent] = []
        client.on(EventType.ERROR, errors.append)
        await client.connect(SESSION)
        await wait_until(lambda: errors)
        state = client.state
        await client.disconnect()
        return state

    assert asyncio.run(_run()) is ConnectionState.CONNECTED


def test_disconnect_stops_polling_and_emits_close():
    server = _Server()

    async def _run():
        client = _client(server)
        closes: list[RealtimeEvent] = []
        client.on(EventType.CLOSE, closes.append)
        await client.connect(SESSION)
        await wait_until(lambda: len(server.polls()) >= 2)
        await client.disconnect()
        count = len(server.polls())
        await asyncio.sleep(0.05)
        return client, closes, count

    client, closes, count = asyncio.run(_run())
    assert len(server.polls()) == count
    assert client.session is None
    assert client.watermark is None
    assert (closes[0].data.code, closes[0].data.reason, closes[0].data.was_clean) == (
        1000,
        "manual",
        True,
    )


def test_send_routes_actions_and_presence():
    server = _Server()

    async def _run():
        client = _client(server, poll_interval=5.0)
        action = create_sync_action_message({"id": "a1"}, "s1")
        assert client.send(action) is False
        await client.connect(SESSION)
        assert client.send(action) is True
        assert client.send(create_presence_update_message("s1", "p1", status="away"))
        assert client.send(create_full_sync_request_message("s1")) is False
        assert client.request_full_sync("s1") is False
        await wait_until(lambda: server.posts("action") and server.posts("presence"))
        await client.disconnect()

    asyncio.run(_run())
    assert server.posts("action")[0] == {
        "action": {"id": "a1"},
        "sessionId": "s1",
        "participantId": "p1",
    }
    assert server.posts("presence")[0]["status"] == "away"


def test_send_with_response_wraps_body():
    server = _Server()

    async def _run():
        client = _client(server, poll_interval=5.0)
        with pytest.raises(NotConnectedError):
            await client.sync_action({"id": "a1"}, "s1")
        await client.connect(SESSION)
        request = create_sync_action_message({"id": "a2"}, "s1")
        reply = await client.send_with_response(request, timeout=1.0)
        await client.disconnect()
        return request, reply

    request, reply = asyncio.run(_run())
    assert reply.id == request.id
    assert reply.payload == {"success": True}


def test_join_before_connect_and_bearer_header(tmp_path: Path):
    server = _Server()
    store = CredentialStore(tmp_path / "credentials.json")

    async def _run():
        client = _client(server, poll_interval=5.0, credentials=store)
        reply = await client.join_session("ABC123", "Alice")
        session = client.session
        await client.connect()
        await client.disconnect()
        return reply, session

    reply, session = asyncio.run(_run())
    assert reply.payload["authToken"] == "tok-9"
    assert session == SessionIdentity("s9", "p9")
    assert store.get_token() == "tok-9"
    join = server.requests[0]
    assert join.url.path == "/api/sessions/join"
    assert "authorization" not in join.headers
    poll = server.polls()[0]
    assert poll.headers["authorization"] == "Bearer tok-9"
    assert poll.url.params["sessionId"] == "s9"
