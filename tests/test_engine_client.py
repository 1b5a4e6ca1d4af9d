"""Tests for the HTTP wrapper and the websocket feed connection."""

import asyncio
import json
import logging

import pytest
import pytest_asyncio
from aiohttp import test_utils, web
from websockets.exceptions import ConnectionClosed

from lobclient.exceptions import (
    AuthenticationRequired,
    AuthorizationExpired,
    EngineHTTPError,
    EngineTransportError,
)
from lobclient.exchange.engine_client import EngineClient, FeedConnection
from lobclient.models import ConnectionStatus

LOGGER = logging.getLogger("test_engine_client")


# ---------------------------------------------------------------------- #
# HTTP
# ---------------------------------------------------------------------- #

@pytest_asyncio.fixture
async def engine_server():
    seen = []

    async def handle(request: web.Request) -> web.StreamResponse:
        seen.append({
            "method": request.method,
            "path": request.path,
            "auth": request.headers.get("Authorization"),
            "body": await request.text(),
        })
        if request.path == "/api/order":
            return web.json_response({"orderId": 777})
        if request.path == "/api/script":
            return web.json_response([])
        if request.path == "/api/account":
            return web.json_response({"message": "expired"}, status=401)
        if request.path == "/api/orders":
            return web.json_response({"message": "bad request"}, status=400)
        if request.path == "/api/fills":
            return web.Response(status=500, text="boom")
        return web.Response(status=200)

    app = web.Application()
    app.router.add_route("*", "/{tail:.*}", handle)
    server = test_utils.TestServer(app)
    await server.start_server()
    server.seen = seen
    yield server
    await server.close()


@pytest_asyncio.fixture
async def client(engine_server):
    c = EngineClient({"api_url": str(engine_server.make_url("/"))}, LOGGER, token="tok")
    yield c
    await c.close()


@pytest.mark.asyncio
async def test_submit_order_sends_bearer_and_json(client, engine_server):
    body = await client.submit_order({"orderId": "TMP-a-1", "ticker": "TEST"})

    assert body == {"orderId": 777}
    request = engine_server.seen[-1]
    assert request["method"] == "POST"
    assert request["path"] == "/api/order"
    assert request["auth"] == "Bearer tok"
    assert json.loads(request["body"]) == {"orderId": "TMP-a-1", "ticker": "TEST"}


@pytest.mark.asyncio
async def test_script_posts_list_of_lines(client, engine_server):
    assert await client.submit_script(["A B LIMIT 100 5 1", "C 1"]) == []
    assert json.loads(engine_server.seen[-1]["body"]) == ["A B LIMIT 100 5 1", "C 1"]


@pytest.mark.asyncio
async def test_empty_body_parses_as_empty_object(client, engine_server):
    assert await client.reset() == {}
    assert engine_server.seen[-1]["body"] == ""


@pytest.mark.asyncio
async def test_401_is_authorization_expired(client):
    with pytest.raises(AuthorizationExpired) as info:
        await client.get_account()

    assert info.value.status == 401
    assert info.value.body == {"message": "expired"}


@pytest.mark.asyncio
async def test_non_2xx_carries_server_message(client):
    with pytest.raises(EngineHTTPError) as info:
        await client.get_orders()

    assert info.value.status == 400
    assert info.value.message == "bad request"
    assert not isinstance(info.value, AuthorizationExpired)


@pytest.mark.asyncio
async def test_non_json_error_body_uses_status_message(client):
    with pytest.raises(EngineHTTPError) as info:
        await client.get_fills()

    assert info.value.status == 500
    assert info.value.message == "HTTP 500"
    assert info.value.body == {}


@pytest.mark.asyncio
async def test_request_without_token_never_hits_network(engine_server):
    c = EngineClient({"api_url": str(engine_server.make_url("/"))}, LOGGER)
    try:
        with pytest.raises(AuthenticationRequired):
            await c.get_orders()
    finally:
        await c.close()

    assert engine_server.seen == []


@pytest.mark.asyncio
async def test_unreachable_engine_is_transport_error():
    c = EngineClient({"api_url": "http://127.0.0.1:1"}, LOGGER, token="tok")
    try:
        with pytest.raises(EngineTransportError):
            await c.get_account()
    finally:
        await c.close()


def test_feed_urls():
    c = EngineClient({"api_url": "https://engine.example/"}, LOGGER, token="a b/c")

    assert c.public_feed_url() == "wss://engine.example/ws/public"
    assert c.private_feed_url() == "wss://engine.example/ws/private?token=a%20b%2Fc"


def test_private_feed_url_requires_token():
    c = EngineClient({}, LOGGER)

    assert c.public_feed_url() == "ws://localhost:7070/ws/public"
    with pytest.raises(AuthenticationRequired):
        c.private_feed_url()


def test_token_from_config():
    assert EngineClient({"api_token": "cfg-token"}, LOGGER).token == "cfg-token"
    assert EngineClient({"api_token": "cfg-token"}, LOGGER, token="arg").token == "arg"


# ---------------------------------------------------------------------- #
# WebSocket feed
# ---------------------------------------------------------------------- #

class FakeWebSocket:
    def __init__(self, messages=(), error=None, hold=False):
        self._messages = list(messages)
        self._error = error
        self._hold = hold
        self.closed = False

    def __aiter__(self):
        return self._iterate()

    async def _iterate(self):
        for message in self._messages:
            await asyncio.sleep(0)
            yield message
        if self._error is not None:
            raise self._error
        if self._hold:
            await asyncio.Event().wait()

    async def close(self):
        self.closed = True


def make_feed(ws=None, error=None):
    received, statuses, calls = [], [], []

    async def connect(url, **kwargs):
        calls.append((url, kwargs))
        if error is not None:
            raise error
        return ws

    def on_message(raw):
        if raw == "bad":
            raise ValueError("cannot handle")
        received.append(raw)

    feed = FeedConnection(
        "public",
        "ws://engine/ws/public",
        on_message,
        LOGGER,
        on_status=lambda name, status: statuses.append(status),
        ws_cfg={"ping_interval": 5},
        connect=connect,
    )
    return feed, received, statuses, calls


@pytest.mark.asyncio
async def test_feed_delivers_messages_and_survives_handler_errors():
    ws = FakeWebSocket(["a", b"b", "bad", "c"])
    feed, received, statuses, calls = make_feed(ws)

    await feed.open()
    await feed._reader_task

    assert received == ["a", "b", "c"]
    assert statuses == [ConnectionStatus.CONNECTING, ConnectionStatus.CONNECTED, ConnectionStatus.DISCONNECTED]
    assert calls == [("ws://engine/ws/public", {"ping_interval": 5, "ping_timeout": 10, "close_timeout": 5})]
    assert ws.closed


@pytest.mark.asyncio
async def test_server_close_marks_disconnected():
    ws = FakeWebSocket(["a"], error=ConnectionClosed(None, None))
    feed, received, statuses, _ = make_feed(ws)

    await feed.open()
    await feed._reader_task

    assert received == ["a"]
    assert feed.status == ConnectionStatus.DISCONNECTED


@pytest.mark.asyncio
async def test_reader_failure_marks_error():
    ws = FakeWebSocket([], error=RuntimeError("broken frame"))
    feed, _, statuses, _ = make_feed(ws)

    await feed.open()
    await feed._reader_task

    assert statuses[-1] == ConnectionStatus.ERROR
    assert ws.closed


@pytest.mark.asyncio
async def test_connect_failure_raises_transport_error():
    feed, _, statuses, _ = make_feed(error=OSError("refused"))

    with pytest.raises(EngineTransportError):
        await feed.open()

    assert statuses == [ConnectionStatus.CONNECTING, ConnectionStatus.ERROR]


@pytest.mark.asyncio
async def test_explicit_close():
    ws = FakeWebSocket(["a"], hold=True)
    feed, received, statuses, _ = make_feed(ws)

    await feed.open()
    for _ in range(5):
        await asyncio.sleep(0)
    await feed.close()

    assert received == ["a"]
    assert ws.closed
    assert statuses == [
        ConnectionStatus.CONNECTING,
        ConnectionStatus.CONNECTED,
        ConnectionStatus.CLOSING,
        ConnectionStatus.DISCONNECTED,
    ]
    # close su feed gia' chiuso: no-op
    await feed.close()
    assert statuses[-1] == ConnectionStatus.DISCONNECTED
    assert len(statuses) == 4
