"""
Tests for the aiohttp WebSocket channel.

Most tests run the real client against an ``aiohttp.web`` backend on an
ephemeral port; the write-failure case uses a scripted socket.
"""

import asyncio
import json

import aiohttp
import pytest
import pytest_asyncio
from aiohttp import web

from conftest import eventually
from signalbridge import SyncClient
from signalbridge.errors import TransportError
from signalbridge.transport.websocket import WebSocketChannel


class Backend:
    """Minimal backend: records frames and answers each subscribe with a value."""

    def __init__(self):
        self.received = []
        self.connections = []
        self.values = {"tank.level": 12.5, "well.running": True, "pump1.running": False}
        self.url = None

    async def handler(self, request):
        ws = web.WebSocketResponse()
        await ws.prepare(request)
        self.connections.append(ws)
        async for msg in ws:
            if msg.type != aiohttp.WSMsgType.TEXT:
                continue
            frame = json.loads(msg.data)
            self.received.append(frame)
            if frame["type"] == "subscribe_signal" and frame["signal"] in self.values:
                await ws.send_json({
                    "type": "signal_update",
                    "data": {"signal": frame["signal"], "value": self.values[frame["signal"]]},
                })
        return ws

    def frames(self, frame_type):
        return [f for f in self.received if f["type"] == frame_type]


@pytest_asyncio.fixture
async def backend():
    stub = Backend()
    app = web.Application()
    app.router.add_get("/ws", stub.handler)
    runner = web.AppRunner(app, shutdown_timeout=0.5)
    await runner.setup()
    site = web.TCPSite(runner, "127.0.0.1", 0)
    await site.start()
    stub.url = f"ws://127.0.0.1:{runner.addresses[0][1]}/ws"
    yield stub
    for ws in stub.connections:
        await ws.close()
    await runner.cleanup()


@pytest.fixture
def socket_config(config, backend):
    config.connection.url = backend.url
    config.connection.open_timeout = 2.0
    return config


@pytest.mark.asyncio
async def test_subscribe_and_update_round_trip(socket_config, backend):
    channel = WebSocketChannel(open_timeout=2.0)
    async with SyncClient(socket_config, channel=channel) as client:
        assert await client.wait_connected(timeout=2.0)
        client.subscribe("tank.level")

        await eventually(lambda: client.signals.get("tank.level") == 12.5)
        assert backend.frames("subscribe_signal") == [{"type": "subscribe_signal", "signal": "tank.level"}]
        assert client.quality["tank.level"] == "good"

        client.set_value("system.demand", 2500)
        await eventually(lambda: backend.frames("set_signal"))
        assert backend.frames("set_signal") == [{"type": "set_signal", "signal": "system.demand", "value": 2500}]
    print("✓ tank.level travels over a real WebSocket")


@pytest.mark.asyncio
async def test_frames_keep_their_order(socket_config, backend):
    async with SyncClient(socket_config) as client:
        assert await client.wait_connected(timeout=2.0)
        for speed in range(20):
            client.set_value("pump1.speed", speed)
        await eventually(lambda: len(backend.frames("set_signal")) == 20)
        assert [f["value"] for f in backend.frames("set_signal")] == list(range(20))


@pytest.mark.asyncio
async def test_server_close_reconnects_and_replays(socket_config, backend):
    async with SyncClient(socket_config) as client:
        assert await client.wait_connected(timeout=2.0)
        client.subscribe("well.running")
        await eventually(lambda: len(backend.frames("subscribe_signal")) == 1)

        await backend.connections[0].close()
        await eventually(lambda: len(backend.connections) == 2 and client.connected)
        await eventually(lambda: len(backend.frames("subscribe_signal")) == 2)

        assert backend.frames("subscribe_signal") == [
            {"type": "subscribe_signal", "signal": "well.running"},
        ] * 2
        assert client.get_connection_stats()["connections_opened"] == 2


@pytest.mark.asyncio
async def test_stop_closes_owned_session_only(socket_config, backend):
    owned = WebSocketChannel(open_timeout=2.0)
    client = SyncClient(socket_config, channel=owned)
    await client.start()
    assert await client.wait_connected(timeout=2.0)
    session = owned._session
    await client.stop()
    assert session.closed
    assert not owned.is_open

    async with aiohttp.ClientSession() as shared:
        borrowed = WebSocketChannel(session=shared, open_timeout=2.0)
        client = SyncClient(socket_config, channel=borrowed)
        await client.start()
        assert await client.wait_connected(timeout=2.0)
        await client.stop()
        assert not shared.closed


@pytest.mark.asyncio
async def test_subscribe_from_another_thread(socket_config, backend):
    async with SyncClient(socket_config) as client:
        assert await client.wait_connected(timeout=2.0)
        await asyncio.to_thread(client.subscribe, "pump1.running")

        await eventually(lambda: "pump1.running" in client.signals)
        assert backend.frames("subscribe_signal") == [{"type": "subscribe_signal", "signal": "pump1.running"}]
        assert client.signals["pump1.running"] is False


@pytest.mark.asyncio
async def test_unreachable_backend_raises_transport_error():
    channel = WebSocketChannel(open_timeout=1.0)
    errors = []
    channel.on_error(errors.append)
    try:
        with pytest.raises(TransportError):
            await channel.open("ws://127.0.0.1:1/ws")
    finally:
        await channel.shutdown()
    assert not channel.is_open
    assert isinstance(errors[0], TransportError)


class ScriptedWebSocket:
    """Stands in for ClientWebSocketResponse; inbound messages never arrive."""

    def __init__(self, fail_writes=False):
        self.fail_writes = fail_writes
        self.sent = []
        self.closed = False
        self.close_code = None
        self._inbox = asyncio.Queue()

    def __aiter__(self):
        return self

    async def __anext__(self):
        msg = await self._inbox.get()
        if msg is None:
            raise StopAsyncIteration
        return msg

    async def send_str(self, data):
        if self.fail_writes:
            raise ConnectionResetError("Cannot write to closing transport")
        self.sent.append(json.loads(data))

    async def close(self, code=1000, message=b""):
        if self.closed:
            return False
        self.closed = True
        self.close_code = 1006 if self.fail_writes else code
        self._inbox.put_nowait(None)
        return True

    def exception(self):
        return None


class ScriptedSession:
    closed = False

    def __init__(self, ws):
        self.ws = ws

    async def ws_connect(self, url, **kwargs):
        return self.ws


@pytest.mark.asyncio
async def test_write_failure_closes_the_channel():
    ws = ScriptedWebSocket(fail_writes=True)
    channel = WebSocketChannel(session=ScriptedSession(ws))
    closes, errors = [], []
    channel.on_close(closes.append)
    channel.on_error(errors.append)

    await channel.open("ws://plant.example/ws")
    assert channel.send({"type": "ping", "timestamp": 1}) is True

    await eventually(lambda: not channel.is_open)
    assert ws.closed
    assert closes == [1006]
    assert any("write failed" in str(e) for e in errors)
    assert channel.send({"type": "ping", "timestamp": 2}) is False
    await channel.shutdown()


@pytest.mark.asyncio
async def test_send_from_thread_is_queued_on_the_loop():
    ws = ScriptedWebSocket()
    channel = WebSocketChannel(session=ScriptedSession(ws))
    await channel.open("ws://plant.example/ws")

    assert channel.send({"type": "set_signal", "signal": "a", "value": 1})
    assert await asyncio.to_thread(channel.send, {"type": "set_signal", "signal": "b", "value": 2})
    assert channel.send({"type": "set_signal", "signal": "c", "value": 3})

    await eventually(lambda: len(ws.sent) == 3)
    assert [f["signal"] for f in ws.sent] == ["a", "b", "c"]

    await channel.shutdown()
    assert ws.closed
    assert not channel.is_open
