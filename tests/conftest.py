"""
Shared test doubles and fixtures.

MemoryChannel replaces the WebSocket: frames sent by the client are recorded
as dicts, inbound frames are injected as dicts and connection loss is
simulated with ``drop``.
"""

import asyncio
import json
from typing import Any, Callable, Dict, List, Mapping

import pytest
import pytest_asyncio

from signalbridge import Environment, SyncClient, SyncConfig
from signalbridge.errors import TransportError
from signalbridge.transport.channel import TransportChannel


class MemoryChannel(TransportChannel):
    """In-memory TransportChannel with scripted open failures."""

    def __init__(self, fail_opens: int = 0):
        super().__init__()
        self.fail_opens = fail_opens
        self.open_attempts = 0
        self.sent: List[Dict[str, Any]] = []

    async def _connect(self, url: str) -> None:
        self.open_attempts += 1
        if self.fail_opens > 0:
            self.fail_opens -= 1
            raise TransportError(f"Connection refused: {url}")

    async def _disconnect(self) -> None:
        pass

    def _write(self, frame: str) -> None:
        self.sent.append(json.loads(frame))

    def inject(self, message: Mapping[str, Any]) -> None:
        self._handle_text(json.dumps(message))

    def inject_raw(self, raw: str) -> None:
        self._handle_text(raw)

    def drop(self, code: int = 1006) -> None:
        self._mark_closed(code)

    def frames(self, frame_type: str) -> List[Dict[str, Any]]:
        return [f for f in self.sent if f.get("type") == frame_type]


class RecordingSink:
    """FrameSink double for registry and command tests."""

    def __init__(self, connected: bool = True, accept: bool = True):
        self.connected = connected
        self.accept = accept
        self.sent: List[Dict[str, Any]] = []

    def send(self, message: Mapping[str, Any]) -> bool:
        if not self.connected or not self.accept:
            return False
        self.sent.append(dict(message))
        return True

    def frames(self, frame_type: str) -> List[Dict[str, Any]]:
        return [f for f in self.sent if f.get("type") == frame_type]


async def eventually(predicate: Callable[[], Any], timeout: float = 2.0) -> None:
    """Yield to the event loop until ``predicate()`` is truthy."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.001)


@pytest.fixture
def sink():
    return RecordingSink()


@pytest.fixture
def channel():
    return MemoryChannel()


@pytest.fixture
def config():
    return SyncConfig.for_environment(Environment.TESTING)


@pytest_asyncio.fixture
async def client(config, channel):
    client = SyncClient(config, channel=channel)
    await client.start()
    await eventually(lambda: client.connected)
    yield client
    await client.stop()
