import asyncio
import json
import time
from typing import List, Optional

import pytest

from backend.bridge.bridge import CloseReason, SessionBridge
from backend.bridge.codec import encode_event
from backend.bridge.config import BridgeSettings


class FakeConnection:
    """In-memory upstream stream; payloads pushed with ``emit`` come back out of ``receive``."""

    def __init__(self, loop: asyncio.AbstractEventLoop, end_on_close_input: bool = True):
        self._loop = loop
        self._inbound: asyncio.Queue = asyncio.Queue()
        self.end_on_close_input = end_on_close_input
        self.sent: List[str] = []
        self.send_error: Optional[Exception] = None
        self.input_closed = False
        self.closed = False

    async def send(self, payload: str) -> None:
        if self.send_error is not None:
            raise self.send_error
        self.sent.append(payload)

    async def receive(self) -> Optional[str]:
        item = await self._inbound.get()
        if isinstance(item, Exception):
            raise item
        return item

    async def close_input(self) -> None:
        self.input_closed = True
        if self.end_on_close_input:
            self._inbound.put_nowait(None)

    async def close(self) -> None:
        self.closed = True

    # Helpers usable from the loop or from a TestClient thread
    def emit(self, item) -> None:
        if not isinstance(item, (str, Exception)) and item is not None:
            item = encode_event(item)
        self._loop.call_soon_threadsafe(self._inbound.put_nowait, item)

    def finish(self) -> None:
        self.emit(None)

    def fail(self, exc: Exception) -> None:
        self.emit(exc)

    def sent_names(self) -> List[str]:
        return [next(iter(json.loads(p)["event"])) for p in self.sent]

    def sent_bodies(self, name: str) -> List[dict]:
        bodies = []
        for p in self.sent:
            event = json.loads(p)["event"]
            if name in event:
                bodies.append(event[name])
        return bodies


class FakeConnector:
    def __init__(self):
        self.connections: List[FakeConnection] = []
        self.failure: Optional[Exception] = None
        self.gate: Optional[asyncio.Event] = None
        self.connect_calls = 0
        self.send_error: Optional[Exception] = None
        self.delay = 0.0

    async def connect(self, model_id: str, region: str) -> FakeConnection:
        self.connect_calls += 1
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.gate is not None:
            await self.gate.wait()
        if self.failure is not None:
            raise self.failure
        connection = FakeConnection(asyncio.get_running_loop())
        connection.send_error = self.send_error
        self.connections.append(connection)
        return connection

    @property
    def last(self) -> FakeConnection:
        return self.connections[-1]


class RecordingTransport:
    def __init__(self):
        self.messages: List[dict] = []
        self.closed_with: List[CloseReason] = []

    async def send_json(self, payload: dict) -> bool:
        if self.closed_with:
            return False
        self.messages.append(payload)
        return True

    async def close(self, reason: CloseReason = CloseReason.NORMAL) -> None:
        self.closed_with.append(reason)

    def of_type(self, kind: str) -> List[dict]:
        return [m for m in self.messages if m["type"] == kind]


def wait_until(predicate, timeout: float = 2.0, interval: float = 0.01) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(interval)
    return predicate()


async def settle(predicate=None, timeout: float = 2.0) -> bool:
    """Yield to the loop until ``predicate`` holds (or just let pending tasks run)."""
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate is not None and predicate():
            return True
        await asyncio.sleep(0.005)
        if predicate is None:
            return True
    return predicate()


@pytest.fixture
def settings():
    return BridgeSettings(
        bridge_connect_timeout_s=2.0,
        bridge_drain_timeout_s=1.0,
        bridge_idle_timeout_s=30.0,
        bridge_allowed_origin_prefixes=["http://localhost:"],
    )


@pytest.fixture
def connector():
    return FakeConnector()


@pytest.fixture
def make_bridge(settings, connector):
    def factory() -> SessionBridge:
        return SessionBridge(settings, connector)
    return factory
