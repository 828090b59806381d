"""
Pytest configuration and fixtures for the sentinel controller.

Provides cross-platform event loop configuration, a controllable clock and a
fake sentinel fleet standing in for ``redis.asyncio`` clients.
"""

import asyncio
import sys
from typing import Optional

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from sentinel_controller.observability.events import ControllerEvent, EventBus
from sentinel_controller.reconcile.store import InMemoryRoutingTargetStore

# Set policy *before* pytest-asyncio creates any loops
if sys.platform.startswith("win"):
    asyncio.set_event_loop_policy(asyncio.WindowsSelectorEventLoopPolicy())


class FakeClock:
    """Monotonic clock advanced by hand."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeSentinelNode:
    """State of one fake sentinel: what it answers and whether it is up."""

    def __init__(self) -> None:
        self.reply: object = None
        self.down = False
        self.queries = 0
        self.in_flight = 0
        self.max_in_flight = 0
        self.latency = 0.0
        self.error: Optional[BaseException] = None
        self.messages: asyncio.Queue = asyncio.Queue()


class FakePubSub:
    def __init__(self, node: FakeSentinelNode):
        self._node = node
        self.channels: list[str] = []
        self.closed = False

    async def subscribe(self, *channels: str) -> None:
        if self._node.down:
            raise RedisConnectionError("sentinel down")
        self.channels.extend(channels)

    async def listen(self):
        yield {"type": "subscribe", "channel": self.channels[0], "data": 1}
        while True:
            payload = await self._node.messages.get()
            if isinstance(payload, Exception):
                raise payload
            yield {"type": "message", "channel": self.channels[0], "data": payload}

    async def aclose(self) -> None:
        self.closed = True


class FakeSentinelClient:
    def __init__(self, node: FakeSentinelNode):
        self._node = node
        self.closed = False

    async def execute_command(self, *args):
        node = self._node
        node.queries += 1
        node.in_flight += 1
        node.max_in_flight = max(node.max_in_flight, node.in_flight)
        try:
            if node.latency:
                await asyncio.sleep(node.latency)
            if node.down:
                raise RedisConnectionError("sentinel down")
            if node.error is not None:
                raise node.error
            assert args[:2] == ("SENTINEL", "get-master-addr-by-name")
            return node.reply
        finally:
            node.in_flight -= 1

    def pubsub(self) -> FakePubSub:
        return FakePubSub(self._node)

    async def aclose(self) -> None:
        self.closed = True


class FakeSentinelFleet:
    """Fake sentinels addressed by ``host:port``; use ``factory`` as client factory."""

    def __init__(self) -> None:
        self.nodes: dict[str, FakeSentinelNode] = {}
        self.clients_created = 0

    def node(self, endpoint_id: str) -> FakeSentinelNode:
        return self.nodes.setdefault(endpoint_id, FakeSentinelNode())

    def report(self, endpoint_id: str, primary: Optional[str]) -> None:
        """Make a sentinel answer ``primary`` ("host:port") or nil."""
        if primary is None:
            self.node(endpoint_id).reply = None
        else:
            host, port = primary.rsplit(":", 1)
            self.node(endpoint_id).reply = [host, port]

    def report_all(self, mapping: dict[str, Optional[str]]) -> None:
        for endpoint_id, primary in mapping.items():
            self.report(endpoint_id, primary)

    def set_down(self, endpoint_id: str, down: bool = True) -> None:
        self.node(endpoint_id).down = down

    def notify(self, endpoint_id: str, payload: str) -> None:
        self.node(endpoint_id).messages.put_nowait(payload)

    def factory(self, address) -> FakeSentinelClient:
        self.clients_created += 1
        return FakeSentinelClient(self.node(str(address)))


class EventRecorder:
    """Event-bus subscriber keeping every event."""

    def __init__(self) -> None:
        self.events: list[ControllerEvent] = []

    async def __call__(self, event: ControllerEvent) -> None:
        self.events.append(event)

    def kinds(self) -> list:
        return [e.kind for e in self.events]

    def of(self, kind) -> list[ControllerEvent]:
        return [e for e in self.events if e.kind == kind]


SENTINELS = ["10.0.1.1:26379", "10.0.1.2:26379", "10.0.1.3:26379"]
TARGET = "redis/redis-primary"


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def fleet():
    return FakeSentinelFleet()


@pytest.fixture
def sentinel_ids():
    return list(SENTINELS)


@pytest.fixture
def target_id():
    return TARGET


@pytest.fixture
def recorder():
    return EventRecorder()


@pytest.fixture
def bus(recorder):
    b = EventBus()
    b.subscribe(recorder)
    return b


@pytest.fixture
def store(target_id):
    """In-memory store holding an empty routing target."""
    s = InMemoryRoutingTargetStore()
    s.create(target_id)
    return s


@pytest.fixture(autouse=True)
def _clear_settings_cache():
    from sentinel_controller.config import get_settings

    get_settings.cache_clear()
    yield
    get_settings.cache_clear()
