"""
Pytest configuration and fixtures for GhostTerm tests.

Created by orpheus497

Provides common fixtures and test utilities for unit and integration tests,
including an in-memory transport that lets several engines share a gossip
group without sockets.
"""

import asyncio
import os
import secrets
from typing import Dict, List, Optional, Set, Tuple

import pytest

from ghostterm.config import Config
from ghostterm.errors import ConnectError, ErrorCode
from ghostterm.message import Message, MessageKind
from ghostterm.ticket import AddressHint, ConnectionDescriptor
from ghostterm.transport import Connection, Endpoint, PeerAddress, Transport

_CLOSED = object()


class FakeClock:
    """Manually advanced wall clock (seconds)."""

    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class InMemoryHub:
    """Shared medium for InMemoryTransport instances."""

    def __init__(self):
        self.groups: Dict[bytes, Set["InMemoryTransport"]] = {}
        self.listeners: Dict[bytes, "InMemoryTransport"] = {}
        self.refuse_connections = False
        self._next_port = 40000

    def next_port(self) -> int:
        self._next_port += 1
        return self._next_port


class InMemoryTransport(Transport):
    """Transport double delivering frames to every other group member."""

    def __init__(self, hub: InMemoryHub):
        self.hub = hub
        self.peer_id = secrets.token_bytes(32)
        self.port = hub.next_port()
        self.topic: Optional[bytes] = None
        self.sent: List[bytes] = []
        self.closed = False
        self.connect_attempts = 0
        self.accepts_peers: Optional[bool] = None
        self._inbound: asyncio.Queue = asyncio.Queue()
        self._discovered: asyncio.Queue = asyncio.Queue()

    @property
    def peer_id_hex(self) -> str:
        return self.peer_id.hex()

    async def create_endpoint(self, accept_peers: bool = True) -> Endpoint:
        self.accepts_peers = accept_peers
        if not accept_peers:
            return Endpoint(self.peer_id)
        return Endpoint(self.peer_id, (AddressHint("127.0.0.1", self.port),))

    async def listen(self, topic: bytes) -> Connection:
        self.topic = topic
        self.hub.groups.setdefault(topic, set()).add(self)
        self.hub.listeners[self.peer_id] = self
        return Connection(topic=topic)

    async def connect(self, descriptor: ConnectionDescriptor) -> Connection:
        self.connect_attempts += 1
        host = self.hub.listeners.get(descriptor.peer_id)
        if self.hub.refuse_connections or host is None or host.topic != descriptor.topic:
            raise ConnectError(ErrorCode.E201_CONNECTION_FAILED, "Host unreachable")

        self.topic = descriptor.topic
        members = self.hub.groups.setdefault(descriptor.topic, set())
        for member in members:
            member._discovered.put_nowait(PeerAddress(self.peer_id_hex))
            self._discovered.put_nowait(PeerAddress(member.peer_id_hex))
        members.add(self)
        return Connection(topic=descriptor.topic, remote_peer_id=descriptor.peer_id_hex)

    async def send(self, connection: Connection, data: bytes) -> None:
        if self.closed:
            raise ConnectError(ErrorCode.E203_CONNECTION_CLOSED, "Connection is closed")
        self.sent.append(data)
        for member in self.hub.groups.get(connection.topic, set()):
            if member is not self:
                member._inbound.put_nowait((self.peer_id_hex, data))

    def inject(self, sender: str, data: bytes) -> None:
        """Deliver a raw frame as if it came from ``sender``."""
        self._inbound.put_nowait((sender, data))

    def fail(self, reason: str = "link lost") -> None:
        """Make the receive stream report an unrecoverable failure."""
        self._inbound.put_nowait(ConnectError(ErrorCode.E203_CONNECTION_CLOSED, reason))

    async def receive(self):
        while True:
            item = await self._inbound.get()
            if item is _CLOSED:
                return
            if isinstance(item, ConnectError):
                raise item
            yield item

    async def discover_peers(self):
        while True:
            item = await self._discovered.get()
            if item is _CLOSED:
                return
            yield item

    async def close(self, connection: Optional[Connection] = None) -> None:
        self.closed = True
        if connection is not None:
            connection.is_open = False
        if self.topic is not None:
            self.hub.groups.get(self.topic, set()).discard(self)
        self.hub.listeners.pop(self.peer_id, None)
        self._inbound.put_nowait(_CLOSED)
        self._discovered.put_nowait(_CLOSED)


async def settle(rounds: int = 50) -> None:
    """Let queued tasks and events run."""
    for _ in range(rounds):
        await asyncio.sleep(0)


def make_message(
    sender: str,
    seq: int,
    timestamp: int,
    body: str = "hello",
    kind: MessageKind = MessageKind.CHAT,
    sender_name: Optional[str] = None,
) -> Message:
    return Message(sender, seq, timestamp, body, kind, sender_name)


@pytest.fixture
def hub() -> InMemoryHub:
    return InMemoryHub()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def config(tmp_path, monkeypatch) -> Config:
    """
    Configuration isolated from the user's file and environment.

    The heartbeat is stretched so timer ticks only happen when a test
    applies them explicitly.
    """
    for var in list(os.environ):
        if var.startswith("GHOSTTERM_"):
            monkeypatch.delenv(var)
    cfg = Config(tmp_path / "missing.toml")
    cfg.data["presence"]["heartbeat_interval"] = 3600.0
    return cfg


@pytest.fixture
def peer_ids() -> Tuple[str, str, str]:
    """Three distinct hex peer identifiers."""
    return ("a" * 64, "b" * 64, "c" * 64)


@pytest.fixture
def sample_descriptor() -> ConnectionDescriptor:
    return ConnectionDescriptor(
        peer_id=bytes(range(32)),
        topic=bytes(range(32, 64)),
        address_hints=(AddressHint("192.168.1.20", 41000), AddressHint("::1", 41000)),
    )


# Pytest marks
def pytest_configure(config):
    """
    Configure pytest markers.

    Args:
        config: Pytest configuration object
    """
    config.addinivalue_line("markers", "unit: mark test as a unit test")
    config.addinivalue_line("markers", "integration: mark test as an integration test")
    config.addinivalue_line("markers", "slow: mark test as slow running")


# Test collection hooks
def pytest_collection_modifyitems(config, items):
    """
    Modify test collection to add markers based on test location.

    Args:
        config: Pytest configuration
        items: List of collected test items
    """
    for item in items:
        if "unit" in str(item.fspath):
            item.add_marker(pytest.mark.unit)
        else:
            item.add_marker(pytest.mark.integration)
