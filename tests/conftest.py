"""
Pytest configuration and fixtures for edge-relay.

Provides cross-platform event loop configuration, in-process fake sinks and a
settings factory that never reads the developer's .env file.
"""

import asyncio
import socket
import sys

import pytest

from edge_relay.config import RelaySettings
from edge_relay.models import InsertRow, StoredRecord

# Set policy *before* pytest-asyncio creates any loops
if sys.platform.startswith("win"):
    asyncio.set_event_loop_policy(asyncio.WindowsSelectorEventLoopPolicy())


class FakePublishSink:
    """Pub/sub sink that records every publish; can be told to fail."""

    def __init__(self):
        self.published: list[tuple[str, int, bool, bytes]] = []
        self.connected = False
        self.disconnected = False
        self.fail_payloads: set[bytes] = set()
        self.fail_connect = False
        self.delay = 0.0

    @property
    def payloads(self) -> list[bytes]:
        return [p for (_, _, _, p) in self.published]

    async def connect(self) -> None:
        if self.fail_connect:
            from edge_relay.errors import ConnectError

            raise ConnectError("broker unreachable")
        self.connected = True

    async def publish(self, topic: str, qos: int, retain: bool, payload: bytes) -> None:
        if self.delay:
            await asyncio.sleep(self.delay)
        if payload in self.fail_payloads:
            raise RuntimeError("broker rejected publish")
        self.published.append((topic, qos, retain, payload))

    async def disconnect(self, timeout_ms: int = 250) -> None:
        self.disconnected = True
        self.connected = False


class FakeTransaction:
    def __init__(self, sink: "FakePersistenceSink", fail: bool):
        self._sink = sink
        self._fail = fail
        self.rows: list[InsertRow] = []
        self.state = "open"

    async def insert(self, row: InsertRow) -> None:
        if self._sink.insert_delay:
            await asyncio.sleep(self._sink.insert_delay)
        if self._fail:
            raise RuntimeError("DB unavailable")
        self.rows.append(row)

    async def commit(self) -> None:
        self.state = "committed"
        self._sink.batches.append(list(self.rows))

    async def rollback(self) -> None:
        if self._sink.rollback_delay:
            await asyncio.sleep(self._sink.rollback_delay)
        self.state = "rolled_back"


class FakePersistenceSink:
    """Persistence sink keeping committed batches in memory.

    Set ``fail_next`` to make that many upcoming transactions fail on insert.
    """

    def __init__(self):
        self.batches: list[list[InsertRow]] = []
        self.transactions: list[FakeTransaction] = []
        self.schemas: list[str] = []
        self.connected = False
        self.closed = False
        self.fail_next = 0
        self.fail_connect = False
        self.insert_delay = 0.0
        self.rollback_delay = 0.0

    @property
    def payload_batches(self) -> list[list[bytes]]:
        return [[r.raw_data for r in b] for b in self.batches]

    @property
    def rows(self) -> list[InsertRow]:
        return [r for b in self.batches for r in b]

    async def connect(self) -> None:
        if self.fail_connect:
            from edge_relay.errors import ConnectError

            raise ConnectError("database unreachable")
        self.connected = True

    async def ensure_schema(self, table: str) -> None:
        self.schemas.append(table)

    async def begin_batch(self) -> FakeTransaction:
        fail = self.fail_next > 0
        if fail:
            self.fail_next -= 1
        tx = FakeTransaction(self, fail)
        self.transactions.append(tx)
        return tx

    async def query_recent(self, table: str, limit: int) -> list[StoredRecord]:
        rows = list(reversed(self.rows))[:limit]
        return [
            StoredRecord(
                time=r.timestamp,
                source_addr=r.source_address,
                data_size=r.size,
                raw_data=r.raw_data,
            )
            for r in rows
        ]

    async def close(self) -> None:
        self.closed = True


@pytest.fixture
def publish_sink():
    return FakePublishSink()


@pytest.fixture
def persistence_sink():
    return FakePersistenceSink()


@pytest.fixture
def make_settings():
    """Factory for RelaySettings with fast test timings on an ephemeral port."""

    def _make(**overrides) -> RelaySettings:
        values = {
            "listen_address": "127.0.0.1:0",
            "batch_size": 10,
            "flush_interval": 0.1,
            "shutdown_grace": 1.0,
            "mqtt_topic": "test/telemetry",
        }
        values.update(overrides)
        return RelaySettings(_env_file=None, **values)

    return _make


@pytest.fixture
def udp_sender():
    """Blocking UDP socket; call with (address "host:port", payload)."""
    sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)

    def _send(address: str, payload: bytes) -> None:
        host, _, port = address.rpartition(":")
        sock.sendto(payload, (host, int(port)))

    yield _send
    sock.close()


@pytest.fixture
def eventually():
    """Poll an async-friendly predicate until it holds or the timeout expires."""

    async def _wait(predicate, timeout: float = 2.0, interval: float = 0.01) -> bool:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while loop.time() < deadline:
            if predicate():
                return True
            await asyncio.sleep(interval)
        return predicate()

    return _wait
