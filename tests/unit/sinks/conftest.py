"""
Fixtures for sink unit tests.

Stand-ins for the psycopg pool and the aiomqtt client, so the sinks' own logic
runs without a database or broker.
"""

import asyncio
from contextlib import asynccontextmanager

import aiomqtt
import pytest


class FakeCursor:
    def __init__(self, conn):
        self._conn = conn

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        return False

    async def execute(self, query, params=None):
        await self._conn.execute(query, params)

    async def fetchall(self):
        return list(self._conn.rows)


class FakeConnection:
    def __init__(self):
        self.executed = []
        self.rows = []
        self.fail_on = {}  # call index -> exception
        self.committed = False
        self.rolled_back = False
        self.rollback_delay = 0.0
        self.closed = False

    async def execute(self, query, params=None):
        idx = len(self.executed)
        self.executed.append((query, params))
        if idx in self.fail_on:
            raise self.fail_on[idx]

    def cursor(self, row_factory=None):
        return FakeCursor(self)

    async def commit(self):
        self.committed = True

    async def rollback(self):
        if self.rollback_delay:
            await asyncio.sleep(self.rollback_delay)
        self.rolled_back = True

    async def close(self):
        self.closed = True


class FakePool:
    """Hands out one shared FakeConnection and tracks checkouts."""

    def __init__(self, conn=None):
        self.conn = conn or FakeConnection()
        self.returned = []
        self.getconn_error = None
        self.closed = False

    @asynccontextmanager
    async def connection(self):
        yield self.conn

    async def getconn(self):
        if self.getconn_error is not None:
            raise self.getconn_error
        return self.conn

    async def putconn(self, conn):
        self.returned.append(conn)

    async def close(self):
        self.closed = True


@pytest.fixture()
def fake_pool():
    return FakePool()


class FakeMqttClient:
    """Records publishes; class attributes steer failure modes."""

    instances: list["FakeMqttClient"] = []
    fail_enter = False

    def __init__(self, **kwargs):
        self.kwargs = kwargs
        self.published = []
        self.fail_publish = False
        self.entered = False
        self.exited = False
        FakeMqttClient.instances.append(self)

    async def __aenter__(self):
        if FakeMqttClient.fail_enter:
            raise aiomqtt.MqttError("connection refused")
        self.entered = True
        return self

    async def __aexit__(self, *exc):
        self.exited = True

    async def publish(self, topic, payload=None, qos=0, retain=False):
        if self.fail_publish:
            raise aiomqtt.MqttError("connection lost")
        self.published.append((topic, payload, qos, retain))


@pytest.fixture()
def fake_mqtt(monkeypatch):
    """Patch aiomqtt.Client; yields the fake class for inspection."""
    FakeMqttClient.instances = []
    FakeMqttClient.fail_enter = False
    monkeypatch.setattr(aiomqtt, "Client", FakeMqttClient)
    yield FakeMqttClient
    FakeMqttClient.instances = []
    FakeMqttClient.fail_enter = False
