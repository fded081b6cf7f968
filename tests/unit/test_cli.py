"""
Unit tests for the edge-relay CLI surface (no broker or database needed).
"""

from contextlib import asynccontextmanager

import psycopg
from typer.testing import CliRunner

from edge_relay.cli import app
from edge_relay.sinks import TimescaleSink

runner = CliRunner()


def test_help_lists_commands():
    result = runner.invoke(app, ["--help"])
    assert result.exit_code == 0
    for cmd in ("run", "init-schema", "recent", "ping"):
        assert cmd in result.output


def test_invalid_env_file_exits_nonzero(tmp_path):
    env = tmp_path / "bad.env"
    env.write_text("EDGE_RELAY_MQTT_BROKER=http://nowhere\n")

    result = runner.invoke(app, ["ping", "--env-file", str(env)])
    assert result.exit_code == 1


def test_recent_rejects_non_positive_limit():
    result = runner.invoke(app, ["recent", "--limit", "0"])
    assert result.exit_code != 0


class UnreachablePool:
    """Pool stand-in whose every checkout fails like a dropped server."""

    @asynccontextmanager
    async def connection(self):
        raise psycopg.OperationalError("server closed the connection unexpectedly")
        yield

    async def close(self):
        pass


async def _connect_to_unreachable(self):
    self._pool = UnreachablePool()


def test_recent_database_error_exits_cleanly(monkeypatch):
    monkeypatch.setattr(TimescaleSink, "connect", _connect_to_unreachable)

    result = runner.invoke(app, ["recent", "--limit", "3"])
    assert result.exit_code == 1
    assert not isinstance(result.exception, psycopg.Error)


def test_ping_database_error_exits_cleanly(monkeypatch):
    monkeypatch.setattr(TimescaleSink, "connect", _connect_to_unreachable)

    result = runner.invoke(app, ["ping"])
    assert result.exit_code == 1
    assert not isinstance(result.exception, psycopg.Error)
