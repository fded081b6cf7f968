from __future__ import annotations

import asyncio
import json
import signal
import sys
from pathlib import Path
from typing import Awaitable, Callable, Optional, TypeVar

import typer
from loguru import logger
from prometheus_client import start_http_server
from pydantic import ValidationError

from .config import RelaySettings, get_settings
from .errors import RelayError
from .pipeline import Relay
from .sinks import TimescaleSink

app = typer.Typer(help="Edge relay CLI (UDP telemetry -> MQTT / TimescaleDB)")

R = TypeVar("R")

# psycopg's async driver needs a selector loop on Windows
if sys.platform.startswith("win"):
    asyncio.set_event_loop_policy(asyncio.WindowsSelectorEventLoopPolicy())


def env_file_opt() -> Optional[Path]:
    return typer.Option(
        None, "--env-file", exists=True, dir_okay=False, help="Read settings from this .env file"
    )


def _load_settings(env_file: Optional[Path]) -> RelaySettings:
    try:
        return RelaySettings(_env_file=env_file) if env_file else get_settings()
    except ValidationError as e:
        logger.error(f"Invalid configuration: {e}")
        sys.exit(1)


def _configure_logging(level: str) -> None:
    logger.remove()
    logger.add(sys.stderr, level=level)


def _with_timescale(
    settings: RelaySettings, action: Callable[[TimescaleSink], Awaitable[R]]
) -> R:
    async def _go() -> R:
        sink = TimescaleSink.from_settings(settings)
        await sink.connect()
        try:
            return await action(sink)
        finally:
            await sink.close()

    try:
        return asyncio.run(_go())
    except (RelayError, OSError) as e:
        logger.error(f"TimescaleDB operation failed: {e}")
        sys.exit(1)


async def _serve(settings: RelaySettings) -> None:
    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop.set)
        except NotImplementedError:
            pass  # Windows: Ctrl+C still interrupts asyncio.run

    async with Relay(settings) as relay:
        address = relay.listener.address if relay.listener else settings.listen_address
        logger.success(f"Gateway service started, listening on UDP {address}")
        await stop.wait()


@app.command()
def run(env_file: Optional[Path] = env_file_opt()):
    """Run the relay until SIGINT/SIGTERM."""
    settings = _load_settings(env_file)
    _configure_logging(settings.log_level)

    if settings.metrics_port:
        start_http_server(settings.metrics_port)
        logger.info(f"Prometheus metrics on :{settings.metrics_port}/metrics")

    try:
        asyncio.run(_serve(settings))
    except (RelayError, OSError) as e:
        logger.error(f"Failed to start relay: {e}")
        sys.exit(1)
    except KeyboardInterrupt:
        pass
    logger.success("Service stopped")


@app.command("init-schema")
def init_schema(env_file: Optional[Path] = env_file_opt()):
    """Create the telemetry table (and hypertable) if missing."""
    settings = _load_settings(env_file)
    _configure_logging(settings.log_level)
    _with_timescale(settings, lambda sink: sink.ensure_schema(settings.table_name))
    logger.success(f"Table '{settings.table_name}' ready")


@app.command("recent")
def recent(
    limit: int = typer.Option(10, "--limit", min=1, help="Number of rows to show"),
    env_file: Optional[Path] = env_file_opt(),
):
    """Print the most recent stored datagrams as JSON lines (newest first)."""
    settings = _load_settings(env_file)
    _configure_logging(settings.log_level)
    rows = _with_timescale(settings, lambda sink: sink.query_recent(settings.table_name, limit))
    for r in rows:
        out = r.model_dump(mode="python")
        out["raw_data"] = r.raw_data.hex()
        typer.echo(json.dumps(out, default=str))


@app.command("ping")
def ping(env_file: Optional[Path] = env_file_opt()):
    """Check TimescaleDB connectivity."""
    settings = _load_settings(env_file)
    _configure_logging(settings.log_level)
    ok = _with_timescale(settings, lambda sink: sink.health())
    typer.echo(json.dumps({"ok": ok}, indent=2))


if __name__ == "__main__":
    app()
