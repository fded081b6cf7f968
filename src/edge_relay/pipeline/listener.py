from __future__ import annotations

import asyncio
from enum import Enum
from typing import Any, Mapping, Optional

from loguru import logger

from ..metrics import DATAGRAMS_RECEIVED_TOTAL, DATAGRAMS_TRUNCATED_TOTAL, RECEIVE_ERRORS_TOTAL
from ..models import RawFrame, utc_now
from .queue import BoundedQueue
from .worker import SampledDropLog


class ListenerState(str, Enum):
    IDLE = "idle"
    LISTENING = "listening"
    CLOSING = "closing"
    CLOSED = "closed"


class _ListenerProtocol(asyncio.DatagramProtocol):
    def __init__(self, listener: "UdpListener"):
        self._listener = listener

    def datagram_received(self, data: bytes, addr: Any) -> None:
        self._listener._on_datagram(data, addr)

    def error_received(self, exc: Exception) -> None:
        self._listener._on_error(exc)

    def connection_lost(self, exc: Optional[Exception]) -> None:
        self._listener._on_connection_lost(exc)


class UdpListener:
    """Owns the UDP socket and feeds every output queue without ever waiting.

    Each datagram becomes one RawFrame that is offered to every output queue
    with ``try_put``. A full queue loses the frame for that path only; the
    socket keeps being read.

    Datagrams longer than ``max_datagram_size`` are truncated, mirroring a
    fixed-size receive buffer.
    """

    def __init__(
        self,
        host: str,
        port: int,
        outputs: Mapping[str, BoundedQueue[RawFrame]],
        *,
        max_datagram_size: int = 1024,
        drop_log_every: int = 100,
        close_timeout: float = 1.0,
    ):
        if not outputs:
            raise ValueError("listener needs at least one output queue")
        if max_datagram_size <= 0:
            raise ValueError("max_datagram_size must be > 0")
        self._host = host
        self._port = port
        self._outputs = dict(outputs)
        self._max_size = max_datagram_size
        self._close_timeout = close_timeout
        self._drops = {
            name: SampledDropLog(f"listener->{name}", every=drop_log_every)
            for name in self._outputs
        }

        self._state = ListenerState.IDLE
        self._transport: Optional[asyncio.DatagramTransport] = None
        self._released: Optional[asyncio.Future[None]] = None

        self.received = 0
        self.truncated = 0
        self.receive_errors = 0

    # ---------- properties ----------

    @property
    def state(self) -> ListenerState:
        return self._state

    @property
    def address(self) -> Optional[str]:
        """Bound ``host:port`` while listening."""
        if self._transport is None:
            return None
        sockname = self._transport.get_extra_info("sockname")
        return f"{sockname[0]}:{sockname[1]}" if sockname else None

    @property
    def dropped(self) -> dict[str, int]:
        return {name: log.count for name, log in self._drops.items()}

    # ---------- lifecycle ----------

    async def start(self) -> None:
        if self._state is not ListenerState.IDLE:
            raise RuntimeError(f"listener cannot start from state {self._state.value}")

        loop = asyncio.get_running_loop()
        self._released = loop.create_future()
        transport, _ = await loop.create_datagram_endpoint(
            lambda: _ListenerProtocol(self),
            local_addr=(self._host, self._port),
        )
        self._transport = transport
        self._state = ListenerState.LISTENING
        logger.info(f"Started listening on UDP {self.address}")

    async def close(self) -> None:
        """Stop receiving and release the socket. Safe to call repeatedly."""
        if self._state in (ListenerState.CLOSING, ListenerState.CLOSED):
            return
        if self._state is ListenerState.IDLE:
            self._state = ListenerState.CLOSED
            return

        self._state = ListenerState.CLOSING
        logger.info("Closing UDP listener...")
        transport, self._transport = self._transport, None
        if transport is not None:
            transport.close()
        if self._released is not None:
            try:
                await asyncio.wait_for(asyncio.shield(self._released), timeout=self._close_timeout)
            except asyncio.TimeoutError:
                logger.warning("UDP socket did not report closure in time")
        self._state = ListenerState.CLOSED
        logger.info(
            f"UDP listener closed (received={self.received} dropped={self.dropped} "
            f"errors={self.receive_errors})"
        )

    # ---------- protocol callbacks ----------

    def _on_datagram(self, data: bytes, addr: Any) -> None:
        if self._state is not ListenerState.LISTENING:
            return

        self.received += 1
        DATAGRAMS_RECEIVED_TOTAL.inc()
        if len(data) > self._max_size:
            self.truncated += 1
            DATAGRAMS_TRUNCATED_TOTAL.inc()
            data = data[: self._max_size]

        # bytes() makes an owned copy when the transport hands over a buffer view
        frame = RawFrame(payload=bytes(data), received_at=utc_now(), peer=_format_peer(addr))
        for name, queue in self._outputs.items():
            result = queue.try_put(frame)
            if not result.accepted:
                self._drops[name].record(result)

    def _on_error(self, exc: Exception) -> None:
        if self._state is not ListenerState.LISTENING:
            return  # caused by our own shutdown
        self.receive_errors += 1
        RECEIVE_ERRORS_TOTAL.inc()
        logger.warning(f"Failed to read UDP data: {type(exc).__name__}: {exc}")

    def _on_connection_lost(self, exc: Optional[Exception]) -> None:
        if self._released is not None and not self._released.done():
            self._released.set_result(None)
        if exc is not None and self._state is ListenerState.LISTENING:
            logger.error(f"UDP socket lost unexpectedly: {exc}")


def _format_peer(addr: Any) -> Optional[str]:
    if isinstance(addr, tuple) and len(addr) >= 2:
        return f"{addr[0]}:{addr[1]}"
    return None
