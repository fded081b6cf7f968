"""
Relay orchestration.

Wires listener, queues and consumers for whichever sinks are enabled:

    socket -> UdpListener -+-> [publish]  -> Publisher   -> MQTT
                           +-> [convert]  -> Converter -> [records] -> BatchWriter -> TimescaleDB

Startup connects sinks first (failures are fatal), then starts consumers, then
binds the socket. Shutdown runs the other way round: release the socket, close
the frame queues, let every consumer drain within the grace period, cancel the
stragglers, then release the sinks.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional

from loguru import logger

from ..config import RelaySettings
from ..metrics import QUEUE_DEPTH
from ..models import RawFrame, Record
from .batch_writer import BatchWriter
from .converter import Converter
from .listener import UdpListener
from .publisher import Publisher
from .queue import BoundedQueue
from .types import PersistenceSink, PublishSink
from .worker import QueueWorker


class RelayState(str, Enum):
    CREATED = "created"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"
    STOPPED = "stopped"


@dataclass(frozen=True)
class RelayHealth:
    state: str
    listener_state: str
    listen_address: Optional[str]
    workers_alive: int
    queue_sizes: dict[str, int] = field(default_factory=dict)
    queue_capacities: dict[str, int] = field(default_factory=dict)
    dropped: dict[str, int] = field(default_factory=dict)
    published: int = 0
    publish_failures: int = 0
    records_written: int = 0
    records_discarded: int = 0
    pending_batch: int = 0


class Relay:
    """Edge relay: one UDP socket fanned out to MQTT and/or TimescaleDB.

    Sinks default to the ones described by ``settings``; pass them explicitly
    to substitute other implementations of the sink protocols.

    Example:
        async with Relay(get_settings()) as relay:
            await stop_event.wait()
    """

    def __init__(
        self,
        settings: RelaySettings,
        *,
        publish_sink: Optional[PublishSink] = None,
        persistence_sink: Optional[PersistenceSink] = None,
        metrics_poll_sec: float = 1.0,
        cancel_timeout: float = 1.0,
    ):
        self._settings = settings
        if publish_sink is None and settings.mqtt_enabled:
            from ..sinks.mqtt import MqttSink

            publish_sink = MqttSink.from_settings(settings)
        if persistence_sink is None and settings.timescale_enabled:
            from ..sinks.timescale import TimescaleSink

            persistence_sink = TimescaleSink.from_settings(settings)
        self._publish_sink = publish_sink if settings.mqtt_enabled else None
        self._persistence_sink = persistence_sink if settings.timescale_enabled else None
        self._metrics_poll_sec = metrics_poll_sec
        self._cancel_timeout = cancel_timeout

        self._state = RelayState.CREATED
        self._queues: dict[str, BoundedQueue] = {}
        self._listener: Optional[UdpListener] = None
        self._publisher: Optional[Publisher] = None
        self._converter: Optional[Converter] = None
        self._writer: Optional[BatchWriter] = None
        self._metrics_task: Optional[asyncio.Task[None]] = None

    # ---------- properties ----------

    @property
    def state(self) -> RelayState:
        return self._state

    @property
    def listener(self) -> Optional[UdpListener]:
        return self._listener

    @property
    def batch_writer(self) -> Optional[BatchWriter]:
        return self._writer

    @property
    def publisher(self) -> Optional[Publisher]:
        return self._publisher

    @property
    def workers(self) -> list[QueueWorker]:
        # pipeline order: upstream consumers first
        return [w for w in (self._publisher, self._converter, self._writer) if w is not None]

    # ---------- lifecycle ----------

    async def __aenter__(self) -> "Relay":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.stop()

    async def start(self) -> None:
        if self._state is not RelayState.CREATED:
            raise RuntimeError(f"relay cannot start from state {self._state.value}")
        self._state = RelayState.STARTING
        s = self._settings

        try:
            await self._connect_sinks()
        except BaseException:
            await self._close_sinks()
            self._state = RelayState.STOPPED
            raise

        outputs: dict[str, BoundedQueue[RawFrame]] = {}
        if self._publish_sink is not None:
            publish_q = BoundedQueue[RawFrame](s.publish_queue_capacity, name="publish")
            outputs["publish"] = publish_q
            self._publisher = Publisher(
                publish_q,
                self._publish_sink,
                topic=s.mqtt_topic,
                qos=s.mqtt_qos,
                retain=s.mqtt_retain,
            )
        if self._persistence_sink is not None:
            convert_q = BoundedQueue[RawFrame](s.convert_queue_capacity, name="convert")
            record_q = BoundedQueue[Record](s.record_queue_capacity, name="records")
            outputs["convert"] = convert_q
            self._queues["records"] = record_q
            self._converter = Converter(
                convert_q,
                record_q,
                source_address=s.record_source,
                use_peer_address=s.use_peer_address,
                drop_log_every=s.drop_log_every,
            )
            self._writer = BatchWriter(
                record_q,
                self._persistence_sink,
                batch_size=s.batch_size,
                flush_interval=s.flush_interval,
                flush_timeout=s.flush_timeout,
                rollback_timeout=s.rollback_timeout,
            )
        self._queues.update(outputs)

        for worker in reversed(self.workers):
            worker.start()

        self._listener = UdpListener(
            s.listen_host,
            s.listen_port,
            outputs,
            max_datagram_size=s.max_datagram_size,
            drop_log_every=s.drop_log_every,
        )
        try:
            await self._listener.start()
        except BaseException:
            logger.error(f"Failed to start UDP listener on {s.listen_address}")
            await self._shutdown(grace=0.0)
            raise

        self._metrics_task = asyncio.create_task(self._metrics_loop(), name="relay-metrics")
        self._state = RelayState.RUNNING
        logger.info(
            f"Relay started: udp={self._listener.address} "
            f"sinks={[n for n in ('mqtt', 'timescale') if self._sink_enabled(n)]}"
        )

    async def stop(self, timeout: Optional[float] = None) -> None:
        """Drain and release everything. Never raises for in-flight loss."""
        if self._state in (RelayState.STOPPING, RelayState.STOPPED):
            return
        if self._state is RelayState.CREATED:
            self._state = RelayState.STOPPED
            return
        grace = self._settings.shutdown_grace if timeout is None else timeout
        logger.info("Shutting down relay...")
        await self._shutdown(grace)
        logger.info("Relay stopped")

    async def _shutdown(self, grace: float) -> None:
        self._state = RelayState.STOPPING

        if self._listener is not None:
            await self._listener.close()
        for name in ("publish", "convert"):
            queue = self._queues.get(name)
            if queue is not None:
                queue.close()

        loop = asyncio.get_running_loop()
        deadline = loop.time() + grace
        stragglers: list[QueueWorker] = []
        for worker in self.workers:
            if not await worker.join(max(0.0, deadline - loop.time())):
                stragglers.append(worker)
        await asyncio.gather(*(w.cancel(self._cancel_timeout) for w in stragglers))
        if stragglers:
            logger.warning(
                f"Shutdown grace of {grace}s expired; cancelled {[w.name for w in stragglers]}"
            )

        if self._metrics_task is not None:
            self._metrics_task.cancel()
            await asyncio.gather(self._metrics_task, return_exceptions=True)
            self._metrics_task = None

        await self._close_sinks()
        self._state = RelayState.STOPPED

    async def _connect_sinks(self) -> None:
        if self._publish_sink is not None:
            await self._publish_sink.connect()
        if self._persistence_sink is not None:
            await self._persistence_sink.connect()
            await self._persistence_sink.ensure_schema(self._settings.table_name)

    async def _close_sinks(self) -> None:
        if self._publish_sink is not None:
            try:
                await self._publish_sink.disconnect(self._settings.mqtt_disconnect_timeout_ms)
            except Exception as exc:
                logger.warning(f"MQTT disconnect failed: {exc}")
        if self._persistence_sink is not None:
            try:
                await self._persistence_sink.close()
            except Exception as exc:
                logger.warning(f"Closing persistence sink failed: {exc}")

    def _sink_enabled(self, name: str) -> bool:
        if name == "mqtt":
            return self._publish_sink is not None
        return self._persistence_sink is not None

    # ---------- health / metrics ----------

    def health(self) -> RelayHealth:
        listener = self._listener
        return RelayHealth(
            state=self._state.value,
            listener_state=listener.state.value if listener else "idle",
            listen_address=listener.address if listener else None,
            workers_alive=sum(1 for w in self.workers if w.alive),
            queue_sizes={n: q.size for n, q in self._queues.items()},
            queue_capacities={n: q.capacity for n, q in self._queues.items()},
            dropped={
                **({f"listener->{n}": c for n, c in listener.dropped.items()} if listener else {}),
                **({"converter": self._converter.dropped} if self._converter else {}),
            },
            published=self._publisher.published if self._publisher else 0,
            publish_failures=self._publisher.failed if self._publisher else 0,
            records_written=self._writer.records_written if self._writer else 0,
            records_discarded=self._writer.records_discarded if self._writer else 0,
            pending_batch=self._writer.pending if self._writer else 0,
        )

    async def _metrics_loop(self) -> None:
        while True:
            for name, queue in self._queues.items():
                QUEUE_DEPTH.labels(queue=name).set(queue.size)
            await asyncio.sleep(self._metrics_poll_sec)
