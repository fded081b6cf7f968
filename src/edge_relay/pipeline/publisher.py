from __future__ import annotations

from time import perf_counter

from loguru import logger

from ..metrics import PUBLISH_LATENCY, PUBLISH_TOTAL
from ..models import RawFrame
from .queue import BoundedQueue
from .types import PublishSink
from .worker import QueueWorker


class Publisher(QueueWorker[RawFrame]):
    """Publishes every frame payload to one topic, one at a time.

    A failed publish is logged and the frame is lost; there is no retry and no
    requeue. The sink belongs to whoever built it and is not closed here.
    """

    name = "publisher"

    def __init__(
        self,
        frames: BoundedQueue[RawFrame],
        sink: PublishSink,
        *,
        topic: str,
        qos: int = 0,
        retain: bool = False,
    ):
        super().__init__(frames)
        self._sink = sink
        self._topic = topic
        self._qos = qos
        self._retain = retain
        self.published = 0
        self.failed = 0

    async def handle(self, item: RawFrame) -> None:
        t0 = perf_counter()
        try:
            await self._sink.publish(self._topic, self._qos, self._retain, item.payload)
        except Exception as exc:
            self.failed += 1
            PUBLISH_TOTAL.labels(outcome="failure").inc()
            logger.warning(f"Failed to publish to {self._topic}: {type(exc).__name__}: {exc}")
            return
        PUBLISH_LATENCY.observe(perf_counter() - t0)
        PUBLISH_TOTAL.labels(outcome="success").inc()
        self.published += 1
