"""
Queue consumers.

Each pipeline stage is one asyncio task draining one BoundedQueue. A stage ends
when its queue is closed and drained; nothing else stops it short of
cancellation.
"""

from __future__ import annotations

import asyncio
from typing import Generic, Optional, TypeVar

from loguru import logger

from ..errors import QueueClosedError
from ..metrics import DROPPED_TOTAL
from .queue import BoundedQueue
from .types import EnqueueResult

T = TypeVar("T")


class SampledDropLog:
    """Counts drops for one stage; logs the first and then every Nth.

    Under sustained overload every datagram can be a drop, so logging each one
    would flood the log. The Prometheus counter still sees all of them.
    """

    def __init__(self, stage: str, every: int = 100):
        if every <= 0:
            raise ValueError("every must be > 0")
        self.stage = stage
        self.every = every
        self.count = 0

    def record(self, result: EnqueueResult) -> None:
        self.count += 1
        DROPPED_TOTAL.labels(stage=self.stage).inc()
        if self.count == 1 or self.count % self.every == 0:
            logger.warning(
                f"{self.stage}: queue {result.value}, dropping data (dropped so far: {self.count})"
            )


class QueueWorker(Generic[T]):
    """Single consumer task over a BoundedQueue.

    Item-at-a-time stages implement ``handle`` (and optionally ``on_closed``)
    and keep the default ``_run`` loop. Stages that need their own loop, such
    as the batch writer with its flush timer, replace ``_run`` instead and
    never call ``handle``; the lifecycle methods work the same either way.
    """

    name = "worker"

    def __init__(self, queue: BoundedQueue[T]):
        self._queue = queue
        self._task: Optional[asyncio.Task[None]] = None

    @property
    def queue(self) -> BoundedQueue[T]:
        return self._queue

    @property
    def alive(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self._task is not None:
            raise RuntimeError(f"{self.name} already started")
        self._task = asyncio.create_task(self._run(), name=self.name)

    async def join(self, timeout: Optional[float] = None) -> bool:
        """Wait for the task to finish. Returns False if ``timeout`` expired first."""
        task = self._task
        if task is None:
            return True
        done, _ = await asyncio.wait({task}, timeout=timeout)
        if not done:
            return False
        if not task.cancelled() and task.exception() is not None:
            exc = task.exception()
            logger.error(f"{self.name} crashed: {type(exc).__name__}: {exc}")
        return True

    async def cancel(self, timeout: float = 1.0) -> bool:
        """Cancel the task and wait up to ``timeout`` for it to finish.

        Returns False if the task is still running after the timeout; it is
        then left to finish on its own.
        """
        task = self._task
        if task is None or task.done():
            return True
        task.cancel()
        done, _ = await asyncio.wait({task}, timeout=timeout)
        if not done:
            logger.error(
                f"{self.name} did not stop within {timeout}s of cancellation; abandoning it"
            )
            return False
        logger.warning(f"{self.name} cancelled before draining its queue")
        return True

    async def _run(self) -> None:
        while True:
            try:
                item = await self._queue.get()
            except QueueClosedError:
                break
            await self.handle(item)
        await self.on_closed()
        logger.info(f"{self.name} stopped")

    async def handle(self, item: T) -> None:
        """Process one item. Required unless ``_run`` is replaced."""
        raise NotImplementedError(f"{type(self).__name__} must implement handle()")

    async def on_closed(self) -> None:
        """Hook run once after the input queue is closed and drained."""
        return None
