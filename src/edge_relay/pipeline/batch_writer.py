"""
Batch writer for the persistence path.

Accumulates records and writes them in one transaction when the batch reaches
``batch_size``, when ``flush_interval`` elapses, or when the input queue is
closed. Delivery is at-most-once: a failed flush discards exactly the records
in that batch, nothing is retried or split, and the next record starts a fresh
batch.

States:
    ACCUMULATING -> DRAINING (input closed) -> STOPPED (after the final flush)
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from time import perf_counter
from typing import Callable, List, Optional, Sequence

from loguru import logger

from ..errors import QueueClosedError, map_db_error
from ..metrics import FLUSH_LATENCY, FLUSH_TOTAL, RECORDS_DISCARDED_TOTAL, RECORDS_WRITTEN_TOTAL
from ..models import InsertRow, Record, utc_now
from .queue import BoundedQueue
from .types import BatchTransaction, PersistenceSink
from .worker import QueueWorker


class WriterState(str, Enum):
    ACCUMULATING = "accumulating"
    DRAINING = "draining"
    STOPPED = "stopped"


class FlushTrigger(str, Enum):
    SIZE = "size"
    TIMER = "timer"
    CLOSE = "close"


@dataclass(frozen=True)
class FlushResult:
    trigger: FlushTrigger
    size: int
    ok: bool
    error: Optional[str] = None


class BatchWriter(QueueWorker[Record]):
    """Persistence consumer. Replaces the per-item loop with a deadline loop."""

    name = "batch_writer"

    def __init__(
        self,
        records: BoundedQueue[Record],
        sink: PersistenceSink,
        *,
        batch_size: int = 100,
        flush_interval: float = 5.0,
        flush_timeout: Optional[float] = None,
        rollback_timeout: float = 2.0,
        clock: Callable[[], datetime] = utc_now,
    ):
        if batch_size <= 0:
            raise ValueError("batch_size must be > 0")
        if flush_interval <= 0:
            raise ValueError("flush_interval must be > 0")
        if rollback_timeout <= 0:
            raise ValueError("rollback_timeout must be > 0")
        super().__init__(records)
        self._sink = sink
        self._batch_size = batch_size
        self._flush_interval = flush_interval
        self._flush_timeout = flush_timeout
        self._rollback_timeout = rollback_timeout
        self._clock = clock

        self._batch: List[Record] = []
        self._state = WriterState.ACCUMULATING

        self.flushes = 0
        self.failed_flushes = 0
        self.records_written = 0
        self.records_discarded = 0
        self.last_flush: Optional[FlushResult] = None

    @property
    def state(self) -> WriterState:
        return self._state

    @property
    def pending(self) -> int:
        return len(self._batch)

    async def _run(self) -> None:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self._flush_interval
        try:
            while True:
                remaining = deadline - loop.time()
                if remaining <= 0:
                    await self.flush(FlushTrigger.TIMER)
                    deadline = loop.time() + self._flush_interval
                    continue
                try:
                    record = await self._queue.get(timeout=remaining)
                except asyncio.TimeoutError:
                    continue  # deadline reached, flushed at the top of the loop
                except QueueClosedError:
                    break

                self._batch.append(record)
                if len(self._batch) >= self._batch_size:
                    await self.flush(FlushTrigger.SIZE)
                    deadline = loop.time() + self._flush_interval

            self._state = WriterState.DRAINING
            await self.flush(FlushTrigger.CLOSE)
        finally:
            self._state = WriterState.STOPPED
            if self._batch:
                self._discard(len(self._batch))
                self._batch.clear()
        logger.info(
            f"Batch writer stopped (written={self.records_written} "
            f"discarded={self.records_discarded})"
        )

    async def flush(self, trigger: FlushTrigger) -> Optional[FlushResult]:
        """Write the current batch in one transaction and reset it.

        Returns None when there was nothing to write.
        """
        if self._state is WriterState.STOPPED or not self._batch:
            return None

        batch, self._batch = self._batch, []
        t0 = perf_counter()
        try:
            if self._flush_timeout is None:
                await self._write(batch)
            else:
                await asyncio.wait_for(self._write(batch), timeout=self._flush_timeout)
        except asyncio.CancelledError:
            self._discard(len(batch))
            raise
        except Exception as exc:
            err = map_db_error(exc)
            self.flushes += 1
            self.failed_flushes += 1
            self._discard(len(batch))
            FLUSH_TOTAL.labels(trigger=trigger.value, outcome="failure").inc()
            logger.error(
                f"Failed to batch insert {len(batch)} records ({trigger.value}): "
                f"{type(err).__name__}: {err}"
            )
            result = FlushResult(trigger, len(batch), ok=False, error=str(err))
        else:
            self.flushes += 1
            self.records_written += len(batch)
            RECORDS_WRITTEN_TOTAL.inc(len(batch))
            FLUSH_TOTAL.labels(trigger=trigger.value, outcome="success").inc()
            FLUSH_LATENCY.observe(perf_counter() - t0)
            logger.debug(f"Batch inserted {len(batch)} records ({trigger.value})")
            result = FlushResult(trigger, len(batch), ok=True)

        self.last_flush = result
        return result

    async def _write(self, batch: Sequence[Record]) -> None:
        # one insert time for the whole batch
        timestamp = self._clock()
        tx = await self._sink.begin_batch()
        try:
            for record in batch:
                await tx.insert(InsertRow.from_record(record, timestamp))
            await tx.commit()
        except BaseException:
            # includes cancellation: never leave the transaction open
            await self._rollback(tx)
            raise

    async def _rollback(self, tx: BatchTransaction) -> None:
        """Roll back within ``rollback_timeout``; a stuck rollback is abandoned.

        The rollback runs as its own task so an unresponsive connection cannot
        hold up the flush. An abandoned rollback is cancelled, which makes the
        sink drop that connection instead of returning it to the pool.
        """
        task = asyncio.ensure_future(tx.rollback())
        try:
            done, _ = await asyncio.wait({task}, timeout=self._rollback_timeout)
        except asyncio.CancelledError:
            task.cancel()
            raise
        if not done:
            task.cancel()
            task.add_done_callback(_consume_result)
            logger.warning(
                f"Rollback did not complete within {self._rollback_timeout}s; "
                "dropping the connection"
            )
            return
        if not task.cancelled() and task.exception() is not None:
            exc = task.exception()
            logger.warning(f"Rollback failed: {type(exc).__name__}: {exc}")

    def _discard(self, n: int) -> None:
        self.records_discarded += n
        RECORDS_DISCARDED_TOTAL.inc(n)


def _consume_result(task: "asyncio.Future[None]") -> None:
    # abandoned rollbacks finish unobserved; keep asyncio from reporting them
    if not task.cancelled():
        task.exception()
