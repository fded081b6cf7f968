from __future__ import annotations

import asyncio
from typing import Any, Generic, Optional, TypeVar

from loguru import logger

from ..errors import QueueClosedError
from .types import EnqueueResult

T = TypeVar("T")

_CLOSED: Any = object()


class BoundedQueue(Generic[T]):
    """Closable bounded FIFO: producers never wait, consumers wait on get().

    ``try_put`` either accepts the item or reports FULL/CLOSED immediately.
    ``close`` lets consumers drain what is buffered, after which ``get`` raises
    QueueClosedError for every consumer.
    """

    def __init__(self, capacity: int, *, name: str = "queue"):
        if capacity <= 0:
            raise ValueError("capacity must be > 0")

        self._capacity = capacity
        self._name = name
        # Capacity is enforced in try_put; the inner queue is unbounded so the
        # close marker always fits.
        self._q: asyncio.Queue[Any] = asyncio.Queue()
        self._size = 0
        self._closed = False
        self._drained = False

    @property
    def name(self) -> str:
        return self._name

    @property
    def capacity(self) -> int:
        return self._capacity

    @property
    def size(self) -> int:
        return self._size

    @property
    def closed(self) -> bool:
        return self._closed

    def full(self) -> bool:
        return self._size >= self._capacity

    def empty(self) -> bool:
        return self._size == 0

    def try_put(self, item: T) -> EnqueueResult:
        """Enqueue without waiting. Never raises for a full or closed queue."""
        if self._closed:
            return EnqueueResult.CLOSED
        if self._size >= self._capacity:
            return EnqueueResult.FULL
        self._q.put_nowait(item)
        self._size += 1
        return EnqueueResult.ACCEPTED

    async def get(self, timeout: Optional[float] = None) -> T:
        """Next item in FIFO order.

        Raises:
            QueueClosedError: queue closed and every buffered item consumed
            asyncio.TimeoutError: nothing arrived within ``timeout`` seconds
        """
        if self._drained:
            raise QueueClosedError(f"{self._name} is closed")

        if not self._q.empty():
            item = self._q.get_nowait()
        elif timeout is None:
            item = await self._q.get()
        else:
            item = await asyncio.wait_for(self._q.get(), timeout=max(0.0, timeout))

        if item is _CLOSED:
            self._drained = True
            # leave the marker for any other consumer parked on get()
            self._q.put_nowait(_CLOSED)
            raise QueueClosedError(f"{self._name} is closed")

        self._size -= 1
        return item

    def close(self) -> None:
        """Stop accepting items. Safe to call multiple times."""
        if self._closed:
            return
        self._closed = True
        self._q.put_nowait(_CLOSED)
        logger.debug(f"Queue {self._name} closed with {self._size} item(s) pending")
