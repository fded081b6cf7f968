"""
Unit tests for BoundedQueue.
"""

import asyncio
import time

import pytest

from edge_relay.errors import QueueClosedError
from edge_relay.pipeline import BoundedQueue, EnqueueResult


def test_capacity_must_be_positive():
    with pytest.raises(ValueError):
        BoundedQueue[int](capacity=0)


@pytest.mark.asyncio
async def test_fifo_order_preserved():
    """Accepted items come out in the order they went in."""
    q = BoundedQueue[int](capacity=10)
    for i in range(10):
        assert q.try_put(i) is EnqueueResult.ACCEPTED

    items = [await q.get() for _ in range(10)]
    assert items == list(range(10))
    assert q.size == 0


@pytest.mark.asyncio
async def test_try_put_rejects_when_full_without_waiting():
    """A full queue reports FULL immediately and keeps its contents."""
    q = BoundedQueue[int](capacity=3)
    for i in range(3):
        q.try_put(i)
    assert q.full()

    t0 = time.perf_counter()
    results = [q.try_put(99) for _ in range(1000)]
    elapsed = time.perf_counter() - t0

    assert all(r is EnqueueResult.FULL for r in results)
    assert elapsed < 0.5
    assert q.size == 3
    assert [await q.get() for _ in range(3)] == [0, 1, 2]

    # space frees up once the consumer catches up
    assert q.try_put(4).accepted


@pytest.mark.asyncio
async def test_get_waits_for_item():
    q = BoundedQueue[str](capacity=2)

    async def produce_later():
        await asyncio.sleep(0.05)
        q.try_put("late")

    asyncio.create_task(produce_later())
    assert await q.get() == "late"


@pytest.mark.asyncio
async def test_get_timeout():
    q = BoundedQueue[int](capacity=2)
    with pytest.raises(asyncio.TimeoutError):
        await q.get(timeout=0.05)


@pytest.mark.asyncio
async def test_close_drains_pending_then_raises():
    """Buffered items stay readable after close; then get raises QueueClosedError."""
    q = BoundedQueue[int](capacity=5)
    q.try_put(1)
    q.try_put(2)
    q.close()

    assert q.closed
    assert await q.get() == 1
    assert await q.get() == 2
    with pytest.raises(QueueClosedError):
        await q.get()
    # and keeps raising
    with pytest.raises(QueueClosedError):
        await q.get(timeout=0.01)


@pytest.mark.asyncio
async def test_close_is_idempotent_and_rejects_late_puts():
    q = BoundedQueue[int](capacity=5)
    q.close()
    q.close()

    assert q.try_put(1) is EnqueueResult.CLOSED
    assert q.size == 0
    with pytest.raises(QueueClosedError):
        await q.get()


@pytest.mark.asyncio
async def test_close_wakes_all_waiting_consumers():
    """Every consumer parked on get() observes the close."""
    q = BoundedQueue[int](capacity=5)

    async def consume():
        with pytest.raises(QueueClosedError):
            await q.get()
        return True

    waiters = [asyncio.create_task(consume()) for _ in range(3)]
    await asyncio.sleep(0.01)
    q.close()

    results = await asyncio.wait_for(asyncio.gather(*waiters), timeout=1.0)
    assert results == [True, True, True]


@pytest.mark.asyncio
async def test_close_on_full_queue():
    """Closing never needs free capacity."""
    q = BoundedQueue[int](capacity=1)
    q.try_put(7)
    q.close()

    assert await q.get() == 7
    with pytest.raises(QueueClosedError):
        await q.get()


@pytest.mark.asyncio
async def test_timed_out_get_does_not_lose_items():
    q = BoundedQueue[int](capacity=5)
    with pytest.raises(asyncio.TimeoutError):
        await q.get(timeout=0.01)

    q.try_put(42)
    assert await q.get(timeout=0.5) == 42
    assert q.size == 0
