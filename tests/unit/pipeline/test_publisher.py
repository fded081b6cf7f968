"""
Unit tests for Publisher.
"""

import pytest

from edge_relay.models import RawFrame
from edge_relay.pipeline import BoundedQueue, Publisher

pytestmark = pytest.mark.timeout(5)


def make_publisher(sink, **kwargs):
    q = BoundedQueue[RawFrame](100, name="publish")
    kwargs.setdefault("topic", "root/root_01/navigation/gps/v1.0/report")
    return q, Publisher(q, sink, **kwargs)


@pytest.mark.asyncio
async def test_publishes_in_order_then_stops_on_close(publish_sink):
    q, pub = make_publisher(publish_sink, qos=1, retain=True)
    pub.start()
    for i in range(10):
        q.try_put(RawFrame(payload=f"m{i}".encode()))
    q.close()

    assert await pub.join(1.0)
    assert not pub.alive
    assert publish_sink.payloads == [f"m{i}".encode() for i in range(10)]
    topic, qos, retain, _ = publish_sink.published[0]
    assert (topic, qos, retain) == ("root/root_01/navigation/gps/v1.0/report", 1, True)
    assert pub.published == 10

    # the sink belongs to the caller
    assert publish_sink.disconnected is False


@pytest.mark.asyncio
async def test_failed_publish_is_logged_and_skipped(publish_sink):
    """One failure loses that item only; later items still go out."""
    publish_sink.fail_payloads = {b"bad"}
    q, pub = make_publisher(publish_sink)
    pub.start()
    for p in (b"ok-1", b"bad", b"ok-2"):
        q.try_put(RawFrame(payload=p))
    q.close()

    assert await pub.join(1.0)
    assert publish_sink.payloads == [b"ok-1", b"ok-2"]
    assert pub.failed == 1
    assert pub.published == 2


@pytest.mark.asyncio
async def test_start_twice_raises(publish_sink):
    q, pub = make_publisher(publish_sink)
    pub.start()
    with pytest.raises(RuntimeError):
        pub.start()
    q.close()
    await pub.join(1.0)
