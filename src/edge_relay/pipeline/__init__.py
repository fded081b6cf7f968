"""Ingest pipeline

UDP socket -> bounded queues -> sink consumers, with:
- BoundedQueue (non-blocking try_put, close-to-drain)
- UdpListener (drop-on-full fan-out, never blocks the socket)
- Converter (frame -> record relay)
- Publisher (one-at-a-time pub/sub publishing, lossy on failure)
- BatchWriter (size/timer/close flushes, transactional, at-most-once)
- Relay orchestration & health
"""

from .types import EnqueueResult, PublishSink, PersistenceSink, BatchTransaction
from .queue import BoundedQueue
from .worker import QueueWorker, SampledDropLog
from .listener import UdpListener, ListenerState
from .converter import Converter
from .publisher import Publisher
from .batch_writer import BatchWriter, WriterState, FlushTrigger, FlushResult
from .relay import Relay, RelayHealth, RelayState

__all__ = [
    # types
    "EnqueueResult",
    "PublishSink",
    "PersistenceSink",
    "BatchTransaction",
    "ListenerState",
    "WriterState",
    "FlushTrigger",
    "FlushResult",
    "RelayHealth",
    "RelayState",
    # runtime
    "BoundedQueue",
    "QueueWorker",
    "SampledDropLog",
    "UdpListener",
    "Converter",
    "Publisher",
    "BatchWriter",
    "Relay",
]
