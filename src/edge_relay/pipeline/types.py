"""Shared pipeline types: sink contracts and enqueue results."""

from __future__ import annotations

from enum import Enum
from typing import Protocol, Sequence, runtime_checkable

from ..models import InsertRow, StoredRecord


class EnqueueResult(str, Enum):
    """Outcome of a non-blocking enqueue."""

    ACCEPTED = "accepted"
    FULL = "full"
    CLOSED = "closed"

    @property
    def accepted(self) -> bool:
        return self is EnqueueResult.ACCEPTED


@runtime_checkable
class PublishSink(Protocol):
    """Pub/sub side of the relay (an MQTT broker in production)."""

    async def connect(self) -> None: ...

    async def publish(self, topic: str, qos: int, retain: bool, payload: bytes) -> None: ...

    async def disconnect(self, timeout_ms: int = 250) -> None: ...


class BatchTransaction(Protocol):
    """One open write transaction on the persistence sink."""

    async def insert(self, row: InsertRow) -> None: ...

    async def commit(self) -> None: ...

    async def rollback(self) -> None: ...


@runtime_checkable
class PersistenceSink(Protocol):
    """Time-series store side of the relay."""

    async def connect(self) -> None: ...

    async def ensure_schema(self, table: str) -> None: ...

    async def begin_batch(self) -> BatchTransaction: ...

    async def query_recent(self, table: str, limit: int) -> Sequence[StoredRecord]: ...

    async def close(self) -> None: ...
