"""
Data models flowing through the relay.

Hot-path types (frames, records, insert rows) are frozen dataclasses; rows read
back from storage are pydantic models like the rest of the client surface.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional

from pydantic import BaseModel, field_validator


def utc_now() -> datetime:
    """Get current UTC datetime."""
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class RawFrame:
    """One received datagram.

    Attributes:
        payload: Owned copy of the datagram bytes (never a view on a receive buffer)
        received_at: UTC time the listener handled the datagram
        peer: "host:port" of the sender, when known
    """

    payload: bytes
    received_at: datetime = field(default_factory=utc_now)
    peer: Optional[str] = None

    @property
    def size(self) -> int:
        return len(self.payload)


@dataclass(frozen=True)
class Record:
    """A frame tagged for persistence."""

    source_address: str
    payload: bytes
    received_at: datetime


@dataclass(frozen=True)
class InsertRow:
    """Parameters of one insert inside a batch transaction."""

    source_address: str
    size: int
    raw_data: bytes
    timestamp: datetime

    @classmethod
    def from_record(cls, record: Record, timestamp: datetime) -> "InsertRow":
        return cls(
            source_address=record.source_address,
            size=len(record.payload),
            raw_data=record.payload,
            timestamp=timestamp,
        )


class StoredRecord(BaseModel):
    """Row returned by the diagnostic query, most recent first."""

    time: datetime
    source_addr: Optional[str] = None
    data_size: Optional[int] = None
    raw_data: bytes = b""
    created_at: Optional[datetime] = None

    @field_validator("raw_data", mode="before")
    @classmethod
    def _coerce_bytes(cls, v):
        # psycopg returns BYTEA as memoryview
        if isinstance(v, memoryview):
            return v.tobytes()
        if v is None:
            return b""
        return v
