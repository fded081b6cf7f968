"""
Edge Relay

Receives binary telemetry datagrams over UDP and fans them out to an MQTT topic
and a TimescaleDB table without letting either sink stall packet reception.

Usage:
    from edge_relay import Relay, RelaySettings

    async with Relay(RelaySettings()) as relay:
        ...
"""

from .config import RelaySettings, get_settings
from .errors import ConnectError, PublishError, QueueClosedError, RelayError, StorageError
from .models import InsertRow, RawFrame, Record, StoredRecord
from .pipeline import BatchWriter, BoundedQueue, Converter, Publisher, Relay, UdpListener

__version__ = "1.0.0"
__all__ = [
    "Relay",
    "RelaySettings",
    "get_settings",
    "BoundedQueue",
    "UdpListener",
    "Converter",
    "Publisher",
    "BatchWriter",
    "RawFrame",
    "Record",
    "InsertRow",
    "StoredRecord",
    "RelayError",
    "ConnectError",
    "PublishError",
    "StorageError",
    "QueueClosedError",
]
