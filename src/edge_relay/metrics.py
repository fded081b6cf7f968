"""
Prometheus metrics for the relay.

All metrics live in the global REGISTRY; import this module at startup and,
when a metrics port is configured, expose them with ``start_http_server``.
"""

from prometheus_client import Counter, Gauge, Histogram

# --- Ingest ---

DATAGRAMS_RECEIVED_TOTAL = Counter(
    "edge_relay_datagrams_received_total",
    "Datagrams read from the listen socket",
)

DATAGRAMS_TRUNCATED_TOTAL = Counter(
    "edge_relay_datagrams_truncated_total",
    "Datagrams cut down to the maximum receive size",
)

RECEIVE_ERRORS_TOTAL = Counter(
    "edge_relay_receive_errors_total",
    "Socket receive errors while listening",
)

DROPPED_TOTAL = Counter(
    "edge_relay_dropped_total",
    "Items dropped because a downstream queue was full or closed",
    ["stage"],
)

# --- Publish path ---

PUBLISH_TOTAL = Counter(
    "edge_relay_publish_total",
    "Publish attempts to the pub/sub sink",
    ["outcome"],
)

PUBLISH_LATENCY = Histogram(
    "edge_relay_publish_latency_seconds",
    "Latency of a single publish",
    buckets=[0.001, 0.0025, 0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1, 2.5, 5],
)

# --- Persistence path ---

FLUSH_TOTAL = Counter(
    "edge_relay_flush_total",
    "Batch flush attempts",
    ["trigger", "outcome"],
)

FLUSH_LATENCY = Histogram(
    "edge_relay_flush_latency_seconds",
    "Latency of a batch flush transaction",
    buckets=[0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1, 2.5, 5, 10],
)

RECORDS_WRITTEN_TOTAL = Counter(
    "edge_relay_records_written_total",
    "Records committed to the persistence sink",
)

RECORDS_DISCARDED_TOTAL = Counter(
    "edge_relay_records_discarded_total",
    "Records lost with a failed flush",
)

# --- Queues ---

QUEUE_DEPTH = Gauge(
    "edge_relay_queue_depth",
    "Current number of items buffered in a pipeline queue",
    ["queue"],
)

