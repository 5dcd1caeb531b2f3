# queuewarden/metrics.py
"""
QueueWarden Metrics
-------------------

Prometheus metric definitions on a dedicated registry, exposed by GET /metrics.

 - cycles / decisions counters for the polling driver
 - operation outcome counter, in-flight gauge, duration histogram
 - stuck-operation sweep counter
 - per-queue pending / consumer gauges (mapped queues only)
"""

from __future__ import annotations

from typing import Iterable, Tuple

from prometheus_client import CollectorRegistry, Counter, Gauge, Histogram, generate_latest
from prometheus_client.exposition import CONTENT_TYPE_LATEST

# -----------------------------------------------------------------------------
# Prometheus metric definitions (central registry)
# -----------------------------------------------------------------------------
PROM_REGISTRY = CollectorRegistry(auto_describe=False)

QW_CYCLES = Counter("queuewarden_cycles_total", "Polling cycles run", ["status"], registry=PROM_REGISTRY)
QW_DECISIONS = Counter("queuewarden_decisions_total", "Per-workload verdicts produced", ["verdict"], registry=PROM_REGISTRY)
QW_OPERATIONS = Counter("queuewarden_operations_total", "Lifecycle operations by outcome", ["action", "outcome"], registry=PROM_REGISTRY)
QW_IN_FLIGHT = Gauge("queuewarden_operations_in_flight", "Lifecycle operations currently claimed", registry=PROM_REGISTRY)
QW_STUCK = Counter("queuewarden_stuck_operations_total", "Operations force-removed by the stuck sweep", registry=PROM_REGISTRY)
QW_OPERATION_SECONDS = Histogram(
    "queuewarden_operation_duration_seconds",
    "Lifecycle operation wall time",
    ["action"],
    buckets=(1, 5, 15, 30, 60, 120, 300, 600, 900, 1800, 3600),
    registry=PROM_REGISTRY,
)
QW_QUEUE_PENDING = Gauge("queuewarden_queue_pending", "Pending messages per mapped queue", ["queue"], registry=PROM_REGISTRY)
QW_QUEUE_CONSUMERS = Gauge("queuewarden_queue_consumers", "Connected consumers per mapped queue", ["queue"], registry=PROM_REGISTRY)


def record_queue_gauges(samples: Iterable[Tuple[str, int, int]]):
    """samples: (queue, pending, consumers)"""
    for queue, pending, consumers in samples:
        QW_QUEUE_PENDING.labels(queue=queue).set(pending)
        QW_QUEUE_CONSUMERS.labels(queue=queue).set(consumers)


def render_latest() -> Tuple[bytes, str]:
    """Return (payload, content_type) for a scrape."""
    return generate_latest(PROM_REGISTRY), CONTENT_TYPE_LATEST


__all__ = [
    "PROM_REGISTRY",
    "QW_CYCLES",
    "QW_DECISIONS",
    "QW_OPERATIONS",
    "QW_IN_FLIGHT",
    "QW_STUCK",
    "QW_OPERATION_SECONDS",
    "QW_QUEUE_PENDING",
    "QW_QUEUE_CONSUMERS",
    "record_queue_gauges",
    "render_latest",
]
