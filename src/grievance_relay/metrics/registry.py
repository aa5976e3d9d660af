"""
Delivery queue metrics in the Prometheus global REGISTRY.
Import this module at app startup (the scheduler imports it too).
"""

from prometheus_client import Counter, Gauge, Histogram


DELIVERY_ATTEMPTS_TOTAL = Counter(
    "relay_delivery_attempts_total",
    "Dispatch attempts by outcome (delivered, retrying, abandoned)",
    ["queue", "outcome"],
)

DELIVERY_LATENCY_SECONDS = Histogram(
    "relay_dispatch_latency_seconds",
    "Dispatcher.send latency in seconds",
    ["queue"],
    buckets=[0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1, 2.5, 5, 10, 30],
)

QUEUE_DEPTH = Gauge(
    "relay_queue_depth",
    "Items in the active store after the last tick",
    ["queue"],
)

TICKS_TOTAL = Counter(
    "relay_ticks_total",
    "Scheduler ticks by result (ok, skipped, aborted)",
    ["queue", "result"],
)

ENQUEUE_REJECTED_TOTAL = Counter(
    "relay_enqueue_rejected_total",
    "Enqueue calls rejected because the queue was full",
    ["queue"],
)


class MetricsRegistry:
    """Structured access to the delivery metrics."""

    delivery_attempts_total = DELIVERY_ATTEMPTS_TOTAL
    delivery_latency_seconds = DELIVERY_LATENCY_SECONDS
    queue_depth = QUEUE_DEPTH
    ticks_total = TICKS_TOTAL
    enqueue_rejected_total = ENQUEUE_REJECTED_TOTAL


# Singleton instance
metrics_registry = MetricsRegistry()
