"""Durable retry/backoff delivery queue

Producer -> QueueStore -> RetryScheduler -> Dispatcher -> sink, with:
- QueueStore backends (memory, JSON file, Postgres)
- BackoffPolicy (exponential or fixed interval)
- ErrorClassifier (RETRYABLE vs PERMANENT)
- Bounded dead-letter log (file-based NDJSON)
- Per-attempt event bus
- Prometheus metrics
- Environment-based settings
"""

from .types import (
    QueueItem,
    ItemStatus,
    DeliveryResult,
    Dispatcher,
    QueueStatus,
    QueueItemStatus,
    utc_now,
)
from .errors import (
    RelayError,
    DeliveryError,
    TransientDeliveryError,
    PermanentDeliveryError,
    RetriesExhausted,
    StoreIOError,
    ItemNotFoundError,
    QueueFullError,
)
from .policy import (
    BackoffPolicy,
    Classification,
    ErrorClassifier,
    classify_status,
    default_error_classifier,
)
from .store import QueueStore, MemoryQueueStore, JsonFileQueueStore
from .dlq import DeadLetterQueue, DLQRecord
from .events import DeliveryEvent, DeliveryEventBus
from .scheduler import RetryScheduler, TickReport
from .settings import DeliveryRuntimeSettings

__all__ = [
    # types
    "QueueItem",
    "ItemStatus",
    "DeliveryResult",
    "Dispatcher",
    "QueueStatus",
    "QueueItemStatus",
    "utc_now",
    # errors
    "RelayError",
    "DeliveryError",
    "TransientDeliveryError",
    "PermanentDeliveryError",
    "RetriesExhausted",
    "StoreIOError",
    "ItemNotFoundError",
    "QueueFullError",
    # policies
    "BackoffPolicy",
    "Classification",
    "ErrorClassifier",
    "classify_status",
    "default_error_classifier",
    # stores
    "QueueStore",
    "MemoryQueueStore",
    "JsonFileQueueStore",
    # runtime
    "RetryScheduler",
    "TickReport",
    "DeliveryRuntimeSettings",
    "DeliveryEvent",
    "DeliveryEventBus",
    # tooling
    "DeadLetterQueue",
    "DLQRecord",
]
