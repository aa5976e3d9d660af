"""
Exceptions for the delivery queue.

Delivery failures are split into transient and permanent so the scheduler can
decide between backing off and dropping an item. Store failures abort a tick.
"""

from __future__ import annotations


class RelayError(Exception):
    """Base error for the delivery queue."""

    pass


class DeliveryError(RelayError):
    """A sink rejected or could not accept an item."""

    def __init__(self, message: str, *, status_code: int | None = None, code: str | None = None):
        super().__init__(message)
        self.status_code = status_code
        self.code = code


class TransientDeliveryError(DeliveryError):
    """Network unreachable, timeout or 5xx. Retry with backoff."""

    pass


class PermanentDeliveryError(DeliveryError):
    """4xx, malformed payload or invalid recipient. Drop immediately."""

    pass


class RetriesExhausted(DeliveryError):
    """Item hit max_attempts while its last error was still retryable."""

    def __init__(self, item_id: str, attempts: int, last_error: str | None = None):
        msg = f"item {item_id} exhausted {attempts} attempts"
        if last_error:
            msg = f"{msg}: {last_error}"
        super().__init__(msg)
        self.item_id = item_id
        self.attempts = attempts
        self.last_error = last_error


class StoreIOError(RelayError):
    """Persistence layer failure. The current tick is aborted."""

    pass


class ItemNotFoundError(RelayError, KeyError):
    """update() on an id that is not in the store."""

    def __init__(self, item_id: str):
        super().__init__(f"queue item not found: {item_id}")
        self.item_id = item_id

    def __str__(self) -> str:
        return f"queue item not found: {self.item_id}"


class QueueFullError(RelayError):
    """enqueue() beyond the configured store capacity."""

    pass
