from __future__ import annotations

import random
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Callable

import httpx

from .errors import PermanentDeliveryError, TransientDeliveryError


class Classification(str, Enum):
    RETRYABLE = "retryable"
    PERMANENT = "permanent"


ErrorClassifier = Callable[[BaseException], Classification]

# Statuses worth retrying even though they are 4xx
_RETRYABLE_4XX = {408, 425, 429}

_TRANSIENT_HINTS = ("timeout", "timed out", "temporar", "unavailable", "retry", "connection")


def _status_of(exc: BaseException) -> int | None:
    for attr in ("status_code", "status"):
        val = getattr(exc, attr, None)
        if isinstance(val, int) and not isinstance(val, bool):
            return val
    if isinstance(exc, httpx.HTTPStatusError):
        return exc.response.status_code
    return None


def classify_status(status: int) -> Classification:
    """0 (network), 408/425/429 and 5xx retry; every other status is final."""
    if status == 0 or status in _RETRYABLE_4XX or 500 <= status < 600:
        return Classification.RETRYABLE
    return Classification.PERMANENT


def default_error_classifier(exc: BaseException) -> Classification:
    """Map a delivery failure to RETRYABLE or PERMANENT.

    Typed delivery errors win, then HTTP status, then transport exception
    types, then a message heuristic. Unknown errors are PERMANENT so nothing
    is retried forever by accident.
    """
    if isinstance(exc, TransientDeliveryError):
        return Classification.RETRYABLE
    if isinstance(exc, PermanentDeliveryError):
        return Classification.PERMANENT

    status = _status_of(exc)
    if status is not None:
        return classify_status(status)

    if isinstance(exc, (httpx.TransportError, TimeoutError, ConnectionError, OSError)):
        return Classification.RETRYABLE

    msg = str(exc).lower()
    if any(hint in msg for hint in _TRANSIENT_HINTS):
        return Classification.RETRYABLE
    return Classification.PERMANENT


@dataclass(frozen=True)
class BackoffPolicy:
    """Exponential backoff: min(initial_delay * multiplier**attempt_count, max_delay).

    multiplier=1 gives a fixed interval. Jitter scales the delay into
    [50%, 100%] and is off by default.
    """

    initial_delay: timedelta = timedelta(minutes=1)
    max_delay: timedelta = timedelta(minutes=30)
    multiplier: float = 2.0
    jitter: bool = False

    def __post_init__(self) -> None:
        if self.initial_delay < timedelta(0):
            raise ValueError("initial_delay must be >= 0")
        if self.max_delay < self.initial_delay:
            raise ValueError("max_delay must be >= initial_delay")
        if self.multiplier < 1.0:
            raise ValueError("multiplier must be >= 1")

    @classmethod
    def fixed(cls, interval: timedelta) -> "BackoffPolicy":
        return cls(initial_delay=interval, max_delay=interval, multiplier=1.0)

    @classmethod
    def from_seconds(
        cls,
        initial: float,
        maximum: float,
        multiplier: float = 2.0,
        *,
        jitter: bool = False,
    ) -> "BackoffPolicy":
        return cls(
            initial_delay=timedelta(seconds=initial),
            max_delay=timedelta(seconds=maximum),
            multiplier=multiplier,
            jitter=jitter,
        )

    def next_delay(self, attempt_count: int) -> timedelta:
        if attempt_count < 0:
            raise ValueError("attempt_count must be >= 0")
        cap = self.max_delay.total_seconds()
        try:
            secs = self.initial_delay.total_seconds() * (self.multiplier**attempt_count)
        except OverflowError:
            secs = cap
        secs = min(secs, cap)
        if self.jitter:
            secs = secs * (0.5 + random.random() * 0.5)
        return timedelta(seconds=secs)

    def next_eligible_at(self, last_attempt_at: datetime, attempt_count: int) -> datetime:
        return last_attempt_at + self.next_delay(attempt_count)
