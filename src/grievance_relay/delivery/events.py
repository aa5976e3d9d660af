"""
Delivery event bus.

In-process pub/sub for per-attempt outcomes. Monitoring hooks, audit writers
and tests subscribe to see every delivered / retrying / abandoned transition.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Optional, Protocol

from loguru import logger

from .types import ItemStatus


@dataclass(frozen=True)
class DeliveryEvent:
    """Immutable record of one dispatch attempt.

    Attributes:
        queue: Queue name (e.g. "submissions", "notifications")
        item_id: Item the attempt was for
        status: State after the attempt (DELIVERED, RETRYING, ABANDONED)
        attempt_number: 1-based number of this attempt
        at: When the attempt finished
        next_eligible_at: Next retry time (RETRYING only)
        reason: Failure message, if any
    """

    queue: str
    item_id: str
    status: ItemStatus
    attempt_number: int
    at: datetime
    next_eligible_at: Optional[datetime] = None
    reason: Optional[str] = None

    @property
    def final(self) -> bool:
        return self.status.terminal


class DeliverySubscriber(Protocol):
    async def __call__(self, event: DeliveryEvent) -> None: ...


class DeliveryEventBus:
    """Best-effort bus. One subscriber's failure does not affect others.

    Example:
        bus = DeliveryEventBus()

        async def on_event(event: DeliveryEvent):
            if event.status is ItemStatus.ABANDONED:
                await page_oncall(event)

        bus.subscribe(on_event)
    """

    def __init__(self) -> None:
        self._subs: list[DeliverySubscriber] = []

    def subscribe(self, callback: DeliverySubscriber) -> None:
        if callback not in self._subs:
            self._subs.append(callback)
            logger.debug(f"Delivery subscriber added (total: {len(self._subs)})")

    def unsubscribe(self, callback: DeliverySubscriber) -> None:
        """No-op if callback is not subscribed."""
        try:
            self._subs.remove(callback)
            logger.debug(f"Delivery subscriber removed (total: {len(self._subs)})")
        except ValueError:
            pass

    async def publish(self, event: DeliveryEvent) -> None:
        if not self._subs:
            return

        logger.debug(
            f"Publishing delivery event: queue={event.queue} item={event.item_id} "
            f"status={event.status.value} attempt={event.attempt_number}"
        )

        # copy: subscribers may unsubscribe while we iterate
        for callback in list(self._subs):
            try:
                await callback(event)
            except Exception as exc:
                logger.debug(f"Delivery subscriber error (ignored): {type(exc).__name__}: {exc}")

    @property
    def subscriber_count(self) -> int:
        return len(self._subs)
