"""
Demo script for RetryScheduler.

Queues a handful of items against a flaky dispatcher and shows the
delivered / retrying / abandoned transitions as they happen.
"""

import asyncio
import random
from datetime import timedelta

from loguru import logger

from grievance_relay.delivery import (
    BackoffPolicy,
    DeadLetterQueue,
    DeliveryEvent,
    DeliveryEventBus,
    DeliveryResult,
    MemoryQueueStore,
    PermanentDeliveryError,
    QueueItem,
    RetryScheduler,
    TransientDeliveryError,
)


class FlakyDispatcher:
    """Succeeds about half the time; now and then rejects for good."""

    def __init__(self, seed: int = 7):
        self.rng = random.Random(seed)

    async def send(self, item: QueueItem) -> DeliveryResult:
        await asyncio.sleep(0.01)
        roll = self.rng.random()
        if roll < 0.5:
            return DeliveryResult.ok()
        if roll < 0.9:
            return DeliveryResult.failed(TransientDeliveryError("503 from sink", status_code=503))
        return DeliveryResult.failed(PermanentDeliveryError("400 from sink", status_code=400))


async def on_event(event: DeliveryEvent):
    logger.info(
        f"{event.item_id}: {event.status.value} (attempt {event.attempt_number})"
        + (f" reason={event.reason}" if event.reason else "")
    )


async def main():
    bus = DeliveryEventBus()
    bus.subscribe(on_event)
    store = MemoryQueueStore()
    scheduler = RetryScheduler(
        store,
        FlakyDispatcher(),
        backoff=BackoffPolicy(
            initial_delay=timedelta(milliseconds=50), max_delay=timedelta(milliseconds=400)
        ),
        interval=0.05,
        concurrency=4,
        dead_letters=DeadLetterQueue(".demo/dead_letters.ndjson"),
        events=bus,
        name="demo",
    )

    async with scheduler:
        logger.info("🚀 Queueing 10 items")
        for i in range(10):
            await scheduler.enqueue(QueueItem.new({"n": i}, item_id=f"item-{i}", max_attempts=4))

        while (await scheduler.get_queue_status()).pending_count:
            await asyncio.sleep(0.1)

    logger.info("✅ Queue drained")


if __name__ == "__main__":
    asyncio.run(main())
