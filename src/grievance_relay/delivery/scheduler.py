"""
RetryScheduler: drains a QueueStore through a Dispatcher.

Per item and attempt:

    success                                   -> DELIVERED (removed)
    failure, RETRYABLE, attempts+1 < max      -> RETRYING  (backoff, persisted)
    failure, RETRYABLE, attempts+1 >= max     -> ABANDONED (RetriesExhausted, dead-lettered)
    failure, PERMANENT                        -> ABANDONED (dead-lettered)

Ticks never overlap: a tick requested while another is running is skipped.
Within a tick up to `concurrency` distinct items dispatch in parallel, and an
id is never dispatched twice at the same time.
"""

from __future__ import annotations

import asyncio
import inspect
import time
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Awaitable, Callable, Optional, Union

from loguru import logger

from ..metrics.registry import (
    DELIVERY_ATTEMPTS_TOTAL,
    DELIVERY_LATENCY_SECONDS,
    ENQUEUE_REJECTED_TOTAL,
    QUEUE_DEPTH,
    TICKS_TOTAL,
)
from .dlq import DeadLetterQueue
from .errors import (
    ItemNotFoundError,
    QueueFullError,
    RetriesExhausted,
    StoreIOError,
    TransientDeliveryError,
)
from .events import DeliveryEvent, DeliveryEventBus
from .policy import BackoffPolicy, Classification, ErrorClassifier, default_error_classifier
from .store import QueueStore
from .types import DeliveryResult, Dispatcher, ItemStatus, QueueItem, QueueStatus, utc_now

Precondition = Callable[[], Union[bool, Awaitable[bool]]]


@dataclass
class TickReport:
    """Outcome counts for one tick."""

    delivered: int = 0
    retrying: int = 0
    abandoned: int = 0
    skipped: bool = False
    aborted: bool = False
    error: Optional[str] = None
    duration: float = 0.0

    @property
    def processed(self) -> int:
        return self.delivered + self.retrying + self.abandoned


def _describe(error: BaseException) -> str:
    msg = str(error)
    return f"{type(error).__name__}: {msg}" if msg else type(error).__name__


class RetryScheduler:
    """Owns the tick loop for one queue.

    Example:
        scheduler = RetryScheduler(
            store=JsonFileQueueStore("queue.json"),
            dispatcher=my_dispatcher,
            backoff=BackoffPolicy.fixed(timedelta(seconds=30)),
            interval=30.0,
        )
        scheduler.start()
        ...
        await scheduler.stop()
    """

    def __init__(
        self,
        store: QueueStore,
        dispatcher: Dispatcher,
        *,
        backoff: Optional[BackoffPolicy] = None,
        classifier: ErrorClassifier = default_error_classifier,
        interval: float | timedelta = 30.0,
        batch_size: Optional[int] = None,
        concurrency: int = 1,
        dead_letters: Optional[DeadLetterQueue] = None,
        events: Optional[DeliveryEventBus] = None,
        precondition: Optional[Precondition] = None,
        clock: Callable[[], datetime] = utc_now,
        name: str = "default",
    ):
        if isinstance(interval, timedelta):
            interval = interval.total_seconds()
        if interval <= 0:
            raise ValueError("interval must be > 0")
        if batch_size is not None and batch_size <= 0:
            raise ValueError("batch_size must be > 0")
        if concurrency <= 0:
            raise ValueError("concurrency must be > 0")

        self.store = store
        self.dispatcher = dispatcher
        self.backoff = backoff or BackoffPolicy()
        self.classifier = classifier
        self.interval = float(interval)
        self.batch_size = batch_size
        self.concurrency = concurrency
        self.dead_letters = dead_letters
        self.events = events or DeliveryEventBus()
        self.name = name
        self._precondition = precondition
        self._clock = clock

        self._tick_lock = asyncio.Lock()
        self._inflight: set[str] = set()
        self._stop_evt = asyncio.Event()
        self._task: Optional[asyncio.Task] = None

    # ---------- lifecycle ----------

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        """Run one tick now, then every `interval`. No-op if already running."""
        if self.running:
            return
        self._stop_evt = asyncio.Event()
        self._task = asyncio.create_task(self._run(), name=f"retry-scheduler-{self.name}")

    async def stop(self, timeout: Optional[float] = None) -> None:
        """Stop after the in-flight tick finishes. No-op if not running."""
        task = self._task
        if task is None:
            return
        self._stop_evt.set()
        try:
            if timeout is None:
                await task
            else:
                await asyncio.wait_for(asyncio.shield(task), timeout=timeout)
        except asyncio.TimeoutError:
            logger.warning(
                f"Scheduler {self.name}: tick still in flight after {timeout}s; "
                "it will finish in the background"
            )
        finally:
            self._task = None

    async def __aenter__(self) -> "RetryScheduler":
        self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.stop()

    async def _run(self) -> None:
        logger.info(f"Scheduler {self.name} started (interval: {self.interval}s)")
        try:
            while not self._stop_evt.is_set():
                try:
                    await self.process_queue()
                except Exception:
                    logger.exception(f"Scheduler {self.name}: tick failed")
                try:
                    await asyncio.wait_for(self._stop_evt.wait(), timeout=self.interval)
                except asyncio.TimeoutError:
                    pass
        finally:
            logger.info(f"Scheduler {self.name} stopped")

    # ---------- producer / monitoring ----------

    async def enqueue(self, item: QueueItem) -> QueueItem:
        """Persist an item for delivery. Never waits for the dispatch."""
        try:
            await self.store.enqueue(item)
        except QueueFullError:
            ENQUEUE_REJECTED_TOTAL.labels(self.name).inc()
            logger.warning(f"Queue {self.name} full; rejected item {item.id}")
            raise
        logger.debug(f"Queued item {item.id} on {self.name} (max_attempts={item.max_attempts})")
        return item

    async def get_queue_status(self) -> QueueStatus:
        return await self.store.snapshot()

    # ---------- tick ----------

    async def process_queue(self) -> TickReport:
        """Run one tick unless another tick is still running."""
        if self._tick_lock.locked():
            logger.debug(f"Scheduler {self.name}: previous tick still running, skipping")
            TICKS_TOTAL.labels(self.name, "skipped").inc()
            return TickReport(skipped=True)
        async with self._tick_lock:
            return await self._tick()

    async def _ready(self) -> bool:
        if self._precondition is None:
            return True
        res = self._precondition()
        if inspect.isawaitable(res):
            res = await res
        return bool(res)

    async def _tick(self) -> TickReport:
        started = time.monotonic()
        report = TickReport()

        if not await self._ready():
            logger.debug(f"Scheduler {self.name}: precondition not met, skipping tick")
            report.skipped = True
            TICKS_TOTAL.labels(self.name, "skipped").inc()
            return report

        try:
            due = await self.store.list_due(self._clock(), limit=self.batch_size)
        except StoreIOError as exc:
            logger.error(f"Scheduler {self.name}: cannot read queue, tick aborted: {exc}")
            report.aborted = True
            report.error = str(exc)
            TICKS_TOTAL.labels(self.name, "aborted").inc()
            return report

        if not due:
            logger.debug(f"Scheduler {self.name}: no due items")
            await self._record_depth()
            TICKS_TOTAL.labels(self.name, "ok").inc()
            return report

        logger.info(f"Scheduler {self.name}: processing {len(due)} items")

        sem = asyncio.Semaphore(self.concurrency)
        abort = asyncio.Event()

        async def run(item: QueueItem) -> Optional[ItemStatus]:
            async with sem:
                if abort.is_set():
                    return None
                try:
                    return await self._process_item(item)
                except StoreIOError as exc:
                    if not abort.is_set():
                        abort.set()
                        report.error = str(exc)
                        logger.error(
                            f"Scheduler {self.name}: store failure on item {item.id}, "
                            f"tick aborted: {exc}"
                        )
                    return None
                except Exception:
                    logger.exception(f"Scheduler {self.name}: item {item.id} failed unexpectedly")
                    return None

        outcomes = await asyncio.gather(*(run(i) for i in due))
        for outcome in outcomes:
            if outcome is ItemStatus.DELIVERED:
                report.delivered += 1
            elif outcome is ItemStatus.RETRYING:
                report.retrying += 1
            elif outcome is ItemStatus.ABANDONED:
                report.abandoned += 1

        report.aborted = abort.is_set()
        report.duration = time.monotonic() - started
        TICKS_TOTAL.labels(self.name, "aborted" if report.aborted else "ok").inc()
        await self._record_depth()

        logger.info(
            f"Scheduler {self.name}: tick completed in {report.duration:.3f}s: "
            f"{report.delivered} sent, {report.abandoned} failed, {report.retrying} retries"
        )
        return report

    async def _record_depth(self) -> None:
        try:
            status = await self.store.snapshot()
        except StoreIOError as exc:
            logger.warning(f"Scheduler {self.name}: queue depth unavailable: {exc}")
            return
        QUEUE_DEPTH.labels(self.name).set(status.pending_count)

    # ---------- per item ----------

    async def _process_item(self, item: QueueItem) -> Optional[ItemStatus]:
        if item.id in self._inflight:
            logger.warning(f"Scheduler {self.name}: item {item.id} already in flight, skipping")
            return None
        self._inflight.add(item.id)
        try:
            return await self._attempt(item)
        except ItemNotFoundError:
            logger.warning(f"Scheduler {self.name}: item {item.id} left the queue mid-attempt")
            return None
        finally:
            self._inflight.discard(item.id)

    async def _attempt(self, item: QueueItem) -> ItemStatus:
        if item.attempt_count >= item.max_attempts:
            # loaded at or over the ceiling: drop without another send
            error = RetriesExhausted(item.id, item.attempt_count, item.last_error)
            await self._abandon(item, error, attempt_number=item.attempt_count)
            return ItemStatus.ABANDONED

        attempt_number = item.attempt_count + 1
        t0 = time.perf_counter()
        try:
            result = await self.dispatcher.send(item)
        except Exception as exc:
            result = DeliveryResult.failed(exc)
        DELIVERY_LATENCY_SECONDS.labels(self.name).observe(time.perf_counter() - t0)

        attempted_at = self._clock()
        item.last_attempt_at = attempted_at

        if result.delivered:
            if not await self.store.remove(item.id, revision=item.revision):
                self._log_replaced(item)
            item.status = ItemStatus.DELIVERED
            DELIVERY_ATTEMPTS_TOTAL.labels(self.name, "delivered").inc()
            logger.info(
                f"Scheduler {self.name}: item {item.id} delivered (attempt {attempt_number})"
            )
            await self._publish(item, attempt_number)
            return ItemStatus.DELIVERED

        error = result.error or TransientDeliveryError("dispatcher reported failure without detail")
        classification = self.classifier(error)
        prior = item.attempt_count
        item.attempt_count = prior + 1
        item.last_error = _describe(error)

        if classification is Classification.PERMANENT:
            await self._abandon(item, error, attempt_number=attempt_number)
            return ItemStatus.ABANDONED

        if item.attempt_count >= item.max_attempts:
            exhausted = RetriesExhausted(item.id, item.attempt_count, item.last_error)
            await self._abandon(item, exhausted, attempt_number=attempt_number)
            return ItemStatus.ABANDONED

        item.status = ItemStatus.RETRYING
        item.next_eligible_at = self.backoff.next_eligible_at(attempted_at, prior)
        if not await self.store.update(item):
            self._log_replaced(item)
        DELIVERY_ATTEMPTS_TOTAL.labels(self.name, "retrying").inc()
        logger.info(
            f"Scheduler {self.name}: item {item.id} scheduled for retry "
            f"({item.attempt_count}/{item.max_attempts}) at {item.next_eligible_at.isoformat()}: "
            f"{item.last_error}"
        )
        await self._publish(item, attempt_number)
        return ItemStatus.RETRYING

    async def _abandon(self, item: QueueItem, error: BaseException, *, attempt_number: int) -> None:
        item.status = ItemStatus.ABANDONED
        reason = _describe(error)
        if self.dead_letters is not None:
            try:
                await self.dead_letters.save(
                    item, error, {"queue": self.name, "attempts": item.attempt_count}
                )
            except OSError as exc:
                # item stays in the store untouched; next tick tries again
                raise StoreIOError(f"dead-letter write failed: {exc}") from exc
        if not await self.store.remove(item.id, revision=item.revision):
            self._log_replaced(item)
        DELIVERY_ATTEMPTS_TOTAL.labels(self.name, "abandoned").inc()
        logger.warning(
            f"Scheduler {self.name}: item {item.id} abandoned after "
            f"{item.attempt_count}/{item.max_attempts} attempts: {reason}"
        )
        await self._publish(item, attempt_number, reason=reason)

    def _log_replaced(self, item: QueueItem) -> None:
        # the re-enqueued version stays as a fresh item
        logger.info(
            f"Scheduler {self.name}: item {item.id} was re-enqueued mid-attempt; "
            "keeping the new version"
        )

    async def _publish(
        self, item: QueueItem, attempt_number: int, reason: Optional[str] = None
    ) -> None:
        retrying = item.status is ItemStatus.RETRYING
        if reason is None and retrying:
            reason = item.last_error
        await self.events.publish(
            DeliveryEvent(
                queue=self.name,
                item_id=item.id,
                status=item.status,
                attempt_number=attempt_number,
                at=item.last_attempt_at or self._clock(),
                next_eligible_at=item.next_eligible_at if retrying else None,
                reason=reason,
            )
        )
