"""
Offline submission queue (client flavor).

Complaints filed without connectivity are written to a local JSON queue and
re-sent every 30 seconds, up to 5 attempts each. Network and 5xx failures are
retried; validation and auth failures drop the submission. Nothing is sent
while no verified identity (by default, the API auth token) is available.
"""

from __future__ import annotations

from datetime import timedelta
from pathlib import Path
from typing import Any, Callable, Optional, Union

from loguru import logger
from pydantic import ValidationError

from grievance_relay.delivery import (
    BackoffPolicy,
    DeadLetterQueue,
    DeliveryEventBus,
    DeliveryResult,
    JsonFileQueueStore,
    PermanentDeliveryError,
    QueueItem,
    QueueStatus,
    QueueStore,
    RetryScheduler,
    TickReport,
)

from .api import ComplaintAPI
from .errors import map_api_error
from .models import ComplaintSubmission

RETRY_INTERVAL = 30.0  # seconds
MAX_ATTEMPTS = 5


class SubmissionDispatcher:
    """Dispatcher that sends one queued complaint through ComplaintAPI."""

    def __init__(self, api: ComplaintAPI):
        self.api = api

    async def send(self, item: QueueItem) -> DeliveryResult:
        try:
            submission = ComplaintSubmission.model_validate(item.payload)
        except ValidationError as exc:
            return DeliveryResult.failed(PermanentDeliveryError(f"malformed submission: {exc}"))
        try:
            receipt = await self.api.create_complaint(submission)
        except Exception as exc:
            return DeliveryResult.failed(map_api_error(exc))
        return DeliveryResult.ok(receipt.model_dump(exclude={"raw"}))


class OfflineSubmissionQueue:
    """Local queue of complaint submissions with automatic retry.

    Example:
        queue = OfflineSubmissionQueue(api, "~/.grievance/pending_submissions.json")
        await queue.save_to_queue(ComplaintSubmission(summary="Garbage not collected"))
        queue.start_auto_retry()
    """

    def __init__(
        self,
        api: ComplaintAPI,
        path: Union[str, Path, None] = None,
        *,
        store: Optional[QueueStore] = None,
        max_attempts: int = MAX_ATTEMPTS,
        retry_interval: float = RETRY_INTERVAL,
        max_size: Optional[int] = None,
        identity: Optional[Callable[[], Any]] = None,
        dead_letters: Optional[DeadLetterQueue] = None,
        events: Optional[DeliveryEventBus] = None,
        **scheduler_kwargs: Any,
    ):
        if store is None:
            if path is None:
                raise ValueError("path or store required")
            store = JsonFileQueueStore(Path(path).expanduser(), max_size=max_size)
        self.max_attempts = max_attempts
        self._identity = identity if identity is not None else api.has_token
        self.scheduler = RetryScheduler(
            store,
            SubmissionDispatcher(api),
            backoff=BackoffPolicy.fixed(timedelta(seconds=retry_interval)),
            interval=retry_interval,
            batch_size=None,
            concurrency=1,
            dead_letters=dead_letters,
            events=events,
            precondition=self._has_identity,
            name="submissions",
            **scheduler_kwargs,
        )

    def _has_identity(self) -> bool:
        # unverified users cannot submit; leave the queue untouched
        return bool(self._identity())

    async def save_to_queue(
        self,
        submission: Union[ComplaintSubmission, dict[str, Any]],
        *,
        item_id: Optional[str] = None,
    ) -> QueueItem:
        if not isinstance(submission, ComplaintSubmission):
            submission = ComplaintSubmission.model_validate(submission)
        item = QueueItem.new(
            submission.model_dump(mode="json"),
            max_attempts=self.max_attempts,
            item_id=item_id,
        )
        await self.scheduler.enqueue(item)
        logger.info(f"Complaint saved to offline queue as {item.id}")
        return item

    def start_auto_retry(self) -> None:
        self.scheduler.start()

    async def stop_auto_retry(self) -> None:
        await self.scheduler.stop()

    async def process_queue(self) -> TickReport:
        return await self.scheduler.process_queue()

    async def get_queue_status(self) -> QueueStatus:
        return await self.scheduler.get_queue_status()
