"""
Notification queue (server flavor).

queue_notification() persists the request and returns at once; the
RetryScheduler batch worker sends it later through the channel sender.
"""

from __future__ import annotations

from pathlib import Path
from typing import Mapping, Optional

from loguru import logger
from pydantic import ValidationError

from grievance_relay.delivery import (
    DeadLetterQueue,
    DeliveryEventBus,
    DeliveryResult,
    DeliveryRuntimeSettings,
    JsonFileQueueStore,
    PermanentDeliveryError,
    QueueItem,
    QueueStatus,
    QueueStore,
    RetryScheduler,
)

from .config import Settings
from .models import NotificationChannel, NotificationReceipt, NotificationRequest
from .senders import EmailSender, Sender, SMSSender, WhatsAppSender


def default_senders(settings: Settings) -> dict[NotificationChannel, Sender]:
    return {
        NotificationChannel.EMAIL: EmailSender(
            settings.SENDGRID_API_KEY,
            shadow_address=settings.shadow_address,
            from_email=settings.SENDGRID_FROM_EMAIL,
            from_name=settings.SENDGRID_FROM_NAME,
        ),
        NotificationChannel.SMS: SMSSender(),
        NotificationChannel.WHATSAPP: WhatsAppSender(),
    }


class NotificationDispatcher:
    """Routes a queued notification to the sender for its channel."""

    def __init__(self, senders: Mapping[NotificationChannel, Sender]):
        self.senders = dict(senders)

    async def send(self, item: QueueItem) -> DeliveryResult:
        try:
            request = NotificationRequest.model_validate(item.payload)
        except ValidationError as exc:
            return DeliveryResult.failed(PermanentDeliveryError(f"malformed notification: {exc}"))

        sender = self.senders.get(request.channel)
        if sender is None:
            return DeliveryResult.failed(
                PermanentDeliveryError(f"unsupported channel: {request.channel.value}")
            )

        try:
            sender.validate(request)
            await sender.send(request)
        except Exception as exc:
            return DeliveryResult.failed(exc)
        return DeliveryResult.ok({"channel": request.channel.value})


class NotificationService:
    """Queues notifications and owns the batch worker that sends them."""

    def __init__(
        self,
        store: QueueStore,
        senders: Mapping[NotificationChannel, Sender],
        runtime: Optional[DeliveryRuntimeSettings] = None,
        *,
        dead_letters: Optional[DeadLetterQueue] = None,
        events: Optional[DeliveryEventBus] = None,
        name: str = "notifications",
        **scheduler_kwargs,
    ):
        self.runtime = runtime or DeliveryRuntimeSettings()
        self.store = store
        self.scheduler = RetryScheduler(
            store,
            NotificationDispatcher(senders),
            backoff=self.runtime.backoff_policy(),
            interval=self.runtime.worker_interval,
            batch_size=self.runtime.worker_batch_size,
            concurrency=self.runtime.worker_concurrency,
            dead_letters=dead_letters,
            events=events,
            name=name,
            **scheduler_kwargs,
        )

    async def queue_notification(self, request: NotificationRequest) -> NotificationReceipt:
        """Persist a notification for async sending. Raises QueueFullError at capacity."""
        item = QueueItem.new(
            request.model_dump(mode="json"),
            max_attempts=request.max_retries or self.runtime.max_attempts,
        )
        await self.scheduler.enqueue(item)
        logger.info(
            f"notification_triggered id={item.id} entity={request.entity_type}:{request.entity_id} "
            f"channel={request.channel.value} priority={request.priority.value} "
            f"max_attempts={item.max_attempts}"
            + (f" template={request.template_id}" if request.template_id else "")
        )
        return NotificationReceipt(
            notification_id=item.id,
            status=item.status.value,
            success=True,
            message="Notification queued successfully",
        )

    async def get_queue_status(self) -> QueueStatus:
        return await self.scheduler.get_queue_status()

    async def start(self) -> None:
        if hasattr(self.store, "open"):
            await self.store.open()
        if hasattr(self.store, "ensure_table"):
            await self.store.ensure_table()
        self.scheduler.start()

    async def stop(self) -> None:
        await self.scheduler.stop()
        if hasattr(self.store, "aclose"):
            await self.store.aclose()


def build_store(settings: Settings, runtime: DeliveryRuntimeSettings) -> QueueStore:
    if settings.database_url:
        from grievance_relay.delivery.pg_store import PostgresQueueStore

        return PostgresQueueStore(
            settings.database_url,
            queue=settings.NOTIFICATION_QUEUE,
            max_size=runtime.queue_max_size,
        )
    logger.warning(
        f"DATABASE_URL not set; notification queue kept in {settings.NOTIFICATION_QUEUE_FILE}"
    )
    return JsonFileQueueStore(
        Path(settings.NOTIFICATION_QUEUE_FILE), max_size=runtime.queue_max_size
    )


def build_notification_service(
    settings: Settings, runtime: Optional[DeliveryRuntimeSettings] = None
) -> NotificationService:
    runtime = runtime or DeliveryRuntimeSettings()
    return NotificationService(
        build_store(settings, runtime),
        default_senders(settings),
        runtime,
        dead_letters=DeadLetterQueue(runtime.dlq_path, max_records=runtime.dlq_max_records),
        name=settings.NOTIFICATION_QUEUE,
    )
