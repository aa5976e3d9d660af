from __future__ import annotations

import asyncio
import json
from typing import Optional

import typer
from loguru import logger

from grievance_relay.delivery import (
    DeadLetterQueue,
    DeliveryRuntimeSettings,
    QueueFullError,
    StoreIOError,
)

from .config import get_settings
from .models import NotificationChannel, NotificationPriority, NotificationRequest
from .notifications import build_notification_service, build_store

app = typer.Typer(help="grievanced notification queue CLI")


@app.command("worker")
def worker(
    once: bool = typer.Option(False, "--once", help="Run a single tick and exit"),
):
    """Run the notification batch worker until interrupted."""
    settings = get_settings()

    async def _run():
        svc = build_notification_service(settings)
        if once:
            if hasattr(svc.store, "open"):
                await svc.store.open()
            try:
                return await svc.scheduler.process_queue()
            finally:
                await svc.stop()
        await svc.start()
        try:
            await asyncio.Event().wait()
        finally:
            await svc.stop()

    try:
        report = asyncio.run(_run())
    except KeyboardInterrupt:
        logger.info("worker interrupted")
        return
    if report is not None:
        typer.echo(
            json.dumps(
                {
                    "delivered": report.delivered,
                    "retrying": report.retrying,
                    "abandoned": report.abandoned,
                    "aborted": report.aborted,
                },
                indent=2,
            )
        )
        if report.aborted:
            raise typer.Exit(1)


@app.command("status")
def status():
    """Print pending notifications."""
    settings = get_settings()

    async def _run():
        store = build_store(settings, DeliveryRuntimeSettings())
        if hasattr(store, "open"):
            await store.open()
        try:
            return await store.snapshot()
        finally:
            if hasattr(store, "aclose"):
                await store.aclose()

    try:
        snap = asyncio.run(_run())
    except StoreIOError as e:
        logger.error(str(e))
        raise typer.Exit(1)
    typer.echo(json.dumps(snap.to_dict(), indent=2))


@app.command("notify")
def notify(
    entity_id: int = typer.Argument(..., help="Complaint id"),
    channel: NotificationChannel = typer.Option(NotificationChannel.EMAIL, "--channel"),
    recipient: str = typer.Option(..., "--to"),
    body: str = typer.Option(..., "--body"),
    subject: Optional[str] = typer.Option(None, "--subject"),
    priority: NotificationPriority = typer.Option(NotificationPriority.NORMAL, "--priority"),
    max_retries: Optional[int] = typer.Option(None, "--max-retries", min=1),
):
    """Queue one notification for the worker."""
    request = NotificationRequest(
        entity_id=entity_id,
        channel=channel,
        recipient=recipient,
        subject=subject,
        body=body,
        priority=priority,
        max_retries=max_retries,
    )
    settings = get_settings()

    async def _run():
        svc = build_notification_service(settings)
        if hasattr(svc.store, "open"):
            await svc.store.open()
        try:
            return await svc.queue_notification(request)
        finally:
            await svc.stop()

    try:
        receipt = asyncio.run(_run())
    except QueueFullError as e:
        logger.error(str(e))
        raise typer.Exit(2)
    typer.echo(receipt.model_dump_json(indent=2))


@app.command("dead-letters")
def dead_letters(limit: int = typer.Option(20, "--limit", min=1)):
    """Show the oldest dead-lettered notifications."""
    runtime = DeliveryRuntimeSettings()
    dlq = DeadLetterQueue(runtime.dlq_path, max_records=runtime.dlq_max_records)
    records = asyncio.run(dlq.replay(max_records=limit))
    typer.echo(
        json.dumps(
            [
                {"item_id": r.item_id, "ts": r.ts, "error": r.error, "metadata": r.metadata}
                for r in records
            ],
            indent=2,
        )
    )


@app.command("init-db")
def init_db():
    """Create the delivery_queue table if it does not exist."""
    settings = get_settings()
    if not settings.database_url:
        logger.error("DATABASE_URL is not set")
        raise typer.Exit(1)

    from grievance_relay.delivery.pg_store import PostgresQueueStore

    async def _run():
        store = PostgresQueueStore(settings.database_url, queue=settings.NOTIFICATION_QUEUE)
        await store.open()
        try:
            await store.ensure_table()
        finally:
            await store.aclose()

    try:
        asyncio.run(_run())
    except StoreIOError as e:
        logger.error(f"init-db failed: {e}")
        raise typer.Exit(1)
    logger.success("delivery_queue table ready")


if __name__ == "__main__":
    app()
