from __future__ import annotations

import asyncio
import json
from pathlib import Path
from typing import Optional

import typer
from loguru import logger
from pydantic import ValidationError

from grievance_relay.delivery import DeadLetterQueue, JsonFileQueueStore, QueueFullError

from .api import ComplaintAPI
from .models import ComplaintSubmission
from .offline import MAX_ATTEMPTS, OfflineSubmissionQueue

app = typer.Typer(help="grievance_client offline queue CLI")

# ---------------------------
# Common options
# ---------------------------


def queue_file_opt() -> Path:
    return typer.Option(
        Path("~/.grievance/pending_submissions.json"),
        "--queue-file",
        envvar="GRIEVANCE_QUEUE_FILE",
        help="Local queue file",
    )


def api_url_opt() -> str:
    return typer.Option(
        "http://localhost:8080/api/v1",
        "--api-url",
        envvar="GRIEVANCE_API_URL",
        help="Complaint API base URL",
    )


def token_opt() -> Optional[str]:
    return typer.Option(None, "--token", envvar="GRIEVANCE_API_TOKEN", help="Bearer token")


def _queue(queue_file: Path, api: ComplaintAPI, max_attempts: int = MAX_ATTEMPTS):
    path = queue_file.expanduser()
    return OfflineSubmissionQueue(
        api,
        store=JsonFileQueueStore(path),
        max_attempts=max_attempts,
        dead_letters=DeadLetterQueue(path.with_suffix(".dead.ndjson")),
    )


@app.command("enqueue")
def enqueue(
    submission_file: Path = typer.Argument(..., help="JSON file with the complaint fields"),
    max_attempts: int = typer.Option(MAX_ATTEMPTS, "--max-attempts"),
    queue_file: Path = queue_file_opt(),
    api_url: str = api_url_opt(),
    token: Optional[str] = token_opt(),
):
    """Save a complaint to the offline queue."""
    try:
        data = json.loads(submission_file.read_text(encoding="utf-8"))
        submission = ComplaintSubmission.model_validate(data)
    except (OSError, ValueError, ValidationError) as e:
        logger.error(f"Invalid submission file {submission_file}: {e}")
        raise typer.Exit(1)

    async def _run():
        async with ComplaintAPI(api_url, token=token) as api:
            return await _queue(queue_file, api, max_attempts).save_to_queue(submission)

    try:
        item = asyncio.run(_run())
    except QueueFullError as e:
        logger.error(str(e))
        raise typer.Exit(2)
    typer.echo(json.dumps({"id": item.id}, indent=2))


@app.command("flush")
def flush(
    queue_file: Path = queue_file_opt(),
    api_url: str = api_url_opt(),
    token: Optional[str] = token_opt(),
):
    """Run one pass over the queue and print the outcome counts."""

    async def _run():
        async with ComplaintAPI(api_url, token=token) as api:
            return await _queue(queue_file, api).process_queue()

    report = asyncio.run(_run())
    typer.echo(
        json.dumps(
            {
                "delivered": report.delivered,
                "retrying": report.retrying,
                "abandoned": report.abandoned,
                "skipped": report.skipped,
                "aborted": report.aborted,
            },
            indent=2,
        )
    )
    if report.aborted:
        raise typer.Exit(1)


@app.command("status")
def status(queue_file: Path = queue_file_opt()):
    """Print pending submissions and their attempt counts."""
    store = JsonFileQueueStore(queue_file.expanduser())
    snap = asyncio.run(store.snapshot())
    typer.echo(json.dumps(snap.to_dict(), indent=2))


if __name__ == "__main__":
    app()
