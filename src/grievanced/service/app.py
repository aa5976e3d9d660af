"""
HTTP surface for the notification queue.

Endpoints:
    GET  /healthz          liveness plus component breakdown
    GET  /readyz           503 when the queue store cannot be read
    GET  /queue/status     pending items
    POST /notifications    queue a notification (201)
    GET  /metrics          Prometheus exposition
"""

from __future__ import annotations

import time
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, HTTPException, Request, Response
from loguru import logger
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from grievance_relay.delivery import QueueFullError, StoreIOError

from .. import __version__
from ..config import get_settings
from ..models import NotificationReceipt, NotificationRequest
from ..notifications import NotificationService, build_notification_service

SERVICE_NAME = "grievanced"


def create_app(
    service: Optional[NotificationService] = None, *, run_worker: Optional[bool] = None
) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        settings = get_settings()
        svc = service or build_notification_service(settings)
        worker = settings.RUN_WORKER if run_worker is None else run_worker
        if worker:
            await svc.start()
        elif hasattr(svc.store, "open"):
            await svc.store.open()
        app.state.service = svc
        logger.info(f"{SERVICE_NAME} {__version__} up (worker={'on' if worker else 'off'})")
        try:
            yield
        finally:
            await svc.stop()

    app = FastAPI(title=SERVICE_NAME, version=__version__, lifespan=lifespan)

    def _svc(request: Request) -> NotificationService:
        return request.app.state.service

    async def _queue_component(svc: NotificationService) -> dict:
        try:
            status = await svc.get_queue_status()
        except StoreIOError as exc:
            return {"name": "queue", "state": "degraded", "details": {"error": str(exc)}}
        return {"name": "queue", "state": "healthy", "details": {"pending": status.pending_count}}

    @app.get("/healthz")
    async def healthz(request: Request):
        svc = _svc(request)
        queue = await _queue_component(svc)
        worker = {
            "name": "worker",
            "state": "healthy" if svc.scheduler.running else "degraded",
        }
        components = [queue, worker, {"name": "prometheus", "state": "healthy"}]
        state = "healthy" if all(c["state"] == "healthy" for c in components) else "degraded"
        return {
            "service": SERVICE_NAME,
            "state": state,
            "components": components,
            "version": __version__,
            "ts": time.time(),
        }

    @app.get("/readyz")
    async def readyz(request: Request):
        queue = await _queue_component(_svc(request))
        if queue["state"] != "healthy":
            raise HTTPException(status_code=503, detail=f"not ready: {queue['details']['error']}")
        return {"service": SERVICE_NAME, "state": "healthy", "version": __version__}

    @app.get("/queue/status")
    async def queue_status(request: Request):
        try:
            status = await _svc(request).get_queue_status()
        except StoreIOError as exc:
            raise HTTPException(status_code=503, detail=str(exc))
        return status.to_dict()

    @app.post("/notifications", status_code=201, response_model=NotificationReceipt)
    async def create_notification(body: NotificationRequest, request: Request):
        try:
            return await _svc(request).queue_notification(body)
        except QueueFullError as exc:
            raise HTTPException(status_code=503, detail=str(exc))
        except StoreIOError as exc:
            logger.error(f"failed to queue notification: {exc}")
            raise HTTPException(status_code=503, detail="notification queue unavailable")

    @app.get("/metrics")
    async def metrics():
        return Response(generate_latest(), media_type=CONTENT_TYPE_LATEST)

    return app


app = create_app()
