"""
Channel senders for outbound notifications.

Each sender validates before sending; a validation failure is a
PermanentDeliveryError so the queue drops it at once. Retries are the
scheduler's job, so every send() is a single provider call.
"""

from __future__ import annotations

import re
from abc import ABC, abstractmethod
from typing import Optional

import httpx
from loguru import logger

from grievance_relay.delivery.errors import (
    DeliveryError,
    PermanentDeliveryError,
    TransientDeliveryError,
)
from grievance_relay.delivery.policy import Classification, classify_status

from .models import NotificationChannel, NotificationRequest

SENDGRID_URL = "https://api.sendgrid.com/v3/mail/send"

_EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
_PHONE_RE = re.compile(r"^\+?[0-9]{10,15}$")


class InvalidRecipient(PermanentDeliveryError):
    def __init__(self, recipient: str, channel: NotificationChannel):
        super().__init__(
            f"invalid recipient for {channel.value}: {recipient!r}", code="INVALID_RECIPIENT"
        )
        self.recipient = recipient
        self.channel = channel


def map_provider_response(status: int, text: str = "") -> Optional[DeliveryError]:
    """None for 2xx, otherwise a transient or permanent delivery error."""
    if 200 <= status < 300:
        return None
    msg = f"provider status {status}"
    if text:
        msg = f"{msg}: {text[:200]}"
    if classify_status(status) is Classification.RETRYABLE:
        return TransientDeliveryError(msg, status_code=status)
    return PermanentDeliveryError(msg, status_code=status)


class Sender(ABC):
    channel: NotificationChannel

    def validate(self, request: NotificationRequest) -> None:
        if not request.recipient:
            raise InvalidRecipient(request.recipient, self.channel)

    @abstractmethod
    async def send(self, request: NotificationRequest) -> None: ...


class EmailSender(Sender):
    """E-mail via SendGrid.

    In shadow mode every message goes to the shadow address instead of the
    real recipient. Without an API key sends are accepted and dropped, which
    is how pilots run without real mail.
    """

    channel = NotificationChannel.EMAIL

    def __init__(
        self,
        api_key: Optional[str] = None,
        *,
        shadow_address: Optional[str] = None,
        from_email: str = "noreply@grievance.local",
        from_name: str = "Grievance Desk",
        client: Optional[httpx.AsyncClient] = None,
        timeout: float = 15.0,
    ):
        self.api_key = api_key
        self.shadow_address = shadow_address
        self.from_email = from_email
        self.from_name = from_name
        self._client = client
        self._timeout = timeout

    def validate(self, request: NotificationRequest) -> None:
        super().validate(request)
        # the real address must be valid even when shadow mode redirects it
        for address in (request.recipient, self.recipient_for(request)):
            if not _EMAIL_RE.match(address):
                raise InvalidRecipient(address, self.channel)

    def recipient_for(self, request: NotificationRequest) -> str:
        return self.shadow_address or request.recipient

    def build_payload(self, request: NotificationRequest) -> dict:
        return {
            "personalizations": [{"to": [{"email": self.recipient_for(request)}]}],
            "from": {"email": self.from_email, "name": self.from_name},
            "subject": request.subject or "",
            "content": [{"type": "text/plain", "value": request.body}],
        }

    async def send(self, request: NotificationRequest) -> None:
        self.validate(request)
        if not self.api_key:
            logger.debug(f"EmailSender: no API key, dropping mail to {self.recipient_for(request)}")
            return

        client = self._client or httpx.AsyncClient(timeout=self._timeout)
        try:
            resp = await client.post(
                SENDGRID_URL,
                json=self.build_payload(request),
                headers={"Authorization": f"Bearer {self.api_key}"},
            )
        except httpx.TransportError as exc:
            raise TransientDeliveryError(f"sendgrid unreachable: {exc}", status_code=0) from exc
        finally:
            if self._client is None:
                await client.aclose()

        err = map_provider_response(resp.status_code, resp.text)
        if err is not None:
            raise err


class SMSSender(Sender):
    """SMS gateway placeholder: validates the number and accepts the message."""

    channel = NotificationChannel.SMS

    def validate(self, request: NotificationRequest) -> None:
        super().validate(request)
        if not _PHONE_RE.match(request.recipient.replace(" ", "").replace("-", "")):
            raise InvalidRecipient(request.recipient, self.channel)

    async def send(self, request: NotificationRequest) -> None:
        self.validate(request)
        logger.debug(f"SMSSender: accepted message for {request.recipient}")


class WhatsAppSender(SMSSender):
    """WhatsApp Business placeholder; same number rules as SMS."""

    channel = NotificationChannel.WHATSAPP

    async def send(self, request: NotificationRequest) -> None:
        self.validate(request)
        logger.debug(f"WhatsAppSender: accepted message for {request.recipient}")
