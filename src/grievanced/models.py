"""
Notification request models.

A NotificationRequest becomes the payload of a queue item; the channel
dispatcher re-validates it on every attempt.
"""

from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field, field_validator


class NotificationChannel(str, Enum):
    EMAIL = "email"
    SMS = "sms"
    WHATSAPP = "whatsapp"


class NotificationPriority(str, Enum):
    LOW = "low"
    NORMAL = "normal"
    HIGH = "high"
    URGENT = "urgent"


class NotificationRequest(BaseModel):
    """Request to notify a recipient about an entity (usually a complaint)."""

    entity_type: str = "complaint"
    entity_id: int
    channel: NotificationChannel
    recipient: str
    subject: Optional[str] = None
    body: str
    template_id: Optional[str] = None
    template_data: dict[str, Any] = Field(default_factory=dict)
    priority: NotificationPriority = NotificationPriority.NORMAL
    max_retries: Optional[int] = Field(None, ge=1)

    @field_validator("recipient")
    @classmethod
    def _strip_recipient(cls, v):
        return v.strip()


class NotificationReceipt(BaseModel):
    notification_id: str
    status: str
    success: bool
    message: str
