from __future__ import annotations

import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional, Protocol


def utc_now() -> datetime:
    """Get current UTC datetime."""
    return datetime.now(timezone.utc)


def generate_id() -> str:
    return uuid.uuid4().hex


def _iso(dt: Optional[datetime]) -> Optional[str]:
    return dt.isoformat() if dt is not None else None


def _parse(dt: Any) -> Optional[datetime]:
    if dt is None or dt == "":
        return None
    if isinstance(dt, datetime):
        parsed = dt
    else:
        parsed = datetime.fromisoformat(str(dt).replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


class ItemStatus(str, Enum):
    """Queue item lifecycle states."""

    PENDING = "pending"  # never attempted
    RETRYING = "retrying"  # at least one failed attempt
    DELIVERED = "delivered"  # terminal
    ABANDONED = "abandoned"  # terminal

    @property
    def terminal(self) -> bool:
        return self in (ItemStatus.DELIVERED, ItemStatus.ABANDONED)


@dataclass
class QueueItem:
    """One unit of work awaiting delivery.

    Attributes:
        id: Stable identity; enqueue of an existing id replaces the item
        payload: JSON-serialisable data the dispatcher needs
        enqueued_at: Set once at creation
        attempt_count: Failed attempts so far (never above max_attempts)
        max_attempts: Ceiling fixed at enqueue
        last_attempt_at: Time of the most recent attempt
        next_eligible_at: Item is not attempted before this (None = now)
        status: PENDING or RETRYING while stored
        last_error: Message of the most recent failure
        revision: Bumped by the store each time enqueue replaces this id
    """

    id: str
    payload: dict[str, Any]
    enqueued_at: datetime = field(default_factory=utc_now)
    attempt_count: int = 0
    max_attempts: int = 5
    last_attempt_at: Optional[datetime] = None
    next_eligible_at: Optional[datetime] = None
    status: ItemStatus = ItemStatus.PENDING
    last_error: Optional[str] = None
    revision: int = 0

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        if self.attempt_count < 0:
            raise ValueError("attempt_count must be >= 0")
        if not isinstance(self.status, ItemStatus):
            self.status = ItemStatus(self.status)

    @classmethod
    def new(
        cls,
        payload: dict[str, Any],
        *,
        max_attempts: int = 5,
        item_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> "QueueItem":
        return cls(
            id=item_id or generate_id(),
            payload=dict(payload),
            enqueued_at=now or utc_now(),
            max_attempts=max_attempts,
        )

    def is_due(self, now: datetime) -> bool:
        if self.status.terminal:
            return False
        return self.next_eligible_at is None or self.next_eligible_at <= now

    @property
    def sort_key(self) -> tuple[datetime, str]:
        return (self.enqueued_at, self.id)

    def copy(self, **changes: Any) -> "QueueItem":
        changes.setdefault("payload", dict(self.payload))
        return replace(self, **changes)

    def to_record(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "payload": self.payload,
            "enqueued_at": _iso(self.enqueued_at),
            "attempt_count": self.attempt_count,
            "max_attempts": self.max_attempts,
            "last_attempt_at": _iso(self.last_attempt_at),
            "next_eligible_at": _iso(self.next_eligible_at),
            "status": self.status.value,
            "last_error": self.last_error,
            "revision": self.revision,
        }

    @classmethod
    def from_record(cls, rec: dict[str, Any]) -> "QueueItem":
        return cls(
            id=str(rec["id"]),
            payload=dict(rec.get("payload") or {}),
            enqueued_at=_parse(rec.get("enqueued_at")) or utc_now(),
            attempt_count=int(rec.get("attempt_count", 0)),
            max_attempts=int(rec.get("max_attempts", 5)),
            last_attempt_at=_parse(rec.get("last_attempt_at")),
            next_eligible_at=_parse(rec.get("next_eligible_at")),
            status=ItemStatus(rec.get("status", ItemStatus.PENDING.value)),
            last_error=rec.get("last_error"),
            revision=int(rec.get("revision") or 0),
        )


@dataclass(frozen=True)
class DeliveryResult:
    """Outcome of one Dispatcher.send call."""

    delivered: bool
    error: Optional[BaseException] = None
    detail: Optional[dict[str, Any]] = None

    @classmethod
    def ok(cls, detail: Optional[dict[str, Any]] = None) -> "DeliveryResult":
        return cls(delivered=True, detail=detail)

    @classmethod
    def failed(cls, error: BaseException) -> "DeliveryResult":
        return cls(delivered=False, error=error)


class Dispatcher(Protocol):
    """Adapter over an external sink. One external call per item."""

    async def send(self, item: QueueItem) -> DeliveryResult: ...


@dataclass(frozen=True)
class QueueItemStatus:
    id: str
    attempt_count: int
    enqueued_at: datetime
    last_attempt_at: Optional[datetime]


@dataclass(frozen=True)
class QueueStatus:
    """Read-only queue view for monitoring."""

    pending_count: int
    items: tuple[QueueItemStatus, ...] = ()

    @classmethod
    def of(cls, items: list[QueueItem]) -> "QueueStatus":
        ordered = sorted(items, key=lambda i: i.sort_key)
        return cls(
            pending_count=len(ordered),
            items=tuple(
                QueueItemStatus(
                    id=i.id,
                    attempt_count=i.attempt_count,
                    enqueued_at=i.enqueued_at,
                    last_attempt_at=i.last_attempt_at,
                )
                for i in ordered
            ),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "pending_count": self.pending_count,
            "items": [
                {
                    "id": i.id,
                    "attempt_count": i.attempt_count,
                    "enqueued_at": _iso(i.enqueued_at),
                    "last_attempt_at": _iso(i.last_attempt_at),
                }
                for i in self.items
            ],
        }
