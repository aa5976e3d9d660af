"""
Durable queue stores.

A QueueStore maps item id -> QueueItem and survives restarts (except the
memory store). Every store holds at most one item per id, never keeps
terminal items, and reports persistence failures as StoreIOError.
"""

from __future__ import annotations

import asyncio
import json
import os
import tempfile
from abc import ABC, abstractmethod
from datetime import datetime
from pathlib import Path
from typing import Optional

from loguru import logger

from .errors import ItemNotFoundError, QueueFullError, StoreIOError
from .types import QueueItem, QueueStatus


class QueueStore(ABC):
    """Async contract shared by all queue backends."""

    def __init__(self, max_size: Optional[int] = None):
        if max_size is not None and max_size <= 0:
            raise ValueError("max_size must be > 0")
        self._max_size = max_size

    @property
    def max_size(self) -> Optional[int]:
        return self._max_size

    @abstractmethod
    async def enqueue(self, item: QueueItem) -> None:
        """Insert or replace by id. Raises QueueFullError for a new id at capacity.

        A replace bumps the stored revision so an attempt that started on the
        old version cannot overwrite or delete the new one.
        """

    @abstractmethod
    async def list_due(self, now: datetime, limit: Optional[int] = None) -> list[QueueItem]:
        """Due, non-terminal items in FIFO order by (enqueued_at, id)."""

    @abstractmethod
    async def get(self, item_id: str) -> Optional[QueueItem]: ...

    @abstractmethod
    async def update(self, item: QueueItem) -> bool:
        """Full replace by id if the stored revision still matches item.revision.

        Returns False when the item was re-enqueued meanwhile (nothing written).
        Raises ItemNotFoundError if absent.
        """

    @abstractmethod
    async def remove(self, item_id: str, revision: Optional[int] = None) -> bool:
        """Idempotent delete. With a revision, only deletes that revision.

        Returns False only when a different revision is stored.
        """

    @abstractmethod
    async def snapshot(self) -> QueueStatus: ...

    def _check_enqueue(self, item: QueueItem, items: dict[str, QueueItem]) -> None:
        if item.status.terminal:
            raise ValueError(f"cannot enqueue item in terminal state {item.status.value}")
        if item.id in items or self._max_size is None:
            return
        if len(items) >= self._max_size:
            raise QueueFullError(f"queue is full ({self._max_size} items)")


def _stored(item: QueueItem, items: dict[str, QueueItem]) -> QueueItem:
    prev = items.get(item.id)
    return item.copy(revision=prev.revision + 1 if prev is not None else 0)


def _apply_update(item: QueueItem, items: dict[str, QueueItem]) -> bool:
    prev = items.get(item.id)
    if prev is None:
        raise ItemNotFoundError(item.id)
    return prev.revision == item.revision


def _removable(item_id: str, revision: Optional[int], items: dict[str, QueueItem]) -> bool:
    prev = items.get(item_id)
    return prev is None or revision is None or prev.revision == revision


def _due(items: dict[str, QueueItem], now: datetime, limit: Optional[int]) -> list[QueueItem]:
    due = sorted((i for i in items.values() if i.is_due(now)), key=lambda i: i.sort_key)
    if limit is not None:
        due = due[:limit]
    return [i.copy() for i in due]


class MemoryQueueStore(QueueStore):
    """In-process store. Not durable; used for tests and ephemeral queues."""

    def __init__(self, max_size: Optional[int] = None):
        super().__init__(max_size)
        self._items: dict[str, QueueItem] = {}
        self._lock = asyncio.Lock()

    async def enqueue(self, item: QueueItem) -> None:
        async with self._lock:
            self._check_enqueue(item, self._items)
            self._items[item.id] = _stored(item, self._items)

    async def list_due(self, now: datetime, limit: Optional[int] = None) -> list[QueueItem]:
        async with self._lock:
            return _due(self._items, now, limit)

    async def get(self, item_id: str) -> Optional[QueueItem]:
        async with self._lock:
            item = self._items.get(item_id)
            return item.copy() if item else None

    async def update(self, item: QueueItem) -> bool:
        async with self._lock:
            if not _apply_update(item, self._items):
                return False
            self._items[item.id] = item.copy()
            return True

    async def remove(self, item_id: str, revision: Optional[int] = None) -> bool:
        async with self._lock:
            if not _removable(item_id, revision, self._items):
                return False
            self._items.pop(item_id, None)
            return True

    async def snapshot(self) -> QueueStatus:
        async with self._lock:
            return QueueStatus.of(list(self._items.values()))

    def __len__(self) -> int:
        return len(self._items)


class JsonFileQueueStore(QueueStore):
    """Queue persisted as one JSON document (an ordered list of records).

    Each mutation rewrites the file through a temp file + os.replace before
    returning, so the on-disk state is always either the old or the new
    document. The in-memory view only changes after the write succeeds.
    """

    def __init__(self, path: str | Path, max_size: Optional[int] = None, *, mkdirs: bool = True):
        super().__init__(max_size)
        self.path = Path(path)
        if mkdirs:
            self.path.parent.mkdir(parents=True, exist_ok=True)
        self._items: Optional[dict[str, QueueItem]] = None
        self._lock = asyncio.Lock()

    # ---------- file I/O ----------

    def _read_file(self) -> dict[str, QueueItem]:
        if not self.path.exists():
            return {}
        with open(self.path, "r", encoding="utf-8") as f:
            raw = f.read()
        if not raw.strip():
            return {}
        records = json.loads(raw)
        if not isinstance(records, list):
            raise ValueError("queue file must hold a JSON list")
        items: dict[str, QueueItem] = {}
        for n, rec in enumerate(records):
            try:
                item = QueueItem.from_record(rec)
            except (KeyError, ValueError, TypeError, AttributeError) as exc:
                logger.warning(f"Skipping unreadable queue record #{n} in {self.path}: {exc}")
                continue
            if item.status.terminal:
                continue
            items[item.id] = item
        return items

    def _write_file(self, items: dict[str, QueueItem]) -> None:
        ordered = sorted(items.values(), key=lambda i: i.sort_key)
        data = json.dumps([i.to_record() for i in ordered], ensure_ascii=False)
        fd, tmp = tempfile.mkstemp(prefix=f".{self.path.name}.", dir=str(self.path.parent))
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(data)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp, self.path)
        except BaseException:
            try:
                os.unlink(tmp)
            except OSError:
                pass
            raise

    async def _load(self) -> dict[str, QueueItem]:
        if self._items is None:
            try:
                self._items = await asyncio.to_thread(self._read_file)
            except (OSError, ValueError, KeyError, TypeError) as exc:
                raise StoreIOError(f"failed to read queue file {self.path}: {exc}") from exc
            logger.debug(f"Loaded {len(self._items)} queued items from {self.path}")
        return self._items

    async def _commit(self, items: dict[str, QueueItem]) -> None:
        try:
            await asyncio.to_thread(self._write_file, items)
        except (OSError, TypeError, ValueError) as exc:
            raise StoreIOError(f"failed to write queue file {self.path}: {exc}") from exc
        self._items = items

    # ---------- QueueStore ----------

    async def enqueue(self, item: QueueItem) -> None:
        async with self._lock:
            current = await self._load()
            self._check_enqueue(item, current)
            nxt = dict(current)
            nxt[item.id] = _stored(item, current)
            await self._commit(nxt)

    async def list_due(self, now: datetime, limit: Optional[int] = None) -> list[QueueItem]:
        async with self._lock:
            return _due(await self._load(), now, limit)

    async def get(self, item_id: str) -> Optional[QueueItem]:
        async with self._lock:
            item = (await self._load()).get(item_id)
            return item.copy() if item else None

    async def update(self, item: QueueItem) -> bool:
        async with self._lock:
            current = await self._load()
            if not _apply_update(item, current):
                return False
            nxt = dict(current)
            nxt[item.id] = item.copy()
            await self._commit(nxt)
            return True

    async def remove(self, item_id: str, revision: Optional[int] = None) -> bool:
        async with self._lock:
            current = await self._load()
            if not _removable(item_id, revision, current):
                return False
            if item_id not in current:
                return True
            nxt = dict(current)
            del nxt[item_id]
            await self._commit(nxt)
            return True

    async def snapshot(self) -> QueueStatus:
        async with self._lock:
            return QueueStatus.of(list((await self._load()).values()))

    async def reload(self) -> None:
        """Drop the cached view; the next call re-reads the file."""
        async with self._lock:
            self._items = None
