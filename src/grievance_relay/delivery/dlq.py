"""
Bounded dead-letter log (file-based NDJSON).

Abandoned items land here for diagnostics. Records are never retried by the
scheduler. When the log exceeds max_records the oldest records are dropped.
"""

from __future__ import annotations

import asyncio
import json
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

from loguru import logger

from .types import QueueItem


@dataclass
class DLQRecord:
    ts: float
    item_id: str
    error: str
    item: dict[str, Any]
    metadata: dict[str, Any] = field(default_factory=dict)

    def to_json(self) -> str:
        return json.dumps(
            {
                "ts": self.ts,
                "item_id": self.item_id,
                "error": self.error,
                "item": self.item,
                "metadata": self.metadata,
            },
            ensure_ascii=False,
            default=str,
        )

    @classmethod
    def from_json(cls, line: str) -> "DLQRecord":
        obj = json.loads(line)
        return cls(
            ts=float(obj.get("ts", 0.0)),
            item_id=str(obj.get("item_id", "")),
            error=str(obj.get("error", "")),
            item=obj.get("item") or {},
            metadata=obj.get("metadata") or {},
        )

    def queue_item(self) -> QueueItem:
        return QueueItem.from_record(self.item)


class DeadLetterQueue:
    """Append-only NDJSON file capped at max_records."""

    def __init__(self, path: str | Path, *, max_records: int = 1000, mkdirs: bool = True):
        if max_records <= 0:
            raise ValueError("max_records must be > 0")
        self.path = Path(path)
        self.max_records = max_records
        if mkdirs:
            self.path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = asyncio.Lock()

    async def save(
        self,
        item: QueueItem,
        error: BaseException | str,
        metadata: Optional[dict[str, Any]] = None,
    ) -> DLQRecord:
        rec = DLQRecord(
            ts=time.time(),
            item_id=item.id,
            error=error if isinstance(error, str) else f"{type(error).__name__}: {error}",
            item=item.to_record(),
            metadata=dict(metadata or {}),
        )
        async with self._lock:
            await asyncio.to_thread(self._append, rec.to_json())
        logger.debug(f"DLQ: saved item {item.id} to {self.path}")
        return rec

    def _append(self, line: str) -> None:
        lines = self._read_lines()
        lines.append(line)
        if len(lines) > self.max_records:
            lines = lines[-self.max_records :]
            tmp = self.path.with_suffix(self.path.suffix + ".tmp")
            tmp.write_text("\n".join(lines) + "\n", encoding="utf-8")
            tmp.replace(self.path)
            return
        with open(self.path, "a", encoding="utf-8") as f:
            f.write(line + "\n")

    def _read_lines(self) -> list[str]:
        if not self.path.exists():
            return []
        with open(self.path, "r", encoding="utf-8") as f:
            return [ln.rstrip("\n") for ln in f if ln.strip()]

    async def replay(self, max_records: int = 100) -> list[DLQRecord]:
        """Oldest-first records, at most max_records."""
        async with self._lock:
            lines = await asyncio.to_thread(self._read_lines)
        out: list[DLQRecord] = []
        for ln in lines[:max_records]:
            try:
                out.append(DLQRecord.from_json(ln))
            except (ValueError, TypeError) as exc:
                logger.warning(f"DLQ: skipping unreadable record in {self.path}: {exc}")
        return out

    async def count(self) -> int:
        async with self._lock:
            return len(await asyncio.to_thread(self._read_lines))
