"""
Postgres-backed QueueStore for the server flavor.

One table holds any number of named queues. Updates and deletes are keyed by
(queue, id, revision); a re-enqueue bumps the revision, so a write from an
attempt that started on the old row matches nothing.
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, AsyncIterator, Optional

import psycopg
from loguru import logger
from psycopg.rows import dict_row
from psycopg.types.json import Jsonb
from psycopg_pool import AsyncConnectionPool

from .errors import ItemNotFoundError, QueueFullError, RelayError, StoreIOError
from .store import QueueStore
from .types import QueueItem, QueueStatus

TABLE_DDL = """
CREATE TABLE IF NOT EXISTS delivery_queue (
    queue            TEXT        NOT NULL,
    id               TEXT        NOT NULL,
    payload          JSONB       NOT NULL,
    enqueued_at      TIMESTAMPTZ NOT NULL,
    attempt_count    INTEGER     NOT NULL DEFAULT 0,
    max_attempts     INTEGER     NOT NULL,
    last_attempt_at  TIMESTAMPTZ NULL,
    next_eligible_at TIMESTAMPTZ NULL,
    status           TEXT        NOT NULL DEFAULT 'pending',
    last_error       TEXT        NULL,
    revision         INTEGER     NOT NULL DEFAULT 0,
    PRIMARY KEY (queue, id),
    CHECK (attempt_count <= max_attempts),
    CHECK (status IN ('pending', 'retrying'))
);
CREATE INDEX IF NOT EXISTS delivery_queue_due_idx
    ON delivery_queue (queue, next_eligible_at, enqueued_at, id);
ALTER TABLE delivery_queue ADD COLUMN IF NOT EXISTS revision INTEGER NOT NULL DEFAULT 0;
"""

COLUMNS = (
    "id, payload, enqueued_at, attempt_count, max_attempts, "
    "last_attempt_at, next_eligible_at, status, last_error, revision"
)

LOCK_SQL = "SELECT pg_advisory_xact_lock(hashtext(%(queue)s))"

CAPACITY_SQL = (
    "SELECT count(*) AS total, "
    "bool_or(id = %(id)s) AS present "
    "FROM delivery_queue WHERE queue = %(queue)s"
)

UPSERT_SQL = (
    f"INSERT INTO delivery_queue (queue, {COLUMNS}) VALUES ("
    "%(queue)s, %(id)s, %(payload)s, %(enqueued_at)s, %(attempt_count)s, %(max_attempts)s, "
    "%(last_attempt_at)s, %(next_eligible_at)s, %(status)s, %(last_error)s, 0) "
    "ON CONFLICT (queue, id) DO UPDATE SET "
    "payload = EXCLUDED.payload, enqueued_at = EXCLUDED.enqueued_at, "
    "attempt_count = EXCLUDED.attempt_count, max_attempts = EXCLUDED.max_attempts, "
    "last_attempt_at = EXCLUDED.last_attempt_at, next_eligible_at = EXCLUDED.next_eligible_at, "
    "status = EXCLUDED.status, last_error = EXCLUDED.last_error, "
    "revision = delivery_queue.revision + 1"
)

DUE_SQL = (
    f"SELECT {COLUMNS} FROM delivery_queue "
    "WHERE queue = %(queue)s AND status IN ('pending', 'retrying') "
    "AND (next_eligible_at IS NULL OR next_eligible_at <= %(now)s) "
    "ORDER BY enqueued_at ASC, id ASC"
)

GET_SQL = f"SELECT {COLUMNS} FROM delivery_queue WHERE queue = %(queue)s AND id = %(id)s"

UPDATE_SQL = (
    "UPDATE delivery_queue SET "
    "payload = %(payload)s, enqueued_at = %(enqueued_at)s, attempt_count = %(attempt_count)s, "
    "max_attempts = %(max_attempts)s, last_attempt_at = %(last_attempt_at)s, "
    "next_eligible_at = %(next_eligible_at)s, status = %(status)s, last_error = %(last_error)s "
    "WHERE queue = %(queue)s AND id = %(id)s AND revision = %(revision)s"
)

DELETE_SQL = "DELETE FROM delivery_queue WHERE queue = %(queue)s AND id = %(id)s"

DELETE_REVISION_SQL = f"{DELETE_SQL} AND revision = %(revision)s"

EXISTS_SQL = "SELECT 1 AS present FROM delivery_queue WHERE queue = %(queue)s AND id = %(id)s"

SNAPSHOT_SQL = (
    f"SELECT {COLUMNS} FROM delivery_queue WHERE queue = %(queue)s ORDER BY enqueued_at ASC, id ASC"
)


class PostgresQueueStore(QueueStore):
    """QueueStore on the `delivery_queue` table.

    Example:
        store = PostgresQueueStore(dsn="postgresql://...", queue="notifications")
        await store.open()
        await store.ensure_table()
    """

    def __init__(
        self,
        dsn: Optional[str] = None,
        *,
        queue: str = "default",
        max_size: Optional[int] = None,
        pool: Optional[AsyncConnectionPool] = None,
        pool_max: int = 10,
    ):
        super().__init__(max_size)
        if pool is None and not dsn:
            raise ValueError("dsn or pool required")
        self.queue = queue
        self._owns_pool = pool is None
        self._pool = pool or AsyncConnectionPool(
            conninfo=dsn, max_size=pool_max, open=False, kwargs={"autocommit": False}
        )

    async def open(self) -> None:
        if self._owns_pool:
            await self._pool.open()

    async def aclose(self) -> None:
        if self._owns_pool:
            await self._pool.close()

    @asynccontextmanager
    async def _cursor(self) -> AsyncIterator[Any]:
        try:
            async with self._pool.connection() as conn:
                async with conn.cursor(row_factory=dict_row) as cur:
                    yield cur
        except RelayError:
            raise
        except (psycopg.Error, OSError) as exc:
            raise StoreIOError(f"queue table error ({self.queue}): {exc}") from exc

    def _params(self, item: QueueItem) -> dict[str, Any]:
        rec = item.to_record()
        rec.update(
            queue=self.queue,
            payload=Jsonb(item.payload),
            enqueued_at=item.enqueued_at,
            last_attempt_at=item.last_attempt_at,
            next_eligible_at=item.next_eligible_at,
        )
        return rec

    async def ensure_table(self) -> None:
        async with self._cursor() as cur:
            await cur.execute(TABLE_DDL)
        logger.info("delivery_queue table ready")

    async def enqueue(self, item: QueueItem) -> None:
        if item.status.terminal:
            raise ValueError(f"cannot enqueue item in terminal state {item.status.value}")
        async with self._cursor() as cur:
            if self._max_size is not None:
                # serializes concurrent inserts into this queue until commit
                await cur.execute(LOCK_SQL, {"queue": self.queue})
                await cur.execute(CAPACITY_SQL, {"queue": self.queue, "id": item.id})
                row = await cur.fetchone() or {}
                if not row.get("present") and int(row.get("total") or 0) >= self._max_size:
                    raise QueueFullError(f"queue {self.queue} is full ({self._max_size} items)")
            await cur.execute(UPSERT_SQL, self._params(item))

    async def list_due(self, now: datetime, limit: Optional[int] = None) -> list[QueueItem]:
        sql = DUE_SQL
        params: dict[str, Any] = {"queue": self.queue, "now": now}
        if limit is not None:
            sql = f"{sql} LIMIT %(limit)s"
            params["limit"] = int(limit)
        async with self._cursor() as cur:
            await cur.execute(sql, params)
            rows = await cur.fetchall()
        return [QueueItem.from_record(r) for r in rows]

    async def get(self, item_id: str) -> Optional[QueueItem]:
        async with self._cursor() as cur:
            await cur.execute(GET_SQL, {"queue": self.queue, "id": item_id})
            row = await cur.fetchone()
        return QueueItem.from_record(row) if row else None

    async def _exists(self, cur: Any, item_id: str) -> bool:
        await cur.execute(EXISTS_SQL, {"queue": self.queue, "id": item_id})
        return await cur.fetchone() is not None

    async def update(self, item: QueueItem) -> bool:
        async with self._cursor() as cur:
            await cur.execute(UPDATE_SQL, self._params(item))
            if cur.rowcount:
                return True
            if not await self._exists(cur, item.id):
                raise ItemNotFoundError(item.id)
        return False

    async def remove(self, item_id: str, revision: Optional[int] = None) -> bool:
        params: dict[str, Any] = {"queue": self.queue, "id": item_id}
        async with self._cursor() as cur:
            if revision is None:
                await cur.execute(DELETE_SQL, params)
                return True
            params["revision"] = revision
            await cur.execute(DELETE_REVISION_SQL, params)
            if cur.rowcount:
                return True
            return not await self._exists(cur, item_id)

    async def snapshot(self) -> QueueStatus:
        async with self._cursor() as cur:
            await cur.execute(SNAPSHOT_SQL, {"queue": self.queue})
            rows = await cur.fetchall()
        return QueueStatus.of([QueueItem.from_record(r) for r in rows])
