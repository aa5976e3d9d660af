"""
Unit tests for PostgresQueueStore against a fake psycopg pool.
"""

from contextlib import asynccontextmanager

import psycopg
import pytest

from grievance_relay.delivery import (
    ItemNotFoundError,
    QueueFullError,
    QueueItem,
    StoreIOError,
)
from grievance_relay.delivery.pg_store import (
    CAPACITY_SQL,
    DELETE_REVISION_SQL,
    DUE_SQL,
    EXISTS_SQL,
    LOCK_SQL,
    TABLE_DDL,
    UPDATE_SQL,
    UPSERT_SQL,
    PostgresQueueStore,
)


class FakeCursor:
    def __init__(self, results, error=None):
        self.results = results
        self.error = error
        self.executed = []
        self.rowcount = 1

    async def execute(self, sql, params=None):
        if self.error is not None:
            raise self.error
        self.executed.append((sql, params))

    async def fetchone(self):
        return self.results.pop(0) if self.results else None

    async def fetchall(self):
        return self.results.pop(0) if self.results else []


class FakePool:
    def __init__(self, results=None, error=None):
        self.cursor = FakeCursor(list(results or []), error)

    @asynccontextmanager
    async def connection(self):
        pool = self

        class Conn:
            @asynccontextmanager
            async def cursor(self, row_factory=None):
                yield pool.cursor

        yield Conn()


def _row(item_id, **kw):
    rec = QueueItem.new({"to": "x@example.org"}, item_id=item_id).to_record()
    rec.update(kw)
    return rec


@pytest.mark.asyncio
async def test_ensure_table_runs_ddl():
    pool = FakePool()
    await PostgresQueueStore(pool=pool).ensure_table()
    assert pool.cursor.executed[0][0] == TABLE_DDL


@pytest.mark.asyncio
async def test_enqueue_upserts_with_queue_name():
    pool = FakePool()
    store = PostgresQueueStore(pool=pool, queue="notifications")
    await store.enqueue(QueueItem.new({"a": 1}, item_id="n1"))

    sql, params = pool.cursor.executed[0]
    assert sql == UPSERT_SQL
    assert params["queue"] == "notifications"
    assert params["id"] == "n1"
    assert params["status"] == "pending"


@pytest.mark.asyncio
async def test_enqueue_at_capacity_rejects_new_id():
    pool = FakePool(results=[{"total": 2, "present": False}])
    store = PostgresQueueStore(pool=pool, max_size=2)

    with pytest.raises(QueueFullError):
        await store.enqueue(QueueItem.new({}, item_id="new"))
    assert [sql for sql, _ in pool.cursor.executed] == [LOCK_SQL, CAPACITY_SQL]


@pytest.mark.asyncio
async def test_enqueue_at_capacity_replaces_existing_id():
    pool = FakePool(results=[{"total": 2, "present": True}])
    store = PostgresQueueStore(pool=pool, max_size=2)

    await store.enqueue(QueueItem.new({}, item_id="old"))
    assert [sql for sql, _ in pool.cursor.executed] == [LOCK_SQL, CAPACITY_SQL, UPSERT_SQL]


@pytest.mark.asyncio
async def test_list_due_with_limit():
    pool = FakePool(results=[[_row("a"), _row("b", status="retrying", attempt_count=1)]])
    store = PostgresQueueStore(pool=pool)

    items = await store.list_due(QueueItem.new({}).enqueued_at, limit=5)

    sql, params = pool.cursor.executed[0]
    assert sql == f"{DUE_SQL} LIMIT %(limit)s"
    assert params["limit"] == 5
    assert [i.id for i in items] == ["a", "b"]
    assert items[1].attempt_count == 1


@pytest.mark.asyncio
async def test_update_missing_raises_not_found():
    pool = FakePool()
    pool.cursor.rowcount = 0
    store = PostgresQueueStore(pool=pool)

    with pytest.raises(ItemNotFoundError):
        await store.update(QueueItem.new({}, item_id="ghost"))


@pytest.mark.asyncio
async def test_capacity_check_is_serialized_per_queue():
    pool = FakePool(results=[{"total": 0, "present": False}])
    store = PostgresQueueStore(pool=pool, queue="notifications", max_size=5)

    await store.enqueue(QueueItem.new({}, item_id="n1"))

    sql, params = pool.cursor.executed[0]
    assert sql == LOCK_SQL
    assert params == {"queue": "notifications"}
    assert "pg_advisory_xact_lock" in LOCK_SQL


def test_upsert_bumps_revision_on_replace():
    assert "revision = delivery_queue.revision + 1" in UPSERT_SQL
    assert "revision" in TABLE_DDL


@pytest.mark.asyncio
async def test_update_of_replaced_row_is_not_applied():
    pool = FakePool(results=[{"present": 1}])
    pool.cursor.rowcount = 0
    store = PostgresQueueStore(pool=pool)
    item = QueueItem.new({}, item_id="a")

    assert await store.update(item) is False
    assert [sql for sql, _ in pool.cursor.executed] == [UPDATE_SQL, EXISTS_SQL]
    assert pool.cursor.executed[0][1]["revision"] == 0
    assert "AND revision = %(revision)s" in UPDATE_SQL


@pytest.mark.asyncio
async def test_conditional_remove():
    pool = FakePool(results=[{"present": 1}])
    pool.cursor.rowcount = 0
    store = PostgresQueueStore(pool=pool)

    assert await store.remove("a", revision=3) is False
    sql, params = pool.cursor.executed[0]
    assert sql == DELETE_REVISION_SQL
    assert params["revision"] == 3

    # row already gone: nothing left to protect
    assert await store.remove("a", revision=3) is True
    assert [sql for sql, _ in pool.cursor.executed][-1] == EXISTS_SQL


@pytest.mark.asyncio
async def test_snapshot_and_get():
    pool = FakePool(results=[[_row("a"), _row("b")], _row("a")])
    store = PostgresQueueStore(pool=pool)

    snap = await store.snapshot()
    assert snap.pending_count == 2
    assert (await store.get("a")).id == "a"
    assert await store.get("missing") is None


@pytest.mark.asyncio
async def test_driver_errors_become_store_errors():
    pool = FakePool(error=psycopg.OperationalError("connection refused"))
    store = PostgresQueueStore(pool=pool)

    with pytest.raises(StoreIOError):
        await store.remove("a")


def test_requires_dsn_or_pool():
    with pytest.raises(ValueError):
        PostgresQueueStore()
