"""
Unit tests for the memory and JSON-file queue stores.
"""

import json
from datetime import timedelta
from unittest.mock import patch

import pytest

from grievance_relay.delivery import (
    ItemNotFoundError,
    ItemStatus,
    JsonFileQueueStore,
    MemoryQueueStore,
    QueueFullError,
    QueueItem,
    StoreIOError,
)


@pytest.fixture(params=["memory", "file"])
def make_store(request, tmp_path):
    def _make(max_size=None):
        if request.param == "memory":
            return MemoryQueueStore(max_size=max_size)
        return JsonFileQueueStore(tmp_path / "queue.json", max_size=max_size)

    return _make


def _item(item_id, clock, **kw):
    return QueueItem.new({"n": item_id}, item_id=item_id, now=clock(), **kw)


@pytest.mark.asyncio
async def test_enqueue_same_id_keeps_one_item_latest_payload(make_store, clock):
    store = make_store()
    await store.enqueue(QueueItem.new({"v": 1}, item_id="a", now=clock()))
    await store.enqueue(QueueItem.new({"v": 2}, item_id="a", now=clock()))

    snap = await store.snapshot()
    assert snap.pending_count == 1
    assert (await store.get("a")).payload == {"v": 2}


@pytest.mark.asyncio
async def test_list_due_fifo_with_id_tiebreak(make_store, clock):
    store = make_store()
    await store.enqueue(_item("b", clock))
    await store.enqueue(_item("a", clock))  # same enqueued_at as b
    clock.advance(seconds=1)
    await store.enqueue(_item("0", clock))

    due = await store.list_due(clock())
    assert [i.id for i in due] == ["a", "b", "0"]


@pytest.mark.asyncio
async def test_list_due_skips_not_yet_eligible(make_store, clock):
    store = make_store()
    later = _item("later", clock)
    later.next_eligible_at = clock() + timedelta(minutes=5)
    await store.enqueue(later)
    await store.enqueue(_item("now", clock))

    assert [i.id for i in await store.list_due(clock())] == ["now"]
    clock.advance(minutes=5)
    assert [i.id for i in await store.list_due(clock())] == ["later", "now"]


@pytest.mark.asyncio
async def test_list_due_limit(make_store, clock):
    store = make_store()
    for i in range(5):
        await store.enqueue(_item(f"i{i}", clock))
        clock.advance(seconds=1)
    due = await store.list_due(clock(), limit=2)
    assert [i.id for i in due] == ["i0", "i1"]


@pytest.mark.asyncio
async def test_list_due_returns_copies(make_store, clock):
    store = make_store()
    await store.enqueue(_item("a", clock))
    (due,) = await store.list_due(clock())
    due.attempt_count = 3
    due.payload["n"] = "mutated"
    stored = await store.get("a")
    assert stored.attempt_count == 0
    assert stored.payload == {"n": "a"}


@pytest.mark.asyncio
async def test_update_replaces_and_missing_raises(make_store, clock):
    store = make_store()
    item = _item("a", clock)
    await store.enqueue(item)

    item.attempt_count = 1
    item.status = ItemStatus.RETRYING
    item.last_error = "boom"
    await store.update(item)
    got = await store.get("a")
    assert got.attempt_count == 1
    assert got.status is ItemStatus.RETRYING
    assert got.last_error == "boom"

    with pytest.raises(ItemNotFoundError):
        await store.update(_item("ghost", clock))


@pytest.mark.asyncio
async def test_remove_is_idempotent(make_store, clock):
    store = make_store()
    await store.enqueue(_item("a", clock))
    await store.remove("a")
    await store.remove("a")
    await store.remove("never-there")
    assert (await store.snapshot()).pending_count == 0
    assert await store.get("a") is None


@pytest.mark.asyncio
async def test_terminal_items_rejected(make_store, clock):
    store = make_store()
    item = _item("a", clock)
    item.status = ItemStatus.DELIVERED
    with pytest.raises(ValueError):
        await store.enqueue(item)


@pytest.mark.asyncio
async def test_queue_full_rejects_new_id_but_allows_replace(make_store, clock):
    store = make_store(max_size=2)
    await store.enqueue(_item("a", clock))
    await store.enqueue(_item("b", clock))

    with pytest.raises(QueueFullError):
        await store.enqueue(_item("c", clock))

    # replacing an existing id does not grow the queue
    await store.enqueue(QueueItem.new({"v": "new"}, item_id="a", now=clock()))
    snap = await store.snapshot()
    assert [i.id for i in snap.items] == ["a", "b"]


@pytest.mark.asyncio
async def test_snapshot_lists_fifo_with_attempts(make_store, clock):
    store = make_store()
    first = _item("x", clock)
    await store.enqueue(first)
    clock.advance(seconds=1)
    await store.enqueue(_item("y", clock))
    first.attempt_count = 2
    first.last_attempt_at = clock()
    await store.update(first)

    snap = await store.snapshot()
    assert snap.pending_count == 2
    assert [(i.id, i.attempt_count) for i in snap.items] == [("x", 2), ("y", 0)]
    d = snap.to_dict()
    assert d["items"][0]["last_attempt_at"] == clock().isoformat()


# ---------- JSON file store ----------


@pytest.mark.asyncio
async def test_file_store_survives_restart(tmp_path, clock):
    path = tmp_path / "queue.json"
    store = JsonFileQueueStore(path)
    item = _item("a", clock)
    await store.enqueue(item)
    item.attempt_count = 1
    item.status = ItemStatus.RETRYING
    item.next_eligible_at = clock() + timedelta(seconds=30)
    await store.update(item)

    reopened = JsonFileQueueStore(path)
    got = await reopened.get("a")
    assert got.attempt_count == 1
    assert got.status is ItemStatus.RETRYING
    assert got.next_eligible_at == clock() + timedelta(seconds=30)
    assert got.enqueued_at == clock()


@pytest.mark.asyncio
async def test_file_store_missing_or_empty_file(tmp_path, clock):
    path = tmp_path / "queue.json"
    assert (await JsonFileQueueStore(path).snapshot()).pending_count == 0
    path.write_text("  \n")
    assert (await JsonFileQueueStore(path).snapshot()).pending_count == 0


@pytest.mark.asyncio
async def test_file_store_ignores_terminal_records(tmp_path, clock):
    path = tmp_path / "queue.json"
    done = _item("done", clock).to_record()
    done["status"] = "delivered"
    path.write_text(json.dumps([done, _item("live", clock).to_record()]))

    snap = await JsonFileQueueStore(path).snapshot()
    assert [i.id for i in snap.items] == ["live"]


@pytest.mark.asyncio
async def test_file_store_corrupt_file_raises_store_error(tmp_path):
    path = tmp_path / "queue.json"
    path.write_text("{not json")
    with pytest.raises(StoreIOError):
        await JsonFileQueueStore(path).snapshot()


@pytest.mark.asyncio
async def test_file_store_write_failure_leaves_state(tmp_path, clock):
    store = JsonFileQueueStore(tmp_path / "queue.json")
    await store.enqueue(_item("a", clock))

    with patch("grievance_relay.delivery.store.os.replace", side_effect=OSError("disk full")):
        with pytest.raises(StoreIOError):
            await store.enqueue(_item("b", clock))
        with pytest.raises(StoreIOError):
            await store.remove("a")

    assert [i.id for i in (await store.snapshot()).items] == ["a"]
    reopened = JsonFileQueueStore(tmp_path / "queue.json")
    assert [i.id for i in (await reopened.snapshot()).items] == ["a"]
    # no temp files left behind
    assert [p.name for p in tmp_path.iterdir()] == ["queue.json"]


@pytest.mark.asyncio
async def test_file_store_reload_picks_up_external_changes(tmp_path, clock):
    path = tmp_path / "queue.json"
    store = JsonFileQueueStore(path)
    await store.enqueue(_item("a", clock))

    other = JsonFileQueueStore(path)
    await other.enqueue(_item("b", clock))

    assert (await store.snapshot()).pending_count == 1
    await store.reload()
    assert (await store.snapshot()).pending_count == 2


def test_store_rejects_bad_capacity():
    with pytest.raises(ValueError):
        MemoryQueueStore(max_size=0)


@pytest.mark.asyncio
async def test_reenqueue_bumps_revision_and_fences_stale_writes(make_store, clock):
    store = make_store()
    await store.enqueue(QueueItem.new({"v": 1}, item_id="a", now=clock()))
    (stale,) = await store.list_due(clock())
    assert stale.revision == 0

    await store.enqueue(QueueItem.new({"v": 2}, item_id="a", now=clock()))
    assert (await store.get("a")).revision == 1

    stale.attempt_count = 1
    stale.status = ItemStatus.RETRYING
    assert await store.update(stale) is False
    assert await store.remove("a", revision=stale.revision) is False

    got = await store.get("a")
    assert got.payload == {"v": 2}
    assert got.attempt_count == 0

    assert await store.remove("a", revision=1) is True
    assert await store.get("a") is None
    assert await store.remove("a", revision=1) is True


@pytest.mark.asyncio
async def test_file_store_skips_unreadable_records(tmp_path, clock):
    path = tmp_path / "queue.json"
    bad = _item("bad", clock).to_record()
    bad["max_attempts"] = 0
    path.write_text(json.dumps([_item("good", clock).to_record(), bad, "garbage"]))

    store = JsonFileQueueStore(path)
    assert [i.id for i in (await store.snapshot()).items] == ["good"]

    await store.enqueue(_item("next", clock))
    reopened = JsonFileQueueStore(path)
    assert [i.id for i in (await reopened.snapshot()).items] == ["good", "next"]
