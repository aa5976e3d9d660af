"""
Unit tests for QueueItem and QueueStatus.
"""

from datetime import datetime, timedelta, timezone

import pytest

from grievance_relay.delivery import ItemStatus, QueueItem, QueueStatus

T0 = datetime(2024, 1, 1, tzinfo=timezone.utc)


def test_new_item_defaults():
    item = QueueItem.new({"a": 1}, now=T0)
    assert len(item.id) == 32
    assert item.status is ItemStatus.PENDING
    assert item.attempt_count == 0
    assert item.is_due(T0)


def test_is_due_respects_next_eligible():
    item = QueueItem.new({}, now=T0)
    item.next_eligible_at = T0 + timedelta(seconds=10)
    assert not item.is_due(T0)
    assert item.is_due(T0 + timedelta(seconds=10))


def test_terminal_never_due():
    item = QueueItem.new({}, now=T0)
    item.status = ItemStatus.ABANDONED
    assert not item.is_due(T0 + timedelta(days=1))


@pytest.mark.parametrize("kwargs", [{"max_attempts": 0}, {"attempt_count": -1}])
def test_invalid_counts_rejected(kwargs):
    with pytest.raises(ValueError):
        QueueItem(id="x", payload={}, **kwargs)


def test_record_naive_timestamps_read_as_utc():
    item = QueueItem.from_record(
        {"id": "x", "payload": {}, "enqueued_at": "2024-01-01T00:00:00", "status": "retrying"}
    )
    assert item.enqueued_at == T0
    assert item.status is ItemStatus.RETRYING


def test_status_orders_fifo():
    late = QueueItem.new({}, item_id="late", now=T0 + timedelta(seconds=1))
    early = QueueItem.new({}, item_id="early", now=T0)
    status = QueueStatus.of([late, early])
    assert status.pending_count == 2
    assert [i.id for i in status.items] == ["early", "late"]
