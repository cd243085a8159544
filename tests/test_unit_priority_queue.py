import time

import pytest

from payment_reconciliation.config import QUEUE_SETTINGS
from payment_reconciliation.jobs.queue import PriorityDelayQueue
from payment_reconciliation.jobs.reconciliation_job import QueuedJob
from payment_reconciliation.jobs.types import JobType


def _job(label: str) -> QueuedJob:
    return QueuedJob(job_type=JobType.PAYMENT_RECONCILIATION, payload={"label": label}, priority=label)


def test_priority_queue_ordering():
    q = PriorityDelayQueue()
    q.enqueue(_job("low"), priority="low")
    q.enqueue(_job("critical"), priority="critical")
    q.enqueue(_job("medium"), priority="medium")
    q.enqueue(_job("high"), priority="high")
    snap = q.snapshot()
    assert snap.get("ready") == 4
    assert snap.get("depth") == 4
    order = [q.dequeue(block=False).payload["label"] for _ in range(4)]
    assert order == ["critical", "high", "medium", "low"]
    assert q.dequeue(block=False) is None


def test_fifo_within_priority():
    q = PriorityDelayQueue()
    first = _job("medium")
    second = _job("medium")
    q.enqueue(first, priority="medium")
    q.enqueue(second, priority="medium")
    assert q.dequeue(block=False).id == first.id
    assert q.dequeue(block=False).id == second.id


def test_delayed_job_not_ready_until_due():
    q = PriorityDelayQueue()
    item = q.enqueue(_job("critical"), priority="critical", delay_seconds=0.2)
    assert item.ready_at > item.enqueued_at
    assert q.snapshot()["scheduled"] == 1
    assert q.dequeue(block=False) is None
    time.sleep(0.3)
    job = q.dequeue(block=False)
    assert job is not None
    assert q.depth() == 0


def test_delayed_critical_does_not_block_ready_low():
    q = PriorityDelayQueue()
    q.enqueue(_job("critical"), priority="critical", delay_seconds=60)
    q.enqueue(_job("low"), priority="low")
    assert q.dequeue(block=False).payload["label"] == "low"
    assert q.snapshot() == {"depth": 1, "ready": 0, "scheduled": 1, "shutdown": False}


def test_blocking_dequeue_waits_for_delayed_job():
    q = PriorityDelayQueue()
    q.enqueue(_job("medium"), priority="medium", delay_seconds=0.1)
    job = q.dequeue(block=True, timeout=2.0)
    assert job is not None


def test_blocking_dequeue_times_out():
    q = PriorityDelayQueue()
    started = time.time()
    assert q.dequeue(block=True, timeout=0.1) is None
    assert time.time() - started >= 0.09


def test_unknown_priority_rejected():
    q = PriorityDelayQueue()
    with pytest.raises(ValueError, match="Unknown priority"):
        q.enqueue(_job("urgent"), priority="urgent")
    assert q.depth() == 0


def test_capacity_limit(monkeypatch):
    monkeypatch.setitem(QUEUE_SETTINGS, "max_in_memory", 2)
    q = PriorityDelayQueue()
    q.enqueue(_job("medium"), priority="medium")
    q.enqueue(_job("medium"), priority="medium", delay_seconds=30)
    with pytest.raises(OverflowError):
        q.enqueue(_job("medium"), priority="medium")


def test_shutdown_rejects_enqueue_and_drains():
    q = PriorityDelayQueue()
    q.enqueue(_job("medium"), priority="medium")
    q.shutdown()
    assert q.health_check() is False
    with pytest.raises(RuntimeError, match="Queue shutdown"):
        q.enqueue(_job("medium"), priority="medium")
    # Already queued work can still be drained
    assert q.dequeue(block=False) is not None
    assert q.dequeue(block=True, timeout=None) is None


def test_purge_clears_ready_and_scheduled():
    q = PriorityDelayQueue()
    q.enqueue(_job("medium"), priority="medium")
    q.enqueue(_job("low"), priority="low", delay_seconds=30)
    q.purge()
    assert q.depth() == 0
    assert q.dequeue(block=False) is None
