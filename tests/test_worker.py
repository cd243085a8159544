import threading
import time

import pytest

from payment_reconciliation.jobs.types import JobState, JobType
from payment_reconciliation.jobs.worker import LAST_FAILURES, ReconciliationWorker, load_processor, recent_failures


def _take(manager):
    return manager.next_job(JobType.PAYMENT_RECONCILIATION)


def test_successful_job_counts_completed(queue_manager):
    seen = []
    worker = ReconciliationWorker(queue_manager, seen.append)
    queue_manager.add_job(JobType.PAYMENT_RECONCILIATION, {"time_range_hours": 4}, priority="medium")

    assert worker.process(_take(queue_manager)) is True
    assert seen == [{"time_range_hours": 4}]
    stats = queue_manager.get_queue_stats()[0]
    assert stats["completed"] == 1
    assert stats["failed"] == 0


def test_failure_is_retried_then_recorded(queue_manager, monkeypatch):
    monkeypatch.setattr("payment_reconciliation.jobs.worker.compute_backoff_seconds", lambda attempt: 0.0)

    def boom(payload):
        raise RuntimeError("gateway timeout")

    worker = ReconciliationWorker(queue_manager, boom)
    queue_manager.add_job(JobType.PAYMENT_RECONCILIATION, {}, priority="high", max_attempts=2)

    first = _take(queue_manager)
    assert worker.process(first) is False
    assert list(LAST_FAILURES) == []
    assert queue_manager.get_queue_stats()[0]["failed"] == 0

    retry = _take(queue_manager)
    assert retry.id == first.id
    assert retry.attempts_made == 1
    assert worker.process(retry) is False

    assert _take(queue_manager) is None
    assert queue_manager.get_queue_stats()[0]["failed"] == 1
    (failure,) = LAST_FAILURES
    assert failure["job_id"] == first.id
    assert failure["attempts"] == 2
    assert failure["type"] == "RuntimeError"

    record = queue_manager.get_job(first.id)
    assert record.state is JobState.FAILED
    assert record.attempts_made == 2
    assert record.failed_reason == "gateway timeout"
    assert record.finished_at is not None


def test_retry_is_delayed_by_backoff(queue_manager):
    def boom(payload):
        raise ValueError("bad response")

    worker = ReconciliationWorker(queue_manager, boom)
    handle = queue_manager.add_job(JobType.PAYMENT_RECONCILIATION, {}, priority="medium", max_attempts=3)
    worker.process(_take(queue_manager))
    stats = queue_manager.get_queue_stats()[0]
    assert stats["scheduled"] == 1
    assert stats["active"] == 0
    assert _take(queue_manager) is None

    record = queue_manager.get_job(handle.id)
    assert record.state is JobState.DELAYED
    assert record.attempts_made == 1
    assert record.failed_reason == "bad response"


def test_failure_history_is_capped(queue_manager):
    def boom(payload):
        raise RuntimeError("x")

    worker = ReconciliationWorker(queue_manager, boom)
    for _ in range(105):
        queue_manager.add_job(JobType.PAYMENT_RECONCILIATION, {}, priority="medium", max_attempts=1)
        worker.process(_take(queue_manager))
    assert len(LAST_FAILURES) == 100
    assert len(recent_failures(10)) == 10


def test_worker_threads_drain_queue(queue_manager):
    done = []
    worker = ReconciliationWorker(queue_manager, done.append, concurrency=2, poll_timeout=0.05)
    for i in range(3):
        queue_manager.add_job(JobType.PAYMENT_RECONCILIATION, {"n": i}, priority="medium")
    worker.start()
    try:
        assert worker.is_running
        deadline = time.time() + 5
        while len(done) < 3 and time.time() < deadline:
            time.sleep(0.02)
    finally:
        worker.stop(join_timeout=2)
    assert sorted(p["n"] for p in done) == [0, 1, 2]
    assert not worker.is_running


def test_concurrency_defaults_from_job_type_options(queue_manager):
    worker = ReconciliationWorker(queue_manager, print)
    assert worker.concurrency == 2


def test_load_processor():
    assert load_processor("json:dumps")({"a": 1}) == '{"a": 1}'
    with pytest.raises(ValueError):
        load_processor("json.dumps")
    with pytest.raises(TypeError):
        load_processor("json:__name__")
    with pytest.raises(ModuleNotFoundError):
        load_processor("no_such_module_anywhere:run")


def test_completed_job_record(queue_manager):
    worker = ReconciliationWorker(queue_manager, lambda payload: {"checked": 3})
    handle = queue_manager.add_job(JobType.PAYMENT_RECONCILIATION, {"time_range_hours": 4}, priority="medium")
    job = _take(queue_manager)
    assert queue_manager.get_job(handle.id).state is JobState.ACTIVE
    assert queue_manager.get_queue_stats()[0]["active"] == 1

    worker.process(job)
    record = queue_manager.get_job(handle.id)
    assert record.state is JobState.COMPLETED
    assert record.attempts_made == 1
    assert record.processed_at is not None
    assert record.finished_at >= record.processed_at
    assert queue_manager.get_queue_stats()[0]["active"] == 0


def test_failure_during_shutdown_is_recorded_not_raised(queue_manager):
    def boom(payload):
        raise ConnectionError("gateway reset")

    worker = ReconciliationWorker(queue_manager, boom)
    handle = queue_manager.add_job(JobType.PAYMENT_RECONCILIATION, {}, priority="high", max_attempts=3)
    job = _take(queue_manager)
    queue_manager.shutdown()

    # Attempts remain, but the closed queue refuses the retry
    assert worker.process(job) is False
    assert queue_manager.get_queue_stats()[0]["failed"] == 1
    (failure,) = LAST_FAILURES
    assert failure["job_id"] == handle.id
    assert failure["attempts"] == 1
    assert failure["type"] == "ConnectionError"
    record = queue_manager.get_job(handle.id)
    assert record.state is JobState.FAILED
    assert record.failed_reason == "gateway reset"


def test_failure_history_bounded_under_concurrent_workers(queue_manager):
    def boom(payload):
        raise RuntimeError("x")

    worker = ReconciliationWorker(queue_manager, boom)
    for _ in range(200):
        queue_manager.add_job(JobType.PAYMENT_RECONCILIATION, {}, priority="medium", max_attempts=1)
    jobs = [_take(queue_manager) for _ in range(200)]

    threads = [threading.Thread(target=lambda chunk=jobs[i::4]: [worker.process(j) for j in chunk]) for i in range(4)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=10)

    assert queue_manager.get_queue_stats()[0]["failed"] == 200
    assert len(LAST_FAILURES) == 100
    assert len({f["job_id"] for f in LAST_FAILURES}) == 100
