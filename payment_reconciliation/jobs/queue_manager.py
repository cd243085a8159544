"""Job queue manager: one priority/delay queue per job type.

Adds what the bare queues lack: job-type routing, per-type retry options,
pause/resume, completion/failure counters, per-job records and a health summary.
Pausing only stops workers from taking new jobs; producers can still enqueue.

Job records live in this process. With the Redis backend a job enqueued by
another process gets a record here only once this process dequeues it.
"""
from __future__ import annotations

import dataclasses
import threading
import time
from collections import Counter
from typing import Any, Optional, Protocol

from payment_reconciliation.config import QUEUE_SETTINGS
from payment_reconciliation.jobs.queue import PriorityDelayQueue, QueueItem
from payment_reconciliation.jobs.reconciliation_job import JobHandle, JobRecord, QueuedJob
from payment_reconciliation.jobs.types import JobState, JobType
from payment_reconciliation.utils import get_logger

logger = get_logger(__name__)


class QueueProtocol(Protocol):
    backend: str

    def enqueue(self, job: QueuedJob, *, priority: str = "medium", delay_seconds: float = 0.0) -> QueueItem: ...
    def dequeue(self, *, block: bool = True, timeout: Optional[float] = None) -> Optional[QueuedJob]: ...
    def depth(self) -> int: ...
    def health_check(self) -> bool: ...
    def shutdown(self) -> None: ...
    def purge(self) -> None: ...
    def snapshot(self) -> dict: ...


def job_type_options(job_type: JobType) -> dict[str, Any]:
    job_types = QUEUE_SETTINGS.get("job_types", {})
    options = job_types.get(job_type.value, {}) if isinstance(job_types, dict) else {}
    return dict(options)


def _pending_state(delay_seconds: float) -> JobState:
    return JobState.DELAYED if delay_seconds > 0 else JobState.WAITING


class JobQueueManager:
    def __init__(self, queues: dict[JobType, QueueProtocol]) -> None:
        self._queues = dict(queues)
        self._paused: set[JobType] = set()
        self._completed: Counter[JobType] = Counter()
        self._failed: Counter[JobType] = Counter()
        self._records: dict[str, JobRecord] = {}
        # Removed while still queued; skipped when a worker pops them
        self._removed: set[str] = set()
        self._max_finished = int(QUEUE_SETTINGS.get("max_finished_records", 1000))  # type: ignore[arg-type]
        self._lock = threading.Lock()

    def _queue(self, job_type: JobType) -> QueueProtocol:
        try:
            return self._queues[job_type]
        except KeyError:
            raise KeyError(f"Queue for job type {job_type} not found") from None

    @property
    def job_types(self) -> list[JobType]:
        return list(self._queues)

    def add_job(
        self,
        job_type: JobType,
        payload: dict[str, Any],
        *,
        priority: str = "medium",
        delay_seconds: float = 0.0,
        max_attempts: Optional[int] = None,
        correlation_id: Optional[str] = None,
    ) -> JobHandle:
        queue = self._queue(job_type)
        attempts = max_attempts if max_attempts is not None else int(job_type_options(job_type).get("attempts", 1))
        job = QueuedJob(
            job_type=job_type,
            payload=payload,
            priority=priority,
            max_attempts=max(1, attempts),
            correlation_id=correlation_id,
        )
        item = queue.enqueue(job, priority=priority, delay_seconds=delay_seconds)
        with self._lock:
            self._records[job.id] = JobRecord.for_job(job, _pending_state(delay_seconds), ready_at=item.ready_at)
        logger.info(
            "Added job",
            job_id=job.id,
            job_type=job_type.value,
            priority=priority,
            delay_seconds=round(delay_seconds, 3),
            backend=queue.backend,
        )
        return JobHandle(
            id=job.id,
            job_type=job_type,
            priority=priority,
            delay_ms=int(round(delay_seconds * 1000)),
            enqueued_at=item.enqueued_at,
            ready_at=item.ready_at,
            backend=queue.backend,
        )

    def requeue(self, job: QueuedJob, *, delay_seconds: float, reason: Optional[str] = None) -> QueueItem:
        """Put a job back for another attempt, keeping its id and attempt count."""
        item = self._queue(job.job_type).enqueue(job, priority=job.priority, delay_seconds=delay_seconds)
        with self._lock:
            record = self._record_for(job)
            record.state = _pending_state(delay_seconds)
            record.attempts_made = job.attempts_made
            record.ready_at = item.ready_at
            record.failed_reason = reason
        return item

    def next_job(self, job_type: JobType, *, timeout: Optional[float] = None) -> Optional[QueuedJob]:
        """Next eligible job, or None on timeout or while the queue is paused."""
        if self.is_paused(job_type):
            if timeout:
                time.sleep(min(timeout, 1.0))
            return None
        queue = self._queue(job_type)
        deadline = None if timeout is None else time.monotonic() + timeout
        while True:
            remaining = None if deadline is None else max(0.0, deadline - time.monotonic())
            job = queue.dequeue(block=timeout is not None, timeout=remaining)
            if job is None:
                return None
            with self._lock:
                if job.id in self._removed:
                    self._removed.discard(job.id)
                    logger.info("Dropped removed job", job_id=job.id, job_type=job_type.value)
                    continue
                record = self._record_for(job)
                record.state = JobState.ACTIVE
                record.processed_at = time.time()
            return job

    # ----------------------------- pause / resume ----------------------------- #
    def pause_queue(self, job_type: JobType) -> None:
        self._queue(job_type)
        with self._lock:
            self._paused.add(job_type)
        logger.info("Paused queue", job_type=job_type.value)

    def resume_queue(self, job_type: JobType) -> None:
        self._queue(job_type)
        with self._lock:
            self._paused.discard(job_type)
        logger.info("Resumed queue", job_type=job_type.value)

    def is_paused(self, job_type: JobType) -> bool:
        with self._lock:
            return job_type in self._paused

    # ----------------------------- outcomes ----------------------------- #
    def _record_for(self, job: QueuedJob) -> JobRecord:
        """Caller holds ``_lock``."""
        record = self._records.get(job.id)
        if record is None:
            record = JobRecord.for_job(job, JobState.WAITING)
            self._records[job.id] = record
        return record

    def _finish(self, job: QueuedJob, state: JobState, reason: Optional[str]) -> None:
        """Caller holds ``_lock``."""
        record = self._record_for(job)
        record.state = state
        record.attempts_made = job.attempts_made
        record.finished_at = time.time()
        if reason is not None:
            record.failed_reason = reason
        self._trim_finished()

    def _trim_finished(self) -> None:
        finished = [r for r in self._records.values() if r.state.is_finished]
        excess = len(finished) - self._max_finished
        if excess <= 0:
            return
        finished.sort(key=lambda r: r.finished_at or 0.0)
        for record in finished[:excess]:
            del self._records[record.id]

    def record_completed(self, job: QueuedJob) -> None:
        with self._lock:
            self._completed[job.job_type] += 1
            self._finish(job, JobState.COMPLETED, None)

    def record_failed(self, job: QueuedJob, reason: Optional[str] = None) -> None:
        with self._lock:
            self._failed[job.job_type] += 1
            self._finish(job, JobState.FAILED, reason)

    # ----------------------------- job inspection ----------------------------- #
    def get_job(self, job_id: str) -> Optional[JobRecord]:
        """Copy of the record for ``job_id``, or None when unknown or cleaned."""
        with self._lock:
            record = self._records.get(job_id)
            return dataclasses.replace(record) if record is not None else None

    def retry_job(self, job_id: str) -> Optional[JobRecord]:
        """Re-enqueue a failed job with a fresh attempt budget.

        Returns None for an unknown id. Raises ValueError when the job has not failed.
        """
        with self._lock:
            record = self._records.get(job_id)
            if record is None:
                return None
            if record.state is not JobState.FAILED:
                raise ValueError(f"Job {job_id} is {record.state.value}; only failed jobs can be retried")
            job = record.to_job()
            job.attempts_made = 0
            # Claimed before enqueueing so a concurrent retry of the same id is refused
            record.state = JobState.WAITING
        try:
            item = self._queue(job.job_type).enqueue(job, priority=job.priority)
        except Exception:
            with self._lock:
                record.state = JobState.FAILED
            raise
        with self._lock:
            record.attempts_made = 0
            record.ready_at = item.ready_at
            record.processed_at = None
            record.finished_at = None
            record.failed_reason = None
            retried = dataclasses.replace(record)
        logger.info("Retrying failed job", job_id=job_id, job_type=job.job_type.value)
        return retried

    def remove_job(self, job_id: str) -> bool:
        """Forget a job. A queued job is dropped when a worker next pops it.

        Returns False for an unknown id. Raises ValueError for a job a worker holds.
        """
        with self._lock:
            record = self._records.get(job_id)
            if record is None:
                return False
            if record.state is JobState.ACTIVE:
                raise ValueError(f"Job {job_id} is being processed and cannot be removed")
            if not record.state.is_finished:
                self._removed.add(job_id)
            del self._records[job_id]
        logger.info("Removed job", job_id=job_id, job_type=record.job_type.value, state=record.state.value)
        return True

    def clean(
        self,
        *,
        completed_grace_seconds: Optional[float] = None,
        failed_grace_seconds: Optional[float] = None,
    ) -> dict[str, int]:
        """Drop finished job records older than their grace period."""
        defaults = QUEUE_SETTINGS.get("clean_grace_seconds", {})
        if not isinstance(defaults, dict):
            defaults = {}
        grace = {
            JobState.COMPLETED: completed_grace_seconds if completed_grace_seconds is not None
            else float(defaults.get("completed", 24 * 60 * 60)),
            JobState.FAILED: failed_grace_seconds if failed_grace_seconds is not None
            else float(defaults.get("failed", 7 * 24 * 60 * 60)),
        }
        now = time.time()
        cleaned = {JobState.COMPLETED.value: 0, JobState.FAILED.value: 0}
        with self._lock:
            for job_id, record in list(self._records.items()):
                if not record.state.is_finished or record.finished_at is None:
                    continue
                if now - record.finished_at >= grace[record.state]:
                    del self._records[job_id]
                    cleaned[record.state.value] += 1
        logger.info("Cleaned job records", **cleaned)
        return cleaned

    # ----------------------------- stats / health ----------------------------- #
    def get_queue_stats(self) -> list[dict[str, Any]]:
        stats = []
        for job_type, queue in self._queues.items():
            snap = queue.snapshot()
            with self._lock:
                completed = self._completed[job_type]
                failed = self._failed[job_type]
                paused = job_type in self._paused
                active = sum(
                    1 for r in self._records.values() if r.job_type is job_type and r.state is JobState.ACTIVE
                )
            stats.append({
                "name": job_type.value,
                "backend": queue.backend,
                "depth": snap.get("depth", 0),
                "ready": snap.get("ready", 0),
                "scheduled": snap.get("scheduled", 0),
                "active": active,
                "paused": paused,
                "completed": completed,
                "failed": failed,
                "total_processed": completed + failed,
                **({"redis_active": snap["redis_active"]} if "redis_active" in snap else {}),
            })
        return stats

    def health_check(self) -> dict[str, Any]:
        stats = self.get_queue_stats()
        backends_ok = all(queue.health_check() for queue in self._queues.values())
        healthy = backends_ok and not any(s["paused"] for s in stats)
        return {"healthy": healthy, "backends_ok": backends_ok, "queues": stats}

    def purge(self) -> None:
        for queue in self._queues.values():
            queue.purge()
        with self._lock:
            for job_id, record in list(self._records.items()):
                if record.state in (JobState.WAITING, JobState.DELAYED):
                    del self._records[job_id]
            self._removed.clear()

    def shutdown(self) -> None:
        for queue in self._queues.values():
            queue.shutdown()
        logger.info("Job queues shut down")


def _build_queue(job_type: JobType, use_redis: bool) -> QueueProtocol:
    if use_redis:
        try:
            from payment_reconciliation.jobs.redis_queue import RedisQueue
            redis_queue = RedisQueue(job_type.value)
            if redis_queue.health_check():
                logger.info("Using Redis-backed queue", job_type=job_type.value)
                return redis_queue
            logger.warning("Redis server is not reachable, using in-memory queue", job_type=job_type.value)
        except Exception as e:
            logger.warning("Error initializing Redis queue, using in-memory queue", error=str(e), job_type=job_type.value)
    logger.info("Using in-memory queue", job_type=job_type.value)
    return PriorityDelayQueue(job_type.value)


def create_queue_manager(use_redis: Optional[bool] = None) -> JobQueueManager:
    """Build a manager with a queue for every job type, Redis-backed when enabled and reachable."""
    if use_redis is None:
        use_redis = bool(QUEUE_SETTINGS.get("use_redis", False))
    return JobQueueManager({job_type: _build_queue(job_type, use_redis) for job_type in JobType})


__all__ = ["JobQueueManager", "QueueProtocol", "create_queue_manager", "job_type_options"]
