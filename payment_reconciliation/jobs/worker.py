"""Background worker threads that feed queued reconciliation jobs to a processor.

The processor owns the actual comparison against the payment gateway and must
be idempotent per order: scheduled cadences overlap in time range and are never
deduplicated, and a failed job is retried.
"""
from __future__ import annotations

import importlib
import threading
import time
from collections import deque
from typing import Any, Callable, Optional

from payment_reconciliation.jobs.queue_manager import JobQueueManager, job_type_options
from payment_reconciliation.jobs.reconciliation_job import QueuedJob
from payment_reconciliation.jobs.types import JobType
from payment_reconciliation.utils import get_logger, log_performance
from payment_reconciliation.utils.backoff import compute_backoff_seconds
from payment_reconciliation.utils.logger import StructuredLogger

logger = get_logger(__name__)

Processor = Callable[[dict[str, Any]], Any]

# Terminal failures, newest last (inspected by tests and the admin API).
# Appended from every worker thread; deque append and its maxlen trim are atomic.
LAST_FAILURES: deque[dict] = deque(maxlen=100)


def recent_failures(limit: int = 10) -> list[dict]:
    return list(LAST_FAILURES)[-limit:]


class ReconciliationWorker:
    def __init__(
        self,
        manager: JobQueueManager,
        processor: Processor,
        *,
        job_type: JobType = JobType.PAYMENT_RECONCILIATION,
        concurrency: Optional[int] = None,
        poll_timeout: float = 5.0,
    ):
        options = job_type_options(job_type)
        self.manager = manager
        self.processor = processor
        self.job_type = job_type
        self.concurrency = max(1, int(concurrency if concurrency is not None else options.get("concurrency", 1)))
        self.poll_timeout = poll_timeout
        self._threads: list[threading.Thread] = []
        self._stop_event = threading.Event()

    @property
    def is_running(self) -> bool:
        return any(t.is_alive() for t in self._threads)

    def start(self) -> None:
        if self.is_running:
            logger.warning("Reconciliation worker already running", job_type=self.job_type.value)
            return
        self._stop_event.clear()
        self._threads = [
            threading.Thread(target=self._loop, name=f"{self.job_type.value}-worker-{i}", daemon=True)
            for i in range(self.concurrency)
        ]
        for thread in self._threads:
            thread.start()
        logger.info("Reconciliation worker started", job_type=self.job_type.value, concurrency=self.concurrency)

    def stop(self, *, join_timeout: Optional[float] = None) -> None:
        self._stop_event.set()
        logger.info("Reconciliation worker stop requested", job_type=self.job_type.value)
        if join_timeout is not None:
            self.join(join_timeout)

    def join(self, timeout: Optional[float] = None) -> None:
        """Wait for the threads to exit. A thread blocked on an open queue waits out ``poll_timeout``."""
        for thread in self._threads:
            thread.join(timeout=timeout)

    def _loop(self) -> None:
        while not self._stop_event.is_set():
            try:
                job = self.manager.next_job(self.job_type, timeout=self.poll_timeout)
                if job is None:
                    continue
                self.process(job)
            except Exception as e:  # pragma: no cover - keeps the thread alive
                logger.exception("Worker loop error", error=str(e))
                time.sleep(1)

    def process(self, job: QueuedJob) -> bool:
        """Run one job; returns True on success.

        A processor error is never raised. The job is requeued with backoff while
        attempts remain and the queue accepts it; otherwise it is recorded as failed.
        """
        job.attempts_made += 1
        started = time.perf_counter()
        job_logger = logger.bind(job_id=job.id, correlation_id=job.correlation_id)
        job_logger.info(
            "Processing job",
            job_type=job.job_type.value,
            attempt=job.attempts_made,
            max_attempts=job.max_attempts,
        )
        try:
            result = self.processor(job.payload)
        except Exception as e:
            self._handle_failure(job, e, job_logger)
            return False
        self.manager.record_completed(job)
        duration_ms = round((time.perf_counter() - started) * 1000, 2)
        job_logger.info(
            "Job completed",
            duration_ms=duration_ms,
            result=result if isinstance(result, (dict, str, int, float, bool)) else None,
        )
        log_performance("reconciliation_job", duration_ms, {"job_id": job.id, "attempt": job.attempts_made})
        return True

    def _handle_failure(self, job: QueuedJob, error: Exception, job_logger: StructuredLogger) -> None:
        if job.attempts_made < job.max_attempts:
            delay = compute_backoff_seconds(job.attempts_made)
            try:
                self.manager.requeue(job, delay_seconds=delay, reason=str(error))
            except RuntimeError as e:
                # Queue shut down while the job ran; there is nowhere left to retry it
                job_logger.warning("Retry not possible, queue is shut down", error=str(e))
            else:
                job_logger.warning(
                    "Job failed, retrying",
                    attempt=job.attempts_made,
                    max_attempts=job.max_attempts,
                    retry_in_seconds=round(delay, 2),
                    error=str(error),
                )
                return
        self.manager.record_failed(job, str(error))
        job_logger.error(
            "Job failed permanently",
            attempts=job.attempts_made,
            error=str(error),
            error_type=type(error).__name__,
        )
        LAST_FAILURES.append({
            "job_id": job.id,
            "job_type": job.job_type.value,
            "attempts": job.attempts_made,
            "error": str(error),
            "type": type(error).__name__,
        })


def load_processor(path: str) -> Processor:
    """Resolve a ``"package.module:callable"`` reference."""
    module_name, sep, attr = path.partition(":")
    if not sep or not module_name or not attr:
        raise ValueError(f"Processor reference must look like 'module:callable', got '{path}'")
    module = importlib.import_module(module_name)
    processor = getattr(module, attr)
    if not callable(processor):
        raise TypeError(f"{path} is not callable")
    return processor


__all__ = ["ReconciliationWorker", "LAST_FAILURES", "recent_failures", "load_processor", "Processor"]
