"""Process-local reconciliation queue, and the parking area ``RedisQueue`` drains first.

Jittered cadence runs sit here for minutes before they may start, while an
operator's emergency run must start now. One heap ordered by priority alone
would put a delayed CRITICAL sweep at the head and stall everything behind it
until its jitter elapsed; one heap ordered by due time would let a routine
frequent run beat an emergency run that became due a moment later.

So waiting work is split by whether it may start yet. ``_scheduled_heap`` is
ordered by due time and only ever feeds ``_ready_heap``, which is ordered by
(priority value, insertion sequence). Each dequeue first moves every due entry
across and then serves the ready heap, which keeps equal priorities in arrival
order.
"""
from __future__ import annotations

import heapq
import itertools
import threading
import time
from dataclasses import dataclass
from typing import Optional

from payment_reconciliation.config import QUEUE_SETTINGS
from payment_reconciliation.jobs.reconciliation_job import QueuedJob
from payment_reconciliation.utils import get_logger

logger = get_logger(__name__)


@dataclass(slots=True)
class QueueItem:
    """A queued job plus the ordering keys both backends sort it by."""

    job: QueuedJob
    priority_label: str
    priority_value: int
    enqueued_at: float
    ready_at: float
    seq: int


def priority_map() -> dict[str, int]:
    """Priority label -> sort value from ``QUEUE_SETTINGS["priorities"]``."""
    priorities_cfg = QUEUE_SETTINGS.get("priorities", {})
    return dict(priorities_cfg) if isinstance(priorities_cfg, dict) else {"medium": 5}


class PriorityDelayQueue:
    backend = "memory"

    def __init__(self, name: str = "default") -> None:
        self.name = name
        self._priority_map = priority_map()
        self._warn_depth = int(QUEUE_SETTINGS.get("warn_depth", 1000))  # type: ignore[arg-type]
        self._capacity = int(QUEUE_SETTINGS.get("max_in_memory", 5000))  # type: ignore[arg-type]
        self._cv = threading.Condition(threading.RLock())
        self._ready_heap: list[tuple[int, int, QueueItem]] = []
        self._scheduled_heap: list[tuple[float, int, QueueItem]] = []
        self._sequence = itertools.count(1)
        self._closed = False

    def _release_due(self, now: float) -> None:
        scheduled = self._scheduled_heap
        while scheduled and scheduled[0][0] <= now:
            _, _, item = heapq.heappop(scheduled)
            heapq.heappush(self._ready_heap, (item.priority_value, item.seq, item))

    def _seconds_until_due(self, now: float) -> Optional[float]:
        if not self._scheduled_heap:
            return None
        return max(0.0, self._scheduled_heap[0][0] - now)

    def enqueue(self, job: QueuedJob, *, priority: str = "medium", delay_seconds: float = 0.0) -> QueueItem:
        with self._cv:
            if self._closed:
                raise RuntimeError("Queue shutdown")
            if priority not in self._priority_map:
                raise ValueError(f"Unknown priority '{priority}'")
            if self.depth() >= self._capacity:
                raise OverflowError("Queue capacity exceeded")

            now = time.time()
            delay = max(0.0, delay_seconds)
            item = QueueItem(
                job=job,
                priority_label=priority,
                priority_value=self._priority_map[priority],
                enqueued_at=now,
                ready_at=now + delay,
                seq=next(self._sequence),
            )
            if delay:
                heapq.heappush(self._scheduled_heap, (item.ready_at, item.seq, item))
            else:
                heapq.heappush(self._ready_heap, (item.priority_value, item.seq, item))

            depth = self.depth()
            if depth >= self._warn_depth:
                logger.warning("Queue depth warning", queue=self.name, depth=depth)
            self._cv.notify()
            return item

    def dequeue(self, *, block: bool = True, timeout: Optional[float] = None) -> Optional[QueuedJob]:
        """Pop the next ready job.

        Non-blocking calls return None straight away when nothing is ready.
        Blocking calls wait for a job or the timeout, and return None once the
        queue is shut down and empty.
        """
        deadline = None if timeout is None else time.time() + timeout
        with self._cv:
            while True:
                now = time.time()
                self._release_due(now)
                if self._ready_heap:
                    return heapq.heappop(self._ready_heap)[2].job
                if self._closed and not self._scheduled_heap:
                    return None
                if not block:
                    return None

                wait = self._seconds_until_due(now)
                if deadline is not None:
                    remaining = deadline - now
                    if remaining <= 0:
                        return None
                    wait = remaining if wait is None else min(wait, remaining)
                if wait is None or wait > 0:
                    self._cv.wait(timeout=wait)

    def shutdown(self) -> None:
        """Refuse new jobs and wake blocked consumers. Queued jobs can still drain."""
        with self._cv:
            self._closed = True
            self._cv.notify_all()

    def purge(self) -> None:
        """Drop every waiting job. A job a worker already holds is unaffected."""
        with self._cv:
            del self._ready_heap[:]
            del self._scheduled_heap[:]
            self._cv.notify_all()

    def depth(self) -> int:
        return len(self._ready_heap) + len(self._scheduled_heap)

    def __len__(self) -> int:  # pragma: no cover
        return self.depth()

    def health_check(self) -> bool:
        return not self._closed

    def snapshot(self) -> dict:
        with self._cv:
            self._release_due(time.time())
            ready = len(self._ready_heap)
            scheduled = len(self._scheduled_heap)
            return {"depth": ready + scheduled, "ready": ready, "scheduled": scheduled, "shutdown": self._closed}


__all__ = ["PriorityDelayQueue", "QueueItem", "priority_map"]
