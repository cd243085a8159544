"""Redis-backed priority + delay queue.

Features:
- Priority ordering (lower numeric priority value = higher priority), FIFO within a priority.
- Optional delay (scheduled execution time) per job.
- Persistence across application restarts and visibility to external workers.
- Thread-safe operations.
- Fallback to the in-memory queue if Redis is unavailable.

Data structures in Redis (``<prefix>`` is ``QUEUE_SETTINGS["redis_key_prefix"]``):
 1. Sorted set ``<prefix>:<queue>:ready`` - score = priority * 10**13 + enqueued_ms
 2. Sorted set ``<prefix>:<queue>:scheduled`` - score = ready_at epoch seconds

On enqueue a job goes to the ready set when it has no delay, otherwise to the
scheduled set. On dequeue due scheduled jobs are promoted, then the lowest
score of the ready set is popped (ZPOPMIN / BZPOPMIN).
"""
from __future__ import annotations

import json
import time
import threading
from typing import Any, Optional

import redis

from payment_reconciliation.config import QUEUE_SETTINGS
from payment_reconciliation.jobs.queue import PriorityDelayQueue, QueueItem, priority_map
from payment_reconciliation.jobs.reconciliation_job import QueuedJob
from payment_reconciliation.utils import get_logger

logger = get_logger(__name__)

_PRIORITY_SCALE = 10 ** 13  # larger than any epoch-millisecond value


def ready_score(priority_value: int, enqueued_at: float) -> float:
    return float(priority_value * _PRIORITY_SCALE + int(enqueued_at * 1000))


class RedisQueue:
    backend = "redis"

    def __init__(self, name: str = "default") -> None:
        self.name = name
        self._redis_url: str = str(QUEUE_SETTINGS.get("redis_url", "redis://localhost:6379/0"))
        prefix = str(QUEUE_SETTINGS.get("redis_key_prefix", "bareloft:jobs"))
        self._ready_key = f"{prefix}:{name}:ready"
        self._scheduled_key = f"{prefix}:{name}:scheduled"
        self._health_check_timeout = float(QUEUE_SETTINGS.get("redis_health_check_timeout", 2.0))  # type: ignore[arg-type]
        self._warn_depth = int(QUEUE_SETTINGS.get("warn_depth", 1000))  # type: ignore[arg-type]
        self._priority_map = priority_map()

        self._fallback_queue = PriorityDelayQueue(name)
        self._redis_client: Optional[redis.Redis] = None
        self._lock = threading.RLock()
        self._is_redis_active = False
        self._shutdown = False
        self._seq_counter = 0
        self._init_redis_client()

    def _init_redis_client(self) -> None:
        """Initialize Redis client and test connection."""
        try:
            self._redis_client = redis.from_url(
                self._redis_url, socket_connect_timeout=self._health_check_timeout
            )
            self._redis_client.ping()
            self._is_redis_active = True
            logger.info("Connected to Redis successfully", url=self._redis_url, queue=self.name)
        except (redis.RedisError, ConnectionError) as e:
            self._is_redis_active = False
            self._redis_client = None
            logger.warning("Failed to connect to Redis, using in-memory fallback queue", error=str(e), queue=self.name)

    @property
    def is_redis_active(self) -> bool:
        return self._is_redis_active

    def health_check(self) -> bool:
        """Check if Redis is available and update status accordingly."""
        with self._lock:
            if self._redis_client is None:
                self._init_redis_client()
                return self._is_redis_active

        try:
            self._redis_client.ping()
            if not self._is_redis_active:
                logger.info("Redis connection restored", queue=self.name)
            self._is_redis_active = True
            return True
        except (redis.RedisError, ConnectionError, AttributeError) as e:
            if self._is_redis_active:
                logger.warning("Redis connection lost, using in-memory fallback queue", error=str(e), queue=self.name)
            self._is_redis_active = False
            return False

    def _serialize(self, item: QueueItem) -> str:
        return json.dumps({
            "job": item.job.to_dict(),
            "priority_label": item.priority_label,
            "priority_value": item.priority_value,
            "enqueued_at": item.enqueued_at,
            "ready_at": item.ready_at,
            "seq": item.seq,
        })

    def _deserialize(self, raw: Any) -> QueueItem:
        text = raw.decode("utf-8") if isinstance(raw, bytes) else str(raw)
        data = json.loads(text)
        return QueueItem(
            job=QueuedJob.from_dict(data["job"]),
            priority_label=data.get("priority_label", "medium"),
            priority_value=int(data.get("priority_value", self._priority_map.get("medium", 5))),
            enqueued_at=float(data.get("enqueued_at", time.time())),
            ready_at=float(data.get("ready_at", time.time())),
            seq=int(data.get("seq", 0)),
        )

    def _mark_failed(self, operation: str, error: Exception) -> None:
        logger.error("Redis error", operation=operation, error=str(error), queue=self.name)
        self._is_redis_active = False

    def _promote_scheduled(self) -> None:
        """Move due scheduled jobs to the ready set.

        A member is only re-added by the process whose ZREM removed it, so two
        processes promoting the same due member deliver it once.
        """
        if not self._is_redis_active or self._redis_client is None:
            return
        try:
            due = self._redis_client.zrangebyscore(self._scheduled_key, 0, time.time())
            if not due:
                return
            promoted = 0
            for raw in due:
                member = raw.decode("utf-8") if isinstance(raw, bytes) else str(raw)
                if not self._redis_client.zrem(self._scheduled_key, member):
                    continue
                item = self._deserialize(raw)
                self._redis_client.zadd(self._ready_key, {member: ready_score(item.priority_value, item.enqueued_at)})
                promoted += 1
            if promoted:
                logger.debug("Promoted scheduled jobs to ready set", count=promoted, queue=self.name)
        except redis.RedisError as e:
            self._mark_failed("promote", e)

    def enqueue(self, job: QueuedJob, *, priority: str = "medium", delay_seconds: float = 0.0) -> QueueItem:
        """Enqueue a job with the given priority and delay."""
        with self._lock:
            if self._shutdown:
                raise RuntimeError("Queue shutdown")
            if priority not in self._priority_map:
                raise ValueError(f"Unknown priority '{priority}'")

            if not self.health_check() or self._redis_client is None:
                logger.warning("Redis unavailable, falling back to in-memory queue", queue=self.name)
                return self._fallback_queue.enqueue(job, priority=priority, delay_seconds=delay_seconds)

            now_ts = time.time()
            self._seq_counter += 1
            item = QueueItem(
                job=job,
                priority_label=priority,
                priority_value=self._priority_map[priority],
                enqueued_at=now_ts,
                ready_at=now_ts + max(0.0, delay_seconds),
                seq=self._seq_counter,
            )
            try:
                member = self._serialize(item)
                if item.ready_at <= now_ts:
                    self._redis_client.zadd(self._ready_key, {member: ready_score(item.priority_value, now_ts)})
                else:
                    self._redis_client.zadd(self._scheduled_key, {member: item.ready_at})
                queue_depth = self.depth()
                if queue_depth >= self._warn_depth:
                    logger.warning("Queue depth warning", depth=queue_depth, queue=self.name)
                return item
            except redis.RedisError as e:
                self._mark_failed("enqueue", e)
                return self._fallback_queue.enqueue(job, priority=priority, delay_seconds=delay_seconds)

    def dequeue(self, *, block: bool = True, timeout: Optional[float] = None) -> Optional[QueuedJob]:
        """Dequeue the next ready job with the highest priority."""
        if self._shutdown and self.depth() == 0:
            return None

        with self._lock:
            if not self.health_check() or self._redis_client is None:
                client = None
            else:
                client = self._redis_client
                self._promote_scheduled()
        if client is None:
            return self._fallback_queue.dequeue(block=block, timeout=timeout)

        # Jobs parked in the fallback while Redis was down drain first
        if self._fallback_queue.depth():
            job = self._fallback_queue.dequeue(block=False)
            if job is not None:
                return job
        # The blocking pop runs outside the lock so producers are never stalled.
        try:
            if block:
                # BZPOPMIN timeout 0 blocks forever; keep at least one second
                wait = max(1, int(timeout)) if timeout is not None else 0
                result = client.bzpopmin([self._ready_key], timeout=wait)
                if not result:
                    return None
                _, member, _ = result
            else:
                result = client.zpopmin(self._ready_key, 1)
                if not result:
                    return None
                member, _ = result[0]
            return self._deserialize(member).job
        except redis.RedisError as e:
            self._mark_failed("dequeue", e)
            return self._fallback_queue.dequeue(block=False)
        except (ValueError, KeyError) as e:
            logger.error("Discarding unreadable queue entry", error=str(e), queue=self.name)
            return None

    def shutdown(self) -> None:
        with self._lock:
            self._shutdown = True
            self._fallback_queue.shutdown()

    def purge(self) -> None:
        """Remove all queued jobs from Redis and the fallback queue."""
        with self._lock:
            self._fallback_queue.purge()
            if not self.health_check() or self._redis_client is None:
                return
            try:
                self._redis_client.delete(self._ready_key)
                self._redis_client.delete(self._scheduled_key)
                logger.info("Redis queue purged", queue=self.name)
            except redis.RedisError as e:
                self._mark_failed("purge", e)

    @staticmethod
    def _as_int(value: Any) -> int:
        if value is None:
            return 0
        if isinstance(value, bytes):
            value = value.decode("utf-8")
        try:
            return int(value)
        except (ValueError, TypeError):
            return 0

    def _counts(self) -> tuple[int, int]:
        ready = self._as_int(self._redis_client.zcard(self._ready_key))  # type: ignore[union-attr]
        scheduled = self._as_int(self._redis_client.zcard(self._scheduled_key))  # type: ignore[union-attr]
        return ready, scheduled

    def depth(self) -> int:
        """Total number of queued jobs (Redis plus anything parked in the fallback)."""
        with self._lock:
            if not self.health_check() or self._redis_client is None:
                return self._fallback_queue.depth()
            try:
                ready, scheduled = self._counts()
                return ready + scheduled + self._fallback_queue.depth()
            except redis.RedisError as e:
                self._mark_failed("depth", e)
                return self._fallback_queue.depth()

    def __len__(self) -> int:
        return self.depth()

    def snapshot(self) -> dict:
        with self._lock:
            if not self.health_check() or self._redis_client is None:
                snapshot = self._fallback_queue.snapshot()
                snapshot["redis_active"] = False
                return snapshot
            try:
                self._promote_scheduled()
                ready, scheduled = self._counts()
                return {
                    "depth": ready + scheduled,
                    "ready": ready,
                    "scheduled": scheduled,
                    "shutdown": self._shutdown,
                    "redis_active": True,
                }
            except redis.RedisError as e:
                self._mark_failed("snapshot", e)
                snapshot = self._fallback_queue.snapshot()
                snapshot["redis_active"] = False
                return snapshot


__all__ = ["RedisQueue", "ready_score"]
