"""Reconciliation job request, queued job envelope, enqueue handle and job record."""
from __future__ import annotations

import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Optional

from payment_reconciliation.jobs.types import JobPriority, JobState, JobType, ReconciliationType


@dataclass(frozen=True, slots=True)
class ReconciliationJobRequest:
    """One unit of reconciliation work, built at trigger time and never mutated."""

    reconciliation_type: ReconciliationType
    time_range_hours: int
    batch_size: int
    only_unconfirmed: bool
    priority: JobPriority = JobPriority.MEDIUM
    delay_ms: int = 0

    def __post_init__(self) -> None:
        if self.time_range_hours <= 0:
            raise ValueError(f"time_range_hours must be positive, got {self.time_range_hours}")
        if self.batch_size <= 0:
            raise ValueError(f"batch_size must be positive, got {self.batch_size}")
        if self.delay_ms < 0:
            raise ValueError(f"delay_ms must not be negative, got {self.delay_ms}")

    def to_payload(self) -> dict[str, Any]:
        return {
            "reconciliation_type": self.reconciliation_type.value,
            "time_range_hours": self.time_range_hours,
            "batch_size": self.batch_size,
            "only_unconfirmed": self.only_unconfirmed,
            "priority": self.priority.label,
            "delay_ms": self.delay_ms,
        }

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> "ReconciliationJobRequest":
        return cls(
            reconciliation_type=ReconciliationType(payload["reconciliation_type"]),
            time_range_hours=int(payload["time_range_hours"]),
            batch_size=int(payload["batch_size"]),
            only_unconfirmed=bool(payload["only_unconfirmed"]),
            priority=JobPriority.from_label(payload.get("priority", "medium")),
            delay_ms=int(payload.get("delay_ms", 0)),
        )


@dataclass(slots=True)
class QueuedJob:
    """Envelope stored in a queue; ``attempts_made`` grows on each retry."""

    job_type: JobType
    payload: dict[str, Any]
    priority: str = "medium"
    max_attempts: int = 1
    attempts_made: int = 0
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    created_at: float = field(default_factory=time.time)
    correlation_id: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "job_type": self.job_type.value,
            "payload": self.payload,
            "priority": self.priority,
            "max_attempts": self.max_attempts,
            "attempts_made": self.attempts_made,
            "created_at": self.created_at,
            "correlation_id": self.correlation_id,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "QueuedJob":
        return cls(
            id=data["id"],
            job_type=JobType(data["job_type"]),
            payload=dict(data.get("payload") or {}),
            priority=data.get("priority", "medium"),
            max_attempts=int(data.get("max_attempts", 1)),
            attempts_made=int(data.get("attempts_made", 0)),
            created_at=float(data.get("created_at", time.time())),
            correlation_id=data.get("correlation_id"),
        )


@dataclass(frozen=True, slots=True)
class JobHandle:
    id: str
    job_type: JobType
    priority: str
    delay_ms: int
    enqueued_at: float
    ready_at: float
    backend: str


@dataclass(slots=True)
class JobRecord:
    """What this process knows about one job id, from enqueue to its last outcome."""

    id: str
    job_type: JobType
    state: JobState
    priority: str
    max_attempts: int
    payload: dict[str, Any]
    attempts_made: int = 0
    correlation_id: Optional[str] = None
    created_at: float = field(default_factory=time.time)
    ready_at: Optional[float] = None
    processed_at: Optional[float] = None
    finished_at: Optional[float] = None
    failed_reason: Optional[str] = None

    @classmethod
    def for_job(cls, job: QueuedJob, state: JobState, ready_at: Optional[float] = None) -> "JobRecord":
        return cls(
            id=job.id,
            job_type=job.job_type,
            state=state,
            priority=job.priority,
            max_attempts=job.max_attempts,
            payload=dict(job.payload),
            attempts_made=job.attempts_made,
            correlation_id=job.correlation_id,
            created_at=job.created_at,
            ready_at=ready_at,
        )

    def to_job(self) -> QueuedJob:
        return QueuedJob(
            id=self.id,
            job_type=self.job_type,
            payload=dict(self.payload),
            priority=self.priority,
            max_attempts=self.max_attempts,
            attempts_made=self.attempts_made,
            created_at=self.created_at,
            correlation_id=self.correlation_id,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "job_type": self.job_type.value,
            "state": self.state.value,
            "priority": self.priority,
            "attempts_made": self.attempts_made,
            "max_attempts": self.max_attempts,
            "payload": dict(self.payload),
            "correlation_id": self.correlation_id,
            "created_at": self.created_at,
            "ready_at": self.ready_at,
            "processed_at": self.processed_at,
            "finished_at": self.finished_at,
            "failed_reason": self.failed_reason,
        }


__all__ = ["ReconciliationJobRequest", "QueuedJob", "JobHandle", "JobRecord"]
