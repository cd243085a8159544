"""
Pydantic schemas for reconciliation triggers, scheduler status and queue statistics.
"""
from datetime import datetime
from typing import Any, Dict, Optional, List
from pydantic import BaseModel, Field

from payment_reconciliation.config import MANUAL_TIME_RANGE_LIMITS
from payment_reconciliation.utils.time import from_epoch

_MIN_HOURS, _MAX_HOURS = MANUAL_TIME_RANGE_LIMITS


class ReconciliationTrigger(BaseModel):
    """
    Schema for an operator-triggered reconciliation run.
    Emergency runs use their fixed window and ignore ``time_range_hours``.
    """
    time_range_hours: int = Field(24, ge=_MIN_HOURS, le=_MAX_HOURS, description="How far back to scan, in hours")
    only_unconfirmed: bool = Field(False, description="Only pending/processing orders")
    emergency: bool = Field(False, description="Run the emergency preset (72h, CRITICAL priority)")


class ReconciliationJobCreated(BaseModel):
    job_id: str
    reconciliation_type: str
    time_range_hours: int
    only_unconfirmed: bool
    priority: str
    backend: str
    ready_at: Optional[datetime] = None


class ScheduledTimerStatus(BaseModel):
    index: int
    name: str
    running: bool
    next_run_time: Optional[str] = None


class SchedulerStatus(BaseModel):
    is_running: bool
    total_jobs: int
    timezone: str
    jobs: List[ScheduledTimerStatus] = Field(default_factory=list)


class QueueStats(BaseModel):
    name: str
    backend: str
    depth: int
    ready: int
    scheduled: int
    active: int = 0
    paused: bool
    completed: int
    failed: int
    total_processed: int
    redis_active: Optional[bool] = None


class JobDetail(BaseModel):
    """One job as the admin API reports it."""
    id: str
    job_type: str
    state: str
    priority: str
    attempts_made: int
    max_attempts: int
    payload: Dict[str, Any] = Field(default_factory=dict)
    correlation_id: Optional[str] = None
    created_at: datetime
    ready_at: Optional[datetime] = None
    processed_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    failed_reason: Optional[str] = None

    @classmethod
    def from_record(cls, record: dict) -> "JobDetail":
        timestamps = ("created_at", "ready_at", "processed_at", "finished_at")
        return cls(**{**record, **{name: from_epoch(record.get(name)) for name in timestamps}})


class QueueCleanResult(BaseModel):
    completed: int
    failed: int
