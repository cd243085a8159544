from .base import ResponseBase
from .reconciliation import (
    ReconciliationTrigger,
    ReconciliationJobCreated,
    ScheduledTimerStatus,
    SchedulerStatus,
    QueueStats,
    JobDetail,
    QueueCleanResult,
)

__all__ = [
    "ResponseBase",
    "ReconciliationTrigger",
    "ReconciliationJobCreated",
    "ScheduledTimerStatus",
    "SchedulerStatus",
    "QueueStats",
    "JobDetail",
    "QueueCleanResult",
]
