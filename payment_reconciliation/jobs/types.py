"""Job type, priority and provenance enums shared by the scheduler and the queue."""
from __future__ import annotations

from enum import Enum, IntEnum


class JobType(str, Enum):
    PAYMENT_RECONCILIATION = "payment-reconciliation"


class JobPriority(IntEnum):
    """Queue priority hints. Lower value is served first."""

    CRITICAL = 0   # Suspected payment inconsistency
    HIGH = 1       # Operator-triggered runs
    MEDIUM = 5     # Routine scheduled runs
    LOW = 10       # Large backstop sweeps
    BATCH = 20

    @property
    def label(self) -> str:
        return self.name.lower()

    @classmethod
    def from_label(cls, label: str) -> "JobPriority":
        try:
            return cls[label.upper()]
        except KeyError:
            raise ValueError(f"Unknown priority '{label}'") from None


class ReconciliationType(str, Enum):
    SCHEDULED = "scheduled"
    MANUAL = "manual"
    EMERGENCY = "emergency"


class JobState(str, Enum):
    WAITING = "waiting"
    DELAYED = "delayed"
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_finished(self) -> bool:
        return self in (JobState.COMPLETED, JobState.FAILED)


__all__ = ["JobType", "JobPriority", "ReconciliationType", "JobState"]
