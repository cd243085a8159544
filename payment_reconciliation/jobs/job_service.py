"""Typed dispatch facade over the job queue manager."""
from __future__ import annotations

import asyncio
from typing import Optional

from payment_reconciliation.jobs.queue_manager import JobQueueManager
from payment_reconciliation.jobs.reconciliation_job import JobHandle, ReconciliationJobRequest
from payment_reconciliation.jobs.types import JobType
from payment_reconciliation.utils import get_logger

logger = get_logger(__name__)


class JobService:
    def __init__(self, queue_manager: JobQueueManager) -> None:
        self.queue_manager = queue_manager

    async def add_payment_reconciliation_job(
        self,
        request: ReconciliationJobRequest,
        *,
        delay_ms: int = 0,
        correlation_id: Optional[str] = None,
    ) -> JobHandle:
        """Enqueue one payment reconciliation run.

        Queue errors (Redis outage after fallback failure, capacity, shutdown)
        propagate to the caller unchanged.
        """
        if delay_ms < 0:
            raise ValueError(f"delay_ms must not be negative, got {delay_ms}")
        logger.info(
            "Scheduling payment reconciliation job",
            reconciliation_type=request.reconciliation_type.value,
            time_range_hours=request.time_range_hours,
            batch_size=request.batch_size,
            only_unconfirmed=request.only_unconfirmed,
            priority=request.priority.label,
            delay=f"{delay_ms}ms" if delay_ms else "immediate",
        )
        # Redis calls block; keep them off the event loop
        return await asyncio.to_thread(
            self.queue_manager.add_job,
            JobType.PAYMENT_RECONCILIATION,
            request.to_payload(),
            priority=request.priority.label,
            delay_seconds=delay_ms / 1000.0,
            correlation_id=correlation_id,
        )


__all__ = ["JobService"]
