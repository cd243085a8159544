import asyncio
from unittest.mock import MagicMock

import pytest

from payment_reconciliation.jobs.job_service import JobService
from payment_reconciliation.jobs.reconciliation_job import ReconciliationJobRequest
from payment_reconciliation.jobs.types import JobPriority, JobType, ReconciliationType


def _request(**overrides) -> ReconciliationJobRequest:
    fields = dict(
        reconciliation_type=ReconciliationType.SCHEDULED,
        time_range_hours=4,
        batch_size=30,
        only_unconfirmed=True,
        priority=JobPriority.MEDIUM,
        delay_ms=0,
    )
    fields.update(overrides)
    return ReconciliationJobRequest(**fields)


def test_enqueues_payload_with_priority_label(job_service, queue_manager):
    handle = asyncio.run(job_service.add_payment_reconciliation_job(_request(priority=JobPriority.CRITICAL)))
    assert handle.priority == "critical"
    assert handle.job_type is JobType.PAYMENT_RECONCILIATION

    job = queue_manager.next_job(JobType.PAYMENT_RECONCILIATION)
    assert job.id == handle.id
    assert ReconciliationJobRequest.from_payload(job.payload) == _request(priority=JobPriority.CRITICAL)


def test_delay_is_forwarded(job_service, queue_manager):
    handle = asyncio.run(job_service.add_payment_reconciliation_job(_request(delay_ms=90_000), delay_ms=90_000))
    assert handle.delay_ms == 90_000
    assert handle.ready_at == pytest.approx(handle.enqueued_at + 90)
    assert queue_manager.next_job(JobType.PAYMENT_RECONCILIATION) is None


def test_negative_delay_rejected(job_service):
    with pytest.raises(ValueError):
        asyncio.run(job_service.add_payment_reconciliation_job(_request(), delay_ms=-1))


def test_queue_errors_propagate():
    manager = MagicMock()
    manager.add_job.side_effect = ConnectionError("redis down")
    service = JobService(manager)
    with pytest.raises(ConnectionError, match="redis down"):
        asyncio.run(service.add_payment_reconciliation_job(_request()))


def test_correlation_id_is_passed_through():
    manager = MagicMock()
    service = JobService(manager)
    asyncio.run(service.add_payment_reconciliation_job(_request(), delay_ms=1500, correlation_id="req-42"))
    manager.add_job.assert_called_once_with(
        JobType.PAYMENT_RECONCILIATION,
        _request().to_payload(),
        priority="medium",
        delay_seconds=1.5,
        correlation_id="req-42",
    )


def test_overlapping_requests_are_all_enqueued(job_service, queue_manager):
    async def both():
        await job_service.add_payment_reconciliation_job(_request())
        await job_service.add_payment_reconciliation_job(
            _request(time_range_hours=24, batch_size=100, only_unconfirmed=False)
        )

    asyncio.run(both())
    assert queue_manager.get_queue_stats()[0]["depth"] == 2
