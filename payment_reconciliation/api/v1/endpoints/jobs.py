"""
Admin endpoints for the background job system and the reconciliation scheduler.
"""
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status

from payment_reconciliation.config import TRIGGER_PRESETS
from payment_reconciliation.api.deps import get_queue_manager, get_scheduler, require_admin_token
from payment_reconciliation.jobs.queue_manager import JobQueueManager
from payment_reconciliation.jobs.types import JobType
from payment_reconciliation.jobs.worker import recent_failures
from payment_reconciliation.models.schemas import (
    JobDetail,
    QueueCleanResult,
    QueueStats,
    ReconciliationJobCreated,
    ReconciliationTrigger,
    ResponseBase,
    SchedulerStatus,
)
from payment_reconciliation.services.reconciliation_scheduler import ReconciliationScheduler
from payment_reconciliation.utils import get_logger, log_business_event
from payment_reconciliation.utils.time import from_epoch

router = APIRouter(dependencies=[Depends(require_admin_token)])
logger = get_logger(__name__)


def _job_type_or_404(job_type: str) -> JobType:
    try:
        return JobType(job_type)
    except ValueError:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Unknown queue '{job_type}'") from None


@router.post(
    "/reconciliation/trigger",
    response_model=ResponseBase,
    summary="Trigger payment reconciliation manually",
)
async def trigger_reconciliation(
    trigger_data: ReconciliationTrigger,
    request: Request,
    scheduler: ReconciliationScheduler = Depends(get_scheduler),
    actor: str = Depends(require_admin_token),
) -> ResponseBase:
    """Enqueue a manual run, or the emergency preset when ``emergency`` is set."""
    request_id = getattr(request.state, "request_id", "unknown")
    try:
        if trigger_data.emergency:
            handle = await scheduler.trigger_emergency_reconciliation()
        else:
            handle = await scheduler.trigger_manual_reconciliation(
                trigger_data.time_range_hours, trigger_data.only_unconfirmed
            )
    except Exception as e:
        logger.error(
            "Failed to trigger payment reconciliation",
            error=str(e),
            emergency=trigger_data.emergency,
            request_id=request_id,
        )
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to trigger payment reconciliation (RECONCILIATION_TRIGGER_ERROR)",
        ) from e

    reconciliation_type = "emergency" if trigger_data.emergency else "manual"
    emergency = TRIGGER_PRESETS["emergency"]
    payload = ReconciliationJobCreated(
        job_id=handle.id,
        reconciliation_type=reconciliation_type,
        time_range_hours=int(emergency["time_range_hours"]) if trigger_data.emergency else trigger_data.time_range_hours,
        only_unconfirmed=bool(emergency["only_unconfirmed"]) if trigger_data.emergency else trigger_data.only_unconfirmed,
        priority=handle.priority,
        backend=handle.backend,
        ready_at=from_epoch(handle.ready_at),
    )
    log_business_event(
        "admin_reconciliation_trigger",
        {"job_id": handle.id, "reconciliation_type": reconciliation_type},
        actor=actor,
        request_id=request_id,
    )
    return ResponseBase(
        message=f"Payment reconciliation {reconciliation_type} job created successfully",
        data=payload.model_dump(mode="json"),
    )


@router.get("/scheduler/status", response_model=SchedulerStatus, summary="Reconciliation scheduler status")
async def scheduler_status(scheduler: ReconciliationScheduler = Depends(get_scheduler)) -> SchedulerStatus:
    return SchedulerStatus(**scheduler.get_status())


@router.get("/stats", response_model=List[QueueStats], summary="Queue statistics")
async def queue_stats(manager: JobQueueManager = Depends(get_queue_manager)) -> List[QueueStats]:
    return [QueueStats(**s) for s in manager.get_queue_stats()]


@router.post("/queues/{job_type}/pause", response_model=ResponseBase, summary="Pause a queue")
async def pause_queue(
    job_type: str,
    request: Request,
    manager: JobQueueManager = Depends(get_queue_manager),
    actor: str = Depends(require_admin_token),
) -> ResponseBase:
    jt = _job_type_or_404(job_type)
    manager.pause_queue(jt)
    log_business_event("queue_paused", {"job_type": jt.value}, actor=actor,
                       request_id=getattr(request.state, "request_id", None))
    return ResponseBase(message=f"Queue {jt.value} paused", data={"job_type": jt.value, "paused": True})


@router.post("/queues/{job_type}/resume", response_model=ResponseBase, summary="Resume a queue")
async def resume_queue(
    job_type: str,
    request: Request,
    manager: JobQueueManager = Depends(get_queue_manager),
    actor: str = Depends(require_admin_token),
) -> ResponseBase:
    jt = _job_type_or_404(job_type)
    manager.resume_queue(jt)
    log_business_event("queue_resumed", {"job_type": jt.value}, actor=actor,
                       request_id=getattr(request.state, "request_id", None))
    return ResponseBase(message=f"Queue {jt.value} resumed", data={"job_type": jt.value, "paused": False})


@router.get("/health", summary="Job system health")
async def jobs_health(
    manager: JobQueueManager = Depends(get_queue_manager),
    scheduler: ReconciliationScheduler = Depends(get_scheduler),
):
    health = manager.health_check()
    return {
        "status": "healthy" if health["healthy"] else "degraded",
        "scheduler_running": scheduler.is_active(),
        "queues": health["queues"],
        "recent_failures": recent_failures(10),
    }


@router.post("/queues/clean", response_model=ResponseBase, summary="Drop old finished job records")
async def clean_queues(
    request: Request,
    completed_grace_seconds: Optional[float] = Query(None, ge=0, description="Default 24 hours"),
    failed_grace_seconds: Optional[float] = Query(None, ge=0, description="Default 7 days"),
    manager: JobQueueManager = Depends(get_queue_manager),
    actor: str = Depends(require_admin_token),
) -> ResponseBase:
    cleaned = manager.clean(
        completed_grace_seconds=completed_grace_seconds,
        failed_grace_seconds=failed_grace_seconds,
    )
    log_business_event("queues_cleaned", cleaned, actor=actor,
                       request_id=getattr(request.state, "request_id", None))
    return ResponseBase(message="Queues cleaned successfully", data=QueueCleanResult(**cleaned).model_dump())


def _job_not_found(job_id: str) -> HTTPException:
    return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Job {job_id} not found (JOB_NOT_FOUND)")


# Single-segment fixed paths (/stats, /health) are declared above so they win.
@router.get("/{job_id}", response_model=JobDetail, summary="Look up a job by id")
async def get_job(job_id: str, manager: JobQueueManager = Depends(get_queue_manager)) -> JobDetail:
    record = manager.get_job(job_id)
    if record is None:
        raise _job_not_found(job_id)
    return JobDetail.from_record(record.to_dict())


@router.post("/{job_id}/retry", response_model=ResponseBase, summary="Retry a failed job")
async def retry_job(
    job_id: str,
    request: Request,
    manager: JobQueueManager = Depends(get_queue_manager),
    actor: str = Depends(require_admin_token),
) -> ResponseBase:
    try:
        record = manager.retry_job(job_id)
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=f"{e} (JOB_NOT_FAILED)") from None
    if record is None:
        raise _job_not_found(job_id)
    log_business_event("job_retried", {"job_id": job_id, "job_type": record.job_type.value}, actor=actor,
                       request_id=getattr(request.state, "request_id", None))
    return ResponseBase(
        message=f"Job {job_id} queued for retry",
        data=JobDetail.from_record(record.to_dict()).model_dump(mode="json"),
    )


@router.delete("/{job_id}", response_model=ResponseBase, summary="Remove a job")
async def remove_job(
    job_id: str,
    request: Request,
    manager: JobQueueManager = Depends(get_queue_manager),
    actor: str = Depends(require_admin_token),
) -> ResponseBase:
    try:
        removed = manager.remove_job(job_id)
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=f"{e} (JOB_ACTIVE)") from None
    if not removed:
        raise _job_not_found(job_id)
    log_business_event("job_removed", {"job_id": job_id}, actor=actor,
                       request_id=getattr(request.state, "request_id", None))
    return ResponseBase(message=f"Job {job_id} removed", data={"job_id": job_id, "removed": True})
