"""Payment reconciliation scheduler.

Periodically enqueues payment reconciliation jobs so local order/payment state
converges on the payment gateway's view:

- every 15 minutes: last 4 hours, unconfirmed orders only
- every 6 hours: last 24 hours, all orders
- daily at 02:00 (configured timezone): last 7 days, all orders

Each fired run adds a random delay so several instances do not hit the queue
on the same cron boundary. Nothing is enqueued at startup; operators use the
manual or emergency trigger when a run is needed immediately.

Overlapping windows (a frequent and a regular run covering the same hours)
are not deduplicated here. The processor consuming the jobs must be
idempotent per order.
"""
from __future__ import annotations

import random
from dataclasses import dataclass
from typing import Any, Iterable, Optional

from apscheduler.jobstores.base import JobLookupError
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger

from payment_reconciliation.config import RECONCILIATION_CADENCES, SCHEDULER_SETTINGS, TRIGGER_PRESETS
from payment_reconciliation.jobs.job_service import JobService
from payment_reconciliation.jobs.reconciliation_job import JobHandle, ReconciliationJobRequest
from payment_reconciliation.jobs.types import JobPriority, ReconciliationType
from payment_reconciliation.utils import get_logger, log_business_event
from payment_reconciliation.utils.backoff import random_delay_ms
from payment_reconciliation.utils.observability import new_correlation_id

logger = get_logger(__name__)


@dataclass(frozen=True, slots=True)
class ReconciliationCadence:
    """One recurring cron rule and the request parameters it produces."""

    name: str
    cron: dict[str, Any]
    time_range_hours: int
    batch_size: int
    only_unconfirmed: bool
    priority: JobPriority
    jitter_minutes: tuple[int, int]
    description: str = ""

    @classmethod
    def from_config(cls, name: str, cfg: dict[str, Any]) -> "ReconciliationCadence":
        low, high = cfg["jitter_minutes"]
        return cls(
            name=name,
            cron=dict(cfg["cron"]),
            time_range_hours=int(cfg["time_range_hours"]),
            batch_size=int(cfg["batch_size"]),
            only_unconfirmed=bool(cfg["only_unconfirmed"]),
            priority=JobPriority.from_label(str(cfg["priority"])),
            jitter_minutes=(int(low), int(high)),
            description=str(cfg.get("description", "")),
        )

    def build_request(self, delay_ms: int) -> ReconciliationJobRequest:
        return ReconciliationJobRequest(
            reconciliation_type=ReconciliationType.SCHEDULED,
            time_range_hours=self.time_range_hours,
            batch_size=self.batch_size,
            only_unconfirmed=self.only_unconfirmed,
            priority=self.priority,
            delay_ms=delay_ms,
        )


def default_cadences() -> list[ReconciliationCadence]:
    return [ReconciliationCadence.from_config(name, cfg) for name, cfg in RECONCILIATION_CADENCES.items()]


class ReconciliationScheduler:
    """Owns the recurring reconciliation timers and the operator triggers.

    ``timer`` is anything exposing APScheduler's ``add_job`` and returning
    handles with ``remove()`` and ``next_run_time``. When omitted an
    ``AsyncIOScheduler`` is created and started/stopped together with this
    object; an injected timer's lifecycle stays with the caller.
    """

    def __init__(
        self,
        job_service: JobService,
        *,
        timer: Optional[Any] = None,
        rng: Optional[random.Random] = None,
        timezone: Optional[str] = None,
        cadences: Optional[Iterable[ReconciliationCadence]] = None,
    ) -> None:
        self.job_service = job_service
        self.timezone = timezone or str(SCHEDULER_SETTINGS["timezone"])
        self.cadences = list(cadences) if cadences is not None else default_cadences()
        self._rng = rng or random.Random()
        self._owns_timer = timer is None
        self._timer = timer if timer is not None else AsyncIOScheduler(
            timezone=self.timezone,
            job_defaults={
                "coalesce": bool(SCHEDULER_SETTINGS.get("coalesce", True)),
                "max_instances": int(SCHEDULER_SETTINGS.get("max_instances", 1)),
                "misfire_grace_time": int(SCHEDULER_SETTINGS.get("misfire_grace_seconds", 60)),
            },
        )
        self._scheduled_jobs: list[tuple[ReconciliationCadence, Any]] = []
        self._is_running = False

    # ----------------------------- lifecycle ----------------------------- #
    def start(self) -> None:
        """Register one timer per cadence. Registration errors propagate."""
        if self._is_running:
            logger.warning("Reconciliation scheduler already running")
            return

        registered: list[tuple[ReconciliationCadence, Any]] = []
        try:
            if self._owns_timer and not self._timer.running:
                self._timer.start()
            for cadence in self.cadences:
                job = self._timer.add_job(
                    self._run_cadence,
                    trigger=CronTrigger(timezone=self.timezone, **cadence.cron),
                    args=[cadence],
                    id=f"{cadence.name}-payment-reconciliation",
                    name=cadence.description or cadence.name,
                    replace_existing=True,
                )
                registered.append((cadence, job))
        except Exception as e:
            logger.error("Failed to start reconciliation scheduler", error=str(e), error_type=type(e).__name__)
            self._remove_jobs(registered)
            self._shutdown_owned_timer()
            raise

        self._scheduled_jobs = registered
        self._is_running = True
        logger.info(
            "Reconciliation scheduler started",
            timezone=self.timezone,
            scheduled_jobs=[
                {"name": c.name, "schedule": c.cron, "description": c.description} for c in self.cadences
            ],
        )

    def stop(self) -> None:
        """Cancel all timers. Jobs already in the queue are left alone."""
        if not self._is_running:
            logger.warning("Reconciliation scheduler not running")
            return
        self._remove_jobs(self._scheduled_jobs)
        self._scheduled_jobs = []
        self._is_running = False
        self._shutdown_owned_timer()
        logger.info("Reconciliation scheduler stopped")

    def _remove_jobs(self, jobs: list[tuple[ReconciliationCadence, Any]]) -> None:
        for cadence, job in jobs:
            try:
                job.remove()
            except JobLookupError:
                logger.warning("Timer already removed", cadence=cadence.name)

    def _shutdown_owned_timer(self) -> None:
        if self._owns_timer and self._timer.running:
            self._timer.shutdown(wait=False)

    def is_active(self) -> bool:
        return self._is_running

    def get_status(self) -> dict[str, Any]:
        jobs = []
        for index, (cadence, job) in enumerate(self._scheduled_jobs):
            next_run = getattr(job, "next_run_time", None)
            jobs.append({
                "index": index,
                "name": cadence.name,
                "running": next_run is not None,
                "next_run_time": next_run.isoformat() if next_run is not None else None,
            })
        return {
            "is_running": self._is_running,
            "total_jobs": len(self._scheduled_jobs),
            "timezone": self.timezone,
            "jobs": jobs,
        }

    # ----------------------------- fired timers ----------------------------- #
    async def _run_cadence(self, cadence: ReconciliationCadence) -> None:
        """Timer callback. Errors are logged and swallowed so the next cycle still fires."""
        correlation_id = new_correlation_id(cadence.name)
        run_logger = logger.bind(cadence=cadence.name, correlation_id=correlation_id)
        try:
            delay_ms = random_delay_ms(*cadence.jitter_minutes, rng=self._rng)
            request = cadence.build_request(delay_ms)
            run_logger.info(
                "Starting scheduled reconciliation",
                time_range_hours=request.time_range_hours,
                only_unconfirmed=request.only_unconfirmed,
            )
            handle = await self.job_service.add_payment_reconciliation_job(
                request, delay_ms=delay_ms, correlation_id=correlation_id
            )
            run_logger.info(
                "Scheduled reconciliation enqueued",
                job_id=getattr(handle, "id", None),
                delay_ms=delay_ms,
            )
        except Exception as e:
            run_logger.error(
                "Failed to schedule reconciliation",
                reconciliation_type=ReconciliationType.SCHEDULED.value,
                error=str(e),
                error_type=type(e).__name__,
            )

    # ----------------------------- operator triggers ----------------------------- #
    async def trigger_manual_reconciliation(
        self,
        time_range_hours: Optional[int] = None,
        only_unconfirmed: bool = False,
    ) -> JobHandle:
        preset = TRIGGER_PRESETS["manual"]
        if time_range_hours is None:
            time_range_hours = int(preset["default_time_range_hours"])  # type: ignore[arg-type]
        logger.info(
            "Manual reconciliation triggered",
            time_range_hours=time_range_hours,
            only_unconfirmed=only_unconfirmed,
        )
        try:
            request = ReconciliationJobRequest(
                reconciliation_type=ReconciliationType.MANUAL,
                time_range_hours=time_range_hours,
                batch_size=int(preset["batch_size"]),  # type: ignore[arg-type]
                only_unconfirmed=only_unconfirmed,
                priority=JobPriority.from_label(str(preset["priority"])),
                delay_ms=0,
            )
            handle = await self.job_service.add_payment_reconciliation_job(request, delay_ms=0)
        except Exception as e:
            logger.error(
                "Failed to schedule manual reconciliation",
                error=str(e),
                error_type=type(e).__name__,
                time_range_hours=time_range_hours,
                only_unconfirmed=only_unconfirmed,
            )
            raise
        log_business_event(
            "reconciliation_triggered",
            {"reconciliation_type": "manual", "job_id": handle.id, "time_range_hours": time_range_hours},
        )
        return handle

    async def trigger_emergency_reconciliation(self) -> JobHandle:
        preset = TRIGGER_PRESETS["emergency"]
        logger.warning("Emergency reconciliation triggered")
        try:
            request = ReconciliationJobRequest(
                reconciliation_type=ReconciliationType.EMERGENCY,
                time_range_hours=int(preset["time_range_hours"]),  # type: ignore[arg-type]
                batch_size=int(preset["batch_size"]),  # type: ignore[arg-type]
                only_unconfirmed=bool(preset["only_unconfirmed"]),
                priority=JobPriority.from_label(str(preset["priority"])),
                delay_ms=0,
            )
            handle = await self.job_service.add_payment_reconciliation_job(request, delay_ms=0)
        except Exception as e:
            logger.error(
                "Failed to schedule emergency reconciliation",
                error=str(e),
                error_type=type(e).__name__,
            )
            raise
        logger.warning("Emergency reconciliation enqueued", job_id=handle.id)
        log_business_event(
            "reconciliation_triggered",
            {"reconciliation_type": "emergency", "job_id": handle.id, "time_range_hours": request.time_range_hours},
        )
        return handle


__all__ = ["ReconciliationScheduler", "ReconciliationCadence", "default_cadences"]
