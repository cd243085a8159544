import logging
import sys
from datetime import datetime, timedelta
from pathlib import Path
from unittest.mock import AsyncMock
from zoneinfo import ZoneInfo

import pytest
from apscheduler.jobstores.base import JobLookupError
from fastapi.testclient import TestClient

# Ensure project root on sys.path so the package resolves without an editable install
ROOT_DIR = Path(__file__).resolve().parents[1]
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))

from payment_reconciliation import config  # noqa: E402
from payment_reconciliation.jobs.job_service import JobService  # noqa: E402
from payment_reconciliation.jobs.queue import PriorityDelayQueue  # noqa: E402
from payment_reconciliation.jobs.queue_manager import JobQueueManager  # noqa: E402
from payment_reconciliation.jobs.reconciliation_job import JobHandle  # noqa: E402
from payment_reconciliation.jobs.types import JobType  # noqa: E402
from payment_reconciliation.jobs.worker import LAST_FAILURES  # noqa: E402
from payment_reconciliation.services.reconciliation_scheduler import ReconciliationScheduler  # noqa: E402
from payment_reconciliation.utils.logger import ROOT_LOGGER_NAME  # noqa: E402

LAGOS = ZoneInfo("Africa/Lagos")
ADMIN_TOKEN = "test-admin-token"


class FakeTimerJob:
    """Stands in for an APScheduler Job: same ``remove()`` / ``next_run_time`` surface."""

    def __init__(self, timer, func, trigger, args, job_id, name):
        self._timer = timer
        self.func = func
        self.trigger = trigger
        self.args = tuple(args or ())
        self.id = job_id
        self.name = name
        self.next_run_time = trigger.get_next_fire_time(None, timer.now)

    def remove(self):
        if self not in self._timer.jobs:
            raise JobLookupError(self.id)
        self._timer.jobs.remove(self)
        self.next_run_time = None


class FakeClockTimer:
    """Manually advanced clock that fires real CronTriggers in order.

    ``fail_on_add`` makes the n-th ``add_job`` call (0-based) raise.
    """

    def __init__(self, now: datetime):
        self.now = now
        self.jobs: list[FakeTimerJob] = []
        self.fail_on_add: int | None = None
        self._adds = 0

    def add_job(self, func, trigger=None, args=None, id=None, name=None, **kwargs):
        index = self._adds
        self._adds += 1
        if self.fail_on_add is not None and index == self.fail_on_add:
            raise RuntimeError("timer registration failed")
        job = FakeTimerJob(self, func, trigger, args, id, name)
        self.jobs.append(job)
        return job

    async def advance(self, delta: timedelta) -> None:
        target = self.now + delta
        while True:
            due = [j for j in self.jobs if j.next_run_time is not None and j.next_run_time <= target]
            if not due:
                break
            job = min(due, key=lambda j: j.next_run_time)
            fire_time = job.next_run_time
            self.now = fire_time
            await job.func(*job.args)
            job.next_run_time = job.trigger.get_next_fire_time(fire_time, fire_time + timedelta(microseconds=1))
        self.now = target


def make_handle(job_id: str = "job-1", priority: str = "high", delay_ms: int = 0) -> JobHandle:
    return JobHandle(
        id=job_id,
        job_type=JobType.PAYMENT_RECONCILIATION,
        priority=priority,
        delay_ms=delay_ms,
        enqueued_at=1_700_000_000.0,
        ready_at=1_700_000_000.0 + delay_ms / 1000,
        backend="memory",
    )


@pytest.fixture()
def fake_timer():
    # Monday 11:01 in Lagos: clear of the 02:00 daily run and the 12:00 six-hourly boundary
    return FakeClockTimer(datetime(2025, 1, 6, 11, 1, tzinfo=LAGOS))


@pytest.fixture()
def mock_job_service():
    service = AsyncMock(spec=JobService)
    service.add_payment_reconciliation_job.return_value = make_handle()
    return service


@pytest.fixture()
def scheduler(mock_job_service, fake_timer):
    sched = ReconciliationScheduler(mock_job_service, timer=fake_timer, timezone="Africa/Lagos")
    yield sched
    if sched.is_active():
        sched.stop()


@pytest.fixture()
def queue_manager():
    manager = JobQueueManager({JobType.PAYMENT_RECONCILIATION: PriorityDelayQueue(JobType.PAYMENT_RECONCILIATION.value)})
    yield manager
    manager.shutdown()


@pytest.fixture()
def job_service(queue_manager):
    return JobService(queue_manager)


@pytest.fixture(autouse=True)
def _reset_failures():
    LAST_FAILURES.clear()
    yield
    LAST_FAILURES.clear()


@pytest.fixture()
def admin_token(monkeypatch):
    monkeypatch.setattr(config, "ADMIN_API_TOKEN", ADMIN_TOKEN)
    return ADMIN_TOKEN


@pytest.fixture()
def app_state(queue_manager, job_service, fake_timer, admin_token):
    """Populate app.state the way the lifespan does; tests bypass lifespan."""
    from payment_reconciliation.main import app

    sched = ReconciliationScheduler(job_service, timer=fake_timer, timezone="Africa/Lagos")
    app.state.queue_manager = queue_manager
    app.state.job_service = job_service
    app.state.reconciliation_scheduler = sched
    yield app
    if sched.is_active():
        sched.stop()
    for name in ("queue_manager", "job_service", "reconciliation_scheduler", "reconciliation_worker"):
        if hasattr(app.state, name):
            delattr(app.state, name)


@pytest.fixture()
def client(app_state):
    return TestClient(app_state)


@pytest.fixture()
def auth_headers(admin_token):
    return {"Authorization": f"Bearer {admin_token}"}


@pytest.fixture()
def service_logs(caplog):
    """caplog attached to the service logger, which does not propagate to root."""
    import payment_reconciliation.main  # noqa: F401  (configures logging; must run before attaching)

    service_logger = logging.getLogger(ROOT_LOGGER_NAME)
    previous_level = service_logger.level
    service_logger.addHandler(caplog.handler)
    service_logger.setLevel(logging.DEBUG)
    yield caplog
    service_logger.removeHandler(caplog.handler)
    service_logger.setLevel(previous_level)
