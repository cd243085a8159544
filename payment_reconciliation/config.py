"""Core application configuration & tunable scheduling rules.

Everything an operator may want to adjust (cron cadences, reconciliation
windows, batch sizes, jitter ranges, queue priorities, retry policy) is
centralized here so it can be changed without diving into service logic.
Values are read from environment variables once at import; the dicts are
mutable so tests can monkeypatch them.
"""
from __future__ import annotations

import os


def _env_bool(name: str, default: bool = False) -> bool:
	raw = os.getenv(name)
	if raw is None or not raw.strip():
		return default
	return raw.strip().lower() in ("1", "true", "yes", "on")


# ------------------------------- Scheduler -------------------------------- #
SCHEDULER_SETTINGS: dict[str, str | int | bool] = {
	"enabled": _env_bool("RECONCILIATION_SCHEDULER_ENABLED", True),
	# All cron rules are evaluated in this zone regardless of host timezone.
	"timezone": os.getenv("RECONCILIATION_TIMEZONE", "Africa/Lagos"),
	"misfire_grace_seconds": int(os.getenv("RECONCILIATION_MISFIRE_GRACE_SECONDS", "60")),
	"coalesce": True,
	"max_instances": 1,
}

# Recurring cadences. ``cron`` holds APScheduler CronTrigger fields.
RECONCILIATION_CADENCES: dict[str, dict[str, object]] = {
	"frequent": {
		"cron": {"minute": "*/15"},
		"time_range_hours": 4,
		"batch_size": 30,           # Small batches for frequent runs
		"only_unconfirmed": True,   # Pending/processing orders only
		"priority": "medium",
		"jitter_minutes": (1, 5),
		"description": "Every 15 minutes - unconfirmed orders",
	},
	"regular": {
		"cron": {"minute": 0, "hour": "*/6"},
		"time_range_hours": 24,
		"batch_size": 100,
		"only_unconfirmed": False,
		"priority": "medium",
		"jitter_minutes": (5, 15),
		"description": "Every 6 hours - all recent orders",
	},
	"comprehensive": {
		"cron": {"minute": 0, "hour": 2},
		"time_range_hours": 168,    # 7 days
		"batch_size": 200,
		"only_unconfirmed": False,
		"priority": "low",
		"jitter_minutes": (10, 30),
		"description": "Daily 2 AM - comprehensive check",
	},
}

# Operator-triggered runs are never delayed.
TRIGGER_PRESETS: dict[str, dict[str, object]] = {
	"manual": {
		"batch_size": 50,
		"priority": "high",
		"default_time_range_hours": 24,
	},
	"emergency": {
		"time_range_hours": 72,     # Last 3 days
		"batch_size": 20,           # Small batches for careful processing
		"only_unconfirmed": True,
		"priority": "critical",
	},
}

# Admin trigger endpoint accepts windows in this range (hours).
MANUAL_TIME_RANGE_LIMITS: tuple[int, int] = (1, 168)

# --------------------------------- Backoff -------------------------------- #
BACKOFF_POLICY: dict[str, int | float] = {
	"base_seconds": 30,
	"factor": 2,          # Exponential factor
	"max_seconds": 900,
	"jitter_pct": 0.10,   # +/-10% jitter
}

# --------------------------------- Queue ---------------------------------- #
QUEUE_SETTINGS: dict[str, object] = {
	"priorities": {  # Lower number = higher priority
		"critical": 0,
		"high": 1,
		"medium": 5,
		"low": 10,
		"batch": 20,
	},
	"warn_depth": 1000,
	"max_in_memory": 5000,
	"use_redis": _env_bool("USE_REDIS_QUEUE", False),
	"redis_url": os.getenv("REDIS_URL", "redis://localhost:6379/0"),
	"redis_key_prefix": os.getenv("REDIS_QUEUE_PREFIX", "bareloft:jobs"),
	"redis_health_check_timeout": 2.0,
	# Finished job records kept for admin lookup. ``clean`` drops them after
	# these ages; beyond ``max_finished_records`` the oldest go first.
	"clean_grace_seconds": {
		"completed": 24 * 60 * 60,       # 1 day
		"failed": 7 * 24 * 60 * 60,      # 7 days
	},
	"max_finished_records": 1000,
	# Per job type worker/retry options
	"job_types": {
		"payment-reconciliation": {
			"concurrency": 2,         # Lower concurrency for bulk reconciliation
			"attempts": 2,            # Retry once if reconciliation fails
			"backoff": "exponential",
			"timeout_seconds": 600,   # Enforced by the processor, not the queue
		},
	},
}

# ------------------------------ Admin access ------------------------------ #
# Single bearer token accepted by the admin job endpoints. When unset the
# endpoints answer 503 rather than running unauthenticated.
ADMIN_API_TOKEN: str | None = os.getenv("ADMIN_API_TOKEN") or None

# ------------------------------ Worker wiring ----------------------------- #
# "package.module:callable" receiving the job payload dict. When unset no
# in-process worker is started and jobs are left for an external consumer.
RECONCILIATION_PROCESSOR: str | None = os.getenv("RECONCILIATION_PROCESSOR") or None

__all__ = [
	"SCHEDULER_SETTINGS",
	"RECONCILIATION_CADENCES",
	"TRIGGER_PRESETS",
	"MANUAL_TIME_RANGE_LIMITS",
	"BACKOFF_POLICY",
	"QUEUE_SETTINGS",
	"ADMIN_API_TOKEN",
	"RECONCILIATION_PROCESSOR",
]
