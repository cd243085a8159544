"""
Centralized logging configuration.

Console output is human-readable; the optional file handler writes one JSON
object per line so scheduler runs, queue activity and operator actions can be
searched by ``job_id``, ``cadence`` or ``request_id``.
"""
import logging
import logging.config
import json
import sys
from datetime import datetime, timezone
from typing import Dict, Any, Optional
from pathlib import Path

ROOT_LOGGER_NAME = "payment_reconciliation"
SERVICE_NAME = "payment-reconciliation-scheduler"

# Third-party loggers routed through our handlers, with their own floor.
# APScheduler logs every job submission at INFO, which at a 15 minute cadence is noise.
LIBRARY_LOG_LEVELS: Dict[str, str] = {
    "uvicorn": "INFO",
    "apscheduler": "WARNING",
}


class JSONFormatter(logging.Formatter):
    """One JSON object per record; structured context is merged at the top level."""

    def format(self, record: logging.LogRecord) -> str:
        log_entry = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat().replace("+00:00", "Z"),
            "level": record.levelname,
            "service": SERVICE_NAME,
            "logger": record.name,
            "message": record.getMessage(),
            "location": f"{record.module}:{record.funcName}:{record.lineno}",
            "thread": record.threadName,
        }

        context = getattr(record, "context", None)
        if context:
            # Never let context clobber the envelope
            log_entry.update({k: v for k, v in context.items() if k not in log_entry})

        if record.exc_info:
            log_entry["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_entry, ensure_ascii=False, default=str)


class StructuredLogger:
    """
    Wrapper around a stdlib logger that takes keyword context.

    ``bind()`` returns a logger that adds fixed context (a job id, a cadence
    name) to every record. ``None`` values are dropped.
    """

    def __init__(self, name: str, context: Optional[Dict[str, Any]] = None):
        self.logger = logging.getLogger(name)
        self._context = dict(context or {})

    def bind(self, **context: Any) -> "StructuredLogger":
        return StructuredLogger(self.logger.name, {**self._context, **context})

    def _log(self, level: int, message: str, exc_info: Any = None, **kwargs: Any) -> None:
        if not self.logger.isEnabledFor(level):
            return
        context = {k: v for k, v in {**self._context, **kwargs}.items() if v is not None}
        self.logger.log(level, message, exc_info=exc_info, extra={"context": context}, stacklevel=3)

    def debug(self, message: str, **kwargs: Any) -> None:
        self._log(logging.DEBUG, message, **kwargs)

    def info(self, message: str, **kwargs: Any) -> None:
        self._log(logging.INFO, message, **kwargs)

    def warning(self, message: str, **kwargs: Any) -> None:
        self._log(logging.WARNING, message, **kwargs)

    def error(self, message: str, **kwargs: Any) -> None:
        self._log(logging.ERROR, message, **kwargs)

    def exception(self, message: str, **kwargs: Any) -> None:
        """Error record carrying the active exception's traceback."""
        self._log(logging.ERROR, message, exc_info=True, **kwargs)


def setup_logging(
    log_level: str = "INFO",
    log_file: Optional[str] = None,
    enable_console: bool = True
) -> None:
    """
    Setup application logging configuration.

    Args:
        log_level: Level for the service loggers and the root logger
        log_file: Optional path of the rotating JSON log
        enable_console: Whether to log to stdout
    """
    handlers: Dict[str, Dict[str, Any]] = {}
    if enable_console:
        handlers["console"] = {
            "class": "logging.StreamHandler",
            "stream": sys.stdout,
            "formatter": "standard",
            "level": log_level,
        }
    if log_file:
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)
        handlers["file"] = {
            "class": "logging.handlers.RotatingFileHandler",
            "filename": log_file,
            "maxBytes": 10 * 1024 * 1024,  # 10MB
            "backupCount": 5,
            "formatter": "json",
            "level": log_level,
        }
    handler_names = list(handlers)

    loggers = {ROOT_LOGGER_NAME: {"level": log_level, "handlers": handler_names, "propagate": False}}
    for name, level in LIBRARY_LOG_LEVELS.items():
        loggers[name] = {"level": level, "handlers": handler_names, "propagate": False}

    logging.config.dictConfig({
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {
            "json": {"()": JSONFormatter},
            "standard": {
                "format": "%(asctime)s - %(name)s - %(levelname)s - %(message)s",
                "datefmt": "%Y-%m-%d %H:%M:%S",
            },
        },
        "handlers": handlers,
        "loggers": loggers,
        "root": {"level": log_level, "handlers": handler_names},
    })


def get_logger(name: str) -> StructuredLogger:
    """Structured logger under the service root (``name`` is typically ``__name__``)."""
    if name == ROOT_LOGGER_NAME or name.startswith(ROOT_LOGGER_NAME + "."):
        return StructuredLogger(name)
    return StructuredLogger(f"{ROOT_LOGGER_NAME}.{name}")


def log_business_event(
    event_type: str,
    details: Dict[str, Any],
    actor: Optional[str] = None,
    request_id: Optional[str] = None
) -> None:
    """
    Log business events for audit trails.

    Args:
        event_type: Type of business event (e.g., 'reconciliation_triggered', 'queue_paused')
        details: Event-specific details
        actor: Who caused the event (admin token owner, scheduler cadence name)
        request_id: Request ID for tracing
    """
    get_logger("audit").info(
        f"Business event: {event_type}",
        event_type=event_type,
        actor=actor,
        request_id=request_id,
        **details
    )


def log_performance(
    operation: str,
    duration_ms: float,
    additional_data: Optional[Dict[str, Any]] = None
) -> None:
    """Log how long an operation took, with optional context."""
    get_logger("performance").info(
        f"Performance: {operation}",
        operation=operation,
        duration_ms=duration_ms,
        **(additional_data or {})
    )
