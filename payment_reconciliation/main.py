"""
FastAPI application main module.
Wires the job queues, the reconciliation scheduler and the optional in-process
worker into the application lifespan, and exposes the admin job API.
"""
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from fastapi.exceptions import RequestValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException
import time
import os
from contextlib import asynccontextmanager

from payment_reconciliation.api.v1 import api_router
from payment_reconciliation.config import QUEUE_SETTINGS, SCHEDULER_SETTINGS, RECONCILIATION_PROCESSOR
from payment_reconciliation.jobs.job_service import JobService
from payment_reconciliation.jobs.queue_manager import create_queue_manager
from payment_reconciliation.jobs.worker import ReconciliationWorker, load_processor
from payment_reconciliation.services.reconciliation_scheduler import ReconciliationScheduler
from payment_reconciliation.utils import setup_logging, get_logger
from payment_reconciliation.utils.observability import ensure_request_id, REQUEST_ID_HEADER

setup_logging(
    log_level=os.getenv("LOG_LEVEL", "INFO"),
    log_file=os.getenv("LOG_FILE", "logs/app.log"),
    enable_console=True
)

logger = get_logger(__name__)

SERVICE_NAME = "payment-reconciliation-scheduler"
SERVICE_VERSION = "1.0.0"
WORKER_JOIN_TIMEOUT_SECONDS = 10.0


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan manager.
    Builds the job system on startup and tears it down in reverse order on shutdown.
    """
    logger.info("Application startup initiated")

    queue_manager = create_queue_manager()
    job_service = JobService(queue_manager)
    scheduler = ReconciliationScheduler(job_service)
    worker = None

    app.state.queue_manager = queue_manager
    app.state.job_service = job_service
    app.state.reconciliation_scheduler = scheduler
    app.state.reconciliation_worker = None

    try:
        if RECONCILIATION_PROCESSOR:
            worker = ReconciliationWorker(queue_manager, load_processor(RECONCILIATION_PROCESSOR))
            app.state.reconciliation_worker = worker
            worker.start()
        else:
            logger.info("No RECONCILIATION_PROCESSOR configured; jobs are left for an external worker")

        if SCHEDULER_SETTINGS.get("enabled", True):
            scheduler.start()
        else:
            logger.info("Reconciliation scheduler disabled by configuration")
        logger.info("Application startup completed successfully")
        yield
    except Exception as e:
        logger.exception("Application startup failed", error=str(e))
        raise
    finally:
        logger.info("Application shutdown initiated")
        if scheduler.is_active():
            scheduler.stop()
        if worker is not None:
            worker.stop()
        # Shutting the queues down wakes workers blocked on an empty queue
        queue_manager.shutdown()
        if worker is not None:
            worker.join(WORKER_JOIN_TIMEOUT_SECONDS)
        logger.info("Application shutdown completed")


app = FastAPI(
    title="Payment Reconciliation Scheduler",
    description="""
    Schedules payment reconciliation jobs against the payment gateway and
    exposes operator controls for the background job queues.

    ## Cadences
    * **Frequent** - every 15 minutes, last 4 hours, unconfirmed orders
    * **Regular** - every 6 hours, last 24 hours, all orders
    * **Comprehensive** - daily 02:00 (Africa/Lagos), last 7 days

    ## Authentication
    Admin endpoints require the configured admin token:
    ```
    Authorization: Bearer <ADMIN_API_TOKEN>
    ```
    """,
    version=SERVICE_VERSION,
    docs_url="/docs",
    redoc_url="/redoc",
    openapi_url="/api/v1/openapi.json",
    lifespan=lifespan,
)


@app.middleware("http")
async def add_request_context_and_logging(request: Request, call_next):
    """
    Add request ID, timing, and request/response logging.
    """
    request_id = ensure_request_id(request.headers)
    request.state.request_id = request_id
    request.state.start_time = time.time()

    logger.info(
        "Request started",
        method=request.method,
        url=str(request.url),
        remote_addr=request.client.host if request.client else "unknown",
        request_id=request_id
    )

    response = await call_next(request)

    process_time = time.time() - request.state.start_time
    response.headers[REQUEST_ID_HEADER] = request_id
    response.headers["X-Process-Time"] = str(round(process_time * 1000, 2))

    logger.info(
        "Request completed",
        method=request.method,
        url=str(request.url),
        status_code=response.status_code,
        process_time_ms=round(process_time * 1000, 2),
        request_id=request_id
    )

    return response


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    """Handle Pydantic validation errors."""
    request_id = getattr(request.state, "request_id", "unknown")

    logger.warning(
        "Request validation failed",
        errors=exc.errors(),
        request_id=request_id,
        url=str(request.url),
        method=request.method
    )

    return JSONResponse(
        status_code=422,
        content={
            "success": False,
            "message": "Request validation failed",
            "details": jsonable_errors(exc),
            "request_id": request_id
        }
    )


def jsonable_errors(exc: RequestValidationError) -> list:
    # ctx may carry exception instances that json cannot encode
    return [{k: v for k, v in err.items() if k in ("loc", "msg", "type")} for err in exc.errors()]


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    """Handle HTTP exceptions."""
    request_id = getattr(request.state, "request_id", "unknown")

    logger.warning(
        "HTTP exception",
        status_code=exc.status_code,
        detail=exc.detail,
        request_id=request_id,
        url=str(request.url),
        method=request.method
    )

    return JSONResponse(
        status_code=exc.status_code,
        content={
            "success": False,
            "message": exc.detail,
            "request_id": request_id
        },
        headers=getattr(exc, "headers", None),
    )


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    """Handle unexpected exceptions."""
    request_id = getattr(request.state, "request_id", "unknown")

    logger.exception(
        "Unhandled exception",
        error=str(exc),
        error_type=type(exc).__name__,
        request_id=request_id,
        url=str(request.url),
        method=request.method
    )

    return JSONResponse(
        status_code=500,
        content={
            "success": False,
            "message": "Internal server error",
            "request_id": request_id
        }
    )


@app.get("/health", tags=["health"], summary="Basic health check")
async def health_check():
    """Basic health check endpoint for load balancers."""
    use_redis = bool(QUEUE_SETTINGS.get("use_redis", False))
    scheduler = getattr(app.state, "reconciliation_scheduler", None)
    return {
        "status": "healthy",
        "service": SERVICE_NAME,
        "version": SERVICE_VERSION,
        "timestamp": time.time(),
        "queue_backend": "redis" if use_redis else "memory",
        "scheduler_running": bool(scheduler and scheduler.is_active()),
    }


@app.get("/", tags=["root"])
async def root():
    """API root endpoint with basic information."""
    return {
        "message": "Payment Reconciliation Scheduler API",
        "version": SERVICE_VERSION,
        "documentation": "/docs",
        "health_check": "/health",
        "api_base": "/api/v1"
    }


app.include_router(api_router, prefix="/api/v1")

if __name__ == "__main__":
    import uvicorn

    logger.info("Starting development server")

    uvicorn.run(
        "payment_reconciliation.main:app",
        host="0.0.0.0",
        port=int(os.getenv("PORT", "8000")),
        reload=True,
        reload_dirs=["payment_reconciliation"],
        log_level="info",
        access_log=True
    )
