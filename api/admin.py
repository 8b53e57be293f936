"""
Admin API - operator endpoints for monitoring, polling and retrying jobs.
Runs on port 9001 (not exposed externally).

Every /admin/* endpoint requires the X-Admin-Secret header.
"""

import hmac
import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import Depends, FastAPI, Header, HTTPException, Query, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from slowapi import Limiter
from slowapi.errors import RateLimitExceeded

from api.audit import AuditAction, log_audit
from api.common import (
    RequestIDMiddleware,
    SecurityHeadersMiddleware,
    check_health,
    get_real_ip,
    get_request_id,
    rate_limit_exceeded_handler,
)
from api.database import configure_database, create_tables, database
from api.db_retry import DatabaseRetryableError
from api.exception_utils import handle_api_exceptions, log_and_raise_http_exception
from api.job_store import job_store
from api.metrics import METRICS_CONTENT_TYPE, get_metrics, init_app_info, update_state_gauges
from api.schemas import (
    BatchStatusRequest,
    BatchStatusResponse,
    ClearAttemptsResponse,
    ExternalIdUpdate,
    JobCreate,
    JobDetailResponse,
    JobResponse,
    MonitoringStats,
    MonitorResponse,
    PollErrorResponse,
    PollResponse,
    RetryAttemptResponse,
    RetryRequest,
    RetryResponse,
    StatusCheckResponse,
    StuckJobResponse,
)
from config import (
    ADMIN_API_SECRET,
    ADMIN_CORS_ALLOWED_ORIGINS,
    ADMIN_PORT,
    LOG_LEVEL,
    RATE_LIMIT_ADMIN_DEFAULT,
    RATE_LIMIT_ADMIN_POLL,
    RATE_LIMIT_ENABLED,
    RATE_LIMIT_STORAGE_URL,
    STUCK_THRESHOLD_MINUTES,
)
from worker.notifier import drain_notifications
from worker.poller import PollResult, ReconciliationPoller
from worker.retry_engine import RetryConfig, RetryEngine, is_retryable
from worker.stuck_detector import expected_threshold_minutes, get_stuck_jobs

logger = logging.getLogger(__name__)

# Security event logger for authentication events
security_logger = logging.getLogger("security.admin_auth")

# Initialize rate limiter for admin API
limiter = Limiter(
    key_func=get_real_ip,
    storage_uri=RATE_LIMIT_STORAGE_URL if RATE_LIMIT_ENABLED else None,
    enabled=RATE_LIMIT_ENABLED,
)

# Upper bound for the stuck threshold query parameter (one week)
MAX_STUCK_THRESHOLD_MINUTES = 7 * 24 * 60

poller = ReconciliationPoller(store=job_store)
retry_engine = RetryEngine(store=job_store)


async def verify_admin_secret(x_admin_secret: Optional[str] = Header(None, alias="X-Admin-Secret")):
    """
    Verify the admin secret for operator endpoints.

    Raises:
        HTTPException 503: If ADMIN_API_SECRET is not configured
        HTTPException 401: If X-Admin-Secret header is missing
        HTTPException 403: If X-Admin-Secret header is invalid
    """
    if not ADMIN_API_SECRET:
        logger.warning("Admin endpoint called but REELWATCH_ADMIN_API_SECRET is not configured")
        raise HTTPException(
            status_code=503,
            detail="Admin endpoints require REELWATCH_ADMIN_API_SECRET to be configured",
        )

    if not x_admin_secret:
        raise HTTPException(status_code=401, detail="X-Admin-Secret header required")

    # Use constant-time comparison to prevent timing attacks
    if not hmac.compare_digest(x_admin_secret, ADMIN_API_SECRET):
        security_logger.warning("Invalid admin secret provided")
        raise HTTPException(status_code=403, detail="Invalid admin secret")


def _audit(request: Request, action: AuditAction, **kwargs) -> None:
    log_audit(
        action,
        client_ip=get_real_ip(request),
        user_agent=request.headers.get("user-agent"),
        request_id=get_request_id(request),
        **kwargs,
    )


async def _current_stats() -> MonitoringStats:
    stats = await job_store.get_monitoring_stats()
    update_state_gauges(stats)
    return MonitoringStats(**stats)


def _poll_errors(result: PollResult):
    return [PollErrorResponse(job_id=job_id, error=error) for job_id, error in result.errors]


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Manage application startup and shutdown."""
    # Warn about in-memory rate limiting limitations
    if RATE_LIMIT_ENABLED and RATE_LIMIT_STORAGE_URL == "memory://":
        logger.warning(
            "Rate limiting is using in-memory storage. "
            "For production deployments with multiple instances, configure Redis: "
            "REELWATCH_RATE_LIMIT_STORAGE_URL=redis://localhost:6379"
        )
    if not ADMIN_API_SECRET:
        logger.warning("REELWATCH_ADMIN_API_SECRET is not set; admin endpoints will return 503")

    init_app_info(component="admin")
    create_tables()
    await database.connect()
    await configure_database()

    yield

    await drain_notifications()
    await poller.close()
    await retry_engine.close()
    await database.disconnect()


app = FastAPI(title="ReelWatch Admin", description="Transcoding job operator API", lifespan=lifespan)

# Register rate limiter with the app
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, rate_limit_exceeded_handler)


@app.exception_handler(DatabaseRetryableError)
async def database_unavailable_handler(request: Request, exc: DatabaseRetryableError):
    """Handle database lock/connection errors that outlived their retries with a 503 response."""
    logger.warning(f"Database unavailable: {exc}")
    return JSONResponse(
        status_code=503,
        content={"detail": "Database temporarily unavailable, please retry"},
        headers={"Retry-After": "1"},
    )


app.add_middleware(SecurityHeadersMiddleware)
app.add_middleware(RequestIDMiddleware)

# Allow CORS for the operator dashboard (internal-only, not exposed externally)
app.add_middleware(
    CORSMiddleware,
    allow_origins=ADMIN_CORS_ALLOWED_ORIGINS,
    allow_credentials=True if ADMIN_CORS_ALLOWED_ORIGINS != ["*"] else False,
    allow_methods=["*"],
    allow_headers=["*"],
    expose_headers=["X-Request-ID"],
)


@app.get("/health")
async def health_check():
    """
    Health check endpoint for monitoring and load balancers.

    Returns 503 if the database is unreachable.
    """
    result = await check_health()
    return JSONResponse(
        status_code=result["status_code"],
        content={
            "status": "healthy" if result["healthy"] else "unhealthy",
            "checks": result["checks"],
        },
    )


@app.get("/metrics")
async def metrics():
    """Prometheus metrics."""
    return Response(content=get_metrics(), media_type=METRICS_CONTENT_TYPE)


# ============ Monitoring ============


@app.get("/admin/jobs/monitor", dependencies=[Depends(verify_admin_secret)])
@limiter.limit(RATE_LIMIT_ADMIN_DEFAULT)
async def get_monitor(
    request: Request,
    include_stuck: bool = Query(False, alias="includeStuck"),
    stuck_threshold_minutes: int = Query(
        STUCK_THRESHOLD_MINUTES, alias="stuckThresholdMinutes", ge=1, le=MAX_STUCK_THRESHOLD_MINUTES
    ),
) -> MonitorResponse:
    """Job counts per state, optionally with the jobs that stopped progressing."""
    stats = await _current_stats()
    if not include_stuck:
        return MonitorResponse(stats=stats)

    stuck = await get_stuck_jobs(stuck_threshold_minutes, store=job_store)
    return MonitorResponse(
        stats=stats,
        stuck_jobs=[StuckJobResponse.from_job(job, expected_threshold_minutes(job)) for job in stuck],
        stuck_threshold_minutes=stuck_threshold_minutes,
    )


@app.post("/admin/jobs/monitor", dependencies=[Depends(verify_admin_secret)])
@limiter.limit(RATE_LIMIT_ADMIN_POLL)
@handle_api_exceptions("trigger_poll", "Failed to run poll cycle")
async def trigger_poll(request: Request) -> PollResponse:
    """Run one reconciliation poll cycle now."""
    result = await poller.poll_once(trigger="operator")
    _audit(
        request,
        AuditAction.POLL_TRIGGER,
        details={"checked": result.checked, "updated": result.updated, "errors": len(result.errors)},
    )
    return PollResponse(
        checked=result.checked,
        updated=result.updated,
        errors=_poll_errors(result),
        stats=await _current_stats(),
    )


# ============ Retry ============


@app.post("/admin/jobs/retry", dependencies=[Depends(verify_admin_secret)])
@limiter.limit(RATE_LIMIT_ADMIN_POLL)
@handle_api_exceptions("retry_jobs", "Failed to retry jobs")
async def retry_jobs(request: Request, data: Optional[RetryRequest] = None) -> RetryResponse:
    """
    Retry one failed job (jobId given) or every eligible failed job.

    Blocks until the retry sequence(s) finish, including backoff sleeps.
    """
    data = data or RetryRequest()
    config = RetryConfig.from_config(max_retries=data.max_retries)

    if data.job_id is None:
        recovered = await retry_engine.retry_all_failed(config)
        _audit(request, AuditAction.JOB_RETRY_ALL, details={"recovered": recovered})
        return RetryResponse(
            success=True,
            message=f"Recovered {recovered} failed job(s)",
            retried_count=recovered,
        )

    job = await job_store.get_job(data.job_id)
    if job is None:
        raise HTTPException(status_code=404, detail="Job not found")
    if not is_retryable(job):
        raise HTTPException(
            status_code=400,
            detail=f"Job is not retryable (state={job.state.value}, error_code={job.error_code})",
        )

    recovered = await retry_engine.retry_job(job.id, config)
    attempts = await retry_engine.get_retry_attempts(job.id)
    _audit(
        request,
        AuditAction.JOB_RETRY,
        resource_type="job",
        resource_id=job.id,
        details={"max_retries": config.max_retries, "attempts": len(attempts)},
        success=recovered,
    )
    return RetryResponse(
        success=recovered,
        message="Job recovered" if recovered else "Job is still failed after retrying",
        job_id=job.id,
        attempts=[RetryAttemptResponse.from_row(a) for a in attempts],
    )


# ============ Jobs ============


@app.post("/admin/jobs", status_code=201, dependencies=[Depends(verify_admin_secret)])
@limiter.limit(RATE_LIMIT_ADMIN_DEFAULT)
async def create_job(request: Request, data: JobCreate) -> JobResponse:
    """Register a job with the tracker (external id optional until upload finishes)."""
    if data.external_id and await job_store.get_job_by_external_id(data.external_id):
        raise HTTPException(status_code=409, detail="External id is already tracked")

    job = await job_store.create_job(data.title, external_id=data.external_id)
    _audit(
        request,
        AuditAction.JOB_CREATE,
        resource_type="job",
        resource_id=job.id,
        details={"external_id": job.external_id},
    )
    return JobResponse.from_job(job)


@app.get("/admin/jobs/status", dependencies=[Depends(verify_admin_secret)])
@limiter.limit(RATE_LIMIT_ADMIN_DEFAULT)
@handle_api_exceptions("check_job_status", "Failed to check job status")
async def check_status(
    request: Request,
    external_id: str = Query(..., alias="externalId", min_length=1, max_length=128),
) -> StatusCheckResponse:
    """Fetch the live status of one job from the transcoding service and reconcile it."""
    job = await job_store.get_job_by_external_id(external_id)
    if job is None:
        raise HTTPException(status_code=404, detail="No job tracks this external id")

    check = await poller.check_job_status(job.id)
    current = (check.result.current if check.result else None) or await job_store.get_job(job.id)
    _audit(
        request,
        AuditAction.STATUS_CHECK,
        resource_type="job",
        resource_id=job.id,
        details={"external_id": external_id, "applied": check.applied},
    )

    reported = check.status
    return StatusCheckResponse(
        job_id=job.id,
        external_id=external_id,
        state=reported.state.value if reported else current.state.value,
        progress_percent=reported.progress_percent if reported else current.progress_percent,
        error_code=reported.error_code if reported else current.error_code,
        error_message=reported.error_message if reported else check.error,
        applied=check.applied,
        job=JobResponse.from_job(current),
    )


@app.post("/admin/jobs/batch-status", dependencies=[Depends(verify_admin_secret)])
@limiter.limit(RATE_LIMIT_ADMIN_POLL)
@handle_api_exceptions("batch_check_status", "Failed to check job statuses")
async def batch_check_status(request: Request, data: BatchStatusRequest) -> BatchStatusResponse:
    """Reconcile an explicit list of jobs against the transcoding service."""
    result = await poller.batch_check_status(data.job_ids)
    jobs = await job_store.get_jobs(data.job_ids)
    _audit(
        request,
        AuditAction.BATCH_STATUS_CHECK,
        details={"job_ids": data.job_ids[:50], "checked": result.checked, "updated": result.updated},
    )
    return BatchStatusResponse(
        checked=result.checked,
        updated=result.updated,
        errors=_poll_errors(result),
        jobs=[JobResponse.from_job(job) for job in jobs],
    )


@app.get("/admin/jobs/{job_id}", dependencies=[Depends(verify_admin_secret)])
@limiter.limit(RATE_LIMIT_ADMIN_DEFAULT)
async def get_job(request: Request, job_id: int) -> JobDetailResponse:
    """One job with its retry history."""
    job = await job_store.get_job(job_id)
    if job is None:
        raise HTTPException(status_code=404, detail="Job not found")

    attempts = await job_store.get_retry_attempts(job_id)
    return JobDetailResponse(
        **JobResponse.from_job(job).model_dump(),
        retry_attempts=[RetryAttemptResponse.from_row(a) for a in attempts],
    )


@app.put("/admin/jobs/{job_id}/external-id", dependencies=[Depends(verify_admin_secret)])
@limiter.limit(RATE_LIMIT_ADMIN_DEFAULT)
async def attach_external_id(request: Request, job_id: int, data: ExternalIdUpdate) -> JobResponse:
    """Record the transcoding service's id for a job once its upload finished."""
    try:
        job = await job_store.attach_external_id(job_id, data.external_id)
    except LookupError:
        raise HTTPException(status_code=404, detail="Job not found")
    except ValueError as e:
        log_and_raise_http_exception(e, 409, str(e), "attach_external_id", "warning")

    _audit(
        request,
        AuditAction.JOB_EXTERNAL_ID_ATTACH,
        resource_type="job",
        resource_id=job_id,
        details={"external_id": data.external_id},
    )
    return JobResponse.from_job(job)


@app.delete("/admin/jobs/{job_id}/retry-attempts", dependencies=[Depends(verify_admin_secret)])
@limiter.limit(RATE_LIMIT_ADMIN_DEFAULT)
async def clear_retry_attempts(request: Request, job_id: int) -> ClearAttemptsResponse:
    """Reset a job's retry history, restoring its full retry budget."""
    job = await job_store.get_job(job_id)
    if job is None:
        raise HTTPException(status_code=404, detail="Job not found")

    cleared = await retry_engine.clear_retry_attempts(job_id)
    _audit(
        request,
        AuditAction.RETRY_HISTORY_CLEAR,
        resource_type="job",
        resource_id=job_id,
        details={"cleared": cleared},
    )
    return ClearAttemptsResponse(job_id=job_id, cleared=cleared)


if __name__ == "__main__":
    import uvicorn

    logging.basicConfig(
        level=getattr(logging, LOG_LEVEL, logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
    uvicorn.run(app, host="0.0.0.0", port=ADMIN_PORT)
