"""
Prometheus metrics for the ReelWatch API and scheduler.

Metrics are exposed at /metrics in Prometheus text format.
"""

from prometheus_client import CONTENT_TYPE_LATEST, Counter, Gauge, Histogram, Info, generate_latest

APP_INFO = Info("reelwatch", "ReelWatch application information")

# =============================================================================
# Ingestion Metrics
# =============================================================================

WEBHOOKS_RECEIVED_TOTAL = Counter(
    "reelwatch_webhooks_received_total",
    "Webhook deliveries from the transcoding service",
    ["result"],  # applied, noop, unresolved, invalid, error, rejected
)

STATE_TRANSITIONS_TOTAL = Counter(
    "reelwatch_state_transitions_total",
    "Applied job state writes",
    ["source", "to_state"],
)

STALE_WRITES_DROPPED_TOTAL = Counter(
    "reelwatch_stale_writes_dropped_total",
    "Writes dropped because of an invalid transition or a stale version",
    ["source"],
)

# =============================================================================
# Reconciliation Metrics
# =============================================================================

POLL_CYCLES_TOTAL = Counter(
    "reelwatch_poll_cycles_total",
    "Reconciliation poll cycles",
    ["trigger"],  # scheduled, operator
)

POLL_JOB_ERRORS_TOTAL = Counter(
    "reelwatch_poll_job_errors_total",
    "Per-job errors during reconciliation",
    ["kind"],  # transient, permanent, unexpected
)

POLL_CYCLE_DURATION_SECONDS = Histogram(
    "reelwatch_poll_cycle_duration_seconds",
    "Duration of one reconciliation poll cycle",
    buckets=[0.5, 1, 5, 15, 30, 60, 120, 300, 600],
)

JOBS_BY_STATE = Gauge(
    "reelwatch_jobs",
    "Jobs per local state",
    ["state"],
)

STUCK_JOBS = Gauge(
    "reelwatch_stuck_jobs",
    "Jobs over the stuck threshold at the last scan",
)

# =============================================================================
# Retry Metrics
# =============================================================================

RETRY_ATTEMPTS_TOTAL = Counter(
    "reelwatch_retry_attempts_total",
    "Retry attempts against failed jobs",
    ["result"],  # success, failed, permanent
)

RETRY_EXHAUSTED_TOTAL = Counter(
    "reelwatch_retry_exhausted_total",
    "Retry sequences that ended without recovering the job",
)

# =============================================================================
# Notification Metrics
# =============================================================================

NOTIFICATIONS_TOTAL = Counter(
    "reelwatch_notifications_total",
    "Notifications sent to the messaging collaborator",
    ["type", "result"],  # result: sent, failed, skipped
)

# =============================================================================
# Database Metrics
# =============================================================================

DB_QUERY_RETRIES_TOTAL = Counter(
    "reelwatch_db_query_retries_total",
    "Total database query retries due to transient errors",
)

DB_QUERY_DURATION_SECONDS = Histogram(
    "reelwatch_db_query_duration_seconds",
    "Database query duration in seconds",
    ["operation"],
    buckets=[0.001, 0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0],
)


def get_metrics() -> bytes:
    """Generate Prometheus metrics in text format."""
    return generate_latest()


def update_state_gauges(stats: dict) -> None:
    """Refresh the per-state gauge from a monitoring stats dict."""
    for state in ("queued", "in_progress", "ready", "failed"):
        JOBS_BY_STATE.labels(state=state).set(stats.get(state, 0))


def init_app_info(version: str = "0.1.0", component: str = "api"):
    """Initialize application info metric."""
    APP_INFO.info({"version": version, "app": "reelwatch", "component": component})


METRICS_CONTENT_TYPE = CONTENT_TYPE_LATEST
