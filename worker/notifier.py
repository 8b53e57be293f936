"""
Operator notifications for job state transitions.

Delivers rendered "ready", "failed" and "stuck" messages to the messaging
collaborator's webhook. Every entry point swallows and logs its own errors:
a notification problem must never reach the code that changed job state.

Includes rate limiting for the stuck-job digest to prevent alert flooding.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Awaitable, Dict, List, Optional, Sequence, Set

import httpx

from api.enums import NotificationType
from api.job_state import JobRow
from api.metrics import NOTIFICATIONS_TOTAL
from config import (
    DASHBOARD_BASE_URL,
    NOTIFY_RATE_LIMIT_SECONDS,
    NOTIFY_WEBHOOK_TIMEOUT,
    NOTIFY_WEBHOOK_URL,
    PUBLIC_BASE_URL,
)

logger = logging.getLogger(__name__)


@dataclass
class NotificationMetrics:
    """In-process counters for notification delivery."""

    ready_notified: int = 0
    failed_notified: int = 0
    stuck_digests: int = 0
    sent: int = 0
    rate_limited: int = 0
    failed: int = 0

    # Last send timestamps by type (for rate limiting)
    last_sent_time: Dict[str, float] = field(default_factory=dict)

    def can_send(self, notification_type: str, rate_limit_seconds: int) -> bool:
        """Check if enough time has passed since the last notification of this type."""
        last_time = self.last_sent_time.get(notification_type, 0)
        return (time.time() - last_time) >= rate_limit_seconds

    def record_sent(self, notification_type: str):
        self.last_sent_time[notification_type] = time.time()
        self.sent += 1

    def record_rate_limited(self):
        self.rate_limited += 1

    def record_failed(self):
        self.failed += 1

    def to_dict(self) -> Dict[str, Any]:
        return {
            "ready_notified": self.ready_notified,
            "failed_notified": self.failed_notified,
            "stuck_digests": self.stuck_digests,
            "sent": self.sent,
            "rate_limited": self.rate_limited,
            "failed": self.failed,
        }


# Global metrics instance
_metrics: Optional[NotificationMetrics] = None

# Detached notification tasks still running (kept so they are not garbage collected)
_pending_tasks: Set["asyncio.Task[Any]"] = set()


def get_metrics() -> NotificationMetrics:
    """Get or create the global metrics instance."""
    global _metrics
    if _metrics is None:
        _metrics = NotificationMetrics()
    return _metrics


def reset_metrics():
    """Reset metrics (for testing)."""
    global _metrics
    _metrics = NotificationMetrics()


# =============================================================================
# Templates
# =============================================================================


def _isoformat(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def render_ready_message(job: JobRow) -> Dict[str, Any]:
    """The "ready" template: job id, title and a link to watch it."""
    link = f"{PUBLIC_BASE_URL}/videos/{job.id}"
    return {
        "subject": f"Video ready: {job.title}",
        "text": f'"{job.title}" (job {job.id}) finished processing and is ready to stream: {link}',
        "job_id": job.id,
        "title": job.title,
        "link": link,
    }


def render_failed_message(job: JobRow, attempts: Optional[int] = None) -> Dict[str, Any]:
    """The "failed" template: job id, error, upload time and a dashboard link."""
    dashboard_link = f"{DASHBOARD_BASE_URL}/jobs/{job.id}"
    error_code = job.error_code or "unknown"
    error_message = job.error_message or "No error details reported"
    text = (
        f'Processing failed for "{job.title}" (job {job.id}).\n'
        f"Error: {error_code}: {error_message}\n"
        f"Uploaded at: {_isoformat(job.created_at)}\n"
    )
    if attempts:
        text += f"Retry attempts: {attempts}\n"
    text += f"Dashboard: {dashboard_link}"
    return {
        "subject": f"Video processing failed: {job.title}",
        "text": text,
        "job_id": job.id,
        "title": job.title,
        "external_id": job.external_id,
        "error_code": error_code,
        "error_message": error_message,
        "uploaded_at": _isoformat(job.created_at),
        "retry_attempts": attempts,
        "dashboard_link": dashboard_link,
    }


def render_stuck_message(jobs: Sequence[JobRow], threshold_minutes: Optional[int] = None) -> Dict[str, Any]:
    lines = [
        f"- job {job.id} ({job.title}): {job.state.value} {job.progress_percent}%, "
        f"last update {_isoformat(job.updated_at)}"
        for job in jobs
    ]
    header = f"{len(jobs)} job(s) have not progressed"
    if threshold_minutes:
        header += f" in over {threshold_minutes} minutes"
    return {
        "subject": f"{len(jobs)} stuck transcoding job(s)",
        "text": header + ":\n" + "\n".join(lines),
        "job_ids": [job.id for job in jobs],
        "threshold_minutes": threshold_minutes,
        "dashboard_link": f"{DASHBOARD_BASE_URL}/jobs?filter=stuck",
    }


# =============================================================================
# Delivery
# =============================================================================


def notify_fire_and_forget(coro: Awaitable[Any]) -> None:
    """
    Schedule a notification coroutine as a detached background task.

    The caller never awaits the result; failures are logged and dropped.
    """

    async def _safe_send():
        try:
            await coro
        except Exception as e:
            logger.warning(f"Notification failed (fire-and-forget): {e}")

    wrapper = _safe_send()
    try:
        task = asyncio.create_task(wrapper)
    except RuntimeError:
        # No running event loop
        logger.debug("Cannot send notification: no running event loop")
        wrapper.close()
        if hasattr(coro, "close"):
            coro.close()
        return

    _pending_tasks.add(task)
    task.add_done_callback(_pending_tasks.discard)


async def drain_notifications(timeout: float = 10.0) -> int:
    """
    Wait for in-flight notifications (used at shutdown).

    Returns:
        Number of tasks that were still pending when the timeout expired
    """
    if not _pending_tasks:
        return 0
    done, pending = await asyncio.wait(set(_pending_tasks), timeout=timeout)
    if pending:
        logger.warning(f"{len(pending)} notification(s) still in flight at shutdown")
    return len(pending)


async def send_notification(
    notification_type: NotificationType,
    message: Dict[str, Any],
    force: bool = True,
) -> bool:
    """
    Post a rendered message to the configured webhook URL.

    Args:
        notification_type: Which template the message was rendered from
        message: Rendered template
        force: If False, apply per-type rate limiting

    Returns:
        True if the message was delivered, False otherwise (never raises)
    """
    if not NOTIFY_WEBHOOK_URL:
        NOTIFICATIONS_TOTAL.labels(type=notification_type.value, result="skipped").inc()
        return False

    metrics = get_metrics()

    if not force and not metrics.can_send(notification_type.value, NOTIFY_RATE_LIMIT_SECONDS):
        metrics.record_rate_limited()
        NOTIFICATIONS_TOTAL.labels(type=notification_type.value, result="skipped").inc()
        logger.debug(f"Notification {notification_type.value} rate limited")
        return False

    payload = {
        "event": notification_type.value,
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "message": message,
        "metrics": metrics.to_dict(),
    }

    try:
        async with httpx.AsyncClient(timeout=NOTIFY_WEBHOOK_TIMEOUT) as client:
            response = await client.post(
                NOTIFY_WEBHOOK_URL,
                json=payload,
                headers={"Content-Type": "application/json"},
            )
            response.raise_for_status()

        metrics.record_sent(notification_type.value)
        NOTIFICATIONS_TOTAL.labels(type=notification_type.value, result="sent").inc()
        logger.info(f"Notification sent: {notification_type.value}")
        return True

    except httpx.TimeoutException:
        logger.warning(f"Notification webhook timed out after {NOTIFY_WEBHOOK_TIMEOUT}s")
    except httpx.HTTPStatusError as e:
        logger.warning(f"Notification webhook returned error: {e.response.status_code}")
    except Exception as e:
        logger.warning(f"Failed to send notification webhook: {e}")

    metrics.record_failed()
    NOTIFICATIONS_TOTAL.labels(type=notification_type.value, result="failed").inc()
    return False


async def notify_ready(job: JobRow) -> bool:
    """Tell operators a job finished processing. Never raises."""
    try:
        get_metrics().ready_notified += 1
        return await send_notification(NotificationType.JOB_READY, render_ready_message(job))
    except Exception as e:
        logger.warning(f"Ready notification for job {job.id} failed: {e}")
        return False


async def notify_failed(job: JobRow, attempts: Optional[int] = None) -> bool:
    """Tell operators a job failed (or exhausted its retries). Never raises."""
    try:
        get_metrics().failed_notified += 1
        return await send_notification(NotificationType.JOB_FAILED, render_failed_message(job, attempts))
    except Exception as e:
        logger.warning(f"Failure notification for job {job.id} failed: {e}")
        return False


async def notify_stuck(jobs: List[JobRow], threshold_minutes: Optional[int] = None) -> bool:
    """Send one rate-limited digest of stuck jobs. Never raises."""
    if not jobs:
        return False
    try:
        get_metrics().stuck_digests += 1
        return await send_notification(
            NotificationType.JOBS_STUCK,
            render_stuck_message(jobs, threshold_minutes),
            force=False,
        )
    except Exception as e:
        logger.warning(f"Stuck-job notification failed: {e}")
        return False
