"""
Stuck-job detection.

Read-only. A queued or in-progress job whose last applied write is older
than the threshold is reported as stuck. The result is advisory: the job
may still be processing on the external side, so nothing here changes
state; the scheduler only sends a digest to operators.
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import List, Optional

from api.job_state import JobRow
from api.job_store import JobStore, job_store
from config import (
    STUCK_LONG_THRESHOLD_MINUTES,
    STUCK_LONG_VIDEO_SECONDS,
    STUCK_SHORT_THRESHOLD_MINUTES,
    STUCK_THRESHOLD_MINUTES,
)

logger = logging.getLogger(__name__)


def expected_threshold_minutes(job: JobRow) -> int:
    """Advisory threshold for one job, scaled by its duration (unknown counts as short)."""
    if job.duration_seconds is not None and job.duration_seconds >= STUCK_LONG_VIDEO_SECONDS:
        return STUCK_LONG_THRESHOLD_MINUTES
    return STUCK_SHORT_THRESHOLD_MINUTES


async def get_stuck_jobs(
    threshold_minutes: int = STUCK_THRESHOLD_MINUTES,
    store: Optional[JobStore] = None,
    now: Optional[datetime] = None,
) -> List[JobRow]:
    """Non-terminal jobs not updated for more than `threshold_minutes`, oldest first."""
    if threshold_minutes < 0:
        raise ValueError("threshold_minutes must not be negative")
    store = store or job_store
    now = now or datetime.now(timezone.utc)
    return await store.list_stale(now - timedelta(minutes=threshold_minutes))


async def find_stuck_by_expected_duration(
    store: Optional[JobStore] = None,
    now: Optional[datetime] = None,
) -> List[JobRow]:
    """Jobs past their own duration-based threshold."""
    store = store or job_store
    now = now or datetime.now(timezone.utc)

    # Nothing can be stuck by the per-job rule before the shortest threshold passes
    floor = min(STUCK_SHORT_THRESHOLD_MINUTES, STUCK_LONG_THRESHOLD_MINUTES)
    candidates = await get_stuck_jobs(floor, store=store, now=now)

    stuck = [
        job
        for job in candidates
        if job.updated_at is not None
        and now - job.updated_at > timedelta(minutes=expected_threshold_minutes(job))
    ]
    if stuck:
        logger.info(f"{len(stuck)} job(s) past their expected processing time")
    return stuck
