"""
Shared write path for externally observed job state.

Webhook ingestion, the reconciliation poller and the retry engine all call
`apply_status`, so they enforce the same transition rules and trigger
notifications the same way.
"""

import logging
from typing import Optional

from api.enums import JobState, UpdateSource
from api.job_state import JobRow, StatusUpdate
from api.job_store import JobStore, UpsertResult, job_store
from worker.notifier import notify_failed, notify_fire_and_forget, notify_ready

logger = logging.getLogger(__name__)


async def apply_status(
    job: JobRow,
    update: StatusUpdate,
    source: UpdateSource,
    store: Optional[JobStore] = None,
) -> UpsertResult:
    """
    Write an observed status for `job`, conditional on the version it was read at.

    On a transition into READY or FAILED the matching notification is scheduled
    as a detached task; this function never waits for it.
    """
    store = store or job_store
    result = await store.apply_update(job.id, update, expected_version=job.version, source=source)

    if result.state_changed:
        _notify_transition(result.current)

    return result


async def mark_orphaned(
    job: JobRow,
    reason: str,
    source: UpdateSource,
    store: Optional[JobStore] = None,
) -> UpsertResult:
    """Fail a job the external service no longer knows about."""
    logger.warning(f"Job {job.id} (external {job.external_id}) is orphaned: {reason}")
    return await apply_status(job, StatusUpdate.orphaned(reason), source, store=store)


def _notify_transition(job: JobRow) -> None:
    if job.state == JobState.READY:
        notify_fire_and_forget(notify_ready(job))
    elif job.state == JobState.FAILED:
        notify_fire_and_forget(notify_failed(job))
