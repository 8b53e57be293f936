"""
Reconciliation poller.

Webhooks are the fast path, but they can be lost. On every cycle the poller
asks the transcoding service for the current state of each queued or
in-progress job and writes it through the same path the webhook ingestor
uses. It never touches failed jobs; recovering those is the retry engine's
job.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Iterable, List, Optional, Tuple

from api.enums import UpdateSource
from api.errors import PermanentError, TransientError
from api.job_state import JobRow, StatusUpdate
from api.job_store import JobStore, UpsertResult, job_store
from api.metrics import POLL_CYCLE_DURATION_SECONDS, POLL_CYCLES_TOTAL, POLL_JOB_ERRORS_TOTAL
from api.reconciliation import apply_status, mark_orphaned
from config import POLL_REQUEST_DELAY
from worker.status_client import ExternalStatusClient

logger = logging.getLogger(__name__)


@dataclass
class PollResult:
    """Outcome of one poll cycle (or one explicit batch check)."""

    checked: int = 0
    updated: int = 0
    errors: List[Tuple[int, str]] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "checked": self.checked,
            "updated": self.updated,
            "errors": [{"job_id": job_id, "error": error} for job_id, error in self.errors],
        }


@dataclass
class JobCheck:
    """Result of reconciling one job."""

    job: JobRow
    status: Optional[StatusUpdate] = None
    result: Optional[UpsertResult] = None
    error: Optional[str] = None

    @property
    def applied(self) -> bool:
        return self.result is not None and self.result.applied


class ReconciliationPoller:
    """
    Pulls status for non-terminal jobs and reconciles the store.

    Args:
        store: Job store (defaults to the application-wide store)
        client: Status client for the transcoding service
        request_delay: Pause between successive external calls, in seconds
    """

    def __init__(
        self,
        store: Optional[JobStore] = None,
        client: Optional[ExternalStatusClient] = None,
        request_delay: float = POLL_REQUEST_DELAY,
    ):
        self.store = store or job_store
        self.client = client or ExternalStatusClient()
        self.request_delay = request_delay

    async def poll_once(self, trigger: str = "scheduled") -> PollResult:
        """Run one cycle over every queued or in-progress job."""
        POLL_CYCLES_TOTAL.labels(trigger=trigger).inc()
        start = time.monotonic()

        jobs = await self.store.list_non_terminal()
        result = await self._check_all(jobs)

        elapsed = time.monotonic() - start
        POLL_CYCLE_DURATION_SECONDS.observe(elapsed)
        logger.info(
            f"Poll cycle ({trigger}) checked {result.checked} jobs, updated {result.updated}, "
            f"{len(result.errors)} errors in {elapsed:.1f}s"
        )
        return result

    async def batch_check_status(self, job_ids: Iterable[int]) -> PollResult:
        """Reconcile an explicit list of jobs (any state). Unknown ids are reported as errors."""
        ids = list(job_ids)
        jobs = await self.store.get_jobs(ids)
        found = {job.id for job in jobs}

        result = await self._check_all(jobs)
        for job_id in ids:
            if job_id not in found:
                result.errors.append((job_id, "Job not found"))
        return result

    async def check_job_status(self, job_id: int) -> JobCheck:
        """
        Reconcile one job and return what the service reported.

        Raises:
            LookupError: job does not exist
            ValueError: job has no external id yet
            TransientError: the status request failed and nothing was written
        """
        job = await self.store.get_job(job_id)
        if job is None:
            raise LookupError(f"Job {job_id} not found")
        if not job.external_id:
            raise ValueError(f"Job {job_id} has no external id yet")

        check = await self.reconcile_job(job)
        if check.error and check.status is None and check.result is None:
            raise TransientError(check.error)
        return check

    async def reconcile_job(self, job: JobRow) -> JobCheck:
        """Fetch and apply the status of one job; errors are returned, never raised."""
        check = JobCheck(job=job)
        try:
            check.status = await self.client.fetch_status(job.external_id)
            check.result = await apply_status(job, check.status, UpdateSource.POLL, store=self.store)
        except PermanentError as e:
            POLL_JOB_ERRORS_TOTAL.labels(kind="permanent").inc()
            check.error = str(e)
            check.result = await mark_orphaned(job, str(e), UpdateSource.POLL, store=self.store)
        except TransientError as e:
            POLL_JOB_ERRORS_TOTAL.labels(kind="transient").inc()
            logger.warning(f"Status check for job {job.id} failed, will try next cycle: {e}")
            check.error = str(e)
        return check

    async def _check_all(self, jobs: List[JobRow]) -> PollResult:
        result = PollResult()
        first = True

        for job in jobs:
            if not job.external_id:
                # Upload to the service has not finished yet
                continue
            if not first and self.request_delay > 0:
                await asyncio.sleep(self.request_delay)
            first = False

            result.checked += 1
            try:
                check = await self.reconcile_job(job)
            except Exception as e:
                POLL_JOB_ERRORS_TOTAL.labels(kind="unexpected").inc()
                logger.exception(f"Unexpected error reconciling job {job.id}: {e}")
                result.errors.append((job.id, str(e)))
                continue

            if check.applied:
                result.updated += 1
            if check.error:
                result.errors.append((job.id, check.error))

        return result

    async def close(self) -> None:
        await self.client.close()
