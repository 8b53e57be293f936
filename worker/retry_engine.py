"""
Retry engine for failed transcoding jobs.

This is the only place a failed job is retried. A retry re-checks the job's
status on the transcoding service with exponential backoff between attempts;
if the service reports the job as ready or in progress again, the job is
reopened through the shared write path. Every attempt is recorded in the
`retry_attempts` table, so budgets survive restarts.

Backoff: delay(n) = min(initial_delay * backoff_multiplier ** (n - 1), max_delay)
With the defaults (5s, x2, 300s cap) attempts 1..5 wait 5, 10, 20, 40, 80s.
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import List, Optional, Sequence

from api.enums import JobState, UpdateSource
from api.errors import PermanentError, TransientError
from api.job_locks import JobLease, JobLockBusy, JobLockRegistry, job_locks
from api.job_state import JobRow
from api.job_store import JobStore, RetryAttemptRow, job_store
from api.metrics import RETRY_ATTEMPTS_TOTAL, RETRY_EXHAUSTED_TOTAL
from api.reconciliation import apply_status, mark_orphaned
from config import (
    RETRY_BACKOFF_MULTIPLIER,
    RETRY_INITIAL_DELAY,
    RETRY_MAX_DELAY,
    RETRY_MAX_RETRIES,
    RETRY_SWEEP_DELAY,
    STATUS_REQUEST_TIMEOUT,
)
from worker.notifier import notify_failed, notify_fire_and_forget
from worker.status_client import ExternalStatusClient

logger = logging.getLogger(__name__)

# Slack on top of the next sleep and fetch when extending the retry lock
LOCK_EXTEND_MARGIN = 60.0

# States that mean the external job is alive again
RECOVERED_STATES = frozenset({JobState.READY, JobState.IN_PROGRESS})


@dataclass(frozen=True)
class RetryConfig:
    max_retries: int = 3
    initial_delay: float = 5.0
    max_delay: float = 300.0
    backoff_multiplier: float = 2.0

    def __post_init__(self):
        if self.max_retries < 1:
            raise ValueError("max_retries must be at least 1")
        if self.initial_delay < 0 or self.max_delay < 0:
            raise ValueError("retry delays must not be negative")
        if self.backoff_multiplier < 1:
            raise ValueError("backoff_multiplier must be at least 1")

    @classmethod
    def from_config(cls, max_retries: Optional[int] = None) -> "RetryConfig":
        """Defaults from the environment, optionally overriding the attempt budget."""
        return cls(
            max_retries=max_retries if max_retries is not None else RETRY_MAX_RETRIES,
            initial_delay=RETRY_INITIAL_DELAY,
            max_delay=RETRY_MAX_DELAY,
            backoff_multiplier=RETRY_BACKOFF_MULTIPLIER,
        )


def calculate_retry_delay(attempt: int, config: RetryConfig) -> float:
    """Seconds to wait after failed attempt number `attempt` (1-based)."""
    if attempt < 1:
        raise ValueError(f"attempt must be >= 1, got {attempt}")
    delay = config.initial_delay * (config.backoff_multiplier ** (attempt - 1))
    return min(delay, config.max_delay)


def failures_since_last_success(history: Sequence[RetryAttemptRow]) -> int:
    """Failed attempts after the most recent successful one (the spent budget)."""
    count = 0
    for attempt in reversed(history):
        if attempt.success:
            break
        count += 1
    return count


def is_retryable(job: JobRow) -> bool:
    """Failed, known to the external service, and not orphaned."""
    return job.state == JobState.FAILED and bool(job.external_id) and not job.is_orphaned


class RetryEngine:
    """
    Drives retry sequences for failed jobs.

    Args:
        store: Job store (defaults to the application-wide store)
        client: Status client for the transcoding service
        locks: Per-job lock registry
        sweep_delay: Pause between jobs in retry_all_failed, in seconds
    """

    def __init__(
        self,
        store: Optional[JobStore] = None,
        client: Optional[ExternalStatusClient] = None,
        locks: Optional[JobLockRegistry] = None,
        sweep_delay: float = RETRY_SWEEP_DELAY,
    ):
        self.store = store or job_store
        self.client = client or ExternalStatusClient()
        self.locks = locks or job_locks
        self.sweep_delay = sweep_delay

    async def retry_job(self, job_id: int, config: Optional[RetryConfig] = None) -> bool:
        """
        Run one retry sequence for a failed job.

        Returns:
            True if the job was recovered (ready or in progress again), False if it
            was not eligible, is already being retried, or exhausted its retries.

        Raises:
            LookupError: job does not exist
        """
        config = config or RetryConfig.from_config()
        try:
            async with self.locks.hold(job_id) as lease:
                return await self._run_sequence(job_id, config, lease)
        except JobLockBusy:
            logger.info(f"Retry for job {job_id} skipped: another retry is in progress")
            return False

    async def _run_sequence(self, job_id: int, config: RetryConfig, lease: JobLease) -> bool:
        job = await self.store.get_job(job_id)
        if job is None:
            raise LookupError(f"Job {job_id} not found")
        if not is_retryable(job):
            logger.info(
                f"Job {job_id} is not retryable "
                f"(state={job.state.value}, external_id={job.external_id}, error_code={job.error_code})"
            )
            return False

        history = await self.store.get_retry_attempts(job_id)
        last_number = history[-1].attempt_number if history else 0
        spent = failures_since_last_success(history)
        remaining = config.max_retries - spent
        if remaining <= 0:
            logger.info(f"Job {job_id} has no retries left ({spent}/{config.max_retries} used)")
            return False

        for i in range(remaining):
            attempt_number = last_number + i + 1
            cycle_attempt = spent + i + 1
            attempted_at = datetime.now(timezone.utc)

            try:
                status = await self.client.fetch_status(job.external_id)
            except TransientError as e:
                error = str(e)
            except PermanentError as e:
                await self.store.record_retry_attempt(
                    job_id, attempt_number, success=False, error=str(e), attempted_at=attempted_at
                )
                RETRY_ATTEMPTS_TOTAL.labels(result="permanent").inc()
                result = await mark_orphaned(job, str(e), UpdateSource.RETRY, store=self.store)
                notify_fire_and_forget(notify_failed(result.current or job, attempts=attempt_number))
                return False
            else:
                if status.state in RECOVERED_STATES:
                    result = await apply_status(job, status, UpdateSource.RETRY, store=self.store)
                    current = result.current
                    if current is not None and current.state in RECOVERED_STATES:
                        await self.store.record_retry_attempt(
                            job_id, attempt_number, success=True, attempted_at=attempted_at
                        )
                        RETRY_ATTEMPTS_TOTAL.labels(result="success").inc()
                        logger.info(f"Job {job_id} recovered on retry attempt {attempt_number} ({current.state.value})")
                        return True
                    error = f"Reported {status.state.value} but the write was rejected"
                else:
                    error = status.error_text or f"Still {status.state.value} on the transcoding service"

            await self.store.record_retry_attempt(
                job_id, attempt_number, success=False, error=error, attempted_at=attempted_at
            )
            RETRY_ATTEMPTS_TOTAL.labels(result="failed").inc()
            logger.info(f"Retry attempt {attempt_number} for job {job_id} failed: {error}")

            if cycle_attempt >= config.max_retries:
                break

            delay = calculate_retry_delay(cycle_attempt, config)
            # The lock must outlive this sleep and the next fetch
            await lease.extend(delay + STATUS_REQUEST_TIMEOUT + LOCK_EXTEND_MARGIN)
            await asyncio.sleep(delay)

            job = await self.store.get_job(job_id)
            if job is None:
                raise LookupError(f"Job {job_id} disappeared during retry")
            if job.state != JobState.FAILED:
                # A webhook or poll got there first
                logger.info(f"Job {job_id} left failed state during retry ({job.state.value})")
                return job.state in RECOVERED_STATES

        RETRY_EXHAUSTED_TOTAL.inc()
        logger.warning(f"Job {job_id} exhausted {config.max_retries} retries")
        notify_fire_and_forget(notify_failed(job, attempts=last_number + remaining))
        return False

    async def retry_all_failed(self, config: Optional[RetryConfig] = None) -> int:
        """
        Retry every eligible failed job, one at a time.

        Returns:
            Number of jobs recovered
        """
        config = config or RetryConfig.from_config()
        candidates = [job for job in await self.store.list_failed() if is_retryable(job)]
        recovered = 0

        for index, job in enumerate(candidates):
            if index and self.sweep_delay > 0:
                await asyncio.sleep(self.sweep_delay)
            try:
                if await self.retry_job(job.id, config):
                    recovered += 1
            except Exception as e:
                logger.exception(f"Retry of job {job.id} failed unexpectedly: {e}")

        logger.info(f"Retry sweep recovered {recovered} of {len(candidates)} failed jobs")
        return recovered

    async def get_retry_attempts(self, job_id: int) -> List[RetryAttemptRow]:
        return await self.store.get_retry_attempts(job_id)

    async def clear_retry_attempts(self, job_id: int) -> int:
        return await self.store.clear_retry_attempts(job_id)

    async def close(self) -> None:
        await self.client.close()
