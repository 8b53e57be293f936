"""
Job store: durable record of every tracked job and its retry history.

All state writes are conditional on the `version` the writer read
(``UPDATE ... WHERE id = :id AND version = :v RETURNING ...``), so webhook,
poll and retry writers never lose each other's updates and never need a
store-wide lock. Redundant, stale or invalid writes come back with
``applied=False`` instead of raising.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Mapping, Optional, Union

import sqlalchemy as sa
from databases import Database

from api.database import jobs, retry_attempts
from api.db_retry import (
    db_execute_with_retry,
    fetch_all_with_retry,
    fetch_one_with_retry,
    fetch_val_with_retry,
)
from api.enums import JobState, UpdateSource
from api.errors import ConcurrencyConflict, truncate_error
from api.job_state import (
    NON_TERMINAL_STATES,
    JobRow,
    StatusUpdate,
    _ensure_utc_datetime,
    job_state_machine,
)
from api.metrics import STALE_WRITES_DROPPED_TOTAL, STATE_TRANSITIONS_TOTAL

logger = logging.getLogger(__name__)

# Re-read and re-validate this many times when the conditional write loses a race
MAX_CAS_ATTEMPTS = 3


@dataclass
class UpsertResult:
    """Outcome of a state write."""

    applied: bool
    current: Optional[JobRow]
    previous_state: Optional[JobState] = None

    @property
    def state_changed(self) -> bool:
        """True when the write moved the job to a different state."""
        return (
            self.applied
            and self.current is not None
            and self.previous_state is not None
            and self.current.state != self.previous_state
        )


@dataclass
class RetryAttemptRow:
    """One row of append-only retry history."""

    job_id: int
    attempt_number: int
    attempted_at: Optional[datetime]
    success: bool
    error: Optional[str]

    @classmethod
    def from_mapping(cls, row: Mapping[str, Any]) -> "RetryAttemptRow":
        return cls(
            job_id=row["job_id"],
            attempt_number=row["attempt_number"],
            attempted_at=_ensure_utc_datetime(row["attempted_at"]),
            success=bool(row["success"]),
            error=row["error"],
        )


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class JobStore:
    """
    Async access to the `jobs` and `retry_attempts` tables.

    Args:
        db: Database to use. Defaults to the application-wide `api.database.database`.
    """

    def __init__(self, db: Optional[Database] = None):
        self._db = db

    @property
    def db(self) -> Database:
        if self._db is not None:
            return self._db
        from api.database import database

        return database

    # =========================================================================
    # Jobs
    # =========================================================================

    async def create_job(self, title: str, external_id: Optional[str] = None) -> JobRow:
        """Register a newly submitted job in the queued state."""
        now = _utcnow()
        job_id = await db_execute_with_retry(
            jobs.insert().values(
                external_id=external_id,
                title=title,
                state=JobState.QUEUED.value,
                progress_percent=0,
                reopen_count=0,
                version=1,
                created_at=now,
                updated_at=now,
            ),
            db=self._db,
        )
        logger.info(f"Registered job {job_id} ({title!r}, external_id={external_id})")
        return await self.get_job(job_id)

    async def attach_external_id(self, job_id: int, external_id: str) -> JobRow:
        """
        Record the external service's identifier once the upload has finished.

        Raises:
            LookupError: job does not exist
            ValueError: job already has a different external id, or the id belongs to another job
        """
        job = await self.get_job(job_id)
        if job is None:
            raise LookupError(f"Job {job_id} not found")
        if job.external_id == external_id:
            return job
        if job.external_id is not None:
            raise ValueError(f"Job {job_id} already tracks external id {job.external_id}")
        owner = await self.get_job_by_external_id(external_id)
        if owner is not None:
            raise ValueError(f"External id {external_id} already belongs to job {owner.id}")

        row = await fetch_one_with_retry(
            jobs.update()
            .where(jobs.c.id == job_id)
            .where(jobs.c.version == job.version)
            .values(external_id=external_id, version=job.version + 1, updated_at=_utcnow())
            .returning(*jobs.c),
            db=self._db,
        )
        if row is None:
            raise ConcurrencyConflict(job_id, job.version)
        return JobRow.from_mapping(row)

    async def get_job(self, job_id: int) -> Optional[JobRow]:
        row = await fetch_one_with_retry(jobs.select().where(jobs.c.id == job_id), db=self._db)
        return JobRow.from_mapping(row) if row else None

    async def get_job_by_external_id(self, external_id: str) -> Optional[JobRow]:
        row = await fetch_one_with_retry(
            jobs.select().where(jobs.c.external_id == external_id), db=self._db
        )
        return JobRow.from_mapping(row) if row else None

    async def get_jobs(self, job_ids: Iterable[int]) -> List[JobRow]:
        """Fetch several jobs, in the order of `job_ids`; unknown ids are skipped."""
        ids = list(job_ids)
        if not ids:
            return []
        rows = await fetch_all_with_retry(jobs.select().where(jobs.c.id.in_(ids)), db=self._db)
        by_id = {row["id"]: JobRow.from_mapping(row) for row in rows}
        return [by_id[job_id] for job_id in ids if job_id in by_id]

    async def list_non_terminal(self) -> List[JobRow]:
        """Queued and in-progress jobs, oldest first (the poller's worklist)."""
        rows = await fetch_all_with_retry(
            jobs.select()
            .where(jobs.c.state.in_([s.value for s in NON_TERMINAL_STATES]))
            .order_by(jobs.c.created_at.asc(), jobs.c.id.asc()),
            db=self._db,
        )
        return [JobRow.from_mapping(row) for row in rows]

    async def list_failed(self) -> List[JobRow]:
        """Failed jobs, newest first (the retry engine's worklist)."""
        rows = await fetch_all_with_retry(
            jobs.select()
            .where(jobs.c.state == JobState.FAILED.value)
            .order_by(jobs.c.created_at.desc(), jobs.c.id.desc()),
            db=self._db,
        )
        return [JobRow.from_mapping(row) for row in rows]

    async def list_stale(self, older_than: datetime) -> List[JobRow]:
        """Non-terminal jobs whose last applied write is before `older_than`, oldest first."""
        rows = await fetch_all_with_retry(
            jobs.select()
            .where(jobs.c.state.in_([s.value for s in NON_TERMINAL_STATES]))
            .where(jobs.c.updated_at < older_than)
            .order_by(jobs.c.updated_at.asc(), jobs.c.id.asc()),
            db=self._db,
        )
        return [JobRow.from_mapping(row) for row in rows]

    # =========================================================================
    # Conditional state writes
    # =========================================================================

    async def upsert_state(
        self,
        job_id: int,
        new_state: Union[JobState, str],
        metadata: Optional[Mapping[str, Any]] = None,
        expected_version: Optional[int] = None,
        source: UpdateSource = UpdateSource.OPERATOR,
    ) -> UpsertResult:
        """
        Apply a state write if it is a valid transition from the stored state.

        Args:
            job_id: Local job id
            new_state: Reported state
            metadata: StatusUpdate fields (progress_percent, error_code, error_message,
                duration_seconds, playback_hls_url, playback_dash_url, thumbnail_url)
            expected_version: Version the caller last saw, or None for "whatever is stored"
            source: Which path produced the write

        Returns:
            UpsertResult. `applied` is False for invalid transitions, redundant writes
            and stale writes against a terminal or identical stored state.
        """
        update = StatusUpdate(state=JobState(new_state), **dict(metadata or {}))
        return await self.apply_update(job_id, update, expected_version=expected_version, source=source)

    async def apply_update(
        self,
        job_id: int,
        update: StatusUpdate,
        expected_version: Optional[int] = None,
        source: UpdateSource = UpdateSource.OPERATOR,
    ) -> UpsertResult:
        """Same as `upsert_state` but takes a prepared StatusUpdate."""
        job: Optional[JobRow] = None

        for _ in range(MAX_CAS_ATTEMPTS):
            job = await self.get_job(job_id)
            if job is None:
                logger.warning(f"State write for unknown job {job_id} dropped")
                return UpsertResult(applied=False, current=None)

            if expected_version is not None and expected_version != job.version:
                if job.is_terminal or job.state == update.state:
                    return self._dropped(job, update, source, "stale version")

            values = job_state_machine.plan_update(job, update)
            if values is None:
                return self._dropped(job, update, source, "no valid change")

            try:
                updated = await self._compare_and_swap(job, values)
            except ConcurrencyConflict as e:
                # Somebody else wrote first; re-read and re-validate against their result
                logger.debug(f"{e}, re-validating {source.value} write")
                expected_version = job.version
                continue

            STATE_TRANSITIONS_TOTAL.labels(source=source.value, to_state=updated.state.value).inc()
            if updated.state != job.state:
                logger.info(
                    f"Job {job_id} {job.state.value} -> {updated.state.value} "
                    f"via {source.value} (version {updated.version})"
                )
            else:
                logger.debug(f"Job {job_id} updated in place via {source.value}: {values}")
            return UpsertResult(applied=True, current=updated, previous_state=job.state)

        logger.warning(f"Giving up on {source.value} write for job {job_id} after {MAX_CAS_ATTEMPTS} conflicts")
        return UpsertResult(applied=False, current=job, previous_state=job.state if job else None)

    def _dropped(self, job: JobRow, update: StatusUpdate, source: UpdateSource, reason: str) -> UpsertResult:
        STALE_WRITES_DROPPED_TOTAL.labels(source=source.value).inc()
        logger.debug(
            f"Dropped {source.value} write for job {job.id} "
            f"({job.state.value} -> {update.state.value}): {reason}"
        )
        return UpsertResult(applied=False, current=job, previous_state=job.state)

    async def _compare_and_swap(self, job: JobRow, values: Dict[str, Any]) -> JobRow:
        if "error_message" in values:
            values["error_message"] = truncate_error(values["error_message"])
        row = await fetch_one_with_retry(
            jobs.update()
            .where(jobs.c.id == job.id)
            .where(jobs.c.version == job.version)
            .values(**values, version=job.version + 1, updated_at=_utcnow())
            .returning(*jobs.c),
            db=self._db,
        )
        if row is None:
            raise ConcurrencyConflict(job.id, job.version)
        return JobRow.from_mapping(row)

    # =========================================================================
    # Aggregates
    # =========================================================================

    async def get_monitoring_stats(self) -> Dict[str, Any]:
        """
        Counts per state plus the average processing time of ready jobs.

        Returns:
            {"total_jobs", "queued", "in_progress", "ready", "failed",
             "average_processing_minutes"}
        """
        rows = await fetch_all_with_retry(
            sa.select(jobs.c.state, sa.func.count().label("count")).group_by(jobs.c.state),
            db=self._db,
        )
        stats: Dict[str, Any] = {state.value: 0 for state in JobState}
        for row in rows:
            stats[row["state"]] = row["count"]
        stats["total_jobs"] = sum(stats[state.value] for state in JobState)

        average = await fetch_val_with_retry(
            sa.select(sa.func.avg(self._processing_minutes_expr())).where(
                jobs.c.state == JobState.READY.value
            ),
            db=self._db,
        )
        stats["average_processing_minutes"] = round(float(average), 2) if average is not None else 0.0
        return stats

    def _processing_minutes_expr(self):
        if self.db.url.dialect == "sqlite":
            return (sa.func.julianday(jobs.c.updated_at) - sa.func.julianday(jobs.c.created_at)) * 1440.0
        return sa.func.extract("epoch", jobs.c.updated_at - jobs.c.created_at) / 60.0

    # =========================================================================
    # Retry history
    # =========================================================================

    async def record_retry_attempt(
        self,
        job_id: int,
        attempt_number: int,
        success: bool,
        error: Optional[str] = None,
        attempted_at: Optional[datetime] = None,
    ) -> RetryAttemptRow:
        """Append one attempt; `attempted_at` defaults to now."""
        attempted_at = attempted_at or _utcnow()
        error = truncate_error(error)
        await db_execute_with_retry(
            retry_attempts.insert().values(
                job_id=job_id,
                attempt_number=attempt_number,
                attempted_at=attempted_at,
                success=success,
                error=error,
            ),
            db=self._db,
        )
        logger.info(f"Retry attempt {attempt_number} for job {job_id}: {'success' if success else 'failed'}")
        return RetryAttemptRow(
            job_id=job_id,
            attempt_number=attempt_number,
            attempted_at=attempted_at,
            success=success,
            error=error,
        )

    async def get_retry_attempts(self, job_id: int) -> List[RetryAttemptRow]:
        rows = await fetch_all_with_retry(
            retry_attempts.select()
            .where(retry_attempts.c.job_id == job_id)
            .order_by(retry_attempts.c.attempt_number.asc()),
            db=self._db,
        )
        return [RetryAttemptRow.from_mapping(row) for row in rows]

    async def clear_retry_attempts(self, job_id: int) -> int:
        """Delete a job's retry history, restoring its retry budget. Returns rows removed."""
        count = await fetch_val_with_retry(
            sa.select(sa.func.count()).select_from(retry_attempts).where(retry_attempts.c.job_id == job_id),
            db=self._db,
        )
        await db_execute_with_retry(
            retry_attempts.delete().where(retry_attempts.c.job_id == job_id), db=self._db
        )
        if count:
            logger.info(f"Cleared {count} retry attempts for job {job_id}")
        return count or 0

    async def reset_all_retry_attempts(self) -> None:
        await db_execute_with_retry(retry_attempts.delete(), db=self._db)
        logger.info("All retry attempts cleared")


# Application-wide store bound to api.database.database
job_store = JobStore()
