"""
Job State Machine - validation of state writes for tracked transcoding jobs.

Every writer (webhook ingestion, reconciliation poll, retry engine) funnels its
update through `JobStateMachine.plan_update`, so all of them enforce the same
rules regardless of which path observed the external state first.

State Transition Diagram:
    QUEUED ──> IN_PROGRESS ──> READY
       │            │
       │            v
       └───────> FAILED ──> (reopen) IN_PROGRESS / READY

READY is terminal. FAILED is terminal except for reopening. QUEUED may not jump
straight to READY without IN_PROGRESS having been observed first.

Usage:
    from api.job_state import job_state_machine

    values = job_state_machine.plan_update(job, update)
    if values is None:
        # redundant or invalid write, drop it
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, FrozenSet, Mapping, Optional

from api.enums import ErrorCode, JobState
from api.errors import ValidationError

logger = logging.getLogger(__name__)

TERMINAL_STATES: FrozenSet[JobState] = frozenset({JobState.READY, JobState.FAILED})
NON_TERMINAL_STATES: FrozenSet[JobState] = frozenset({JobState.QUEUED, JobState.IN_PROGRESS})

# Same-state entries are only applied when they carry new information
# (higher progress, different error details).
ALLOWED_TRANSITIONS: Dict[JobState, FrozenSet[JobState]] = {
    JobState.QUEUED: frozenset({JobState.IN_PROGRESS, JobState.FAILED}),
    JobState.IN_PROGRESS: frozenset({JobState.IN_PROGRESS, JobState.READY, JobState.FAILED}),
    JobState.READY: frozenset(),
    JobState.FAILED: frozenset({JobState.FAILED, JobState.IN_PROGRESS, JobState.READY}),
}


# Vocabulary of the external transcoding service. Anything before the encode
# starts counts as queued; "ready" is only final once the stream is playable.
EXTERNAL_STATE_MAP: Dict[str, JobState] = {
    "pendingupload": JobState.QUEUED,
    "downloading": JobState.QUEUED,
    "queued": JobState.QUEUED,
    "inprogress": JobState.IN_PROGRESS,
    "in_progress": JobState.IN_PROGRESS,
    "ready": JobState.READY,
    "error": JobState.FAILED,
    "failed": JobState.FAILED,
}

# States in which the external service no longer knows the job
EXTERNAL_GONE_STATES = frozenset({"deleted", "unknown", "notfound", "not_found"})


def map_external_state(value: Optional[str]) -> JobState:
    """
    Translate an external state string into a local JobState.

    Raises:
        ValidationError: for missing or unrecognized values
    """
    key = (value or "").strip().lower()
    if key not in EXTERNAL_STATE_MAP:
        raise ValidationError(f"Unrecognized external state: {value!r}")
    return EXTERNAL_STATE_MAP[key]


def _ensure_utc_datetime(dt: Optional[datetime]) -> Optional[datetime]:
    """
    Normalize datetime to UTC timezone.

    SQLite hands back naive datetimes even for timezone-aware columns; those
    are stored as UTC, so they are tagged rather than converted.
    """
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def clamp_progress(value: Optional[float]) -> int:
    """Coerce a reported progress value (int, float or numeric string) into 0..100."""
    if value is None:
        return 0
    try:
        progress = int(float(value))
    except (TypeError, ValueError):
        return 0
    return max(0, min(100, progress))


@dataclass
class JobRow:
    """
    A tracked job as stored in the `jobs` table.

    All datetime fields are normalized to UTC timezone.
    """

    id: int
    external_id: Optional[str]
    title: str
    state: JobState
    progress_percent: int
    error_code: Optional[str]
    error_message: Optional[str]
    duration_seconds: Optional[float]
    playback_hls_url: Optional[str]
    playback_dash_url: Optional[str]
    thumbnail_url: Optional[str]
    reopen_count: int
    version: int
    created_at: Optional[datetime]
    updated_at: Optional[datetime]

    @classmethod
    def from_mapping(cls, row: Mapping[str, Any]) -> "JobRow":
        """Create a JobRow from a database row mapping."""
        return cls(
            id=row["id"],
            external_id=row["external_id"],
            title=row["title"] or "",
            state=JobState(row["state"]),
            progress_percent=row["progress_percent"] or 0,
            error_code=row["error_code"],
            error_message=row["error_message"],
            duration_seconds=row["duration_seconds"],
            playback_hls_url=row["playback_hls_url"],
            playback_dash_url=row["playback_dash_url"],
            thumbnail_url=row["thumbnail_url"],
            reopen_count=row["reopen_count"] or 0,
            version=row["version"],
            created_at=_ensure_utc_datetime(row["created_at"]),
            updated_at=_ensure_utc_datetime(row["updated_at"]),
        )

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    @property
    def is_orphaned(self) -> bool:
        return self.state == JobState.FAILED and self.error_code == ErrorCode.ORPHANED.value


@dataclass
class StatusUpdate:
    """
    A state report about one job, from a webhook or a status fetch.

    Playback fields are only meaningful when `state` is READY and error fields
    only when it is FAILED.
    """

    state: JobState
    progress_percent: int = 0
    error_code: Optional[str] = None
    error_message: Optional[str] = None
    duration_seconds: Optional[float] = None
    playback_hls_url: Optional[str] = None
    playback_dash_url: Optional[str] = None
    thumbnail_url: Optional[str] = None
    extra: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def orphaned(cls, message: str) -> "StatusUpdate":
        """Failure report for a job the external service no longer knows about."""
        return cls(state=JobState.FAILED, error_code=ErrorCode.ORPHANED.value, error_message=message)

    @property
    def error_text(self) -> Optional[str]:
        if self.error_code is None and self.error_message is None:
            return None
        return f"{self.error_code or 'unknown'}: {self.error_message or ''}".rstrip(": ")


class JobStateMachine:
    """
    Transition validation for tracked jobs.

    Stateless; all methods are pure functions of their arguments.
    """

    def is_terminal(self, state: JobState) -> bool:
        return state in TERMINAL_STATES

    def is_valid_transition(self, current: JobState, new: JobState) -> bool:
        """Check the transition table (same-state writes count as valid where listed)."""
        return new in ALLOWED_TRANSITIONS[current]

    def plan_update(self, job: JobRow, update: StatusUpdate) -> Optional[Dict[str, Any]]:
        """
        Work out the column values an update would write.

        Returns:
            Dict of column values to apply, or None when the write is invalid
            or would not change anything (both are dropped, not errors).
        """
        current = job.state
        new = update.state

        if not self.is_valid_transition(current, new):
            logger.debug(f"Rejected transition for job {job.id}: {current.value} -> {new.value}")
            return None

        if new == current:
            return self._plan_same_state(job, update)

        values: Dict[str, Any] = {"state": new.value}
        reopening = current == JobState.FAILED

        if new == JobState.IN_PROGRESS:
            values["progress_percent"] = clamp_progress(update.progress_percent)
            values["error_code"] = None
            values["error_message"] = None
        elif new == JobState.READY:
            values["progress_percent"] = 100
            values["error_code"] = None
            values["error_message"] = None
            values["duration_seconds"] = update.duration_seconds
            values["playback_hls_url"] = update.playback_hls_url
            values["playback_dash_url"] = update.playback_dash_url
            values["thumbnail_url"] = update.thumbnail_url
        elif new == JobState.FAILED:
            values["error_code"] = update.error_code or ErrorCode.TRANSCODER_ERROR.value
            values["error_message"] = update.error_message

        if reopening:
            values["reopen_count"] = job.reopen_count + 1

        return values

    def _plan_same_state(self, job: JobRow, update: StatusUpdate) -> Optional[Dict[str, Any]]:
        if job.state == JobState.IN_PROGRESS:
            progress = clamp_progress(update.progress_percent)
            # Progress never goes backwards while in progress
            if progress <= job.progress_percent:
                return None
            return {"progress_percent": progress}

        if job.state == JobState.FAILED:
            error_code = update.error_code or job.error_code
            error_message = update.error_message or job.error_message
            if (error_code, error_message) == (job.error_code, job.error_message):
                return None
            return {"error_code": error_code, "error_message": error_message}

        return None


# Module-level singleton for convenience (stateless)
job_state_machine = JobStateMachine()
