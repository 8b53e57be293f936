"""
Centralized enums for status values used throughout the application.
Using str-based enums for database compatibility.
"""

from enum import Enum


class JobState(str, Enum):
    """Local lifecycle state of a tracked transcoding job."""

    QUEUED = "queued"
    IN_PROGRESS = "in_progress"
    READY = "ready"
    FAILED = "failed"


class ErrorCode(str, Enum):
    """Error codes recorded by this service (the external service supplies its own)."""

    # External service no longer knows the job; retrying will never succeed
    ORPHANED = "orphaned"
    TRANSCODER_ERROR = "transcoder_error"


class UpdateSource(str, Enum):
    """Which path produced a state write (used in logs, audit and metrics)."""

    WEBHOOK = "webhook"
    POLL = "poll"
    RETRY = "retry"
    OPERATOR = "operator"


class NotificationType(str, Enum):
    """Notification templates delivered to the messaging collaborator."""

    JOB_READY = "job_ready"
    JOB_FAILED = "job_failed"
    JOBS_STUCK = "jobs_stuck"
