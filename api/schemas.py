from datetime import datetime
from typing import List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from api.job_state import JobRow
from api.job_store import RetryAttemptRow

# Upper bound for explicit batch status checks
MAX_BATCH_JOBS = 500


class CamelModel(BaseModel):
    """Accepts and emits camelCase keys (the transcoding service and dashboard use them)."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# =============================================================================
# Webhook payload (consumed)
# =============================================================================


class PlaybackInfo(CamelModel):
    hls: Optional[str] = None
    dash: Optional[str] = None


class WebhookError(CamelModel):
    code: Optional[str] = Field(default=None, max_length=64)
    message: Optional[str] = None

    @field_validator("code", mode="before")
    @classmethod
    def coerce_code(cls, v):
        # Numeric codes are common from the provider
        return str(v) if isinstance(v, (int, float)) else v


class TranscoderWebhookPayload(CamelModel):
    external_id: str = Field(..., min_length=1, max_length=128)
    state: str = Field(..., min_length=1, max_length=32)
    progress: Optional[float] = None
    error: Optional[WebhookError] = None
    duration_seconds: Optional[float] = None
    playback: Optional[PlaybackInfo] = None
    thumbnail: Optional[str] = None
    ready_to_stream: Optional[bool] = None

    @field_validator("error", mode="before")
    @classmethod
    def wrap_plain_error(cls, v):
        # Some deliveries send the error as a bare string
        if isinstance(v, str):
            return {"message": v} if v else None
        return v

    @field_validator("progress", mode="before")
    @classmethod
    def parse_progress(cls, v: Union[str, float, int, None]):
        # pctComplete arrives as a string ("45.5")
        if v is None or v == "":
            return None
        return float(v)

    @field_validator("duration_seconds")
    @classmethod
    def drop_unknown_duration(cls, v: Optional[float]) -> Optional[float]:
        return v if v is None or v >= 0 else None


class WebhookAck(BaseModel):
    received: bool = True
    outcome: str


# =============================================================================
# Operator API requests
# =============================================================================


class JobCreate(CamelModel):
    title: str = Field(..., min_length=1, max_length=255)
    external_id: Optional[str] = Field(default=None, min_length=1, max_length=128)


class ExternalIdUpdate(CamelModel):
    external_id: str = Field(..., min_length=1, max_length=128)


class RetryRequest(CamelModel):
    job_id: Optional[int] = Field(default=None, ge=1)
    max_retries: Optional[int] = Field(default=None, ge=1, le=20)


class BatchStatusRequest(CamelModel):
    job_ids: List[int] = Field(..., min_length=1, max_length=MAX_BATCH_JOBS)


# =============================================================================
# Operator API responses
# =============================================================================


class RetryAttemptResponse(CamelModel):
    attempt_number: int
    attempted_at: Optional[datetime]
    success: bool
    error: Optional[str] = None

    @classmethod
    def from_row(cls, row: RetryAttemptRow) -> "RetryAttemptResponse":
        return cls(
            attempt_number=row.attempt_number,
            attempted_at=row.attempted_at,
            success=row.success,
            error=row.error,
        )


class JobResponse(CamelModel):
    id: int
    external_id: Optional[str]
    title: str
    state: str
    progress_percent: int
    error_code: Optional[str] = None
    error_message: Optional[str] = None
    duration_seconds: Optional[float] = None
    playback_hls_url: Optional[str] = None
    playback_dash_url: Optional[str] = None
    thumbnail_url: Optional[str] = None
    reopen_count: int = 0
    version: int
    created_at: Optional[datetime]
    updated_at: Optional[datetime]

    @classmethod
    def from_job(cls, job: JobRow) -> "JobResponse":
        return cls(
            id=job.id,
            external_id=job.external_id,
            title=job.title,
            state=job.state.value,
            progress_percent=job.progress_percent,
            error_code=job.error_code,
            error_message=job.error_message,
            duration_seconds=job.duration_seconds,
            playback_hls_url=job.playback_hls_url,
            playback_dash_url=job.playback_dash_url,
            thumbnail_url=job.thumbnail_url,
            reopen_count=job.reopen_count,
            version=job.version,
            created_at=job.created_at,
            updated_at=job.updated_at,
        )


class JobDetailResponse(JobResponse):
    retry_attempts: List[RetryAttemptResponse] = []


class StuckJobResponse(CamelModel):
    id: int
    title: str
    state: str
    progress: int
    created_at: Optional[datetime]
    updated_at: Optional[datetime]
    external_id: Optional[str]
    expected_threshold_minutes: int

    @classmethod
    def from_job(cls, job: JobRow, expected_threshold_minutes: int) -> "StuckJobResponse":
        return cls(
            id=job.id,
            title=job.title,
            state=job.state.value,
            progress=job.progress_percent,
            created_at=job.created_at,
            updated_at=job.updated_at,
            external_id=job.external_id,
            expected_threshold_minutes=expected_threshold_minutes,
        )


class MonitoringStats(CamelModel):
    total_jobs: int
    queued: int
    in_progress: int
    ready: int
    failed: int
    average_processing_minutes: float


class MonitorResponse(CamelModel):
    success: bool = True
    stats: MonitoringStats
    stuck_jobs: Optional[List[StuckJobResponse]] = None
    stuck_threshold_minutes: Optional[int] = None


class PollErrorResponse(CamelModel):
    job_id: int
    error: str


class PollResponse(CamelModel):
    success: bool = True
    checked: int
    updated: int
    errors: List[PollErrorResponse] = []
    stats: MonitoringStats


class RetryResponse(CamelModel):
    success: bool
    message: str
    job_id: Optional[int] = None
    attempts: Optional[List[RetryAttemptResponse]] = None
    retried_count: Optional[int] = None


class StatusCheckResponse(CamelModel):
    success: bool = True
    job_id: int
    external_id: str
    state: str
    progress_percent: int
    error_code: Optional[str] = None
    error_message: Optional[str] = None
    applied: bool
    job: JobResponse


class BatchStatusResponse(CamelModel):
    success: bool = True
    checked: int
    updated: int
    errors: List[PollErrorResponse] = []
    jobs: List[JobResponse]


class ClearAttemptsResponse(CamelModel):
    success: bool = True
    job_id: int
    cleared: int
