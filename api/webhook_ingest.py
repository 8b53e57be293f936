"""
Webhook ingestion for push notifications from the transcoding service.

Deliveries can be dropped, delayed, duplicated or garbled. Once the signature
checks out, nothing here raises: every payload ends up applied, recognized as
redundant, or logged and discarded, and the sender always gets a 2xx.
"""

import hashlib
import hmac
import json
import logging
from enum import Enum
from typing import Optional

from pydantic import ValidationError as PydanticValidationError

from api.enums import JobState, UpdateSource
from api.errors import ValidationError
from api.job_state import StatusUpdate, clamp_progress, map_external_state
from api.job_store import JobStore, job_store
from api.metrics import WEBHOOKS_RECEIVED_TOTAL
from api.reconciliation import apply_status
from api.schemas import TranscoderWebhookPayload
from config import TRANSCODER_WEBHOOK_SECRET

logger = logging.getLogger(__name__)


class IngestOutcome(str, Enum):
    """What happened to one webhook delivery."""

    APPLIED = "applied"
    NOOP = "noop"
    UNRESOLVED = "unresolved"
    INVALID = "invalid"
    ERROR = "error"


def generate_signature(payload: bytes, secret: str) -> str:
    """Generate HMAC-SHA256 signature for a raw webhook body.

    Returns:
        Signature in format "sha256=<hex_digest>"
    """
    signature = hmac.new(secret.encode("utf-8"), payload, hashlib.sha256).hexdigest()
    return f"sha256={signature}"


def verify_signature(payload: bytes, signature: Optional[str], secret: str) -> bool:
    """Verify a webhook signature header (with or without the "sha256=" prefix)."""
    if not signature or not secret:
        return False
    signature = signature.strip()
    if not signature.startswith("sha256="):
        signature = f"sha256={signature}"
    expected = generate_signature(payload, secret)
    return hmac.compare_digest(expected, signature)


def parse_webhook_payload(body: bytes) -> TranscoderWebhookPayload:
    """
    Decode and validate a webhook body.

    Raises:
        ValidationError: body is not JSON or does not match the payload schema
    """
    try:
        data = json.loads(body)
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        raise ValidationError(f"Webhook body is not valid JSON: {e}") from e
    if not isinstance(data, dict):
        raise ValidationError("Webhook body is not a JSON object")
    try:
        return TranscoderWebhookPayload.model_validate(data)
    except PydanticValidationError as e:
        raise ValidationError(f"Webhook payload rejected: {e.error_count()} validation error(s)") from e


def payload_to_update(payload: TranscoderWebhookPayload) -> StatusUpdate:
    """Translate a validated payload into a StatusUpdate (raises ValidationError on unknown states)."""
    state = map_external_state(payload.state)
    update = StatusUpdate(
        state=state,
        progress_percent=clamp_progress(payload.progress),
        error_code=payload.error.code if payload.error else None,
        error_message=payload.error.message if payload.error else None,
        duration_seconds=payload.duration_seconds,
        playback_hls_url=payload.playback.hls if payload.playback else None,
        playback_dash_url=payload.playback.dash if payload.playback else None,
        thumbnail_url=payload.thumbnail,
    )
    if state == JobState.READY and payload.ready_to_stream is False:
        update.state = JobState.IN_PROGRESS
        update.progress_percent = 100
    return update


class WebhookIngestor:
    """Verifies, parses and applies webhook deliveries."""

    def __init__(self, store: Optional[JobStore] = None, secret: Optional[str] = None):
        self._store = store
        self._secret = secret

    @property
    def store(self) -> JobStore:
        return self._store or job_store

    @property
    def secret(self) -> str:
        return self._secret if self._secret is not None else TRANSCODER_WEBHOOK_SECRET

    @property
    def is_configured(self) -> bool:
        return bool(self.secret)

    def verify(self, body: bytes, signature: Optional[str]) -> bool:
        return verify_signature(body, signature, self.secret)

    async def ingest(self, body: bytes) -> IngestOutcome:
        """
        Apply one (already authenticated) webhook body.

        Never raises; the outcome is returned for logging and metrics only.
        """
        outcome = await self._ingest(body)
        WEBHOOKS_RECEIVED_TOTAL.labels(result=outcome.value).inc()
        return outcome

    async def _ingest(self, body: bytes) -> IngestOutcome:
        try:
            payload = parse_webhook_payload(body)
            update = payload_to_update(payload)
        except ValidationError as e:
            logger.warning(f"Discarding malformed webhook: {e}")
            return IngestOutcome.INVALID

        try:
            job = await self.store.get_job_by_external_id(payload.external_id)
            if job is None:
                # May predate tracking or belong to another tenant
                logger.info(f"Discarding webhook for untracked external id {payload.external_id}")
                return IngestOutcome.UNRESOLVED

            result = await apply_status(job, update, UpdateSource.WEBHOOK, store=self.store)
        except Exception as e:
            logger.exception(f"Failed to apply webhook for external id {payload.external_id}: {e}")
            return IngestOutcome.ERROR

        if result.applied:
            return IngestOutcome.APPLIED
        logger.debug(
            f"Webhook for job {job.id} was redundant "
            f"(stored {job.state.value}, reported {update.state.value})"
        )
        return IngestOutcome.NOOP


# Application-wide ingestor
webhook_ingestor = WebhookIngestor()
