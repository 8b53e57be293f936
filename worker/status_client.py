"""HTTP client for the external transcoding service's status endpoint."""

import logging
from typing import Any, Dict, Optional

import httpx

from api.enums import JobState
from api.errors import PermanentError, TransientError, ValidationError
from api.job_state import EXTERNAL_GONE_STATES, StatusUpdate, clamp_progress, map_external_state
from config import STATUS_REQUEST_TIMEOUT, TRANSCODER_API_TOKEN, TRANSCODER_API_URL

logger = logging.getLogger(__name__)

# Status codes meaning the external service does not know the job
GONE_STATUS_CODES = frozenset({404, 410})


def _optional_float(value: Any) -> Optional[float]:
    if value is None:
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    # The provider reports -1 while the duration is still unknown
    return number if number >= 0 else None


def parse_status_payload(payload: Dict[str, Any], external_id: str = "") -> StatusUpdate:
    """
    Build a StatusUpdate from a status response body.

    Accepts both the flat form
    ``{state, progressPercent, errorCode, errorMessage, durationSeconds, playback}``
    and the provider envelope
    ``{result: {status: {state, pctComplete, errorReasonCode, errorReasonText},
    duration, readyToStream, playback: {hls, dash}, thumbnail}}``.

    Raises:
        PermanentError: the body says the job is deleted or unknown
        ValidationError: the body has no recognizable state
    """
    if not isinstance(payload, dict):
        raise ValidationError("Status response is not a JSON object")

    body = payload.get("result") if isinstance(payload.get("result"), dict) else payload
    status = body.get("status") if isinstance(body.get("status"), dict) else {}

    raw_state = status.get("state") or body.get("state")
    if isinstance(raw_state, str) and raw_state.strip().lower() in EXTERNAL_GONE_STATES:
        raise PermanentError(f"Transcoding service reports job as {raw_state}", external_id=external_id)

    state = map_external_state(raw_state)

    progress = body.get("progressPercent")
    if progress is None:
        progress = status.get("pctComplete")

    playback = body.get("playback") if isinstance(body.get("playback"), dict) else {}

    update = StatusUpdate(
        state=state,
        progress_percent=clamp_progress(progress),
        error_code=body.get("errorCode") or status.get("errorReasonCode"),
        error_message=body.get("errorMessage") or status.get("errorReasonText"),
        duration_seconds=_optional_float(body.get("durationSeconds", body.get("duration"))),
        playback_hls_url=playback.get("hls"),
        playback_dash_url=playback.get("dash"),
        thumbnail_url=body.get("thumbnail"),
    )

    # "ready" without a playable stream is still finishing up
    if state == JobState.READY and body.get("readyToStream") is False:
        update.state = JobState.IN_PROGRESS
        update.progress_percent = 100

    return update


class ExternalStatusClient:
    """
    Thin adapter over ``GET {base_url}/status?id=<externalId>``.

    One request per call; retrying is the caller's decision, guided by the
    error type.
    """

    def __init__(
        self,
        base_url: str = TRANSCODER_API_URL,
        api_token: str = TRANSCODER_API_TOKEN,
        timeout: float = STATUS_REQUEST_TIMEOUT,
    ):
        """
        Args:
            base_url: Base URL of the transcoding service
            api_token: Bearer token, empty for none
            timeout: Per-call timeout in seconds; a timeout is a TransientError
        """
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.headers = {"Accept": "application/json"}
        if api_token:
            self.headers["Authorization"] = f"Bearer {api_token}"
        self._client: Optional[httpx.AsyncClient] = None

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create the HTTP client with connection pooling."""
        if self._client is None or self._client.is_closed:
            limits = httpx.Limits(
                max_connections=20,
                max_keepalive_connections=10,
                keepalive_expiry=30.0,
            )
            self._client = httpx.AsyncClient(timeout=self.timeout, limits=limits)
        return self._client

    async def fetch_status(self, external_id: str) -> StatusUpdate:
        """
        Fetch the current state of one external job.

        Raises:
            TransientError: connection problems, timeouts, 429/5xx, unreadable bodies
            PermanentError: the service does not know the job (404/410 or a deleted state)
        """
        client = await self._get_client()
        url = f"{self.base_url}/status"

        try:
            resp = await client.get(url, params={"id": external_id}, headers=self.headers, timeout=self.timeout)
        except httpx.TimeoutException as e:
            raise TransientError(f"Status request for {external_id} timed out after {self.timeout}s") from e
        except httpx.RequestError as e:
            raise TransientError(f"Status request for {external_id} failed: {e}") from e

        if resp.status_code in GONE_STATUS_CODES:
            raise PermanentError(
                f"Transcoding service does not know job {external_id} (HTTP {resp.status_code})",
                external_id=external_id,
            )
        if resp.status_code >= 400:
            # 429 and 5xx are expected to clear up; other 4xx are logged loudly but
            # still left for a later cycle rather than failing the job
            if resp.status_code < 500 and resp.status_code != 429:
                logger.warning(f"Unexpected HTTP {resp.status_code} from status endpoint for {external_id}")
            raise TransientError(
                f"Status request for {external_id} returned HTTP {resp.status_code}",
                status_code=resp.status_code,
            )

        try:
            payload = resp.json()
        except ValueError as e:
            raise TransientError(f"Unreadable status response for {external_id}") from e

        try:
            return parse_status_payload(payload, external_id)
        except ValidationError as e:
            raise TransientError(f"Unexpected status response for {external_id}: {e}") from e

    async def close(self) -> None:
        """Close the HTTP client."""
        if self._client is not None and not self._client.is_closed:
            await self._client.aclose()
        self._client = None
