"""
Error taxonomy and error-message helpers.

TransientError and PermanentError come from the external status client,
ValidationError from webhook parsing, ConcurrencyConflict from the job store's
conditional write. None of them should ever reach an HTTP caller as a 500.
"""
import logging
import re
from typing import Optional

from config import ERROR_DETAIL_MAX_LENGTH

logger = logging.getLogger(__name__)


class ReconciliationError(Exception):
    """Base class for errors raised while reconciling job state."""

    def __init__(self, message: str = ""):
        self.message = message
        super().__init__(message)


class TransientError(ReconciliationError):
    """Network failure, timeout, 429 or 5xx from the external service. Retry later."""

    def __init__(self, message: str = "", status_code: Optional[int] = None):
        self.status_code = status_code
        super().__init__(message)


class PermanentError(ReconciliationError):
    """The external service reports the job as unknown or deleted."""

    def __init__(self, message: str = "", external_id: Optional[str] = None):
        self.external_id = external_id
        super().__init__(message)


class ValidationError(ReconciliationError):
    """Malformed webhook payload."""


class ConcurrencyConflict(ReconciliationError):
    """Conditional write lost the race against another writer (stale version)."""

    def __init__(self, job_id: int, expected_version: int):
        self.job_id = job_id
        self.expected_version = expected_version
        super().__init__(f"Job {job_id} changed since version {expected_version}")


def truncate_error(message: Optional[str], max_length: int = ERROR_DETAIL_MAX_LENGTH) -> Optional[str]:
    """Truncate error text before it is stored or returned."""
    if message is None:
        return None
    if len(message) <= max_length:
        return message
    return message[: max_length - 3] + "..."


# Patterns that indicate internal details
INTERNAL_PATTERNS = [
    r'/home/\w+/',           # Home directory paths
    r'/var/\w+/',            # Var paths
    r'line \d+',             # Line numbers in stack traces
    r'File "[^"]+\.py"',     # Python file paths
    r'UNIQUE constraint failed',   # Database internals
    r'sqlite3?\.',           # SQLite details
    r'asyncpg\.',            # PostgreSQL driver details
    r'https?://\S+',         # URLs (may carry tokens)
]

ERROR_MESSAGES = {
    "database": "A database error occurred. Please try again.",
    "transcoder": "The transcoding service could not be reached. Please try again later.",
    "general": "An error occurred while processing your request. Please try again.",
}


def sanitize_error_message(
    error: Optional[str],
    log_original: bool = True,
    context: str = ""
) -> Optional[str]:
    """
    Sanitize an error message for safe display to API clients.

    Args:
        error: The original error message (may contain internal details)
        log_original: Whether to log the original message before sanitizing
        context: Additional context for logging (e.g., "job_id=123")

    Returns:
        A sanitized, user-friendly error message, or None if input was None
    """
    if error is None:
        return None

    if log_original and error:
        log_msg = "Original error"
        if context:
            log_msg += f" ({context})"
        log_msg += f": {error}"
        logger.warning(log_msg)

    error_lower = error.lower()

    if "sqlite" in error_lower or "database" in error_lower or "constraint" in error_lower:
        return ERROR_MESSAGES["database"]

    if "connect" in error_lower or "timed out" in error_lower or "timeout" in error_lower:
        return ERROR_MESSAGES["transcoder"]

    for pattern in INTERNAL_PATTERNS:
        if re.search(pattern, error, re.IGNORECASE):
            return ERROR_MESSAGES["general"]

    # Short messages without path-like segments are safe to pass through
    if len(error) < 100 and "/" not in error and "\\" not in error:
        return error

    return ERROR_MESSAGES["general"]
