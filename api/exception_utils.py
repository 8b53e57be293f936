"""
Standardized exception handling utilities.

Keeps HTTPExceptions intact, lets database lock errors reach the app-level
503 handler, and turns everything else into a sanitized error response.
"""

import functools
import logging
from typing import Any, Callable, Optional, TypeVar

from fastapi import HTTPException

from api.db_retry import DatabaseRetryableError
from api.errors import TransientError, sanitize_error_message

logger = logging.getLogger(__name__)

T = TypeVar("T")


def handle_api_exceptions(
    operation_name: str,
    error_detail: str = "Internal server error",
    status_code: int = 500,
    log_errors: bool = True,
) -> Callable[[Callable[..., T]], Callable[..., T]]:
    """
    Decorator for standardized exception handling in API endpoints.

    1. HTTPExceptions are always re-raised (never masked)
    2. DatabaseRetryableError is re-raised for the 503 exception handler
    3. TransientError from the external service becomes a 502
    4. Anything else is logged and converted to `status_code` with `error_detail`

    Example:
        @handle_api_exceptions("retry_job", "Failed to retry job", 500)
        async def retry_job(...):
            ...
    """
    def decorator(func: Callable[..., T]) -> Callable[..., T]:
        @functools.wraps(func)
        async def wrapper(*args: Any, **kwargs: Any) -> T:
            try:
                return await func(*args, **kwargs)
            except (HTTPException, DatabaseRetryableError):
                raise
            except TransientError as e:
                if log_errors:
                    logger.warning(f"Transcoding service unavailable during {operation_name}: {e}")
                raise HTTPException(
                    status_code=502,
                    detail=sanitize_error_message(str(e), log_original=False),
                ) from e
            except Exception as e:
                if log_errors:
                    logger.exception(f"Unexpected error in {operation_name}: {e}")
                raise HTTPException(status_code=status_code, detail=error_detail) from e
        return wrapper
    return decorator


def log_and_raise_http_exception(
    exception: Exception,
    status_code: int,
    detail: str,
    operation_name: Optional[str] = None,
    log_level: str = "error",
) -> None:
    """
    Log an exception and raise an HTTPException with sanitized message.

    Example:
        try:
            job = await job_store.attach_external_id(job_id, external_id)
        except ValueError as e:
            log_and_raise_http_exception(e, 409, str(e), "attach_external_id", "warning")
    """
    log_msg = f"Error in {operation_name}: {exception}" if operation_name else str(exception)

    log_func = getattr(logger, log_level, logger.error)
    log_func(log_msg)

    raise HTTPException(status_code=status_code, detail=detail) from exception
