"""
Tests for standardized exception handling utilities and the error taxonomy.
"""

import logging

import pytest
from fastapi import HTTPException

from api.db_retry import DatabaseRetryableError
from api.errors import (
    ERROR_MESSAGES,
    ConcurrencyConflict,
    PermanentError,
    ReconciliationError,
    TransientError,
    ValidationError,
    sanitize_error_message,
    truncate_error,
)
from api.exception_utils import handle_api_exceptions, log_and_raise_http_exception


class TestHandleAPIExceptions:
    """Test the handle_api_exceptions decorator."""

    async def test_reraises_http_exception(self):
        """HTTPExceptions should always be re-raised."""
        @handle_api_exceptions("test_operation")
        async def failing_func():
            raise HTTPException(status_code=404, detail="Not found")

        with pytest.raises(HTTPException) as exc_info:
            await failing_func()

        assert exc_info.value.status_code == 404
        assert exc_info.value.detail == "Not found"

    async def test_reraises_database_retryable_error(self):
        """Lock exhaustion is left for the app-level 503 handler."""
        @handle_api_exceptions("test_operation")
        async def failing_func():
            raise DatabaseRetryableError("database is locked")

        with pytest.raises(DatabaseRetryableError):
            await failing_func()

    async def test_transient_error_becomes_502(self):
        @handle_api_exceptions("check_status")
        async def failing_func():
            raise TransientError("connection refused by https://transcoder.internal/v1?token=abc")

        with pytest.raises(HTTPException) as exc_info:
            await failing_func()

        assert exc_info.value.status_code == 502
        assert "token" not in exc_info.value.detail

    async def test_converts_generic_exception_to_http(self):
        """Generic exceptions should be converted to HTTPException."""
        @handle_api_exceptions("test_operation", "Operation failed", 500)
        async def failing_func():
            raise ValueError("Some internal error")

        with pytest.raises(HTTPException) as exc_info:
            await failing_func()

        assert exc_info.value.status_code == 500
        assert exc_info.value.detail == "Operation failed"

    async def test_logs_exception(self, caplog):
        """Should log exceptions when log_errors=True."""
        @handle_api_exceptions("test_operation", "Error occurred", 500, log_errors=True)
        async def failing_func():
            raise ValueError("Internal error")

        with caplog.at_level(logging.ERROR):
            with pytest.raises(HTTPException):
                await failing_func()

        assert "Unexpected error in test_operation" in caplog.text

    async def test_no_logging_when_disabled(self, caplog):
        @handle_api_exceptions("quiet_operation", log_errors=False)
        async def failing_func():
            raise ValueError("Internal error")

        with caplog.at_level(logging.ERROR):
            with pytest.raises(HTTPException):
                await failing_func()

        assert "quiet_operation" not in caplog.text

    async def test_success_passthrough(self):
        @handle_api_exceptions("test_operation")
        async def ok(value):
            return {"value": value}

        assert await ok(3) == {"value": 3}


class TestLogAndRaiseHTTPException:
    """Test the log_and_raise_http_exception helper."""

    def test_raises_with_detail(self, caplog):
        with caplog.at_level(logging.WARNING):
            with pytest.raises(HTTPException) as exc_info:
                log_and_raise_http_exception(ValueError("taken"), 409, "taken", "attach_external_id", "warning")

        assert exc_info.value.status_code == 409
        assert exc_info.value.detail == "taken"
        assert "Error in attach_external_id: taken" in caplog.text

    def test_unknown_log_level_falls_back(self):
        with pytest.raises(HTTPException):
            log_and_raise_http_exception(ValueError("x"), 400, "bad", log_level="nonsense")


class TestErrorTaxonomy:
    """Tests for the reconciliation error classes."""

    def test_hierarchy(self):
        for cls in (TransientError, PermanentError, ValidationError):
            assert issubclass(cls, ReconciliationError)
        assert isinstance(ConcurrencyConflict(1, 2), ReconciliationError)

    def test_transient_carries_status(self):
        err = TransientError("rate limited", status_code=429)
        assert err.status_code == 429
        assert err.message == "rate limited"

    def test_permanent_carries_external_id(self):
        assert PermanentError("gone", external_id="ext-9").external_id == "ext-9"

    def test_concurrency_conflict_message(self):
        err = ConcurrencyConflict(5, 3)
        assert err.job_id == 5
        assert err.expected_version == 3
        assert str(err) == "Job 5 changed since version 3"


class TestTruncateError:
    def test_none(self):
        assert truncate_error(None) is None

    def test_short_message_unchanged(self):
        assert truncate_error("boom") == "boom"

    def test_long_message_truncated(self):
        result = truncate_error("x" * 1000)
        assert len(result) == 500
        assert result.endswith("...")

    def test_custom_length(self):
        assert truncate_error("abcdefghij", max_length=6) == "abc..."


class TestSanitizeErrorMessage:
    def test_none(self):
        assert sanitize_error_message(None) is None

    def test_database_details_hidden(self):
        assert sanitize_error_message("UNIQUE constraint failed: jobs.external_id") == ERROR_MESSAGES["database"]

    def test_network_details_hidden(self):
        assert sanitize_error_message("Connection timed out", log_original=False) == ERROR_MESSAGES["transcoder"]

    def test_paths_hidden(self):
        message = 'File "/srv/reelwatch/api/job_store.py", line 12'
        assert sanitize_error_message(message, log_original=False) == ERROR_MESSAGES["general"]

    def test_short_safe_message_passes_through(self):
        assert sanitize_error_message("Job is not in a retryable state", log_original=False) == (
            "Job is not in a retryable state"
        )

    def test_logs_original_with_context(self, caplog):
        with caplog.at_level(logging.WARNING, logger="api.errors"):
            sanitize_error_message("secret detail", context="job_id=4")
        assert "Original error (job_id=4): secret detail" in caplog.text
