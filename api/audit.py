"""
Audit logging for operator actions.

Every manual trigger on the admin API (poll, retry, status check, history
reset) is written as one JSON line to a rotating log file.
"""

import json
import logging
import os
from datetime import datetime, timezone
from enum import Enum
from logging.handlers import RotatingFileHandler
from typing import Any, Optional

from api.errors import truncate_error
from config import (
    AUDIT_LOG_BACKUP_COUNT,
    AUDIT_LOG_ENABLED,
    AUDIT_LOG_LEVEL,
    AUDIT_LOG_MAX_BYTES,
    AUDIT_LOG_PATH,
)

# Ensure log directory exists (skip in test mode)
if not os.environ.get("REELWATCH_TEST_MODE") and AUDIT_LOG_ENABLED:
    try:
        AUDIT_LOG_PATH.parent.mkdir(parents=True, exist_ok=True)
    except PermissionError:
        pass  # Will fall back to console logging

# User agents are bounded separately from error text
USER_AGENT_MAX_LENGTH = 200


class AuditAction(str, Enum):
    """Audit action types for categorization."""

    JOB_CREATE = "job_create"
    JOB_EXTERNAL_ID_ATTACH = "job_external_id_attach"
    POLL_TRIGGER = "poll_trigger"
    JOB_RETRY = "job_retry"
    JOB_RETRY_ALL = "job_retry_all"
    RETRY_HISTORY_CLEAR = "retry_history_clear"
    STATUS_CHECK = "status_check"
    BATCH_STATUS_CHECK = "batch_status_check"


class AuditLogger:
    """
    Structured audit logger for operator actions.

    Logs events in JSON format for easy parsing and analysis.
    Falls back to console logging if file logging is unavailable.
    """

    def __init__(self):
        self.logger = logging.getLogger("reelwatch.audit")
        self.logger.setLevel(getattr(logging, AUDIT_LOG_LEVEL, logging.INFO))
        self.logger.propagate = False

        if not self.logger.handlers:
            self._setup_handlers()

    def _setup_handlers(self):
        formatter = logging.Formatter("%(message)s")  # Raw JSON output

        if AUDIT_LOG_ENABLED and not os.environ.get("REELWATCH_TEST_MODE"):
            try:
                file_handler = RotatingFileHandler(
                    AUDIT_LOG_PATH,
                    maxBytes=AUDIT_LOG_MAX_BYTES,
                    backupCount=AUDIT_LOG_BACKUP_COUNT,
                    encoding="utf-8",
                )
                file_handler.setFormatter(formatter)
                self.logger.addHandler(file_handler)
            except (PermissionError, OSError):
                console_handler = logging.StreamHandler()
                console_handler.setFormatter(formatter)
                self.logger.addHandler(console_handler)
        else:
            self.logger.addHandler(logging.NullHandler())

    def build_entry(
        self,
        action: AuditAction,
        client_ip: Optional[str] = None,
        user_agent: Optional[str] = None,
        resource_type: Optional[str] = None,
        resource_id: Optional[Any] = None,
        details: Optional[dict] = None,
        success: bool = True,
        error: Optional[str] = None,
        request_id: Optional[str] = None,
    ) -> dict:
        entry = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "action": action.value,
            "success": success,
        }

        if request_id:
            entry["request_id"] = request_id
        if client_ip:
            entry["client_ip"] = client_ip
        if user_agent:
            entry["user_agent"] = truncate_error(user_agent, USER_AGENT_MAX_LENGTH)
        if resource_type:
            entry["resource_type"] = resource_type
        if resource_id is not None:
            entry["resource_id"] = resource_id
        if details:
            entry["details"] = details
        if error:
            entry["error"] = truncate_error(error)
        return entry

    def log(self, action: AuditAction, **kwargs):
        """
        Log an audit event.

        Args:
            action: The type of action being performed
            **kwargs: client_ip, user_agent, resource_type, resource_id,
                details, success, error, request_id
        """
        if not AUDIT_LOG_ENABLED:
            return

        entry = self.build_entry(action, **kwargs)
        try:
            self.logger.info(json.dumps(entry, default=str))
        except (TypeError, ValueError, OSError) as e:
            # Never let audit logging break the request
            logging.getLogger(__name__).warning(f"Failed to write audit entry for {action.value}: {e}")


# Singleton instance for use across the application
audit_logger = AuditLogger()


def log_audit(
    action: AuditAction,
    client_ip: Optional[str] = None,
    user_agent: Optional[str] = None,
    resource_type: Optional[str] = None,
    resource_id: Optional[Any] = None,
    details: Optional[dict] = None,
    success: bool = True,
    error: Optional[str] = None,
    request_id: Optional[str] = None,
):
    """
    Convenience function for logging audit events.

    Example usage:
        log_audit(
            AuditAction.JOB_RETRY,
            client_ip=get_real_ip(request),
            resource_type="job",
            resource_id=job_id,
            details={"max_retries": 3},
            request_id=get_request_id(request),
        )
    """
    audit_logger.log(
        action,
        client_ip=client_ip,
        user_agent=user_agent,
        resource_type=resource_type,
        resource_id=resource_id,
        details=details,
        success=success,
        error=error,
        request_id=request_id,
    )
