"""
Audit logging for uploads, votes and moderation.

Entries are written as one JSON object per line so they can be grepped or
shipped to a log pipeline without parsing free text.
"""

import json
import logging
import os
from datetime import datetime, timezone
from enum import Enum
from logging.handlers import RotatingFileHandler
from typing import Any, Optional

from api.errors import truncate_string
from config import (
    AUDIT_LOG_BACKUP_COUNT,
    AUDIT_LOG_ENABLED,
    AUDIT_LOG_LEVEL,
    AUDIT_LOG_MAX_BYTES,
    AUDIT_LOG_PATH,
    ERROR_DETAIL_MAX_LENGTH,
)

logger = logging.getLogger(__name__)

if not os.environ.get("VOTELY_TEST_MODE") and AUDIT_LOG_ENABLED:
    try:
        AUDIT_LOG_PATH.parent.mkdir(parents=True, exist_ok=True)
    except PermissionError as e:
        logger.warning(f"Cannot create audit log directory, using console logging: {e}")


class AuditAction(str, Enum):
    """Audit action types for categorization."""

    VIDEO_UPLOAD = "video_upload"
    VIDEO_VISIBILITY = "video_visibility"
    VIDEO_DELETE = "video_delete"

    VOTE_CAST = "vote_cast"
    VOTE_REMOVE = "vote_remove"
    VOTES_RESET = "votes_reset"

    USER_LOGIN = "user_login"


class AuditLogger:
    """
    Structured audit logger.

    Falls back to console logging if the log file can't be opened.
    """

    def __init__(self, enabled: bool = AUDIT_LOG_ENABLED):
        self.enabled = enabled
        self.logger = logging.getLogger("votely.audit")
        self.logger.setLevel(getattr(logging, AUDIT_LOG_LEVEL, logging.INFO))
        self.logger.propagate = False

        if not self.logger.handlers:
            self._setup_handlers()

    def _setup_handlers(self):
        formatter = logging.Formatter("%(message)s")  # Raw JSON output

        if self.enabled:
            try:
                file_handler = RotatingFileHandler(
                    AUDIT_LOG_PATH,
                    maxBytes=AUDIT_LOG_MAX_BYTES,
                    backupCount=AUDIT_LOG_BACKUP_COUNT,
                    encoding="utf-8",
                )
                file_handler.setFormatter(formatter)
                self.logger.addHandler(file_handler)
            except OSError:
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
        resource_name: Optional[str] = None,
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
            entry["user_agent"] = truncate_string(user_agent, ERROR_DETAIL_MAX_LENGTH)
        if resource_type:
            entry["resource_type"] = resource_type
        if resource_id is not None:
            entry["resource_id"] = resource_id
        if resource_name:
            entry["resource_name"] = truncate_string(resource_name, ERROR_DETAIL_MAX_LENGTH)
        if details:
            entry["details"] = details
        if error:
            entry["error"] = truncate_string(error, ERROR_DETAIL_MAX_LENGTH)
        return entry

    def log(self, action: AuditAction, **fields):
        """
        Log an audit event.

        Accepts the keyword arguments of build_entry (client_ip, user_agent,
        resource_type, resource_id, resource_name, details, success, error,
        request_id).
        """
        if not self.enabled:
            return

        entry = self.build_entry(action, **fields)
        try:
            self.logger.info(json.dumps(entry, default=str))
        except (TypeError, ValueError, OSError) as e:
            # A broken audit sink must not fail the request it describes
            logger.warning(f"Failed to write audit entry for {action.value}: {e}")


audit_logger = AuditLogger()


def log_audit(
    action: AuditAction,
    client_ip: Optional[str] = None,
    user_agent: Optional[str] = None,
    resource_type: Optional[str] = None,
    resource_id: Optional[Any] = None,
    resource_name: Optional[str] = None,
    details: Optional[dict] = None,
    success: bool = True,
    error: Optional[str] = None,
    request_id: Optional[str] = None,
):
    """
    Convenience function for logging audit events.

    Example usage:
        log_audit(
            AuditAction.VIDEO_DELETE,
            client_ip=get_real_ip(request),
            resource_type="video",
            resource_id=video_id,
            resource_name=title,
            request_id=get_request_id(request),
        )
    """
    audit_logger.log(
        action,
        client_ip=client_ip,
        user_agent=user_agent,
        resource_type=resource_type,
        resource_id=resource_id,
        resource_name=resource_name,
        details=details,
        success=success,
        error=error,
        request_id=request_id,
    )
