"""
Audit logging for administrative actions.

Every catalog mutation made through the admin API is written as one JSON line
to a rotating file, so who changed what can be reconstructed later.
"""

import json
import logging
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
    TEST_MODE,
)

# Ensure log directory exists (skip in test mode)
if not TEST_MODE and AUDIT_LOG_ENABLED:
    try:
        AUDIT_LOG_PATH.parent.mkdir(parents=True, exist_ok=True)
    except PermissionError:
        pass  # Will fall back to console logging


class AuditAction(str, Enum):
    """Audit action types for categorization."""

    # Video actions
    VIDEO_CREATE = "video_create"
    VIDEO_UPDATE = "video_update"
    VIDEO_DELETE = "video_delete"
    VIDEO_TAGS_UPDATE = "video_tags_update"

    # Uploads
    VIDEO_UPLOAD = "video_upload"
    THUMBNAIL_UPLOAD = "thumbnail_upload"

    # Category actions
    CATEGORY_CREATE = "category_create"
    CATEGORY_UPDATE = "category_update"
    CATEGORY_DELETE = "category_delete"

    # Tag actions
    TAG_CREATE = "tag_create"
    TAG_UPDATE = "tag_update"
    TAG_DELETE = "tag_delete"

    # User actions
    USER_ROLE_UPDATE = "user_role_update"
    USER_DELETE = "user_delete"


class AuditLogger:
    """
    Structured audit logger for administrative actions.

    Logs events in JSON format for easy parsing and analysis.
    Falls back to console logging if file logging is unavailable.
    """

    def __init__(self):
        self.logger = logging.getLogger("showcase.audit")
        self.logger.setLevel(getattr(logging, AUDIT_LOG_LEVEL, logging.INFO))
        self.logger.propagate = False  # Don't propagate to root logger

        if not self.logger.handlers:
            self._setup_handlers()

    def _setup_handlers(self):
        formatter = logging.Formatter("%(message)s")  # Raw JSON output

        if AUDIT_LOG_ENABLED and not TEST_MODE:
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
        actor_id: Optional[int] = None,
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
        if actor_id is not None:
            entry["actor_id"] = actor_id
        if client_ip:
            entry["client_ip"] = client_ip
        if user_agent:
            entry["user_agent"] = truncate_string(user_agent, ERROR_DETAIL_MAX_LENGTH)
        if resource_type:
            entry["resource_type"] = resource_type
        if resource_id is not None:
            entry["resource_id"] = resource_id
        if resource_name:
            entry["resource_name"] = resource_name
        if details:
            entry["details"] = details
        if error:
            entry["error"] = truncate_string(error, ERROR_DETAIL_MAX_LENGTH)
        return entry

    def log(self, action: AuditAction, **fields):
        """
        Log an audit event.

        Args:
            action: The type of action being performed
            **fields: actor_id, client_ip, user_agent, resource_type, resource_id,
                resource_name, details, success, error, request_id
        """
        if not AUDIT_LOG_ENABLED:
            return

        entry = self.build_entry(action, **fields)
        try:
            self.logger.info(json.dumps(entry, default=str))
        except (TypeError, ValueError, OSError) as e:
            # Audit failures must not fail the admin request
            logging.getLogger(__name__).error(f"Failed to write audit entry for {action.value}: {e}")


# Singleton instance for use across the application
audit_logger = AuditLogger()


def log_audit(
    action: AuditAction,
    actor_id: Optional[int] = None,
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
            AuditAction.VIDEO_CREATE,
            actor_id=user["id"],
            client_ip=get_real_ip(request),
            resource_type="video",
            resource_id=video_id,
            resource_name=slug,
            request_id=get_request_id(request),
        )
    """
    audit_logger.log(
        action,
        actor_id=actor_id,
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
