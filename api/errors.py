"""
Error types and error message sanitizing.

Prevents internal implementation details from being exposed to API clients
while still logging detailed errors for debugging.
"""
import logging
import re
from typing import Optional

logger = logging.getLogger(__name__)

# Patterns that indicate internal details
INTERNAL_PATTERNS = [
    r'/home/\w+/',           # Home directory paths
    r'/var/\w+/',            # Var paths (storage root, logs)
    r'/tmp/\w+',             # Temp paths
    r'line \d+',             # Line numbers in stack traces
    r'File "[^"]+\.py"',     # Python file paths
    r'Permission denied',    # System errors
    r'No such file or directory',  # System errors with paths
    r'UNIQUE constraint failed',   # SQLite internals
    r'duplicate key value',  # PostgreSQL internals
    r'sqlite3?\.',           # SQLite details
    r'asyncpg\.',            # asyncpg details
    r'Error: .+\.py:\d+',    # Python error traces
]

# Generic user-friendly messages for common error types
ERROR_MESSAGES = {
    "database": "A database error occurred. Please try again.",
    "storage": "File storage is temporarily unavailable. Please try again.",
    "identity": "Sign-in provider is unavailable. Please try again later.",
    "permission": "A file access error occurred. Please contact support.",
    "general": "An error occurred while processing your request. Please try again.",
}


class NotFoundError(Exception):
    """Raised by the data access layer when an entity id or slug does not exist."""

    def __init__(self, resource: str, identifier=None):
        self.resource = resource
        self.identifier = identifier
        super().__init__(f"{resource} not found")


class DuplicateError(Exception):
    """Raised when an insert or update hits a unique constraint."""

    def __init__(self, resource: str, field: str = "name or slug"):
        self.resource = resource
        self.field = field
        super().__init__(f"{resource} with this {field} already exists")


class DatabaseUnavailableError(Exception):
    """Raised when no database is configured or the connection is not open."""

    def __init__(self, message: str = "Database unavailable"):
        self.message = message
        super().__init__(self.message)


def is_unique_violation(exc: Exception, column: Optional[str] = None) -> bool:
    """
    Check whether an exception is a unique constraint violation.

    Works on message text so it covers SQLite ("UNIQUE constraint failed: tags.slug")
    and PostgreSQL ("duplicate key value violates unique constraint ...") alike,
    including exceptions wrapped by the databases library.
    """
    error_str = str(exc).lower()
    if "unique constraint" in error_str or "duplicate key" in error_str:
        if column is None:
            return True
        return column.lower() in error_str
    if exc.__cause__ is not None:
        return is_unique_violation(exc.__cause__, column)
    return False


def truncate_string(value: Optional[str], max_length: int, suffix: str = "...") -> Optional[str]:
    """Truncate a string to max_length characters, marking the cut with suffix."""
    if value is None or len(value) <= max_length:
        return value
    if max_length <= len(suffix):
        return value[:max_length]
    return value[: max_length - len(suffix)] + suffix


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
        context: Additional context for logging (e.g., "video_id=123")

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

    if "storage" in error_lower or ("upload" in error_lower and "failed" in error_lower):
        return ERROR_MESSAGES["storage"]

    if "oauth" in error_lower or "identity" in error_lower:
        return ERROR_MESSAGES["identity"]

    if "permission" in error_lower:
        return ERROR_MESSAGES["permission"]

    for pattern in INTERNAL_PATTERNS:
        if re.search(pattern, error, re.IGNORECASE):
            return ERROR_MESSAGES["general"]

    # Short messages without path-like segments are safe to pass through
    if len(error) < 100 and "/" not in error and "\\" not in error:
        return error

    return ERROR_MESSAGES["general"]


class InvalidOperationError(Exception):
    """Raised when a well-formed request is refused by a catalog rule (mapped to 400)."""

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)
