"""
Error handling utilities for sanitizing error messages.

Prevents internal implementation details (bucket names, local paths, driver
messages) from being exposed to API clients while still logging detailed
errors for debugging.
"""
import logging
import re
from typing import Optional

logger = logging.getLogger(__name__)

# Patterns that indicate internal details
INTERNAL_PATTERNS = [
    r'/home/\w+/',           # Home directory paths
    r'/mnt/\w+/',            # Mount paths
    r'/tmp/\w+',             # Temp paths
    r'/var/\w+/',            # Var paths
    r'line \d+',             # Line numbers in stack traces
    r'File "[^"]+\.py"',     # Python file paths
    r'gs://\S+',             # Bucket object URIs
    r'googleapis\.com/\S+',  # GCS API endpoints
    r'Permission denied',    # System errors
    r'No such file or directory',  # System errors with paths
    r'UNIQUE constraint failed',   # Database internals
    r'sqlite3?\.',           # SQLite details
]

# Generic user-friendly messages for common error types
ERROR_MESSAGES = {
    "storage": "Video storage is temporarily unavailable. Please try again.",
    "credentials": "Cloud storage is not configured for direct uploads.",
    "thumbnail": "Could not generate a thumbnail for this video.",
    "too_large": "The uploaded file is too large.",
    "database": "A database error occurred. Please try again.",
    "permission": "A file access error occurred. Please contact support.",
    "general": "An error occurred while processing your request. Please try again.",
}


def truncate_string(value: Optional[str], max_length: int, suffix: str = "...") -> Optional[str]:
    """Truncate a string to max_length characters, marking the cut with suffix."""
    if value is None:
        return None
    if len(value) <= max_length:
        return value
    if max_length <= len(suffix):
        return value[:max_length]
    return value[: max_length - len(suffix)] + suffix


def truncate_error(error: Optional[str], max_length: int) -> Optional[str]:
    """Truncate an error message, collapsing whitespace first (ffmpeg stderr is multi-line)."""
    if error is None:
        return None
    return truncate_string(" ".join(error.split()), max_length)


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
        context: Additional context for logging (e.g., "video_id=v-123")

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

    if "credential" in error_lower or "signing" in error_lower:
        return ERROR_MESSAGES["credentials"]

    if "bucket" in error_lower or "gcs" in error_lower or "cloud storage" in error_lower:
        return ERROR_MESSAGES["storage"]

    if "ffmpeg" in error_lower or "ffprobe" in error_lower or "thumbnail" in error_lower:
        return ERROR_MESSAGES["thumbnail"]

    if "too large" in error_lower:
        return ERROR_MESSAGES["too_large"]

    if "sqlite" in error_lower or "database" in error_lower or "constraint" in error_lower:
        return ERROR_MESSAGES["database"]

    if "permission" in error_lower:
        return ERROR_MESSAGES["permission"]

    for pattern in INTERNAL_PATTERNS:
        if re.search(pattern, error, re.IGNORECASE):
            return ERROR_MESSAGES["general"]

    # Short messages without path-like segments are safe to pass through
    if len(error) < 100 and "/" not in error and "\\" not in error:
        return error

    return ERROR_MESSAGES["general"]
