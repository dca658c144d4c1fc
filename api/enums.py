"""
Centralized enums for values used throughout the application.
Using str-based enums so they serialize as plain strings.
"""

from enum import Enum


class StorageMode(str, Enum):
    """Where newly uploaded videos end up."""

    CLOUD = "cloud"  # Google Cloud Storage bucket
    LOCAL = "local"  # UPLOADS_DIR, served under /uploads


class UploadMode(str, Enum):
    """How a video reached the server."""

    DIRECT = "direct"  # Browser PUT to a signed URL, then metadata POST
    PROXY = "proxy"  # Multipart upload through the API


class VoteAction(str, Enum):
    """Vote operations, used for metrics and audit entries."""

    CAST = "cast"
    REMOVE = "remove"
    RESET = "reset"
