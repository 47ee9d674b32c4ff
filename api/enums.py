"""
Centralized enums used throughout the application.
Using str-based enums for database and JSON compatibility.
"""

from enum import Enum


class AspectClass(str, Enum):
    """Coarse width:height bucket of a video stream, used as the storage key prefix."""

    LANDSCAPE = "landscape"  # ~16:9
    PORTRAIT = "portrait"  # ~9:16
    OTHER = "other"


class ThumbnailStoragePolicy(str, Enum):
    """Where thumbnail bytes live. Exactly one policy is active per deployment."""

    MEMORY = "memory"  # process-local, lost on restart
    DATA_URL = "data_url"  # inlined on the video row
    FILESYSTEM = "filesystem"  # assets directory served at /assets


class VideoStorageBackend(str, Enum):
    """Durable object storage for published videos."""

    S3 = "s3"
    LOCAL = "local"
