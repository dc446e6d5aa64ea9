"""
Centralized enums for status values used throughout the application.
Using str-based enums for database compatibility.
"""

from enum import Enum


class VideoStatus(str, Enum):
    """Lifecycle of an ingested source video."""

    UPLOADED = "uploaded"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class ProfileStatus(str, Enum):
    """Lifecycle of one rendition of a video."""

    PENDING = "pending"
    QUEUED = "queued"  # Claimed for a queue entry; guards against double-enqueue
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class JobStatus(str, Enum):
    """Lifecycle of one (video, profile) encoding attempt."""

    QUEUED = "queued"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class Resolution(str, Enum):
    """Resolution labels with a fixed frame size."""

    P720 = "720p"
    P480 = "480p"
    P360 = "360p"
