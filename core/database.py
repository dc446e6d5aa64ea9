from datetime import datetime, timezone

import sqlalchemy as sa
from databases import Database

from config import DATABASE_URL, MAX_RETRY_ATTEMPTS

# Create database instance - works with PostgreSQL or SQLite
# PostgreSQL is the default and recommended database
database = Database(DATABASE_URL)
metadata = sa.MetaData()


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


videos = sa.Table(
    "videos",
    metadata,
    sa.Column("id", sa.Integer, primary_key=True),
    sa.Column("original_filename", sa.String(255), nullable=False),
    sa.Column("file_path", sa.String(500), nullable=False),  # Current location of the source file
    sa.Column("file_size", sa.BigInteger, default=0),  # bytes
    sa.Column("duration", sa.Integer, default=0),  # seconds
    sa.Column(
        "status",
        sa.String(20),
        sa.CheckConstraint(
            "status IN ('uploaded', 'processing', 'completed', 'failed')",
            name="ck_videos_status",
        ),
        nullable=False,
        default="uploaded",
    ),
    sa.Column("error_message", sa.Text, nullable=True),
    sa.Column("master_playlist_path", sa.String(500), nullable=True),  # Set once every profile completed
    sa.Column("created_at", sa.DateTime(timezone=True), default=_utcnow),
    sa.Column("updated_at", sa.DateTime(timezone=True), default=_utcnow, onupdate=_utcnow),
    sa.Index("ix_videos_status", "status"),
    sa.Index("ix_videos_original_filename", "original_filename"),
)

# One row per target rendition of a video.
#
# STATE SEMANTICS:
# ----------------
# pending    -> created with the video, never queued
# queued     -> claimed for exactly one queue entry (single-flight guard)
# processing -> a worker owns the matching job and is running the encoder
# completed  -> total_segments and playlist_path are filled in
# failed     -> error_message holds the diagnostic; can be re-queued explicitly
video_profiles = sa.Table(
    "video_profiles",
    metadata,
    sa.Column("id", sa.Integer, primary_key=True),
    sa.Column("video_id", sa.Integer, sa.ForeignKey("videos.id", ondelete="CASCADE"), nullable=False),
    sa.Column("resolution", sa.String(10), nullable=False),  # 720p, 480p, 360p
    sa.Column("codec_video", sa.String(20), nullable=False, default="h264"),
    sa.Column("codec_audio", sa.String(20), nullable=False, default="aac"),
    sa.Column("bitrate", sa.Integer, nullable=False),  # kbps
    sa.Column("audio_bitrate", sa.Integer, nullable=False, default=128),  # kbps
    sa.Column("segment_time", sa.Integer, nullable=False, default=4),  # seconds
    sa.Column("total_segments", sa.Integer, default=0),
    sa.Column("playlist_path", sa.String(500), nullable=True),
    sa.Column(
        "status",
        sa.String(20),
        sa.CheckConstraint(
            "status IN ('pending', 'queued', 'processing', 'completed', 'failed')",
            name="ck_video_profiles_status",
        ),
        nullable=False,
        default="pending",
    ),
    sa.Column(
        "progress_percentage",
        sa.Integer,
        sa.CheckConstraint(
            "progress_percentage >= 0 AND progress_percentage <= 100",
            name="ck_video_profiles_progress_range",
        ),
        default=0,
    ),
    sa.Column("error_message", sa.Text, nullable=True),
    sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
    sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
    sa.Column("created_at", sa.DateTime(timezone=True), default=_utcnow),
    sa.Index("ix_video_profiles_video_id", "video_id"),
    sa.Index("ix_video_profiles_status", "status"),
)

# One row per encoding attempt of a (video, profile) pair.
# priority is recorded for operators but the dispatch queue is FIFO.
# retry_count/max_retries are only consulted by an explicit re-queue.
transcode_jobs = sa.Table(
    "transcode_jobs",
    metadata,
    sa.Column("id", sa.Integer, primary_key=True),
    sa.Column("video_id", sa.Integer, sa.ForeignKey("videos.id", ondelete="CASCADE"), nullable=False),
    sa.Column("profile_id", sa.Integer, sa.ForeignKey("video_profiles.id", ondelete="CASCADE"), nullable=False),
    sa.Column(
        "status",
        sa.String(20),
        sa.CheckConstraint(
            "status IN ('queued', 'processing', 'completed', 'failed')",
            name="ck_transcode_jobs_status",
        ),
        nullable=False,
        default="queued",
    ),
    sa.Column("priority", sa.Integer, nullable=False, default=0),
    sa.Column("retry_count", sa.Integer, nullable=False, default=0),
    sa.Column("max_retries", sa.Integer, nullable=False, default=MAX_RETRY_ATTEMPTS),
    sa.Column("error_message", sa.Text, nullable=True),
    sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
    sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
    sa.Column("created_at", sa.DateTime(timezone=True), default=_utcnow),
    sa.Index("ix_transcode_jobs_video_profile", "video_id", "profile_id"),
    sa.Index("ix_transcode_jobs_status", "status"),
    sa.Index("ix_transcode_jobs_priority_created", "priority", "created_at"),
)


def create_tables(url: str = DATABASE_URL):
    """
    Create database tables directly using SQLAlchemy metadata.
    This creates all tables if they don't exist.
    """
    engine = sa.create_engine(url)
    metadata.create_all(engine)
    engine.dispose()


if __name__ == "__main__":
    create_tables()
    print("Database tables created successfully!")
