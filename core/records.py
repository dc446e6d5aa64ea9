"""
Record store: field-scoped async operations on videos, profiles and jobs.

Every write names the columns it changes, so workers updating different
profiles of the same video never overwrite each other. Timestamps and
defaults are always passed explicitly; the async driver does not run
SQLAlchemy's Python-side defaults.

Two operations are races by nature and run as read-then-write inside one
transaction:

- claim_profile_for_queue: pending|failed -> queued (single-flight guard)
- mark_video_completed: anything but completed -> completed (completion flip)
"""

import logging
from datetime import datetime, timezone
from typing import Dict, List, Optional, Sequence

import sqlalchemy as sa
from databases import Database

from config import MAX_RETRY_ATTEMPTS
from core.database import database as default_database
from core.database import transcode_jobs, video_profiles, videos
from core.db_retry import with_db_retry
from core.enums import JobStatus, ProfileStatus, VideoStatus
from core.errors import RecordNotFoundError, truncate_error
from core.job_state import LIVE_JOB_STATUSES, QUEUEABLE_PROFILE_STATUSES, job_state_machine
from core.profiles import ProfileSpec

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class RecordStore:
    """Async access to the three record tables through one `databases.Database`."""

    def __init__(self, database: Optional[Database] = None):
        self.database = database or default_database

    # ------------------------------------------------------------------
    # Videos
    # ------------------------------------------------------------------

    @with_db_retry()
    async def create_video(
        self,
        original_filename: str,
        file_path: str,
        file_size: int,
        duration: int,
        profiles: Sequence[ProfileSpec],
    ) -> int:
        """Insert a video and its profile catalog atomically. Returns the video id."""
        now = _utcnow()
        async with self.database.transaction():
            video_id = await self.database.execute(
                videos.insert().values(
                    original_filename=original_filename,
                    file_path=file_path,
                    file_size=file_size,
                    duration=duration,
                    status=VideoStatus.UPLOADED.value,
                    created_at=now,
                    updated_at=now,
                )
            )
            for spec in profiles:
                await self.database.execute(
                    video_profiles.insert().values(
                        video_id=video_id,
                        status=ProfileStatus.PENDING.value,
                        total_segments=0,
                        progress_percentage=0,
                        created_at=now,
                        **spec.to_values(),
                    )
                )

        logger.info(f"Created video {video_id} ({original_filename}) with {len(profiles)} profiles")
        return video_id

    async def get_video(self, video_id: int) -> Optional[dict]:
        row = await self.database.fetch_one(videos.select().where(videos.c.id == video_id))
        return dict(row) if row else None

    async def require_video(self, video_id: int) -> dict:
        video = await self.get_video(video_id)
        if video is None:
            raise RecordNotFoundError("video", video_id)
        return video

    async def find_video_by_path(self, file_path: str) -> Optional[dict]:
        """Look up a video by its current source location."""
        row = await self.database.fetch_one(videos.select().where(videos.c.file_path == file_path))
        return dict(row) if row else None

    async def list_videos(self, status: Optional[str] = None) -> List[dict]:
        query = videos.select().order_by(videos.c.id)
        if status is not None:
            query = query.where(videos.c.status == status)
        return [dict(row) for row in await self.database.fetch_all(query)]

    @with_db_retry()
    async def set_video_status(self, video_id: int, status: str, error: Optional[str] = None) -> None:
        await self.database.execute(
            videos.update()
            .where(videos.c.id == video_id)
            .values(status=status, error_message=truncate_error(error), updated_at=_utcnow())
        )

    @with_db_retry()
    async def mark_video_processing(self, video_id: int) -> bool:
        """Move an uploaded video to processing; any other status is left alone."""
        async with self.database.transaction():
            row = await self.database.fetch_one(
                sa.select(videos.c.status).where(videos.c.id == video_id)
            )
            if row is None or row["status"] != VideoStatus.UPLOADED.value:
                return False
            await self.database.execute(
                videos.update()
                .where(videos.c.id == video_id)
                .values(status=VideoStatus.PROCESSING.value, updated_at=_utcnow())
            )
        return True

    @with_db_retry()
    async def mark_video_completed(self, video_id: int, master_playlist_path: str) -> bool:
        """
        Flip a video to completed and store its master playlist location.

        Returns False (and writes nothing) if the video is already completed.
        """
        async with self.database.transaction():
            row = await self.database.fetch_one(
                sa.select(videos.c.status).where(videos.c.id == video_id)
            )
            if row is None:
                raise RecordNotFoundError("video", video_id)
            if row["status"] == VideoStatus.COMPLETED.value:
                return False
            await self.database.execute(
                videos.update()
                .where(videos.c.id == video_id)
                .values(
                    status=VideoStatus.COMPLETED.value,
                    master_playlist_path=master_playlist_path,
                    error_message=None,
                    updated_at=_utcnow(),
                )
            )
        return True

    @with_db_retry()
    async def mark_video_failed(self, video_id: int, error: str) -> bool:
        """Mark a video failed unless it already completed."""
        async with self.database.transaction():
            row = await self.database.fetch_one(
                sa.select(videos.c.status).where(videos.c.id == video_id)
            )
            if row is None or row["status"] == VideoStatus.COMPLETED.value:
                return False
            await self.database.execute(
                videos.update()
                .where(videos.c.id == video_id)
                .values(
                    status=VideoStatus.FAILED.value,
                    error_message=truncate_error(error),
                    updated_at=_utcnow(),
                )
            )
        return True

    @with_db_retry()
    async def update_video_file_path(self, video_id: int, file_path: str) -> None:
        await self.database.execute(
            videos.update()
            .where(videos.c.id == video_id)
            .values(file_path=file_path, updated_at=_utcnow())
        )

    @with_db_retry()
    async def delete_video(self, video_id: int) -> bool:
        """
        Delete a video with its profiles and jobs.

        Children are removed explicitly in the same transaction; SQLite only
        honours ON DELETE CASCADE when foreign keys are enabled per connection.
        """
        async with self.database.transaction():
            row = await self.database.fetch_one(sa.select(videos.c.id).where(videos.c.id == video_id))
            if row is None:
                return False
            await self.database.execute(transcode_jobs.delete().where(transcode_jobs.c.video_id == video_id))
            await self.database.execute(video_profiles.delete().where(video_profiles.c.video_id == video_id))
            await self.database.execute(videos.delete().where(videos.c.id == video_id))
        logger.info(f"Deleted video {video_id} with its profiles and jobs")
        return True

    # ------------------------------------------------------------------
    # Profiles
    # ------------------------------------------------------------------

    async def get_profile(self, profile_id: int) -> Optional[dict]:
        row = await self.database.fetch_one(video_profiles.select().where(video_profiles.c.id == profile_id))
        return dict(row) if row else None

    async def list_profiles(self, video_id: int, status: Optional[str] = None) -> List[dict]:
        """All profiles of a video in creation (id) order."""
        query = video_profiles.select().where(video_profiles.c.video_id == video_id).order_by(video_profiles.c.id)
        if status is not None:
            query = query.where(video_profiles.c.status == status)
        return [dict(row) for row in await self.database.fetch_all(query)]

    @with_db_retry()
    async def claim_profile_for_queue(self, profile_id: int) -> bool:
        """
        Conditionally move a profile from pending/failed to queued.

        Only the caller that gets True may create a job and push it, which keeps
        at most one live job per profile.
        """
        async with self.database.transaction():
            row = await self.database.fetch_one(
                sa.select(video_profiles.c.status).where(video_profiles.c.id == profile_id)
            )
            if row is None:
                raise RecordNotFoundError("profile", profile_id)
            if row["status"] not in QUEUEABLE_PROFILE_STATUSES:
                return False
            await self.database.execute(
                video_profiles.update()
                .where(video_profiles.c.id == profile_id)
                .values(**job_state_machine.profile_values(ProfileStatus.QUEUED))
            )
        return True

    @with_db_retry()
    async def start_profile(self, profile_id: int) -> bool:
        """Move a queued profile to processing. False if it was not queued."""
        async with self.database.transaction():
            row = await self.database.fetch_one(
                sa.select(video_profiles.c.status).where(video_profiles.c.id == profile_id)
            )
            if row is None:
                raise RecordNotFoundError("profile", profile_id)
            if not job_state_machine.can_transition("profile", row["status"], ProfileStatus.PROCESSING):
                return False
            await self.database.execute(
                video_profiles.update()
                .where(video_profiles.c.id == profile_id)
                .values(**job_state_machine.profile_values(ProfileStatus.PROCESSING))
            )
        return True

    @with_db_retry()
    async def transition_profile(self, profile_id: int, target: str, error: Optional[str] = None) -> None:
        """Validated status change; raises InvalidTransitionError on a disallowed move."""
        profile = await self.get_profile(profile_id)
        if profile is None:
            raise RecordNotFoundError("profile", profile_id)
        job_state_machine.validate("profile", profile["status"], target)
        await self.database.execute(
            video_profiles.update()
            .where(video_profiles.c.id == profile_id)
            .values(**job_state_machine.profile_values(target, error=error))
        )

    @with_db_retry()
    async def set_profile_output(self, profile_id: int, total_segments: int, playlist_path: str) -> None:
        await self.database.execute(
            video_profiles.update()
            .where(video_profiles.c.id == profile_id)
            .values(total_segments=total_segments, playlist_path=playlist_path)
        )

    # ------------------------------------------------------------------
    # Jobs
    # ------------------------------------------------------------------

    @with_db_retry()
    async def create_job(
        self,
        video_id: int,
        profile_id: int,
        priority: int = 0,
        retry_count: int = 0,
        max_retries: int = MAX_RETRY_ATTEMPTS,
    ) -> int:
        return await self.database.execute(
            transcode_jobs.insert().values(
                video_id=video_id,
                profile_id=profile_id,
                status=JobStatus.QUEUED.value,
                priority=priority,
                retry_count=retry_count,
                max_retries=max_retries,
                created_at=_utcnow(),
            )
        )

    async def get_job(self, job_id: int) -> Optional[dict]:
        row = await self.database.fetch_one(transcode_jobs.select().where(transcode_jobs.c.id == job_id))
        return dict(row) if row else None

    async def latest_job(self, video_id: int, profile_id: int, live_only: bool = False) -> Optional[dict]:
        """Most recent job for a (video, profile) pair."""
        query = (
            transcode_jobs.select()
            .where(transcode_jobs.c.video_id == video_id)
            .where(transcode_jobs.c.profile_id == profile_id)
            .order_by(transcode_jobs.c.id.desc())
            .limit(1)
        )
        if live_only:
            query = query.where(transcode_jobs.c.status.in_(LIVE_JOB_STATUSES))
        row = await self.database.fetch_one(query)
        return dict(row) if row else None

    async def list_jobs(self, video_id: Optional[int] = None, status: Optional[str] = None) -> List[dict]:
        query = transcode_jobs.select().order_by(transcode_jobs.c.id)
        if video_id is not None:
            query = query.where(transcode_jobs.c.video_id == video_id)
        if status is not None:
            query = query.where(transcode_jobs.c.status == status)
        return [dict(row) for row in await self.database.fetch_all(query)]

    async def list_queued_jobs(self) -> List[dict]:
        """Queued jobs, most urgent first (for operators; dispatch stays FIFO)."""
        query = (
            transcode_jobs.select()
            .where(transcode_jobs.c.status == JobStatus.QUEUED.value)
            .order_by(transcode_jobs.c.priority.desc(), transcode_jobs.c.created_at, transcode_jobs.c.id)
        )
        return [dict(row) for row in await self.database.fetch_all(query)]

    @with_db_retry()
    async def transition_job(self, job_id: int, target: str, error: Optional[str] = None) -> None:
        job = await self.get_job(job_id)
        if job is None:
            raise RecordNotFoundError("job", job_id)
        job_state_machine.validate("job", job["status"], target)
        await self.database.execute(
            transcode_jobs.update()
            .where(transcode_jobs.c.id == job_id)
            .values(**job_state_machine.job_values(target, error=error))
        )

    async def job_status_counts(self) -> Dict[str, int]:
        """Number of jobs per status; every status is present."""
        rows = await self.database.fetch_all(
            sa.select(transcode_jobs.c.status, sa.func.count().label("count")).group_by(transcode_jobs.c.status)
        )
        counts = {status.value: 0 for status in JobStatus}
        for row in rows:
            counts[row["status"]] = row["count"]
        return counts

    async def video_progress(self, video_id: int) -> dict:
        """Per-video summary: overall progress and profile counts by status."""
        video = await self.require_video(video_id)
        profiles = await self.list_profiles(video_id)
        by_status = {status.value: 0 for status in ProfileStatus}
        for profile in profiles:
            by_status[profile["status"]] += 1
        overall = 0
        if profiles:
            overall = sum(p["progress_percentage"] or 0 for p in profiles) // len(profiles)
        return {
            "video": video,
            "profiles": profiles,
            "profiles_by_status": by_status,
            "overall_progress": overall,
        }
