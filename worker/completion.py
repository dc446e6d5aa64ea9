"""
Completion detector.

After every finished job the worker asks whether its video is done. The
video is completed once, by whichever check first sees every profile
completed:

1. write master.m3u8
2. compare-and-set the video to completed with the master location
3. archive the source file and record its new location

Checks for the same video are serialized with a per-video asyncio.Lock, and
the status flip itself is a compare-and-set, so a second check (concurrent or
later) finds the video completed and writes nothing.
"""

import asyncio
import logging
import weakref
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from config import ARCHIVE_DIR, TRANSCODED_DIR, VIDEO_FAIL_ON_PROFILE_FAILURE
from core.enums import ProfileStatus, VideoStatus
from core.errors import RecordNotFoundError
from core.records import RecordStore
from worker.archiver import archive_source
from worker.playlist import write_master_playlist

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CompletionResult:
    video_id: int
    completed: bool
    master_path: Optional[str] = None
    archived_path: Optional[str] = None


class CompletionDetector:
    def __init__(
        self,
        store: RecordStore,
        transcoded_root: Path = TRANSCODED_DIR,
        archive_root: Path = ARCHIVE_DIR,
        fail_video_on_profile_failure: bool = VIDEO_FAIL_ON_PROFILE_FAILURE,
    ):
        self.store = store
        self.transcoded_root = Path(transcoded_root)
        self.archive_root = Path(archive_root)
        self.fail_video_on_profile_failure = fail_video_on_profile_failure
        # Entries vanish once no check holds the lock
        self._locks: "weakref.WeakValueDictionary[int, asyncio.Lock]" = weakref.WeakValueDictionary()

    def _lock_for(self, video_id: int) -> asyncio.Lock:
        lock = self._locks.get(video_id)
        if lock is None:
            lock = self._locks[video_id] = asyncio.Lock()
        return lock

    async def check(self, video_id: int) -> CompletionResult:
        """
        Complete the video if all of its profiles are completed.

        Raises:
            RecordNotFoundError: the video does not exist
            OutputError: the master playlist could not be written (video left as-is)
        """
        async with self._lock_for(video_id):
            video = await self.store.get_video(video_id)
            if video is None:
                raise RecordNotFoundError("video", video_id)

            if video["status"] == VideoStatus.COMPLETED.value:
                logger.debug(f"Video {video_id} already completed")
                return CompletionResult(video_id, True, video["master_playlist_path"])

            profiles = await self.store.list_profiles(video_id)
            if not profiles:
                return CompletionResult(video_id, False)

            failed = [p for p in profiles if p["status"] == ProfileStatus.FAILED.value]
            if failed:
                await self._handle_failed_profiles(video_id, failed)
                return CompletionResult(video_id, False)

            if any(p["status"] != ProfileStatus.COMPLETED.value for p in profiles):
                return CompletionResult(video_id, False)

            master = write_master_playlist(video, profiles, self.transcoded_root)

            if not await self.store.mark_video_completed(video_id, str(master)):
                # Completed by another process between our read and the flip
                stored = await self.store.get_video(video_id)
                return CompletionResult(video_id, True, stored["master_playlist_path"] if stored else str(master))

            logger.info(f"Video {video_id} completed: {len(profiles)} profiles, master {master}")

            archived = archive_source(video, self.archive_root)
            if archived is not None:
                await self.store.update_video_file_path(video_id, str(archived))

            return CompletionResult(video_id, True, str(master), str(archived) if archived else None)

    async def _handle_failed_profiles(self, video_id: int, failed: list) -> None:
        names = ", ".join(p["resolution"] for p in failed)
        if not self.fail_video_on_profile_failure:
            logger.info(f"Video {video_id} cannot complete yet, failed profiles: {names}")
            return
        if await self.store.mark_video_failed(video_id, f"Profiles failed: {names}"):
            logger.warning(f"Video {video_id} marked failed, failed profiles: {names}")
