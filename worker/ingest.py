"""
Ingestion: turning a source file into a video with queued profiles.

These are the job-creation triggers used by the upload watcher and the CLI.
A profile is pushed onto the queue only after it was moved to "queued" by a
conditional update, so the same profile never has two live jobs.
"""

import asyncio
import json
import logging
from pathlib import Path
from typing import List, Optional

from config import DEFAULT_JOB_PRIORITY, FFPROBE_PATH, FFPROBE_TIMEOUT, MAX_RETRY_ATTEMPTS
from core.enums import JobStatus, ProfileStatus, VideoStatus
from core.errors import QueueUnavailableError, RecordNotFoundError
from core.job_queue import JobQueue
from core.profiles import ProfileSpec, default_catalog
from core.records import RecordStore

logger = logging.getLogger(__name__)


async def probe_duration(path: Path, timeout: float = FFPROBE_TIMEOUT, ffprobe_path: str = FFPROBE_PATH) -> int:
    """Source duration in whole seconds (rounded), or 0 if ffprobe can't tell."""
    cmd = [ffprobe_path, "-v", "quiet", "-print_format", "json", "-show_format", str(path)]

    try:
        process = await asyncio.create_subprocess_exec(
            *cmd, stdout=asyncio.subprocess.PIPE, stderr=asyncio.subprocess.PIPE
        )
    except OSError as e:
        logger.warning(f"Failed to run {ffprobe_path} on {path}: {e}")
        return 0

    try:
        stdout, _ = await asyncio.wait_for(process.communicate(), timeout=timeout)
    except asyncio.TimeoutError:
        process.kill()
        await process.wait()
        logger.warning(f"ffprobe timed out after {timeout}s on {path}")
        return 0

    if process.returncode != 0:
        logger.warning(f"ffprobe exited with code {process.returncode} on {path}")
        return 0

    try:
        data = json.loads(stdout.decode("utf-8", errors="ignore"))
        duration = float(data["format"]["duration"])
    except (ValueError, KeyError, TypeError) as e:
        logger.warning(f"Could not read duration of {path}: {e}")
        return 0

    if duration != duration or duration < 0:  # NaN or negative
        return 0
    return int(duration + 0.5)


async def create_video(
    store: RecordStore,
    original_filename: str,
    file_path: str,
    file_size: int,
    duration: int,
    profiles: Optional[List[ProfileSpec]] = None,
) -> int:
    """Create a video with the profile catalog (all pending). Returns the video id."""
    if profiles is None:
        profiles = default_catalog()
    return await store.create_video(original_filename, file_path, file_size, duration, profiles)


async def queue_profile(
    store: RecordStore,
    queue: JobQueue,
    video_id: int,
    profile_id: int,
    priority: int = DEFAULT_JOB_PRIORITY,
    retry_count: int = 0,
    max_retries: int = MAX_RETRY_ATTEMPTS,
) -> bool:
    """
    Queue one profile for encoding.

    Returns False without side effects if the profile is not pending/failed
    (already queued, in progress or completed).

    Raises:
        RecordNotFoundError: profile missing or not owned by the video
        QueueUnavailableError: the push failed; profile and job are marked failed
    """
    profile = await store.get_profile(profile_id)
    if profile is None or profile["video_id"] != video_id:
        raise RecordNotFoundError("profile", profile_id)

    if not await store.claim_profile_for_queue(profile_id):
        logger.info(f"Profile {profile_id} of video {video_id} not queued: status is '{profile['status']}'")
        return False

    job_id = await store.create_job(
        video_id, profile_id, priority=priority, retry_count=retry_count, max_retries=max_retries
    )

    try:
        await queue.enqueue(video_id, profile_id, priority)
    except QueueUnavailableError as e:
        await store.transition_profile(profile_id, ProfileStatus.FAILED, error=str(e))
        await store.transition_job(job_id, JobStatus.FAILED, error=str(e))
        logger.error(f"Failed to queue job {job_id} (video {video_id}, profile {profile_id}): {e}")
        raise

    logger.info(f"Queued job {job_id}: video {video_id} profile {profile_id} ({profile['resolution']})")
    return True


async def queue_video(
    store: RecordStore,
    queue: JobQueue,
    video_id: int,
    priority: int = DEFAULT_JOB_PRIORITY,
) -> List[int]:
    """Queue every pending profile of a video. Returns the queued profile ids."""
    await store.require_video(video_id)
    queued = []
    for profile in await store.list_profiles(video_id, status=ProfileStatus.PENDING.value):
        try:
            if await queue_profile(store, queue, video_id, profile["id"], priority):
                queued.append(profile["id"])
        except QueueUnavailableError:
            # Already logged and recorded on the profile; keep going with the rest
            continue
    return queued


async def requeue_failed(
    store: RecordStore,
    queue: JobQueue,
    video_id: int,
    priority: Optional[int] = None,
    force: bool = False,
) -> List[int]:
    """
    Re-queue the failed profiles of a video.

    The new job carries retry_count + 1 of the previous attempt. A profile whose
    last job has used up max_retries is skipped unless `force` is set.
    Returns the re-queued profile ids.
    """
    video = await store.require_video(video_id)
    requeued = []

    for profile in await store.list_profiles(video_id, status=ProfileStatus.FAILED.value):
        last_job = await store.latest_job(video_id, profile["id"])
        retry_count, max_retries = 0, MAX_RETRY_ATTEMPTS
        job_priority = DEFAULT_JOB_PRIORITY
        if last_job is not None:
            if last_job["retry_count"] >= last_job["max_retries"] and not force:
                logger.warning(
                    f"Profile {profile['id']} of video {video_id} exhausted its retries "
                    f"({last_job['retry_count']}/{last_job['max_retries']})"
                )
                continue
            retry_count = last_job["retry_count"] + 1
            max_retries = last_job["max_retries"]
            job_priority = last_job["priority"]

        try:
            if await queue_profile(
                store,
                queue,
                video_id,
                profile["id"],
                priority=job_priority if priority is None else priority,
                retry_count=retry_count,
                max_retries=max_retries,
            ):
                requeued.append(profile["id"])
        except QueueUnavailableError:
            continue

    if requeued and video["status"] == VideoStatus.FAILED.value:
        await store.set_video_status(video_id, VideoStatus.PROCESSING.value)
    return requeued


async def ingest_file(
    store: RecordStore,
    queue: JobQueue,
    path: Path,
    priority: int = DEFAULT_JOB_PRIORITY,
) -> Optional[int]:
    """
    Create a video for a source file and queue all of its profiles.

    Returns the video id, or None if the file is missing, empty or already known.
    """
    path = Path(path)
    try:
        size = path.stat().st_size
    except OSError as e:
        logger.warning(f"Cannot ingest {path}: {e}")
        return None

    if size == 0:
        logger.warning(f"Cannot ingest {path}: file is empty")
        return None

    if await store.find_video_by_path(str(path)) is not None:
        logger.debug(f"Skipping {path}: already ingested")
        return None

    duration = await probe_duration(path)
    video_id = await create_video(store, path.name, str(path), size, duration)
    queued = await queue_video(store, queue, video_id, priority)
    logger.info(f"Ingested {path.name} as video {video_id}, queued {len(queued)} profiles")
    return video_id
