"""
Job processor: takes one dequeued (video, profile) pair through encoding.

    load records -> mark processing -> create output dir -> run encoder
    -> persist segment count + variant playlist -> mark completed
    -> completion check for the video

A failure at any step marks the job and profile failed with the error text.
The video itself is only touched by the completion detector. There is no
automatic retry; failed profiles are re-queued explicitly.
"""

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from config import DEFAULT_JOB_PRIORITY, TRANSCODED_DIR
from core.enums import JobStatus, ProfileStatus
from core.errors import EncodeError, OutputError, RecordNotFoundError, TranscodeError
from core.job_queue import QueueItem
from core.paths import VARIANT_PLAYLIST_NAME, claim_video_output_dir
from core.profiles import ProfileSpec
from core.records import RecordStore
from worker.completion import CompletionDetector, CompletionResult
from worker.encoder import EncodeRequest, Encoder, FFmpegEncoder, count_segments

logger = logging.getLogger(__name__)

OUTCOME_COMPLETED = "completed"
OUTCOME_FAILED = "failed"
OUTCOME_SKIPPED = "skipped"


@dataclass
class JobOutcome:
    video_id: int
    profile_id: int
    status: str
    job_id: Optional[int] = None
    error: Optional[str] = None
    total_segments: Optional[int] = None
    completion: Optional[CompletionResult] = None

    @property
    def succeeded(self) -> bool:
        return self.status == OUTCOME_COMPLETED


class JobProcessor:
    """
    Runs queue items to completion against a record store and an encoder.

    One instance is shared by every worker in a pool; it holds no per-job state.
    """

    def __init__(
        self,
        store: RecordStore,
        encoder: Optional[Encoder] = None,
        detector: Optional[CompletionDetector] = None,
        transcoded_root: Path = TRANSCODED_DIR,
    ):
        self.store = store
        self.encoder = encoder or FFmpegEncoder()
        self.transcoded_root = Path(transcoded_root)
        self.detector = detector or CompletionDetector(store, transcoded_root=self.transcoded_root)

    async def process(self, item: QueueItem) -> JobOutcome:
        video_id, profile_id = item.video_id, item.profile_id
        job = await self.store.latest_job(video_id, profile_id, live_only=True)
        job_id = job["id"] if job else None

        video = await self.store.get_video(video_id)
        profile = await self.store.get_profile(profile_id)
        missing = None
        if video is None:
            missing = RecordNotFoundError("video", video_id)
        elif profile is None or profile["video_id"] != video_id:
            missing = RecordNotFoundError("profile", profile_id)

        if missing is not None:
            logger.error(f"Dropping job {item.payload}: {missing}")
            if job_id is not None:
                await self.store.transition_job(job_id, JobStatus.FAILED, error=str(missing))
            return JobOutcome(video_id, profile_id, OUTCOME_FAILED, job_id=job_id, error=str(missing))

        if not await self.store.start_profile(profile_id):
            # Stale or duplicate queue entry; the live job (if any) belongs to someone else
            logger.warning(
                f"Skipping {item.payload}: profile {profile_id} is '{profile['status']}', not queued"
            )
            return JobOutcome(video_id, profile_id, OUTCOME_SKIPPED, job_id=job_id)

        if job_id is None:
            # Entry pushed without going through queue_profile
            job_id = await self.store.create_job(video_id, profile_id, priority=DEFAULT_JOB_PRIORITY)
        await self.store.transition_job(job_id, JobStatus.PROCESSING)
        await self.store.mark_video_processing(video_id)

        spec = ProfileSpec.from_record(profile)
        logger.info(f"Job {job_id}: encoding video {video_id} profile {profile_id} ({spec.resolution})")

        try:
            total_segments = await self._encode(video, profile_id, spec)
        except EncodeError as e:
            return await self._fail(video_id, profile_id, job_id, e.diagnostic)
        except TranscodeError as e:
            return await self._fail(video_id, profile_id, job_id, str(e))
        except Exception as e:
            await self._fail(video_id, profile_id, job_id, f"Unexpected error: {e}")
            raise

        await self.store.transition_profile(profile_id, ProfileStatus.COMPLETED)
        await self.store.transition_job(job_id, JobStatus.COMPLETED)
        logger.info(f"Job {job_id}: profile {profile_id} completed with {total_segments} segments")

        completion = await self._check_completion(video_id)
        return JobOutcome(
            video_id,
            profile_id,
            OUTCOME_COMPLETED,
            job_id=job_id,
            total_segments=total_segments,
            completion=completion,
        )

    async def _encode(self, video: dict, profile_id: int, spec: ProfileSpec) -> int:
        try:
            output_dir = (
                claim_video_output_dir(
                    self.transcoded_root, video["id"], video["original_filename"], video["created_at"]
                )
                / spec.resolution
            )
            output_dir.mkdir(parents=True, exist_ok=True)
            _clear_rendition(output_dir)
        except OSError as e:
            raise OutputError(f"Failed to create output directory for video {video['id']}: {e}") from e

        result = await self.encoder.encode(EncodeRequest(Path(video["file_path"]), output_dir, spec))

        # What is on disk is authoritative, not the encoder's own count
        total_segments = count_segments(output_dir)
        await self.store.set_profile_output(profile_id, total_segments, str(result.playlist_path))
        return total_segments

    async def _fail(self, video_id: int, profile_id: int, job_id: int, error: str) -> JobOutcome:
        logger.error(f"Job {job_id}: video {video_id} profile {profile_id} failed: {error.splitlines()[0]}")
        await self.store.transition_profile(profile_id, ProfileStatus.FAILED, error=error)
        await self.store.transition_job(job_id, JobStatus.FAILED, error=error)
        completion = await self._check_completion(video_id)
        return JobOutcome(video_id, profile_id, OUTCOME_FAILED, job_id=job_id, error=error, completion=completion)

    async def _check_completion(self, video_id: int) -> Optional[CompletionResult]:
        try:
            return await self.detector.check(video_id)
        except TranscodeError as e:
            logger.error(f"Completion check for video {video_id} failed: {e}")
            return None


def _clear_rendition(output_dir: Path) -> None:
    """Remove segments and the variant playlist left by an earlier attempt."""
    for path in output_dir.glob("*.ts"):
        path.unlink()
    (output_dir / VARIANT_PLAYLIST_NAME).unlink(missing_ok=True)
