"""
Tests for the job processor.

Drives queue items end to end against SQLite, the in-memory queue and the
fake encoder.
"""

from pathlib import Path

import pytest

from core.enums import JobStatus, ProfileStatus, VideoStatus
from core.job_queue import QueueItem
from core.profiles import default_catalog
from worker.ingest import queue_profile, queue_video
from worker.transcoder import OUTCOME_COMPLETED, OUTCOME_FAILED, OUTCOME_SKIPPED, JobProcessor


class TestProcessSingleProfile:
    """One profile from queue push to completed record."""

    @pytest.mark.asyncio
    async def test_queue_dequeue_process(self, store, job_queue, fake_redis, processor, fake_encoder, sample_video):
        video_id = sample_video["id"]
        profile = sample_video["profiles"][0]

        assert await queue_profile(store, job_queue, video_id, profile["id"]) is True
        assert list(fake_redis.lists["test:transcode_queue"]) == [f"{video_id}:{profile['id']}"]

        item = await job_queue.dequeue(timeout=1)
        outcome = await processor.process(item)

        assert outcome.status == OUTCOME_COMPLETED
        assert outcome.succeeded

        request = fake_encoder.requests[0]
        assert request.profile.resolution == "720p"
        assert request.profile.bitrate == 2000
        assert request.output_dir.name == "720p"
        assert str(request.input_path) == sample_video["file_path"]

        stored = await store.get_profile(profile["id"])
        assert stored["status"] == ProfileStatus.COMPLETED.value
        assert stored["progress_percentage"] == 100
        assert stored["total_segments"] == len(list(request.output_dir.glob("*.ts"))) == 3
        assert stored["playlist_path"] == str(request.output_dir / "playlist.m3u8")

        job = await store.get_job(outcome.job_id)
        assert job["status"] == JobStatus.COMPLETED.value

        video = await store.get_video(video_id)
        assert video["status"] == VideoStatus.PROCESSING.value
        assert outcome.completion.completed is False

    @pytest.mark.asyncio
    async def test_output_dir_layout(self, store, job_queue, processor, fake_encoder, sample_video, test_storage):
        profile = sample_video["profiles"][2]
        await queue_profile(store, job_queue, sample_video["id"], profile["id"])

        await processor.process(await job_queue.dequeue(timeout=1))

        created = sample_video["created_at"]
        expected = (
            test_storage["transcoded"]
            / f"{created.year:04d}"
            / f"{created.month:02d}"
            / "My-Holiday-Clip"
            / "360p"
        )
        assert fake_encoder.requests[0].output_dir == expected


class TestProcessWholeVideo:
    """All profiles of a video through the processor."""

    @pytest.mark.asyncio
    async def test_last_profile_completes_video(self, store, job_queue, processor, sample_video):
        queued = await queue_video(store, job_queue, sample_video["id"])
        assert len(queued) == 3

        outcomes = []
        while (item := await job_queue.dequeue(timeout=1)) is not None:
            outcomes.append(await processor.process(item))

        assert [o.status for o in outcomes] == [OUTCOME_COMPLETED] * 3
        assert [o.completion.completed for o in outcomes] == [False, False, True]

        video = await store.get_video(sample_video["id"])
        assert video["status"] == VideoStatus.COMPLETED.value
        master = open(video["master_playlist_path"]).read()
        assert master.count("#EXT-X-STREAM-INF") == 3

    @pytest.mark.asyncio
    async def test_encoder_failure_keeps_video_incomplete(self, store, job_queue, processor, fake_encoder, sample_video):
        fake_encoder.fail_for = {"480p"}
        await queue_video(store, job_queue, sample_video["id"])

        outcomes = []
        while (item := await job_queue.dequeue(timeout=1)) is not None:
            outcomes.append(await processor.process(item))

        assert [o.status for o in outcomes] == [OUTCOME_COMPLETED, OUTCOME_FAILED, OUTCOME_COMPLETED]
        failed = outcomes[1]
        assert "Encoder exited with code 1" in failed.error
        assert "Conversion failed!" in failed.error

        profile = await store.get_profile(failed.profile_id)
        assert profile["status"] == ProfileStatus.FAILED.value
        assert "Conversion failed!" in profile["error_message"]
        job = await store.get_job(failed.job_id)
        assert job["status"] == JobStatus.FAILED.value

        video = await store.get_video(sample_video["id"])
        assert video["status"] != VideoStatus.COMPLETED.value
        assert video["master_playlist_path"] is None


class TestProcessEdgeCases:
    """Missing records, stale entries and unexpected errors."""

    @pytest.mark.asyncio
    async def test_missing_video(self, processor):
        outcome = await processor.process(QueueItem(999, 1))

        assert outcome.status == OUTCOME_FAILED
        assert "video 999 not found" in outcome.error

    @pytest.mark.asyncio
    async def test_profile_of_another_video(self, store, processor, sample_video, fake_encoder):
        outcome = await processor.process(QueueItem(sample_video["id"], 12345))

        assert outcome.status == OUTCOME_FAILED
        assert "profile 12345 not found" in outcome.error
        assert fake_encoder.requests == []

    @pytest.mark.asyncio
    async def test_foreign_profile_fails_live_job(self, store, processor, sample_video, source_file):
        other_id = await store.create_video("other.mp4", str(source_file) + ".other", 1, 1, [])
        profile_id = sample_video["profiles"][0]["id"]
        job_id = await store.create_job(other_id, profile_id)

        outcome = await processor.process(QueueItem(other_id, profile_id))

        assert outcome.status == OUTCOME_FAILED
        assert outcome.job_id == job_id
        assert (await store.get_job(job_id))["status"] == JobStatus.FAILED.value

    @pytest.mark.asyncio
    async def test_stale_entry_is_skipped(self, store, job_queue, processor, fake_encoder, sample_video):
        profile_id = sample_video["profiles"][0]["id"]
        await queue_profile(store, job_queue, sample_video["id"], profile_id)
        item = await job_queue.dequeue(timeout=1)
        await processor.process(item)

        # Same payload delivered again after completion
        outcome = await processor.process(item)

        assert outcome.status == OUTCOME_SKIPPED
        assert len(fake_encoder.requests) == 1
        assert (await store.get_profile(profile_id))["status"] == ProfileStatus.COMPLETED.value

    @pytest.mark.asyncio
    async def test_entry_without_job_gets_one(self, store, processor, sample_video):
        profile_id = sample_video["profiles"][0]["id"]
        await store.claim_profile_for_queue(profile_id)

        outcome = await processor.process(QueueItem(sample_video["id"], profile_id))

        assert outcome.status == OUTCOME_COMPLETED
        job = await store.get_job(outcome.job_id)
        assert job["status"] == JobStatus.COMPLETED.value

    @pytest.mark.asyncio
    async def test_output_dir_failure(self, store, job_queue, sample_video, fake_encoder, detector, tmp_path):
        blocker = tmp_path / "blocker"
        blocker.write_text("x")
        processor = JobProcessor(store, encoder=fake_encoder, detector=detector, transcoded_root=blocker)
        profile_id = sample_video["profiles"][0]["id"]
        await queue_profile(store, job_queue, sample_video["id"], profile_id)

        outcome = await processor.process(await job_queue.dequeue(timeout=1))

        assert outcome.status == OUTCOME_FAILED
        assert "Failed to create output directory" in outcome.error
        assert fake_encoder.requests == []

    @pytest.mark.asyncio
    async def test_unexpected_error_is_recorded_and_raised(self, store, job_queue, sample_video, detector, test_storage):
        class BrokenEncoder:
            async def encode(self, request):
                raise RuntimeError("kaboom")

        processor = JobProcessor(
            store, encoder=BrokenEncoder(), detector=detector, transcoded_root=test_storage["transcoded"]
        )
        profile_id = sample_video["profiles"][0]["id"]
        await queue_profile(store, job_queue, sample_video["id"], profile_id)

        with pytest.raises(RuntimeError):
            await processor.process(await job_queue.dequeue(timeout=1))

        profile = await store.get_profile(profile_id)
        assert profile["status"] == ProfileStatus.FAILED.value
        assert "kaboom" in profile["error_message"]


class TestOutputIsolation:
    """Renditions of one video never mix with another's or with an earlier attempt."""

    @staticmethod
    async def _run_all(job_queue, processor):
        outcomes = []
        while (item := await job_queue.dequeue(timeout=1)) is not None:
            outcomes.append(await processor.process(item))
        return outcomes

    @pytest.mark.asyncio
    async def test_same_filename_gets_separate_directory(
        self, store, job_queue, processor, fake_encoder, sample_video, test_storage
    ):
        first_id = sample_video["id"]
        fake_encoder.segments = 5
        await queue_video(store, job_queue, first_id)
        await self._run_all(job_queue, processor)

        other_source = test_storage["uploads"] / "again" / "My Holiday Clip.mp4"
        other_source.parent.mkdir()
        other_source.write_bytes(b"\x00" * 512)
        second_id = await store.create_video(
            "My Holiday Clip.mp4", str(other_source), 512, 60, default_catalog()
        )
        fake_encoder.segments = 2
        await queue_video(store, job_queue, second_id)
        outcomes = await self._run_all(job_queue, processor)

        assert [o.total_segments for o in outcomes] == [2, 2, 2]
        for profile in await store.list_profiles(second_id):
            assert profile["total_segments"] == 2

        first = await store.get_video(first_id)
        second = await store.get_video(second_id)
        first_dir = Path(first["master_playlist_path"]).parent
        second_dir = Path(second["master_playlist_path"]).parent
        assert first_dir != second_dir
        assert second_dir.name == f"{second_id}-My-Holiday-Clip"
        assert len(list((first_dir / "720p").glob("*.ts"))) == 5

    @pytest.mark.asyncio
    async def test_stale_segments_are_cleared_before_encoding(
        self, store, job_queue, processor, fake_encoder, sample_video, test_storage
    ):
        profile_id = sample_video["profiles"][0]["id"]
        created = sample_video["created_at"]
        rendition = (
            test_storage["transcoded"] / f"{created.year:04d}" / f"{created.month:02d}" / "My-Holiday-Clip" / "720p"
        )
        rendition.mkdir(parents=True)
        for i in range(6):
            (rendition / f"{i:03d}.ts").write_bytes(b"\x47")

        await queue_profile(store, job_queue, sample_video["id"], profile_id)
        outcome = await processor.process(await job_queue.dequeue(timeout=1))

        assert outcome.total_segments == 3
        assert sorted(p.name for p in rendition.glob("*.ts")) == ["000.ts", "001.ts", "002.ts"]
