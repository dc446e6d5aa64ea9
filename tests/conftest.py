"""
Pytest fixtures for hlsmill tests.
Provides a per-test database, storage directories, an in-memory queue
backend and a fake encoder.

Uses a SQLite file database per test so the suite runs without services.
"""

import os
from collections import deque
from pathlib import Path
from typing import AsyncGenerator, Optional

import pytest
from databases import Database

# Must be set BEFORE importing config (skips creating storage directories)
os.environ["HLSMILL_TEST_MODE"] = "1"

from core.database import create_tables  # noqa: E402
from core.errors import EncodeError  # noqa: E402
from core.job_queue import JobQueue  # noqa: E402
from core.paths import VARIANT_PLAYLIST_NAME  # noqa: E402
from core.profiles import default_catalog  # noqa: E402
from core.records import RecordStore  # noqa: E402
from worker.completion import CompletionDetector  # noqa: E402
from worker.encoder import EncodeResult, Encoder  # noqa: E402
from worker.transcoder import JobProcessor  # noqa: E402


class InMemoryRedis:
    """The subset of redis.asyncio.Redis used by JobQueue, backed by deques."""

    def __init__(self):
        self.lists = {}
        self.fail_with: Optional[Exception] = None

    def _list(self, name) -> deque:
        return self.lists.setdefault(name, deque())

    async def lpush(self, name, *values):
        if self.fail_with:
            raise self.fail_with
        for value in values:
            self._list(name).appendleft(value)
        return len(self._list(name))

    async def brpop(self, keys, timeout=0):
        if self.fail_with:
            raise self.fail_with
        for key in keys:
            items = self._list(key)
            if items:
                return key, items.pop()
        # Nothing waiting: behave as if the timeout elapsed
        return None

    async def llen(self, name):
        if self.fail_with:
            raise self.fail_with
        return len(self._list(name))


class FakeEncoder(Encoder):
    """
    Writes `segments` dummy .ts files and a variant playlist.

    Resolutions listed in `fail_for` raise EncodeError like a non-zero ffmpeg exit.
    """

    def __init__(self, segments: int = 3, fail_for=()):
        self.segments = segments
        self.fail_for = set(fail_for)
        self.requests = []

    async def encode(self, request):
        self.requests.append(request)
        if request.profile.resolution in self.fail_for:
            raise EncodeError("Encoder exited with code 1", 1, "Conversion failed!")

        output_dir = Path(request.output_dir)
        lines = ["#EXTM3U", "#EXT-X-VERSION:3", f"#EXT-X-TARGETDURATION:{request.profile.segment_time}"]
        for i in range(self.segments):
            (output_dir / f"{i:03d}.ts").write_bytes(b"\x47" * 188)
            lines.append(f"#EXTINF:{request.profile.segment_time}.0,")
            lines.append(f"{i:03d}.ts")
        lines.append("#EXT-X-ENDLIST")
        playlist = output_dir / VARIANT_PLAYLIST_NAME
        playlist.write_text("\n".join(lines) + "\n")
        return EncodeResult(playlist_path=playlist, segment_count=self.segments)


@pytest.fixture(scope="function")
def test_storage(tmp_path: Path) -> dict:
    """Create test storage directories."""
    uploads_dir = tmp_path / "uploads"
    transcoded_dir = tmp_path / "transcoded"
    archive_dir = tmp_path / "archive"

    uploads_dir.mkdir(parents=True, exist_ok=True)
    transcoded_dir.mkdir(parents=True, exist_ok=True)
    archive_dir.mkdir(parents=True, exist_ok=True)

    return {
        "uploads": uploads_dir,
        "transcoded": transcoded_dir,
        "archive": archive_dir,
    }


@pytest.fixture(scope="function")
def test_db_url(tmp_path: Path) -> str:
    """Create a SQLite database file with all tables and return its URL."""
    db_url = f"sqlite:///{tmp_path / 'hlsmill_test.db'}"
    create_tables(db_url)
    return db_url


@pytest.fixture(scope="function")
async def test_database(test_db_url: str) -> AsyncGenerator[Database, None]:
    """Connected database for one test."""
    database = Database(test_db_url)
    await database.connect()

    yield database

    await database.disconnect()


@pytest.fixture
def store(test_database: Database) -> RecordStore:
    return RecordStore(test_database)


@pytest.fixture
def fake_redis() -> InMemoryRedis:
    return InMemoryRedis()


@pytest.fixture
def job_queue(fake_redis: InMemoryRedis) -> JobQueue:
    return JobQueue(redis=fake_redis, queue_name="test:transcode_queue")


@pytest.fixture
def fake_encoder() -> FakeEncoder:
    return FakeEncoder()


@pytest.fixture
def source_file(test_storage: dict) -> Path:
    """A non-empty source file in the uploads directory."""
    path = test_storage["uploads"] / "My Holiday Clip.mp4"
    path.write_bytes(b"\x00\x00\x00\x18ftypmp42" + b"\x00" * 1024)
    return path


@pytest.fixture
async def sample_video(store: RecordStore, source_file: Path) -> dict:
    """A video with the default 720p/480p/360p catalog, all profiles pending."""
    video_id = await store.create_video(
        original_filename=source_file.name,
        file_path=str(source_file),
        file_size=source_file.stat().st_size,
        duration=120,
        profiles=default_catalog(),
    )
    video = await store.get_video(video_id)
    video["profiles"] = await store.list_profiles(video_id)
    return video


@pytest.fixture
def detector(store: RecordStore, test_storage: dict) -> CompletionDetector:
    return CompletionDetector(
        store,
        transcoded_root=test_storage["transcoded"],
        archive_root=test_storage["archive"],
        fail_video_on_profile_failure=False,
    )


@pytest.fixture
def processor(store: RecordStore, fake_encoder: FakeEncoder, detector: CompletionDetector, test_storage: dict):
    return JobProcessor(store, encoder=fake_encoder, detector=detector, transcoded_root=test_storage["transcoded"])
