"""
Upload watcher: new files in the uploads directory become queued videos.

Watchdog delivers events on its own thread. Events are debounced per path
(a large copy produces many modify events) and then handed to the asyncio
loop with call_soon_threadsafe, where ingestion runs.
"""

import asyncio
import logging
import threading
from pathlib import Path
from typing import Callable, Dict, List, Optional, Set

from watchdog.events import FileSystemEventHandler
from watchdog.observers import Observer

from config import DEFAULT_JOB_PRIORITY, SUPPORTED_VIDEO_EXTENSIONS, UPLOADS_DIR, WATCHER_DEBOUNCE_DELAY
from core.job_queue import JobQueue
from core.records import RecordStore
from worker.ingest import ingest_file

logger = logging.getLogger(__name__)


def is_video_file(path) -> bool:
    return Path(path).suffix.lower() in SUPPORTED_VIDEO_EXTENSIONS


class UploadEventHandler(FileSystemEventHandler):
    """
    Collects upload events and reports each settled file once.

    `on_ready` is called on the event loop with the file's Path after no event
    for that path arrived for `debounce_delay` seconds.
    """

    def __init__(
        self,
        loop: asyncio.AbstractEventLoop,
        on_ready: Callable[[Path], None],
        debounce_delay: float = WATCHER_DEBOUNCE_DELAY,
    ):
        super().__init__()
        self.loop = loop
        self.on_ready = on_ready
        self.debounce_delay = debounce_delay
        self._timers: Dict[str, threading.Timer] = {}
        self._lock = threading.Lock()

    def _fire(self, path: str):
        with self._lock:
            self._timers.pop(path, None)
        self.loop.call_soon_threadsafe(self.on_ready, Path(path))

    def _schedule(self, path: str):
        with self._lock:
            timer = self._timers.pop(path, None)
            if timer is not None:
                timer.cancel()
            timer = threading.Timer(self.debounce_delay, self._fire, args=(path,))
            timer.daemon = True
            self._timers[path] = timer
            timer.start()

    def on_created(self, event):
        if not event.is_directory and is_video_file(event.src_path):
            logger.info(f"New upload detected: {Path(event.src_path).name}")
            self._schedule(event.src_path)

    def on_modified(self, event):
        if not event.is_directory and is_video_file(event.src_path):
            self._schedule(event.src_path)

    def on_moved(self, event):
        if not event.is_directory and is_video_file(event.dest_path):
            logger.info(f"Upload moved in: {Path(event.dest_path).name}")
            self._schedule(event.dest_path)

    def cleanup(self):
        """Cancel pending debounce timers."""
        with self._lock:
            for timer in self._timers.values():
                timer.cancel()
            self._timers.clear()


class UploadWatcher:
    """Ingests files that appear in `uploads_dir`."""

    def __init__(
        self,
        store: RecordStore,
        queue: JobQueue,
        uploads_dir: Path = UPLOADS_DIR,
        debounce_delay: float = WATCHER_DEBOUNCE_DELAY,
        priority: int = DEFAULT_JOB_PRIORITY,
    ):
        self.store = store
        self.queue = queue
        self.uploads_dir = Path(uploads_dir)
        self.debounce_delay = debounce_delay
        self.priority = priority
        self._observer: Optional[Observer] = None
        self._handler: Optional[UploadEventHandler] = None
        self._tasks: Set[asyncio.Task] = set()
        self._in_flight: Set[Path] = set()

    async def ingest(self, path: Path) -> Optional[int]:
        """Ingest one file unless it is already being ingested."""
        if path in self._in_flight:
            return None
        self._in_flight.add(path)
        try:
            return await ingest_file(self.store, self.queue, path, self.priority)
        except Exception as e:
            # One bad upload must not take the watcher down
            logger.error(f"Failed to ingest {path}: {e}")
            return None
        finally:
            self._in_flight.discard(path)

    def _on_ready(self, path: Path) -> None:
        task = asyncio.ensure_future(self.ingest(path))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def scan(self) -> List[int]:
        """Ingest files that arrived while nobody was watching."""
        if not self.uploads_dir.is_dir():
            return []
        created = []
        for path in sorted(self.uploads_dir.iterdir()):
            if path.is_file() and is_video_file(path):
                video_id = await self.ingest(path)
                if video_id is not None:
                    created.append(video_id)
        if created:
            logger.info(f"Start-up scan ingested {len(created)} files from {self.uploads_dir}")
        return created

    async def start(self) -> None:
        self.uploads_dir.mkdir(parents=True, exist_ok=True)
        await self.scan()

        loop = asyncio.get_running_loop()
        self._handler = UploadEventHandler(loop, self._on_ready, debounce_delay=self.debounce_delay)
        self._observer = Observer()
        self._observer.schedule(self._handler, str(self.uploads_dir), recursive=False)
        self._observer.start()
        logger.info(f"Upload watcher started on {self.uploads_dir}")

    async def stop(self) -> None:
        if self._observer is not None:
            self._observer.stop()
            self._observer.join(timeout=5)
            self._observer = None
        if self._handler is not None:
            self._handler.cleanup()
            self._handler = None
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        logger.info("Upload watcher stopped")
