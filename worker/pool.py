"""
Worker pool: N asyncio workers pulling from the shared transcode queue.

Each worker handles one job at a time. Stopping is cooperative: a shutdown
request wakes idle workers immediately, while a worker in the middle of a job
finishes it (the encoder is never cancelled) and exits afterwards.
"""

import asyncio
import logging
import signal
from typing import List, Optional

from config import WORKER_COUNT, WORKER_DEQUEUE_TIMEOUT, WORKER_ERROR_BACKOFF, WORKER_IDLE_DELAY
from core.errors import InvalidPayloadError, QueueUnavailableError
from core.job_queue import JobQueue, QueueItem
from worker.transcoder import OUTCOME_COMPLETED, OUTCOME_FAILED, JobProcessor

logger = logging.getLogger(__name__)


class WorkerState:
    """Counters and the in-flight item of one worker."""

    def __init__(self, worker_id: int):
        self.worker_id = worker_id
        self.jobs_processed = 0
        self.jobs_failed = 0
        self.current_item: Optional[QueueItem] = None

    def to_dict(self) -> dict:
        return {
            "worker_id": self.worker_id,
            "jobs_processed": self.jobs_processed,
            "jobs_failed": self.jobs_failed,
            "current": self.current_item.payload if self.current_item else None,
        }


class WorkerPool:
    def __init__(
        self,
        processor: JobProcessor,
        queue: JobQueue,
        size: int = WORKER_COUNT,
        dequeue_timeout: int = WORKER_DEQUEUE_TIMEOUT,
        idle_delay: float = WORKER_IDLE_DELAY,
        error_backoff: float = WORKER_ERROR_BACKOFF,
    ):
        if size < 1:
            raise ValueError(f"Worker pool size must be at least 1, got {size}")
        self.processor = processor
        self.queue = queue
        self.size = size
        queue.reserve_consumers(size)
        self.dequeue_timeout = dequeue_timeout
        self.idle_delay = idle_delay
        self.error_backoff = error_backoff
        self.workers: List[WorkerState] = [WorkerState(i + 1) for i in range(size)]
        self._stop = asyncio.Event()

    @property
    def shutdown_requested(self) -> bool:
        return self._stop.is_set()

    def request_shutdown(self) -> None:
        """Ask every worker to exit once its current job (if any) is done."""
        if not self._stop.is_set():
            logger.info("Shutdown requested, waiting for in-flight jobs to finish")
        self._stop.set()

    def status(self) -> List[dict]:
        return [state.to_dict() for state in self.workers]

    def install_signal_handlers(self, loop: Optional[asyncio.AbstractEventLoop] = None) -> None:
        """Route SIGINT/SIGTERM to request_shutdown()."""
        loop = loop or asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, self._on_signal, sig)
            except (NotImplementedError, RuntimeError):
                # Not on the main thread, or a platform without loop signal support
                signal.signal(sig, lambda signum, frame: loop.call_soon_threadsafe(self._on_signal, signum))

    def _on_signal(self, sig) -> None:
        name = signal.Signals(sig).name
        logger.info(f"{name} received, finishing current jobs and shutting down gracefully")
        self.request_shutdown()

    async def _sleep(self, seconds: float) -> None:
        """Sleep that returns early on shutdown."""
        if seconds <= 0:
            return
        try:
            await asyncio.wait_for(self._stop.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            pass

    async def run(self) -> None:
        """Start all workers and wait until every one of them has exited."""
        logger.info(f"Starting {self.size} workers on queue {self.queue.queue_name}")
        await asyncio.gather(*(self._worker_loop(state) for state in self.workers))
        logger.info("All workers stopped")

    async def _worker_loop(self, state: WorkerState) -> None:
        logger.info(f"Worker {state.worker_id} started")
        while not self._stop.is_set():
            try:
                item = await self.queue.dequeue(timeout=self.dequeue_timeout)
            except InvalidPayloadError as e:
                logger.warning(f"Worker {state.worker_id}: dropped malformed queue entry: {e}")
                continue
            except QueueUnavailableError as e:
                logger.error(f"Worker {state.worker_id}: queue unavailable, retrying in {self.error_backoff}s: {e}")
                await self._sleep(self.error_backoff)
                continue
            except Exception as e:
                logger.exception(f"Worker {state.worker_id}: unexpected dequeue error: {e}")
                await self._sleep(self.error_backoff)
                continue

            if item is None:
                await self._sleep(self.idle_delay)
                continue

            await self._handle(state, item)

        logger.info(
            f"Worker {state.worker_id} stopped ({state.jobs_processed} completed, {state.jobs_failed} failed)"
        )

    async def _handle(self, state: WorkerState, item: QueueItem) -> None:
        state.current_item = item
        logger.info(f"Worker {state.worker_id}: processing {item.payload}")
        try:
            outcome = await self.processor.process(item)
        except Exception as e:
            state.jobs_failed += 1
            logger.exception(f"Worker {state.worker_id}: job {item.payload} raised: {e}")
            return
        finally:
            state.current_item = None

        if outcome.status == OUTCOME_COMPLETED:
            state.jobs_processed += 1
        elif outcome.status == OUTCOME_FAILED:
            state.jobs_failed += 1
