"""
Transcode job queue on a Redis list.

Each entry is the ASCII payload "<video_id>:<profile_id>", e.g. "5:10".
Producers LPUSH and consumers BRPOP, so dispatch is FIFO. Job priority is
stored on the job record only; it does not reorder the queue.

Delivery is at-most-once: an entry is gone from the list as soon as a worker
pops it. A worker that crashes mid-job leaves its profile in "processing" and
the job has to be re-queued explicitly.
"""

import asyncio
import logging
import re
from dataclasses import dataclass
from typing import Optional, Union

from redis.exceptions import RedisError

from config import TRANSCODE_QUEUE_NAME, WORKER_DEQUEUE_TIMEOUT
from core.errors import InvalidPayloadError, QueueUnavailableError
from core.redis_client import RedisClient

logger = logging.getLogger(__name__)

_PAYLOAD_PATTERN = re.compile(r"([0-9]+):([0-9]+)")


@dataclass(frozen=True)
class QueueItem:
    """One dispatch request: encode `profile_id` of `video_id`."""

    video_id: int
    profile_id: int

    @property
    def payload(self) -> str:
        return encode_payload(self.video_id, self.profile_id)


def encode_payload(video_id: int, profile_id: int) -> str:
    """Render the wire form of a queue entry."""
    if video_id < 0 or profile_id < 0:
        raise ValueError(f"Queue ids must be non-negative, got {video_id}:{profile_id}")
    return f"{video_id}:{profile_id}"


def decode_payload(payload: Union[str, bytes]) -> QueueItem:
    """
    Parse a queue entry.

    Exactly two non-negative decimal integers separated by one colon are
    accepted. Anything else raises InvalidPayloadError.
    """
    if isinstance(payload, bytes):
        try:
            payload = payload.decode("ascii")
        except UnicodeDecodeError:
            raise InvalidPayloadError(payload, "not ASCII")

    if not isinstance(payload, str):
        raise InvalidPayloadError(payload, f"unexpected type {type(payload).__name__}")

    match = _PAYLOAD_PATTERN.fullmatch(payload)
    if not match:
        if payload.count(":") != 1:
            raise InvalidPayloadError(payload, "expected exactly one ':' separator")
        raise InvalidPayloadError(payload, "ids must be non-negative decimal integers")

    return QueueItem(video_id=int(match.group(1)), profile_id=int(match.group(2)))


class JobQueue:
    """
    Producer/consumer handle on the transcode queue.

    Pass `redis` to bind a specific client (tests, scripts); otherwise the
    shared RedisClient singleton is used and its circuit breaker is fed with
    the outcome of each command.
    """

    def __init__(self, redis=None, queue_name: str = TRANSCODE_QUEUE_NAME) -> None:
        self._redis = redis
        self.queue_name = queue_name

    def reserve_consumers(self, count: int) -> None:
        """Size the shared Redis pool for `count` concurrent blocking dequeues."""
        if self._redis is None:
            RedisClient.reserve_connections(count)

    async def _client(self):
        if self._redis is not None:
            return self._redis, None
        manager = await RedisClient.get_instance()
        client = await manager.get_client()
        if client is None:
            raise QueueUnavailableError("Redis is unavailable")
        return client, manager

    async def enqueue(self, video_id: int, profile_id: int, priority: int = 0) -> None:
        """
        Append a dispatch request to the queue.

        `priority` is accepted for logging only; ordering is always FIFO.

        Raises:
            QueueUnavailableError: if the push did not reach Redis
        """
        payload = encode_payload(video_id, profile_id)
        client, manager = await self._client()
        try:
            await client.lpush(self.queue_name, payload)
        except RedisError as e:
            if manager:
                manager.record_failure()
            raise QueueUnavailableError(f"Failed to enqueue {payload}: {e}") from e

        if manager:
            manager.record_success()
        logger.debug(f"Queued {payload} on {self.queue_name} (priority {priority})")

    async def dequeue(self, timeout: int = WORKER_DEQUEUE_TIMEOUT) -> Optional[QueueItem]:
        """
        Pop the oldest entry, waiting up to `timeout` seconds.

        Returns:
            The decoded QueueItem, or None if nothing arrived in time

        Raises:
            InvalidPayloadError: the popped entry was malformed (it is dropped)
            QueueUnavailableError: Redis could not be reached
        """
        client, manager = await self._client()
        try:
            result = await client.brpop([self.queue_name], timeout=timeout)
        except RedisError as e:
            if manager:
                manager.record_failure()
            raise QueueUnavailableError(f"Failed to dequeue from {self.queue_name}: {e}") from e
        except asyncio.TimeoutError as e:
            raise QueueUnavailableError(f"Timed out waiting on {self.queue_name}") from e

        if manager:
            manager.record_success()

        if result is None:
            return None

        _, payload = result
        return decode_payload(payload)

    async def length(self) -> int:
        """Number of entries waiting."""
        client, manager = await self._client()
        try:
            return int(await client.llen(self.queue_name))
        except RedisError as e:
            if manager:
                manager.record_failure()
            raise QueueUnavailableError(f"Failed to read length of {self.queue_name}: {e}") from e

    async def get_queue_stats(self) -> dict:
        """Queue summary for operators; never raises."""
        try:
            length = await self.length()
        except QueueUnavailableError as e:
            logger.warning(f"Failed to get queue stats: {e}")
            return {"available": False, "queue": self.queue_name, "length": None}
        return {"available": True, "queue": self.queue_name, "length": length}


# Process-wide queue handle
_job_queue: Optional[JobQueue] = None


def get_job_queue() -> JobQueue:
    """Get or create the shared JobQueue bound to the Redis singleton."""
    global _job_queue
    if _job_queue is None:
        _job_queue = JobQueue()
    return _job_queue
