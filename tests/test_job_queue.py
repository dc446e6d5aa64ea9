"""Tests for the Redis list job queue.

Tests cover:
- Payload encoding/decoding ("videoID:profileID")
- Rejection of malformed payloads
- FIFO dispatch regardless of priority
- Backend failures surfacing as QueueUnavailableError
- Queue statistics
"""

from collections import deque
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from core.errors import InvalidPayloadError, QueueUnavailableError
from core.job_queue import JobQueue, QueueItem, decode_payload, encode_payload, get_job_queue


class TestPayloadCodec:
    """Tests for the queue payload format."""

    def test_encode_payload(self):
        assert encode_payload(5, 10) == "5:10"

    def test_encode_zero_ids(self):
        assert encode_payload(0, 0) == "0:0"

    def test_encode_rejects_negative_ids(self):
        with pytest.raises(ValueError):
            encode_payload(-1, 10)

    def test_decode_payload(self):
        assert decode_payload("5:10") == QueueItem(video_id=5, profile_id=10)

    def test_decode_bytes_payload(self):
        assert decode_payload(b"7:21") == QueueItem(video_id=7, profile_id=21)

    def test_queue_item_payload_property(self):
        assert QueueItem(video_id=3, profile_id=9).payload == "3:9"

    @pytest.mark.parametrize(
        "payload",
        [
            "",
            "5",
            "5:10:15",
            "abc:10",
            "5:xyz",
            "-5:10",
            "5:-10",
            ":10",
            "5:",
            " 5:10",
            "5:10\n",
            "5.0:10",
        ],
    )
    def test_decode_rejects_malformed(self, payload):
        """Anything but two non-negative decimal integers is rejected."""
        with pytest.raises(InvalidPayloadError) as exc_info:
            decode_payload(payload)
        assert exc_info.value.payload == payload

    def test_decode_rejects_non_ascii_bytes(self):
        with pytest.raises(InvalidPayloadError):
            decode_payload("５:10".encode("utf-8"))

    def test_decode_rejects_unicode_digits(self):
        """Full-width digits are not decimal ASCII ids."""
        with pytest.raises(InvalidPayloadError):
            decode_payload("５:10")


class TestJobQueue:
    """Tests for enqueue/dequeue against an in-memory list backend."""

    @pytest.mark.asyncio
    async def test_enqueue_writes_payload(self, job_queue, fake_redis):
        """Enqueueing profile 10 of video 5 puts "5:10" on the list."""
        await job_queue.enqueue(5, 10, priority=1)

        assert list(fake_redis.lists["test:transcode_queue"]) == ["5:10"]

    @pytest.mark.asyncio
    async def test_enqueue_dequeue_round_trip(self, job_queue):
        await job_queue.enqueue(5, 10, priority=1)

        item = await job_queue.dequeue(timeout=1)

        assert item == QueueItem(video_id=5, profile_id=10)

    @pytest.mark.asyncio
    async def test_dequeue_is_fifo_regardless_of_priority(self, job_queue):
        await job_queue.enqueue(1, 1, priority=0)
        await job_queue.enqueue(2, 2, priority=100)
        await job_queue.enqueue(3, 3, priority=5)

        order = [await job_queue.dequeue(timeout=1) for _ in range(3)]

        assert [item.video_id for item in order] == [1, 2, 3]

    @pytest.mark.asyncio
    async def test_dequeue_empty_returns_none(self, job_queue):
        assert await job_queue.dequeue(timeout=1) is None

    @pytest.mark.asyncio
    async def test_dequeue_malformed_drops_entry(self, job_queue, fake_redis):
        """A malformed entry is consumed and reported; the next entry is still served."""
        fake_redis.lists["test:transcode_queue"] = deque(["6:7", "1:2:3"])

        with pytest.raises(InvalidPayloadError):
            await job_queue.dequeue(timeout=1)

        assert await job_queue.dequeue(timeout=1) == QueueItem(6, 7)
        assert await job_queue.length() == 0

    @pytest.mark.asyncio
    async def test_length(self, job_queue):
        await job_queue.enqueue(1, 1)
        await job_queue.enqueue(1, 2)
        assert await job_queue.length() == 2

    @pytest.mark.asyncio
    async def test_enqueue_backend_error(self, job_queue, fake_redis):
        fake_redis.fail_with = RedisConnectionError("Connection refused")

        with pytest.raises(QueueUnavailableError):
            await job_queue.enqueue(5, 10)

    @pytest.mark.asyncio
    async def test_dequeue_backend_error(self, job_queue, fake_redis):
        fake_redis.fail_with = RedisConnectionError("Connection refused")

        with pytest.raises(QueueUnavailableError):
            await job_queue.dequeue(timeout=1)

    @pytest.mark.asyncio
    async def test_get_queue_stats(self, job_queue):
        await job_queue.enqueue(5, 10)

        stats = await job_queue.get_queue_stats()

        assert stats == {"available": True, "queue": "test:transcode_queue", "length": 1}

    @pytest.mark.asyncio
    async def test_get_queue_stats_unavailable(self, job_queue, fake_redis):
        fake_redis.fail_with = RedisConnectionError("down")

        stats = await job_queue.get_queue_stats()

        assert stats["available"] is False
        assert stats["length"] is None


class TestSharedRedisBackend:
    """Tests for the queue bound to the RedisClient singleton."""

    @pytest.mark.asyncio
    async def test_unavailable_redis_raises(self):
        manager = MagicMock()
        manager.get_client = AsyncMock(return_value=None)

        with patch("core.job_queue.RedisClient.get_instance", AsyncMock(return_value=manager)):
            queue = JobQueue(queue_name="q")
            with pytest.raises(QueueUnavailableError):
                await queue.dequeue(timeout=1)

    @pytest.mark.asyncio
    async def test_failures_feed_circuit_breaker(self):
        client = MagicMock()
        client.brpop = AsyncMock(side_effect=RedisConnectionError("reset"))
        manager = MagicMock()
        manager.get_client = AsyncMock(return_value=client)

        with patch("core.job_queue.RedisClient.get_instance", AsyncMock(return_value=manager)):
            queue = JobQueue(queue_name="q")
            with pytest.raises(QueueUnavailableError):
                await queue.dequeue(timeout=1)

        manager.record_failure.assert_called_once()

    @pytest.mark.asyncio
    async def test_success_resets_circuit_breaker(self):
        client = MagicMock()
        client.lpush = AsyncMock(return_value=1)
        manager = MagicMock()
        manager.get_client = AsyncMock(return_value=client)

        with patch("core.job_queue.RedisClient.get_instance", AsyncMock(return_value=manager)):
            await JobQueue(queue_name="q").enqueue(5, 10)

        client.lpush.assert_awaited_once_with("q", "5:10")
        manager.record_success.assert_called_once()

    def test_get_job_queue_is_shared(self):
        assert get_job_queue() is get_job_queue()

    def test_reserve_consumers_sizes_shared_pool(self):
        with patch("core.job_queue.RedisClient.reserve_connections") as reserve:
            JobQueue(queue_name="q").reserve_consumers(8)

        reserve.assert_called_once_with(8)

    def test_reserve_consumers_ignored_for_bound_client(self, fake_redis):
        with patch("core.job_queue.RedisClient.reserve_connections") as reserve:
            JobQueue(redis=fake_redis, queue_name="q").reserve_consumers(8)

        reserve.assert_not_called()
