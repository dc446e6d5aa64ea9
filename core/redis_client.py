"""
Shared Redis connection for the transcode queue.

One blocking connection pool per process. Every worker parks a connection in
BRPOP for up to the dequeue timeout, so the pool holds REDIS_POOL_SIZE
connections plus one per reserved consumer; a caller that finds every
connection busy waits for one instead of failing.

A circuit breaker keeps a dead Redis from being hammered by every worker: after
CIRCUIT_FAILURE_THRESHOLD consecutive failed commands the queue reports itself
unavailable until the backoff elapses, then one call is let through.
"""

import asyncio
import logging
import time
from typing import Optional

from redis.asyncio import BlockingConnectionPool, Redis
from redis.exceptions import RedisError

from config import REDIS_POOL_SIZE, REDIS_SOCKET_CONNECT_TIMEOUT, REDIS_SOCKET_TIMEOUT, REDIS_URL

logger = logging.getLogger(__name__)

CIRCUIT_FAILURE_THRESHOLD = 3
CIRCUIT_BASE_BACKOFF = 30  # seconds
CIRCUIT_MAX_BACKOFF = 300  # seconds


def circuit_backoff(failures: int) -> int:
    """Seconds the circuit stays open after `failures` consecutive failures: 30, 60, 120, 240, then 300."""
    return min(CIRCUIT_MAX_BACKOFF, CIRCUIT_BASE_BACKOFF * 2 ** (failures - CIRCUIT_FAILURE_THRESHOLD))


class RedisClient:
    """Process-wide Redis pool with a circuit breaker."""

    _instance: Optional["RedisClient"] = None
    _lock: Optional[asyncio.Lock] = None
    _reserved_connections: int = 0

    def __init__(self, url: Optional[str] = None, pool_size: int = REDIS_POOL_SIZE) -> None:
        self.url = REDIS_URL if url is None else url
        self.max_connections = pool_size + self._reserved_connections
        self.consecutive_failures = 0
        self._pool: Optional[BlockingConnectionPool] = None
        self._client: Optional[Redis] = None
        self._open_until: Optional[float] = None

    @classmethod
    def reserve_connections(cls, count: int) -> None:
        """
        Make room in the pool for `count` long-lived consumers (BRPOP callers).

        Only takes effect for a pool created afterwards; reserve before the
        first queue command.
        """
        cls._reserved_connections = max(cls._reserved_connections, count)
        if cls._instance is not None and cls._instance.max_connections < REDIS_POOL_SIZE + count:
            logger.warning(
                f"Redis pool already created with {cls._instance.max_connections} connections; "
                f"{count} consumers may wait for a free one"
            )

    @classmethod
    async def get_instance(cls) -> "RedisClient":
        """Get the shared client, connecting it on first use."""
        if cls._lock is None:
            cls._lock = asyncio.Lock()
        async with cls._lock:
            if cls._instance is None:
                instance = cls()
                await instance.connect()
                cls._instance = instance
            return cls._instance

    @classmethod
    async def reset_instance(cls) -> None:
        """Close and drop the shared client (shutdown and tests)."""
        instance, cls._instance = cls._instance, None
        cls._lock = None
        cls._reserved_connections = 0
        if instance is not None:
            await instance.close()

    async def connect(self) -> None:
        """
        Build the pool and ping once.

        A failed ping counts towards the circuit but keeps the pool, so the
        queue recovers by itself once Redis comes back.
        """
        if not self.url:
            logger.info("Redis URL not configured, job queue disabled")
            return

        try:
            self._pool = BlockingConnectionPool.from_url(
                self.url,
                max_connections=self.max_connections,
                timeout=REDIS_SOCKET_TIMEOUT,
                # Kept above the BRPOP wait at config load
                socket_timeout=REDIS_SOCKET_TIMEOUT,
                socket_connect_timeout=REDIS_SOCKET_CONNECT_TIMEOUT,
                decode_responses=True,
            )
        except ValueError as e:
            logger.error(f"Invalid Redis URL, job queue disabled: {e}")
            return
        self._client = Redis(connection_pool=self._pool)

        try:
            await self._client.ping()
        except (RedisError, OSError) as e:
            logger.warning(f"Redis not reachable at start-up: {e}")
            self.record_failure()
            return

        self.record_success()
        logger.info(f"Redis pool ready ({self.max_connections} connections): {self.url.split('@')[-1]}")

    @property
    def circuit_open(self) -> bool:
        return self._open_until is not None and time.monotonic() < self._open_until

    @property
    def is_available(self) -> bool:
        """True when a pool exists and the circuit is closed (or half-open)."""
        return self._client is not None and not self.circuit_open

    async def get_client(self) -> Optional[Redis]:
        """The Redis client, or None while unavailable."""
        if not self.is_available:
            return None
        return self._client

    def record_failure(self) -> None:
        """Count a failed command; opens the circuit at the threshold."""
        self.consecutive_failures += 1
        if self.consecutive_failures < CIRCUIT_FAILURE_THRESHOLD:
            return

        backoff = circuit_backoff(self.consecutive_failures)
        self._open_until = time.monotonic() + backoff
        logger.warning(
            f"Redis circuit breaker opened for {backoff}s (consecutive failures: {self.consecutive_failures})"
        )

    def record_success(self) -> None:
        if self.consecutive_failures:
            logger.info(f"Redis connection recovered after {self.consecutive_failures} failures")
        self.consecutive_failures = 0
        self._open_until = None

    async def close(self) -> None:
        client, pool = self._client, self._pool
        self._client = self._pool = None
        if client is not None:
            await client.aclose()
        if pool is not None:
            await pool.disconnect()
