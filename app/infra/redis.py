"""
Redis Connection Management

Redis connection singleton and the per-IP sliding-window rate limiter.
Fails open: when Redis is unavailable the limiter keeps counting in
process instead of blocking traffic.
"""

import logging
import math
import time
import uuid
from collections import deque
from typing import Callable, Optional

import redis.asyncio as redis
from redis.asyncio import Redis
from redis.asyncio.retry import Retry
from redis.backoff import ExponentialBackoff
from redis.exceptions import ConnectionError, TimeoutError, RedisError

from app.config import settings

# Logger
logger = logging.getLogger(__name__)

# App prefix for namespacing (allows multiple apps/versions on same Redis)
APP_PREFIX = "gateway:v1:"

# In-process store sweeps expired windows above this many keys
SWEEP_THRESHOLD = 10_000


class RedisClient:
    """
    Manages Redis connection as a singleton.

    Connection failures are logged and reported as None so callers can
    degrade instead of failing the request.
    """

    _client: Optional[Redis] = None
    _connected: bool = False

    @classmethod
    async def get_client(cls) -> Optional[Redis]:
        """
        Get or create Redis client.

        Returns:
            Redis client or None if connection fails
        """
        if cls._client is not None and cls._connected:
            return cls._client

        try:
            retry = Retry(ExponentialBackoff(), retries=3)

            cls._client = redis.from_url(
                settings.redis_url,
                encoding="utf-8",
                decode_responses=True,
                socket_connect_timeout=5.0,
                socket_timeout=5.0,
                retry_on_timeout=True,
                retry=retry,
            )

            await cls._client.ping()
            cls._connected = True
            logger.info("Redis connection established successfully")
            return cls._client

        except (ConnectionError, TimeoutError, RedisError) as e:
            logger.error(f"Failed to connect to Redis: {e}")
            cls._connected = False
            cls._client = None
            return None

    @classmethod
    async def close(cls) -> None:
        """Close Redis connection."""
        if cls._client is not None:
            try:
                await cls._client.aclose()
                logger.info("Redis connection closed")
            except RedisError as e:
                logger.error(f"Error closing Redis connection: {e}")
            finally:
                cls._client = None
                cls._connected = False

    @classmethod
    def is_connected(cls) -> bool:
        """Check if Redis is connected."""
        return cls._connected


async def get_redis() -> Optional[Redis]:
    """
    FastAPI dependency that provides Redis client.

    Returns None if Redis is unavailable.
    """
    return await RedisClient.get_client()


class SlidingWindowStore:
    """
    In-process sliding window used when Redis is unavailable.

    Keeps a deque of request timestamps per identifier. Once more than
    SWEEP_THRESHOLD identifiers are tracked, identifiers whose windows
    have fully expired are dropped.
    """

    def __init__(
        self,
        max_requests: int,
        window_seconds: int,
        clock: Callable[[], float] = time.time,
        sweep_threshold: int = SWEEP_THRESHOLD,
    ):
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self._clock = clock
        self._sweep_threshold = sweep_threshold
        self._hits: dict[str, deque] = {}

    def __len__(self) -> int:
        return len(self._hits)

    def _sweep(self, now: float) -> None:
        cutoff = now - self.window_seconds
        stale = [key for key, hits in self._hits.items() if not hits or hits[-1] <= cutoff]
        for key in stale:
            del self._hits[key]
        if stale:
            logger.debug(f"Rate limit sweep | removed: {len(stale)} | remaining: {len(self._hits)}")

    def hit(self, identifier: str) -> tuple[bool, int, int, int]:
        """
        Record a request and decide whether it is allowed.

        Returns:
            Tuple of (allowed, remaining, used, reset_seconds)
        """
        now = self._clock()
        if len(self._hits) > self._sweep_threshold:
            self._sweep(now)

        hits = self._hits.setdefault(identifier, deque())
        cutoff = now - self.window_seconds
        while hits and hits[0] <= cutoff:
            hits.popleft()
        hits.append(now)

        used = len(hits)
        reset_seconds = max(1, math.ceil(hits[0] + self.window_seconds - now))
        return (
            used <= self.max_requests,
            max(0, self.max_requests - used),
            used,
            reset_seconds,
        )

    def clear(self) -> None:
        self._hits.clear()


class RateLimiterStore:
    """
    Redis sliding-window limiter over a sorted set per identifier.

    Key: gateway:v1:ratelimit:{identifier}

    Each request prunes entries older than the window, adds itself, and
    counts the set in one pipeline. Redis errors fall through to the
    in-process SlidingWindowStore.
    """

    RATELIMIT_PREFIX = f"{APP_PREFIX}ratelimit:"

    def __init__(
        self,
        redis_client: Optional[Redis],
        fallback: Optional[SlidingWindowStore] = None,
        max_requests: Optional[int] = None,
        window_seconds: Optional[int] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.redis = redis_client
        self.max_requests = max_requests or settings.rate_limit_requests
        self.window_seconds = window_seconds or settings.rate_limit_window
        self.fallback = fallback or SlidingWindowStore(self.max_requests, self.window_seconds)
        self._clock = clock

    def _key(self, identifier: str) -> str:
        """Generate rate limit key with namespace."""
        return f"{self.RATELIMIT_PREFIX}{identifier}"

    async def is_allowed(self, identifier: str) -> tuple[bool, int, int, int]:
        """
        Check and record one request for `identifier`.

        Returns:
            Tuple of (allowed, remaining, used, reset_seconds)
        """
        if self.redis is None:
            return self.fallback.hit(identifier)

        key = self._key(identifier)
        now = self._clock()
        member = f"{now}-{uuid.uuid4().hex[:8]}"

        try:
            async with self.redis.pipeline(transaction=True) as pipe:
                pipe.zremrangebyscore(key, 0, now - self.window_seconds)
                pipe.zadd(key, {member: now})
                pipe.zcard(key)
                pipe.zrange(key, 0, 0, withscores=True)
                pipe.expire(key, self.window_seconds)
                _, _, used, oldest, _ = await pipe.execute()
        except RedisError as e:
            logger.warning(f"Rate limit check failed for {identifier}: {e} - using in-process window")
            return self.fallback.hit(identifier)

        oldest_score = oldest[0][1] if oldest else now
        reset_seconds = max(1, math.ceil(oldest_score + self.window_seconds - now))
        allowed = used <= self.max_requests

        if not allowed:
            logger.info(f"Rate limit exceeded for {identifier}")

        return (allowed, max(0, self.max_requests - used), used, reset_seconds)

    async def reset(self, identifier: str) -> bool:
        """Reset rate limit for an identifier."""
        self.fallback._hits.pop(identifier, None)
        if self.redis is None:
            return False

        try:
            await self.redis.delete(self._key(identifier))
            logger.debug(f"Rate limit reset for {identifier}")
            return True
        except RedisError as e:
            logger.error(f"Failed to reset rate limit for {identifier}: {e}")
            return False


# Shared in-process window so the fallback survives across requests
_memory_store: Optional[SlidingWindowStore] = None


def get_memory_store() -> SlidingWindowStore:
    global _memory_store
    if _memory_store is None:
        _memory_store = SlidingWindowStore(settings.rate_limit_requests, settings.rate_limit_window)
    return _memory_store


async def get_rate_limiter_store() -> RateLimiterStore:
    """
    Get RateLimiterStore instance.

    Returns a store even if Redis is unavailable (in-process fallback).
    """
    client = await get_redis()
    return RateLimiterStore(client, fallback=get_memory_store())


async def check_redis_health() -> bool:
    """
    Check Redis connectivity for health checks.

    Returns:
        True if Redis is accessible and responding, False otherwise
    """
    try:
        client = await get_redis()
        if client is None:
            return False

        await client.ping()
        return True

    except RedisError as e:
        logger.error(f"Redis health check failed: {e}")
        return False
