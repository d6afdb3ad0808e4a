"""Redis-backed cache tier.

Values are stored as JSON. Keys are prefixed with a namespace so that
``clear()`` never touches queue or progress keys living in the same database.
Connection retries are delegated to redis-py's ``Retry`` policy; errors that
survive it propagate to the caller.
"""

import json
from typing import Any

import structlog
from redis.asyncio import Redis
from redis.backoff import ExponentialBackoff
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import TimeoutError as RedisTimeoutError
from redis.retry import Retry

from clipforge.core.config import Settings

logger = structlog.get_logger()


def create_redis(settings: Settings) -> Redis:
    """Create the shared asyncio Redis client.

    Reconnects with exponential backoff (100 ms base, capped at 3 s) for up to
    ``REDIS_MAX_RETRIES`` attempts on connection and timeout errors.
    """
    retry = Retry(ExponentialBackoff(cap=3, base=0.1), settings.redis_max_retries)
    return Redis.from_url(
        settings.redis_url,
        decode_responses=True,
        retry=retry,
        retry_on_error=[RedisConnectionError, RedisTimeoutError],
        health_check_interval=30,
    )


class RemoteCache:
    """JSON key/value operations over a namespaced Redis keyspace."""

    def __init__(self, redis: Redis, namespace: str = "cache"):
        self.redis = redis
        self.namespace = namespace

    def _key(self, key: str) -> str:
        return f"{self.namespace}:{key}"

    async def get(self, key: str) -> Any | None:
        raw = await self.redis.get(self._key(key))
        if raw is None:
            return None
        return json.loads(raw)

    async def get_with_ttl(self, key: str) -> tuple[Any | None, int]:
        """Fetch value and remaining TTL in one round trip.

        Returns:
            (value, ttl) where ttl follows Redis semantics: -1 no expiry, -2 missing
        """
        async with self.redis.pipeline(transaction=False) as pipe:
            pipe.get(self._key(key))
            pipe.ttl(self._key(key))
            raw, ttl = await pipe.execute()
        if raw is None:
            return None, -2
        return json.loads(raw), ttl

    async def set(self, key: str, value: Any, ttl: int | None = None) -> None:
        payload = json.dumps(value, default=str)
        if ttl and ttl > 0:
            await self.redis.set(self._key(key), payload, ex=int(ttl))
        else:
            await self.redis.set(self._key(key), payload)

    async def delete(self, key: str) -> int:
        return await self.redis.delete(self._key(key))

    async def delete_pattern(self, pattern: str) -> int:
        """Delete all namespaced keys matching a glob pattern (SCAN based)."""
        keys = [k async for k in self.redis.scan_iter(match=self._key(pattern), count=500)]
        if not keys:
            return 0
        return await self.redis.delete(*keys)

    async def incr(self, key: str, amount: int = 1, ttl: int | None = None) -> int:
        """Increment a counter; ``ttl`` is applied only when the key is created."""
        value = await self.redis.incrby(self._key(key), amount)
        if ttl and value == amount:
            await self.redis.expire(self._key(key), int(ttl))
        return value

    async def expire(self, key: str, ttl: int) -> bool:
        return await self.redis.expire(self._key(key), int(ttl))

    async def ttl(self, key: str) -> int:
        return await self.redis.ttl(self._key(key))

    async def clear(self) -> int:
        return await self.delete_pattern("*")
