"""Two-tier cache: in-process LRU in front of Redis.

Reads try the local tier first; a remote hit repopulates the local tier with
the remaining remote TTL. Writes go to both tiers. Remote failures are logged
and swallowed so a Redis outage degrades to a local-only cache.

There is no single-flight: concurrent ``get_or_set`` misses on the same key
each run the fetcher.
"""

from typing import Any, Awaitable, Callable

import structlog
from redis.exceptions import RedisError

from clipforge.core import metrics
from clipforge.services.cache.local import LocalCache
from clipforge.services.cache.remote import RemoteCache

logger = structlog.get_logger()


class CacheManager:
    """Multi-level cache facade used by the provider client and admission."""

    def __init__(self, local: LocalCache, remote: RemoteCache, default_ttl: int = 3600):
        self.local = local
        self.remote = remote
        self.default_ttl = default_ttl
        self.remote_errors = 0

    def _remote_failed(self, op: str, key: str, exc: Exception) -> None:
        self.remote_errors += 1
        logger.warning("cache.remote_error", op=op, key=key, error=str(exc))

    async def get(self, key: str) -> Any | None:
        value = self.local.get(key)
        if value is not None:
            metrics.CACHE_REQUESTS.labels(tier="local", result="hit").inc()
            return value

        try:
            value, ttl = await self.remote.get_with_ttl(key)
        except RedisError as e:
            self._remote_failed("get", key, e)
            metrics.CACHE_REQUESTS.labels(tier="remote", result="error").inc()
            return None

        if value is None:
            metrics.CACHE_REQUESTS.labels(tier="remote", result="miss").inc()
            return None

        metrics.CACHE_REQUESTS.labels(tier="remote", result="hit").inc()
        # -1 = no expiry on the remote side
        self.local.set(key, value, ttl if ttl > 0 else 0)
        return value

    async def set(self, key: str, value: Any, ttl: int | None = None) -> None:
        ttl = self.default_ttl if ttl is None else ttl
        self.local.set(key, value, ttl)
        try:
            await self.remote.set(key, value, ttl)
        except RedisError as e:
            self._remote_failed("set", key, e)

    async def delete(self, key: str) -> None:
        self.local.delete(key)
        try:
            await self.remote.delete(key)
        except RedisError as e:
            self._remote_failed("delete", key, e)

    async def delete_pattern(self, pattern: str) -> int:
        removed = self.local.delete_pattern(pattern)
        try:
            removed = max(removed, await self.remote.delete_pattern(pattern))
        except RedisError as e:
            self._remote_failed("delete_pattern", pattern, e)
        return removed

    async def get_or_set(
        self,
        key: str,
        fetcher: Callable[[], Awaitable[Any]],
        ttl: int | None = None,
    ) -> Any:
        """Return the cached value or compute, store and return it.

        The fetcher runs only if both tiers miss. Fetcher exceptions propagate
        and nothing is cached.
        """
        cached = await self.get(key)
        if cached is not None:
            return cached

        value = await fetcher()
        if value is not None:
            await self.set(key, value, ttl)
        return value

    async def increment(self, key: str, amount: int = 1, ttl: int | None = None) -> int:
        """Remote counter (shared across processes). Returns 0 if Redis fails."""
        try:
            return await self.remote.incr(key, amount, ttl)
        except RedisError as e:
            self._remote_failed("increment", key, e)
            return 0

    async def set_with_ttl(self, key: str, value: Any, ttl: int) -> None:
        """Remote-only write with an explicit TTL."""
        try:
            await self.remote.set(key, value, ttl)
        except RedisError as e:
            self._remote_failed("set_with_ttl", key, e)

    async def get_ttl(self, key: str) -> int:
        try:
            return await self.remote.ttl(key)
        except RedisError as e:
            self._remote_failed("get_ttl", key, e)
            return -1

    async def clear(self) -> None:
        """Flush the local tier and the namespaced remote keys."""
        self.local.clear()
        try:
            removed = await self.remote.clear()
            logger.info("cache.cleared", remote_keys=removed)
        except RedisError as e:
            self._remote_failed("clear", "*", e)

    def stats(self) -> dict[str, Any]:
        return {
            "local": self.local.stats(),
            "remote_errors": self.remote_errors,
            "namespace": self.remote.namespace,
        }
