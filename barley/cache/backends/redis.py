"""
Barley cache - Redis backend for multi-instance deployments.

- Values serialized with orjson (``JsonCacheSerializer``)
- SETEX plus tag and namespace index sets written in one pipeline
- Tag invalidation through the ``_tags:{tag}`` sets

By default failures are logged, counted and reported as misses. With
``raise_errors=True`` they propagate instead so ``FailoverBackend`` can
switch to its fallback.
"""

from __future__ import annotations

import fnmatch
import logging
import time
from typing import Any, List, Optional, Set, Tuple

import redis.asyncio as aioredis

from ..core import CacheBackend, CacheEntry, CacheStats
from ..serializers import JsonCacheSerializer

logger = logging.getLogger("barley.cache.redis")


class RedisBackend(CacheBackend):
    """Redis-backed cache using redis-py's asyncio client."""

    def __init__(
        self,
        url: str = "redis://localhost:6379/0",
        *,
        max_connections: int = 10,
        socket_timeout: float = 2.0,
        connect_timeout: float = 2.0,
        key_prefix: str = "",
        serializer: Optional[Any] = None,
        raise_errors: bool = False,
        client: Any = None,
    ):
        self._url = url
        self._max_connections = max_connections
        self._socket_timeout = socket_timeout
        self._connect_timeout = connect_timeout
        self._key_prefix = key_prefix
        self._serializer = serializer or JsonCacheSerializer()
        self._raise_errors = raise_errors
        self._redis = client
        self._stats = CacheStats(backend="redis")

    @property
    def name(self) -> str:
        return "redis"

    @property
    def is_distributed(self) -> bool:
        return True

    async def initialize(self) -> None:
        """Connect and verify the connection with PING."""
        if self._redis is None:
            self._redis = aioredis.from_url(
                self._url,
                max_connections=self._max_connections,
                socket_timeout=self._socket_timeout,
                socket_connect_timeout=self._connect_timeout,
                decode_responses=False,
            )
        await self._redis.ping()
        logger.info("Redis cache connected: %s", self._url)

    async def shutdown(self) -> None:
        if self._redis is not None:
            await self._redis.aclose()
            self._redis = None

    def _full_key(self, key: str) -> str:
        return f"{self._key_prefix}{key}"

    def _tag_set_key(self, tag: str) -> str:
        return f"{self._key_prefix}_tags:{tag}"

    def _ns_set_key(self, namespace: str) -> str:
        return f"{self._key_prefix}_ns:{namespace}"

    def _failed(self, operation: str, key: str, exc: Exception) -> None:
        self._stats.errors += 1
        logger.warning("Redis %s error for key '%s': %s", operation, key, exc)
        if self._raise_errors:
            raise exc

    def _client(self) -> Any:
        if self._redis is None:
            raise ConnectionError("Redis backend is not initialized")
        return self._redis

    async def get(self, key: str) -> Optional[CacheEntry]:
        full_key = self._full_key(key)
        try:
            client = self._client()
            raw = await client.get(full_key)
            if raw is None:
                self._stats.misses += 1
                return None
            value = self._serializer.deserialize(raw)
            ttl = await client.ttl(full_key)
        except Exception as e:
            self._failed("GET", key, e)
            return None

        self._stats.hits += 1
        expires_at = time.monotonic() + ttl if ttl and ttl > 0 else None
        return CacheEntry(key=key, value=value, expires_at=expires_at)

    async def set(
        self,
        key: str,
        value: Any,
        ttl: Optional[int] = None,
        tags: Tuple[str, ...] = (),
        namespace: str = "default",
    ) -> None:
        full_key = self._full_key(key)
        try:
            serialized = self._serializer.serialize(value)
            pipe = self._client().pipeline()
            if ttl and ttl > 0:
                pipe.setex(full_key, int(ttl), serialized)
            else:
                pipe.set(full_key, serialized)
            for tag in tags:
                tag_key = self._tag_set_key(tag)
                pipe.sadd(tag_key, full_key)
                if ttl and ttl > 0:
                    pipe.expire(tag_key, int(ttl) + 60)
            pipe.sadd(self._ns_set_key(namespace), full_key)
            await pipe.execute()
            self._stats.sets += 1
        except Exception as e:
            self._failed("SET", key, e)

    async def delete(self, key: str) -> bool:
        try:
            result = await self._client().delete(self._full_key(key))
        except Exception as e:
            self._failed("DELETE", key, e)
            return False
        if result:
            self._stats.deletes += 1
            return True
        return False

    async def exists(self, key: str) -> bool:
        try:
            return bool(await self._client().exists(self._full_key(key)))
        except Exception as e:
            self._failed("EXISTS", key, e)
            return False

    async def clear(self, namespace: Optional[str] = None) -> int:
        try:
            client = self._client()
            if namespace:
                ns_key = self._ns_set_key(namespace)
                members = await client.smembers(ns_key)
                if not members:
                    return 0
                pipe = client.pipeline()
                for member in members:
                    pipe.delete(member)
                pipe.delete(ns_key)
                await pipe.execute()
                return len(members)

            count = 0
            async for batch_key in client.scan_iter(match=f"{self._key_prefix}*", count=1000):
                await client.delete(batch_key)
                count += 1
            return count
        except Exception as e:
            self._failed("CLEAR", namespace or "*", e)
            return 0

    async def keys(self, pattern: str = "*", namespace: Optional[str] = None) -> List[str]:
        try:
            client = self._client()
            if namespace:
                raw_keys = await client.smembers(self._ns_set_key(namespace))
            else:
                raw_keys = [k async for k in client.scan_iter(match=f"{self._key_prefix}*", count=1000)]
        except Exception as e:
            self._failed("KEYS", pattern, e)
            return []

        prefix_len = len(self._key_prefix)
        keys = []
        for raw in raw_keys:
            s = raw.decode("utf-8") if isinstance(raw, bytes) else raw
            rest = s[prefix_len:]
            if rest.startswith("_tags:") or rest.startswith("_ns:"):
                continue
            keys.append(rest)
        if pattern != "*":
            keys = [k for k in keys if fnmatch.fnmatch(k, pattern)]
        return keys

    async def stats(self) -> CacheStats:
        return self._stats

    async def delete_by_tags(self, tags: Set[str]) -> int:
        """Delete entries by tag using the tag index sets."""
        try:
            client = self._client()
            pipe = client.pipeline()
            for tag in tags:
                pipe.smembers(self._tag_set_key(tag))
            results = await pipe.execute()

            keys_to_delete: Set[bytes] = set()
            for members in results:
                if members:
                    keys_to_delete.update(members)

            pipe = client.pipeline()
            for key in keys_to_delete:
                pipe.delete(key)
            for tag in tags:
                pipe.delete(self._tag_set_key(tag))
            await pipe.execute()
        except Exception as e:
            self._failed("TAG DELETE", ",".join(sorted(tags)), e)
            return 0

        self._stats.deletes += len(keys_to_delete)
        return len(keys_to_delete)

    async def health_check(self) -> bool:
        if self._redis is None:
            return False
        try:
            await self._redis.ping()
            return True
        except Exception as e:
            logger.debug("Redis health check failed: %s", e)
            return False
