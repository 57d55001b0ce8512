"""
Barley cache - failover backend.

Wraps a network primary (Redis) and an in-process fallback (memory).

Read/write path: primary while healthy, fallback otherwise.
Delete path: both backends while the primary is healthy, fallback only
otherwise. Entries invalidated while the primary was down stay on it until
their TTL expires, so a recovered primary may serve them until then.

Every primary failure is logged, counted as a failover and answered by the
fallback. An unhealthy primary is retried after ``retry_interval`` seconds.
"""

from __future__ import annotations

import logging
import time
from typing import Any, List, Optional, Set, Tuple

from ..core import CacheBackend, CacheEntry, CacheStats

logger = logging.getLogger("barley.cache.failover")


class FailoverBackend(CacheBackend):
    """Primary backend with transparent fallback."""

    def __init__(
        self,
        primary: CacheBackend,
        fallback: CacheBackend,
        retry_interval: float = 30.0,
    ):
        self._primary = primary
        self._fallback = fallback
        self._retry_interval = retry_interval
        self._primary_healthy = True
        self._unhealthy_since = 0.0
        self._failovers = 0

    @property
    def name(self) -> str:
        return f"failover({self._primary.name}->{self._fallback.name})"

    @property
    def is_distributed(self) -> bool:
        return self._primary.is_distributed and self._primary_healthy

    @property
    def primary_healthy(self) -> bool:
        return self._primary_healthy

    async def initialize(self) -> None:
        await self._fallback.initialize()
        try:
            await self._primary.initialize()
        except Exception as e:
            self._mark_unhealthy("initialize", e)

    async def shutdown(self) -> None:
        try:
            await self._primary.shutdown()
        except Exception as e:
            logger.warning("Primary cache shutdown failed: %s", e)
        await self._fallback.shutdown()

    # ── Health ───────────────────────────────────────────────────────

    def _use_primary(self) -> bool:
        if self._primary_healthy:
            return True
        if time.monotonic() - self._unhealthy_since >= self._retry_interval:
            logger.info("Retrying primary cache backend %s", self._primary.name)
            return True
        return False

    def _mark_unhealthy(self, operation: str, exc: Exception) -> None:
        self._failovers += 1
        if self._primary_healthy:
            logger.warning(
                "Primary cache %s failed during %s, falling back to %s: %s",
                self._primary.name, operation, self._fallback.name, exc,
            )
        else:
            logger.debug("Primary cache still unavailable during %s: %s", operation, exc)
        self._primary_healthy = False
        self._unhealthy_since = time.monotonic()

    def _mark_healthy(self) -> None:
        if not self._primary_healthy:
            logger.info("Primary cache %s recovered", self._primary.name)
        self._primary_healthy = True

    # ── Operations ───────────────────────────────────────────────────

    async def get(self, key: str) -> Optional[CacheEntry]:
        if self._use_primary():
            try:
                entry = await self._primary.get(key)
                self._mark_healthy()
                return entry
            except Exception as e:
                self._mark_unhealthy("get", e)
        return await self._fallback.get(key)

    async def set(
        self,
        key: str,
        value: Any,
        ttl: Optional[int] = None,
        tags: Tuple[str, ...] = (),
        namespace: str = "default",
    ) -> None:
        if self._use_primary():
            try:
                await self._primary.set(key, value, ttl=ttl, tags=tags, namespace=namespace)
                self._mark_healthy()
                return
            except Exception as e:
                self._mark_unhealthy("set", e)
        await self._fallback.set(key, value, ttl=ttl, tags=tags, namespace=namespace)

    async def delete(self, key: str) -> bool:
        deleted = await self._fallback.delete(key)
        if self._use_primary():
            try:
                deleted = await self._primary.delete(key) or deleted
                self._mark_healthy()
            except Exception as e:
                self._mark_unhealthy("delete", e)
        return deleted

    async def exists(self, key: str) -> bool:
        if self._use_primary():
            try:
                found = await self._primary.exists(key)
                self._mark_healthy()
                return found
            except Exception as e:
                self._mark_unhealthy("exists", e)
        return await self._fallback.exists(key)

    async def clear(self, namespace: Optional[str] = None) -> int:
        count = await self._fallback.clear(namespace)
        if self._use_primary():
            try:
                count += await self._primary.clear(namespace)
                self._mark_healthy()
            except Exception as e:
                self._mark_unhealthy("clear", e)
        return count

    async def keys(self, pattern: str = "*", namespace: Optional[str] = None) -> List[str]:
        if self._use_primary():
            try:
                found = await self._primary.keys(pattern, namespace)
                self._mark_healthy()
                return found
            except Exception as e:
                self._mark_unhealthy("keys", e)
        return await self._fallback.keys(pattern, namespace)

    async def delete_by_tags(self, tags: Set[str]) -> int:
        count = await self._fallback.delete_by_tags(tags)
        if self._use_primary():
            try:
                count += await self._primary.delete_by_tags(tags)
                self._mark_healthy()
            except Exception as e:
                self._mark_unhealthy("delete_by_tags", e)
        return count

    async def stats(self) -> CacheStats:
        active = self._primary if self._primary_healthy else self._fallback
        base = await active.stats()
        return CacheStats(
            hits=base.hits,
            misses=base.misses,
            sets=base.sets,
            deletes=base.deletes,
            evictions=base.evictions,
            errors=base.errors,
            failovers=self._failovers,
            size=base.size,
            max_size=base.max_size,
            backend=self.name,
        )

    async def health_check(self) -> bool:
        healthy = await self._primary.health_check()
        if healthy:
            self._mark_healthy()
        return healthy or await self._fallback.health_check()
