"""
Barley cache - in-memory backend.

LRU eviction on an OrderedDict with tag and namespace inverted indexes.
Guarded by an asyncio.Lock; an optional background task sweeps expired
entries so idle keys do not linger until capacity eviction.
"""

from __future__ import annotations

import asyncio
import fnmatch
import logging
import time
from collections import OrderedDict, defaultdict
from typing import Any, Dict, List, Optional, Set, Tuple

from ..core import CacheBackend, CacheEntry, CacheStats

logger = logging.getLogger("barley.cache.memory")


class MemoryBackend(CacheBackend):
    """
    In-process LRU cache.

    Used on its own for single-instance deployments and as the fallback of
    ``FailoverBackend``.
    """

    def __init__(self, max_size: int = 10000, sweep_interval: float = 60.0):
        self._max_size = max_size
        self._sweep_interval = sweep_interval
        self._store: "OrderedDict[str, CacheEntry]" = OrderedDict()
        self._lock = asyncio.Lock()
        self._stats = CacheStats(max_size=max_size, backend="memory")
        self._tag_index: Dict[str, Set[str]] = defaultdict(set)
        self._namespace_index: Dict[str, Set[str]] = defaultdict(set)
        self._sweeper_task: Optional[asyncio.Task] = None

    @property
    def name(self) -> str:
        return "memory"

    async def initialize(self) -> None:
        """Start the background TTL sweeper."""
        if self._sweep_interval > 0 and self._sweeper_task is None:
            self._sweeper_task = asyncio.get_running_loop().create_task(self._ttl_sweeper())

    async def shutdown(self) -> None:
        if self._sweeper_task and not self._sweeper_task.done():
            self._sweeper_task.cancel()
            try:
                await self._sweeper_task
            except asyncio.CancelledError:
                pass
        self._sweeper_task = None
        async with self._lock:
            self._store.clear()
            self._tag_index.clear()
            self._namespace_index.clear()

    async def get(self, key: str) -> Optional[CacheEntry]:
        async with self._lock:
            entry = self._store.get(key)
            if entry is None:
                self._stats.misses += 1
                return None
            if entry.is_expired:
                self._evict_key(key)
                self._stats.misses += 1
                return None
            self._stats.hits += 1
            self._store.move_to_end(key)
            return entry

    async def set(
        self,
        key: str,
        value: Any,
        ttl: Optional[int] = None,
        tags: Tuple[str, ...] = (),
        namespace: str = "default",
    ) -> None:
        async with self._lock:
            if key in self._store:
                self._evict_key(key)

            while len(self._store) >= self._max_size:
                self._evict_one()

            expires_at = None
            if ttl is not None and ttl > 0:
                expires_at = time.monotonic() + ttl

            self._store[key] = CacheEntry(
                key=key,
                value=value,
                expires_at=expires_at,
                tags=tuple(tags),
                namespace=namespace,
            )
            for tag in tags:
                self._tag_index[tag].add(key)
            self._namespace_index[namespace].add(key)

            self._stats.sets += 1
            self._stats.size = len(self._store)

    async def delete(self, key: str) -> bool:
        async with self._lock:
            if key in self._store:
                self._evict_key(key)
                self._stats.deletes += 1
                return True
            return False

    async def exists(self, key: str) -> bool:
        async with self._lock:
            entry = self._store.get(key)
            if entry is None:
                return False
            if entry.is_expired:
                self._evict_key(key)
                return False
            return True

    async def clear(self, namespace: Optional[str] = None) -> int:
        async with self._lock:
            if namespace is None:
                count = len(self._store)
                self._store.clear()
                self._tag_index.clear()
                self._namespace_index.clear()
                self._stats.size = 0
                return count

            keys_to_remove = list(self._namespace_index.get(namespace, set()))
            for key in keys_to_remove:
                self._evict_key(key)
            return len(keys_to_remove)

    async def keys(self, pattern: str = "*", namespace: Optional[str] = None) -> List[str]:
        async with self._lock:
            if namespace:
                candidates = list(self._namespace_index.get(namespace, set()))
            else:
                candidates = list(self._store.keys())
        if pattern == "*":
            return candidates
        return [k for k in candidates if fnmatch.fnmatch(k, pattern)]

    async def stats(self) -> CacheStats:
        self._stats.size = len(self._store)
        return self._stats

    async def delete_by_tags(self, tags: Set[str]) -> int:
        """Tag-based invalidation via the inverted index."""
        async with self._lock:
            keys_to_delete: Set[str] = set()
            for tag in tags:
                keys_to_delete.update(self._tag_index.get(tag, set()))
            for key in keys_to_delete:
                self._evict_key(key)
            self._stats.deletes += len(keys_to_delete)
            return len(keys_to_delete)

    # ── Private helpers ──────────────────────────────────────────────

    def _evict_key(self, key: str) -> None:
        """Remove a key and clean up all indices. Caller must hold lock."""
        entry = self._store.pop(key, None)
        if entry is None:
            return
        for tag in entry.tags:
            tag_set = self._tag_index.get(tag)
            if tag_set:
                tag_set.discard(key)
                if not tag_set:
                    del self._tag_index[tag]
        ns_set = self._namespace_index.get(entry.namespace)
        if ns_set:
            ns_set.discard(key)
            if not ns_set:
                del self._namespace_index[entry.namespace]
        self._stats.size = len(self._store)

    def _evict_one(self) -> None:
        """Evict the least recently used entry. Caller must hold lock."""
        if not self._store:
            return
        self._evict_key(next(iter(self._store)))
        self._stats.evictions += 1

    async def _ttl_sweeper(self) -> None:
        while True:
            await asyncio.sleep(self._sweep_interval)
            swept = await self.sweep_expired()
            if swept:
                logger.debug("TTL sweeper removed %d expired entries", swept)

    async def sweep_expired(self) -> int:
        """Remove every expired entry."""
        async with self._lock:
            expired = [k for k, entry in self._store.items() if entry.is_expired]
            for key in expired:
                self._evict_key(key)
            self._stats.evictions += len(expired)
            return len(expired)
