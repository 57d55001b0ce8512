"""
Barley cache - CacheService.

Single entry point for application caching. Builds namespaced keys,
applies the default TTL and guarantees that no cache failure ever reaches
the caller: errors are logged and behave as misses.

Usage::

    orders = await cache.cache_aside(
        generate_cache_key("order", order_number),
        lambda: repository.get(order_number),
        ttl=300,
        tags=("orders", f"order:{order_number}"),
    )
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from typing import Any, Awaitable, Callable, Dict, Iterable, Optional, TypeVar, Union

from .core import CacheBackend, CacheStats

logger = logging.getLogger("barley.cache")

T = TypeVar("T")

Loader = Callable[[], Union[T, Awaitable[T]]]


async def _call(fn: Callable[..., Any], *args: Any) -> Any:
    result = fn(*args)
    if inspect.isawaitable(result):
        result = await result
    return result


class CacheService:
    """
    Cache facade over a ``CacheBackend``.

    Keys are stored as ``{key_prefix}{namespace}:{key}``.
    """

    def __init__(
        self,
        backend: CacheBackend,
        *,
        key_prefix: str = "slv-barley:",
        default_ttl: int = 300,
        namespace: str = "default",
        stampede_prevention: bool = True,
    ):
        self._backend = backend
        self._key_prefix = key_prefix
        self._default_ttl = default_ttl
        self._namespace = namespace
        self._stampede_prevention = stampede_prevention
        self._inflight: Dict[str, asyncio.Future] = {}
        self._inflight_lock = asyncio.Lock()
        self._errors = 0
        self._initialized = False

    @property
    def backend(self) -> CacheBackend:
        return self._backend

    @property
    def namespace(self) -> str:
        return self._namespace

    def full_key(self, key: str, namespace: Optional[str] = None) -> str:
        return f"{self._key_prefix}{namespace or self._namespace}:{key}"

    # ── Lifecycle ────────────────────────────────────────────────────

    async def initialize(self) -> None:
        if self._initialized:
            return
        try:
            await self._backend.initialize()
        except Exception as e:
            self._errors += 1
            logger.error("Cache backend %s failed to initialize: %s", self._backend.name, e)
            return
        self._initialized = True
        logger.info("Cache service initialized (backend=%s)", self._backend.name)

    async def shutdown(self) -> None:
        async with self._inflight_lock:
            for future in self._inflight.values():
                if not future.done():
                    future.cancel()
            self._inflight.clear()
        try:
            await self._backend.shutdown()
        except Exception as e:
            logger.warning("Cache backend shutdown failed: %s", e)
        self._initialized = False
        logger.info("Cache service shut down")

    # ── Core Operations ──────────────────────────────────────────────

    async def get(self, key: str, default: Any = None, *, namespace: Optional[str] = None) -> Any:
        """Return the cached value, or ``default`` on a miss or backend error."""
        try:
            entry = await self._backend.get(self.full_key(key, namespace))
        except Exception as e:
            self._failed("get", key, e)
            return default
        if entry is None:
            return default
        return entry.value

    async def set(
        self,
        key: str,
        value: Any,
        ttl: Optional[int] = None,
        tags: Iterable[str] = (),
        *,
        namespace: Optional[str] = None,
    ) -> None:
        effective_ttl = self._default_ttl if ttl is None else ttl
        ns = namespace or self._namespace
        try:
            await self._backend.set(
                self.full_key(key, ns),
                value,
                ttl=effective_ttl,
                tags=tuple(tags),
                namespace=ns,
            )
        except Exception as e:
            self._failed("set", key, e)

    async def delete(self, key: str, *, namespace: Optional[str] = None) -> bool:
        try:
            return await self._backend.delete(self.full_key(key, namespace))
        except Exception as e:
            self._failed("delete", key, e)
            return False

    async def invalidate_by_tags(self, tags: Iterable[str]) -> int:
        """Drop every entry carrying any of ``tags``."""
        tag_set = set(tags)
        if not tag_set:
            return 0
        try:
            count = await self._backend.delete_by_tags(tag_set)
        except Exception as e:
            self._failed("invalidate", ",".join(sorted(tag_set)), e)
            return 0
        logger.debug("Invalidated %d cache entries for tags %s", count, sorted(tag_set))
        return count

    async def clear(self, namespace: Optional[str] = None) -> int:
        try:
            return await self._backend.clear(namespace)
        except Exception as e:
            self._failed("clear", namespace or "*", e)
            return 0

    async def stats(self) -> Dict[str, Any]:
        try:
            stats = await self._backend.stats()
        except Exception as e:
            self._failed("stats", "*", e)
            stats = CacheStats(backend=self._backend.name)
        data = stats.to_dict()
        data["errors"] += self._errors
        data["backend"] = self._backend.name
        return data

    # ── Patterns ─────────────────────────────────────────────────────

    async def cache_aside(
        self,
        key: str,
        fetch: Loader,
        ttl: Optional[int] = None,
        tags: Iterable[str] = (),
        *,
        namespace: Optional[str] = None,
    ) -> Any:
        """
        Cache-aside read.

        Returns the cached value on a hit. On a miss, ``fetch`` is called,
        its result stored and returned. Errors raised by ``fetch`` propagate
        and nothing is cached; cache errors never do. ``None`` results are
        not cached.

        Concurrent misses on the same key share one ``fetch`` call.
        """
        sentinel = object()
        cached = await self.get(key, sentinel, namespace=namespace)
        if cached is not sentinel:
            return cached

        if not self._stampede_prevention:
            value = await _call(fetch)
            if value is not None:
                await self.set(key, value, ttl, tags, namespace=namespace)
            return value

        full_key = self.full_key(key, namespace)
        async with self._inflight_lock:
            pending = self._inflight.get(full_key)
            if pending is None:
                future: asyncio.Future = asyncio.get_running_loop().create_future()
                self._inflight[full_key] = future

        if pending is not None:
            return await asyncio.shield(pending)

        try:
            value = await _call(fetch)
            if value is not None:
                await self.set(key, value, ttl, tags, namespace=namespace)
        except Exception as e:
            future.set_exception(e)
            # Mark retrieved so a waiter-less future does not warn.
            future.exception()
            raise
        else:
            future.set_result(value)
            return value
        finally:
            if not future.done():
                future.cancel()
            async with self._inflight_lock:
                self._inflight.pop(full_key, None)

    async def write_through(
        self,
        key: str,
        value: T,
        persist: Callable[[T], Any],
        ttl: Optional[int] = None,
        tags: Iterable[str] = (),
        *,
        namespace: Optional[str] = None,
    ) -> Any:
        """Persist ``value`` first, then cache what ``persist`` returned (or ``value``)."""
        stored = await _call(persist, value)
        result = value if stored is None else stored
        await self.set(key, result, ttl, tags, namespace=namespace)
        return result

    async def health_check(self) -> bool:
        try:
            return await self._backend.health_check()
        except Exception as e:
            self._failed("health_check", "*", e)
            return False

    def _failed(self, operation: str, key: str, exc: Exception) -> None:
        self._errors += 1
        logger.warning("Cache %s failed for key '%s': %s", operation, key, exc)


__all__ = ["CacheService"]
