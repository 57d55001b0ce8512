"""
Barley cache - response cache headers and application caching.

- ``CacheHeaderMiddleware``: Cache-Control strategies, ETag and 304 handling
- ``CacheService``: namespaced keys, tag invalidation, ``cache_aside`` and
  ``write_through`` helpers over a pluggable backend
- Backends: ``MemoryBackend``, ``RedisBackend`` and ``FailoverBackend``
  (Redis with transparent in-memory fallback)

Usage::

    from barley.cache import CacheService, FailoverBackend, MemoryBackend, RedisBackend

    cache = CacheService(
        FailoverBackend(RedisBackend(url, raise_errors=True), MemoryBackend()),
    )
"""

from .core import CacheBackend, CacheEntry, CacheStats
from .backends import FailoverBackend, MemoryBackend, RedisBackend
from .headers import (
    STRATEGIES,
    CacheDirectives,
    CacheStrategy,
    build_cache_control,
    cache_control_for,
    generate_cache_key,
    generate_etag,
    is_not_modified,
    is_request_cacheable,
)
from .middleware import CacheHeaderMiddleware
from .serializers import JsonCacheSerializer
from .service import CacheService

__all__ = [
    "CacheBackend",
    "CacheEntry",
    "CacheStats",
    "MemoryBackend",
    "RedisBackend",
    "FailoverBackend",
    "CacheService",
    "JsonCacheSerializer",
    "CacheHeaderMiddleware",
    "CacheStrategy",
    "CacheDirectives",
    "STRATEGIES",
    "build_cache_control",
    "cache_control_for",
    "generate_cache_key",
    "generate_etag",
    "is_not_modified",
    "is_request_cacheable",
]
