"""
Barley cache - core types and backend contract.

A cache entry maps a key to ``{value, created_at, expires_at, tags}``.
Entries expire by TTL and can be invalidated in bulk by tag.
"""

from __future__ import annotations

import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Set, Tuple


# ============================================================================
# Cache Entry
# ============================================================================

@dataclass(slots=True)
class CacheEntry:
    """Single cache entry with metadata."""
    key: str
    value: Any
    created_at: float = field(default_factory=time.monotonic)
    expires_at: Optional[float] = None
    tags: Tuple[str, ...] = ()
    namespace: str = "default"
    version: int = 1

    @property
    def is_expired(self) -> bool:
        """Check if entry has expired."""
        if self.expires_at is None:
            return False
        return time.monotonic() >= self.expires_at

    @property
    def ttl_remaining(self) -> Optional[float]:
        """Remaining TTL in seconds, or None if no expiry."""
        if self.expires_at is None:
            return None
        return max(0.0, self.expires_at - time.monotonic())

    def __repr__(self) -> str:
        ttl = f", ttl={self.ttl_remaining:.1f}s" if self.ttl_remaining else ""
        return f"<CacheEntry key={self.key!r} ns={self.namespace!r}{ttl}>"


# ============================================================================
# Cache Stats
# ============================================================================

@dataclass
class CacheStats:
    """Aggregate cache statistics."""
    hits: int = 0
    misses: int = 0
    sets: int = 0
    deletes: int = 0
    evictions: int = 0
    errors: int = 0
    failovers: int = 0
    size: int = 0
    max_size: int = 0
    backend: str = "unknown"

    @property
    def hit_rate(self) -> float:
        """Cache hit rate as a percentage."""
        total = self.hits + self.misses
        if total == 0:
            return 0.0
        return (self.hits / total) * 100.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "hits": self.hits,
            "misses": self.misses,
            "sets": self.sets,
            "deletes": self.deletes,
            "evictions": self.evictions,
            "errors": self.errors,
            "failovers": self.failovers,
            "hit_rate": round(self.hit_rate, 2),
            "size": self.size,
            "max_size": self.max_size,
            "backend": self.backend,
        }


# ============================================================================
# Backend Contract
# ============================================================================

class CacheBackend(ABC):
    """
    Abstract cache backend.

    Backends store already-namespaced keys; key building happens in
    ``CacheService``.
    """

    async def initialize(self) -> None:
        """Open connections / start background tasks."""

    async def shutdown(self) -> None:
        """Release resources."""

    @abstractmethod
    async def get(self, key: str) -> Optional[CacheEntry]:
        """Return the live entry for ``key`` or ``None``."""

    @abstractmethod
    async def set(
        self,
        key: str,
        value: Any,
        ttl: Optional[int] = None,
        tags: Tuple[str, ...] = (),
        namespace: str = "default",
    ) -> None:
        """Store ``value`` for ``ttl`` seconds (no expiry when ``None``)."""

    @abstractmethod
    async def delete(self, key: str) -> bool:
        """Remove ``key``; True if it existed."""

    @abstractmethod
    async def exists(self, key: str) -> bool:
        """True if ``key`` holds a live entry."""

    @abstractmethod
    async def clear(self, namespace: Optional[str] = None) -> int:
        """Remove every entry, or every entry of ``namespace``."""

    @abstractmethod
    async def keys(self, pattern: str = "*", namespace: Optional[str] = None) -> List[str]:
        """List keys matching a glob pattern."""

    @abstractmethod
    async def stats(self) -> CacheStats:
        """Current statistics."""

    @abstractmethod
    async def delete_by_tags(self, tags: Set[str]) -> int:
        """Remove every entry carrying any of ``tags``."""

    async def health_check(self) -> bool:
        return True

    @property
    def name(self) -> str:
        return type(self).__name__.lower()

    @property
    def is_distributed(self) -> bool:
        return False
