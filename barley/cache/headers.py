"""
Barley cache - HTTP cache headers.

Named Cache-Control strategies, ETag generation and conditional request
evaluation (``If-None-Match`` / ``If-Modified-Since``).
"""

from __future__ import annotations

import hashlib
from dataclasses import dataclass
from datetime import datetime, timezone
from email.utils import format_datetime, parsedate_to_datetime
from enum import Enum
from typing import Any, Dict, Optional, Union

__all__ = [
    "CacheStrategy",
    "CacheDirectives",
    "STRATEGIES",
    "build_cache_control",
    "cache_control_for",
    "generate_etag",
    "is_not_modified",
    "is_request_cacheable",
    "generate_cache_key",
    "http_date",
]


class CacheStrategy(str, Enum):
    NO_CACHE = "no-cache"
    SHORT = "short"
    MEDIUM = "medium"
    LONG = "long"
    STATIC = "static"
    API_DYNAMIC = "api-dynamic"
    API_STATIC = "api-static"
    USER_SPECIFIC = "user-specific"


@dataclass(frozen=True)
class CacheDirectives:
    """Cache-Control directive set."""
    public: bool = False
    private: bool = False
    no_cache: bool = False
    no_store: bool = False
    must_revalidate: bool = False
    proxy_revalidate: bool = False
    immutable: bool = False
    max_age: Optional[int] = None
    s_maxage: Optional[int] = None
    stale_while_revalidate: Optional[int] = None
    stale_if_error: Optional[int] = None


STRATEGIES: Dict[CacheStrategy, CacheDirectives] = {
    CacheStrategy.NO_CACHE: CacheDirectives(no_cache=True, no_store=True),
    CacheStrategy.SHORT: CacheDirectives(max_age=300, public=True, stale_while_revalidate=60),
    CacheStrategy.MEDIUM: CacheDirectives(max_age=3600, public=True, stale_while_revalidate=300),
    CacheStrategy.LONG: CacheDirectives(max_age=86400, public=True, stale_while_revalidate=3600),
    CacheStrategy.STATIC: CacheDirectives(max_age=31536000, public=True, immutable=True),
    CacheStrategy.API_DYNAMIC: CacheDirectives(
        max_age=30, public=True, stale_while_revalidate=10, must_revalidate=True,
    ),
    CacheStrategy.API_STATIC: CacheDirectives(max_age=900, public=True, stale_while_revalidate=300),
    CacheStrategy.USER_SPECIFIC: CacheDirectives(max_age=300, private=True, must_revalidate=True),
}


def build_cache_control(directives: CacheDirectives) -> str:
    """Render directives in canonical order."""
    parts = []
    if directives.public:
        parts.append("public")
    if directives.private:
        parts.append("private")
    if directives.no_cache:
        parts.append("no-cache")
    if directives.no_store:
        parts.append("no-store")
    if directives.must_revalidate:
        parts.append("must-revalidate")
    if directives.proxy_revalidate:
        parts.append("proxy-revalidate")
    if directives.immutable:
        parts.append("immutable")
    if directives.max_age is not None:
        parts.append(f"max-age={directives.max_age}")
    if directives.s_maxage is not None:
        parts.append(f"s-maxage={directives.s_maxage}")
    if directives.stale_while_revalidate is not None:
        parts.append(f"stale-while-revalidate={directives.stale_while_revalidate}")
    if directives.stale_if_error is not None:
        parts.append(f"stale-if-error={directives.stale_if_error}")
    return ", ".join(parts)


def cache_control_for(strategy: Union[str, CacheStrategy]) -> str:
    """Cache-Control value for a strategy name. Raises ValueError if unknown."""
    return build_cache_control(STRATEGIES[CacheStrategy(strategy)])


def generate_etag(body: Union[bytes, str], weak: bool = False) -> str:
    if isinstance(body, str):
        body = body.encode("utf-8")
    digest = hashlib.md5(body).hexdigest()
    return f'W/"{digest}"' if weak else f'"{digest}"'


def _opaque(tag: str) -> str:
    tag = tag.strip()
    return tag[2:] if tag.startswith("W/") else tag


def http_date(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return format_datetime(value.astimezone(timezone.utc), usegmt=True)


def is_not_modified(
    request: Any,
    etag: Optional[str] = None,
    last_modified: Optional[datetime] = None,
) -> bool:
    """
    Evaluate conditional request headers.

    ``If-None-Match`` uses weak comparison and wins over ``If-Modified-Since``
    when both are present.
    """
    if_none_match = request.header("if-none-match")
    if if_none_match:
        if etag is None:
            return False
        candidates = [c.strip() for c in if_none_match.split(",") if c.strip()]
        if "*" in candidates:
            return True
        wanted = _opaque(etag)
        return any(_opaque(c) == wanted for c in candidates)

    if_modified_since = request.header("if-modified-since")
    if if_modified_since and last_modified is not None:
        try:
            since = parsedate_to_datetime(if_modified_since)
        except (TypeError, ValueError):
            return False
        if since.tzinfo is None:
            since = since.replace(tzinfo=timezone.utc)
        modified = last_modified
        if modified.tzinfo is None:
            modified = modified.replace(tzinfo=timezone.utc)
        # HTTP dates carry whole seconds only.
        return modified.replace(microsecond=0) <= since
    return False


def is_request_cacheable(request: Any) -> bool:
    if request.method not in ("GET", "HEAD"):
        return False
    query = request.query_params
    if "no-cache" in query or "_t" in query:
        return False
    cache_control = request.header("cache-control").lower()
    if "no-cache" in cache_control or "no-store" in cache_control:
        return False
    return True


def generate_cache_key(prefix: str, *parts: Any) -> str:
    """Join a prefix and parts with ``:``; ``None`` parts are skipped."""
    return ":".join([prefix, *(str(p) for p in parts if p is not None)])
