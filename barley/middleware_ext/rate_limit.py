"""
Rate Limiting Middleware - per-client request rate limiting.

Implements two algorithms:
- Fixed Window:   counter plus reset time per key (default)
- Sliding Window: two adjacent windows with a weighted count (no boundary spikes)

Features:
- Per-client keying (first X-Forwarded-For entry, X-Real-IP, socket address)
- Layered rules with path scopes and method filters
- Per-bucket locks so every consume is one read-modify-write
- Retry-After and X-RateLimit-* headers
- Lazy eviction of idle buckets
- Presets for auth, api and strict endpoints

All middleware follow the Barley async signature:
    async def __call__(self, request, ctx, next) -> Response
"""

from __future__ import annotations

import math
import threading
import time
from typing import (
    Any,
    Awaitable,
    Callable,
    Dict,
    Iterable,
    List,
    Optional,
    Tuple,
    TYPE_CHECKING,
)

from barley.faults import RateLimitedFault
from barley.request import Request
from barley.response import Response

from .logging import log_security_event

if TYPE_CHECKING:
    from barley.controller import RequestCtx

Handler = Callable[[Request, "RequestCtx"], Awaitable[Response]]


# ─── Key extractors ──────────────────────────────────────────────────────────

def client_ip(request: Request) -> str:
    """Resolve the client address, preferring proxy headers."""
    forwarded = request.header("x-forwarded-for")
    if forwarded:
        first = forwarded.split(",")[0].strip()
        if first:
            return first
    real_ip = request.header("x-real-ip").strip()
    if real_ip:
        return real_ip
    client = request.client
    if client:
        return str(client[0])
    return "unknown"


def ip_key_extractor(request: Request) -> str:
    """Extract client IP as rate-limit key."""
    return f"ip:{client_ip(request)}"


# ─── Fixed Window Counter ────────────────────────────────────────────────────

class _FixedWindowCounter:
    """
    Counter that resets when its window elapses.

    Reset times use wall-clock seconds so they can be reported in
    ``X-RateLimit-Reset``.
    """

    __slots__ = ("window_size", "max_requests", "count", "reset_at", "lock")

    def __init__(self, window_size: float, max_requests: int):
        self.window_size = window_size
        self.max_requests = max_requests
        self.count = 0
        self.reset_at = time.time() + window_size
        self.lock = threading.Lock()

    def consume(self) -> Tuple[bool, float]:
        """
        Try to record a request.

        Returns:
            (allowed, retry_after_seconds)
        """
        with self.lock:
            now = time.time()
            if now >= self.reset_at:
                self.count = 0
                self.reset_at = now + self.window_size

            if self.count >= self.max_requests:
                return False, max(0.1, self.reset_at - now)

            self.count += 1
            return True, 0.0

    @property
    def remaining(self) -> int:
        if time.time() >= self.reset_at:
            return self.max_requests
        return max(0, self.max_requests - self.count)

    @property
    def reset_time(self) -> float:
        return self.reset_at

    @property
    def expires_at(self) -> float:
        """Wall-clock time after which the bucket holds no state."""
        return self.reset_at


# ─── Sliding Window Counter ──────────────────────────────────────────────────

class _SlidingWindowCounter:
    """
    Sliding window counter using two adjacent fixed windows.

    Algorithm:
        weighted_count = prev_count * overlap_ratio + current_count
    """

    __slots__ = ("window_size", "max_requests", "_prev_count", "_curr_count",
                 "_curr_start", "lock")

    def __init__(self, window_size: float, max_requests: int):
        self.window_size = window_size
        self.max_requests = max_requests
        self._curr_start = time.time()
        self._curr_count = 0
        self._prev_count = 0
        self.lock = threading.Lock()

    def consume(self) -> Tuple[bool, float]:
        with self.lock:
            now = time.time()
            self._advance_windows(now)

            elapsed_in_window = now - self._curr_start
            weight = max(0.0, 1.0 - elapsed_in_window / self.window_size)
            weighted = self._prev_count * weight + self._curr_count

            if weighted >= self.max_requests:
                retry = self.window_size - elapsed_in_window
                return False, max(0.1, retry)

            self._curr_count += 1
            return True, 0.0

    def _advance_windows(self, now: float) -> None:
        window_end = self._curr_start + self.window_size
        if now >= window_end:
            windows_passed = int((now - self._curr_start) / self.window_size)
            if windows_passed >= 2:
                self._prev_count = 0
                self._curr_count = 0
                self._curr_start = now
            else:
                self._prev_count = self._curr_count
                self._curr_count = 0
                self._curr_start = window_end

    @property
    def remaining(self) -> int:
        elapsed = time.time() - self._curr_start
        weight = max(0.0, 1.0 - elapsed / self.window_size)
        used = int(self._prev_count * weight + self._curr_count)
        return max(0, self.max_requests - used)

    @property
    def reset_time(self) -> float:
        return self._curr_start + self.window_size

    @property
    def expires_at(self) -> float:
        # The current count still weighs on the following window.
        return self._curr_start + 2 * self.window_size


# ─── Expiry-aware bucket store ────────────────────────────────────────────────

class _BucketStore:
    """
    In-memory store for rate-limit buckets with lazy cleanup.

    Bucket creation is guarded by a store-level lock; counting is guarded by
    the bucket's own lock so unrelated keys never contend.
    """

    def __init__(self, cleanup_interval: float = 60.0, idle_ttl: float = 300.0):
        self._buckets: Dict[str, Any] = {}
        self._last_access: Dict[str, float] = {}
        self._cleanup_interval = cleanup_interval
        self._idle_ttl = idle_ttl
        self._last_cleanup = time.monotonic()
        self._lock = threading.Lock()

    def get_or_create(self, key: str, factory: Callable[[], Any]) -> Any:
        now = time.monotonic()
        with self._lock:
            self._last_access[key] = now
            bucket = self._buckets.get(key)
            if bucket is None:
                bucket = factory()
                self._buckets[key] = bucket

            if now - self._last_cleanup > self._cleanup_interval:
                self._cleanup(now)

        return bucket

    def _cleanup(self, now: float) -> None:
        # Idle buckets go only once their window is over; evicting earlier
        # would hand the client a fresh count mid-window.
        self._last_cleanup = now
        wall = time.time()
        expired = [
            k for k, t in self._last_access.items()
            if now - t > self._idle_ttl and self._buckets[k].expires_at <= wall
        ]
        for k in expired:
            self._buckets.pop(k, None)
            self._last_access.pop(k, None)

    def __len__(self) -> int:
        return len(self._buckets)


# ─── Rate Limit Configuration ────────────────────────────────────────────────

class RateLimitRule:
    """
    A single rate-limit rule.

    Attributes:
        limit: Maximum requests per window.
        window: Window size in seconds.
        algorithm: "fixed_window" or "sliding_window".
        key_func: Function to extract the rate-limit key from request.
                  Defaults to IP-based.
        scope: Which paths this rule applies to ("*" = all, else a prefix).
        methods: HTTP methods this rule applies to (empty = all).
    """

    __slots__ = ("limit", "window", "algorithm", "key_func", "scope", "methods")

    def __init__(
        self,
        limit: int = 100,
        window: float = 900.0,
        algorithm: str = "fixed_window",
        key_func: Optional[Callable[[Request], Optional[str]]] = None,
        scope: str = "*",
        methods: Optional[List[str]] = None,
    ):
        if algorithm not in ("fixed_window", "sliding_window"):
            raise ValueError(f"Unknown rate limit algorithm: {algorithm!r}")
        self.limit = limit
        self.window = window
        self.algorithm = algorithm
        self.key_func = key_func or ip_key_extractor
        self.scope = scope
        self.methods = [m.upper() for m in (methods or [])]

    def matches(self, request: Request) -> bool:
        """Check if this rule applies to the given request."""
        if self.methods and request.method not in self.methods:
            return False
        if self.scope == "*":
            return True
        return request.path.startswith(self.scope)


# Window sizes in seconds
PRESETS: Dict[str, Dict[str, Any]] = {
    "auth": {"limit": 5, "window": 15 * 60},
    "api": {"limit": 100, "window": 15 * 60},
    "strict": {"limit": 10, "window": 60},
}


def preset_rule(name: str, scope: str = "*", **overrides: Any) -> RateLimitRule:
    """Build a rule from a named preset (``auth``, ``api`` or ``strict``)."""
    try:
        params = dict(PRESETS[name])
    except KeyError:
        raise ValueError(f"Unknown rate limit preset: {name!r}") from None
    params.update(overrides)
    return RateLimitRule(scope=scope, **params)


# ─── Rate Limit Middleware ────────────────────────────────────────────────────

class RateLimitMiddleware:
    """
    Rate limiting middleware.

    Rules are evaluated in order. The first rule whose ``matches()`` returns
    True and whose bucket is exhausted short-circuits with a 429 response;
    neither downstream middleware nor the handler run.

    Args:
        rules: List of RateLimitRule to evaluate.
        default_limit: Fallback limit if no rules provided.
        default_window: Fallback window (seconds).
        algorithm: Fallback algorithm if no rules provided.
        include_headers: Include rate-limit headers on passing responses.
        exempt_paths: Paths to skip rate limiting (e.g. health checks).
        skip_keys: Client addresses never limited (trusted IPs).
    """

    def __init__(
        self,
        rules: Optional[List[RateLimitRule]] = None,
        default_limit: int = 100,
        default_window: float = 900.0,
        algorithm: str = "fixed_window",
        include_headers: bool = True,
        exempt_paths: Optional[Iterable[str]] = None,
        skip_keys: Optional[Iterable[str]] = None,
    ):
        if rules:
            self._rules = list(rules)
        else:
            self._rules = [
                RateLimitRule(limit=default_limit, window=default_window, algorithm=algorithm),
            ]

        self._include_headers = include_headers
        self._exempt_paths = set(exempt_paths or ())
        self._skip_keys = set(skip_keys or ())
        self._store = _BucketStore()

    @property
    def rules(self) -> List[RateLimitRule]:
        return list(self._rules)

    async def __call__(
        self,
        request: Request,
        ctx: "RequestCtx",
        next_handler: Handler,
    ) -> Response:
        if request.path in self._exempt_paths:
            return await next_handler(request, ctx)

        if request.state.get("rate_limit_skip"):
            return await next_handler(request, ctx)

        if self._skip_keys and client_ip(request) in self._skip_keys:
            return await next_handler(request, ctx)

        applied: Optional[Tuple[RateLimitRule, Any]] = None
        for rule in self._rules:
            if not rule.matches(request):
                continue

            key = rule.key_func(request)
            if key is None:
                continue

            bucket_key = f"{rule.scope}:{key}"
            bucket = self._store.get_or_create(
                bucket_key,
                lambda rule=rule: self._create_bucket(rule),
            )

            allowed, retry_after = bucket.consume()
            if not allowed:
                log_security_event(
                    "rate_limit_exceeded",
                    "medium",
                    key=key,
                    path=request.path,
                    method=request.method,
                    limit=rule.limit,
                    window=rule.window,
                )
                return self._rate_limited_response(rule, bucket, retry_after, request)

            if applied is None:
                applied = (rule, bucket)

        response = await next_handler(request, ctx)

        if self._include_headers and applied is not None:
            self._apply_headers(response, *applied)

        return response

    def _create_bucket(self, rule: RateLimitRule) -> Any:
        if rule.algorithm == "sliding_window":
            return _SlidingWindowCounter(window_size=rule.window, max_requests=rule.limit)
        return _FixedWindowCounter(window_size=rule.window, max_requests=rule.limit)

    def _rate_limited_response(
        self,
        rule: RateLimitRule,
        bucket: Any,
        retry_after: float,
        request: Request,
    ) -> Response:
        # The fault is attached to the response, not raised, so the chain
        # ends here without passing through the exception boundary.
        fault = RateLimitedFault(
            limit=rule.limit,
            window=rule.window,
            retry_after=math.ceil(retry_after),
        )
        headers = {
            "retry-after": str(int(math.ceil(retry_after))),
            "x-ratelimit-limit": str(rule.limit),
            "x-ratelimit-remaining": "0",
            "x-ratelimit-reset": str(int(bucket.reset_time)),
        }
        return Response.from_fault(
            fault,
            request_id=request.state.get("request_id"),
            headers=headers,
        )

    def _apply_headers(self, response: Response, rule: RateLimitRule, bucket: Any) -> None:
        response.headers["x-ratelimit-limit"] = str(rule.limit)
        response.headers["x-ratelimit-remaining"] = str(max(0, bucket.remaining))
        response.headers["x-ratelimit-reset"] = str(int(bucket.reset_time))


__all__ = [
    "RateLimitMiddleware",
    "RateLimitRule",
    "PRESETS",
    "preset_rule",
    "client_ip",
    "ip_key_extractor",
]
