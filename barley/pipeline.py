"""
Pipeline composer.

Assembles the request pipeline around a final handler, outermost first::

    SecurityHeaders -> RequestId -> RequestLogging -> Exceptions
        -> RateLimit -> Sanitizer -> CSRF -> CacheHeaders -> Compression
        -> handler

Requests therefore pass rate limiting, sanitization and CSRF validation
before the handler runs. Responses are compressed first, then get cache
headers (the ETag covers the compressed bytes), then security headers.
A stage that short-circuits skips compression and cache headers but still
passes back through the security header layer.
"""

from __future__ import annotations

from typing import Optional, Sequence, Tuple

from .cache.middleware import CacheHeaderMiddleware
from .config import BarleyConfig
from .middleware import ExceptionMiddleware, Handler, MiddlewareStack, RequestIdMiddleware
from .middleware_ext.compression import CompressionMiddleware, CompressionStats
from .middleware_ext.csrf import CSRFMiddleware, CSRFTokenStore
from .middleware_ext.logging import RequestLoggingMiddleware
from .middleware_ext.rate_limit import RateLimitMiddleware
from .middleware_ext.sanitization import SanitizationMiddleware
from .middleware_ext.security import SecurityHeadersMiddleware

# Stage priorities; lower runs first on the way in.
PRIORITY_SECURITY_HEADERS = 0
PRIORITY_REQUEST_ID = 10
PRIORITY_REQUEST_LOGGING = 20
PRIORITY_EXCEPTIONS = 30
PRIORITY_RATE_LIMIT = 40
PRIORITY_SANITIZER = 50
PRIORITY_CSRF = 60
PRIORITY_CACHE_HEADERS = 70
PRIORITY_COMPRESSION = 80


def build_middleware_stack(
    config: BarleyConfig,
    *,
    csrf_store: Optional[CSRFTokenStore] = None,
    compression_stats: Optional[CompressionStats] = None,
    cache_rules: Sequence[Tuple[str, str]] = (),
) -> MiddlewareStack:
    """Register every pipeline stage configured by ``config``."""
    stack = MiddlewareStack()
    stack.add(SecurityHeadersMiddleware(), PRIORITY_SECURITY_HEADERS, "security_headers")
    stack.add(RequestIdMiddleware(), PRIORITY_REQUEST_ID, "request_id")
    stack.add(RequestLoggingMiddleware(), PRIORITY_REQUEST_LOGGING, "request_logging")
    stack.add(ExceptionMiddleware(debug=config.debug), PRIORITY_EXCEPTIONS, "exceptions")

    rl = config.rate_limit
    stack.add(
        RateLimitMiddleware(
            default_limit=rl.max_requests,
            default_window=rl.window,
            algorithm=rl.algorithm,
            exempt_paths=rl.exempt_paths,
            skip_keys=rl.skip,
        ),
        PRIORITY_RATE_LIMIT,
        "rate_limit",
    )
    stack.add(SanitizationMiddleware(), PRIORITY_SANITIZER, "sanitizer")

    csrf = config.csrf
    stack.add(
        CSRFMiddleware(
            csrf.secret,
            csrf_store,
            mode=csrf.mode,
            cookie_name=csrf.cookie_name,
            header_name=csrf.header_name,
            field_name=csrf.field_name,
            session_cookie=csrf.session_cookie,
            ignore_routes=csrf.ignore_routes,
        ),
        PRIORITY_CSRF,
        "csrf",
    )
    stack.add(CacheHeaderMiddleware(rules=cache_rules), PRIORITY_CACHE_HEADERS, "cache_headers")

    comp = config.compression
    stack.add(
        CompressionMiddleware(
            threshold=comp.threshold,
            level=comp.level,
            encodings=comp.encodings,
            stats=compression_stats,
        ),
        PRIORITY_COMPRESSION,
        "compression",
    )
    return stack


def build_pipeline(
    handler: Handler,
    config: BarleyConfig,
    *,
    csrf_store: Optional[CSRFTokenStore] = None,
    compression_stats: Optional[CompressionStats] = None,
    cache_rules: Sequence[Tuple[str, str]] = (),
) -> Handler:
    """Wrap ``handler`` in the full pipeline."""
    stack = build_middleware_stack(
        config,
        csrf_store=csrf_store,
        compression_stats=compression_stats,
        cache_rules=cache_rules,
    )
    return stack.build_handler(handler)


__all__ = ["build_pipeline", "build_middleware_stack"]
