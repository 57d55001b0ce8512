"""
Pipeline middleware.

Every middleware is an ``async (request, ctx, next) -> Response`` callable.
"""

from .compression import CompressionMiddleware, CompressionStats
from .csrf import (
    CSRFMiddleware,
    CSRFTokenStore,
    MemoryCSRFTokenStore,
    RedisCSRFTokenStore,
    generate_csrf_token,
    get_csrf_token,
    invalidate_csrf_token,
    issue_csrf_token,
    verify_csrf_token,
)
from .logging import RequestLoggingMiddleware, configure_logging, log_security_event
from .rate_limit import RateLimitMiddleware, RateLimitRule, preset_rule
from .sanitization import SanitizationMiddleware, detect_injection
from .security import SecurityHeadersMiddleware, apply_security_headers

__all__ = [
    "CompressionMiddleware",
    "CompressionStats",
    "CSRFMiddleware",
    "CSRFTokenStore",
    "MemoryCSRFTokenStore",
    "RedisCSRFTokenStore",
    "generate_csrf_token",
    "get_csrf_token",
    "invalidate_csrf_token",
    "issue_csrf_token",
    "verify_csrf_token",
    "RequestLoggingMiddleware",
    "configure_logging",
    "log_security_event",
    "RateLimitMiddleware",
    "RateLimitRule",
    "preset_rule",
    "SanitizationMiddleware",
    "detect_injection",
    "SecurityHeadersMiddleware",
    "apply_security_headers",
]
