"""
Security Headers Middleware - hardening headers on every response.

The header set is fixed:
- X-Content-Type-Options: nosniff
- X-Frame-Options: DENY
- X-XSS-Protection: 1; mode=block
- Referrer-Policy: strict-origin-when-cross-origin
- Cross-Origin-Embedder-Policy: require-corp
- Cross-Origin-Opener-Policy: same-origin
- Cross-Origin-Resource-Policy: same-origin
- Permissions-Policy: camera=(), microphone=(), geolocation=()

The middleware sits outermost in the pipeline so short-circuit and error
responses are hardened too; ``apply_security_headers`` is also called by the
ASGI adapter when everything else has failed.
"""

from __future__ import annotations

import logging
from typing import Awaitable, Callable, Dict, Iterable, Optional, TYPE_CHECKING

from barley.faults import InternalFault
from barley.request import Request
from barley.response import Response

if TYPE_CHECKING:
    from barley.controller import RequestCtx

Handler = Callable[[Request, "RequestCtx"], Awaitable[Response]]

logger = logging.getLogger("barley.security")


SECURITY_HEADERS: Dict[str, str] = {
    "x-content-type-options": "nosniff",
    "x-frame-options": "DENY",
    "x-xss-protection": "1; mode=block",
    "referrer-policy": "strict-origin-when-cross-origin",
    "cross-origin-embedder-policy": "require-corp",
    "cross-origin-opener-policy": "same-origin",
    "cross-origin-resource-policy": "same-origin",
    "permissions-policy": "camera=(), microphone=(), geolocation=()",
}

REMOVED_HEADERS = ("server", "x-powered-by")


def apply_security_headers(
    response: Response,
    headers: Optional[Dict[str, str]] = None,
    remove: Iterable[str] = REMOVED_HEADERS,
) -> Response:
    """Overwrite the hardening headers on ``response`` and drop fingerprinting ones."""
    for name, value in (headers or SECURITY_HEADERS).items():
        response.headers[name] = value
    for name in remove:
        response.headers.pop(name, None)
    return response


class SecurityHeadersMiddleware:
    """
    Attaches the hardening header set to every response.

    Args:
        extra_headers: Additional headers merged over the fixed set.
        remove_server_header: Remove ``Server`` and ``X-Powered-By``.
    """

    def __init__(
        self,
        extra_headers: Optional[Dict[str, str]] = None,
        remove_server_header: bool = True,
    ):
        self._headers = dict(SECURITY_HEADERS)
        for name, value in (extra_headers or {}).items():
            self._headers[name.lower()] = value
        self._remove = REMOVED_HEADERS if remove_server_header else ()

    async def __call__(
        self, request: Request, ctx: "RequestCtx", next_handler: Handler
    ) -> Response:
        try:
            response = await next_handler(request, ctx)
        except Exception:
            # Only reached when no exception boundary sits inside this layer.
            logger.error("Unhandled exception reached security headers", exc_info=True)
            response = Response.from_fault(
                InternalFault(), request_id=request.state.get("request_id"),
            )
        return apply_security_headers(response, self._headers, self._remove)


__all__ = [
    "SecurityHeadersMiddleware",
    "apply_security_headers",
    "SECURITY_HEADERS",
]
