"""
Barley cache - Cache-Control / ETag middleware.

Runs on the response path after compression, so the ETag is computed over
the exact bytes that leave the server.

Strategy resolution, first match wins:
1. ``request.state["cache_strategy"]`` (set by the router from ``@GET(cache=...)``)
2. path-prefix rules
3. ``default_strategy``

Only 2xx responses to cacheable requests get an ETag and conditional
handling; everything else is marked ``no-cache, no-store``.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Awaitable, Callable, Optional, Sequence, Tuple, Union, TYPE_CHECKING

from barley.request import Request
from barley.response import Response

from .headers import (
    CacheStrategy,
    cache_control_for,
    generate_etag,
    http_date,
    is_not_modified,
    is_request_cacheable,
)

if TYPE_CHECKING:
    from barley.controller import RequestCtx

Handler = Callable[[Request, "RequestCtx"], Awaitable[Response]]

logger = logging.getLogger("barley.cache.middleware")

VARY_HEADERS: Tuple[str, ...] = ("Accept", "Accept-Encoding", "Accept-Language")

# Headers a 304 keeps from the full response.
_NOT_MODIFIED_KEEP = ("etag", "cache-control", "vary", "last-modified", "expires", "content-location")


class CacheHeaderMiddleware:
    """
    Args:
        default_strategy: Strategy for routes that declare none.
        rules: ``(path_prefix, strategy)`` pairs checked in order.
        weak_etags: Emit ``W/`` ETags.
    """

    def __init__(
        self,
        default_strategy: Union[str, CacheStrategy] = CacheStrategy.API_STATIC,
        rules: Sequence[Tuple[str, Union[str, CacheStrategy]]] = (),
        weak_etags: bool = False,
    ):
        self.default_strategy = CacheStrategy(default_strategy)
        self.rules = tuple((prefix, CacheStrategy(strategy)) for prefix, strategy in rules)
        self.weak_etags = weak_etags

    def resolve_strategy(self, request: Request) -> CacheStrategy:
        declared = request.state.get("cache_strategy")
        if declared:
            try:
                return CacheStrategy(declared)
            except ValueError:
                logger.warning("Unknown cache strategy %r on %s", declared, request.path)
        for prefix, strategy in self.rules:
            if request.path.startswith(prefix):
                return strategy
        return self.default_strategy

    async def __call__(
        self,
        request: Request,
        ctx: "RequestCtx",
        next_handler: Handler,
    ) -> Response:
        response = await next_handler(request, ctx)

        if not (200 <= response.status < 300) or not is_request_cacheable(request):
            response.headers["cache-control"] = cache_control_for(CacheStrategy.NO_CACHE)
            return response

        strategy = self.resolve_strategy(request)
        response.headers["cache-control"] = cache_control_for(strategy)
        response.append_vary(*VARY_HEADERS)

        if strategy is CacheStrategy.NO_CACHE:
            return response

        etag = response.get_header("etag") or generate_etag(response.body, weak=self.weak_etags)
        response.headers["etag"] = etag

        last_modified = _parse_http_date(response.get_header("last-modified"))
        if last_modified is None:
            response.headers["last-modified"] = http_date(datetime.now(timezone.utc))

        if is_not_modified(request, etag, last_modified):
            return _not_modified(response)
        return response


def _parse_http_date(value: str) -> Optional[datetime]:
    if not value:
        return None
    try:
        return parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None


def _not_modified(response: Response) -> Response:
    headers = {
        name: value
        for name, value in response.headers.items()
        if name in _NOT_MODIFIED_KEEP
    }
    not_modified = Response(b"", status=304, headers=headers)
    # Response() fills in a content type for empty bodies.
    not_modified.unset_header("content-type")
    return not_modified


__all__ = ["CacheHeaderMiddleware", "VARY_HEADERS"]
