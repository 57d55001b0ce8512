"""
Middleware system - composable async middleware.

A middleware is any callable ``async (request, ctx, next) -> Response``.
``MiddlewareStack`` orders registered middleware by priority and folds them
around a final handler so the first middleware is the outermost.
"""

from __future__ import annotations

import logging
import os
import time
import traceback
from dataclasses import dataclass
from typing import Awaitable, Callable, List, Optional, TYPE_CHECKING

from .faults import Fault, InternalFault, status_for
from .request import Request
from .response import Response

if TYPE_CHECKING:
    from .controller import RequestCtx

Handler = Callable[[Request, "RequestCtx"], Awaitable[Response]]
Middleware = Callable[[Request, "RequestCtx", Handler], Awaitable[Response]]

_BASE36 = "0123456789abcdefghijklmnopqrstuvwxyz"


@dataclass
class MiddlewareDescriptor:
    """Descriptor for middleware registration."""
    middleware: Middleware
    priority: int
    name: str


class MiddlewareStack:
    """
    Manages middleware with deterministic ordering.

    Lower priority values run first (outermost). Ties keep registration
    order.
    """

    def __init__(self):
        self.middlewares: List[MiddlewareDescriptor] = []

    def add(
        self,
        middleware: Middleware,
        priority: int = 50,
        name: Optional[str] = None,
    ) -> None:
        """Add middleware to stack."""
        if name is None:
            name = getattr(middleware, "__name__", type(middleware).__name__)
        self.middlewares.append(
            MiddlewareDescriptor(middleware=middleware, priority=priority, name=name)
        )
        self.middlewares.sort(key=lambda desc: desc.priority)

    @property
    def names(self) -> List[str]:
        return [desc.name for desc in self.middlewares]

    def build_handler(self, final_handler: Handler) -> Handler:
        """Build middleware chain wrapping the final handler."""
        handler = final_handler
        # Wrap in reverse order so first middleware is outermost
        for desc in reversed(self.middlewares):
            handler = self._wrap_middleware(desc.middleware, handler)
        return handler

    def _wrap_middleware(self, middleware: Middleware, next_handler: Handler) -> Handler:
        async def wrapped(request: Request, ctx: "RequestCtx") -> Response:
            return await middleware(request, ctx, next_handler)

        return wrapped


def generate_request_id() -> str:
    """Request id in the ``req_{ms}_{9 base36 chars}`` format."""
    millis = int(time.time() * 1000)
    suffix = "".join(_BASE36[b % 36] for b in os.urandom(9))
    return f"req_{millis}_{suffix}"


class RequestIdMiddleware:
    """Adds a request id to each request and echoes it on the response."""

    def __init__(self, header_name: str = "X-Request-ID"):
        self.header_name = header_name.lower()

    async def __call__(self, request: Request, ctx: "RequestCtx", next: Handler) -> Response:
        request_id = request.header(self.header_name) or generate_request_id()
        request.state["request_id"] = request_id
        ctx.request_id = request_id

        response = await next(request, ctx)
        response.headers[self.header_name] = request_id
        return response


class ExceptionMiddleware:
    """
    Catches exceptions and converts them to error responses.

    Faults are mapped through ``status_for``; their message is exposed only
    when the fault is public or ``debug`` is on. Any other exception becomes
    a 500 whose detail and traceback are included in debug mode only.
    """

    def __init__(self, debug: bool = False):
        self.debug = debug
        self.logger = logging.getLogger("barley.exceptions")

    async def __call__(self, request: Request, ctx: "RequestCtx", next: Handler) -> Response:
        request_id = request.state.get("request_id")
        try:
            return await next(request, ctx)

        except Fault as e:
            status = status_for(e)
            if status >= 500:
                self.logger.error("Fault %s: %s", e.code, e.message)
            else:
                self.logger.warning("Fault %s: %s", e.code, e.message)
            return Response.from_fault(e, request_id=request_id, debug=self.debug)

        except Exception as e:
            self.logger.error("Unhandled exception: %s", e, exc_info=True)
            response = Response.from_fault(
                InternalFault(), request_id=request_id, debug=False,
            )
            if self.debug:
                body = {
                    "error": {
                        "code": "INTERNAL_ERROR",
                        "message": "Internal server error",
                        "domain": "system",
                        "request_id": request_id,
                        "detail": str(e),
                        "traceback": traceback.format_exc(),
                    }
                }
                response = Response.json(body, status=500, headers={"x-fault-code": "INTERNAL_ERROR"})
            return response
