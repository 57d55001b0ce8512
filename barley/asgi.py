"""
ASGI adapter - bridges the ASGI protocol to barley's request/response types.

Handles ``http`` and ``lifespan`` scopes. The middleware chain is built
once, on the first request. A failure that escapes the chain still gets a
500 carrying the security header set.
"""

from __future__ import annotations

import logging
from typing import Any, Awaitable, Callable, List, Optional

from .controller import RequestCtx
from .faults import InternalFault
from .middleware import Handler
from .middleware_ext.security import apply_security_headers
from .request import Request
from .response import Response

Hook = Callable[[], Awaitable[Any]]


class ASGIAdapter:
    """
    ASGI application.

    Args:
        chain_factory: Returns the fully wrapped pipeline handler.
        on_startup: Coroutines awaited on ``lifespan.startup``.
        on_shutdown: Coroutines awaited on ``lifespan.shutdown``.
        max_body_size: Request body limit in bytes.
    """

    def __init__(
        self,
        chain_factory: Callable[[], Handler],
        on_startup: Optional[List[Hook]] = None,
        on_shutdown: Optional[List[Hook]] = None,
        max_body_size: int = 1_048_576,
    ):
        self._chain_factory = chain_factory
        self._chain: Optional[Handler] = None
        self.on_startup = list(on_startup or [])
        self.on_shutdown = list(on_shutdown or [])
        self.max_body_size = max_body_size
        self.logger = logging.getLogger("barley.asgi")

    @property
    def chain(self) -> Handler:
        if self._chain is None:
            self._chain = self._chain_factory()
        return self._chain

    async def __call__(self, scope: dict, receive: Callable, send: Callable) -> None:
        scope_type = scope["type"]
        if scope_type == "http":
            await self.handle_http(scope, receive, send)
        elif scope_type == "lifespan":
            await self.handle_lifespan(scope, receive, send)
        else:
            self.logger.warning("Unsupported ASGI scope type: %s", scope_type)

    async def handle_http(self, scope: dict, receive: Callable, send: Callable) -> None:
        request = Request(scope, receive, max_body_size=self.max_body_size)
        ctx = RequestCtx(request=request)

        try:
            response = await self.chain(request, ctx)
        except Exception as e:
            self.logger.error("Critical error in request pipeline: %s", e, exc_info=True)
            response = Response.from_fault(
                InternalFault(), request_id=request.state.get("request_id"),
            )
            apply_security_headers(response)

        await response.send_asgi(send, request.method)

    async def handle_lifespan(self, scope: dict, receive: Callable, send: Callable) -> None:
        """Handle ASGI lifespan events."""
        while True:
            message = await receive()

            if message["type"] == "lifespan.startup":
                try:
                    await self.startup()
                    await send({"type": "lifespan.startup.complete"})
                except Exception as e:
                    self.logger.error("Startup error: %s", e, exc_info=True)
                    await send({"type": "lifespan.startup.failed", "message": str(e)})
                    return

            elif message["type"] == "lifespan.shutdown":
                try:
                    await self.shutdown()
                    await send({"type": "lifespan.shutdown.complete"})
                except Exception as e:
                    self.logger.error("Shutdown error: %s", e, exc_info=True)
                    await send({"type": "lifespan.shutdown.failed", "message": str(e)})
                return

    async def startup(self) -> None:
        for hook in self.on_startup:
            await hook()
        self.logger.debug("Startup complete")

    async def shutdown(self) -> None:
        for hook in reversed(self.on_shutdown):
            await hook()
        self.logger.debug("Shutdown complete")


__all__ = ["ASGIAdapter"]
