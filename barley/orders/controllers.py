"""
Orders module - controllers.

JSON endpoints under ``/api/orders``. Handlers stay thin: they read the
request, resolve the actor and delegate to ``OrderService``.
"""

from __future__ import annotations

import inspect
from typing import Any, Awaitable, Callable, Optional, Union

from barley.controller import DELETE, GET, POST, PUT, Controller, RequestCtx
from barley.faults import UnauthorizedFault, ValidationFault
from barley.request import Request

from .service import OrderService

IdentityResolver = Callable[[Request], Union[Optional[str], Awaitable[Optional[str]]]]

SYSTEM_ACTOR = "system"


class OrderController(Controller):
    """
    Order management API.

    Args:
        service: Order application service.
        identity_resolver: Returns the acting user's id for a request.
            Without one every mutation is attributed to ``system``; with
            one, a request it cannot identify is rejected with 401.
    """

    prefix = "/api/orders"
    tags = ["orders"]

    def __init__(self, service: OrderService, identity_resolver: Optional[IdentityResolver] = None):
        self.service = service
        self.identity_resolver = identity_resolver

    async def _actor(self, ctx: RequestCtx) -> str:
        if ctx.identity:
            return ctx.identity
        if self.identity_resolver is None:
            return SYSTEM_ACTOR
        identity = self.identity_resolver(ctx.request)
        if inspect.isawaitable(identity):
            identity = await identity
        if not identity:
            raise UnauthorizedFault()
        ctx.identity = identity
        return identity

    async def _body(self, ctx: RequestCtx) -> dict:
        body = await ctx.json()
        if not isinstance(body, dict):
            raise ValidationFault("Request body must be a JSON object")
        return body

    # ── Collection ───────────────────────────────────────────

    @GET("/", cache="api-dynamic")
    async def list_orders(self, ctx: RequestCtx) -> Any:
        """List orders with filters, pagination and sorting."""
        names = (
            "page", "limit", "status", "paymentStatus", "customerId",
            "customerEmail", "startDate", "endDate", "search", "sortBy", "sortOrder",
        )
        query = {name: ctx.query_param(name) for name in names}
        return await self.service.list(query)

    @POST("/", status_code=201)
    async def create_order(self, ctx: RequestCtx) -> Any:
        """Create an order in ``pending``."""
        actor = await self._actor(ctx)
        order = await self.service.create(await self._body(ctx), actor)
        return {"message": "Order created successfully", "order": order.to_dict()}

    @GET("/stats", cache="short")
    async def order_stats(self, ctx: RequestCtx) -> Any:
        """Revenue summary with status, payment and shipping breakdowns."""
        return await self.service.stats(ctx.query_param("startDate"), ctx.query_param("endDate"))

    # ── Single order ─────────────────────────────────────────

    @GET("/{id}", cache="api-dynamic")
    async def get_order(self, ctx: RequestCtx) -> Any:
        include_timeline = ctx.query_param("includeTimeline") == "true"
        return await self.service.get(ctx.params["id"], include_timeline=include_timeline)

    @PUT("/{id}")
    async def update_order(self, ctx: RequestCtx) -> Any:
        """Update status, payment status, tracking, notes or addresses."""
        actor = await self._actor(ctx)
        return await self.service.update(ctx.params["id"], await self._body(ctx), actor)

    @DELETE("/{id}")
    async def cancel_order(self, ctx: RequestCtx) -> Any:
        """Cancel the order. Orders are never deleted."""
        actor = await self._actor(ctx)
        return await self.service.cancel(ctx.params["id"], actor)

    @PUT("/{id}/status")
    async def change_status(self, ctx: RequestCtx) -> Any:
        actor = await self._actor(ctx)
        body = await self._body(ctx)
        return await self.service.change_status(
            ctx.params["id"],
            body.get("status"),
            note=body.get("note"),
            metadata=body.get("metadata"),
            actor=actor,
        )

    # ── Tracking ─────────────────────────────────────────────

    @GET("/{id}/tracking", cache="api-dynamic")
    async def get_tracking(self, ctx: RequestCtx) -> Any:
        return await self.service.tracking(ctx.params["id"])

    @PUT("/{id}/tracking")
    async def update_tracking(self, ctx: RequestCtx) -> Any:
        actor = await self._actor(ctx)
        return await self.service.update_tracking(ctx.params["id"], await self._body(ctx), actor)


__all__ = ["OrderController", "IdentityResolver", "SYSTEM_ACTOR"]
