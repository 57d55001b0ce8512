"""
Orders - application service.

Coordinates the lifecycle functions, the repository and the cache. Every
mutation works on a fresh copy loaded from the repository and is only
stored once all of its steps succeeded, so a rejected request leaves the
stored order untouched.

Reads go through ``CacheService.cache_aside``; every mutation invalidates
the ``orders`` tag (lists and stats) and the order's own tag.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Mapping, Optional

from barley.cache import CacheService, generate_cache_key
from barley.faults import NotFoundFault, ValidationFault

from . import lifecycle
from .models import (
    Address,
    Order,
    OrderStatus,
    PaymentStatus,
    ShippingInfo,
    parse_datetime,
    parse_enum,
    utcnow,
)
from .repository import OrderFilters, OrderRepository
from .shipping import calculate_shipping

logger = logging.getLogger("barley.orders")

REQUIRED_CREATE_FIELDS = (
    "customerId",
    "customerEmail",
    "items",
    "shippingAddress",
    "billingAddress",
    "paymentInfo",
)

TRACKING_FIELDS = (
    "trackingNumber",
    "trackingUrl",
    "carrier",
    "estimatedDelivery",
    "actualDelivery",
    "specialInstructions",
)

# Timeline statuses reported by the tracking endpoint.
TRACKING_STATUSES = frozenset({
    OrderStatus.CONFIRMED,
    OrderStatus.PROCESSING,
    OrderStatus.SHIPPED,
    OrderStatus.DELIVERED,
})

ORDERS_TAG = "orders"


def order_tag(order_number: str) -> str:
    return f"order:{order_number}"


class OrderService:
    """
    Args:
        repository: Order storage.
        cache: Cache used for reads; ``None`` disables caching.
        cache_ttl: TTL for cached order reads.
    """

    def __init__(
        self,
        repository: OrderRepository,
        cache: Optional[CacheService] = None,
        cache_ttl: int = 300,
    ):
        self.repository = repository
        self.cache = cache
        self.cache_ttl = cache_ttl

    # ── Queries ──────────────────────────────────────────────

    async def get(self, order_number: str, include_timeline: bool = False) -> Dict[str, Any]:
        data = await self._cached(
            generate_cache_key("order", order_number),
            lambda: self._load_dict(order_number),
            tags=(ORDERS_TAG, order_tag(order_number)),
        )
        response = {"order": data}
        if include_timeline:
            response["timeline"] = data["timeline"]
        return response

    async def list(self, query: Mapping[str, Any]) -> Dict[str, Any]:
        """List orders; ``query`` holds the raw camelCase query parameters."""
        page = _positive_int(query.get("page"), "page", 1)
        limit = _positive_int(query.get("limit"), "limit", 20)
        sort_by = query.get("sortBy") or "createdAt"
        sort_order = "asc" if query.get("sortOrder") == "asc" else "desc"
        filters = OrderFilters(
            status=parse_enum(OrderStatus, query["status"], "status") if query.get("status") else None,
            payment_status=(
                parse_enum(PaymentStatus, query["paymentStatus"], "paymentStatus")
                if query.get("paymentStatus") else None
            ),
            customer_id=query.get("customerId") or None,
            customer_email=query.get("customerEmail") or None,
            start_date=parse_datetime(query.get("startDate"), "startDate"),
            end_date=parse_datetime(query.get("endDate"), "endDate"),
            search=query.get("search") or None,
        )

        async def fetch() -> Dict[str, Any]:
            result = await self.repository.list(filters, page, limit, sort_by, sort_order)
            return {
                "orders": [order.to_dict() for order in result.items],
                "pagination": {
                    "page": result.page,
                    "limit": result.limit,
                    "total": result.total,
                    "pages": result.pages,
                },
                "filters": {
                    "status": query.get("status"),
                    "paymentStatus": query.get("paymentStatus"),
                    "customerId": query.get("customerId"),
                    "customerEmail": query.get("customerEmail"),
                    "dateRange": {
                        "startDate": query.get("startDate"),
                        "endDate": query.get("endDate"),
                    },
                },
            }

        key_parts = sorted((k, str(v)) for k, v in query.items() if v not in (None, ""))
        key = generate_cache_key("orders", *(f"{k}={v}" for k, v in key_parts))
        return await self._cached(key, fetch, tags=(ORDERS_TAG,))

    async def stats(self, start_date: Any = None, end_date: Any = None) -> Dict[str, Any]:
        start = parse_datetime(start_date, "startDate")
        end = parse_datetime(end_date, "endDate")
        key = generate_cache_key(
            "orders", "stats",
            start.isoformat() if start else None,
            end.isoformat() if end else None,
        )
        return await self._cached(key, lambda: self.repository.stats(start, end), tags=(ORDERS_TAG,))

    async def tracking(self, order_number: str) -> Dict[str, Any]:
        order = await self._load(order_number)
        info = order.shipping_info
        return {
            "orderNumber": order.order_number,
            "status": order.status.value,
            "trackingNumber": info.tracking_number,
            "trackingUrl": info.tracking_url,
            "carrier": info.carrier,
            "estimatedDelivery": _iso(info.estimated_delivery),
            "actualDelivery": _iso(info.actual_delivery),
            "shippedAt": _iso(order.shipped_at),
            "deliveredAt": _iso(order.delivered_at),
            "timeline": [
                event.to_dict() for event in order.timeline if event.status in TRACKING_STATUSES
            ],
        }

    # ── Mutations ────────────────────────────────────────────

    async def create(self, data: Mapping[str, Any], actor: str = "system") -> Order:
        """
        Create an order from a camelCase payload.

        The shipping cost is taken from ``shippingInfo.cost`` when given,
        otherwise computed from the aggregate item weight and the parcel
        dimensions.
        """
        if not isinstance(data, Mapping):
            raise ValidationFault("Request body must be a JSON object")
        for name in REQUIRED_CREATE_FIELDS:
            if not data.get(name):
                raise ValidationFault(f"{name} is required", field=name)
        errors = lifecycle.validate_order_data(data)
        if errors:
            raise ValidationFault(", ".join(errors), errors=errors)

        order = Order.from_dict(data)
        order.timeline[0].updated_by = actor

        shipping_payload = data.get("shippingInfo") or {}
        if shipping_payload.get("cost") is None:
            weight = sum(item.weight * item.quantity for item in order.items)
            order.shipping_info.cost = calculate_shipping(
                weight, order.shipping_info.dimensions, order.shipping_info.method,
            )

        order = await self.repository.add(order)
        await self._invalidate(order.order_number)
        return order

    async def update(self, order_number: str, body: Mapping[str, Any], actor: str = "system") -> Dict[str, Any]:
        order = await self._load(order_number)

        status = body.get("status")
        if status and status != order.status.value:
            lifecycle.transition(order, status, body.get("statusNote"), actor)

        payment_status = body.get("paymentStatus")
        if payment_status and payment_status != order.payment_status.value:
            new_status = parse_enum(PaymentStatus, payment_status, "paymentStatus")
            order.payment_status = new_status
            order.payment_info.status = new_status
            if new_status is PaymentStatus.CAPTURED:
                order.payment_info.captured_at = utcnow()
                paid = body.get("paidAmount")
                if paid is None:
                    order.totals.paid_amount = order.totals.total
                elif isinstance(paid, bool) or not isinstance(paid, (int, float)):
                    raise ValidationFault("paidAmount must be a number", field="paidAmount")
                else:
                    order.totals.paid_amount = float(paid)

        if body.get("shippingInfo"):
            self._apply_tracking(order, body["shippingInfo"], actor)

        if "adminNotes" in body:
            order.admin_notes = body["adminNotes"]
        if "customerNotes" in body:
            order.customer_notes = body["customerNotes"]
        if "expectedDeliveryDate" in body:
            order.expected_delivery_date = parse_datetime(body["expectedDeliveryDate"], "expectedDeliveryDate")
        if body.get("shippingAddress"):
            order.shipping_address = Address.from_dict(body["shippingAddress"], "shippingAddress")
        if body.get("billingAddress"):
            order.billing_address = Address.from_dict(body["billingAddress"], "billingAddress")

        await self._store(order)
        return {"message": "Order updated successfully", "order": order.to_dict()}

    async def change_status(
        self,
        order_number: str,
        status: Any,
        note: Optional[str] = None,
        metadata: Optional[Mapping[str, Any]] = None,
        actor: str = "system",
    ) -> Dict[str, Any]:
        requested = lifecycle.coerce_status(status) if status else None
        if requested is None:
            raise ValidationFault("Valid status is required", field="status")
        order = await self._load(order_number)
        lifecycle.transition(order, requested, note, actor, metadata)
        await self._store(order)
        return {
            "message": f"Order status updated to {requested.value}",
            "order": {
                "orderNumber": order.order_number,
                "status": order.status.value,
                "totals": order.totals.to_dict(),
            },
            "timeline": [event.to_dict() for event in order.timeline],
        }

    async def update_tracking(
        self,
        order_number: str,
        body: Mapping[str, Any],
        actor: str = "system",
    ) -> Dict[str, Any]:
        order = await self._load(order_number)
        status_changed = self._apply_tracking(order, body, actor)
        await self._store(order)

        info = order.shipping_info
        message = "Tracking information updated successfully"
        if status_changed:
            message += ". Order status updated."
        return {
            "message": message,
            "orderNumber": order.order_number,
            "trackingInfo": {
                "trackingNumber": info.tracking_number,
                "trackingUrl": info.tracking_url,
                "carrier": info.carrier,
                "estimatedDelivery": _iso(info.estimated_delivery),
                "actualDelivery": _iso(info.actual_delivery),
            },
        }

    async def cancel(
        self,
        order_number: str,
        actor: str = "system",
        note: str = "Order cancelled via API",
    ) -> Dict[str, Any]:
        order = await self._load(order_number)
        lifecycle.cancel(order, note, actor)
        await self._store(order)
        return {"message": "Order cancelled successfully", "order": order.to_dict()}

    async def apply_discount(
        self,
        order_number: str,
        code: str,
        amount: float,
        discount_type: str = "fixed",
    ) -> Order:
        order = await self._load(order_number)
        lifecycle.apply_discount(order, code, amount, discount_type)
        return await self._store(order)

    # ── Internals ────────────────────────────────────────────

    def _apply_tracking(self, order: Order, body: Mapping[str, Any], actor: str) -> bool:
        """Apply the allowed tracking fields; True if the status changed."""
        info: ShippingInfo = order.shipping_info
        changed = False
        for name in TRACKING_FIELDS:
            if name not in body:
                continue
            value = body[name]
            if name == "trackingNumber":
                if value:
                    changed = lifecycle.mark_shipped_via_tracking(order, value, actor) is not None or changed
                else:
                    info.tracking_number = value
            elif name == "actualDelivery":
                if value:
                    changed = lifecycle.mark_delivered_via_actual_date(order, value, actor) is not None or changed
                else:
                    info.actual_delivery = None
            elif name == "estimatedDelivery":
                info.estimated_delivery = parse_datetime(value, "estimatedDelivery")
            elif name == "trackingUrl":
                info.tracking_url = value
            elif name == "carrier":
                info.carrier = value
            elif name == "specialInstructions":
                info.special_instructions = value
        return changed

    async def _load(self, order_number: str) -> Order:
        order = await self.repository.get(order_number)
        if order is None:
            raise NotFoundFault("Order", order_number)
        return order

    async def _load_dict(self, order_number: str) -> Dict[str, Any]:
        return (await self._load(order_number)).to_dict()

    async def _store(self, order: Order) -> Order:
        order = await self.repository.save(order)
        await self._invalidate(order.order_number)
        return order

    async def _invalidate(self, order_number: str) -> None:
        if self.cache is not None:
            await self.cache.invalidate_by_tags((ORDERS_TAG, order_tag(order_number)))

    async def _cached(self, key: str, fetch, tags=()) -> Any:
        if self.cache is None:
            return await fetch()
        return await self.cache.cache_aside(key, fetch, ttl=self.cache_ttl, tags=tags)


def _iso(value) -> Optional[str]:
    return value.isoformat() if value is not None else None


def _positive_int(value: Any, name: str, default: int) -> int:
    if value in (None, ""):
        return default
    try:
        number = int(value)
    except (TypeError, ValueError):
        raise ValidationFault(f"{name} must be a positive integer", field=name) from None
    if number < 1:
        raise ValidationFault(f"{name} must be a positive integer", field=name)
    return number


__all__ = ["OrderService", "ORDERS_TAG", "order_tag"]
