"""
Orders - in-process repository.

Async, lock-guarded store keyed by order number. ``save`` recomputes the
derived totals before storing, so every persisted order satisfies the
totals identity. There is no version check: the last writer wins.
"""

from __future__ import annotations

import asyncio
import copy
import logging
import math
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from barley.faults import DuplicateEntryFault, ValidationFault

from .lifecycle import generate_order_number
from .models import Order, OrderStatus, PaymentStatus, utcnow
from .totals import money, recompute_totals

logger = logging.getLogger("barley.orders.repository")

_MAX_NUMBER_ATTEMPTS = 5


@dataclass
class OrderFilters:
    status: Optional[OrderStatus] = None
    payment_status: Optional[PaymentStatus] = None
    customer_id: Optional[str] = None
    customer_email: Optional[str] = None
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    search: Optional[str] = None

    def matches(self, order: Order) -> bool:
        if self.status is not None and order.status is not self.status:
            return False
        if self.payment_status is not None and order.payment_status is not self.payment_status:
            return False
        if self.customer_id and order.customer_id != self.customer_id:
            return False
        if self.customer_email and order.customer_email != self.customer_email.lower():
            return False
        if self.start_date and order.created_at < self.start_date:
            return False
        if self.end_date and order.created_at > self.end_date:
            return False
        if self.search:
            needle = self.search.lower()
            haystack = (
                order.order_number,
                order.customer_email,
                order.shipping_address.first_name,
                order.shipping_address.last_name,
            )
            if not any(needle in value.lower() for value in haystack if value):
                return False
        return True


SORTABLE_FIELDS = {
    "createdAt": lambda o: o.created_at,
    "updatedAt": lambda o: o.updated_at,
    "placedAt": lambda o: o.placed_at,
    "orderNumber": lambda o: o.order_number,
    "status": lambda o: o.status.value,
    "total": lambda o: o.totals.total,
    "customerEmail": lambda o: o.customer_email,
}


@dataclass
class Page:
    items: List[Order]
    page: int
    limit: int
    total: int
    pages: int = field(init=False)

    def __post_init__(self) -> None:
        self.pages = math.ceil(self.total / self.limit) if self.limit else 0


class OrderRepository:
    """
    Order storage.

    Stored orders are copies; callers mutate their own instance and hand it
    back through ``save``.
    """

    def __init__(self):
        self._orders: Dict[str, Order] = {}
        self._lock = asyncio.Lock()

    async def add(self, order: Order) -> Order:
        """Insert a new order, assigning an order number when it has none."""
        async with self._lock:
            if order.order_number:
                if order.order_number in self._orders:
                    raise DuplicateEntryFault("orderNumber", order.order_number)
            else:
                order.order_number = self._unique_number()
            recompute_totals(order)
            order.updated_at = utcnow()
            self._orders[order.order_number] = copy.deepcopy(order)
        logger.info("Order %s created for customer %s", order.order_number, order.customer_id)
        return order

    async def get(self, order_number: str) -> Optional[Order]:
        async with self._lock:
            stored = self._orders.get(order_number)
            return copy.deepcopy(stored) if stored is not None else None

    async def save(self, order: Order) -> Order:
        """Recompute totals and store ``order`` over the previous version."""
        if not order.order_number:
            raise ValidationFault("Order number is required", field="orderNumber")
        async with self._lock:
            recompute_totals(order)
            order.updated_at = utcnow()
            self._orders[order.order_number] = copy.deepcopy(order)
        return order

    async def count(self) -> int:
        async with self._lock:
            return len(self._orders)

    async def list(
        self,
        filters: Optional[OrderFilters] = None,
        page: int = 1,
        limit: int = 20,
        sort_by: str = "createdAt",
        sort_order: str = "desc",
    ) -> Page:
        if page < 1 or limit < 1:
            raise ValidationFault("Page and limit must be positive integers")
        key = SORTABLE_FIELDS.get(sort_by)
        if key is None:
            raise ValidationFault(f"Cannot sort by {sort_by}", field="sortBy")
        filters = filters or OrderFilters()

        async with self._lock:
            matched = [o for o in self._orders.values() if filters.matches(o)]
        matched.sort(key=key, reverse=sort_order == "desc")
        start = (page - 1) * limit
        items = [copy.deepcopy(o) for o in matched[start:start + limit]]
        return Page(items=items, page=page, limit=limit, total=len(matched))

    async def stats(
        self,
        start_date: Optional[datetime] = None,
        end_date: Optional[datetime] = None,
    ) -> Dict[str, Any]:
        """Revenue summary plus status, payment and shipping breakdowns."""
        filters = OrderFilters(start_date=start_date, end_date=end_date)
        async with self._lock:
            orders = [o for o in self._orders.values() if filters.matches(o)]

        revenue = money(sum(o.totals.total for o in orders))
        return {
            "summary": {
                "totalOrders": len(orders),
                "totalRevenue": revenue,
                "averageOrderValue": money(revenue / len(orders)) if orders else 0.0,
            },
            "statusBreakdown": _breakdown(orders, lambda o: o.status.value),
            "paymentBreakdown": _breakdown(orders, lambda o: o.payment_status.value),
            "shippingBreakdown": _shipping_breakdown(orders),
        }

    def _unique_number(self) -> str:
        for _ in range(_MAX_NUMBER_ATTEMPTS):
            number = generate_order_number()
            if number not in self._orders:
                return number
        raise DuplicateEntryFault("orderNumber", number)


def _breakdown(orders: List[Order], key) -> List[Dict[str, Any]]:
    groups: Dict[str, Tuple[int, float]] = {}
    for order in orders:
        count, value = groups.get(key(order), (0, 0.0))
        groups[key(order)] = (count + 1, value + order.totals.total)
    return [
        {"_id": name, "count": count, "totalValue": money(value)}
        for name, (count, value) in sorted(groups.items())
    ]


def _shipping_breakdown(orders: List[Order]) -> List[Dict[str, Any]]:
    groups: Dict[str, List[float]] = {}
    for order in orders:
        groups.setdefault(order.shipping_info.method.value, []).append(order.shipping_info.cost)
    return [
        {
            "_id": method,
            "count": len(costs),
            "totalShippingCost": money(sum(costs)),
            "avgShippingCost": money(sum(costs) / len(costs)),
        }
        for method, costs in sorted(groups.items())
    ]


__all__ = ["OrderRepository", "OrderFilters", "Page", "SORTABLE_FIELDS"]
