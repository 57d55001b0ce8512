"""
Orders module.

- ``models``: order dataclasses and their camelCase wire format
- ``lifecycle``: status state machine, cancellation and return rules
- ``totals`` / ``shipping``: derived amounts
- ``repository`` / ``service``: storage and application operations
- ``controllers``: ``/api/orders`` endpoints
"""

from .controllers import OrderController
from .lifecycle import (
    allowed_transitions,
    apply_discount,
    can_be_cancelled,
    can_transition,
    cancel,
    generate_order_number,
    is_return_eligible,
    mark_delivered_via_actual_date,
    mark_shipped_via_tracking,
    transition,
    validate_order_data,
)
from .models import (
    Address,
    Order,
    OrderItem,
    OrderStatus,
    OrderTotals,
    PaymentMethod,
    PaymentStatus,
    ShippingInfo,
    ShippingMethod,
    TimelineEvent,
)
from .repository import OrderFilters, OrderRepository
from .service import OrderService
from .shipping import calculate_shipping
from .totals import recompute_totals

__all__ = [
    "OrderController",
    "OrderService",
    "OrderRepository",
    "OrderFilters",
    "Order",
    "OrderItem",
    "OrderStatus",
    "OrderTotals",
    "PaymentMethod",
    "PaymentStatus",
    "ShippingInfo",
    "ShippingMethod",
    "TimelineEvent",
    "Address",
    "allowed_transitions",
    "apply_discount",
    "calculate_shipping",
    "can_be_cancelled",
    "can_transition",
    "cancel",
    "generate_order_number",
    "is_return_eligible",
    "mark_delivered_via_actual_date",
    "mark_shipped_via_tracking",
    "recompute_totals",
    "transition",
    "validate_order_data",
]
