"""
Orders - status state machine.

::

    pending    -> confirmed | cancelled
    confirmed  -> processing | cancelled
    processing -> shipped | cancelled
    shipped    -> delivered | returned
    delivered  -> returned | refunded
    returned   -> refunded
    cancelled, refunded: terminal

``transition`` is the only function that changes ``Order.status``. It
validates everything before touching the order, so a rejected call leaves
the order unchanged.
"""

from __future__ import annotations

import logging
import random
import string
import time
from datetime import datetime, timedelta
from typing import Any, Dict, FrozenSet, List, Mapping, Optional, Union

from barley.faults import IllegalCancellationFault, InvalidTransitionFault, ValidationFault

from .models import (
    Discount,
    Order,
    OrderStatus,
    TimelineEvent,
    parse_datetime,
    utcnow,
    validate_metadata,
)

logger = logging.getLogger("barley.orders")

TRANSITIONS: Dict[OrderStatus, FrozenSet[OrderStatus]] = {
    OrderStatus.PENDING: frozenset({OrderStatus.CONFIRMED, OrderStatus.CANCELLED}),
    OrderStatus.CONFIRMED: frozenset({OrderStatus.PROCESSING, OrderStatus.CANCELLED}),
    OrderStatus.PROCESSING: frozenset({OrderStatus.SHIPPED, OrderStatus.CANCELLED}),
    OrderStatus.SHIPPED: frozenset({OrderStatus.DELIVERED, OrderStatus.RETURNED}),
    OrderStatus.DELIVERED: frozenset({OrderStatus.RETURNED, OrderStatus.REFUNDED}),
    OrderStatus.RETURNED: frozenset({OrderStatus.REFUNDED}),
    OrderStatus.CANCELLED: frozenset(),
    OrderStatus.REFUNDED: frozenset(),
}

CANCELLABLE: FrozenSet[OrderStatus] = frozenset(
    {OrderStatus.PENDING, OrderStatus.CONFIRMED, OrderStatus.PROCESSING}
)

RETURN_WINDOW = timedelta(days=30)

# Status -> Order attribute stamped when the status is entered.
_STATUS_TIMESTAMPS = {
    OrderStatus.CONFIRMED: "confirmed_at",
    OrderStatus.SHIPPED: "shipped_at",
    OrderStatus.DELIVERED: "delivered_at",
    OrderStatus.CANCELLED: "cancelled_at",
}

# Statuses at or past the point each implicit transition targets.
_SHIPPED_OR_LATER = frozenset(
    {OrderStatus.SHIPPED, OrderStatus.DELIVERED, OrderStatus.RETURNED, OrderStatus.REFUNDED}
)
_DELIVERED_OR_LATER = frozenset(
    {OrderStatus.DELIVERED, OrderStatus.RETURNED, OrderStatus.REFUNDED}
)

_ORDER_SUFFIX_ALPHABET = string.digits + string.ascii_uppercase


def generate_order_number() -> str:
    """``SO-`` + last six digits of the epoch-ms clock + three base36 chars."""
    millis = str(int(time.time() * 1000))
    suffix = "".join(random.choices(_ORDER_SUFFIX_ALPHABET, k=3))
    return f"SO-{millis[-6:]}{suffix}"


def coerce_status(value: Union[str, OrderStatus, None]) -> Optional[OrderStatus]:
    """Parse a status name; ``None`` for anything that is not a status."""
    if isinstance(value, OrderStatus):
        return value
    try:
        return OrderStatus(value)
    except ValueError:
        return None


def allowed_transitions(status: OrderStatus) -> List[OrderStatus]:
    return sorted(TRANSITIONS[status], key=lambda s: s.value)


def can_transition(current: OrderStatus, requested: OrderStatus) -> bool:
    return requested in TRANSITIONS[current]


def transition(
    order: Order,
    new_status: Union[str, OrderStatus],
    note: Optional[str] = None,
    actor: Optional[str] = None,
    metadata: Optional[Mapping[str, Any]] = None,
    *,
    now: Optional[datetime] = None,
) -> TimelineEvent:
    """
    Move ``order`` to ``new_status``.

    Appends a timeline entry, sets ``status`` and stamps the status's
    timestamp field. Raises ``InvalidTransitionFault`` for illegal moves
    and ``ValidationFault`` for bad metadata; in both cases nothing is
    changed.
    """
    requested = coerce_status(new_status)
    if requested is None:
        raise ValidationFault("Valid status is required", field="status")
    if not can_transition(order.status, requested):
        raise InvalidTransitionFault(order.status.value, requested.value)
    clean_metadata = validate_metadata(metadata)

    previous = order.status
    stamp = now or utcnow()
    event = TimelineEvent(
        status=requested,
        timestamp=stamp,
        note=note,
        updated_by=actor,
        metadata=clean_metadata,
    )
    order.timeline.append(event)
    order.status = requested
    attr = _STATUS_TIMESTAMPS.get(requested)
    if attr is not None:
        setattr(order, attr, stamp)

    logger.info(
        "Order %s status %s -> %s by %s",
        order.order_number or "<new>", previous.value, requested.value, actor or "system",
    )
    return event


def can_be_cancelled(order: Order) -> bool:
    return order.status in CANCELLABLE


def cancel(
    order: Order,
    note: Optional[str] = None,
    actor: Optional[str] = None,
    metadata: Optional[Mapping[str, Any]] = None,
) -> TimelineEvent:
    """Cancel an order that has not shipped yet."""
    if not can_be_cancelled(order):
        raise IllegalCancellationFault(order.status.value)
    return transition(order, OrderStatus.CANCELLED, note, actor, metadata)


def is_return_eligible(order: Order, now: Optional[datetime] = None) -> bool:
    """Delivered no more than 30 days ago."""
    if order.status is not OrderStatus.DELIVERED or order.delivered_at is None:
        return False
    return (now or utcnow()) - order.delivered_at <= RETURN_WINDOW


def mark_shipped_via_tracking(
    order: Order,
    tracking_number: str,
    actor: Optional[str] = None,
) -> Optional[TimelineEvent]:
    """
    Record a tracking number and move the order to ``shipped``.

    No status change when the order has already shipped.
    """
    if not tracking_number:
        raise ValidationFault("Tracking number is required", field="trackingNumber")
    if order.status in _SHIPPED_OR_LATER:
        order.shipping_info.tracking_number = tracking_number
        return None
    if not can_transition(order.status, OrderStatus.SHIPPED):
        raise InvalidTransitionFault(order.status.value, OrderStatus.SHIPPED.value)

    event = transition(order, OrderStatus.SHIPPED, f"Tracking number added: {tracking_number}", actor)
    order.shipping_info.tracking_number = tracking_number
    order.shipping_info.shipped_at = event.timestamp
    return event


def mark_delivered_via_actual_date(
    order: Order,
    when: Union[str, datetime],
    actor: Optional[str] = None,
) -> Optional[TimelineEvent]:
    """
    Record the actual delivery date and move the order to ``delivered``.

    No status change when the order is already delivered.
    """
    delivered_on = parse_datetime(when, "actualDelivery")
    if delivered_on is None:
        raise ValidationFault("Actual delivery date is required", field="actualDelivery")
    if order.status in _DELIVERED_OR_LATER:
        order.shipping_info.actual_delivery = delivered_on
        order.actual_delivery_date = delivered_on
        return None
    if not can_transition(order.status, OrderStatus.DELIVERED):
        raise InvalidTransitionFault(order.status.value, OrderStatus.DELIVERED.value)

    event = transition(order, OrderStatus.DELIVERED, "Package delivered", actor)
    order.shipping_info.actual_delivery = delivered_on
    order.actual_delivery_date = delivered_on
    return event


def apply_discount(order: Order, code: str, amount: float, discount_type: str = "fixed") -> Discount:
    """Append an order-level discount; totals follow on the next recompute."""
    if discount_type not in ("percentage", "fixed"):
        raise ValidationFault(f"Invalid discount type: {discount_type}", field="type")
    discount = Discount(
        code=code,
        type=discount_type,
        amount=float(amount),
        description=f"Applied discount code: {code}",
        applied_to="order",
    )
    order.discounts.append(discount)
    return discount


def validate_order_data(data: Mapping[str, Any]) -> List[str]:
    """Structural checks on a create payload; returns error messages."""
    errors = []
    if not data.get("customerId"):
        errors.append("Customer ID is required")
    if not data.get("customerEmail"):
        errors.append("Customer email is required")
    if not data.get("items"):
        errors.append("Order must contain at least one item")
    if not data.get("shippingAddress"):
        errors.append("Shipping address is required")
    if not data.get("billingAddress"):
        errors.append("Billing address is required")
    if not data.get("paymentInfo"):
        errors.append("Payment information is required")
    return errors


__all__ = [
    "TRANSITIONS",
    "CANCELLABLE",
    "RETURN_WINDOW",
    "allowed_transitions",
    "apply_discount",
    "can_be_cancelled",
    "can_transition",
    "cancel",
    "coerce_status",
    "generate_order_number",
    "is_return_eligible",
    "mark_delivered_via_actual_date",
    "mark_shipped_via_tracking",
    "transition",
    "validate_order_data",
]
