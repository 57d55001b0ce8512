"""
Orders - derived totals.

``recompute_totals`` is the only writer of ``Order.totals`` and
``ShippingInfo.weight``. It is a pure function of the order's items,
discounts, taxes, shipping cost and paid/refunded amounts, so calling it
twice in a row yields identical totals.

Amounts are rounded to two decimals. Totals are not clamped: discounts
larger than the rest of the order produce a negative total.
"""

from __future__ import annotations

from typing import Iterable

from .models import Order, OrderTotals

MONEY_PLACES = 2


def money(value: float) -> float:
    # round() can yield -0.0; normalise so identical totals serialize identically.
    return round(value, MONEY_PLACES) + 0.0


def _sum(values: Iterable[float]) -> float:
    return money(sum(values))


def recompute_totals(order: Order) -> OrderTotals:
    """Recompute ``order.totals`` and the aggregate shipping weight in place."""
    subtotal = _sum(item.total_price for item in order.items)
    discount_total = _sum(discount.amount for discount in order.discounts)
    tax_total = _sum(tax.amount for tax in order.taxes)
    shipping_total = money(order.shipping_info.cost)
    total = money(subtotal - discount_total + tax_total + shipping_total)

    paid = money(order.totals.paid_amount)
    refunded = money(order.totals.refunded_amount)

    order.totals = OrderTotals(
        subtotal=subtotal,
        discount_total=discount_total,
        tax_total=tax_total,
        shipping_total=shipping_total,
        total=total,
        paid_amount=paid,
        refunded_amount=refunded,
        outstanding_amount=money(total - paid + refunded),
    )
    order.shipping_info.weight = round(
        sum(item.weight * item.quantity for item in order.items), 3
    ) + 0.0
    return order.totals


__all__ = ["recompute_totals", "money", "MONEY_PLACES"]
