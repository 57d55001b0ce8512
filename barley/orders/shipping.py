"""
Orders - shipping cost.

``calculate_shipping`` is deterministic in its three inputs::

    dimensional = length * width * height / 5000
    billable    = max(weight, dimensional)
    cost        = base_rate[method] + billable * 5
"""

from __future__ import annotations

from typing import Dict, Optional, Union

from .models import DEFAULT_DIMENSIONS, Dimensions, ShippingMethod, parse_enum

BASE_RATES: Dict[ShippingMethod, float] = {
    ShippingMethod.STANDARD: 50.0,
    ShippingMethod.EXPRESS: 100.0,
    ShippingMethod.OVERNIGHT: 200.0,
    ShippingMethod.SAME_DAY: 300.0,
    ShippingMethod.PICKUP: 0.0,
}

PER_KG_RATE = 5.0
DIMENSIONAL_DIVISOR = 5000.0


def dimensional_weight(dimensions: Dimensions) -> float:
    return dimensions.volume / DIMENSIONAL_DIVISOR


def billable_weight(weight: float, dimensions: Dimensions) -> float:
    return max(weight, dimensional_weight(dimensions))


def calculate_shipping(
    weight: float,
    dimensions: Optional[Dimensions] = None,
    method: Union[str, ShippingMethod] = ShippingMethod.STANDARD,
) -> float:
    """Shipping cost for a parcel. ``dimensions`` defaults to 30x20x15."""
    method = parse_enum(ShippingMethod, method, "shipping method")
    dims = dimensions or DEFAULT_DIMENSIONS
    cost = BASE_RATES[method] + billable_weight(max(weight, 0.0), dims) * PER_KG_RATE
    return round(cost, 2)


__all__ = [
    "BASE_RATES",
    "PER_KG_RATE",
    "DIMENSIONAL_DIVISOR",
    "billable_weight",
    "calculate_shipping",
    "dimensional_weight",
]
