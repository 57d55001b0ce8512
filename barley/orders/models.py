"""
Orders - domain model.

Dataclasses for the order aggregate and its value objects. The wire format
is camelCase JSON (``Order.from_dict`` / ``Order.to_dict``); Python
attributes are snake_case.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field, fields
from datetime import date, datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, List, Mapping, Optional, Type, TypeVar

from barley._datastructures import Metadata, MetadataError, coerce_metadata
from barley.faults import ValidationFault

E = TypeVar("E", bound=Enum)


# ============================================================================
# Enumerations
# ============================================================================

class OrderStatus(str, Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    PROCESSING = "processing"
    SHIPPED = "shipped"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"
    REFUNDED = "refunded"
    RETURNED = "returned"


class PaymentStatus(str, Enum):
    PENDING = "pending"
    AUTHORIZED = "authorized"
    CAPTURED = "captured"
    PARTIAL_REFUND = "partial_refund"
    REFUNDED = "refunded"
    FAILED = "failed"
    CANCELLED = "cancelled"


class PaymentMethod(str, Enum):
    CREDIT_CARD = "credit_card"
    DEBIT_CARD = "debit_card"
    PAYPAL = "paypal"
    BANK_TRANSFER = "bank_transfer"
    CASH_ON_DELIVERY = "cash_on_delivery"
    GCASH = "gcash"
    MAYA = "maya"


class ShippingMethod(str, Enum):
    STANDARD = "standard"
    EXPRESS = "express"
    OVERNIGHT = "overnight"
    PICKUP = "pickup"
    SAME_DAY = "same_day"


# ============================================================================
# Wire helpers
# ============================================================================

_CAMEL_RE = re.compile(r"_([a-z])")


def camel(name: str) -> str:
    """snake_case -> camelCase."""
    return _CAMEL_RE.sub(lambda m: m.group(1).upper(), name)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def parse_datetime(value: Any, field_name: str = "date") -> Optional[datetime]:
    """
    Parse an ISO-8601 string (``Z`` suffix allowed) or pass a datetime
    through. Naive values are taken as UTC.
    """
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, date):
        parsed = datetime(value.year, value.month, value.day)
    elif isinstance(value, str):
        text = value.strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError:
            raise ValidationFault(f"Invalid {field_name}: {value}", field=field_name) from None
    else:
        raise ValidationFault(f"Invalid {field_name}: {value!r}", field=field_name)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def parse_enum(enum_cls: Type[E], value: Any, field_name: str) -> E:
    try:
        return enum_cls(value)
    except ValueError:
        raise ValidationFault(f"Invalid {field_name}: {value}", field=field_name) from None


def _number(value: Any, field_name: str, default: float = 0.0) -> float:
    if value is None or value == "":
        return default
    if isinstance(value, bool):
        raise ValidationFault(f"{field_name} must be a number", field=field_name)
    try:
        return float(value)
    except (TypeError, ValueError):
        raise ValidationFault(f"{field_name} must be a number", field=field_name) from None


def _wire(value: Any) -> Any:
    if isinstance(value, WireModel):
        return value.to_dict()
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, list):
        return [_wire(v) for v in value]
    if isinstance(value, dict):
        return {k: _wire(v) for k, v in value.items()}
    return value


def _many(cls: Callable[[Mapping[str, Any]], Any], items: Any, field_name: str) -> list:
    if items is None:
        return []
    if not isinstance(items, list):
        raise ValidationFault(f"{field_name} must be a list", field=field_name)
    return [cls(item) for item in items]


def _mapping(data: Any, field_name: str) -> Mapping[str, Any]:
    if not isinstance(data, Mapping):
        raise ValidationFault(f"{field_name} must be an object", field=field_name)
    return data


class WireModel:
    """Mixin rendering dataclass fields as a camelCase dict."""

    def to_dict(self) -> Dict[str, Any]:
        return {camel(f.name): _wire(getattr(self, f.name)) for f in fields(self)}


# ============================================================================
# Value objects
# ============================================================================

@dataclass(frozen=True)
class Dimensions(WireModel):
    length: float = 0.0
    width: float = 0.0
    height: float = 0.0

    @property
    def volume(self) -> float:
        return self.length * self.width * self.height

    @classmethod
    def from_dict(cls, data: Any) -> "Dimensions":
        data = _mapping(data, "dimensions")
        return cls(
            length=_number(data.get("length"), "dimensions.length"),
            width=_number(data.get("width"), "dimensions.width"),
            height=_number(data.get("height"), "dimensions.height"),
        )


DEFAULT_DIMENSIONS = Dimensions(30.0, 20.0, 15.0)


@dataclass
class BundleItem(WireModel):
    product_id: str
    variant_sku: str
    quantity: int
    product_name: str = ""

    @classmethod
    def from_dict(cls, data: Any) -> "BundleItem":
        data = _mapping(data, "bundleItems")
        return cls(
            product_id=str(data.get("productId", "")),
            product_name=data.get("productName", ""),
            variant_sku=data.get("variantSku", ""),
            quantity=int(_number(data.get("quantity"), "bundleItems.quantity", 1)),
        )


@dataclass
class OrderItem(WireModel):
    """
    Order line. ``total_price`` is ``unit_price * quantity``; line discounts
    are carried separately and do not reduce it.
    """

    product_id: str
    product_name: str
    variant_sku: str
    quantity: int
    unit_price: float
    product_type: str = "simple"
    variant_name: str = ""
    total_price: float = 0.0
    discount: float = 0.0
    discount_type: str = "fixed"
    weight: float = 0.0
    dimensions: Optional[Dimensions] = None
    bundle_items: List[BundleItem] = field(default_factory=list)

    def __post_init__(self) -> None:
        if self.quantity < 1:
            raise ValidationFault("Quantity must be at least 1", field="quantity")
        if self.unit_price < 0:
            raise ValidationFault("Unit price must be positive", field="unitPrice")
        self.total_price = round(self.unit_price * self.quantity, 2)

    @classmethod
    def from_dict(cls, data: Any) -> "OrderItem":
        data = _mapping(data, "items")
        for key, label in (("productId", "Product ID"), ("productName", "Product name"),
                           ("variantSku", "Variant SKU")):
            if not data.get(key):
                raise ValidationFault(f"{label} is required", field=key)
        if data.get("quantity") is None:
            raise ValidationFault("Quantity is required", field="quantity")
        dims = data.get("dimensions")
        return cls(
            product_id=str(data["productId"]),
            product_name=str(data["productName"]).strip(),
            product_type=data.get("productType") or "simple",
            variant_sku=str(data["variantSku"]).strip(),
            variant_name=str(data.get("variantName") or "").strip(),
            quantity=int(_number(data.get("quantity"), "quantity")),
            unit_price=_number(data.get("unitPrice"), "unitPrice"),
            discount=_number(data.get("discount"), "discount"),
            discount_type=data.get("discountType") or "fixed",
            weight=_number(data.get("weight"), "weight"),
            dimensions=Dimensions.from_dict(dims) if dims else None,
            bundle_items=_many(BundleItem.from_dict, data.get("bundleItems"), "bundleItems"),
        )


@dataclass
class Address(WireModel):
    first_name: str
    last_name: str
    street: str
    city: str
    state: str
    zip_code: str
    country: str = "Philippines"
    company: Optional[str] = None
    apartment: Optional[str] = None
    phone: Optional[str] = None
    email: Optional[str] = None
    is_default: bool = False
    tax_id: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Any, field_name: str = "address") -> "Address":
        data = _mapping(data, field_name)
        missing = [
            key for key in ("firstName", "lastName", "street", "city", "state", "zipCode")
            if not data.get(key)
        ]
        if missing:
            raise ValidationFault(
                f"{field_name} is missing {', '.join(missing)}",
                field=field_name,
                metadata={"missing": missing},
            )
        return cls(
            first_name=str(data["firstName"]).strip(),
            last_name=str(data["lastName"]).strip(),
            street=str(data["street"]).strip(),
            city=str(data["city"]).strip(),
            state=str(data["state"]).strip(),
            zip_code=str(data["zipCode"]).strip(),
            country=data.get("country") or "Philippines",
            company=data.get("company"),
            apartment=data.get("apartment"),
            phone=data.get("phone"),
            email=data.get("email"),
            is_default=bool(data.get("isDefault", False)),
            tax_id=data.get("taxId"),
        )


@dataclass
class PaymentInfo(WireModel):
    method: PaymentMethod
    status: PaymentStatus = PaymentStatus.PENDING
    transaction_id: Optional[str] = None
    payment_gateway: Optional[str] = None
    paid_at: Optional[datetime] = None
    authorized_at: Optional[datetime] = None
    captured_at: Optional[datetime] = None
    failure_reason: Optional[str] = None
    refunded_amount: float = 0.0
    refunded_at: Optional[datetime] = None

    @classmethod
    def from_dict(cls, data: Any) -> "PaymentInfo":
        data = _mapping(data, "paymentInfo")
        if not data.get("method"):
            raise ValidationFault("Payment method is required", field="paymentInfo.method")
        return cls(
            method=parse_enum(PaymentMethod, data["method"], "payment method"),
            status=parse_enum(PaymentStatus, data.get("status") or "pending", "payment status"),
            transaction_id=data.get("transactionId"),
            payment_gateway=data.get("paymentGateway"),
            paid_at=parse_datetime(data.get("paidAt"), "paidAt"),
            authorized_at=parse_datetime(data.get("authorizedAt"), "authorizedAt"),
            captured_at=parse_datetime(data.get("capturedAt"), "capturedAt"),
            failure_reason=data.get("failureReason"),
            refunded_amount=_number(data.get("refundedAmount"), "refundedAmount"),
            refunded_at=parse_datetime(data.get("refundedAt"), "refundedAt"),
        )


@dataclass
class ShippingInfo(WireModel):
    method: ShippingMethod = ShippingMethod.STANDARD
    carrier: Optional[str] = None
    tracking_number: Optional[str] = None
    tracking_url: Optional[str] = None
    estimated_delivery: Optional[datetime] = None
    actual_delivery: Optional[datetime] = None
    shipped_at: Optional[datetime] = None
    cost: float = 0.0
    weight: float = 0.0
    dimensions: Dimensions = field(default=DEFAULT_DIMENSIONS)
    special_instructions: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Any) -> "ShippingInfo":
        data = _mapping(data or {}, "shippingInfo")
        dims = data.get("dimensions")
        return cls(
            method=parse_enum(ShippingMethod, data.get("method") or "standard", "shipping method"),
            carrier=data.get("carrier"),
            tracking_number=data.get("trackingNumber"),
            tracking_url=data.get("trackingUrl"),
            estimated_delivery=parse_datetime(data.get("estimatedDelivery"), "estimatedDelivery"),
            actual_delivery=parse_datetime(data.get("actualDelivery"), "actualDelivery"),
            shipped_at=parse_datetime(data.get("shippedAt"), "shippedAt"),
            cost=_number(data.get("cost"), "shippingInfo.cost"),
            weight=_number(data.get("weight"), "shippingInfo.weight"),
            dimensions=Dimensions.from_dict(dims) if dims else DEFAULT_DIMENSIONS,
            special_instructions=data.get("specialInstructions"),
        )


@dataclass
class Discount(WireModel):
    amount: float
    type: str = "fixed"
    description: str = ""
    applied_to: str = "order"
    code: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Any) -> "Discount":
        data = _mapping(data, "discounts")
        return cls(
            code=data.get("code"),
            type=data.get("type") or "fixed",
            amount=_number(data.get("amount"), "discounts.amount"),
            description=data.get("description") or "",
            applied_to=data.get("appliedTo") or "order",
        )


@dataclass
class Tax(WireModel):
    amount: float
    rate: float = 0.0
    breakdown: List[Dict[str, Any]] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: Any) -> "Tax":
        data = _mapping(data, "taxes")
        return cls(
            rate=_number(data.get("rate"), "taxes.rate"),
            amount=_number(data.get("amount"), "taxes.amount"),
            breakdown=list(data.get("breakdown") or []),
        )


@dataclass
class OrderTotals(WireModel):
    subtotal: float = 0.0
    discount_total: float = 0.0
    tax_total: float = 0.0
    shipping_total: float = 0.0
    total: float = 0.0
    paid_amount: float = 0.0
    refunded_amount: float = 0.0
    outstanding_amount: float = 0.0

    @classmethod
    def from_dict(cls, data: Any) -> "OrderTotals":
        data = _mapping(data or {}, "totals")
        return cls(
            paid_amount=_number(data.get("paidAmount"), "totals.paidAmount"),
            refunded_amount=_number(data.get("refundedAmount"), "totals.refundedAmount"),
        )


@dataclass
class TimelineEvent(WireModel):
    """One entry of the append-only order timeline."""

    status: OrderStatus
    timestamp: datetime = field(default_factory=utcnow)
    note: Optional[str] = None
    updated_by: Optional[str] = None
    metadata: Metadata = field(default_factory=dict)


# ============================================================================
# Aggregate
# ============================================================================

@dataclass
class Order(WireModel):
    """
    Order aggregate root.

    ``status`` always equals the status of the last timeline entry; only
    ``barley.orders.lifecycle.transition`` appends to the timeline after
    creation.
    """

    customer_id: str
    customer_email: str
    items: List[OrderItem]
    shipping_address: Address
    billing_address: Address
    payment_info: PaymentInfo
    shipping_info: ShippingInfo = field(default_factory=ShippingInfo)
    order_number: str = ""
    customer_phone: Optional[str] = None
    status: OrderStatus = OrderStatus.PENDING
    payment_status: PaymentStatus = PaymentStatus.PENDING
    fulfillment_status: str = "unfulfilled"
    totals: OrderTotals = field(default_factory=OrderTotals)
    discounts: List[Discount] = field(default_factory=list)
    taxes: List[Tax] = field(default_factory=list)
    timeline: List[TimelineEvent] = field(default_factory=list)
    customer_notes: Optional[str] = None
    admin_notes: Optional[str] = None
    source: str = "web"
    channel: str = "online"
    currency: str = "PHP"
    exchange_rate: float = 1.0
    expected_delivery_date: Optional[datetime] = None
    actual_delivery_date: Optional[datetime] = None
    placed_at: datetime = field(default_factory=utcnow)
    confirmed_at: Optional[datetime] = None
    shipped_at: Optional[datetime] = None
    delivered_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    def __post_init__(self) -> None:
        if not self.timeline:
            self.timeline.append(
                TimelineEvent(status=self.status, timestamp=self.created_at, note="Order created")
            )

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "Order":
        """
        Build a new order from a camelCase payload.

        Status, timeline and derived totals are not taken from the payload;
        every order starts ``pending`` with a single ``Order created`` entry.
        """
        data = _mapping(data, "order")
        items = _many(OrderItem.from_dict, data.get("items"), "items")
        if not items:
            raise ValidationFault("Order must contain at least one item", field="items")
        payment_info = PaymentInfo.from_dict(data.get("paymentInfo"))
        currency = str(data.get("currency") or "PHP").upper()
        exchange_rate = _number(data.get("exchangeRate"), "exchangeRate", 1.0)
        if exchange_rate < 0:
            raise ValidationFault("Exchange rate must be positive", field="exchangeRate")
        return cls(
            customer_id=str(data.get("customerId", "")),
            customer_email=str(data.get("customerEmail", "")).strip().lower(),
            customer_phone=data.get("customerPhone"),
            items=items,
            shipping_address=Address.from_dict(data.get("shippingAddress"), "shippingAddress"),
            billing_address=Address.from_dict(data.get("billingAddress"), "billingAddress"),
            payment_info=payment_info,
            payment_status=payment_info.status,
            shipping_info=ShippingInfo.from_dict(data.get("shippingInfo")),
            totals=OrderTotals.from_dict(data.get("totals")),
            discounts=_many(Discount.from_dict, data.get("discounts"), "discounts"),
            taxes=_many(Tax.from_dict, data.get("taxes"), "taxes"),
            customer_notes=_bounded(data.get("customerNotes"), 1000, "Customer notes"),
            admin_notes=_bounded(data.get("adminNotes"), 2000, "Admin notes"),
            source=data.get("source") or "web",
            channel=data.get("channel") or "online",
            currency=currency,
            exchange_rate=exchange_rate,
            expected_delivery_date=parse_datetime(data.get("expectedDeliveryDate"), "expectedDeliveryDate"),
        )

    def summary(self) -> Dict[str, Any]:
        """Compact listing view."""
        return {
            "orderNumber": self.order_number,
            "customerId": self.customer_id,
            "customerEmail": self.customer_email,
            "status": self.status.value,
            "paymentStatus": self.payment_status.value,
            "total": self.totals.total,
            "itemCount": len(self.items),
            "createdAt": self.created_at.isoformat(),
        }


def _bounded(value: Any, limit: int, label: str) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    if len(text) > limit:
        raise ValidationFault(f"{label} must be less than {limit} characters")
    return text


def validate_metadata(value: Any, field_name: str = "metadata") -> Metadata:
    """``coerce_metadata`` reporting failures as ``ValidationFault``."""
    try:
        return coerce_metadata(value)
    except MetadataError as e:
        raise ValidationFault(str(e), field=field_name) from None


__all__ = [
    "OrderStatus",
    "PaymentStatus",
    "PaymentMethod",
    "ShippingMethod",
    "Dimensions",
    "DEFAULT_DIMENSIONS",
    "BundleItem",
    "OrderItem",
    "Address",
    "PaymentInfo",
    "ShippingInfo",
    "Discount",
    "Tax",
    "OrderTotals",
    "TimelineEvent",
    "Order",
    "camel",
    "parse_datetime",
    "parse_enum",
    "utcnow",
    "validate_metadata",
]
