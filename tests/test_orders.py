"""
Tests for the order domain: models, state machine, totals and shipping.
"""

from datetime import datetime, timedelta, timezone

import pytest

from barley.faults import (
    IllegalCancellationFault,
    InvalidTransitionFault,
    ValidationFault,
)
from barley.orders import lifecycle
from barley.orders.models import (
    DEFAULT_DIMENSIONS,
    Dimensions,
    Discount,
    Order,
    OrderItem,
    OrderStatus,
    ShippingMethod,
    Tax,
)
from barley.orders.shipping import calculate_shipping
from barley.orders.totals import recompute_totals

from tests.conftest import order_payload


def make_order(**overrides) -> Order:
    order = Order.from_dict(order_payload(**overrides))
    recompute_totals(order)
    return order


def advance(order: Order, *statuses: str) -> Order:
    for status in statuses:
        lifecycle.transition(order, status, actor="admin-1")
    return order


# ============================================================================
# Models
# ============================================================================


class TestOrderModel:

    def test_new_order_starts_pending_with_created_event(self):
        order = make_order()
        assert order.status is OrderStatus.PENDING
        assert len(order.timeline) == 1
        assert order.timeline[0].status is OrderStatus.PENDING
        assert order.timeline[0].note == "Order created"

    def test_email_lowercased_and_currency_upper(self):
        order = make_order(currency="php")
        assert order.customer_email == "ana@example.com"
        assert order.currency == "PHP"

    def test_status_in_payload_is_ignored(self):
        order = make_order(status="delivered")
        assert order.status is OrderStatus.PENDING

    def test_item_total_is_unit_price_times_quantity(self):
        item = OrderItem(
            product_id="p", product_name="n", variant_sku="s",
            quantity=3, unit_price=19.99, total_price=1.0,
        )
        assert item.total_price == 59.97

    def test_item_quantity_must_be_positive(self):
        with pytest.raises(ValidationFault):
            OrderItem(product_id="p", product_name="n", variant_sku="s", quantity=0, unit_price=1.0)

    def test_empty_items_rejected(self):
        with pytest.raises(ValidationFault) as exc:
            Order.from_dict(order_payload(items=[]))
        assert exc.value.message == "Order must contain at least one item"

    def test_missing_address_fields_reported(self):
        with pytest.raises(ValidationFault) as exc:
            Order.from_dict(order_payload(shippingAddress={"firstName": "Ana"}))
        assert "lastName" in exc.value.message
        assert exc.value.metadata["field"] == "shippingAddress"

    def test_invalid_payment_method(self):
        with pytest.raises(ValidationFault) as exc:
            Order.from_dict(order_payload(paymentInfo={"method": "barter"}))
        assert "payment method" in exc.value.message

    def test_notes_length_bounded(self):
        with pytest.raises(ValidationFault):
            Order.from_dict(order_payload(customerNotes="x" * 1001))

    def test_to_dict_is_camel_case(self):
        data = make_order().to_dict()
        assert data["customerEmail"] == "ana@example.com"
        assert data["status"] == "pending"
        assert data["shippingInfo"]["method"] == "standard"
        assert data["items"][0]["variantSku"] == "RICE-5KG"
        assert data["timeline"][0]["note"] == "Order created"
        assert isinstance(data["createdAt"], str)

    def test_default_dimensions_shared_safely(self):
        a = make_order()
        b = make_order()
        assert a.shipping_info.dimensions == DEFAULT_DIMENSIONS
        with pytest.raises(Exception):
            a.shipping_info.dimensions.length = 1.0  # frozen
        assert b.shipping_info.dimensions.length == 30.0


# ============================================================================
# State machine
# ============================================================================


class TestTransitions:

    @pytest.mark.parametrize("path", [
        ("confirmed", "processing", "shipped", "delivered", "returned", "refunded"),
        ("confirmed", "processing", "shipped", "delivered", "refunded"),
        ("confirmed", "processing", "shipped", "returned"),
        ("cancelled",),
        ("confirmed", "cancelled"),
        ("confirmed", "processing", "cancelled"),
    ])
    def test_legal_paths(self, path):
        order = advance(make_order(), *path)
        assert order.status.value == path[-1]
        assert [e.status.value for e in order.timeline] == ["pending", *path]

    @pytest.mark.parametrize("start,target", [
        ((), "shipped"),
        ((), "delivered"),
        (("confirmed",), "pending"),
        (("confirmed", "processing", "shipped"), "cancelled"),
        (("cancelled",), "confirmed"),
        (("confirmed", "processing", "shipped", "delivered", "refunded"), "returned"),
    ])
    def test_illegal_transition_leaves_order_unchanged(self, start, target):
        order = advance(make_order(), *start)
        before_status = order.status
        before_len = len(order.timeline)

        with pytest.raises(InvalidTransitionFault) as exc:
            lifecycle.transition(order, target)

        assert exc.value.message == f"Cannot transition from {before_status.value} to {target}"
        assert order.status is before_status
        assert len(order.timeline) == before_len

    def test_self_transition_rejected(self):
        order = make_order()
        with pytest.raises(InvalidTransitionFault):
            lifecycle.transition(order, "pending")

    def test_unknown_status_is_validation_error(self):
        order = make_order()
        with pytest.raises(ValidationFault) as exc:
            lifecycle.transition(order, "teleported")
        assert exc.value.message == "Valid status is required"

    def test_status_equals_last_timeline_entry(self):
        order = advance(make_order(), "confirmed", "processing")
        assert order.status is order.timeline[-1].status

    def test_timeline_entry_fields(self):
        order = make_order()
        now = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)
        event = lifecycle.transition(
            order, "confirmed", "Payment ok", "admin-7", {"source": "gcash"}, now=now,
        )
        assert event.note == "Payment ok"
        assert event.updated_by == "admin-7"
        assert event.metadata == {"source": "gcash"}
        assert event.timestamp == now
        assert order.confirmed_at == now

    def test_status_timestamps_stamped(self):
        order = advance(make_order(), "confirmed", "processing", "shipped", "delivered")
        assert order.confirmed_at is not None
        assert order.shipped_at is not None
        assert order.delivered_at is not None
        assert order.cancelled_at is None

    def test_bad_metadata_rejected_before_mutation(self):
        order = make_order()
        with pytest.raises(ValidationFault):
            lifecycle.transition(order, "confirmed", metadata={"blob": object()})
        assert order.status is OrderStatus.PENDING
        assert len(order.timeline) == 1

    def test_allowed_transitions(self):
        assert lifecycle.allowed_transitions(OrderStatus.SHIPPED) == [
            OrderStatus.DELIVERED, OrderStatus.RETURNED,
        ]
        assert lifecycle.allowed_transitions(OrderStatus.REFUNDED) == []


class TestCancellation:

    @pytest.mark.parametrize("path", [(), ("confirmed",), ("confirmed", "processing")])
    def test_cancel_before_shipping(self, path):
        order = advance(make_order(), *path)
        assert lifecycle.can_be_cancelled(order)
        lifecycle.cancel(order, "Customer request", "admin-1")
        assert order.status is OrderStatus.CANCELLED
        assert order.cancelled_at is not None
        assert order.timeline[-1].note == "Customer request"

    def test_cancel_after_shipping_fails(self):
        order = advance(make_order(), "confirmed", "processing", "shipped")
        assert not lifecycle.can_be_cancelled(order)
        with pytest.raises(IllegalCancellationFault) as exc:
            lifecycle.cancel(order)
        assert exc.value.message == "Order cannot be cancelled in current status"
        assert order.status is OrderStatus.SHIPPED

    def test_cancel_twice_fails(self):
        order = advance(make_order(), "cancelled")
        with pytest.raises(IllegalCancellationFault):
            lifecycle.cancel(order)


class TestReturnEligibility:

    def test_delivered_within_window(self):
        order = advance(make_order(), "confirmed", "processing", "shipped", "delivered")
        order.delivered_at = datetime(2024, 1, 1, tzinfo=timezone.utc)
        assert lifecycle.is_return_eligible(order, now=order.delivered_at + timedelta(days=30))

    def test_delivered_outside_window(self):
        order = advance(make_order(), "confirmed", "processing", "shipped", "delivered")
        order.delivered_at = datetime(2024, 1, 1, tzinfo=timezone.utc)
        assert not lifecycle.is_return_eligible(
            order, now=order.delivered_at + timedelta(days=30, seconds=1),
        )

    def test_not_delivered(self):
        order = advance(make_order(), "confirmed")
        assert not lifecycle.is_return_eligible(order)


class TestImplicitTransitions:

    def test_tracking_number_ships_processing_order(self):
        order = advance(make_order(), "confirmed", "processing")
        event = lifecycle.mark_shipped_via_tracking(order, "LBC123", "admin-1")
        assert event is not None
        assert order.status is OrderStatus.SHIPPED
        assert order.shipping_info.tracking_number == "LBC123"
        assert order.timeline[-1].note == "Tracking number added: LBC123"
        assert order.timeline[-1].updated_by == "admin-1"

    def test_tracking_number_on_shipped_order_is_noop(self):
        order = advance(make_order(), "confirmed", "processing", "shipped")
        before = len(order.timeline)
        assert lifecycle.mark_shipped_via_tracking(order, "LBC999") is None
        assert order.shipping_info.tracking_number == "LBC999"
        assert len(order.timeline) == before

    def test_tracking_number_on_pending_order_is_illegal(self):
        order = make_order()
        with pytest.raises(InvalidTransitionFault):
            lifecycle.mark_shipped_via_tracking(order, "LBC123")
        assert order.shipping_info.tracking_number is None

    def test_actual_delivery_delivers_shipped_order(self):
        order = advance(make_order(), "confirmed", "processing", "shipped")
        event = lifecycle.mark_delivered_via_actual_date(order, "2024-06-01T10:00:00Z")
        assert event.note == "Package delivered"
        assert order.status is OrderStatus.DELIVERED
        assert order.shipping_info.actual_delivery == datetime(2024, 6, 1, 10, tzinfo=timezone.utc)

    def test_actual_delivery_on_delivered_order_is_noop(self):
        order = advance(make_order(), "confirmed", "processing", "shipped", "delivered")
        before = len(order.timeline)
        assert lifecycle.mark_delivered_via_actual_date(order, "2024-06-02") is None
        assert len(order.timeline) == before

    def test_invalid_delivery_date(self):
        order = advance(make_order(), "confirmed", "processing", "shipped")
        with pytest.raises(ValidationFault):
            lifecycle.mark_delivered_via_actual_date(order, "yesterday")


class TestOrderNumbers:

    def test_format(self):
        number = lifecycle.generate_order_number()
        assert number.startswith("SO-")
        assert len(number) == 12
        assert number[3:9].isdigit()
        assert all(c.isdigit() or c.isupper() for c in number[9:])


class TestValidateOrderData:

    def test_valid_payload(self):
        assert lifecycle.validate_order_data(order_payload()) == []

    def test_reports_every_missing_part(self):
        errors = lifecycle.validate_order_data({})
        assert "Order must contain at least one item" in errors
        assert "Shipping address is required" in errors
        assert "Payment information is required" in errors
        assert len(errors) == 6


# ============================================================================
# Totals
# ============================================================================


class TestTotals:

    def test_identity(self):
        order = make_order(shippingInfo={"cost": 105.0})
        order.discounts.append(Discount(amount=30.0, code="RICE10"))
        order.taxes.append(Tax(amount=12.34, rate=0.12))
        totals = recompute_totals(order)

        assert totals.subtotal == 580.5
        assert totals.discount_total == 30.0
        assert totals.tax_total == 12.34
        assert totals.shipping_total == 105.0
        expected = totals.subtotal - totals.discount_total + totals.tax_total + totals.shipping_total
        assert abs(totals.total - expected) <= 0.005
        assert totals.total == 667.84

    def test_idempotent(self):
        order = make_order(shippingInfo={"cost": 10.0})
        first = recompute_totals(order).to_dict()
        second = recompute_totals(order).to_dict()
        assert first == second

    def test_outstanding_amount(self):
        order = make_order(shippingInfo={"cost": 0}, totals={"paidAmount": 500.5})
        totals = recompute_totals(order)
        assert totals.outstanding_amount == 80.0

    def test_discount_larger_than_order_goes_negative(self):
        order = make_order(shippingInfo={"cost": 0})
        order.discounts.append(Discount(amount=1000.0))
        assert recompute_totals(order).total == -419.5

    def test_aggregate_weight(self):
        order = make_order()
        recompute_totals(order)
        assert order.shipping_info.weight == 11.0

    def test_apply_discount(self):
        order = make_order(shippingInfo={"cost": 0})
        discount = lifecycle.apply_discount(order, "WELCOME", 50, "fixed")
        assert discount.description == "Applied discount code: WELCOME"
        assert discount.applied_to == "order"
        assert recompute_totals(order).total == 530.5

    def test_apply_discount_rejects_unknown_type(self):
        with pytest.raises(ValidationFault):
            lifecycle.apply_discount(make_order(), "X", 5, "bogus")


# ============================================================================
# Shipping
# ============================================================================


class TestShipping:

    def test_weight_dominates(self):
        # dimensional 9000/5000 = 1.8 < 2
        assert calculate_shipping(2.0, DEFAULT_DIMENSIONS, "standard") == 60.0

    def test_dimensional_weight_dominates(self):
        dims = Dimensions(50, 40, 30)  # 60000 / 5000 = 12
        assert calculate_shipping(3.0, dims, ShippingMethod.EXPRESS) == 160.0

    @pytest.mark.parametrize("method,base", [
        ("standard", 50), ("express", 100), ("overnight", 200), ("same_day", 300), ("pickup", 0),
    ])
    def test_base_rates(self, method, base):
        dims = Dimensions(1, 1, 1)
        assert calculate_shipping(1.0, dims, method) == base + 5.0

    def test_default_dimensions(self):
        assert calculate_shipping(0.0) == 59.0

    def test_unknown_method(self):
        with pytest.raises(ValidationFault):
            calculate_shipping(1.0, None, "teleport")

    def test_deterministic(self):
        dims = Dimensions(10.5, 3.3, 7.1)
        assert calculate_shipping(4.2, dims, "overnight") == calculate_shipping(4.2, dims, "overnight")

    @pytest.mark.parametrize("method", ["standard", "express", "pickup"])
    @pytest.mark.parametrize("dims", [DEFAULT_DIMENSIONS, Dimensions(50, 40, 30), Dimensions(1, 1, 1)])
    def test_heavier_never_cheaper(self, method, dims):
        weights = [0.0, 0.5, 1.0, 1.8, 2.0, 5.0, 11.9, 12.0, 12.1, 40.0, 250.0]
        costs = [calculate_shipping(w, dims, method) for w in weights]
        assert costs == sorted(costs)


class TestScenarios:

    def test_full_delivery_path(self):
        items = [
            {"productId": "p-1", "productName": "Rice Sack", "variantSku": "RICE-25KG",
             "quantity": 2, "unitPrice": 2500.0, "weight": 25.0},
            {"productId": "p-2", "productName": "Cooking Oil", "variantSku": "OIL-5L",
             "quantity": 1, "unitPrice": 697.0, "weight": 5.0},
        ]
        order = make_order(items=items, shippingInfo={"cost": 150.0})
        assert order.totals.subtotal == 5697.0
        assert order.totals.total == 5847.0

        advance(order, "confirmed", "processing", "shipped", "delivered")
        assert [e.status.value for e in order.timeline] == [
            "pending", "confirmed", "processing", "shipped", "delivered",
        ]

    def test_ship_from_pending_names_both_statuses(self):
        order = make_order()
        with pytest.raises(InvalidTransitionFault) as exc:
            lifecycle.transition(order, "shipped")
        assert exc.value.metadata == {"current": "pending", "requested": "shipped"}

    def test_cancel_processing_but_not_delivered(self):
        processing = advance(make_order(), "confirmed", "processing")
        lifecycle.cancel(processing)
        assert processing.status is OrderStatus.CANCELLED

        delivered = advance(make_order(), "confirmed", "processing", "shipped", "delivered")
        with pytest.raises(IllegalCancellationFault):
            lifecycle.cancel(delivered)
