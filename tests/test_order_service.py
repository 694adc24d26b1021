"""Tests for order lookups, listing and payment updates."""

from datetime import datetime, timezone

import pytest

from conftest import place_order, seed_cart
from errors import InvalidStatusError, InvalidStatusTransitionError, OrderNotFoundError
from order_service import OrderService, generate_order_number
from order_validator import (
    get_allowed_order_status_transitions,
    normalize_order_status,
    validate_order_status_transition,
    validate_payment_status_transition,
)
from schemas import OrderFilters, OrderItem, PaymentResult


class TestOrderNumber:
    def test_format(self):
        number = generate_order_number(datetime(2026, 3, 14, tzinfo=timezone.utc))
        prefix, date, suffix = number.split("-")
        assert prefix == "NO"
        assert date == "20260314"
        assert len(suffix) == 4
        assert suffix.isalnum() and suffix.upper() == suffix


class TestStatusTransitions:
    def test_created_is_treated_as_pending(self):
        assert normalize_order_status("created") == "pending"
        assert "processing" in get_allowed_order_status_transitions("created")

    def test_allowed_transition(self):
        validate_order_status_transition("processing", "completed")

    def test_rejected_transition_lists_allowed(self):
        with pytest.raises(InvalidStatusTransitionError) as exc_info:
            validate_order_status_transition("refunded", "pending")
        assert exc_info.value.allowed == ["refunded"]
        assert "Cannot change from refunded to pending" in str(exc_info.value)

    def test_unknown_status(self):
        with pytest.raises(InvalidStatusError):
            validate_order_status_transition("pending", "shipped")

    @pytest.mark.parametrize("status", ["pending", "paid", "refunded"])
    def test_payment_same_status_is_rejected(self, status):
        with pytest.raises(InvalidStatusTransitionError) as exc_info:
            validate_payment_status_transition(status, status)
        assert status not in exc_info.value.allowed

    def test_payment_rejected_transition(self):
        with pytest.raises(InvalidStatusTransitionError):
            validate_payment_status_transition("refunded", "paid")


class TestOrderItemOptions:
    def test_dict_options_become_name_value_pairs(self):
        item = OrderItem(
            id="i1", order_id="o1", product_id="p1", name="Tee", sku="TEE-1",
            quantity=1, unit_price=10.0, total_price=10.0, options={"size": "M"},
        )
        assert item.options[0].name == "size"
        assert item.options[0].value == "M"


class TestLookups:
    def test_get_order_by_id_and_number(self, db, order):
        service = OrderService(db)

        by_id = service.get_order_by_id(order.id)
        by_number = service.get_order_by_order_number(order.order_number)

        assert by_id.id == by_number.id == order.id
        assert len(by_id.items) == 1
        assert by_id.shipping_address.first_name == "Jane"

    def test_missing_order(self, db):
        with pytest.raises(OrderNotFoundError):
            OrderService(db).get_order_by_id("nope")

    def test_find_order_for_payment_falls_back_to_id(self, db, order):
        found = OrderService(db).find_order_for_payment(order.id)
        assert found.id == order.id

    def test_find_order_for_payment_by_intent(self, db, order):
        db["orders"].update_one({"id": order.id}, {"$set": {"payment_intent_id": "pi_123"}})
        found = OrderService(db).find_order_for_payment(None, "pi_123")
        assert found.id == order.id


class TestGetOrders:
    @pytest.fixture
    def orders(self, db, cart_cache, shipping_address):
        placed = []
        for index, price in enumerate((10.0, 20.0, 30.0)):
            cart_id = seed_cart(db, f"cart-{index}", items=((f"prod-{index}", price, 1),), anonymous_id=f"anon-{index}")
            placed.append(place_order(db, cart_cache, shipping_address, cart_id))
        return placed

    def test_pagination_and_total(self, db, orders):
        result = OrderService(db).get_orders(OrderFilters(limit=2, sort_by="total", sort_direction="asc"))

        assert result.total == 3
        assert [o.subtotal for o in result.orders] == [10.0, 20.0]

    def test_filter_by_status(self, db, orders):
        db["orders"].update_one({"id": orders[0].id}, {"$set": {"status": "paid"}})

        result = OrderService(db).get_orders(OrderFilters(status=["paid"]))

        assert result.total == 1
        assert result.orders[0].id == orders[0].id

    def test_search_by_order_number(self, db, orders):
        result = OrderService(db).get_orders(OrderFilters(search=orders[1].order_number.lower()))
        assert [o.id for o in result.orders] == [orders[1].id]


class TestPaymentUpdates:
    def test_update_payment_status(self, db, order):
        updated = OrderService(db).update_payment_status(order.id, "paid", payment_intent_id="pi_9")

        assert updated.payment_status == "paid"
        assert updated.payment_intent_id == "pi_9"

    def test_update_payment_status_rejects_invalid_transition(self, db, order):
        with pytest.raises(InvalidStatusTransitionError):
            OrderService(db).update_payment_status(order.id, "refunded")

    def test_update_order_from_payment_success(self, db, order):
        result = PaymentResult(success=True, status="paid", payment_id="ch_1", payment_intent_id="pi_1")

        updated = OrderService(db).update_order_from_payment(order.id, result)

        assert updated.status == "paid"
        assert updated.payment_status == "paid"
        assert updated.notes == "Payment processed successfully."
        assert updated.metadata["tracking"]["tracking_number"] == "ch_1"

    def test_update_order_from_payment_refund(self, db, order):
        result = PaymentResult(success=True, status="refunded", refund_amount=64.79, refund_reason="requested_by_customer")

        updated = OrderService(db).update_order_from_payment(order.id, result)

        assert updated.status == "refunded"
        assert "Refunded amount: 64.79" in updated.notes

    def test_update_order_from_payment_failure(self, db, order):
        result = PaymentResult(success=False, status="failed", error="card_declined")

        updated = OrderService(db).update_order_from_payment(order.id, result)

        assert updated.status == "failed"
        assert updated.notes == "Payment error: card_declined"
