"""Tests for mapping MercadoPago payments onto orders."""

from datetime import datetime, timezone

import pytest

from models import Order, OrderStatus, PaymentInfo
from payments import decrement_stock, map_payment_status, plan_transition

NOW = datetime(2025, 10, 25, 12, 0, tzinfo=timezone.utc)


def make_order(status="pending_payment", items=None):
    return Order(
        id="order-1",
        status=status,
        items=items if items is not None else [{"productId": "p1", "quantity": 2, "name": "Lámpara"}],
    )


def make_payment(status="approved", **extra):
    return PaymentInfo(id=123, status=status, external_reference="order-1", **extra)


@pytest.mark.parametrize("gateway_status,expected", [
    ("approved", OrderStatus.CONFIRMED),
    ("pending", OrderStatus.PENDING),
    ("in_process", OrderStatus.PENDING),
    ("rejected", OrderStatus.CANCELLED),
    ("cancelled", OrderStatus.CANCELLED),
    ("refunded", OrderStatus.PENDING),
    ("", OrderStatus.PENDING),
])
def test_map_payment_status(gateway_status, expected):
    assert map_payment_status(gateway_status) == expected


def test_decrement_stock_floors_at_zero():
    assert decrement_stock(10, 3) == 7
    assert decrement_stock(2, 5) == 0


def test_first_approval_plans_stock_changes():
    stock = {"p1": 10}
    transition = plan_transition(make_order(), make_payment(transaction_amount=20000), stock.get, now=NOW)

    assert transition.applySideEffects
    assert transition.newStatus == OrderStatus.CONFIRMED
    assert [(c.productId, c.before, c.after) for c in transition.stockChanges] == [("p1", 10, 8)]

    fields = transition.orderFields
    assert fields["status"] == "confirmed"
    assert fields["paymentStatus"] == "approved"
    assert fields["paymentId"] == "123"
    assert fields["paymentDetails"]["transactionAmount"] == 20000
    assert fields["paymentDetails"]["lastUpdated"] == NOW.isoformat()


def test_replayed_approval_reads_no_stock():
    reads = []

    def read_stock(product_id):
        reads.append(product_id)
        return 10

    transition = plan_transition(make_order(status="confirmed"), make_payment(), read_stock, now=NOW)

    assert not transition.applySideEffects
    assert transition.stockChanges == []
    assert reads == []
    assert transition.orderFields["paymentStatus"] == "approved"


def test_rejection_has_no_side_effects():
    transition = plan_transition(make_order(), make_payment("rejected"), lambda _: 10, now=NOW)
    assert transition.newStatus == OrderStatus.CANCELLED
    assert not transition.applySideEffects


@pytest.mark.parametrize("status", ["delivered", "cancelled"])
def test_terminal_orders_keep_status(status):
    transition = plan_transition(make_order(status=status), make_payment("pending"), lambda _: 10, now=NOW)
    assert transition.newStatus == OrderStatus(status)
    assert transition.orderFields["status"] == status
    assert transition.orderFields["paymentStatus"] == "pending"


def test_repeated_lines_are_merged():
    order = make_order(items=[
        {"productId": "p1", "quantity": 2},
        {"productId": "p1", "quantity": 3},
    ])
    transition = plan_transition(order, make_payment(), {"p1": 4}.get, now=NOW)
    assert [(c.productId, c.after) for c in transition.stockChanges] == [("p1", 0)]


def test_missing_products_are_reported():
    order = make_order(items=[
        {"productId": "p1", "quantity": 1},
        {"productId": "gone", "quantity": 1},
    ])
    transition = plan_transition(order, make_payment(), {"p1": 4}.get, now=NOW)
    assert [c.productId for c in transition.stockChanges] == ["p1"]
    assert transition.missingProducts == ["gone"]
