"""Unit tests for the order / payment state machine."""
from decimal import Decimal

import pytest

from backend.app.core.exceptions import InvalidStatusTransitionError
from backend.app.models.order import Order, OrderStatus, PaymentMethod, PaymentStatus
from backend.app.services.order_state import (
    TERMINAL_ORDER_STATUSES,
    can_transition_order,
    can_transition_payment,
    is_payment_completed,
    transition_order,
    transition_payment,
)


def _order(order_status=OrderStatus.PENDING_PAYMENT, payment_status=PaymentStatus.INITIATED) -> Order:
    return Order(
        order_number="ORD-20260101-ABCDEF01",
        holder_id="user:1",
        payment_method=PaymentMethod.KHALTI,
        order_status=order_status,
        payment_status=payment_status,
        total_amount=Decimal("100.00"),
    )


def test_happy_path_order_lifecycle():
    order = _order()
    for target in (
        OrderStatus.CONFIRMED,
        OrderStatus.PROCESSING,
        OrderStatus.SHIPPED,
        OrderStatus.DELIVERED,
        OrderStatus.RETURNED,
    ):
        transition_order(order, target)
        assert order.order_status == target
    assert order.confirmed_at is not None
    assert order.cancelled_at is None


def test_cancel_stamps_cancelled_at():
    order = _order(order_status=OrderStatus.CONFIRMED)
    transition_order(order, OrderStatus.CANCELLED)
    assert order.cancelled_at is not None


@pytest.mark.parametrize("current,target", [
    (OrderStatus.SHIPPED, OrderStatus.CANCELLED),
    (OrderStatus.CANCELLED, OrderStatus.CONFIRMED),
    (OrderStatus.PENDING_PAYMENT, OrderStatus.SHIPPED),
    (OrderStatus.DELIVERED, OrderStatus.PROCESSING),
])
def test_illegal_order_transitions(current, target):
    order = _order(order_status=current)
    assert can_transition_order(current, target) is False
    with pytest.raises(InvalidStatusTransitionError) as exc_info:
        transition_order(order, target)
    assert exc_info.value.status_code == 409
    assert order.order_status == current


def test_payment_completed_is_one_way():
    """Once Completed, a payment can only be refunded."""
    order = _order()
    transition_payment(order, PaymentStatus.COMPLETED)
    assert is_payment_completed(order)
    assert order.paid_at is not None

    for target in (PaymentStatus.FAILED, PaymentStatus.INITIATED, PaymentStatus.NOT_REQUIRED):
        with pytest.raises(InvalidStatusTransitionError):
            transition_payment(order, target)

    transition_payment(order, PaymentStatus.REFUNDED)
    assert order.payment_status == PaymentStatus.REFUNDED


def test_failed_payment_can_be_retried():
    assert can_transition_payment(PaymentStatus.FAILED, PaymentStatus.INITIATED)
    assert not can_transition_payment(PaymentStatus.FAILED, PaymentStatus.COMPLETED)
    assert not can_transition_payment(PaymentStatus.NOT_REQUIRED, PaymentStatus.COMPLETED)


def test_terminal_statuses():
    assert TERMINAL_ORDER_STATUSES == {OrderStatus.CANCELLED, OrderStatus.RETURNED, OrderStatus.DELIVERED}
