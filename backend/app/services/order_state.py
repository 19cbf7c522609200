"""
Order / payment state machine shared by checkout, the payment callback and
the reconciliation loop.

Order:   PendingPayment -> Confirmed -> Processing -> Shipped -> Delivered
         (Cancelled from any non-terminal state before shipping, Returned after delivery)
Payment: Initiated -> Completed | Failed;  Failed -> Initiated (retry);  Completed -> Refunded
"""
from typing import Dict, FrozenSet

from backend.app.core.base import utcnow
from backend.app.core.exceptions import InvalidStatusTransitionError
from backend.app.models.order import Order, OrderStatus, PaymentStatus


ORDER_TRANSITIONS: Dict[OrderStatus, FrozenSet[OrderStatus]] = {
    OrderStatus.PENDING_PAYMENT: frozenset({OrderStatus.CONFIRMED, OrderStatus.CANCELLED}),
    OrderStatus.CONFIRMED: frozenset({OrderStatus.PROCESSING, OrderStatus.CANCELLED}),
    OrderStatus.PROCESSING: frozenset({OrderStatus.SHIPPED, OrderStatus.CANCELLED}),
    OrderStatus.SHIPPED: frozenset({OrderStatus.DELIVERED}),
    OrderStatus.DELIVERED: frozenset({OrderStatus.RETURNED}),
    OrderStatus.CANCELLED: frozenset(),
    OrderStatus.RETURNED: frozenset(),
}

PAYMENT_TRANSITIONS: Dict[PaymentStatus, FrozenSet[PaymentStatus]] = {
    PaymentStatus.NOT_REQUIRED: frozenset(),
    PaymentStatus.INITIATED: frozenset({PaymentStatus.COMPLETED, PaymentStatus.FAILED}),
    PaymentStatus.FAILED: frozenset({PaymentStatus.INITIATED}),
    PaymentStatus.COMPLETED: frozenset({PaymentStatus.REFUNDED}),
    PaymentStatus.REFUNDED: frozenset(),
}

TERMINAL_ORDER_STATUSES = frozenset(
    status for status, targets in ORDER_TRANSITIONS.items() if not targets
) | {OrderStatus.DELIVERED}


def can_transition_order(current: OrderStatus, target: OrderStatus) -> bool:
    return target in ORDER_TRANSITIONS.get(current, frozenset())


def can_transition_payment(current: PaymentStatus, target: PaymentStatus) -> bool:
    return target in PAYMENT_TRANSITIONS.get(current, frozenset())


def transition_order(order: Order, target: OrderStatus) -> None:
    """Move the order forward, stamping the matching timestamp. Raises on illegal edges."""
    current = OrderStatus(order.order_status)
    if not can_transition_order(current, target):
        raise InvalidStatusTransitionError("order", current.value, target.value)
    order.order_status = target
    if target == OrderStatus.CONFIRMED:
        order.confirmed_at = utcnow()
    elif target == OrderStatus.CANCELLED:
        order.cancelled_at = utcnow()


def transition_payment(order: Order, target: PaymentStatus) -> None:
    """Completed is a one-way gate: callers check `is_payment_completed` first and skip."""
    current = PaymentStatus(order.payment_status)
    if not can_transition_payment(current, target):
        raise InvalidStatusTransitionError("payment", current.value, target.value)
    order.payment_status = target
    if target == PaymentStatus.COMPLETED:
        order.paid_at = utcnow()


def is_payment_completed(order: Order) -> bool:
    return PaymentStatus(order.payment_status) == PaymentStatus.COMPLETED
