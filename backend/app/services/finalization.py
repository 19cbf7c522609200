"""
Order finalization shared by every path that can settle a payment:
cash-on-delivery checkout, the Khalti return callback, admin manual
verification and the background reconciliation loop. They all go through
``OrderFinalizer`` so the amount check, stock confirmation and coupon
usage increment behave identically whichever path wins.
"""
import enum
from decimal import Decimal
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Sequence

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from backend.app.core.base import utcnow
from backend.app.core.exceptions import ServiceError
from backend.app.core.logging import get_logger
from backend.app.core.metrics import orders_finalized_total
from backend.app.core.settings import Settings, get_settings
from backend.app.models.order import Order, OrderStatus, PaymentMethod, PaymentStatus
from backend.app.models.payment import Coupon
from backend.app.services.audit import record_payment_check
from backend.app.services.inventory import InventoryService, InventoryServiceError
from backend.app.services.khalti import GatewayPaymentStatus, LookupResponse, from_paisa
from backend.app.services.order_state import (
    can_transition_order,
    is_payment_completed,
    transition_order,
    transition_payment,
)

logger = get_logger(__name__)

OrderConfirmedHook = Callable[[AsyncSession, Order], Awaitable[None]]


class PaymentServiceError(ServiceError):
    """Base exception for payment service errors."""


class OrderNotFoundError(PaymentServiceError):
    def __init__(self, ref):
        super().__init__(f"Order {ref} not found", 404)


class PaymentOutcome(str, enum.Enum):
    COMPLETED = "completed"
    ALREADY_COMPLETED = "already_completed"
    AMOUNT_MISMATCH = "amount_mismatch"
    FAILED = "failed"
    PENDING = "pending"
    SKIPPED = "skipped"
    STOCK_FAILED = "stock_failed"
    ERROR = "error"


async def increment_coupon_usage(session: AsyncSession, order: Order) -> None:
    """Count the applied coupon as used. Atomic increment, so concurrent orders don't lose updates."""
    code = order.applied_coupon_code
    if not code:
        return
    result = await session.execute(
        update(Coupon)
        .where(Coupon.code == code)
        .values(current_uses=Coupon.current_uses + 1)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount == 0:
        logger.warning("Applied coupon not found, usage not counted", order_number=order.order_number, coupon=code)
    else:
        logger.info("Coupon usage counted", order_number=order.order_number, coupon=code)


DEFAULT_CONFIRMED_HOOKS: Sequence[OrderConfirmedHook] = (increment_coupon_usage,)


def quantities_by_variant(lines: Iterable[Any]) -> Dict[int, int]:
    """
    Total quantity per variant, in ascending variant id order.

    One order confirms each variant once (the order number is the
    confirmation's idempotency key), and variant rows are always locked
    in id order so two finalizations cannot deadlock.
    """
    totals: Dict[int, int] = {}
    for line in lines:
        totals[line.variant_id] = totals.get(line.variant_id, 0) + line.quantity
    return dict(sorted(totals.items()))


class OrderFinalizer:
    def __init__(
        self,
        session: AsyncSession,
        settings: Optional[Settings] = None,
        inventory: Optional[InventoryService] = None,
        hooks: Optional[Sequence[OrderConfirmedHook]] = None,
    ):
        self.session = session
        self.settings = settings or get_settings()
        self.inventory = inventory or InventoryService(session, settings=self.settings)
        self.hooks: List[OrderConfirmedHook] = list(DEFAULT_CONFIRMED_HOOKS if hooks is None else hooks)

    # -- building blocks ----------------------------------------------------

    def amount_matches(self, order: Order, paid_minor: int) -> bool:
        expected = Decimal(str(order.total_amount))
        return abs(from_paisa(paid_minor) - expected) <= self.settings.PAYMENT_AMOUNT_TOLERANCE

    async def finalize_order(self, order: Order) -> None:
        """Deduct stock for every variant on the order, confirm it and fire the confirmed hooks."""
        for variant_id, quantity in quantities_by_variant(order.items).items():
            await self.inventory.confirm_stock(
                variant_id,
                quantity,
                order.holder_id,
                order_ref=order.order_number,
            )
        transition_order(order, OrderStatus.CONFIRMED)
        for hook in self.hooks:
            await hook(self.session, order)
        orders_finalized_total.labels(payment_method=PaymentMethod(order.payment_method).value).inc()
        logger.info("Order confirmed", order_number=order.order_number, items=len(order.items))

    async def complete_payment(self, order: Order, transaction_id: Optional[str] = None) -> bool:
        """Returns False when the payment was already completed (nothing is counted twice)."""
        if is_payment_completed(order):
            return False
        transition_payment(order, PaymentStatus.COMPLETED)
        if transaction_id:
            order.transaction_id = transaction_id
        await self.finalize_order(order)
        return True

    async def fail_payment(self, order: Order, reason: str) -> None:
        """Gateway gave up on the payment: fail it, cancel the order and free the holds."""
        transition_payment(order, PaymentStatus.FAILED)
        if can_transition_order(OrderStatus(order.order_status), OrderStatus.CANCELLED):
            transition_order(order, OrderStatus.CANCELLED)
        for variant_id in quantities_by_variant(order.items):
            await self.inventory.release_reservation(variant_id, order.holder_id)
        logger.info("Payment failed, order cancelled", order_number=order.order_number, reason=reason)

    # -- lookup handling ----------------------------------------------------

    async def apply_lookup(self, order: Order, lookup: LookupResponse) -> PaymentOutcome:
        if is_payment_completed(order):
            return PaymentOutcome.ALREADY_COMPLETED
        if PaymentStatus(order.payment_status) != PaymentStatus.INITIATED:
            logger.info(
                "Payment not awaiting confirmation, skipping",
                order_number=order.order_number,
                payment_status=PaymentStatus(order.payment_status).value,
            )
            return PaymentOutcome.SKIPPED

        status = lookup.payment_status
        if status == GatewayPaymentStatus.COMPLETED:
            if not self.amount_matches(order, lookup.total_amount):
                logger.warning(
                    "Payment amount mismatch, manual review required",
                    order_number=order.order_number,
                    pidx=order.pidx,
                    expected=str(order.total_amount),
                    paid=str(from_paisa(lookup.total_amount)),
                )
                transition_payment(order, PaymentStatus.FAILED)
                return PaymentOutcome.AMOUNT_MISMATCH
            await self.complete_payment(order, lookup.transaction_id)
            return PaymentOutcome.COMPLETED

        if status.is_terminal_failure:
            await self.fail_payment(order, status.value)
            return PaymentOutcome.FAILED

        return PaymentOutcome.PENDING

    async def lock_order(self, order_id: int) -> Optional[Order]:
        result = await self.session.execute(
            select(Order)
            .where(Order.id == order_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def settle_lookup(self, order_id: int, lookup: LookupResponse) -> PaymentOutcome:
        """
        Record the lookup and apply it to the order in one transaction.

        The order row is locked and its status re-read here, after the
        gateway call, so a concurrent callback and reconciliation cycle
        cannot both complete it. When stock confirmation fails the whole
        change is rolled back and the order stays Initiated for manual review.
        """
        order = await self.lock_order(order_id)
        if order is None:
            raise OrderNotFoundError(order_id)
        order_number, pidx = order.order_number, order.pidx
        raw = lookup.model_dump()

        record_payment_check(self.session, order.id, pidx, lookup.status, raw)
        try:
            outcome = await self.apply_lookup(order, lookup)
            await self.session.commit()
        except InventoryServiceError as exc:
            await self.session.rollback()
            record_payment_check(self.session, order_id, pidx, lookup.status, raw)
            record_payment_check(
                self.session,
                order_id,
                pidx,
                "StockFailed",
                f"Payment success, stock failure: {exc.message}",
            )
            await self.session.commit()
            logger.error(
                "Payment verified but stock confirmation failed, manual refund required",
                order_number=order_number,
                pidx=pidx,
                error=exc.message,
            )
            return PaymentOutcome.STOCK_FAILED
        except Exception:
            await self.session.rollback()
            raise

        logger.info(
            "Payment lookup applied",
            order_number=order_number,
            pidx=pidx,
            gateway_status=lookup.status,
            outcome=outcome.value,
            checked_at=utcnow().isoformat(),
        )
        return outcome
