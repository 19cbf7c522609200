"""Checkout: turns a reserved cart into an order."""
import uuid
from dataclasses import dataclass
from decimal import Decimal
from typing import List, Optional, Sequence

from sqlalchemy.ext.asyncio import AsyncSession

from backend.app.core.base import utcnow
from backend.app.core.logging import get_logger
from backend.app.core.settings import Settings, get_settings
from backend.app.models.order import Order, OrderItem, OrderStatus, PaymentMethod, PaymentStatus
from backend.app.services.finalization import (
    OrderConfirmedHook,
    OrderFinalizer,
    PaymentServiceError,
    quantities_by_variant,
)
from backend.app.services.inventory import HolderLike, InvalidQuantityError, InventoryService
from backend.app.services.khalti import CustomerInfo, GatewayError, PaymentGateway
from backend.app.services.order_state import transition_order, transition_payment
from backend.app.services.payment import PaymentService

logger = get_logger(__name__)


class CheckoutError(PaymentServiceError):
    pass


@dataclass
class CheckoutItem:
    variant_id: int
    quantity: int
    unit_price: Decimal


def generate_order_number() -> str:
    """ORD-YYYYMMDD-XXXXXXXX"""
    return f"ORD-{utcnow():%Y%m%d}-{uuid.uuid4().hex[:8].upper()}"


class CheckoutService:
    def __init__(
        self,
        session: AsyncSession,
        gateway: Optional[PaymentGateway] = None,
        settings: Optional[Settings] = None,
        hooks: Optional[Sequence[OrderConfirmedHook]] = None,
    ):
        self.session = session
        self.settings = settings or get_settings()
        self.gateway = gateway
        self.hooks = hooks

    async def place_order(
        self,
        holder_id: HolderLike,
        items: List[CheckoutItem],
        payment_method: PaymentMethod,
        total_amount: Decimal,
        coupon_code: Optional[str] = None,
        customer: Optional[CustomerInfo] = None,
        return_url: Optional[str] = None,
    ) -> Order:
        """
        Create the order for the holder's cart.

        The cart is checked first (quantity bounds, stock coverage) and a
        CheckoutError raised before any order row or payment exists.
        Cash on delivery confirms stock right away. Khalti leaves the order
        PendingPayment with the reservations still held and returns it with
        ``payment_url`` set; stock is confirmed when the payment is verified.
        """
        if not items:
            raise CheckoutError("Cannot place an order without items", 400)
        total = Decimal(str(total_amount))
        if total <= 0:
            raise CheckoutError("Order total must be positive", 400)
        holder = InventoryService.holder_key(holder_id)
        method = PaymentMethod(payment_method)
        try:
            await self._check_fulfillable(holder, items)
        except Exception:
            await self.session.rollback()
            raise

        order = Order(
            order_number=generate_order_number(),
            holder_id=holder,
            payment_method=method,
            order_status=OrderStatus.PENDING_PAYMENT,
            payment_status=(
                PaymentStatus.NOT_REQUIRED if method == PaymentMethod.CASH_ON_DELIVERY else PaymentStatus.INITIATED
            ),
            total_amount=total,
            applied_coupon_code=coupon_code,
            created_at=utcnow(),
            items=[
                OrderItem(variant_id=item.variant_id, quantity=item.quantity, unit_price=item.unit_price)
                for item in items
            ],
        )

        if method == PaymentMethod.CASH_ON_DELIVERY:
            return await self._place_cash_order(order)
        return await self._place_khalti_order(order, customer, return_url)

    async def _check_fulfillable(self, holder: str, items: List[CheckoutItem]) -> None:
        """
        Reject carts that finalization could never confirm, before any
        payment is taken: per-variant totals must be within the quantity
        bounds and covered by free stock plus the holder's own hold.
        """
        inventory = InventoryService(self.session, settings=self.settings)
        for item in items:
            if item.quantity < 1:
                raise CheckoutError(f"Invalid quantity {item.quantity} for variant {item.variant_id}", 400)
        for variant_id, quantity in quantities_by_variant(items).items():
            try:
                inventory.validate_quantity(quantity)
            except InvalidQuantityError as e:
                raise CheckoutError(f"Variant {variant_id}: {e.message}", 400) from e
            available = await inventory.available_to_holder(variant_id, holder)
            if quantity > available:
                logger.info(
                    "Checkout rejected: insufficient stock",
                    holder_id=holder,
                    variant_id=variant_id,
                    requested=quantity,
                    available=available,
                )
                raise CheckoutError(
                    f"Not enough stock for variant {variant_id}: requested {quantity}, available {available}",
                    409,
                )

    async def _place_cash_order(self, order: Order) -> Order:
        finalizer = OrderFinalizer(self.session, settings=self.settings, hooks=self.hooks)
        try:
            self.session.add(order)
            await self.session.flush()
            await finalizer.finalize_order(order)
            await self.session.commit()
        except Exception:
            await self.session.rollback()
            raise
        logger.info("Cash on delivery order placed", order_number=order.order_number, holder_id=order.holder_id)
        return order

    async def _place_khalti_order(
        self,
        order: Order,
        customer: Optional[CustomerInfo],
        return_url: Optional[str],
    ) -> Order:
        # Persist first so the order exists even if the gateway call dies midway
        self.session.add(order)
        await self.session.commit()

        payments = PaymentService(self.session, gateway=self.gateway, settings=self.settings)
        try:
            await payments.initiate_payment(order, customer=customer, return_url=return_url)
        except (GatewayError, PaymentServiceError):
            transition_payment(order, PaymentStatus.FAILED)
            transition_order(order, OrderStatus.CANCELLED)
            await self.session.commit()
            logger.error("Payment initiation failed, order cancelled", order_number=order.order_number, exc_info=True)
            raise
        await self.session.commit()
        logger.info(
            "Khalti order placed",
            order_number=order.order_number,
            holder_id=order.holder_id,
            pidx=order.pidx,
        )
        return order
