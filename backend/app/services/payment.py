"""
Payment service: Khalti payment operations for checkout and the return callback.

The callback path (``confirm_payment``) and the reconciliation loop share
``OrderFinalizer.settle_lookup``; whichever sees the Completed lookup first
finalizes the order and the other one finds the payment already completed.
"""
from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from backend.app.core.logging import get_logger
from backend.app.core.settings import Settings, get_settings
from backend.app.models.order import Order, PaymentStatus
from backend.app.services.audit import record_payment_check
from backend.app.services.finalization import (
    OrderFinalizer,
    OrderNotFoundError,
    PaymentOutcome,
    PaymentServiceError,
)
from backend.app.services.khalti import (
    CustomerInfo,
    GatewayError,
    InitiateResponse,
    KhaltiClient,
    PaymentGateway,
    lookup_with_timeout,
    to_paisa,
)
from backend.app.services.order_state import is_payment_completed, transition_payment

logger = get_logger(__name__)


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------

class MissingReturnUrlError(PaymentServiceError):
    def __init__(self):
        super().__init__("Payment return URL is not configured", 503)


# ---------------------------------------------------------------------------
# Service
# ---------------------------------------------------------------------------

class PaymentService:
    """Handles Khalti payment initiation, verification and manual settlement."""

    def __init__(
        self,
        session: AsyncSession,
        gateway: Optional[PaymentGateway] = None,
        settings: Optional[Settings] = None,
    ):
        self.session = session
        self.settings = settings or get_settings()
        self.gateway = gateway or KhaltiClient(self.settings)

    def _finalizer(self) -> OrderFinalizer:
        return OrderFinalizer(self.session, settings=self.settings)

    async def _order_by_pidx(self, pidx: str) -> Optional[Order]:
        result = await self.session.execute(select(Order).where(Order.pidx == pidx))
        return result.scalar_one_or_none()

    # -- initiation ---------------------------------------------------------

    async def initiate_payment(
        self,
        order: Order,
        customer: Optional[CustomerInfo] = None,
        return_url: Optional[str] = None,
    ) -> InitiateResponse:
        """Open a Khalti payment for the order and remember its pidx. Caller commits."""
        return_url = return_url or self.settings.KHALTI_RETURN_URL
        if not return_url:
            raise MissingReturnUrlError()

        response = await self.gateway.initiate(
            order.order_number,
            to_paisa(order.total_amount),
            return_url,
            customer or CustomerInfo(),
            order_name=f"Order {order.order_number}",
        )
        order.pidx = response.pidx
        order.payment_url = response.payment_url
        logger.info(
            "Payment initiated",
            order_number=order.order_number,
            pidx=response.pidx,
            amount=str(order.total_amount),
        )
        return response

    # -- verification -------------------------------------------------------

    async def confirm_payment(self, pidx: str) -> PaymentOutcome:
        """
        Verify a payment the buyer was redirected back from.

        Never trusts the redirect itself: the status comes from a gateway
        lookup. A gateway failure is recorded as a LookupFailed audit entry
        and re-raised; the payment stays Initiated and the reconciliation
        loop picks it up later.
        """
        if not pidx:
            raise PaymentServiceError("pidx is required", 400)

        order = await self._order_by_pidx(pidx)
        if order is None:
            raise OrderNotFoundError(pidx)
        if is_payment_completed(order):
            logger.info("Payment already completed", order_number=order.order_number, pidx=pidx)
            return PaymentOutcome.ALREADY_COMPLETED
        order_id = order.id
        # No transaction stays open across the gateway call
        await self.session.commit()

        try:
            lookup = await lookup_with_timeout(self.gateway, pidx, self.settings.GATEWAY_TIMEOUT_SECONDS)
        except GatewayError as exc:
            record_payment_check(self.session, order_id, pidx, "LookupFailed", exc.message)
            await self.session.commit()
            logger.warning("Payment lookup failed during callback", pidx=pidx, error=exc.message)
            raise

        return await self._finalizer().settle_lookup(order_id, lookup)

    async def mark_paid_manually(self, order_id: int, transaction_id: str, actor: str) -> bool:
        """
        Admin settlement after checking the payment out of band.
        Returns False if the payment was already completed.
        """
        if not transaction_id or not transaction_id.strip():
            raise PaymentServiceError("Transaction id is required", 400)

        finalizer = self._finalizer()
        order = await finalizer.lock_order(order_id)
        if order is None:
            await self.session.rollback()
            raise OrderNotFoundError(order_id)
        if is_payment_completed(order):
            await self.session.commit()
            return False

        try:
            if PaymentStatus(order.payment_status) == PaymentStatus.FAILED:
                transition_payment(order, PaymentStatus.INITIATED)
            record_payment_check(
                self.session,
                order.id,
                order.pidx,
                "ManualVerification",
                {"transaction_id": transaction_id, "actor": actor},
            )
            await finalizer.complete_payment(order, transaction_id.strip())
            await self.session.commit()
        except Exception:
            await self.session.rollback()
            raise

        logger.info(
            "Payment marked as paid manually",
            order_id=order_id,
            transaction_id=transaction_id,
            actor=actor,
        )
        return True
