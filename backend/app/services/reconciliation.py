"""
Background reconciliation of Khalti payments whose return callback never
arrived (buyer closed the tab, network dropped, callback crashed).

Each cycle asks the gateway about every Initiated payment older than
RECONCILIATION_STALE_AFTER_SECONDS and settles it through the same
finalization path as the callback. Orders are handled one at a time, each
in its own session, so one bad order never blocks the rest.
"""
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional, Sequence, Tuple

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from backend.app.core.base import utcnow
from backend.app.core.logging import get_logger, log_context
from backend.app.core.metrics import payment_reconciliation_total
from backend.app.core.settings import Settings, get_settings
from backend.app.models.order import Order, PaymentMethod, PaymentStatus
from backend.app.services.audit import record_payment_check
from backend.app.services.finalization import OrderConfirmedHook, OrderFinalizer, PaymentOutcome
from backend.app.services.khalti import GatewayError, KhaltiClient, PaymentGateway, lookup_with_timeout

logger = get_logger(__name__)


@dataclass
class ReconciliationReport:
    checked: int = 0
    outcomes: Dict[str, int] = field(default_factory=dict)

    def count(self, outcome: PaymentOutcome) -> int:
        return self.outcomes.get(outcome.value, 0)


class PaymentReconciler:
    def __init__(
        self,
        session_factory: async_sessionmaker,
        gateway: Optional[PaymentGateway] = None,
        settings: Optional[Settings] = None,
        clock: Callable[[], datetime] = utcnow,
        hooks: Optional[Sequence[OrderConfirmedHook]] = None,
    ):
        self.session_factory = session_factory
        self.settings = settings or get_settings()
        self.gateway = gateway or KhaltiClient(self.settings)
        self._now = clock
        self.hooks = hooks

    async def find_stale_payments(self, session: AsyncSession) -> List[Tuple[int, str, str]]:
        """(order id, order number, pidx) of Khalti payments stuck in Initiated, oldest first."""
        cutoff = self._now() - timedelta(seconds=self.settings.RECONCILIATION_STALE_AFTER_SECONDS)
        result = await session.execute(
            select(Order.id, Order.order_number, Order.pidx)
            .where(
                Order.payment_method == PaymentMethod.KHALTI,
                Order.payment_status == PaymentStatus.INITIATED,
                Order.pidx.is_not(None),
                Order.created_at < cutoff,
            )
            .order_by(Order.created_at)
        )
        return [tuple(row) for row in result.all()]

    async def reconcile_once(self) -> ReconciliationReport:
        async with self.session_factory() as session:
            stale = await self.find_stale_payments(session)

        report = ReconciliationReport(checked=len(stale))
        if not stale:
            return report

        logger.info("Reconciling stale payments", count=len(stale))
        outcomes: Counter = Counter()
        for order_id, order_number, pidx in stale:
            outcome = await self.reconcile_order(order_id, order_number, pidx)
            outcomes[outcome.value] += 1
            payment_reconciliation_total.labels(outcome=outcome.value).inc()

        report.outcomes = dict(outcomes)
        logger.info("Reconciliation cycle finished", checked=report.checked, **report.outcomes)
        return report

    async def reconcile_order(self, order_id: int, order_number: str, pidx: str) -> PaymentOutcome:
        with log_context(order_number=order_number, pidx=pidx):
            return await self._reconcile_order(order_id, pidx)

    async def _reconcile_order(self, order_id: int, pidx: str) -> PaymentOutcome:
        async with self.session_factory() as session:
            try:
                lookup = await lookup_with_timeout(self.gateway, pidx, self.settings.GATEWAY_TIMEOUT_SECONDS)
            except GatewayError as exc:
                logger.error("Payment lookup failed during reconciliation", error=exc.message, exc_info=True)
                record_payment_check(session, order_id, pidx, "LookupFailed", exc.message)
                await session.commit()
                return PaymentOutcome.ERROR

            finalizer = OrderFinalizer(session, settings=self.settings, hooks=self.hooks)
            try:
                return await finalizer.settle_lookup(order_id, lookup)
            except Exception:
                logger.error("Failed to reconcile payment", exc_info=True)
                return PaymentOutcome.ERROR
