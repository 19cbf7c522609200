"""
Tests for the payment reconciliation loop and the periodic job runner.

Orders are created through test_session and committed; the reconciler opens
its own sessions from the shared test session factory, like it does in
production.
"""
import asyncio
from datetime import timedelta
from decimal import Decimal

import pytest
from sqlalchemy.ext.asyncio import AsyncSession

from backend.app.core.base import utcnow
from backend.app.core.settings import Settings
from backend.app.models.inventory import StockReservation
from backend.app.models.order import OrderStatus, PaymentMethod, PaymentStatus
from backend.app.services.audit import list_payment_checks
from backend.app.services.finalization import PaymentOutcome
from backend.app.services.inventory import InventoryService
from backend.app.services.khalti import GatewayUnavailableError
from backend.app.services.payment import PaymentService
from backend.app.services.reconciliation import PaymentReconciler
from backend.app.services.scheduler import reconciliation_job, reservation_sweep_job, run_periodic

STALE = 600


@pytest.fixture
async def stale_order(test_session: AsyncSession, make_variant, make_order, test_coupon, settings):
    """Khalti order created ten minutes ago whose callback never arrived."""
    variant = await make_variant(stock=10)
    await InventoryService(test_session, settings=settings).reserve_stock(variant.id, 2, "user:1")
    order = await make_order(
        [(variant, 2)],
        holder_id="user:1",
        total_amount=Decimal("1000.00"),
        coupon_code=test_coupon.code,
        age_seconds=STALE,
    )
    return order, variant


def _reconciler(session_factory, gateway, settings) -> PaymentReconciler:
    return PaymentReconciler(session_factory, gateway=gateway, settings=settings)


# ============================================
# OUTCOMES
# ============================================

@pytest.mark.asyncio
async def test_reconcile_completes_stale_payment(
    test_session: AsyncSession, session_factory, stale_order, fake_gateway, settings, test_coupon
):
    order, variant = stale_order
    fake_gateway.set_lookup(order.pidx, "Completed", total_amount=100000, transaction_id="txn-r1")

    report = await _reconciler(session_factory, fake_gateway, settings).reconcile_once()

    assert report.checked == 1
    assert report.count(PaymentOutcome.COMPLETED) == 1
    await test_session.refresh(order)
    await test_session.refresh(variant)
    await test_session.refresh(test_coupon)
    assert order.order_status == OrderStatus.CONFIRMED
    assert order.payment_status == PaymentStatus.COMPLETED
    assert order.transaction_id == "txn-r1"
    assert variant.stock_quantity == 8
    assert test_coupon.current_uses == 1


@pytest.mark.asyncio
async def test_reconcile_twice_counts_once(
    test_session: AsyncSession, session_factory, stale_order, fake_gateway, settings, test_coupon
):
    """A second cycle finds nothing left to do."""
    order, variant = stale_order
    fake_gateway.set_lookup(order.pidx, "Completed", total_amount=100000)
    reconciler = _reconciler(session_factory, fake_gateway, settings)

    await reconciler.reconcile_once()
    second = await reconciler.reconcile_once()

    assert second.checked == 0
    assert fake_gateway.lookup_calls == [order.pidx]
    await test_session.refresh(variant)
    await test_session.refresh(test_coupon)
    assert variant.stock_quantity == 8
    assert test_coupon.current_uses == 1


@pytest.mark.asyncio
async def test_callback_then_reconcile_does_not_double_count(
    test_session: AsyncSession, session_factory, stale_order, fake_gateway, settings, test_coupon
):
    """Whichever path sees Completed first wins; the other one is a no-op."""
    order, variant = stale_order
    fake_gateway.set_lookup(order.pidx, "Completed", total_amount=100000)

    outcome = await PaymentService(test_session, gateway=fake_gateway, settings=settings).confirm_payment(order.pidx)
    assert outcome == PaymentOutcome.COMPLETED

    report = await _reconciler(session_factory, fake_gateway, settings).reconcile_once()

    assert report.checked == 0
    await test_session.refresh(variant)
    await test_session.refresh(test_coupon)
    assert variant.stock_quantity == 8
    assert test_coupon.current_uses == 1


@pytest.mark.asyncio
async def test_reconcile_expired_payment_cancels_order(
    test_session: AsyncSession, session_factory, stale_order, fake_gateway, settings
):
    order, variant = stale_order
    fake_gateway.set_lookup(order.pidx, "Expired", total_amount=100000)

    report = await _reconciler(session_factory, fake_gateway, settings).reconcile_once()

    assert report.count(PaymentOutcome.FAILED) == 1
    await test_session.refresh(order)
    assert order.order_status == OrderStatus.CANCELLED
    assert order.payment_status == PaymentStatus.FAILED
    assert await InventoryService(test_session, settings=settings).get_available_stock(variant.id) == 10


@pytest.mark.asyncio
async def test_reconcile_pending_payment_stays_initiated(
    test_session: AsyncSession, session_factory, stale_order, fake_gateway, settings
):
    order, _variant = stale_order
    fake_gateway.set_lookup(order.pidx, "Pending")
    reconciler = _reconciler(session_factory, fake_gateway, settings)

    report = await reconciler.reconcile_once()

    assert report.count(PaymentOutcome.PENDING) == 1
    await test_session.refresh(order)
    assert order.payment_status == PaymentStatus.INITIATED
    # Still eligible next cycle
    assert (await reconciler.reconcile_once()).checked == 1


@pytest.mark.asyncio
async def test_reconcile_amount_mismatch(
    test_session: AsyncSession, session_factory, stale_order, fake_gateway, settings
):
    order, variant = stale_order
    fake_gateway.set_lookup(order.pidx, "Completed", total_amount=99000)

    report = await _reconciler(session_factory, fake_gateway, settings).reconcile_once()

    assert report.count(PaymentOutcome.AMOUNT_MISMATCH) == 1
    await test_session.refresh(order)
    await test_session.refresh(variant)
    assert order.payment_status == PaymentStatus.FAILED
    assert order.order_status == OrderStatus.PENDING_PAYMENT
    assert variant.stock_quantity == 10


# ============================================
# SELECTION
# ============================================

@pytest.mark.asyncio
async def test_reconcile_ignores_fresh_and_cash_orders(
    test_session: AsyncSession, session_factory, make_variant, make_order, fake_gateway, settings
):
    variant = await make_variant(stock=10)
    await make_order([(variant, 1)], age_seconds=10)
    await make_order(
        [(variant, 1)],
        payment_method=PaymentMethod.CASH_ON_DELIVERY,
        payment_status=PaymentStatus.NOT_REQUIRED,
        age_seconds=STALE,
    )

    report = await _reconciler(session_factory, fake_gateway, settings).reconcile_once()

    assert report.checked == 0
    assert fake_gateway.lookup_calls == []


# ============================================
# FAILURES
# ============================================

@pytest.mark.asyncio
async def test_gateway_failure_does_not_block_other_orders(
    test_session: AsyncSession, session_factory, make_variant, make_order, fake_gateway, settings
):
    """One failing lookup is logged and audited; the rest of the batch still settles."""
    first_variant = await make_variant(stock=10)
    second_variant = await make_variant(stock=10)
    failing = await make_order([(first_variant, 1)], holder_id="user:1", age_seconds=STALE + 60)
    healthy = await make_order([(second_variant, 1)], holder_id="user:2", age_seconds=STALE)
    fake_gateway.fail_lookup(failing.pidx, GatewayUnavailableError("Khalti lookup failed: 502"))
    fake_gateway.set_lookup(healthy.pidx, "Completed", total_amount=100000)

    report = await _reconciler(session_factory, fake_gateway, settings).reconcile_once()

    assert report.checked == 2
    assert report.count(PaymentOutcome.ERROR) == 1
    assert report.count(PaymentOutcome.COMPLETED) == 1
    await test_session.refresh(failing)
    await test_session.refresh(healthy)
    assert failing.payment_status == PaymentStatus.INITIATED
    assert healthy.payment_status == PaymentStatus.COMPLETED
    checks = await list_payment_checks(test_session, failing.id)
    assert [c.status for c in checks] == ["LookupFailed"]


@pytest.mark.asyncio
async def test_slow_gateway_times_out(
    test_session: AsyncSession, session_factory, stale_order, fake_gateway
):
    order, _variant = stale_order
    impatient = Settings(
        ENVIRONMENT="development",
        KHALTI_SECRET_KEY="test_secret_key",
        GATEWAY_TIMEOUT_SECONDS=0.05,
    )
    fake_gateway.set_lookup(order.pidx, "Completed", total_amount=100000)
    fake_gateway.lookup_delay = 0.5

    report = await _reconciler(session_factory, fake_gateway, impatient).reconcile_once()

    assert report.count(PaymentOutcome.ERROR) == 1
    await test_session.refresh(order)
    assert order.payment_status == PaymentStatus.INITIATED
    checks = await list_payment_checks(test_session, order.id)
    assert [c.status for c in checks] == ["LookupFailed"]


# ============================================
# BACKGROUND JOBS
# ============================================

@pytest.mark.asyncio
async def test_reconciliation_job(session_factory, stale_order, fake_gateway, settings):
    order, _variant = stale_order
    fake_gateway.set_lookup(order.pidx, "Completed", total_amount=100000)

    report = await reconciliation_job(session_factory, gateway=fake_gateway, settings=settings)

    assert report.count(PaymentOutcome.COMPLETED) == 1


@pytest.mark.asyncio
async def test_reservation_sweep_job(test_session: AsyncSession, session_factory, make_variant, settings):
    variant = await make_variant(stock=5)
    test_session.add_all([
        StockReservation(
            variant_id=variant.id,
            holder_id="user:gone",
            quantity=2,
            expires_at=utcnow() - timedelta(minutes=1),
        ),
        StockReservation(
            variant_id=variant.id,
            holder_id="user:here",
            quantity=1,
            expires_at=utcnow() + timedelta(minutes=15),
        ),
    ])
    await test_session.commit()

    assert await reservation_sweep_job(session_factory, settings) == 1
    assert await reservation_sweep_job(session_factory, settings) == 0


@pytest.mark.asyncio
async def test_run_periodic_survives_failing_cycles():
    """A failing cycle is logged and the loop keeps going until stopped."""
    calls = []
    stop = asyncio.Event()

    async def job():
        calls.append(1)
        if len(calls) == 1:
            raise RuntimeError("boom")
        if len(calls) >= 3:
            stop.set()

    await asyncio.wait_for(run_periodic("test_job", 0.01, job, stop), timeout=5)

    assert len(calls) == 3


@pytest.mark.asyncio
async def test_run_periodic_stops_on_cancel():
    calls = []

    async def job():
        calls.append(1)

    task = asyncio.create_task(run_periodic("cancel_job", 10, job))
    await asyncio.sleep(0.05)
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task
    assert calls == [1]
