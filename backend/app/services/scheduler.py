"""Periodic background jobs started from the application lifespan."""
import asyncio
from typing import Awaitable, Callable, Optional

from sqlalchemy.ext.asyncio import async_sessionmaker

from backend.app.core.logging import get_logger, log_context
from backend.app.core.settings import Settings, get_settings
from backend.app.services.inventory import InventoryService
from backend.app.services.khalti import PaymentGateway
from backend.app.services.reconciliation import PaymentReconciler, ReconciliationReport

logger = get_logger(__name__)


async def run_periodic(
    name: str,
    interval: float,
    job: Callable[[], Awaitable[object]],
    stop_event: Optional[asyncio.Event] = None,
) -> None:
    """
    Run ``job`` every ``interval`` seconds until ``stop_event`` is set or the task is cancelled.
    A failing cycle is logged and the loop carries on.
    """
    stop_event = stop_event or asyncio.Event()
    logger.info("Background job started", job=name, interval=interval)
    while not stop_event.is_set():
        try:
            with log_context(job=name):
                await job()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error("Background job cycle failed", job=name, error=str(e), exc_info=True)
        try:
            await asyncio.wait_for(stop_event.wait(), timeout=interval)
        except asyncio.TimeoutError:
            pass
    logger.info("Background job stopped", job=name)


async def reservation_sweep_job(session_factory: async_sessionmaker, settings: Optional[Settings] = None) -> int:
    async with session_factory() as session:
        return await InventoryService(session, settings=settings).cleanup_expired_reservations()


async def reconciliation_job(
    session_factory: async_sessionmaker,
    gateway: Optional[PaymentGateway] = None,
    settings: Optional[Settings] = None,
) -> ReconciliationReport:
    reconciler = PaymentReconciler(session_factory, gateway=gateway, settings=settings or get_settings())
    return await reconciler.reconcile_once()
