import asyncio
import sys
from contextlib import asynccontextmanager
from functools import partial

from fastapi import FastAPI, Depends
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from backend.app.api import inventory, payments
from backend.app.api.deps import get_session
from backend.app.core.logging import setup_logging, get_logger
from backend.app.core.settings import get_settings
from backend.app.core.metrics import PrometheusMiddleware, get_metrics_response
from backend.app.services.scheduler import reconciliation_job, reservation_sweep_job, run_periodic

# Load and validate settings
try:
    settings = get_settings()
except ValueError as e:
    print(f"Configuration error: {e}", file=sys.stderr)
    sys.exit(1)

# Use JSON format in production
setup_logging(
    log_level=settings.LOG_LEVEL,
    json_format=settings.is_production
)

logger = get_logger(__name__)

logger.info(
    "Application configuration loaded",
    environment=settings.ENVIRONMENT,
    db_host=settings.DB_HOST,
    khalti_configured=settings.khalti_configured,
    strict_stock_confirm=settings.STRICT_STOCK_CONFIRM,
)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan handler.
    - Startup: start the reservation sweep and payment reconciliation loops
    - Shutdown: stop both loops
    """
    from backend.app.core.database import async_session, engine
    from backend.app.services.khalti import KhaltiClient

    logger.info("Application starting up", version="1.0.0")
    stop_event = asyncio.Event()
    tasks = [
        asyncio.create_task(run_periodic(
            "reservation_sweep",
            settings.RESERVATION_SWEEP_INTERVAL_SECONDS,
            partial(reservation_sweep_job, async_session, settings),
            stop_event,
        )),
    ]
    if settings.khalti_configured:
        tasks.append(asyncio.create_task(run_periodic(
            "payment_reconciliation",
            settings.RECONCILIATION_INTERVAL_SECONDS,
            partial(reconciliation_job, async_session, KhaltiClient(settings), settings),
            stop_event,
        )))
    else:
        logger.warning("KHALTI_SECRET_KEY not set, payment reconciliation disabled")

    yield

    stop_event.set()
    for task in tasks:
        task.cancel()
    await asyncio.gather(*tasks, return_exceptions=True)
    await engine.dispose()
    logger.info("Application shutting down")


app = FastAPI(title="Commerce Backend", lifespan=lifespan)

app.add_middleware(PrometheusMiddleware)

app.include_router(payments.router, prefix="/payments", tags=["payments"])
app.include_router(inventory.router, prefix="/admin/inventory", tags=["admin"])


@app.get("/")
async def root():
    return {"status": "ok"}


@app.get("/health")
async def health_check(session: AsyncSession = Depends(get_session)):
    """Database ping plus whether the reconciliation loop can reach Khalti at all."""
    checks = {
        "database": "ok",
        "payment_gateway": "configured" if settings.khalti_configured else "not_configured",
    }
    status = "healthy"
    try:
        await session.execute(text("SELECT 1"))
    except Exception as e:
        logger.error("Database health check failed", error=str(e))
        checks["database"] = f"error: {e}"
        status = "unhealthy"
    return {"status": status, "version": "1.0.0", "checks": checks}


@app.get("/metrics")
async def metrics_endpoint(openmetrics: bool = False):
    return get_metrics_response(openmetrics=openmetrics)
