"""Payment API endpoints for the Khalti integration."""
from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from backend.app.api.deps import get_payment_gateway, get_session
from backend.app.core.exceptions import ServiceError
from backend.app.core.logging import get_logger
from backend.app.services.khalti import PaymentGateway
from backend.app.services.payment import PaymentService

router = APIRouter()
logger = get_logger(__name__)


def _handle_service_error(e: ServiceError):
    """Convert service exceptions to HTTP exceptions."""
    raise HTTPException(status_code=e.status_code, detail=e.message)


# ---------------------------------------------------------------------------
# Schemas
# ---------------------------------------------------------------------------

class MarkPaidRequest(BaseModel):
    transaction_id: str
    actor: str


# ---------------------------------------------------------------------------
# Endpoints
# ---------------------------------------------------------------------------

@router.get("/khalti/callback")
async def khalti_callback(
    pidx: str = Query(..., min_length=1),
    session: AsyncSession = Depends(get_session),
    gateway: PaymentGateway = Depends(get_payment_gateway),
):
    """
    Khalti redirects the buyer here after payment.

    The query string is not trusted: the payment is verified with a lookup
    before the order is touched. A gateway failure answers 502/504 and
    leaves the payment for the reconciliation loop.
    """
    service = PaymentService(session, gateway=gateway)
    try:
        outcome = await service.confirm_payment(pidx)
    except ServiceError as e:
        await session.rollback()
        logger.warning("Khalti callback failed", pidx=pidx, error=e.message, error_code=e.status_code)
        _handle_service_error(e)
    return {"pidx": pidx, "outcome": outcome.value}


@router.post("/orders/{order_id}/mark-paid")
async def mark_order_paid(
    order_id: int,
    data: MarkPaidRequest,
    session: AsyncSession = Depends(get_session),
    gateway: PaymentGateway = Depends(get_payment_gateway),
):
    """Admin: settle a payment verified outside the gateway lookup."""
    service = PaymentService(session, gateway=gateway)
    try:
        changed = await service.mark_paid_manually(order_id, data.transaction_id, data.actor)
    except ServiceError as e:
        await session.rollback()
        _handle_service_error(e)
    return {"order_id": order_id, "updated": changed}
