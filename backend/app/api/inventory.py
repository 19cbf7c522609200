"""Admin inventory endpoints: stock levels, adjustments and the audit trail."""
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from backend.app.api.deps import get_session
from backend.app.core.logging import get_logger
from backend.app.models.inventory import StockAction
from backend.app.services.audit import audit_entry_to_dict, list_stock_audit
from backend.app.services.inventory import InventoryService, InventoryServiceError

router = APIRouter()
logger = get_logger(__name__)


def _handle_service_error(e: InventoryServiceError):
    """Convert service exceptions to HTTP exceptions."""
    raise HTTPException(status_code=e.status_code, detail=e.message)


class StockAdjustRequest(BaseModel):
    quantity_change: int
    reason: str = Field(..., min_length=1, max_length=500)
    actor_id: Optional[str] = None


@router.get("/audit")
async def get_stock_audit(
    variant_id: Optional[int] = None,
    action: Optional[StockAction] = None,
    limit: int = Query(100, ge=1, le=1000),
    session: AsyncSession = Depends(get_session),
):
    entries = await list_stock_audit(session, variant_id=variant_id, action=action, limit=limit)
    return [audit_entry_to_dict(e) for e in entries]


@router.get("/{variant_id}")
async def get_stock_summary(variant_id: int, session: AsyncSession = Depends(get_session)):
    service = InventoryService(session)
    try:
        summary = await service.get_stock_summary(variant_id)
    except InventoryServiceError as e:
        _handle_service_error(e)
    return {
        "variant_id": summary.variant_id,
        "on_hand": summary.on_hand,
        "reserved": summary.reserved,
        "available": summary.available,
        "reorder_level": summary.reorder_level,
        "is_low_stock": summary.is_low_stock,
    }


@router.post("/{variant_id}/adjust")
async def adjust_stock(
    variant_id: int,
    data: StockAdjustRequest,
    session: AsyncSession = Depends(get_session),
):
    """Restock (positive change) or write off (negative change) on-hand stock."""
    service = InventoryService(session)
    try:
        stock = await service.adjust_stock(variant_id, data.quantity_change, data.reason, actor_id=data.actor_id)
        await session.commit()
    except InventoryServiceError as e:
        await session.rollback()
        logger.warning(
            "Stock adjustment failed",
            variant_id=variant_id,
            quantity_change=data.quantity_change,
            error=e.message,
        )
        _handle_service_error(e)
    return {"variant_id": variant_id, "stock_quantity": stock}
