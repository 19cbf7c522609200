"""Append-only audit trails for stock movements and payment lookups."""
import json
from typing import Any, Dict, List, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from backend.app.core.base import utcnow
from backend.app.models.inventory import StockAction, StockAuditLog
from backend.app.models.payment import PaymentAuditLog


def record_stock_change(
    session: AsyncSession,
    variant_id: int,
    action: StockAction,
    quantity_changed: int,
    stock_before: int,
    stock_after: int,
    holder_id: Optional[str] = None,
    reservation_id: Optional[int] = None,
    reason: Optional[str] = None,
) -> StockAuditLog:
    """Stage an audit row in the caller's transaction; it commits (or rolls back) with the mutation."""
    entry = StockAuditLog(
        variant_id=variant_id,
        action=StockAction(action).value,
        quantity_changed=quantity_changed,
        stock_before=stock_before,
        stock_after=stock_after,
        holder_id=holder_id,
        reservation_id=reservation_id,
        reason=reason,
        timestamp=utcnow(),
    )
    session.add(entry)
    return entry


async def list_stock_audit(
    session: AsyncSession,
    variant_id: Optional[int] = None,
    action: Optional[StockAction] = None,
    limit: int = 100,
) -> List[StockAuditLog]:
    """Newest entries first, for admin reporting."""
    stmt = select(StockAuditLog)
    if variant_id is not None:
        stmt = stmt.where(StockAuditLog.variant_id == variant_id)
    if action is not None:
        stmt = stmt.where(StockAuditLog.action == StockAction(action).value)
    stmt = stmt.order_by(StockAuditLog.timestamp.desc(), StockAuditLog.id.desc()).limit(limit)
    result = await session.execute(stmt)
    return list(result.scalars().all())


def record_payment_check(
    session: AsyncSession,
    order_id: int,
    pidx: Optional[str],
    status: str,
    raw_response: Any,
) -> PaymentAuditLog:
    if isinstance(raw_response, str):
        raw = raw_response
    else:
        raw = json.dumps(raw_response, default=str, ensure_ascii=False)
    entry = PaymentAuditLog(
        order_id=order_id,
        pidx=pidx,
        status=status,
        raw_response=raw,
        checked_at=utcnow(),
    )
    session.add(entry)
    return entry


async def list_payment_checks(session: AsyncSession, order_id: int) -> List[PaymentAuditLog]:
    result = await session.execute(
        select(PaymentAuditLog)
        .where(PaymentAuditLog.order_id == order_id)
        .order_by(PaymentAuditLog.id)
    )
    return list(result.scalars().all())


def audit_entry_to_dict(entry: StockAuditLog) -> Dict[str, Any]:
    return {
        "id": entry.id,
        "variant_id": entry.variant_id,
        "action": entry.action,
        "quantity_changed": entry.quantity_changed,
        "stock_before": entry.stock_before,
        "stock_after": entry.stock_after,
        "holder_id": entry.holder_id,
        "reservation_id": entry.reservation_id,
        "reason": entry.reason,
        "timestamp": entry.timestamp.isoformat() if entry.timestamp else None,
    }
