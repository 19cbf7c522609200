"""Coupon usage and payment verification audit models."""
from datetime import datetime
from typing import Optional

from sqlalchemy import Boolean, DateTime, ForeignKey, Index, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from backend.app.core.base import Base, utcnow


class Coupon(Base):
    """Only the usage counter is owned here; pricing lives with the cart."""
    __tablename__ = 'coupons'
    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    code: Mapped[str] = mapped_column(String(64), unique=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    max_uses: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    current_uses: Mapped[int] = mapped_column(Integer, default=0, server_default='0')


class PaymentAuditLog(Base):
    """One row per gateway lookup (or failed lookup) for an order."""
    __tablename__ = 'payment_audit_logs'
    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    order_id: Mapped[int] = mapped_column(ForeignKey('orders.id', ondelete='CASCADE'))
    pidx: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    status: Mapped[str] = mapped_column(String(50))
    raw_response: Mapped[str] = mapped_column(Text, default="")
    checked_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)

    __table_args__ = (
        Index('ix_payment_audit_logs_order_id', 'order_id'),
        Index('ix_payment_audit_logs_pidx', 'pidx'),
    )
