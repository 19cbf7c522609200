"""Stock reservation and stock audit models."""
import enum
from dataclasses import dataclass
from datetime import datetime
from typing import Optional, Union

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    text,
)
from sqlalchemy.orm import Mapped, mapped_column

from backend.app.core.base import Base, utcnow


class StockAction(str, enum.Enum):
    RESERVE = "Reserve"
    CONFIRM = "Confirm"
    RELEASE = "Release"
    CLEANUP = "Cleanup"
    ADJUST = "Adjust"


@dataclass(frozen=True)
class HolderId:
    """
    Cart owner on whose behalf stock is held.

    Authenticated users and anonymous sessions share one key space:
    ``str(HolderId.user("42")) == "user:42"``.
    """
    kind: str
    value: str

    USER = "user"
    SESSION = "session"

    @classmethod
    def user(cls, user_id: Union[int, str]) -> "HolderId":
        return cls(cls.USER, str(user_id))

    @classmethod
    def session(cls, token: str) -> "HolderId":
        return cls(cls.SESSION, token)

    def __post_init__(self):
        if self.kind not in (self.USER, self.SESSION):
            raise ValueError(f"Unknown holder kind: {self.kind!r}")
        value = str(self.value).strip() if self.value is not None else ""
        if not value:
            raise ValueError("Holder value cannot be empty")
        # Frozen dataclass: normalise in place so HolderId and raw string keys agree
        object.__setattr__(self, "value", value)

    def __str__(self) -> str:
        return f"{self.kind}:{self.value}"


# Predicate shared by every "active reservation" query and the partial unique index.
ACTIVE_RESERVATION_SQL = "NOT is_released AND NOT is_confirmed"


class StockReservation(Base):
    """Temporary hold against a variant's on-hand stock, keyed by (variant, holder)."""
    __tablename__ = 'stock_reservations'
    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    variant_id: Mapped[int] = mapped_column(ForeignKey('product_variants.id'), nullable=False)
    holder_id: Mapped[str] = mapped_column(String(255), nullable=False)
    quantity: Mapped[int] = mapped_column(Integer, nullable=False)
    expires_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    is_released: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    is_confirmed: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    order_ref: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        CheckConstraint('quantity > 0', name='ck_stock_reservations_quantity_positive'),
        CheckConstraint('NOT (is_released AND is_confirmed)', name='ck_stock_reservations_single_terminal'),
        # At most one active hold per (variant, holder)
        Index(
            'uq_stock_reservations_active_holder',
            'variant_id', 'holder_id',
            unique=True,
            postgresql_where=text(ACTIVE_RESERVATION_SQL),
            sqlite_where=text(ACTIVE_RESERVATION_SQL),
        ),
        # One confirmation per order line
        Index(
            'uq_stock_reservations_order_ref',
            'variant_id', 'holder_id', 'order_ref',
            unique=True,
            postgresql_where=text('order_ref IS NOT NULL'),
            sqlite_where=text('order_ref IS NOT NULL'),
        ),
        Index('ix_stock_reservations_expires_at', 'expires_at'),
        Index('ix_stock_reservations_variant_active', 'variant_id', 'is_released', 'is_confirmed'),
    )

    @property
    def is_active(self) -> bool:
        return not self.is_released and not self.is_confirmed

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at <= now


class StockAuditLog(Base):
    """Append-only trail of every stock-affecting action."""
    __tablename__ = 'stock_audit_logs'
    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    variant_id: Mapped[int] = mapped_column(Integer, nullable=False)
    action: Mapped[str] = mapped_column(String(32), nullable=False)
    quantity_changed: Mapped[int] = mapped_column(Integer, nullable=False)
    stock_before: Mapped[int] = mapped_column(Integer, nullable=False)
    stock_after: Mapped[int] = mapped_column(Integer, nullable=False)
    holder_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    reservation_id: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    timestamp: Mapped[datetime] = mapped_column(DateTime, default=utcnow)

    __table_args__ = (
        Index('ix_stock_audit_logs_variant_id', 'variant_id'),
        Index('ix_stock_audit_logs_action', 'action'),
        Index('ix_stock_audit_logs_timestamp', 'timestamp'),
    )
