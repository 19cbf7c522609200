import enum
from datetime import datetime
from typing import List, Optional

from sqlalchemy import DECIMAL, DateTime, Enum, ForeignKey, Index, Integer, String, Text, text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from backend.app.core.base import Base, utcnow


class OrderStatus(str, enum.Enum):
    PENDING_PAYMENT = "PendingPayment"  # Khalti: waiting for payment
    CONFIRMED = "Confirmed"             # COD: immediate | Khalti: payment verified
    PROCESSING = "Processing"
    SHIPPED = "Shipped"
    DELIVERED = "Delivered"
    CANCELLED = "Cancelled"
    RETURNED = "Returned"


class PaymentStatus(str, enum.Enum):
    NOT_REQUIRED = "NotRequired"  # COD
    INITIATED = "Initiated"
    COMPLETED = "Completed"
    FAILED = "Failed"
    REFUNDED = "Refunded"


class PaymentMethod(str, enum.Enum):
    CASH_ON_DELIVERY = "CashOnDelivery"
    KHALTI = "Khalti"


def _enum_column(enum_cls):
    return Enum(
        enum_cls,
        native_enum=False,
        length=32,
        values_callable=lambda members: [m.value for m in members],
        validate_strings=True,
    )


class Order(Base):
    __tablename__ = 'orders'
    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    order_number: Mapped[str] = mapped_column(String(32), unique=True)
    # Same key the cart reservations were taken under (see HolderId)
    holder_id: Mapped[str] = mapped_column(String(255), nullable=False)
    payment_method: Mapped[PaymentMethod] = mapped_column(_enum_column(PaymentMethod))
    order_status: Mapped[OrderStatus] = mapped_column(
        _enum_column(OrderStatus), default=OrderStatus.PENDING_PAYMENT
    )
    payment_status: Mapped[PaymentStatus] = mapped_column(
        _enum_column(PaymentStatus), default=PaymentStatus.INITIATED
    )
    total_amount: Mapped[float] = mapped_column(DECIMAL(12, 2))
    applied_coupon_code: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    # Khalti payment fields
    pidx: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    payment_url: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    transaction_id: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    paid_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    confirmed_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    cancelled_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    items: Mapped[List["OrderItem"]] = relationship(
        back_populates="order", cascade="all, delete-orphan", lazy="selectin"
    )

    __table_args__ = (
        Index(
            'uq_orders_pidx', 'pidx',
            unique=True,
            postgresql_where=text('pidx IS NOT NULL'),
            sqlite_where=text('pidx IS NOT NULL'),
        ),
        Index('ix_orders_holder_id', 'holder_id'),
        # Reconciliation scan: method + status + age
        Index('ix_orders_payment_scan', 'payment_method', 'payment_status', 'created_at'),
    )


class OrderItem(Base):
    __tablename__ = 'order_items'
    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    order_id: Mapped[int] = mapped_column(ForeignKey('orders.id', ondelete='CASCADE'))
    variant_id: Mapped[int] = mapped_column(ForeignKey('product_variants.id'))
    quantity: Mapped[int] = mapped_column(Integer)
    unit_price: Mapped[float] = mapped_column(DECIMAL(12, 2))

    order: Mapped["Order"] = relationship(back_populates="items")

    __table_args__ = (
        Index('ix_order_items_order_id', 'order_id'),
    )
