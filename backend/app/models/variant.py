from sqlalchemy import String, DECIMAL, Integer, CheckConstraint, Index
from sqlalchemy.orm import Mapped, mapped_column
from typing import Optional
from backend.app.core.base import Base


class ProductVariant(Base):
    """Purchasable SKU. `stock_quantity` is the on-hand ledger; reservations never touch it."""
    __tablename__ = 'product_variants'
    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    product_id: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    sku: Mapped[str] = mapped_column(String(64), unique=True)
    name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    price: Mapped[float] = mapped_column(DECIMAL(12, 2))
    discount_price: Mapped[Optional[float]] = mapped_column(DECIMAL(12, 2), nullable=True)
    stock_quantity: Mapped[int] = mapped_column(Integer, default=0, server_default='0')
    reorder_level: Mapped[int] = mapped_column(Integer, default=10, server_default='10')

    __table_args__ = (
        CheckConstraint('stock_quantity >= 0', name='ck_product_variants_stock_non_negative'),
        Index('ix_product_variants_product_id', 'product_id'),
    )
