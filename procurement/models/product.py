import uuid
from datetime import datetime
from typing import Optional

from sqlalchemy import (
    String,
    Integer,
    DateTime,
    Text,
    ForeignKey,
    CheckConstraint,
    Index,
    Uuid,
)
from sqlalchemy.orm import Mapped, mapped_column

from procurement.database import Base
from procurement.schemas.purchase_order import utcnow


class Product(Base):
    __tablename__ = "products"

    id: Mapped[str] = mapped_column(String(100), primary_key=True)
    name: Mapped[Optional[str]] = mapped_column(String(255))
    stock: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, onupdate=utcnow
    )

    __table_args__ = (
        CheckConstraint("stock >= 0", name="chk_product_stock_non_negative"),
    )


class StockMovement(Base):
    __tablename__ = "stock_movements"

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid, primary_key=True, default=uuid.uuid4
    )
    product_id: Mapped[str] = mapped_column(
        String(100), ForeignKey("products.id"), nullable=False
    )
    movement_type: Mapped[str] = mapped_column(String(30), nullable=False)
    direction: Mapped[str] = mapped_column(String(10), nullable=False)
    quantity: Mapped[int] = mapped_column(Integer, nullable=False)
    stock_after: Mapped[int] = mapped_column(Integer, nullable=False)
    # Set for instructions that must apply at most once (receipts)
    idempotency_key: Mapped[Optional[str]] = mapped_column(String(200), unique=True)
    purchase_order_id: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid)
    reference_id: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid)
    user_id: Mapped[str] = mapped_column(String(100), nullable=False)
    reason: Mapped[Optional[str]] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow
    )

    __table_args__ = (
        CheckConstraint("quantity > 0", name="chk_stock_movement_qty"),
        CheckConstraint(
            "direction IN ('add','subtract')", name="chk_stock_movement_direction"
        ),
        Index("idx_stock_movements_product", "product_id", "created_at"),
    )
