import uuid
from datetime import datetime, date
from typing import Optional

from sqlalchemy import (
    String,
    BigInteger,
    Integer,
    DateTime,
    Date,
    Text,
    ForeignKey,
    UniqueConstraint,
    CheckConstraint,
    Index,
    Uuid,
)
from sqlalchemy.orm import Mapped, mapped_column

from procurement.database import Base
from procurement.models.types import JSONType
from procurement.schemas.enums import PurchaseOrderStatus
from procurement.schemas.purchase_order import utcnow

_STATUS_VALUES = ",".join(f"'{s.value}'" for s in PurchaseOrderStatus)


class PurchaseOrder(Base):
    __tablename__ = "purchase_orders"

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid, primary_key=True, default=uuid.uuid4
    )
    po_number: Mapped[str] = mapped_column(
        String(50), unique=True, nullable=False
    )
    supplier_id: Mapped[str] = mapped_column(String(100), nullable=False)
    supplier_name: Mapped[Optional[str]] = mapped_column(String(255))
    status: Mapped[str] = mapped_column(
        String(50), default=PurchaseOrderStatus.DRAFT.value
    )
    subtotal_cents: Mapped[int] = mapped_column(BigInteger, nullable=False)
    tax_cents: Mapped[int] = mapped_column(BigInteger, default=0)
    total_cents: Mapped[int] = mapped_column(BigInteger, nullable=False)
    created_by: Mapped[str] = mapped_column(String(100), nullable=False)
    order_date: Mapped[Optional[date]] = mapped_column(Date)
    approved_by: Mapped[Optional[str]] = mapped_column(String(100))
    approved_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    expected_delivery_date: Mapped[Optional[date]] = mapped_column(Date)
    received_date: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    notes: Mapped[Optional[str]] = mapped_column(Text)
    # Bumped on every save; writers must present the version they read.
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, onupdate=utcnow
    )

    __table_args__ = (
        CheckConstraint(f"status IN ({_STATUS_VALUES})", name="chk_po_status"),
        CheckConstraint("total_cents = subtotal_cents + tax_cents", name="chk_po_total"),
        Index("idx_po_supplier", "supplier_id"),
        Index("idx_po_status", "status"),
    )


class PoLineItem(Base):
    __tablename__ = "po_line_items"

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid, primary_key=True, default=uuid.uuid4
    )
    po_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("purchase_orders.id", ondelete="CASCADE"),
        nullable=False,
    )
    line_number: Mapped[int] = mapped_column(Integer, nullable=False)
    product_id: Mapped[str] = mapped_column(String(100), nullable=False)
    product_name: Mapped[Optional[str]] = mapped_column(String(255))
    quantity: Mapped[int] = mapped_column(Integer, nullable=False)
    unit_cost_cents: Mapped[int] = mapped_column(BigInteger, nullable=False)
    received_quantity: Mapped[int] = mapped_column(Integer, default=0)
    quality_status: Mapped[Optional[str]] = mapped_column(String(20))
    batch_number: Mapped[Optional[str]] = mapped_column(String(100))
    expiry_date: Mapped[Optional[date]] = mapped_column(Date)
    serial_numbers: Mapped[Optional[list]] = mapped_column(JSONType, default=list)

    __table_args__ = (
        UniqueConstraint("po_id", "line_number", name="uq_po_line_item"),
        UniqueConstraint("po_id", "product_id", name="uq_po_line_product"),
        CheckConstraint("quantity > 0", name="chk_po_line_qty"),
        CheckConstraint("unit_cost_cents >= 0", name="chk_po_line_cost"),
        CheckConstraint(
            "received_quantity >= 0 AND received_quantity <= quantity",
            name="chk_po_line_received",
        ),
        Index("idx_po_items_po", "po_id"),
    )


class PoStatusTransition(Base):
    __tablename__ = "po_status_transitions"

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid, primary_key=True, default=uuid.uuid4
    )
    po_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("purchase_orders.id", ondelete="CASCADE"),
        nullable=False,
    )
    from_status: Mapped[str] = mapped_column(String(50), nullable=False)
    to_status: Mapped[str] = mapped_column(String(50), nullable=False)
    performed_by: Mapped[str] = mapped_column(String(100), nullable=False)
    reason: Mapped[Optional[str]] = mapped_column(Text)
    extra_metadata: Mapped[Optional[dict]] = mapped_column(
        "metadata", JSONType, default=dict
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow
    )

    __table_args__ = (
        Index("idx_po_transitions_po", "po_id", "created_at"),
    )
