import uuid
from datetime import datetime
from typing import Optional

from sqlalchemy import (
    String,
    BigInteger,
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


class Approval(Base):
    __tablename__ = "approvals"

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid, primary_key=True, default=uuid.uuid4
    )
    po_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("purchase_orders.id", ondelete="CASCADE"), nullable=False
    )
    approver_id: Mapped[str] = mapped_column(String(100), nullable=False)
    approver_role: Mapped[str] = mapped_column(String(50), nullable=False)
    decision: Mapped[str] = mapped_column(String(20), nullable=False)
    amount_cents: Mapped[int] = mapped_column(BigInteger, nullable=False)
    approval_level: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    comments: Mapped[Optional[str]] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow
    )

    __table_args__ = (
        CheckConstraint(
            "approval_level > 0", name="chk_approval_level_positive"
        ),
        CheckConstraint(
            "decision IN ('approved','rejected','pending')",
            name="chk_approval_decision",
        ),
        Index("idx_approvals_po", "po_id"),
        Index("idx_approvals_approver", "approver_id", "decision"),
    )
