import uuid
from datetime import datetime
from typing import Optional

from sqlalchemy import String, DateTime, Text, Index, Uuid, desc
from sqlalchemy.orm import Mapped, mapped_column

from procurement.database import Base
from procurement.models.types import JSONType
from procurement.schemas.purchase_order import utcnow


class AuditLog(Base):
    __tablename__ = "audit_logs"

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid, primary_key=True, default=uuid.uuid4
    )
    actor_id: Mapped[Optional[str]] = mapped_column(String(100))
    actor_email: Mapped[Optional[str]] = mapped_column(String(255))
    actor_role: Mapped[Optional[str]] = mapped_column(String(50))
    action: Mapped[str] = mapped_column(String(100), nullable=False)
    entity_type: Mapped[str] = mapped_column(String(50), nullable=False)
    entity_id: Mapped[Optional[str]] = mapped_column(String(100))
    decision: Mapped[str] = mapped_column(String(20), nullable=False)
    reason: Mapped[Optional[str]] = mapped_column(Text)
    before_state: Mapped[Optional[dict]] = mapped_column(JSONType)
    after_state: Mapped[Optional[dict]] = mapped_column(JSONType)
    changed_fields: Mapped[Optional[list]] = mapped_column(JSONType)
    request_id: Mapped[Optional[str]] = mapped_column(String(64))
    # Use "metadata" as the column name in DB, but "extra_metadata" as Python attr
    # to avoid conflict with SQLAlchemy's reserved .metadata attribute
    extra_metadata: Mapped[Optional[dict]] = mapped_column(
        "metadata", JSONType, default=dict
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow
    )

    __table_args__ = (
        Index("idx_audit_entity", "entity_type", "entity_id"),
        Index("idx_audit_actor", "actor_id"),
        Index("idx_audit_created", desc("created_at")),
    )
