import uuid
from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field

from procurement.schemas.purchase_order import utcnow


class AuditEvent(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: uuid.UUID = Field(default_factory=uuid.uuid4)
    timestamp: datetime = Field(default_factory=utcnow)
    actor_id: Optional[str] = None
    actor_email: Optional[str] = None
    actor_role: Optional[str] = None
    action: str
    entity_type: str = "PO"
    entity_id: Optional[str] = None
    decision: str = "recorded"
    reason: Optional[str] = None
    before_state: Optional[dict] = None
    after_state: Optional[dict] = None
    changed_fields: Optional[List[str]] = None
    metadata: dict = Field(default_factory=dict)
