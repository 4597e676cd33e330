import uuid
from datetime import date, datetime, timezone
from typing import Any, List, Optional

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    computed_field,
    field_validator,
    model_validator,
)

from procurement.schemas.enums import (
    ApprovalDecision,
    ItemCondition,
    PurchaseOrderStatus,
    QualityStatus,
    UserRole,
)

# Older rows and clients used these names for the cumulative received count.
LEGACY_RECEIVED_FIELDS = ("quantity_received", "received_qty", "receivedQuantity")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class PurchaseOrderItem(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: uuid.UUID = Field(default_factory=uuid.uuid4)
    product_id: str
    product_name: Optional[str] = None
    quantity: int = Field(..., gt=0)
    unit_cost_cents: int = Field(0, ge=0)
    received_quantity: int = Field(0, ge=0)
    quality_status: Optional[QualityStatus] = None
    batch_number: Optional[str] = None
    expiry_date: Optional[date] = None
    serial_numbers: List[str] = Field(default_factory=list)

    @model_validator(mode="before")
    @classmethod
    def _fold_legacy_received_field(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        data = dict(data)
        for legacy in LEGACY_RECEIVED_FIELDS:
            if legacy in data:
                value = data.pop(legacy)
                if data.get("received_quantity") is None and value is not None:
                    data["received_quantity"] = value
        return data

    @model_validator(mode="after")
    def _received_within_ordered(self) -> "PurchaseOrderItem":
        if self.received_quantity > self.quantity:
            raise ValueError(
                f"received_quantity ({self.received_quantity}) exceeds "
                f"quantity ({self.quantity})"
            )
        return self

    @computed_field
    @property
    def pending_quantity(self) -> int:
        return self.quantity - self.received_quantity

    @computed_field
    @property
    def total_cents(self) -> int:
        return self.quantity * self.unit_cost_cents

    def with_changes(self, **changes) -> "PurchaseOrderItem":
        """Return a re-validated copy; invariants are checked again."""
        data = self.model_dump(exclude={"pending_quantity", "total_cents"})
        data.update(changes)
        return PurchaseOrderItem.model_validate(data)


class PurchaseOrder(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: uuid.UUID = Field(default_factory=uuid.uuid4)
    po_number: str
    supplier_id: str
    supplier_name: Optional[str] = None
    items: List[PurchaseOrderItem] = Field(default_factory=list)
    tax_cents: int = Field(0, ge=0)
    status: PurchaseOrderStatus = PurchaseOrderStatus.DRAFT
    created_by: str
    created_at: datetime = Field(default_factory=utcnow)
    order_date: Optional[date] = None
    approved_by: Optional[str] = None
    approved_at: Optional[datetime] = None
    expected_delivery_date: Optional[date] = None
    received_date: Optional[datetime] = None
    notes: Optional[str] = None
    version: int = 0

    @field_validator("status", mode="before")
    @classmethod
    def _canonical_status(cls, value: Any) -> PurchaseOrderStatus:
        return PurchaseOrderStatus.parse(value)

    @computed_field
    @property
    def subtotal_cents(self) -> int:
        return sum(item.total_cents for item in self.items)

    @computed_field
    @property
    def total_cents(self) -> int:
        return self.subtotal_cents + self.tax_cents

    def item_for_product(self, product_id: str) -> Optional[PurchaseOrderItem]:
        for item in self.items:
            if item.product_id == product_id:
                return item
        return None

    @property
    def is_fully_received(self) -> bool:
        return bool(self.items) and all(i.pending_quantity == 0 for i in self.items)

    def with_changes(self, **changes) -> "PurchaseOrder":
        data = self.model_dump(exclude={"subtotal_cents", "total_cents"})
        data.update(changes)
        return PurchaseOrder.model_validate(data)


class StatusTransition(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: uuid.UUID = Field(default_factory=uuid.uuid4)
    purchase_order_id: uuid.UUID
    from_status: PurchaseOrderStatus
    to_status: PurchaseOrderStatus
    performed_by: str
    timestamp: datetime = Field(default_factory=utcnow)
    reason: Optional[str] = None
    metadata: dict = Field(default_factory=dict)


class ReceivingLine(BaseModel):
    model_config = ConfigDict(frozen=True)

    item_id: uuid.UUID
    product_id: str
    quantity_received: int = Field(..., gt=0)
    unit_cost_cents: int = 0
    condition: ItemCondition = ItemCondition.GOOD
    batch_number: Optional[str] = None
    expiry_date: Optional[date] = None
    serial_numbers: List[str] = Field(default_factory=list)
    notes: Optional[str] = None


class ReceivingRecord(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: uuid.UUID = Field(default_factory=uuid.uuid4)
    purchase_order_id: uuid.UUID
    received_by: str
    received_at: datetime = Field(default_factory=utcnow)
    lines: List[ReceivingLine] = Field(default_factory=list)
    notes: Optional[str] = None

    @computed_field
    @property
    def total_quantity(self) -> int:
        return sum(line.quantity_received for line in self.lines)

    @computed_field
    @property
    def total_value_cents(self) -> int:
        return sum(line.quantity_received * line.unit_cost_cents for line in self.lines)

    @computed_field
    @property
    def line_count(self) -> int:
        return len(self.lines)


class ApprovalRecord(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: uuid.UUID = Field(default_factory=uuid.uuid4)
    purchase_order_id: uuid.UUID
    approver_id: str
    approver_role: UserRole
    decision: ApprovalDecision
    timestamp: datetime = Field(default_factory=utcnow)
    amount_cents: int
    approval_level: int = 1
    notes: Optional[str] = None


# ---------------------------------------------------------------------------
# Request bodies. Quantities stay loosely typed so the validation engine can
# report every problem as a structured error instead of a parse failure.
# ---------------------------------------------------------------------------


class PurchaseOrderItemCreate(BaseModel):
    product_id: Optional[str] = None
    product_name: Optional[str] = None
    quantity: Any = None
    unit_cost_cents: int = 0


class PurchaseOrderCreate(BaseModel):
    supplier_id: Optional[str] = None
    supplier_name: Optional[str] = None
    items: List[PurchaseOrderItemCreate] = Field(default_factory=list)
    tax_cents: int = 0
    total_cents: Optional[int] = None
    order_date: Optional[date] = None
    expected_delivery_date: Optional[date] = None
    notes: Optional[str] = None


class PurchaseOrderUpdate(BaseModel):
    supplier_id: Optional[str] = None
    supplier_name: Optional[str] = None
    items: Optional[List[PurchaseOrderItemCreate]] = None
    tax_cents: Optional[int] = None
    total_cents: Optional[int] = None
    order_date: Optional[date] = None
    expected_delivery_date: Optional[date] = None
    notes: Optional[str] = None


class ReceiveItem(BaseModel):
    product_id: str
    quantity: Any = None
    condition: ItemCondition = ItemCondition.GOOD
    batch_number: Optional[str] = None
    expiry_date: Optional[date] = None
    serial_numbers: List[str] = Field(default_factory=list)
    notes: Optional[str] = None


class ReceiveRequest(BaseModel):
    items: Optional[List[ReceiveItem]] = None
    notes: Optional[str] = None


class ApproveRequest(BaseModel):
    notes: Optional[str] = None


class RejectRequest(BaseModel):
    reason: str = Field(..., min_length=1)


class CancelRequest(BaseModel):
    reason: Optional[str] = None


class TransitionRequest(BaseModel):
    reason: Optional[str] = None
