import uuid
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from procurement.schemas.enums import MovementType, StockDirection


class StockAdjustmentContext(BaseModel):
    model_config = ConfigDict(frozen=True)

    user_id: str
    purchase_order_id: Optional[uuid.UUID] = None
    reference_id: Optional[uuid.UUID] = None
    reason: Optional[str] = None


class StockAdjustment(BaseModel):
    """Instruction to change a product's stock; applied by the inventory collaborator."""

    model_config = ConfigDict(frozen=True)

    product_id: str
    quantity: int = Field(..., gt=0)
    direction: StockDirection = StockDirection.ADD
    movement_type: MovementType = MovementType.PURCHASE_RECEIPT
    context: StockAdjustmentContext

    @property
    def idempotency_key(self) -> str:
        reference = self.context.reference_id or self.context.purchase_order_id
        return f"{reference}:{self.product_id}"


class MovementLine(BaseModel):
    product_id: str
    quantity: int = Field(..., gt=0)


class StockLevel(BaseModel):
    product_id: str
    name: Optional[str] = None
    stock: int = 0


class StockMovementEntry(BaseModel):
    """One applied stock change, as kept in the movement ledger."""

    model_config = ConfigDict(frozen=True)

    product_id: str
    movement_type: MovementType
    direction: StockDirection
    quantity: int
    stock_after: int
    idempotency_key: Optional[str] = None
    context: StockAdjustmentContext
