"""Closed enumerations shared by the engine, the schemas and the ORM layer."""

from enum import Enum
from typing import Union


class PurchaseOrderStatus(str, Enum):
    DRAFT = "draft"
    PENDING_APPROVAL = "pending_approval"
    APPROVED = "approved"
    SENT_TO_SUPPLIER = "sent_to_supplier"
    PARTIALLY_RECEIVED = "partially_received"
    FULLY_RECEIVED = "fully_received"
    CANCELLED = "cancelled"
    CLOSED = "closed"

    @classmethod
    def parse(cls, value: Union[str, "PurchaseOrderStatus"]) -> "PurchaseOrderStatus":
        """Map a stored status, including legacy spellings, onto the canonical value."""
        if isinstance(value, cls):
            return value
        if not isinstance(value, str):
            raise ValueError(f"Invalid purchase order status: {value!r}")
        key = value.strip().lower()
        key = LEGACY_STATUS_ALIASES.get(key, key)
        try:
            return cls(key)
        except ValueError:
            raise ValueError(f"Invalid purchase order status: {value!r}") from None


LEGACY_STATUS_ALIASES = {
    "pending": "pending_approval",
    "sent": "sent_to_supplier",
    "partial": "partially_received",
    "received": "fully_received",
}


class PurchaseOrderAction(str, Enum):
    CREATE = "create"
    VIEW = "view"
    EDIT = "edit"
    APPROVE = "approve"
    RECEIVE = "receive"
    CANCEL = "cancel"
    VIEW_HISTORY = "view_history"
    VIEW_AUDIT_TRAIL = "view_audit_trail"


class UserRole(str, Enum):
    ADMIN = "admin"
    MANAGER = "manager"
    PURCHASER = "purchaser"
    WAREHOUSE = "warehouse"
    ACCOUNTANT = "accountant"
    CASHIER = "cashier"
    EMPLOYEE = "employee"


class Severity(str, Enum):
    ERROR = "error"
    WARNING = "warning"
    INFO = "info"


class QualityStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class ItemCondition(str, Enum):
    GOOD = "good"
    DAMAGED = "damaged"
    EXPIRED = "expired"


class ApprovalDecision(str, Enum):
    APPROVED = "approved"
    REJECTED = "rejected"
    PENDING = "pending"


class StockDirection(str, Enum):
    ADD = "add"
    SUBTRACT = "subtract"


class MovementType(str, Enum):
    PURCHASE_RECEIPT = "purchase_receipt"
    SALE = "sale"
    CUSTOMER_RETURN = "customer_return"
    SUPPLIER_RETURN = "supplier_return"
    ADJUSTMENT_IN = "adjustment_in"
    ADJUSTMENT_OUT = "adjustment_out"
    DAMAGE = "damage"
    TRANSFER_IN = "transfer_in"
    TRANSFER_OUT = "transfer_out"


# Every movement type has exactly one direction.
MOVEMENT_DIRECTIONS: dict[MovementType, StockDirection] = {
    MovementType.PURCHASE_RECEIPT: StockDirection.ADD,
    MovementType.SALE: StockDirection.SUBTRACT,
    MovementType.CUSTOMER_RETURN: StockDirection.ADD,
    MovementType.SUPPLIER_RETURN: StockDirection.SUBTRACT,
    MovementType.ADJUSTMENT_IN: StockDirection.ADD,
    MovementType.ADJUSTMENT_OUT: StockDirection.SUBTRACT,
    MovementType.DAMAGE: StockDirection.SUBTRACT,
    MovementType.TRANSFER_IN: StockDirection.ADD,
    MovementType.TRANSFER_OUT: StockDirection.SUBTRACT,
}

assert set(MOVEMENT_DIRECTIONS) == set(MovementType), "unmapped movement type"


def direction_for(movement_type: MovementType) -> StockDirection:
    return MOVEMENT_DIRECTIONS[movement_type]
