from dataclasses import dataclass, field
from datetime import date
from enum import Enum
from typing import List, Optional, Union

from procurement.schemas.enums import PurchaseOrderStatus, Severity, UserRole
from procurement.schemas.purchase_order import PurchaseOrderItemCreate, ReceiveItem


class ValidationErrorCode(str, Enum):
    # Items / quantities
    NO_ITEMS = "NO_ITEMS"
    QUANTITY_ZERO = "QUANTITY_ZERO"
    QUANTITY_NEGATIVE = "QUANTITY_NEGATIVE"
    INVALID_QUANTITY = "INVALID_QUANTITY"
    QUANTITY_EXCEEDS_ORDERED = "QUANTITY_EXCEEDS_ORDERED"
    NO_QUANTITIES_SPECIFIED = "NO_QUANTITIES_SPECIFIED"
    LARGE_QUANTITY = "LARGE_QUANTITY"
    DUPLICATE_PRODUCTS = "DUPLICATE_PRODUCTS"
    PRODUCT_REQUIRED = "PRODUCT_REQUIRED"
    PRODUCT_NOT_IN_ORDER = "PRODUCT_NOT_IN_ORDER"
    INVALID_UNIT_COST = "INVALID_UNIT_COST"
    INVALID_TAX_AMOUNT = "INVALID_TAX_AMOUNT"
    TOTAL_MISMATCH = "TOTAL_MISMATCH"
    SUPPLIER_REQUIRED = "SUPPLIER_REQUIRED"
    INVALID_DELIVERY_DATE = "INVALID_DELIVERY_DATE"

    # Receiving quality
    DAMAGED_GOODS = "DAMAGED_GOODS"
    EXPIRED_PRODUCT = "EXPIRED_PRODUCT"
    NEAR_EXPIRY_PRODUCT = "NEAR_EXPIRY_PRODUCT"

    # Status
    INVALID_STATUS_TRANSITION = "INVALID_STATUS_TRANSITION"
    STATUS_ALREADY_SET = "STATUS_ALREADY_SET"
    CANNOT_RECEIVE_CANCELLED_ORDER = "CANNOT_RECEIVE_CANCELLED_ORDER"
    ALREADY_FULLY_RECEIVED = "ALREADY_FULLY_RECEIVED"
    CANNOT_APPROVE_IN_STATUS = "CANNOT_APPROVE_IN_STATUS"
    CANNOT_CANCEL_IN_STATUS = "CANNOT_CANCEL_IN_STATUS"
    ORDER_IMMUTABLE = "ORDER_IMMUTABLE"

    # Approval
    INSUFFICIENT_PERMISSIONS = "INSUFFICIENT_PERMISSIONS"
    APPROVAL_LIMIT_EXCEEDED = "APPROVAL_LIMIT_EXCEEDED"
    APPROACHING_APPROVAL_LIMIT = "APPROACHING_APPROVAL_LIMIT"
    SELF_APPROVAL_NOT_ALLOWED = "SELF_APPROVAL_NOT_ALLOWED"
    SELF_APPROVAL_WARNING = "SELF_APPROVAL_WARNING"


@dataclass(frozen=True)
class ValidationError:
    field: str
    message: str
    code: Union[ValidationErrorCode, str]
    severity: Severity = Severity.ERROR
    metadata: dict = field(default_factory=dict)

    def to_dict(self) -> dict:
        code = self.code.value if isinstance(self.code, Enum) else self.code
        return {
            "field": self.field,
            "message": self.message,
            "code": code,
            "severity": self.severity.value,
            "metadata": self.metadata,
        }


@dataclass
class ValidationResult:
    errors: List[ValidationError] = field(default_factory=list)
    warnings: List[ValidationError] = field(default_factory=list)

    @property
    def is_valid(self) -> bool:
        return not self.errors

    @property
    def can_proceed_with_warnings(self) -> bool:
        return self.is_valid and bool(self.warnings)

    @property
    def issues(self) -> List[ValidationError]:
        return [*self.errors, *self.warnings]

    def add(self, issue: ValidationError) -> None:
        if issue.severity == Severity.ERROR:
            self.errors.append(issue)
        else:
            self.warnings.append(issue)

    def extend(self, issues: List[ValidationError]) -> None:
        for issue in issues:
            self.add(issue)

    def merge(self, other: "ValidationResult") -> "ValidationResult":
        self.errors.extend(other.errors)
        self.warnings.extend(other.warnings)
        return self

    def codes(self) -> List[str]:
        return [
            i.code.value if isinstance(i.code, Enum) else i.code for i in self.issues
        ]


# ---------------------------------------------------------------------------
# Proposed changes: the closed set of mutations the engine validates.
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ItemSetChange:
    """The full content an order would have after a create or an edit."""

    items: List[PurchaseOrderItemCreate]
    supplier_id: Optional[str] = None
    tax_cents: int = 0
    declared_total_cents: Optional[int] = None
    order_date: Optional[date] = None
    expected_delivery_date: Optional[date] = None


@dataclass(frozen=True)
class ReceiveChange:
    """Per-product quantities for one goods-receipt event.

    `explicit` is False in auto mode, where the lines were derived from the
    order's pending quantities rather than supplied by the caller.
    """

    lines: List[ReceiveItem]
    explicit: bool = True


@dataclass(frozen=True)
class StatusChange:
    to_status: PurchaseOrderStatus


@dataclass(frozen=True)
class ApprovalChange:
    approver_id: str
    approver_role: UserRole
    amount_cents: int
    ceiling_cents: Optional[int] = None
    # Audited emergency override: role and ceiling rules are waived.
    emergency_override: bool = False


ProposedChange = Union[ItemSetChange, ReceiveChange, StatusChange, ApprovalChange]
