# procurement/services/validation_service.py
"""
Validation engine for proposed purchase order mutations.

Every rule produces an independent ValidationError; nothing short-circuits,
so a caller always sees the complete list of problems for a request.
Warnings never make a result invalid.

Rules by change type:
  ItemSetChange   supplier, items, quantities, unit costs, totals, dates
  ReceiveChange   order status, product membership, maximum receivable,
                  expiry and condition of the goods
  StatusChange    graph edge, no-op moves, cancellation, empty submission
  ApprovalChange  approvable status, role ceiling, self-approval
"""

from collections import OrderedDict
from datetime import date, timedelta
from decimal import Decimal, InvalidOperation
from numbers import Number
from typing import Any, Callable, Optional, Tuple

import structlog

from procurement.config import Settings, settings as default_settings
from procurement.schemas.enums import ItemCondition, PurchaseOrderStatus, Severity, UserRole
from procurement.schemas.purchase_order import PurchaseOrder, ReceiveItem
from procurement.schemas.validation import (
    ApprovalChange,
    ItemSetChange,
    ProposedChange,
    ReceiveChange,
    StatusChange,
    ValidationError,
    ValidationErrorCode as Code,
    ValidationResult,
)
from procurement.services import status_graph
from procurement.services.policy_table import PolicyTable, policy_table as default_policy

logger = structlog.get_logger()

IMMUTABLE_ITEM_STATUSES = frozenset(
    s for s in PurchaseOrderStatus
    if s not in (PurchaseOrderStatus.DRAFT, PurchaseOrderStatus.PENDING_APPROVAL)
)


def normalize_quantity(value: Any) -> Tuple[Optional[int], Optional[Code]]:
    """Coerce a raw quantity to a whole number of units.

    Returns (quantity, None) on success or (None, code) when the value is not
    a usable quantity. Integral floats and numeric strings are accepted;
    booleans and fractional values are not.
    """
    if value is None or isinstance(value, bool):
        return None, Code.INVALID_QUANTITY
    if isinstance(value, str):
        try:
            value = Decimal(value.strip())
        except InvalidOperation:
            return None, Code.INVALID_QUANTITY
    if not isinstance(value, Number):
        return None, Code.INVALID_QUANTITY
    try:
        as_decimal = Decimal(str(value))
    except InvalidOperation:
        return None, Code.INVALID_QUANTITY
    if not as_decimal.is_finite() or as_decimal != as_decimal.to_integral_value():
        return None, Code.INVALID_QUANTITY
    quantity = int(as_decimal)
    if quantity < 0:
        return quantity, Code.QUANTITY_NEGATIVE
    if quantity == 0:
        return quantity, Code.QUANTITY_ZERO
    return quantity, None


_QUANTITY_MESSAGES = {
    Code.INVALID_QUANTITY: "Quantity must be a whole number",
    Code.QUANTITY_NEGATIVE: "Quantity cannot be negative",
    Code.QUANTITY_ZERO: "Quantity must be greater than zero",
}


class PurchaseOrderValidator:
    def __init__(
        self,
        settings: Optional[Settings] = None,
        policy: Optional[PolicyTable] = None,
        today: Optional[Callable[[], date]] = None,
    ):
        self.settings = settings or default_settings
        self.policy = policy or default_policy
        self._today = today or date.today

    def today(self) -> date:
        return self._today()

    def validate(
        self, order: Optional[PurchaseOrder], change: ProposedChange
    ) -> ValidationResult:
        if isinstance(change, ItemSetChange):
            result = self.validate_item_set(order, change)
        elif isinstance(change, ReceiveChange):
            result = self.validate_receiving(order, change)
        elif isinstance(change, StatusChange):
            result = self.validate_status_change(order, change)
        elif isinstance(change, ApprovalChange):
            result = self.validate_approval(order, change)
        else:
            raise TypeError(f"Unsupported change type: {type(change).__name__}")

        if not result.is_valid:
            logger.info(
                "validation_failed",
                change=type(change).__name__,
                po_id=str(order.id) if order else None,
                codes=result.codes(),
            )
        return result

    # ------------------------------------------------------------------
    # Item set (create / edit)
    # ------------------------------------------------------------------

    def validate_item_set(
        self, order: Optional[PurchaseOrder], change: ItemSetChange
    ) -> ValidationResult:
        result = ValidationResult()

        if order is not None and order.status in IMMUTABLE_ITEM_STATUSES:
            result.add(ValidationError(
                field="status",
                message=f"Purchase order cannot be edited in status {order.status.value}",
                code=Code.ORDER_IMMUTABLE,
                metadata={"status": order.status.value},
            ))

        if not change.supplier_id:
            result.add(ValidationError(
                field="supplier_id",
                message="Supplier is required",
                code=Code.SUPPLIER_REQUIRED,
            ))

        if not change.items:
            result.add(ValidationError(
                field="items",
                message="Purchase order must contain at least one item",
                code=Code.NO_ITEMS,
            ))

        computed_subtotal = 0
        seen: set[str] = set()
        duplicates: list[str] = []
        for index, item in enumerate(change.items):
            prefix = f"items[{index}]"
            if not item.product_id:
                result.add(ValidationError(
                    field=f"{prefix}.product_id",
                    message="Product is required",
                    code=Code.PRODUCT_REQUIRED,
                ))
            elif item.product_id in seen:
                duplicates.append(item.product_id)
            else:
                seen.add(item.product_id)

            quantity, code = normalize_quantity(item.quantity)
            if code is not None:
                result.add(ValidationError(
                    field=f"{prefix}.quantity",
                    message=_QUANTITY_MESSAGES[code],
                    code=code,
                    metadata={"value": repr(item.quantity)},
                ))
            elif quantity > self.settings.LARGE_QUANTITY_THRESHOLD:
                result.add(ValidationError(
                    field=f"{prefix}.quantity",
                    message=f"Unusually large quantity ({quantity}); please confirm",
                    code=Code.LARGE_QUANTITY,
                    severity=Severity.WARNING,
                    metadata={
                        "quantity": quantity,
                        "threshold": self.settings.LARGE_QUANTITY_THRESHOLD,
                    },
                ))

            if item.unit_cost_cents < 0:
                result.add(ValidationError(
                    field=f"{prefix}.unit_cost_cents",
                    message="Unit cost cannot be negative",
                    code=Code.INVALID_UNIT_COST,
                    metadata={"unit_cost_cents": item.unit_cost_cents},
                ))

            if quantity and quantity > 0:
                computed_subtotal += quantity * item.unit_cost_cents

        if duplicates:
            result.add(ValidationError(
                field="items",
                message="Each product may appear only once per order",
                code=Code.DUPLICATE_PRODUCTS,
                metadata={"product_ids": sorted(set(duplicates))},
            ))

        if change.tax_cents < 0:
            result.add(ValidationError(
                field="tax_cents",
                message="Tax cannot be negative",
                code=Code.INVALID_TAX_AMOUNT,
                metadata={"tax_cents": change.tax_cents},
            ))

        computed_total = computed_subtotal + change.tax_cents
        if (
            change.declared_total_cents is not None
            and change.declared_total_cents != computed_total
        ):
            result.add(ValidationError(
                field="total_cents",
                message="Declared total does not match item totals plus tax",
                code=Code.TOTAL_MISMATCH,
                metadata={
                    "declared_total_cents": change.declared_total_cents,
                    "computed_total_cents": computed_total,
                },
            ))

        order_date = change.order_date or self._today()
        if change.expected_delivery_date and change.expected_delivery_date < order_date:
            result.add(ValidationError(
                field="expected_delivery_date",
                message="Expected delivery date cannot be before the order date",
                code=Code.INVALID_DELIVERY_DATE,
                metadata={
                    "order_date": order_date.isoformat(),
                    "expected_delivery_date": change.expected_delivery_date.isoformat(),
                },
            ))

        return result

    # ------------------------------------------------------------------
    # Receiving
    # ------------------------------------------------------------------

    def validate_receiving(
        self, order: PurchaseOrder, change: ReceiveChange
    ) -> ValidationResult:
        result = ValidationResult()

        if change.explicit and not change.lines:
            result.add(ValidationError(
                field="items",
                message="No quantities specified for receiving",
                code=Code.NO_QUANTITIES_SPECIFIED,
            ))

        requested: "OrderedDict[str, int]" = OrderedDict()
        for index, line in enumerate(change.lines):
            prefix = f"items[{index}]"
            item = order.item_for_product(line.product_id)
            if item is None:
                result.add(ValidationError(
                    field=f"{prefix}.product_id",
                    message=f"Product {line.product_id} is not on this purchase order",
                    code=Code.PRODUCT_NOT_IN_ORDER,
                    metadata={"product_id": line.product_id},
                ))

            quantity, code = normalize_quantity(line.quantity)
            if code is not None:
                result.add(ValidationError(
                    field=f"{prefix}.quantity",
                    message=_QUANTITY_MESSAGES[code],
                    code=code,
                    metadata={"product_id": line.product_id, "value": repr(line.quantity)},
                ))
            elif item is not None:
                requested[line.product_id] = requested.get(line.product_id, 0) + quantity

            result.extend(self._check_goods(prefix, line))

        # Duplicate lines for one product are checked against pending as a sum.
        for product_id, quantity in requested.items():
            item = order.item_for_product(product_id)
            if quantity > item.pending_quantity:
                result.add(ValidationError(
                    field="items",
                    message=(
                        f"Cannot receive {quantity} of {item.product_name or product_id}: "
                        f"ordered {item.quantity}, already received "
                        f"{item.received_quantity}, maximum receivable "
                        f"{item.pending_quantity}"
                    ),
                    code=Code.QUANTITY_EXCEEDS_ORDERED,
                    metadata={
                        "product_id": product_id,
                        "ordered": item.quantity,
                        "previously_received": item.received_quantity,
                        "requested": quantity,
                        "max_receivable": item.pending_quantity,
                    },
                ))

        # After the line checks: a lost last-unit race reports the quantity
        # conflict first.
        result.extend(self._check_receivable_status(order))
        return result

    def _check_receivable_status(self, order: PurchaseOrder) -> list[ValidationError]:
        status = order.status
        if status in (PurchaseOrderStatus.CANCELLED, PurchaseOrderStatus.CLOSED):
            return [ValidationError(
                field="status",
                message=f"Cannot receive against a {status.value} purchase order",
                code=Code.CANNOT_RECEIVE_CANCELLED_ORDER,
                metadata={"status": status.value},
            )]
        if status == PurchaseOrderStatus.FULLY_RECEIVED:
            return [ValidationError(
                field="status",
                message="Purchase order is already fully received",
                code=Code.ALREADY_FULLY_RECEIVED,
                metadata={"status": status.value},
            )]
        if status not in status_graph.RECEIVABLE_STATUSES:
            return [ValidationError(
                field="status",
                message=f"Purchase order must be approved before receiving (current: {status.value})",
                code=Code.INVALID_STATUS_TRANSITION,
                metadata={"status": status.value},
            )]
        return []

    def _check_goods(self, prefix: str, line: ReceiveItem) -> list[ValidationError]:
        issues: list[ValidationError] = []
        today = self._today()

        if line.condition == ItemCondition.EXPIRED or (
            line.expiry_date is not None and line.expiry_date <= today
        ):
            issues.append(ValidationError(
                field=f"{prefix}.expiry_date",
                message=f"Product {line.product_id} is already expired",
                code=Code.EXPIRED_PRODUCT,
                metadata={
                    "product_id": line.product_id,
                    "expiry_date": line.expiry_date.isoformat() if line.expiry_date else None,
                },
            ))
        elif line.expiry_date is not None and line.expiry_date <= today + timedelta(
            days=self.settings.NEAR_EXPIRY_DAYS
        ):
            issues.append(ValidationError(
                field=f"{prefix}.expiry_date",
                message=(
                    f"Product {line.product_id} expires within "
                    f"{self.settings.NEAR_EXPIRY_DAYS} days"
                ),
                code=Code.NEAR_EXPIRY_PRODUCT,
                severity=Severity.WARNING,
                metadata={
                    "product_id": line.product_id,
                    "expiry_date": line.expiry_date.isoformat(),
                },
            ))

        if line.condition == ItemCondition.DAMAGED:
            issues.append(ValidationError(
                field=f"{prefix}.condition",
                message=f"Damaged goods received for {line.product_id}",
                code=Code.DAMAGED_GOODS,
                severity=Severity.WARNING,
                metadata={"product_id": line.product_id},
            ))
        return issues

    # ------------------------------------------------------------------
    # Status changes
    # ------------------------------------------------------------------

    def validate_status_change(
        self, order: PurchaseOrder, change: StatusChange
    ) -> ValidationResult:
        result = ValidationResult()
        current, target = order.status, PurchaseOrderStatus.parse(change.to_status)
        meta = {"from_status": current.value, "to_status": target.value}

        if current == target:
            result.add(ValidationError(
                field="status",
                message=f"Purchase order is already {current.value}",
                code=Code.STATUS_ALREADY_SET,
                metadata=meta,
            ))
        elif not status_graph.is_valid_transition(current, target):
            if target == PurchaseOrderStatus.CANCELLED:
                result.add(ValidationError(
                    field="status",
                    message=f"Purchase order cannot be cancelled in status {current.value}",
                    code=Code.CANNOT_CANCEL_IN_STATUS,
                    metadata=meta,
                ))
            else:
                result.add(ValidationError(
                    field="status",
                    message=f"Cannot move purchase order from {current.value} to {target.value}",
                    code=Code.INVALID_STATUS_TRANSITION,
                    metadata={
                        **meta,
                        "valid_transitions": sorted(
                            s.value for s in status_graph.valid_transitions(current)
                        ),
                    },
                ))

        if target == PurchaseOrderStatus.PENDING_APPROVAL and not order.items:
            result.add(ValidationError(
                field="items",
                message="Cannot submit a purchase order without items",
                code=Code.NO_ITEMS,
            ))
        return result

    # ------------------------------------------------------------------
    # Approval
    # ------------------------------------------------------------------

    def validate_approval(
        self, order: PurchaseOrder, change: ApprovalChange
    ) -> ValidationResult:
        result = ValidationResult()
        role = UserRole(change.approver_role)

        if order.status not in status_graph.APPROVABLE_STATUSES:
            result.add(ValidationError(
                field="status",
                message=f"Purchase order cannot be approved in status {order.status.value}",
                code=Code.CANNOT_APPROVE_IN_STATUS,
                metadata={"status": order.status.value},
            ))

        if not change.emergency_override and not self.policy.role_allows(role, "approve"):
            result.add(ValidationError(
                field="role",
                message=f"Role {role.value} cannot approve purchase orders",
                code=Code.INSUFFICIENT_PERMISSIONS,
                metadata={"role": role.value},
            ))

        if order.created_by == change.approver_id:
            if role == UserRole.ADMIN:
                result.add(ValidationError(
                    field="approver_id",
                    message="Approving your own purchase order (admin override)",
                    code=Code.SELF_APPROVAL_WARNING,
                    severity=Severity.WARNING,
                ))
            else:
                result.add(ValidationError(
                    field="approver_id",
                    message="Cannot approve your own purchase order",
                    code=Code.SELF_APPROVAL_NOT_ALLOWED,
                ))

        if not change.emergency_override:
            result.extend(self._check_amount(role, change))
        return result

    def _check_amount(self, role: UserRole, change: ApprovalChange) -> list[ValidationError]:
        ceiling = change.ceiling_cents
        if ceiling is None:
            ceiling = self.policy.approval_ceiling(role)
        if not ceiling:
            return []

        meta = {
            "amount_cents": change.amount_cents,
            "ceiling_cents": ceiling,
            "role": role.value,
        }
        if change.amount_cents > ceiling:
            return [ValidationError(
                field="total_cents",
                message=(
                    f"Order total {change.amount_cents} exceeds the approval limit "
                    f"{ceiling} for {role.value}"
                ),
                code=Code.APPROVAL_LIMIT_EXCEEDED,
                metadata=meta,
            )]
        if change.amount_cents > ceiling * self.settings.APPROVAL_WARNING_RATIO:
            return [ValidationError(
                field="total_cents",
                message=(
                    f"Order total {change.amount_cents} is approaching the approval "
                    f"limit {ceiling}"
                ),
                code=Code.APPROACHING_APPROVAL_LIMIT,
                severity=Severity.WARNING,
                metadata=meta,
            )]
        return []
