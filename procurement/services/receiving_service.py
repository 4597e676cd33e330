# procurement/services/receiving_service.py
"""
Receiving reconciliation.

Turns one goods-receipt event into updated item quantities, the derived
order status, the immutable ReceivingRecord and the stock-adjustment
instructions for inventory. Pure computation: nothing here persists or
touches stock, and a request with any invalid line produces no updates.

Steps:
  1. Without explicit lines, receive every item's full pending quantity.
  2. Validate all lines together; reject the whole call on any error.
  3. Add each product's (summed) delta to its item's received quantity.
  4. Emit one "add" stock instruction per received product.
  5. Derive the next status; stamp received_date only when complete.
"""

import uuid
from collections import OrderedDict
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, List, Mapping, Optional, Sequence, Union

import structlog
from pydantic import ValidationError as PydanticValidationError

from procurement.schemas.context import CallerContext
from procurement.schemas.enums import MovementType, PurchaseOrderStatus, StockDirection
from procurement.schemas.inventory import StockAdjustment, StockAdjustmentContext
from procurement.schemas.purchase_order import (
    PurchaseOrder,
    PurchaseOrderItem,
    ReceiveItem,
    ReceivingLine,
    ReceivingRecord,
    utcnow,
)
from procurement.schemas.validation import (
    ReceiveChange,
    ValidationError,
    ValidationErrorCode,
    ValidationResult,
)
from procurement.services import status_graph
from procurement.services.validation_service import (
    PurchaseOrderValidator,
    normalize_quantity,
)

logger = structlog.get_logger()


@dataclass
class ReconciliationResult:
    success: bool
    order: PurchaseOrder
    updated_items: List[PurchaseOrderItem] = field(default_factory=list)
    new_status: Optional[PurchaseOrderStatus] = None
    # Intermediate statuses walked to reach new_status, each a graph edge
    status_path: List[PurchaseOrderStatus] = field(default_factory=list)
    stock_adjustments: List[StockAdjustment] = field(default_factory=list)
    receiving_record: Optional[ReceivingRecord] = None
    errors: List[ValidationError] = field(default_factory=list)
    warnings: List[ValidationError] = field(default_factory=list)

    @property
    def error(self) -> Optional[ValidationError]:
        return self.errors[0] if self.errors else None


ReceivedItemInput = Union[ReceiveItem, Mapping[str, Any]]


class ReceivingService:
    def __init__(self, validator: Optional[PurchaseOrderValidator] = None):
        self.validator = validator or PurchaseOrderValidator()

    def reconcile(
        self,
        order: PurchaseOrder,
        received_items: Optional[Sequence[ReceivedItemInput]] = None,
        context: Optional[CallerContext] = None,
        notes: Optional[str] = None,
        received_at: Optional[datetime] = None,
    ) -> ReconciliationResult:
        """Compute the effect of one receipt against `order`.

        `received_items` omitted means auto mode (full close-out). Returns a
        ReconciliationResult; on failure `order` is the unchanged input and
        there are no stock adjustments.
        """
        explicit = received_items is not None
        lines, parse_errors = self._coerce_lines(order, received_items)

        validation = self.validator.validate(order, ReceiveChange(lines=lines, explicit=explicit))
        validation.extend(parse_errors)
        if not validation.is_valid:
            return self._rejected(order, validation)

        received_by = context.user_id if context else "system"
        received_at = received_at or utcnow()
        record_id = uuid.uuid4()

        deltas: "OrderedDict[str, int]" = OrderedDict()
        lines_by_product: dict[str, List[ReceiveItem]] = {}
        for line in lines:
            quantity, _ = normalize_quantity(line.quantity)
            deltas[line.product_id] = deltas.get(line.product_id, 0) + quantity
            lines_by_product.setdefault(line.product_id, []).append(line)

        updated_items: List[PurchaseOrderItem] = []
        receiving_lines: List[ReceivingLine] = []
        for item in order.items:
            delta = deltas.get(item.product_id)
            if not delta:
                updated_items.append(item)
                continue
            product_lines = lines_by_product[item.product_id]
            updated_items.append(self._apply_delta(item, delta, product_lines))
            for line in product_lines:
                receiving_lines.append(ReceivingLine(
                    item_id=item.id,
                    product_id=item.product_id,
                    quantity_received=normalize_quantity(line.quantity)[0],
                    unit_cost_cents=item.unit_cost_cents,
                    condition=line.condition,
                    batch_number=line.batch_number,
                    expiry_date=line.expiry_date,
                    serial_numbers=list(line.serial_numbers),
                    notes=line.notes,
                ))

        candidate = order.with_changes(items=[i.model_dump() for i in updated_items])
        new_status = status_graph.next_logical_status(candidate) or order.status
        path = status_graph.path_to(order.status, new_status) or []

        changes: dict[str, Any] = {"status": new_status}
        if new_status == PurchaseOrderStatus.FULLY_RECEIVED:
            changes["received_date"] = received_at
        updated_order = candidate.with_changes(**changes)

        record = ReceivingRecord(
            id=record_id,
            purchase_order_id=order.id,
            received_by=received_by,
            received_at=received_at,
            lines=receiving_lines,
            notes=notes,
        )

        adjustment_context = StockAdjustmentContext(
            user_id=received_by,
            purchase_order_id=order.id,
            reference_id=record_id,
            reason=notes or f"Received against {order.po_number}",
        )
        adjustments = [
            StockAdjustment(
                product_id=product_id,
                quantity=quantity,
                direction=StockDirection.ADD,
                movement_type=MovementType.PURCHASE_RECEIPT,
                context=adjustment_context,
            )
            for product_id, quantity in deltas.items()
        ]

        logger.info(
            "receipt_reconciled",
            po_id=str(order.id),
            from_status=order.status.value,
            to_status=new_status.value,
            lines=len(receiving_lines),
            units=record.total_quantity,
            auto=not explicit,
        )

        return ReconciliationResult(
            success=True,
            order=updated_order,
            updated_items=list(updated_order.items),
            new_status=new_status,
            status_path=path,
            stock_adjustments=adjustments,
            receiving_record=record,
            warnings=list(validation.warnings),
        )

    # ------------------------------------------------------------------

    @staticmethod
    def _coerce_lines(
        order: PurchaseOrder, received_items: Optional[Sequence[ReceivedItemInput]]
    ) -> tuple[List[ReceiveItem], List[ValidationError]]:
        if received_items is None:
            return [
                ReceiveItem(product_id=item.product_id, quantity=item.pending_quantity)
                for item in order.items
                if item.pending_quantity > 0
            ], []

        lines: List[ReceiveItem] = []
        errors: List[ValidationError] = []
        for index, raw in enumerate(received_items):
            if isinstance(raw, ReceiveItem):
                lines.append(raw)
                continue
            try:
                lines.append(ReceiveItem.model_validate(raw))
            except PydanticValidationError as exc:
                errors.append(ValidationError(
                    field=f"items[{index}]",
                    message=f"Malformed receiving line: {exc.errors()[0]['msg']}",
                    code=ValidationErrorCode.PRODUCT_REQUIRED,
                ))
        return lines, errors

    @staticmethod
    def _apply_delta(
        item: PurchaseOrderItem, delta: int, lines: List[ReceiveItem]
    ) -> PurchaseOrderItem:
        batch_number = item.batch_number
        expiry_date = item.expiry_date
        serials = list(item.serial_numbers)
        for line in lines:
            batch_number = line.batch_number or batch_number
            expiry_date = line.expiry_date or expiry_date
            serials.extend(s for s in line.serial_numbers if s not in serials)
        return item.with_changes(
            received_quantity=item.received_quantity + delta,
            batch_number=batch_number,
            expiry_date=expiry_date,
            serial_numbers=serials,
        )

    @staticmethod
    def _rejected(order: PurchaseOrder, validation: ValidationResult) -> ReconciliationResult:
        logger.info(
            "receipt_rejected",
            po_id=str(order.id),
            status=order.status.value,
            codes=validation.codes(),
        )
        return ReconciliationResult(
            success=False,
            order=order,
            updated_items=list(order.items),
            new_status=order.status,
            errors=list(validation.errors),
            warnings=list(validation.warnings),
        )


receiving_service = ReceivingService()
