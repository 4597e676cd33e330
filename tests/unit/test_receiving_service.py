"""
Unit tests for procurement/services/receiving_service.py

Tests: auto mode, partial and full receipts, duplicate lines, batch/expiry
merging, stock instructions, all-or-nothing rejection, malformed lines.
"""

import uuid
from datetime import date, datetime, timezone

from procurement.config import Settings
from procurement.schemas.enums import MovementType, PurchaseOrderStatus as S, StockDirection
from procurement.schemas.purchase_order import PurchaseOrder, PurchaseOrderItem
from procurement.services.receiving_service import ReceivingService
from procurement.services.validation_service import PurchaseOrderValidator

TODAY = date(2026, 3, 2)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _make_service() -> ReceivingService:
    return ReceivingService(PurchaseOrderValidator(Settings(), today=lambda: TODAY))


def _make_order(status=S.SENT_TO_SUPPLIER, received=(0, 0)):
    return PurchaseOrder(
        po_number="PO-000042",
        supplier_id="SUP-1",
        created_by="purchaser-1",
        status=status,
        items=[
            PurchaseOrderItem(product_id="SKU-A", quantity=10, unit_cost_cents=500, received_quantity=received[0]),
            PurchaseOrderItem(product_id="SKU-B", quantity=5, unit_cost_cents=200, received_quantity=received[1]),
        ],
    )


# ---------------------------------------------------------------------------
# Success paths
# ---------------------------------------------------------------------------


def test_auto_mode_receives_everything_pending(make_caller):
    order = _make_order(received=(4, 0))
    result = _make_service().reconcile(order, context=make_caller("warehouse"))

    assert result.success
    assert result.new_status == S.FULLY_RECEIVED
    assert [i.received_quantity for i in result.updated_items] == [10, 5]
    assert {(a.product_id, a.quantity) for a in result.stock_adjustments} == {("SKU-A", 6), ("SKU-B", 5)}
    assert result.order.received_date is not None


def test_partial_receipt_moves_to_partially_received(make_caller):
    order = _make_order()
    result = _make_service().reconcile(
        order, [{"product_id": "SKU-A", "quantity": 3}], context=make_caller("warehouse")
    )

    assert result.success
    assert result.new_status == S.PARTIALLY_RECEIVED
    assert result.status_path == [S.PARTIALLY_RECEIVED]
    assert result.order.items[0].received_quantity == 3
    assert result.order.items[1].received_quantity == 0
    assert result.order.received_date is None


def test_full_receipt_from_approved_walks_every_edge():
    order = _make_order(status=S.APPROVED)
    result = _make_service().reconcile(order)

    assert result.status_path == [S.PARTIALLY_RECEIVED, S.FULLY_RECEIVED]


def test_receipt_record_and_stock_instructions(make_caller):
    order = _make_order()
    received_at = datetime(2026, 3, 2, 9, 30, tzinfo=timezone.utc)
    result = _make_service().reconcile(
        order,
        [
            {"product_id": "SKU-A", "quantity": 2, "batch_number": "B-1"},
            {"product_id": "SKU-A", "quantity": "3", "batch_number": "B-2"},
        ],
        context=make_caller("warehouse", user_id="wh-7"),
        notes="dock 4",
        received_at=received_at,
    )

    record = result.receiving_record
    assert record.received_by == "wh-7"
    assert record.received_at == received_at
    assert record.line_count == 2
    assert record.total_quantity == 5
    assert record.total_value_cents == 2_500

    (adjustment,) = result.stock_adjustments
    assert adjustment.product_id == "SKU-A"
    assert adjustment.quantity == 5
    assert adjustment.direction == StockDirection.ADD
    assert adjustment.movement_type == MovementType.PURCHASE_RECEIPT
    assert adjustment.context.reference_id == record.id
    assert adjustment.idempotency_key == f"{record.id}:SKU-A"
    assert adjustment.context.reason == "dock 4"


def test_batch_expiry_and_serials_merge_onto_item():
    order = _make_order()
    result = _make_service().reconcile(order, [
        {"product_id": "SKU-A", "quantity": 1, "serial_numbers": ["S1"], "expiry_date": "2027-01-01"},
        {"product_id": "SKU-A", "quantity": 1, "serial_numbers": ["S1", "S2"], "batch_number": "LOT-9"},
    ])
    item = result.order.items[0]
    assert item.received_quantity == 2
    assert item.serial_numbers == ["S1", "S2"]
    assert item.batch_number == "LOT-9"
    assert item.expiry_date == date(2027, 1, 1)


def test_items_keep_their_ids():
    order = _make_order()
    result = _make_service().reconcile(order, [{"product_id": "SKU-B", "quantity": 1}])
    assert [i.id for i in result.order.items] == [i.id for i in order.items]
    assert result.receiving_record.lines[0].item_id == order.items[1].id


# ---------------------------------------------------------------------------
# Rejections
# ---------------------------------------------------------------------------


def test_one_bad_line_rejects_the_whole_receipt():
    order = _make_order()
    result = _make_service().reconcile(order, [
        {"product_id": "SKU-A", "quantity": 3},
        {"product_id": "SKU-B", "quantity": 6},
    ])

    assert not result.success
    assert result.error.code.value == "QUANTITY_EXCEEDS_ORDERED"
    assert result.order is order
    assert result.stock_adjustments == []
    assert result.receiving_record is None


def test_malformed_line_reported_as_product_required():
    result = _make_service().reconcile(_make_order(), [{"quantity": 1}])
    assert not result.success
    (malformed,) = [e for e in result.errors if e.field == "items[0]"]
    assert malformed.code.value == "PRODUCT_REQUIRED"


def test_cancelled_order_cannot_be_received():
    result = _make_service().reconcile(_make_order(status=S.CANCELLED))
    assert not result.success
    assert result.error.code.value == "CANNOT_RECEIVE_CANCELLED_ORDER"


def test_auto_mode_on_fully_received_order_fails():
    result = _make_service().reconcile(_make_order(status=S.FULLY_RECEIVED, received=(10, 5)))
    assert not result.success
    assert result.error.code.value == "ALREADY_FULLY_RECEIVED"


def test_warnings_do_not_block_receipt():
    order = _make_order()
    result = _make_service().reconcile(
        order, [{"product_id": "SKU-A", "quantity": 1, "condition": "damaged"}]
    )
    assert result.success
    assert result.warnings[0].code.value == "DAMAGED_GOODS"
    assert result.receiving_record.lines[0].condition.value == "damaged"


def test_adjustment_context_without_caller():
    order = _make_order()
    result = _make_service().reconcile(order, [{"product_id": "SKU-A", "quantity": 1}])
    assert result.stock_adjustments[0].context.purchase_order_id == order.id
    assert result.stock_adjustments[0].context.user_id == "system"
    assert isinstance(result.receiving_record.id, uuid.UUID)
