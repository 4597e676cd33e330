"""
Integration tests for the SQLAlchemy backend (aiosqlite file database).

Tests: the full lifecycle through PurchaseOrderService over the SQL
repository, inventory and audit recorder; optimistic versioning; line
syncing on edit; stock instruction bookkeeping; legacy row folding.
"""

import uuid
from datetime import datetime, timezone

import pytest
from sqlalchemy import select, update

from procurement.errors import ConcurrencyConflictError, OrderNotFoundError
from procurement.models.product import StockMovement
from procurement.models.purchase_order import PurchaseOrder as PurchaseOrderRow
from procurement.models.receipt import StockInstruction
from procurement.repositories.sql import _order_to_domain
from procurement.schemas.enums import PurchaseOrderStatus as S
from procurement.schemas.purchase_order import (
    PurchaseOrderCreate,
    PurchaseOrderItemCreate,
    PurchaseOrderUpdate,
)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _create_request(items=(("SKU-A", 10, 500), ("SKU-B", 4, 250))) -> PurchaseOrderCreate:
    return PurchaseOrderCreate(
        supplier_id="SUP-1",
        supplier_name="Acme Supplies",
        items=[
            PurchaseOrderItemCreate(product_id=pid, quantity=qty, unit_cost_cents=cost)
            for pid, qty, cost in items
        ],
        tax_cents=100,
    )


async def _sent_order(service, make_caller):
    created = await service.create_purchase_order(make_caller("purchaser"), _create_request())
    assert created.success, created.error_codes
    order_id = created.order.id
    for step in (
        service.submit_for_approval(make_caller("purchaser"), order_id),
        service.approve(make_caller("manager"), order_id),
        service.send_to_supplier(make_caller("purchaser"), order_id),
    ):
        result = await step
        assert result.success, result.error_codes
    return result.order


# ---------------------------------------------------------------------------
# Lifecycle
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_create_persists_header_and_lines(sql_service, make_caller):
    result = await sql_service.create_purchase_order(make_caller("purchaser"), _create_request())
    assert result.success

    loaded = await sql_service.repository.load_order(result.order.id)
    assert loaded.po_number == "PO-000001"
    assert loaded.status == S.DRAFT
    assert loaded.supplier_name == "Acme Supplies"
    assert [(i.product_id, i.quantity) for i in loaded.items] == [("SKU-A", 10), ("SKU-B", 4)]
    assert loaded.subtotal_cents == 6_000
    assert loaded.total_cents == 6_100
    assert loaded.created_at.tzinfo is not None


@pytest.mark.asyncio
async def test_po_numbers_are_sequential(sql_service, make_caller):
    first = await sql_service.create_purchase_order(make_caller("purchaser"), _create_request())
    second = await sql_service.create_purchase_order(make_caller("purchaser"), _create_request())
    assert [first.order.po_number, second.order.po_number] == ["PO-000001", "PO-000002"]


@pytest.mark.asyncio
async def test_full_receipt_lifecycle(sql_service, make_caller):
    order = await _sent_order(sql_service, make_caller)
    warehouse = make_caller("warehouse")

    partial = await sql_service.receive(warehouse, order.id, [{"product_id": "SKU-A", "quantity": 4}])
    assert partial.success, partial.error_codes
    assert partial.order.status == S.PARTIALLY_RECEIVED

    rest = await sql_service.receive(warehouse, order.id)
    assert rest.success, rest.error_codes
    assert rest.order.status == S.FULLY_RECEIVED

    loaded = await sql_service.repository.load_order(order.id)
    assert loaded.status == S.FULLY_RECEIVED
    assert [i.received_quantity for i in loaded.items] == [10, 4]
    assert loaded.received_date is not None
    assert loaded.version == rest.order.version

    assert await sql_service.inventory.get_stock("SKU-A") == 10
    assert await sql_service.inventory.get_stock("SKU-B") == 4


@pytest.mark.asyncio
async def test_history_is_read_back_from_tables(sql_service, make_caller):
    order = await _sent_order(sql_service, make_caller)
    await sql_service.receive(make_caller("warehouse"), order.id)

    result = await sql_service.get_history(make_caller("admin"), order.id)
    assert result.success
    history = result.history

    # Receiving everything at once is a single sent_to_supplier -> fully_received edge.
    assert [t.to_status for t in history.transitions] == [
        S.PENDING_APPROVAL, S.APPROVED, S.SENT_TO_SUPPLIER, S.FULLY_RECEIVED,
    ]
    assert history.transitions[-1].from_status == S.SENT_TO_SUPPLIER

    (approval,) = history.approval_records
    assert approval.approver_id == "manager-1"
    assert approval.amount_cents == order.total_cents

    (record,) = history.receiving_records
    assert record.total_quantity == 14
    assert {line.product_id for line in record.lines} == {"SKU-A", "SKU-B"}

    actions = {e.action for e in history.audit_events}
    assert {"po_created", "po_received", "permission_check:receive"} <= actions


@pytest.mark.asyncio
async def test_denied_attempt_is_audited(sql_service, make_caller):
    created = await sql_service.create_purchase_order(make_caller("purchaser"), _create_request())

    result = await sql_service.approve(make_caller("warehouse"), created.order.id)
    assert not result.success
    assert result.denied

    events = await sql_service.audit.list_events(str(created.order.id))
    denied = [e for e in events if e.decision == "denied"]
    assert [e.action for e in denied] == ["permission_check:approve"]
    assert denied[0].actor_id == "warehouse-1"


# ---------------------------------------------------------------------------
# Repository behaviour
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_stale_version_is_rejected(sql_service, make_caller):
    created = await sql_service.create_purchase_order(make_caller("purchaser"), _create_request())
    repository = sql_service.repository
    order = await repository.load_order(created.order.id)

    saved = await repository.save_order(order.with_changes(notes="first writer"))
    assert saved.version == order.version + 1

    with pytest.raises(ConcurrencyConflictError) as exc_info:
        await repository.save_order(order.with_changes(notes="second writer"))
    assert exc_info.value.retryable
    assert exc_info.value.metadata["expected_version"] == order.version
    assert exc_info.value.metadata["actual_version"] == order.version + 1

    assert (await repository.load_order(order.id)).notes == "first writer"


@pytest.mark.asyncio
async def test_missing_order(sql_service):
    with pytest.raises(OrderNotFoundError):
        await sql_service.repository.load_order(uuid.uuid4())


@pytest.mark.asyncio
async def test_edit_replaces_line_items(sql_service, make_caller):
    purchaser = make_caller("purchaser")
    created = await sql_service.create_purchase_order(purchaser, _create_request())

    result = await sql_service.update_purchase_order(
        purchaser,
        created.order.id,
        PurchaseOrderUpdate(items=[
            PurchaseOrderItemCreate(product_id="SKU-A", quantity=4, unit_cost_cents=500),
            PurchaseOrderItemCreate(product_id="SKU-C", quantity=1, unit_cost_cents=100),
        ]),
    )
    assert result.success, result.error_codes

    loaded = await sql_service.repository.load_order(created.order.id)
    assert [(i.product_id, i.quantity) for i in loaded.items] == [("SKU-A", 4), ("SKU-C", 1)]
    assert loaded.subtotal_cents == 2_100


@pytest.mark.asyncio
async def test_stock_instructions_marked_dispatched(sql_service, session, make_caller):
    order = await _sent_order(sql_service, make_caller)
    result = await sql_service.receive(make_caller("warehouse"), order.id)

    rows = (await session.execute(
        select(StockInstruction).execution_options(populate_existing=True)
    )).scalars().all()
    assert {row.idempotency_key for row in rows} == {
        a.idempotency_key for a in result.stock_adjustments
    }
    assert all(row.dispatched_at is not None for row in rows)
    assert await sql_service.repository.pending_stock_instructions() == []


@pytest.mark.asyncio
async def test_redispatch_does_not_double_apply(sql_service, session, make_caller):
    """A pending instruction whose movement already exists is only marked."""
    order = await _sent_order(sql_service, make_caller)
    await sql_service.receive(make_caller("warehouse"), order.id)

    await session.execute(update(StockInstruction).values(dispatched_at=None))
    await session.commit()

    keys = await sql_service.dispatch_pending_stock()
    assert len(keys) == 2
    assert await sql_service.inventory.get_stock("SKU-A") == 10

    movements = (await session.execute(select(StockMovement))).scalars().all()
    assert len(movements) == 2
    assert await sql_service.repository.pending_stock_instructions() == []


def test_legacy_row_status_and_naive_timestamps_fold():
    row = PurchaseOrderRow(
        id=uuid.uuid4(),
        po_number="PO-000009",
        supplier_id="SUP-1",
        status="partial",
        subtotal_cents=0,
        tax_cents=0,
        total_cents=0,
        created_by="purchaser-1",
        created_at=datetime(2026, 3, 2, 8, 0),
        version=3,
    )
    order = _order_to_domain(row, [])
    assert order.status == S.PARTIALLY_RECEIVED
    assert order.created_at == datetime(2026, 3, 2, 8, 0, tzinfo=timezone.utc)
    assert order.version == 3
