"""
SQLAlchemy purchase order store.

Order headers are guarded two ways: `load_order(for_update=True)` takes a row
lock, and `save_order` is a conditional UPDATE on the version column, so a
stale write is rejected even where row locks are unavailable (sqlite).
"""

import uuid
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import List, Optional, Sequence

from sqlalchemy import select, update, func
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
import structlog

from procurement.errors import ConcurrencyConflictError, OrderNotFoundError, PersistenceError
from procurement.models.approval import Approval
from procurement.models.purchase_order import (
    PoLineItem,
    PoStatusTransition,
    PurchaseOrder as PurchaseOrderRow,
)
from procurement.models.receipt import Receipt, ReceiptLineItem, StockInstruction
from procurement.repositories.base import format_po_number
from procurement.schemas.inventory import StockAdjustment
from procurement.schemas.purchase_order import (
    ApprovalRecord,
    PurchaseOrder,
    PurchaseOrderItem,
    ReceivingLine,
    ReceivingRecord,
    StatusTransition,
    utcnow,
)

logger = structlog.get_logger()


def _aware(value: Optional[datetime]) -> Optional[datetime]:
    # sqlite hands back naive datetimes; everything is stored in UTC.
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _item_to_domain(li: PoLineItem) -> PurchaseOrderItem:
    return PurchaseOrderItem(
        id=li.id,
        product_id=li.product_id,
        product_name=li.product_name,
        quantity=li.quantity,
        unit_cost_cents=li.unit_cost_cents,
        received_quantity=li.received_quantity or 0,
        quality_status=li.quality_status,
        batch_number=li.batch_number,
        expiry_date=li.expiry_date,
        serial_numbers=li.serial_numbers or [],
    )


def _order_to_domain(row: PurchaseOrderRow, lines: Sequence[PoLineItem]) -> PurchaseOrder:
    return PurchaseOrder(
        id=row.id,
        po_number=row.po_number,
        supplier_id=row.supplier_id,
        supplier_name=row.supplier_name,
        items=[_item_to_domain(li) for li in lines],
        tax_cents=row.tax_cents or 0,
        # Legacy spellings (sent, partial, received...) are folded here.
        status=row.status,
        created_by=row.created_by,
        created_at=_aware(row.created_at),
        order_date=row.order_date,
        approved_by=row.approved_by,
        approved_at=_aware(row.approved_at),
        expected_delivery_date=row.expected_delivery_date,
        received_date=_aware(row.received_date),
        notes=row.notes,
        version=row.version,
    )


def _header_values(order: PurchaseOrder) -> dict:
    return dict(
        po_number=order.po_number,
        supplier_id=order.supplier_id,
        supplier_name=order.supplier_name,
        status=order.status.value,
        subtotal_cents=order.subtotal_cents,
        tax_cents=order.tax_cents,
        total_cents=order.total_cents,
        order_date=order.order_date,
        approved_by=order.approved_by,
        approved_at=order.approved_at,
        expected_delivery_date=order.expected_delivery_date,
        received_date=order.received_date,
        notes=order.notes,
    )


def _line_values(item: PurchaseOrderItem) -> dict:
    return dict(
        product_id=item.product_id,
        product_name=item.product_name,
        quantity=item.quantity,
        unit_cost_cents=item.unit_cost_cents,
        received_quantity=item.received_quantity,
        quality_status=item.quality_status.value if item.quality_status else None,
        batch_number=item.batch_number,
        expiry_date=item.expiry_date,
        serial_numbers=list(item.serial_numbers),
    )


class SqlPurchaseOrderRepository:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def _lines(self, order_id: uuid.UUID) -> List[PoLineItem]:
        result = await self.session.execute(
            select(PoLineItem)
            .where(PoLineItem.po_id == order_id)
            .order_by(PoLineItem.line_number)
        )
        return list(result.scalars().all())

    async def load_order(self, order_id: uuid.UUID, for_update: bool = False) -> PurchaseOrder:
        query = select(PurchaseOrderRow).where(PurchaseOrderRow.id == order_id)
        if for_update:
            query = query.with_for_update()
        result = await self.session.execute(query.execution_options(populate_existing=True))
        row = result.scalar_one_or_none()
        if row is None:
            raise OrderNotFoundError(
                f"Purchase order {order_id} not found", metadata={"po_id": str(order_id)}
            )
        return _order_to_domain(row, await self._lines(order_id))

    async def insert_order(self, order: PurchaseOrder) -> PurchaseOrder:
        self.session.add(PurchaseOrderRow(
            id=order.id,
            created_by=order.created_by,
            created_at=order.created_at,
            version=order.version,
            **_header_values(order),
        ))
        await self.session.flush()
        for number, item in enumerate(order.items, start=1):
            self.session.add(PoLineItem(
                id=item.id, po_id=order.id, line_number=number, **_line_values(item)
            ))
        await self.session.flush()
        return order

    async def save_order(
        self, order: PurchaseOrder, expected_version: Optional[int] = None
    ) -> PurchaseOrder:
        expected = order.version if expected_version is None else expected_version
        result = await self.session.execute(
            update(PurchaseOrderRow)
            .where(PurchaseOrderRow.id == order.id)
            .where(PurchaseOrderRow.version == expected)
            .values(version=expected + 1, updated_at=utcnow(), **_header_values(order))
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            stored = await self.session.scalar(
                select(PurchaseOrderRow.version).where(PurchaseOrderRow.id == order.id)
            )
            if stored is None:
                raise OrderNotFoundError(
                    f"Purchase order {order.id} not found", metadata={"po_id": str(order.id)}
                )
            raise ConcurrencyConflictError(
                "Record was modified by another request",
                metadata={
                    "po_id": str(order.id),
                    "expected_version": expected,
                    "actual_version": stored,
                },
            )

        await self._sync_lines(order)
        return order.model_copy(update={"version": expected + 1})

    async def _sync_lines(self, order: PurchaseOrder) -> None:
        existing = {li.id: li for li in await self._lines(order.id)}
        keep = {item.id for item in order.items}
        for line_id, li in existing.items():
            if line_id not in keep:
                await self.session.delete(li)
        # Deletes first so a re-added product does not trip uq_po_line_product.
        await self.session.flush()

        for number, item in enumerate(order.items, start=1):
            li = existing.get(item.id)
            if li is None:
                self.session.add(PoLineItem(
                    id=item.id, po_id=order.id, line_number=number, **_line_values(item)
                ))
                continue
            li.line_number = number
            for key, value in _line_values(item).items():
                setattr(li, key, value)
        await self.session.flush()

    async def append_status_transition(
        self, order_id: uuid.UUID, transition: StatusTransition
    ) -> None:
        self.session.add(PoStatusTransition(
            id=transition.id,
            po_id=order_id,
            from_status=transition.from_status.value,
            to_status=transition.to_status.value,
            performed_by=transition.performed_by,
            reason=transition.reason,
            extra_metadata=transition.metadata,
            created_at=transition.timestamp,
        ))
        await self.session.flush()

    async def append_receiving_record(
        self, order_id: uuid.UUID, record: ReceivingRecord
    ) -> None:
        self.session.add(Receipt(
            id=record.id,
            po_id=order_id,
            received_by=record.received_by,
            received_at=record.received_at,
            total_quantity=record.total_quantity,
            total_value_cents=record.total_value_cents,
            notes=record.notes,
        ))
        await self.session.flush()
        for number, line in enumerate(record.lines, start=1):
            self.session.add(ReceiptLineItem(
                receipt_id=record.id,
                line_number=number,
                po_line_item_id=line.item_id,
                product_id=line.product_id,
                quantity_received=line.quantity_received,
                unit_cost_cents=line.unit_cost_cents,
                condition=line.condition.value,
                batch_number=line.batch_number,
                expiry_date=line.expiry_date,
                serial_numbers=list(line.serial_numbers),
                notes=line.notes,
            ))
        await self.session.flush()

    async def append_approval_record(
        self, order_id: uuid.UUID, record: ApprovalRecord
    ) -> None:
        self.session.add(Approval(
            id=record.id,
            po_id=order_id,
            approver_id=record.approver_id,
            approver_role=record.approver_role.value,
            decision=record.decision.value,
            amount_cents=record.amount_cents,
            approval_level=record.approval_level,
            comments=record.notes,
            created_at=record.timestamp,
        ))
        await self.session.flush()

    async def list_status_transitions(self, order_id: uuid.UUID) -> List[StatusTransition]:
        result = await self.session.execute(
            select(PoStatusTransition)
            .where(PoStatusTransition.po_id == order_id)
            .order_by(PoStatusTransition.created_at)
        )
        return [
            StatusTransition(
                id=row.id,
                purchase_order_id=row.po_id,
                from_status=row.from_status,
                to_status=row.to_status,
                performed_by=row.performed_by,
                timestamp=_aware(row.created_at),
                reason=row.reason,
                metadata=row.extra_metadata or {},
            )
            for row in result.scalars().all()
        ]

    async def list_receiving_records(self, order_id: uuid.UUID) -> List[ReceivingRecord]:
        result = await self.session.execute(
            select(Receipt).where(Receipt.po_id == order_id).order_by(Receipt.received_at)
        )
        records = []
        for receipt in result.scalars().all():
            lines_result = await self.session.execute(
                select(ReceiptLineItem)
                .where(ReceiptLineItem.receipt_id == receipt.id)
                .order_by(ReceiptLineItem.line_number)
            )
            records.append(ReceivingRecord(
                id=receipt.id,
                purchase_order_id=receipt.po_id,
                received_by=receipt.received_by,
                received_at=_aware(receipt.received_at),
                notes=receipt.notes,
                lines=[
                    ReceivingLine(
                        item_id=li.po_line_item_id,
                        product_id=li.product_id,
                        quantity_received=li.quantity_received,
                        unit_cost_cents=li.unit_cost_cents or 0,
                        condition=li.condition,
                        batch_number=li.batch_number,
                        expiry_date=li.expiry_date,
                        serial_numbers=li.serial_numbers or [],
                        notes=li.notes,
                    )
                    for li in lines_result.scalars().all()
                ],
            ))
        return records

    async def list_approval_records(self, order_id: uuid.UUID) -> List[ApprovalRecord]:
        result = await self.session.execute(
            select(Approval).where(Approval.po_id == order_id).order_by(Approval.created_at)
        )
        return [
            ApprovalRecord(
                id=row.id,
                purchase_order_id=row.po_id,
                approver_id=row.approver_id,
                approver_role=row.approver_role,
                decision=row.decision,
                timestamp=_aware(row.created_at),
                amount_cents=row.amount_cents,
                approval_level=row.approval_level,
                notes=row.comments,
            )
            for row in result.scalars().all()
        ]

    async def next_po_number(self) -> str:
        result = await self.session.execute(select(func.count(PurchaseOrderRow.id)))
        count = (result.scalar() or 0) + 1
        return format_po_number(count)

    async def record_stock_instructions(
        self, receipt_id: uuid.UUID, adjustments: Sequence[StockAdjustment]
    ) -> None:
        for adjustment in adjustments:
            self.session.add(StockInstruction(
                receipt_id=receipt_id,
                po_id=adjustment.context.purchase_order_id,
                idempotency_key=adjustment.idempotency_key,
                payload=adjustment.model_dump(mode="json"),
            ))
        await self.session.flush()

    async def mark_stock_instructions_dispatched(self, idempotency_keys: Sequence[str]) -> None:
        if not idempotency_keys:
            return
        await self.session.execute(
            update(StockInstruction)
            .where(StockInstruction.idempotency_key.in_(list(idempotency_keys)))
            .values(dispatched_at=utcnow())
            .execution_options(synchronize_session=False)
        )

    async def pending_stock_instructions(self) -> List[StockAdjustment]:
        result = await self.session.execute(
            select(StockInstruction)
            .where(StockInstruction.dispatched_at.is_(None))
            .order_by(StockInstruction.created_at)
        )
        return [StockAdjustment.model_validate(row.payload) for row in result.scalars().all()]

    @asynccontextmanager
    async def transaction(self):
        """Commit the session's pending work on success; roll back on any error."""
        try:
            yield
            await self.session.flush()
            await self.session.commit()
        except SQLAlchemyError as exc:
            await self.session.rollback()
            logger.error("po_transaction_failed", error=str(exc))
            raise PersistenceError(
                "Failed to persist purchase order changes", metadata={"error": str(exc)}
            ) from exc
        except BaseException:
            await self.session.rollback()
            raise
