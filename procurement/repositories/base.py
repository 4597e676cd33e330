"""Persistence collaborator contract for purchase orders."""

import uuid
from typing import AsyncContextManager, List, Optional, Protocol, Sequence

from procurement.schemas.inventory import StockAdjustment
from procurement.schemas.purchase_order import (
    ApprovalRecord,
    PurchaseOrder,
    ReceivingRecord,
    StatusTransition,
)

PO_PREFIX = "PO"


def format_po_number(sequence: int) -> str:
    return f"{PO_PREFIX}-{sequence:06d}"


class PurchaseOrderRepository(Protocol):
    async def load_order(self, order_id: uuid.UUID, for_update: bool = False) -> PurchaseOrder:
        """Return the order or raise OrderNotFoundError."""

    async def insert_order(self, order: PurchaseOrder) -> PurchaseOrder: ...

    async def save_order(
        self, order: PurchaseOrder, expected_version: Optional[int] = None
    ) -> PurchaseOrder:
        """Persist `order`, returning it with its new version.

        Raises ConcurrencyConflictError when `expected_version` is given and
        the stored version differs.
        """

    async def append_status_transition(
        self, order_id: uuid.UUID, transition: StatusTransition
    ) -> None: ...

    async def append_receiving_record(
        self, order_id: uuid.UUID, record: ReceivingRecord
    ) -> None: ...

    async def append_approval_record(
        self, order_id: uuid.UUID, record: ApprovalRecord
    ) -> None: ...

    async def list_status_transitions(self, order_id: uuid.UUID) -> List[StatusTransition]: ...

    async def list_receiving_records(self, order_id: uuid.UUID) -> List[ReceivingRecord]: ...

    async def list_approval_records(self, order_id: uuid.UUID) -> List[ApprovalRecord]: ...

    async def next_po_number(self) -> str: ...

    async def record_stock_instructions(
        self, receipt_id: uuid.UUID, adjustments: Sequence[StockAdjustment]
    ) -> None: ...

    async def mark_stock_instructions_dispatched(self, idempotency_keys: Sequence[str]) -> None: ...

    async def pending_stock_instructions(self) -> List[StockAdjustment]: ...

    def transaction(self) -> AsyncContextManager[None]:
        """All writes inside the block commit together or not at all."""
