"""
In-memory purchase order store.

Used by tests and when embedding the engine without a database. Writes made
inside `transaction()` are staged per task and applied together at exit,
after every version expectation has been re-checked. `io_delay` adds an
await before reads and commits so concurrent callers actually interleave.
"""

import asyncio
import contextvars
import uuid
from contextlib import asynccontextmanager
from typing import Callable, Dict, List, Optional, Sequence, Tuple

import structlog

from procurement.errors import ConcurrencyConflictError, OrderNotFoundError, PersistenceError
from procurement.repositories.base import format_po_number
from procurement.schemas.inventory import StockAdjustment
from procurement.schemas.purchase_order import (
    ApprovalRecord,
    PurchaseOrder,
    ReceivingRecord,
    StatusTransition,
)

logger = structlog.get_logger()


class _Stage:
    def __init__(self):
        self.writes: List[Callable[[], None]] = []
        self.version_checks: List[Tuple[uuid.UUID, int]] = []


class InMemoryPurchaseOrderRepository:
    def __init__(self, io_delay: float = 0.0):
        self.io_delay = io_delay
        self._orders: Dict[uuid.UUID, PurchaseOrder] = {}
        self._transitions: Dict[uuid.UUID, List[StatusTransition]] = {}
        self._receipts: Dict[uuid.UUID, List[ReceivingRecord]] = {}
        self._approvals: Dict[uuid.UUID, List[ApprovalRecord]] = {}
        self._instructions: Dict[str, StockAdjustment] = {}
        self._dispatched: set[str] = set()
        self._sequence = 0
        self._stage: contextvars.ContextVar[Optional[_Stage]] = contextvars.ContextVar(
            f"po_repo_stage_{id(self)}", default=None
        )
        # Raised by the next commit instead of applying it; for failure tests.
        self.fail_next_commit: Optional[Exception] = None

    async def _io(self) -> None:
        if self.io_delay:
            await asyncio.sleep(self.io_delay)

    def _write(self, apply: Callable[[], None]) -> None:
        stage = self._stage.get()
        if stage is None:
            apply()
        else:
            stage.writes.append(apply)

    # ------------------------------------------------------------------

    async def load_order(self, order_id: uuid.UUID, for_update: bool = False) -> PurchaseOrder:
        await self._io()
        order = self._orders.get(order_id)
        if order is None:
            raise OrderNotFoundError(
                f"Purchase order {order_id} not found", metadata={"po_id": str(order_id)}
            )
        return order

    async def insert_order(self, order: PurchaseOrder) -> PurchaseOrder:
        if order.id in self._orders:
            raise PersistenceError(f"Purchase order {order.id} already exists")

        def apply():
            self._orders[order.id] = order
            self._transitions.setdefault(order.id, [])
            self._receipts.setdefault(order.id, [])
            self._approvals.setdefault(order.id, [])

        self._write(apply)
        return order

    async def save_order(
        self, order: PurchaseOrder, expected_version: Optional[int] = None
    ) -> PurchaseOrder:
        current = self._orders.get(order.id)
        if current is None:
            raise OrderNotFoundError(
                f"Purchase order {order.id} not found", metadata={"po_id": str(order.id)}
            )
        expected = order.version if expected_version is None else expected_version
        self._check_version(order.id, expected)

        saved = order.model_copy(update={"version": expected + 1})

        def apply():
            self._orders[order.id] = saved

        stage = self._stage.get()
        if stage is not None:
            stage.version_checks.append((order.id, expected))
        self._write(apply)
        return saved

    def _check_version(self, order_id: uuid.UUID, expected: int) -> None:
        stored = self._orders[order_id].version
        if stored != expected:
            raise ConcurrencyConflictError(
                "Record was modified by another request",
                metadata={
                    "po_id": str(order_id),
                    "expected_version": expected,
                    "actual_version": stored,
                },
            )

    async def append_status_transition(
        self, order_id: uuid.UUID, transition: StatusTransition
    ) -> None:
        self._write(lambda: self._transitions.setdefault(order_id, []).append(transition))

    async def append_receiving_record(
        self, order_id: uuid.UUID, record: ReceivingRecord
    ) -> None:
        self._write(lambda: self._receipts.setdefault(order_id, []).append(record))

    async def append_approval_record(
        self, order_id: uuid.UUID, record: ApprovalRecord
    ) -> None:
        self._write(lambda: self._approvals.setdefault(order_id, []).append(record))

    async def list_status_transitions(self, order_id: uuid.UUID) -> List[StatusTransition]:
        return list(self._transitions.get(order_id, []))

    async def list_receiving_records(self, order_id: uuid.UUID) -> List[ReceivingRecord]:
        return list(self._receipts.get(order_id, []))

    async def list_approval_records(self, order_id: uuid.UUID) -> List[ApprovalRecord]:
        return list(self._approvals.get(order_id, []))

    async def next_po_number(self) -> str:
        self._sequence += 1
        return format_po_number(self._sequence)

    async def record_stock_instructions(
        self, receipt_id: uuid.UUID, adjustments: Sequence[StockAdjustment]
    ) -> None:
        def apply():
            for adjustment in adjustments:
                self._instructions.setdefault(adjustment.idempotency_key, adjustment)

        self._write(apply)

    async def mark_stock_instructions_dispatched(self, idempotency_keys: Sequence[str]) -> None:
        keys = list(idempotency_keys)
        self._write(lambda: self._dispatched.update(keys))

    async def pending_stock_instructions(self) -> List[StockAdjustment]:
        return [
            adjustment
            for key, adjustment in self._instructions.items()
            if key not in self._dispatched
        ]

    @asynccontextmanager
    async def transaction(self):
        if self._stage.get() is not None:
            # Nested blocks join the outer transaction.
            yield
            return

        stage = _Stage()
        token = self._stage.set(stage)
        try:
            yield
        finally:
            self._stage.reset(token)

        await self._io()
        if self.fail_next_commit is not None:
            error, self.fail_next_commit = self.fail_next_commit, None
            logger.warning("memory_repo_commit_failed", error=str(error))
            raise error
        # No awaits from here on, so the checks and writes apply as one unit.
        for order_id, expected in stage.version_checks:
            self._check_version(order_id, expected)
        for apply in stage.writes:
            apply()
