# procurement/services/inventory_service.py
"""
Inventory collaborator.

Applies stock-adjustment instructions. Receipt instructions carry an
idempotency key and are applied at most once; a key seen before is a no-op.
Multi-product movements take every product lock up front in sorted order,
validate all lines, and only then mutate, so a failing line leaves every
product unchanged.
"""

from abc import ABC, abstractmethod
from collections import OrderedDict
from typing import Dict, List, Mapping, Optional, Sequence, Union

from pydantic import ValidationError as PydanticValidationError
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
import structlog

from procurement.errors import (
    ErrorCode,
    InsufficientStockError,
    ProcurementError,
    ProductNotFoundError,
)
from procurement.models.product import Product, StockMovement
from procurement.schemas.enums import (
    MovementType,
    StockDirection,
    direction_for,
)
from procurement.schemas.inventory import (
    MovementLine,
    StockAdjustment,
    StockAdjustmentContext,
    StockMovementEntry,
)
from procurement.services.lock_manager import LockManager, product_key
from procurement.services.validation_service import normalize_quantity

logger = structlog.get_logger()

MovementLineInput = Union[MovementLine, Mapping]

_DEFAULT_MOVEMENT = {
    StockDirection.ADD: MovementType.ADJUSTMENT_IN,
    StockDirection.SUBTRACT: MovementType.ADJUSTMENT_OUT,
}


def _invalid(message: str, **metadata) -> ProcurementError:
    return ProcurementError(message, code=ErrorCode.INVALID_MOVEMENT, metadata=metadata)


def _resolve_movement_type(
    direction: StockDirection, movement_type: Optional[MovementType]
) -> MovementType:
    if movement_type is None:
        return _DEFAULT_MOVEMENT[direction]
    movement_type = MovementType(movement_type)
    if direction_for(movement_type) != direction:
        raise _invalid(
            f"Movement type {movement_type.value} cannot {direction.value} stock",
            movement_type=movement_type.value,
            direction=direction.value,
        )
    return movement_type


def _coerce_line(raw: MovementLineInput) -> MovementLine:
    if isinstance(raw, MovementLine):
        return raw
    quantity, code = normalize_quantity(raw.get("quantity"))
    if code is not None:
        raise _invalid(
            "Stock movement quantity must be a positive whole number",
            product_id=raw.get("product_id"),
            value=repr(raw.get("quantity")),
        )
    try:
        return MovementLine(product_id=raw.get("product_id"), quantity=quantity)
    except PydanticValidationError as exc:
        raise _invalid(f"Malformed stock movement line: {exc.errors()[0]['msg']}") from exc


def plan_movements(
    lines: Sequence[MovementLine],
    direction: StockDirection,
    current: Mapping[str, Optional[int]],
    create_missing: bool = False,
) -> "OrderedDict[str, tuple[int, int]]":
    """Validate every line and return {product_id: (quantity, stock_after)}.

    Lines for the same product are summed. `current` maps each product to
    its stock, or None when the product does not exist. Raises before
    anything is mutated.
    """
    totals: Dict[str, int] = {}
    for line in lines:
        totals[line.product_id] = totals.get(line.product_id, 0) + line.quantity

    plan: "OrderedDict[str, tuple[int, int]]" = OrderedDict()
    missing: List[str] = []
    shortages: List[dict] = []
    for product_id in sorted(totals):
        quantity = totals[product_id]
        stock = current.get(product_id)
        if stock is None:
            if not create_missing:
                missing.append(product_id)
                continue
            stock = 0
        after = stock + quantity if direction == StockDirection.ADD else stock - quantity
        if after < 0:
            shortages.append({
                "product_id": product_id,
                "available": stock,
                "requested": quantity,
            })
            continue
        plan[product_id] = (quantity, after)

    if missing:
        raise ProductNotFoundError(
            f"Products not found: {', '.join(missing)}",
            metadata={"product_ids": missing},
        )
    if shortages:
        raise InsufficientStockError(
            "Insufficient stock for "
            + ", ".join(s["product_id"] for s in shortages),
            metadata={"shortages": shortages},
        )
    return plan


class BaseInventoryService(ABC):
    """Shared instruction handling; backends provide `_apply` and `get_stock`."""

    def __init__(self, locks: Optional[LockManager] = None):
        self.locks = locks or LockManager()

    async def adjust_stock(
        self,
        product_id: str,
        quantity,
        direction,
        context: StockAdjustmentContext,
        movement_type: Optional[MovementType] = None,
        idempotency_key: Optional[str] = None,
    ) -> Optional[StockMovementEntry]:
        """Apply one instruction. Returns None when the key was already applied."""
        direction = StockDirection(direction)
        movement_type = _resolve_movement_type(direction, movement_type)
        line = _coerce_line({"product_id": product_id, "quantity": quantity})
        entries = await self._apply(
            [line],
            movement_type,
            context,
            idempotency_key=idempotency_key,
            create_missing=direction == StockDirection.ADD,
        )
        return entries[0] if entries else None

    async def apply_adjustment(self, adjustment: StockAdjustment) -> Optional[StockMovementEntry]:
        return await self.adjust_stock(
            adjustment.product_id,
            adjustment.quantity,
            adjustment.direction,
            adjustment.context,
            movement_type=adjustment.movement_type,
            idempotency_key=adjustment.idempotency_key,
        )

    async def apply_movements(
        self,
        lines: Sequence[MovementLineInput],
        movement_type: MovementType,
        context: StockAdjustmentContext,
    ) -> List[StockMovementEntry]:
        """Atomically apply a multi-product movement (sale, return, transfer...)."""
        movement_type = MovementType(movement_type)
        coerced = [_coerce_line(line) for line in lines]
        if not coerced:
            raise _invalid("Stock movement has no lines")
        return await self._apply(coerced, movement_type, context)

    @abstractmethod
    async def _apply(
        self,
        lines: List[MovementLine],
        movement_type: MovementType,
        context: StockAdjustmentContext,
        idempotency_key: Optional[str] = None,
        create_missing: bool = False,
    ) -> List[StockMovementEntry]:
        """Validate every line under the product locks, then mutate all of them."""

    @abstractmethod
    async def get_stock(self, product_id: str) -> int:
        ...

    @staticmethod
    def _log_applied(movement_type: MovementType, entries: List[StockMovementEntry], key) -> None:
        logger.info(
            "stock_movement_applied",
            movement_type=movement_type.value,
            products=[e.product_id for e in entries],
            idempotency_key=key,
        )


class InMemoryInventoryService(BaseInventoryService):
    def __init__(
        self,
        products: Optional[Mapping[str, int]] = None,
        locks: Optional[LockManager] = None,
    ):
        super().__init__(locks)
        self._stock: Dict[str, int] = dict(products or {})
        self._applied_keys: set[str] = set()
        self.movements: List[StockMovementEntry] = []

    def add_product(self, product_id: str, stock: int = 0) -> None:
        self._stock[product_id] = stock

    async def get_stock(self, product_id: str) -> int:
        if product_id not in self._stock:
            raise ProductNotFoundError(
                f"Product {product_id} not found", metadata={"product_id": product_id}
            )
        return self._stock[product_id]

    def has_applied(self, idempotency_key: str) -> bool:
        return idempotency_key in self._applied_keys

    async def _apply(
        self,
        lines,
        movement_type,
        context,
        idempotency_key=None,
        create_missing=False,
    ):
        direction = direction_for(movement_type)
        keys = [product_key(line.product_id) for line in lines]
        async with self.locks.acquire(*keys):
            if idempotency_key and idempotency_key in self._applied_keys:
                logger.info("stock_adjustment_already_applied", idempotency_key=idempotency_key)
                return []

            current = {line.product_id: self._stock.get(line.product_id) for line in lines}
            plan = plan_movements(lines, direction, current, create_missing=create_missing)

            entries = []
            for product_id, (quantity, after) in plan.items():
                self._stock[product_id] = after
                entries.append(StockMovementEntry(
                    product_id=product_id,
                    movement_type=movement_type,
                    direction=direction,
                    quantity=quantity,
                    stock_after=after,
                    idempotency_key=idempotency_key,
                    context=context,
                ))
            self.movements.extend(entries)
            if idempotency_key:
                self._applied_keys.add(idempotency_key)

        self._log_applied(movement_type, entries, idempotency_key)
        return entries


class SqlInventoryService(BaseInventoryService):
    """
    Inventory backed by the products / stock_movements tables.

    Rows are locked with SELECT ... FOR UPDATE in product-id order. Each call
    runs in a SAVEPOINT; the caller owns the outer transaction.
    """

    def __init__(self, session: AsyncSession, locks: Optional[LockManager] = None):
        super().__init__(locks)
        self.session = session

    async def get_stock(self, product_id: str) -> int:
        product = await self.session.get(Product, product_id)
        if product is None:
            raise ProductNotFoundError(
                f"Product {product_id} not found", metadata={"product_id": product_id}
            )
        return product.stock

    async def add_product(self, product_id: str, name: Optional[str] = None, stock: int = 0) -> None:
        self.session.add(Product(id=product_id, name=name, stock=stock))
        await self.session.flush()

    async def _apply(
        self,
        lines,
        movement_type,
        context,
        idempotency_key=None,
        create_missing=False,
    ):
        direction = direction_for(movement_type)
        keys = [product_key(line.product_id) for line in lines]
        product_ids = sorted({line.product_id for line in lines})

        async with self.locks.acquire(*keys):
            if idempotency_key and await self._already_applied(idempotency_key):
                logger.info("stock_adjustment_already_applied", idempotency_key=idempotency_key)
                return []

            try:
                async with self.session.begin_nested():
                    result = await self.session.execute(
                        select(Product)
                        .where(Product.id.in_(product_ids))
                        .order_by(Product.id)
                        .with_for_update()
                    )
                    rows = {row.id: row for row in result.scalars().all()}
                    plan = plan_movements(
                        lines,
                        direction,
                        {pid: rows[pid].stock if pid in rows else None for pid in product_ids},
                        create_missing=create_missing,
                    )

                    entries = []
                    for product_id, (quantity, after) in plan.items():
                        row = rows.get(product_id)
                        if row is None:
                            row = Product(id=product_id, stock=0)
                            self.session.add(row)
                        row.stock = after
                        self.session.add(StockMovement(
                            product_id=product_id,
                            movement_type=movement_type.value,
                            direction=direction.value,
                            quantity=quantity,
                            stock_after=after,
                            idempotency_key=idempotency_key,
                            purchase_order_id=context.purchase_order_id,
                            reference_id=context.reference_id,
                            user_id=context.user_id,
                            reason=context.reason,
                        ))
                        entries.append(StockMovementEntry(
                            product_id=product_id,
                            movement_type=movement_type,
                            direction=direction,
                            quantity=quantity,
                            stock_after=after,
                            idempotency_key=idempotency_key,
                            context=context,
                        ))
                    await self.session.flush()
            except IntegrityError:
                # Another worker applied the same key between our check and insert.
                if idempotency_key and await self._already_applied(idempotency_key):
                    logger.info("stock_adjustment_already_applied", idempotency_key=idempotency_key)
                    return []
                raise

        self._log_applied(movement_type, entries, idempotency_key)
        return entries

    async def _already_applied(self, idempotency_key: str) -> bool:
        found = await self.session.scalar(
            select(StockMovement.id).where(StockMovement.idempotency_key == idempotency_key)
        )
        return found is not None

    async def list_movements(self, product_id: Optional[str] = None) -> List[StockMovement]:
        query = select(StockMovement).order_by(StockMovement.created_at)
        if product_id is not None:
            query = query.where(StockMovement.product_id == product_id)
        result = await self.session.execute(query)
        return list(result.scalars().all())
