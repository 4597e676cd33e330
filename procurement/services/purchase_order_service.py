# procurement/services/purchase_order_service.py
"""
Purchase order service: the single entry point for every lifecycle change.

Each mutating operation runs:
  lock order -> load fresh state -> permission gate -> validate
  -> compute -> atomic commit -> dispatch stock -> release lock

Permission denials and validation failures come back as an unsuccessful
OperationResult. Concurrency and system failures (lock timeout, version
conflict after retries, persistence timeout) are raised as retryable
ProcurementError subclasses with nothing committed. Once the commit has
succeeded the operation reports success: a failed audit write or stock
dispatch after that point is logged and the instruction stays pending for
`dispatch_pending_stock`.
"""

import asyncio
import logging
import uuid
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, List, Optional, Sequence, Union

from tenacity import (
    AsyncRetrying,
    before_sleep_log,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)
import structlog

from procurement.config import Settings, settings as default_settings
from procurement.errors import (
    ConcurrencyConflictError,
    PermissionDeniedError,
    PersistenceTimeoutError,
    ProcurementError,
)
from procurement.repositories.base import PurchaseOrderRepository
from procurement.schemas.audit_log import AuditEvent
from procurement.schemas.context import CallerContext
from procurement.schemas.enums import (
    ApprovalDecision,
    PurchaseOrderAction as Action,
    PurchaseOrderStatus as Status,
)
from procurement.schemas.inventory import StockAdjustment
from procurement.schemas.purchase_order import (
    ApprovalRecord,
    PurchaseOrder,
    PurchaseOrderCreate,
    PurchaseOrderItem,
    PurchaseOrderItemCreate,
    PurchaseOrderUpdate,
    ReceivingRecord,
    StatusTransition,
    utcnow,
)
from procurement.schemas.validation import (
    ApprovalChange,
    ItemSetChange,
    StatusChange,
    ValidationError,
    ValidationResult,
)
from procurement.services import status_graph
from procurement.services.audit_service import (
    AuditRecorder,
    InMemoryAuditRecorder,
    build_event,
)
from procurement.services.inventory_service import BaseInventoryService
from procurement.services.lock_manager import LockManager, order_key
from procurement.services.permission_gate import PermissionGate
from procurement.services.policy_table import PolicyTable
from procurement.services.receiving_service import ReceivedItemInput, ReceivingService
from procurement.services.validation_service import (
    PurchaseOrderValidator,
    normalize_quantity,
)

logger = structlog.get_logger()
_std_logger = logging.getLogger(__name__)


@dataclass
class OrderHistory:
    transitions: List[StatusTransition] = field(default_factory=list)
    receiving_records: List[ReceivingRecord] = field(default_factory=list)
    approval_records: List[ApprovalRecord] = field(default_factory=list)
    # Only filled for callers allowed to view the audit trail
    audit_events: List[AuditEvent] = field(default_factory=list)


@dataclass
class OperationResult:
    success: bool
    order: Optional[PurchaseOrder] = None
    errors: List[ValidationError] = field(default_factory=list)
    warnings: List[ValidationError] = field(default_factory=list)
    receiving_record: Optional[ReceivingRecord] = None
    stock_adjustments: List[StockAdjustment] = field(default_factory=list)
    transitions: List[StatusTransition] = field(default_factory=list)
    history: Optional[OrderHistory] = None

    @property
    def error_codes(self) -> List[str]:
        return [e.to_dict()["code"] for e in self.errors]

    @property
    def warning_codes(self) -> List[str]:
        return [w.to_dict()["code"] for w in self.warnings]

    @property
    def denied(self) -> bool:
        return any(e.field == "permission" for e in self.errors)

    @classmethod
    def from_denial(
        cls, exc: PermissionDeniedError, order: Optional[PurchaseOrder] = None
    ) -> "OperationResult":
        return cls(
            success=False,
            order=order,
            errors=[ValidationError(
                field="permission",
                message=exc.message,
                code=exc.code,
                metadata=exc.metadata,
            )],
        )

    @classmethod
    def invalid(
        cls, order: Optional[PurchaseOrder], validation: ValidationResult
    ) -> "OperationResult":
        return cls(
            success=False,
            order=order,
            errors=list(validation.errors),
            warnings=list(validation.warnings),
        )


def _snapshot(order: PurchaseOrder) -> dict:
    """Compact, JSON-safe view of an order for audit before/after states."""
    return {
        "status": order.status.value,
        "version": order.version,
        "supplier_id": order.supplier_id,
        "total_cents": order.total_cents,
        "approved_by": order.approved_by,
        "received_date": order.received_date.isoformat() if order.received_date else None,
        "items": [
            {
                "product_id": item.product_id,
                "quantity": item.quantity,
                "received_quantity": item.received_quantity,
                "unit_cost_cents": item.unit_cost_cents,
            }
            for item in order.items
        ],
    }


class PurchaseOrderService:
    def __init__(
        self,
        repository: PurchaseOrderRepository,
        inventory: BaseInventoryService,
        audit: Optional[AuditRecorder] = None,
        locks: Optional[LockManager] = None,
        settings: Optional[Settings] = None,
        today: Optional[Callable] = None,
    ):
        self.settings = settings or default_settings
        self.repository = repository
        self.inventory = inventory
        self.audit = audit or InMemoryAuditRecorder()
        self.locks = locks or LockManager(self.settings.LOCK_TIMEOUT_SECONDS)
        self.policy = PolicyTable(self.settings)
        self.validator = PurchaseOrderValidator(self.settings, self.policy, today=today)
        self.receiving = ReceivingService(self.validator)
        self.gate = PermissionGate(self.audit, self.policy, self.settings)

    # ------------------------------------------------------------------
    # Plumbing
    # ------------------------------------------------------------------

    async def _persist(self, awaitable: Awaitable, timeout: Optional[float] = None):
        timeout = timeout or self.settings.PERSISTENCE_TIMEOUT_SECONDS
        try:
            return await asyncio.wait_for(awaitable, timeout=timeout)
        except asyncio.TimeoutError:
            logger.error("persistence_timeout", timeout=timeout)
            raise PersistenceTimeoutError(
                f"Persistence did not complete within {timeout}s",
                metadata={"timeout_seconds": timeout},
            ) from None

    async def _with_conflict_retry(self, func: Callable[[], Awaitable[OperationResult]], **log_kw):
        retrying = AsyncRetrying(
            retry=retry_if_exception_type(ConcurrencyConflictError),
            stop=stop_after_attempt(self.settings.CONFLICT_RETRY_ATTEMPTS),
            wait=wait_exponential(multiplier=0.05, max=1),
            before_sleep=before_sleep_log(_std_logger, logging.WARNING),
            reraise=True,
        )
        async for attempt in retrying:
            with attempt:
                if attempt.retry_state.attempt_number > 1:
                    logger.warning(
                        "po_conflict_retry",
                        attempt=attempt.retry_state.attempt_number,
                        **log_kw,
                    )
                return await func()

    async def _locked(
        self,
        context: Optional[CallerContext],
        action: Action,
        order_id: uuid.UUID,
        body: Callable[[PurchaseOrder], Awaitable[OperationResult]],
        operation: str,
        check_status: bool = True,
        timeout: Optional[float] = None,
    ) -> OperationResult:
        if context is None:
            return await self._deny_unauthenticated(action)

        async def attempt() -> OperationResult:
            async with self.locks.acquire(order_key(order_id), timeout=timeout):
                order = await self._persist(
                    self.repository.load_order(order_id, for_update=True), timeout
                )
                try:
                    return await self.gate.with_permission(
                        context,
                        action,
                        lambda: body(order),
                        order=order,
                        check_status=check_status,
                    )
                except PermissionDeniedError as exc:
                    return OperationResult.from_denial(exc, order)

        result = await self._with_conflict_retry(
            attempt, operation=operation, po_id=str(order_id)
        )
        logger.info(
            "po_operation_completed",
            operation=operation,
            success=result.success,
            po_id=str(order_id),
            user_id=context.user_id,
            status=result.order.status.value if result.order else None,
            errors=result.error_codes or None,
        )
        return result

    async def _deny_unauthenticated(self, action: Action) -> OperationResult:
        async def unreachable():
            raise AssertionError("unauthenticated operation executed")

        try:
            await self.gate.with_permission(None, action, unreachable)
        except PermissionDeniedError as exc:
            return OperationResult.from_denial(exc)
        raise AssertionError("gate allowed an unauthenticated caller")

    def _transitions_for(
        self,
        order: PurchaseOrder,
        path: Sequence[Status],
        context: CallerContext,
        reason: Optional[str] = None,
        metadata: Optional[dict] = None,
    ) -> List[StatusTransition]:
        transitions = []
        current = order.status
        for status in path:
            transitions.append(StatusTransition(
                purchase_order_id=order.id,
                from_status=current,
                to_status=status,
                performed_by=context.user_id,
                reason=reason,
                metadata=dict(metadata or {}),
            ))
            current = status
        return transitions

    async def _commit(
        self,
        before: PurchaseOrder,
        after: PurchaseOrder,
        transitions: Sequence[StatusTransition] = (),
        approval: Optional[ApprovalRecord] = None,
        receiving_record: Optional[ReceivingRecord] = None,
        adjustments: Sequence[StockAdjustment] = (),
        timeout: Optional[float] = None,
    ) -> PurchaseOrder:
        async def write() -> PurchaseOrder:
            async with self.repository.transaction():
                saved = await self.repository.save_order(after, expected_version=before.version)
                for transition in transitions:
                    await self.repository.append_status_transition(after.id, transition)
                if approval is not None:
                    await self.repository.append_approval_record(after.id, approval)
                if receiving_record is not None:
                    await self.repository.append_receiving_record(after.id, receiving_record)
                    await self.repository.record_stock_instructions(
                        receiving_record.id, adjustments
                    )
            return saved

        return await self._persist(write(), timeout)

    async def _dispatch_stock(
        self, adjustments: Sequence[StockAdjustment], timeout: Optional[float] = None
    ) -> List[str]:
        """Apply committed instructions; failures stay pending for a later retry.

        Runs after the order commit, so it never raises: whatever is not
        applied and marked here is picked up by `dispatch_pending_stock`.
        """
        dispatched: List[str] = []
        for adjustment in adjustments:
            try:
                await self.inventory.apply_adjustment(adjustment)
            except Exception as exc:
                logger.error(
                    "stock_dispatch_deferred",
                    idempotency_key=adjustment.idempotency_key,
                    product_id=adjustment.product_id,
                    code=exc.code.value if isinstance(exc, ProcurementError) else None,
                    error=str(exc),
                )
                continue
            dispatched.append(adjustment.idempotency_key)

        if dispatched:
            async def mark():
                async with self.repository.transaction():
                    await self.repository.mark_stock_instructions_dispatched(dispatched)

            try:
                await self._persist(mark(), timeout)
            except Exception as exc:
                # Applied but unmarked: the next dispatch replays them as no-ops.
                logger.error(
                    "stock_dispatch_mark_failed",
                    idempotency_keys=dispatched,
                    error=str(exc),
                )
        return dispatched

    async def _record_change(
        self,
        context: CallerContext,
        action: str,
        before: Optional[PurchaseOrder],
        after: PurchaseOrder,
        reason: Optional[str] = None,
        metadata: Optional[dict] = None,
    ) -> None:
        """Audit a committed change. The change stands even if auditing fails."""
        try:
            await self.audit.record(build_event(
                action=action,
                context=context,
                entity_id=str(after.id),
                reason=reason,
                before_state=_snapshot(before) if before is not None else None,
                after_state=_snapshot(after),
                metadata=metadata,
            ))
        except Exception as exc:
            logger.error(
                "audit_record_failed",
                action=action,
                po_id=str(after.id),
                user_id=context.user_id,
                error=str(exc),
            )

    @staticmethod
    def _build_items(
        raw_items: Sequence[PurchaseOrderItemCreate],
        existing: Optional[PurchaseOrder] = None,
    ) -> List[PurchaseOrderItem]:
        previous = {item.product_id: item for item in existing.items} if existing else {}
        items = []
        for raw in raw_items:
            quantity, _ = normalize_quantity(raw.quantity)
            prior = previous.get(raw.product_id)
            items.append(PurchaseOrderItem(
                id=prior.id if prior else uuid.uuid4(),
                product_id=raw.product_id,
                product_name=raw.product_name or (prior.product_name if prior else None),
                quantity=quantity,
                unit_cost_cents=raw.unit_cost_cents,
                received_quantity=prior.received_quantity if prior else 0,
            ))
        return items

    async def _change_status(
        self,
        context: Optional[CallerContext],
        order_id: uuid.UUID,
        target: Status,
        action: Action,
        operation: str,
        reason: Optional[str] = None,
        check_status: bool = True,
        timeout: Optional[float] = None,
    ) -> OperationResult:
        async def body(order: PurchaseOrder) -> OperationResult:
            validation = self.validator.validate(order, StatusChange(to_status=target))
            if not validation.is_valid:
                return OperationResult.invalid(order, validation)

            after = order.with_changes(status=target)
            transitions = self._transitions_for(order, [target], context, reason)
            saved = await self._commit(order, after, transitions, timeout=timeout)
            await self._record_change(context, f"po_{operation}", order, saved, reason)
            return OperationResult(
                success=True,
                order=saved,
                warnings=list(validation.warnings),
                transitions=transitions,
            )

        return await self._locked(
            context, action, order_id, body, operation, check_status=check_status, timeout=timeout
        )

    # ------------------------------------------------------------------
    # Create / edit
    # ------------------------------------------------------------------

    async def create_purchase_order(
        self,
        context: Optional[CallerContext],
        data: PurchaseOrderCreate,
        timeout: Optional[float] = None,
    ) -> OperationResult:
        async def create() -> OperationResult:
            validation = self.validator.validate(None, ItemSetChange(
                items=list(data.items),
                supplier_id=data.supplier_id,
                tax_cents=data.tax_cents,
                declared_total_cents=data.total_cents,
                order_date=data.order_date,
                expected_delivery_date=data.expected_delivery_date,
            ))
            if not validation.is_valid:
                return OperationResult.invalid(None, validation)

            async def write() -> PurchaseOrder:
                async with self.repository.transaction():
                    order = PurchaseOrder(
                        po_number=await self.repository.next_po_number(),
                        supplier_id=data.supplier_id,
                        supplier_name=data.supplier_name,
                        items=self._build_items(data.items),
                        tax_cents=data.tax_cents,
                        status=Status.DRAFT,
                        created_by=context.user_id,
                        order_date=data.order_date or self.validator.today(),
                        expected_delivery_date=data.expected_delivery_date,
                        notes=data.notes,
                    )
                    await self.repository.insert_order(order)
                return order

            order = await self._persist(write(), timeout)
            await self._record_change(context, "po_created", None, order)
            logger.info(
                "po_created",
                po_id=str(order.id),
                po_number=order.po_number,
                total_cents=order.total_cents,
                user_id=context.user_id,
            )
            return OperationResult(success=True, order=order, warnings=list(validation.warnings))

        try:
            return await self.gate.with_permission(context, Action.CREATE, create)
        except PermissionDeniedError as exc:
            return OperationResult.from_denial(exc)

    async def update_purchase_order(
        self,
        context: Optional[CallerContext],
        order_id: uuid.UUID,
        data: PurchaseOrderUpdate,
        timeout: Optional[float] = None,
    ) -> OperationResult:
        fields = data.model_dump(exclude_unset=True)

        async def body(order: PurchaseOrder) -> OperationResult:
            raw_items = (
                data.items
                if data.items is not None
                else [
                    PurchaseOrderItemCreate(
                        product_id=item.product_id,
                        product_name=item.product_name,
                        quantity=item.quantity,
                        unit_cost_cents=item.unit_cost_cents,
                    )
                    for item in order.items
                ]
            )
            tax_cents = data.tax_cents if data.tax_cents is not None else order.tax_cents
            supplier_id = fields.get("supplier_id", order.supplier_id)
            validation = self.validator.validate(order, ItemSetChange(
                items=list(raw_items),
                supplier_id=supplier_id,
                tax_cents=tax_cents,
                declared_total_cents=data.total_cents,
                order_date=fields.get("order_date", order.order_date),
                expected_delivery_date=fields.get(
                    "expected_delivery_date", order.expected_delivery_date
                ),
            ))
            if not validation.is_valid:
                return OperationResult.invalid(order, validation)

            changes: dict[str, Any] = {
                key: value
                for key, value in fields.items()
                if key not in ("items", "total_cents")
            }
            if changes.get("tax_cents", 0) is None:
                del changes["tax_cents"]
            if data.items is not None:
                changes["items"] = [
                    i.model_dump() for i in self._build_items(data.items, existing=order)
                ]
            after = order.with_changes(**changes)
            saved = await self._commit(order, after, timeout=timeout)
            await self._record_change(
                context, "po_updated", order, saved, metadata={"fields": sorted(fields)}
            )
            return OperationResult(success=True, order=saved, warnings=list(validation.warnings))

        return await self._locked(context, Action.EDIT, order_id, body, "update", timeout=timeout)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def submit_for_approval(
        self,
        context: Optional[CallerContext],
        order_id: uuid.UUID,
        reason: Optional[str] = None,
        timeout: Optional[float] = None,
    ) -> OperationResult:
        return await self._change_status(
            context, order_id, Status.PENDING_APPROVAL, Action.EDIT, "submitted",
            reason=reason, check_status=False, timeout=timeout,
        )

    async def approve(
        self,
        context: Optional[CallerContext],
        order_id: uuid.UUID,
        notes: Optional[str] = None,
        timeout: Optional[float] = None,
    ) -> OperationResult:
        async def body(order: PurchaseOrder) -> OperationResult:
            overridden = context.emergency_access and self.settings.EMERGENCY_ACCESS_ENABLED
            validation = self.validator.validate(order, ApprovalChange(
                approver_id=context.user_id,
                approver_role=context.role,
                amount_cents=order.total_cents,
                emergency_override=overridden,
            ))
            if not validation.is_valid:
                return OperationResult.invalid(order, validation)

            now = utcnow()
            path = status_graph.path_to(order.status, Status.APPROVED) or []
            after = order.with_changes(
                status=Status.APPROVED, approved_by=context.user_id, approved_at=now
            )
            transitions = self._transitions_for(order, path, context, notes)
            approval = ApprovalRecord(
                purchase_order_id=order.id,
                approver_id=context.user_id,
                approver_role=context.role,
                decision=ApprovalDecision.APPROVED,
                timestamp=now,
                amount_cents=order.total_cents,
                approval_level=1,
                notes=notes,
            )
            saved = await self._commit(order, after, transitions, approval=approval, timeout=timeout)
            await self._record_change(
                context, "po_approved", order, saved, notes,
                metadata={"amount_cents": order.total_cents, "emergency_override": overridden},
            )
            return OperationResult(
                success=True,
                order=saved,
                warnings=list(validation.warnings),
                transitions=transitions,
            )

        return await self._locked(context, Action.APPROVE, order_id, body, "approve", timeout=timeout)

    async def reject(
        self,
        context: Optional[CallerContext],
        order_id: uuid.UUID,
        reason: Optional[str] = None,
        timeout: Optional[float] = None,
    ) -> OperationResult:
        """Send a pending order back to draft, recording a rejected approval."""

        async def body(order: PurchaseOrder) -> OperationResult:
            validation = self.validator.validate(order, StatusChange(to_status=Status.DRAFT))
            if not validation.is_valid:
                return OperationResult.invalid(order, validation)

            after = order.with_changes(status=Status.DRAFT)
            transitions = self._transitions_for(order, [Status.DRAFT], context, reason)
            approval = ApprovalRecord(
                purchase_order_id=order.id,
                approver_id=context.user_id,
                approver_role=context.role,
                decision=ApprovalDecision.REJECTED,
                amount_cents=order.total_cents,
                notes=reason,
            )
            saved = await self._commit(order, after, transitions, approval=approval, timeout=timeout)
            await self._record_change(context, "po_rejected", order, saved, reason)
            return OperationResult(success=True, order=saved, transitions=transitions)

        return await self._locked(context, Action.APPROVE, order_id, body, "reject", timeout=timeout)

    async def send_to_supplier(
        self,
        context: Optional[CallerContext],
        order_id: uuid.UUID,
        reason: Optional[str] = None,
        timeout: Optional[float] = None,
    ) -> OperationResult:
        return await self._change_status(
            context, order_id, Status.SENT_TO_SUPPLIER, Action.EDIT, "sent",
            reason=reason, check_status=False, timeout=timeout,
        )

    async def cancel(
        self,
        context: Optional[CallerContext],
        order_id: uuid.UUID,
        reason: Optional[str] = None,
        timeout: Optional[float] = None,
    ) -> OperationResult:
        return await self._change_status(
            context, order_id, Status.CANCELLED, Action.CANCEL, "cancelled",
            reason=reason, timeout=timeout,
        )

    async def close(
        self,
        context: Optional[CallerContext],
        order_id: uuid.UUID,
        reason: Optional[str] = None,
        timeout: Optional[float] = None,
    ) -> OperationResult:
        return await self._change_status(
            context, order_id, Status.CLOSED, Action.EDIT, "closed",
            reason=reason, check_status=False, timeout=timeout,
        )

    # ------------------------------------------------------------------
    # Receiving
    # ------------------------------------------------------------------

    async def receive(
        self,
        context: Optional[CallerContext],
        order_id: uuid.UUID,
        items: Optional[Sequence[ReceivedItemInput]] = None,
        notes: Optional[str] = None,
        timeout: Optional[float] = None,
    ) -> OperationResult:
        """Record a goods receipt. `items=None` receives everything still pending."""

        async def body(order: PurchaseOrder) -> OperationResult:
            reconciliation = self.receiving.reconcile(order, items, context, notes=notes)
            if not reconciliation.success:
                return OperationResult(
                    success=False,
                    order=order,
                    errors=reconciliation.errors,
                    warnings=reconciliation.warnings,
                )

            record = reconciliation.receiving_record
            transitions = self._transitions_for(
                order,
                reconciliation.status_path,
                context,
                reason=notes,
                metadata={"receiving_record_id": str(record.id)},
            )
            saved = await self._commit(
                order,
                reconciliation.order,
                transitions,
                receiving_record=record,
                adjustments=reconciliation.stock_adjustments,
                timeout=timeout,
            )
            await self._record_change(
                context, "po_received", order, saved, notes,
                metadata={
                    "receiving_record_id": str(record.id),
                    "total_quantity": record.total_quantity,
                    "auto": items is None,
                },
            )
            await self._dispatch_stock(reconciliation.stock_adjustments, timeout)
            return OperationResult(
                success=True,
                order=saved,
                warnings=reconciliation.warnings,
                receiving_record=record,
                stock_adjustments=reconciliation.stock_adjustments,
                transitions=transitions,
            )

        # Status is judged by the receiving rules so a completed or cancelled
        # order reports a quantity/status conflict rather than a denial.
        return await self._locked(
            context, Action.RECEIVE, order_id, body, "receive", check_status=False, timeout=timeout
        )

    async def dispatch_pending_stock(self) -> List[str]:
        """Re-apply committed stock instructions that were not dispatched yet."""
        pending = await self.repository.pending_stock_instructions()
        if not pending:
            return []
        logger.info("stock_dispatch_retry", pending=len(pending))
        return await self._dispatch_stock(pending)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    @staticmethod
    def get_valid_transitions(status: Union[str, Status]) -> List[str]:
        return sorted(s.value for s in status_graph.valid_transitions(status))

    async def get_user_actions(
        self,
        context: Optional[CallerContext],
        order: Union[PurchaseOrder, uuid.UUID],
    ) -> List[str]:
        if not isinstance(order, PurchaseOrder):
            order = await self._persist(self.repository.load_order(order))
        return self.gate.user_actions(context, order)

    async def get_purchase_order(
        self, context: Optional[CallerContext], order_id: uuid.UUID
    ) -> OperationResult:
        order = None
        if context is not None:
            order = await self._persist(self.repository.load_order(order_id))

        async def view() -> OperationResult:
            return OperationResult(success=True, order=order)

        try:
            return await self.gate.with_permission(context, Action.VIEW, view, order=order)
        except PermissionDeniedError as exc:
            return OperationResult.from_denial(exc)

    async def get_history(
        self, context: Optional[CallerContext], order_id: uuid.UUID
    ) -> OperationResult:
        order = None
        if context is not None:
            order = await self._persist(self.repository.load_order(order_id))

        async def history() -> OperationResult:
            result = OrderHistory(
                transitions=await self.repository.list_status_transitions(order_id),
                receiving_records=await self.repository.list_receiving_records(order_id),
                approval_records=await self.repository.list_approval_records(order_id),
            )
            # Visibility filter inside an audited history read; not recorded itself.
            if self.gate.check(context, Action.VIEW_AUDIT_TRAIL, order).allowed:
                result.audit_events = await self.audit.list_events(str(order_id))
            return OperationResult(success=True, order=order, history=result)

        try:
            return await self.gate.with_permission(context, Action.VIEW_HISTORY, history, order=order)
        except PermissionDeniedError as exc:
            return OperationResult.from_denial(exc, order)
