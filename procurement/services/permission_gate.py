# procurement/services/permission_gate.py
"""
Permission gate for purchase order actions.

`check` is a pure function of (caller, action, order, amount). `with_permission`
adds the audit side effect and only invokes the wrapped operation when the
check allows it; otherwise it raises PermissionDeniedError.

Decision order:
  1. No caller context           -> AUTHENTICATION_REQUIRED
  2. Role lacks the action       -> action-specific denial code
  3. Order status forbids it     -> action-specific denial code
  4. approve above role ceiling  -> APPROVAL_LIMIT_EXCEEDED
A server-enabled emergency-access claim turns a denial from 2-4 into an
audited override.
"""

from dataclasses import dataclass, field
from typing import Awaitable, Callable, List, Optional, TypeVar

import structlog

from procurement.config import Settings, settings as default_settings
from procurement.errors import ErrorCode, PermissionDeniedError
from procurement.schemas.context import CallerContext
from procurement.schemas.enums import PurchaseOrderAction
from procurement.schemas.purchase_order import PurchaseOrder
from procurement.services.audit_service import AuditRecorder, build_event
from procurement.services.policy_table import (
    USER_FACING_ACTIONS,
    PolicyTable,
    policy_table as default_policy,
)

logger = structlog.get_logger()

T = TypeVar("T")

EMERGENCY_OVERRIDE_REASON = "emergency_override"

_DENIAL_CODES = {
    PurchaseOrderAction.APPROVE: ErrorCode.APPROVAL_NOT_ALLOWED,
    PurchaseOrderAction.RECEIVE: ErrorCode.RECEIVING_NOT_ALLOWED,
    PurchaseOrderAction.CANCEL: ErrorCode.CANCELLATION_NOT_ALLOWED,
}


def denial_code_for(action: PurchaseOrderAction) -> ErrorCode:
    return _DENIAL_CODES.get(action, ErrorCode.INSUFFICIENT_PERMISSIONS)


@dataclass(frozen=True)
class PermissionDecision:
    allowed: bool
    action: PurchaseOrderAction
    code: Optional[ErrorCode] = None
    message: Optional[str] = None
    emergency_override: bool = False
    metadata: dict = field(default_factory=dict)

    @property
    def reason(self) -> Optional[str]:
        if self.emergency_override:
            return EMERGENCY_OVERRIDE_REASON
        return self.message

    def to_error(self) -> PermissionDeniedError:
        return PermissionDeniedError(self.code, self.message, self.metadata)


class PermissionGate:
    def __init__(
        self,
        audit: Optional[AuditRecorder] = None,
        policy: Optional[PolicyTable] = None,
        settings: Optional[Settings] = None,
    ):
        self.audit = audit
        self.policy = policy or default_policy
        self.settings = settings or default_settings

    def check(
        self,
        context: Optional[CallerContext],
        action,
        order: Optional[PurchaseOrder] = None,
        amount_cents: Optional[int] = None,
        check_status: bool = True,
    ) -> PermissionDecision:
        """Pure decision, nothing is recorded; `with_permission` audits.

        `check_status=False` skips the status table; lifecycle moves gated as
        `edit` (submit, send, close) and receipts are then judged by the
        status graph and the receiving rules.
        """
        action = PurchaseOrderAction(action)
        if context is None:
            return PermissionDecision(
                allowed=False,
                action=action,
                code=ErrorCode.AUTHENTICATION_REQUIRED,
                message="Authentication required",
            )

        denial = self._evaluate(context, action, order, amount_cents, check_status)
        if denial is None:
            return PermissionDecision(allowed=True, action=action)

        if context.emergency_access and self.settings.EMERGENCY_ACCESS_ENABLED:
            return PermissionDecision(
                allowed=True,
                action=action,
                emergency_override=True,
                metadata={**denial.metadata, "overridden_code": denial.code.value},
            )
        return denial

    def _evaluate(
        self,
        context: CallerContext,
        action: PurchaseOrderAction,
        order: Optional[PurchaseOrder],
        amount_cents: Optional[int],
        check_status: bool = True,
    ) -> Optional[PermissionDecision]:
        role = context.role
        if not self.policy.role_allows(role, action):
            return PermissionDecision(
                allowed=False,
                action=action,
                code=denial_code_for(action),
                message=f"Role {role.value} is not allowed to {action.value} purchase orders",
                metadata={"role": role.value, "action": action.value},
            )

        if check_status and order is not None and not self.policy.status_allows(order.status, action):
            return PermissionDecision(
                allowed=False,
                action=action,
                code=denial_code_for(action),
                message=f"Cannot {action.value} a purchase order in status {order.status.value}",
                metadata={"status": order.status.value, "action": action.value},
            )

        if action == PurchaseOrderAction.APPROVE:
            amount = amount_cents
            if amount is None and order is not None:
                amount = order.total_cents
            if amount is not None and not self.policy.within_ceiling(role, amount):
                ceiling = self.policy.approval_ceiling(role)
                return PermissionDecision(
                    allowed=False,
                    action=action,
                    code=ErrorCode.APPROVAL_LIMIT_EXCEEDED,
                    message=(
                        f"Order total {amount} exceeds the approval limit "
                        f"{ceiling} for role {role.value}"
                    ),
                    metadata={
                        "role": role.value,
                        "amount_cents": amount,
                        "ceiling_cents": ceiling,
                    },
                )
        return None

    async def with_permission(
        self,
        context: Optional[CallerContext],
        action,
        operation: Callable[[], Awaitable[T]],
        order: Optional[PurchaseOrder] = None,
        amount_cents: Optional[int] = None,
        check_status: bool = True,
    ) -> T:
        decision = self.check(context, action, order, amount_cents, check_status)
        await self._record(context, decision, order)
        if not decision.allowed:
            raise decision.to_error()
        return await operation()

    async def _record(
        self,
        context: Optional[CallerContext],
        decision: PermissionDecision,
        order: Optional[PurchaseOrder],
    ) -> None:
        entity_id = str(order.id) if order is not None else None
        log_kwargs = dict(
            action=decision.action.value,
            po_id=entity_id,
            user_id=context.user_id if context else None,
            role=context.role.value if context else None,
        )
        if decision.emergency_override:
            logger.warning(
                "permission_emergency_override", **log_kwargs, overridden=decision.metadata
            )
        elif decision.allowed:
            logger.debug("permission_granted", **log_kwargs)
        else:
            logger.info("permission_denied", **log_kwargs, code=decision.code.value)

        if self.audit is None:
            return
        await self.audit.record(build_event(
            action=f"permission_check:{decision.action.value}",
            context=context,
            entity_id=entity_id,
            decision="allowed" if decision.allowed else "denied",
            reason=decision.reason,
            metadata={
                **decision.metadata,
                **({"code": decision.code.value} if decision.code else {}),
                "emergency_override": decision.emergency_override,
            },
        ))

    def user_actions(
        self, context: Optional[CallerContext], order: PurchaseOrder
    ) -> List[str]:
        """Actions the caller may take on this specific order.

        A read-only projection for UI hints: none of these checks is audited,
        and each real attempt is gated and recorded when it is made.
        """
        return [
            action.value
            for action in USER_FACING_ACTIONS
            if self.check(context, action, order).allowed
        ]
