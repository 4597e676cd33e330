"""
Role policy for purchase orders.

Each role has a fixed set of allowed actions and, for approvers, a ceiling
on the order total they may approve (cents; None or 0 means no cap).
Actions are additionally restricted by the order's current status.
"""

from dataclasses import dataclass
from typing import Optional

from procurement.config import Settings, settings as default_settings
from procurement.schemas.enums import PurchaseOrderAction as A
from procurement.schemas.enums import PurchaseOrderStatus as S
from procurement.schemas.enums import UserRole


@dataclass(frozen=True)
class RolePolicy:
    role: UserRole
    actions: frozenset[A]
    approval_ceiling_cents: Optional[int] = None

    def allows(self, action: A) -> bool:
        return action in self.actions

    @property
    def has_ceiling(self) -> bool:
        return bool(self.approval_ceiling_cents)


ALL_ACTIONS = frozenset(A)

_ROLE_ACTIONS: dict[UserRole, frozenset[A]] = {
    UserRole.ADMIN: ALL_ACTIONS,
    UserRole.MANAGER: ALL_ACTIONS,
    UserRole.PURCHASER: frozenset({A.CREATE, A.VIEW, A.EDIT, A.CANCEL, A.VIEW_HISTORY}),
    UserRole.WAREHOUSE: frozenset({A.VIEW, A.RECEIVE, A.VIEW_HISTORY}),
    UserRole.ACCOUNTANT: frozenset({A.VIEW, A.VIEW_HISTORY, A.VIEW_AUDIT_TRAIL}),
    UserRole.CASHIER: frozenset({A.VIEW}),
    UserRole.EMPLOYEE: frozenset({A.VIEW, A.APPROVE, A.RECEIVE}),
}

STATUS_ACTIONS: dict[S, frozenset[A]] = {
    S.DRAFT: frozenset({A.VIEW, A.EDIT, A.APPROVE, A.CANCEL, A.VIEW_HISTORY}),
    S.PENDING_APPROVAL: frozenset({A.VIEW, A.EDIT, A.APPROVE, A.CANCEL, A.VIEW_HISTORY}),
    S.APPROVED: frozenset({A.VIEW, A.RECEIVE, A.CANCEL, A.VIEW_HISTORY, A.VIEW_AUDIT_TRAIL}),
    S.SENT_TO_SUPPLIER: frozenset({A.VIEW, A.RECEIVE, A.CANCEL, A.VIEW_HISTORY, A.VIEW_AUDIT_TRAIL}),
    S.PARTIALLY_RECEIVED: frozenset({A.VIEW, A.RECEIVE, A.VIEW_HISTORY, A.VIEW_AUDIT_TRAIL}),
    S.FULLY_RECEIVED: frozenset({A.VIEW, A.VIEW_HISTORY, A.VIEW_AUDIT_TRAIL}),
    S.CANCELLED: frozenset({A.VIEW, A.VIEW_HISTORY, A.VIEW_AUDIT_TRAIL}),
    S.CLOSED: frozenset({A.VIEW, A.VIEW_HISTORY, A.VIEW_AUDIT_TRAIL}),
}

# Actions reported by get_user_actions
USER_FACING_ACTIONS = (A.VIEW, A.EDIT, A.APPROVE, A.RECEIVE, A.CANCEL, A.VIEW_HISTORY)


class PolicyTable:
    def __init__(self, settings: Optional[Settings] = None):
        cfg = settings or default_settings
        ceilings = {
            UserRole.MANAGER: cfg.APPROVAL_CEILING_MANAGER_CENTS,
            UserRole.EMPLOYEE: cfg.APPROVAL_CEILING_EMPLOYEE_CENTS,
        }
        self._policies = {
            role: RolePolicy(
                role=role,
                actions=actions,
                approval_ceiling_cents=ceilings.get(role) or None,
            )
            for role, actions in _ROLE_ACTIONS.items()
        }

    def policy_for(self, role) -> Optional[RolePolicy]:
        try:
            return self._policies[UserRole(role)]
        except ValueError:
            return None

    def role_allows(self, role, action: A) -> bool:
        policy = self.policy_for(role)
        return policy is not None and policy.allows(A(action))

    def approval_ceiling(self, role) -> Optional[int]:
        policy = self.policy_for(role)
        return policy.approval_ceiling_cents if policy else None

    def within_ceiling(self, role, amount_cents: int) -> bool:
        ceiling = self.approval_ceiling(role)
        return not ceiling or amount_cents <= ceiling

    @staticmethod
    def status_allows(status, action: A) -> bool:
        action = A(action)
        if action == A.CREATE:
            return True
        return action in STATUS_ACTIONS[S.parse(status)]

    @staticmethod
    def actions_for_status(status) -> frozenset[A]:
        return STATUS_ACTIONS[S.parse(status)]


policy_table = PolicyTable()
