"""
Purchase order status transition graph.

Happy path:
    draft → pending_approval → approved → sent_to_supplier
          → partially_received → fully_received → closed

approved may skip sent_to_supplier; sent_to_supplier may complete in one
receipt; pending_approval may fall back to draft. Anything before
partially_received can be cancelled. cancelled and closed are terminal.
"""

from collections import deque
from typing import Mapping, Optional

from procurement.schemas.enums import PurchaseOrderStatus as S
from procurement.schemas.purchase_order import PurchaseOrder

VALID_TRANSITIONS: dict[S, frozenset[S]] = {
    S.DRAFT: frozenset({S.PENDING_APPROVAL, S.CANCELLED}),
    S.PENDING_APPROVAL: frozenset({S.APPROVED, S.DRAFT, S.CANCELLED}),
    S.APPROVED: frozenset({S.SENT_TO_SUPPLIER, S.PARTIALLY_RECEIVED, S.CANCELLED}),
    S.SENT_TO_SUPPLIER: frozenset({S.PARTIALLY_RECEIVED, S.FULLY_RECEIVED, S.CANCELLED}),
    S.PARTIALLY_RECEIVED: frozenset({S.FULLY_RECEIVED}),
    S.FULLY_RECEIVED: frozenset({S.CLOSED}),
    S.CANCELLED: frozenset(),
    S.CLOSED: frozenset(),
}

TERMINAL_STATUSES = frozenset({S.CANCELLED, S.CLOSED})
RECEIVABLE_STATUSES = frozenset({S.APPROVED, S.SENT_TO_SUPPLIER, S.PARTIALLY_RECEIVED})
APPROVABLE_STATUSES = frozenset({S.DRAFT, S.PENDING_APPROVAL})


def valid_transitions(status) -> frozenset[S]:
    return VALID_TRANSITIONS[S.parse(status)]


def is_valid_transition(from_status, to_status) -> bool:
    return S.parse(to_status) in valid_transitions(from_status)


def is_final_state(status) -> bool:
    return not valid_transitions(status)


def path_to(from_status, to_status) -> Optional[list[S]]:
    """Shortest chain of legal moves from one status to another.

    Returns the statuses visited after `from_status`, ending with
    `to_status`; an empty list when they are equal; None when unreachable.
    """
    start, goal = S.parse(from_status), S.parse(to_status)
    if start == goal:
        return []
    previous: dict[S, S] = {}
    queue = deque([start])
    seen = {start}
    while queue:
        current = queue.popleft()
        # sorted() keeps the chosen path deterministic
        for nxt in sorted(VALID_TRANSITIONS[current], key=lambda s: s.value):
            if nxt in seen:
                continue
            previous[nxt] = current
            if nxt == goal:
                path = [nxt]
                while path[-1] in previous and previous[path[-1]] != start:
                    path.append(previous[path[-1]])
                return list(reversed(path))
            seen.add(nxt)
            queue.append(nxt)
    return None


def is_reachable_from_draft(status) -> bool:
    return path_to(S.DRAFT, status) is not None


def next_logical_status(
    order: PurchaseOrder,
    received_quantities: Optional[Mapping[str, int]] = None,
) -> Optional[S]:
    """Suggest the status implied by received versus ordered quantities.

    `received_quantities` maps product id to cumulative received units; when
    omitted the order items' own `received_quantity` values are used.
    Terminal orders return None. An order with nothing received keeps its
    current status.
    """
    if order.status in TERMINAL_STATUSES:
        return None
    if not order.items:
        return order.status

    def received(item) -> int:
        if received_quantities is None:
            return item.received_quantity
        return int(received_quantities.get(item.product_id, 0))

    if all(received(item) == item.quantity for item in order.items):
        return S.FULLY_RECEIVED
    if any(received(item) > 0 for item in order.items):
        return S.PARTIALLY_RECEIVED
    return order.status
