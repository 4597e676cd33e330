from datetime import date
from typing import Optional

import pytest

from procurement.config import Settings
from procurement.repositories.memory import InMemoryPurchaseOrderRepository
from procurement.schemas.context import CallerContext
from procurement.schemas.enums import UserRole
from procurement.schemas.purchase_order import PurchaseOrderCreate, PurchaseOrderItemCreate
from procurement.services.audit_service import InMemoryAuditRecorder
from procurement.services.inventory_service import InMemoryInventoryService
from procurement.services.lock_manager import LockManager
from procurement.services.purchase_order_service import PurchaseOrderService

TODAY = date(2026, 3, 2)


def caller(role: str, user_id: Optional[str] = None, **kwargs) -> CallerContext:
    return CallerContext(
        user_id=user_id or f"{role}-1",
        role=UserRole(role),
        email=f"{role}@example.com",
        **kwargs,
    )


@pytest.fixture
def settings():
    return Settings(
        APPROVAL_CEILING_MANAGER_CENTS=10_000_000,
        APPROVAL_CEILING_EMPLOYEE_CENTS=2_500_000,
        EMERGENCY_ACCESS_ENABLED=False,
        LOCK_TIMEOUT_SECONDS=1.0,
        PERSISTENCE_TIMEOUT_SECONDS=2.0,
        CONFLICT_RETRY_ATTEMPTS=3,
    )


@pytest.fixture
def repository():
    return InMemoryPurchaseOrderRepository()


@pytest.fixture
def inventory():
    return InMemoryInventoryService()


@pytest.fixture
def audit():
    return InMemoryAuditRecorder()


@pytest.fixture
def service(repository, inventory, audit, settings):
    return PurchaseOrderService(
        repository,
        inventory,
        audit=audit,
        locks=LockManager(settings.LOCK_TIMEOUT_SECONDS),
        settings=settings,
        today=lambda: TODAY,
    )


@pytest.fixture
def purchaser():
    return caller("purchaser")


@pytest.fixture
def manager():
    return caller("manager")


@pytest.fixture
def warehouse():
    return caller("warehouse")


@pytest.fixture
def admin():
    return caller("admin")


@pytest.fixture
def order_factory(service, purchaser, manager):
    """Create an order (and optionally approve it) through the service."""

    async def make(items=None, approve=True, tax_cents=0, **fields):
        items = items or [("SKU-A", 10, 500)]
        data = PurchaseOrderCreate(
            supplier_id=fields.pop("supplier_id", "SUP-1"),
            items=[
                PurchaseOrderItemCreate(product_id=pid, quantity=qty, unit_cost_cents=cost)
                for pid, qty, cost in items
            ],
            tax_cents=tax_cents,
            **fields,
        )
        created = await service.create_purchase_order(purchaser, data)
        assert created.success, created.error_codes
        if not approve:
            return created.order
        approved = await service.approve(manager, created.order.id)
        assert approved.success, approved.error_codes
        return approved.order

    return make


@pytest.fixture
def make_caller():
    return caller


@pytest.fixture
def today():
    return TODAY
