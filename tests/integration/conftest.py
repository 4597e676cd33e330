import pytest_asyncio
from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

import procurement.models  # noqa: F401  (registers tables on Base.metadata)
from procurement.database import Base
from procurement.repositories.sql import SqlPurchaseOrderRepository
from procurement.services.audit_service import SqlAuditRecorder
from procurement.services.inventory_service import SqlInventoryService
from procurement.services.lock_manager import LockManager
from procurement.services.purchase_order_service import PurchaseOrderService


@pytest_asyncio.fixture
async def engine(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'procurement.db'}")

    # SQLAlchemy emits BEGIN itself so SAVEPOINTs nest inside a real transaction.
    @event.listens_for(engine.sync_engine, "connect")
    def _connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine.sync_engine, "begin")
    def _begin(conn):
        conn.exec_driver_sql("BEGIN")

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest_asyncio.fixture
async def session_factory(engine):
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture
async def session(session_factory):
    async with session_factory() as session:
        yield session


@pytest_asyncio.fixture
async def sql_service(session, settings, today):
    locks = LockManager(settings.LOCK_TIMEOUT_SECONDS)
    return PurchaseOrderService(
        SqlPurchaseOrderRepository(session),
        SqlInventoryService(session, locks),
        audit=SqlAuditRecorder(session),
        locks=locks,
        settings=settings,
        today=lambda: today,
    )
