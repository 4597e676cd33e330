from typing import Optional

from sqlalchemy.ext.asyncio import (
    AsyncSession,
    AsyncEngine,
    create_async_engine,
    async_sessionmaker,
)
from sqlalchemy.orm import DeclarativeBase
from sqlalchemy import text
from procurement.config import settings
import structlog

logger = structlog.get_logger()


class Base(DeclarativeBase):
    pass


def _get_db_url() -> str:
    """Strip sslmode from URL since asyncpg uses connect_args for SSL."""
    url = settings.DATABASE_URL
    url = url.replace("?sslmode=require", "").replace("&sslmode=require", "")
    return url


def _engine_kwargs(url: str) -> dict:
    kwargs: dict = {"echo": settings.DEBUG, "pool_pre_ping": True}
    if url.startswith("sqlite"):
        return kwargs
    kwargs.update(
        pool_size=settings.DB_POOL_SIZE,
        max_overflow=settings.DB_MAX_OVERFLOW,
        pool_timeout=30,
        pool_recycle=settings.DB_POOL_RECYCLE,
    )
    if settings.DB_REQUIRE_SSL:
        kwargs["connect_args"] = {"ssl": "require"}
    return kwargs


_engine: Optional[AsyncEngine] = None
_sessionmaker: Optional[async_sessionmaker] = None


def get_engine() -> AsyncEngine:
    global _engine
    if _engine is None:
        url = _get_db_url()
        _engine = create_async_engine(url, **_engine_kwargs(url))
    return _engine


def get_sessionmaker() -> async_sessionmaker:
    global _sessionmaker
    if _sessionmaker is None:
        _sessionmaker = async_sessionmaker(
            get_engine(), class_=AsyncSession, expire_on_commit=False
        )
    return _sessionmaker


async def get_db():
    async with get_sessionmaker()() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


async def init_db():
    import procurement.models  # noqa: F401  (registers tables on Base.metadata)

    async with get_engine().begin() as conn:
        await conn.execute(text("SELECT 1"))
        if settings.AUTO_CREATE_TABLES:
            await conn.run_sync(Base.metadata.create_all)
        logger.info("db_connected", auto_create=settings.AUTO_CREATE_TABLES)


async def close_db():
    global _engine, _sessionmaker
    if _engine is not None:
        await _engine.dispose()
    _engine = None
    _sessionmaker = None
    logger.info("db_disconnected")
