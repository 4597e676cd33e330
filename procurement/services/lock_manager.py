"""Named asyncio locks with bounded waits and canonical acquisition order."""

import asyncio
from contextlib import AsyncExitStack, asynccontextmanager
from typing import AsyncIterator, Dict, Optional

import structlog

from procurement.config import settings
from procurement.errors import LockTimeoutError

logger = structlog.get_logger()


def order_key(order_id) -> str:
    return f"po:{order_id}"


def product_key(product_id) -> str:
    return f"product:{product_id}"


class LockManager:
    def __init__(self, default_timeout: Optional[float] = None):
        self.default_timeout = (
            settings.LOCK_TIMEOUT_SECONDS if default_timeout is None else default_timeout
        )
        self._locks: Dict[str, asyncio.Lock] = {}
        # Holders plus waiters per key; an entry is dropped when it reaches 0.
        self._users: Dict[str, int] = {}

    def _checkout(self, key: str) -> asyncio.Lock:
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
        self._users[key] = self._users.get(key, 0) + 1
        return lock

    def _checkin(self, key: str) -> None:
        remaining = self._users[key] - 1
        if remaining:
            self._users[key] = remaining
        else:
            del self._users[key]
            del self._locks[key]

    def active_keys(self) -> list[str]:
        return sorted(self._locks)

    def is_locked(self, key: str) -> bool:
        lock = self._locks.get(key)
        return lock is not None and lock.locked()

    @asynccontextmanager
    async def acquire(self, *keys: str, timeout: Optional[float] = None) -> AsyncIterator[None]:
        """Hold every key for the duration of the block.

        Keys are de-duplicated and taken in sorted order, so two callers
        asking for overlapping sets cannot deadlock. Locks already taken are
        released if a later one times out. A key's lock is discarded once
        nobody holds or waits for it.
        """
        timeout = self.default_timeout if timeout is None else timeout
        async with AsyncExitStack() as stack:
            for key in sorted(set(keys)):
                lock = self._checkout(key)
                stack.callback(self._checkin, key)
                try:
                    await asyncio.wait_for(lock.acquire(), timeout=timeout)
                except asyncio.TimeoutError:
                    logger.warning("lock_timeout", key=key, timeout=timeout)
                    raise LockTimeoutError(
                        f"Timed out after {timeout}s waiting for {key}",
                        metadata={"key": key, "timeout_seconds": timeout},
                    ) from None
                stack.callback(lock.release)
            yield
