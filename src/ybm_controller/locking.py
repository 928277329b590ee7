"""Keyed per-resource locking for the orchestration layer.

The reconcilers assume no two mutating passes run against the same remote
resource at once. The engine enforces that within one process by holding a
keyed asyncio.Lock for the duration of every mutating pass.

Keys are "<Kind>/<name>" (e.g. "Cluster/orders-db").

For serialization across processes or hosts an external lease is required;
this module does not provide one.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from .config import DEFAULT_LOCK_TIMEOUT_SECONDS
from .errors import LockTimeoutError

logger = logging.getLogger(__name__)


def resource_key(kind: str, name: str) -> str:
    return f"{kind}/{name}"


class ResourceLockManager:
    """One asyncio.Lock per resource key, acquired with a timeout.

    Example:
        locks = ResourceLockManager(timeout_seconds=30)
        async with locks.hold("Cluster/orders-db"):
            ...  # mutate
    """

    def __init__(self, timeout_seconds: float = DEFAULT_LOCK_TIMEOUT_SECONDS) -> None:
        self._timeout_seconds = timeout_seconds
        self._locks: dict[str, asyncio.Lock] = {}
        # Holders plus waiters per key; a key is dropped when this reaches zero
        self._users: dict[str, int] = {}

    def is_locked(self, key: str) -> bool:
        lock = self._locks.get(key)
        return lock is not None and lock.locked()

    def tracked_keys(self) -> set[str]:
        return set(self._locks)

    async def acquire(self, key: str) -> None:
        """Acquire the lock for key.

        Raises:
            LockTimeoutError: If the lock is not acquired within the timeout.
        """
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._users[key] = self._users.get(key, 0) + 1

        try:
            await asyncio.wait_for(lock.acquire(), timeout=self._timeout_seconds)
        except TimeoutError as e:
            self._forget(key)
            raise LockTimeoutError(
                f"Timeout acquiring lock for {key} after {self._timeout_seconds}s; "
                "another pass is mutating this resource"
            ) from e
        except asyncio.CancelledError:
            self._forget(key)
            raise

        logger.debug("Acquired resource lock", extra={"resource_key": key})

    def release(self, key: str) -> None:
        lock = self._locks.get(key)
        if lock is not None and lock.locked():
            lock.release()
            self._forget(key)
            logger.debug("Released resource lock", extra={"resource_key": key})

    def _forget(self, key: str) -> None:
        remaining = self._users.get(key, 0) - 1
        if remaining > 0:
            self._users[key] = remaining
            return
        self._users.pop(key, None)
        self._locks.pop(key, None)

    @asynccontextmanager
    async def hold(self, key: str) -> AsyncIterator[None]:
        await self.acquire(key)
        try:
            yield
        finally:
            self.release(key)
