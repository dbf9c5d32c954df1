"""In-process named locks serializing reconciliations of the same resource."""

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Dict, Optional

from .errors import LockTimeoutError

logger = logging.getLogger(__name__)

DEFAULT_LOCK_TIMEOUT = 60.0


def lock_name(kind: str, namespace: str, name: str) -> str:
    return f'lock::{namespace}::{kind}::{name}'


class LockManager:
    """Table of ``asyncio.Lock`` keyed by name.

    Entries exist only while at least one task holds or waits for the lock,
    so the table does not grow with the number of resources ever seen.
    """

    def __init__(self, default_timeout: float = DEFAULT_LOCK_TIMEOUT):
        self.default_timeout = default_timeout
        self._locks: Dict[str, asyncio.Lock] = {}
        self._users: Dict[str, int] = {}

    @asynccontextmanager
    async def acquire(self, name: str, timeout: Optional[float] = None) -> AsyncIterator[None]:
        timeout = self.default_timeout if timeout is None else timeout
        lock = self._locks.setdefault(name, asyncio.Lock())
        self._users[name] = self._users.get(name, 0) + 1
        try:
            try:
                await asyncio.wait_for(lock.acquire(), timeout)
            except asyncio.TimeoutError:
                raise LockTimeoutError(name, timeout) from None
            logger.debug(f"Lock {name} acquired")
            try:
                yield
            finally:
                lock.release()
                logger.debug(f"Lock {name} released")
        finally:
            self._users[name] -= 1
            if self._users[name] == 0:
                del self._users[name]
                del self._locks[name]

    def is_locked(self, name: str) -> bool:
        lock = self._locks.get(name)
        return lock is not None and lock.locked()

    def __len__(self) -> int:
        return len(self._locks)
