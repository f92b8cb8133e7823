"""
Mutual exclusion providers for stampede protection.

``try_lock`` waits up to ``timeout`` seconds and returns an opaque handle,
or None when the lock stayed busy. ``unlock`` releases a handle.
"""

import asyncio
from abc import ABC, abstractmethod
from typing import Any, Dict, Optional

from redis.asyncio import Redis
from redis.exceptions import LockError, LockNotOwnedError, RedisError

from ..exceptions import CacheUnavailableError
from ..logging_config import get_logger


class LockProvider(ABC):

    @abstractmethod
    async def try_lock(self, name: str, timeout: float) -> Optional[Any]:
        ...

    @abstractmethod
    async def unlock(self, handle: Any) -> None:
        ...


class RedisLockProvider(LockProvider):
    """Distributed lock on top of redis-py's Lock; leases expire after ``lease`` seconds."""

    def __init__(self, client: Redis, lease: float = 30.0):
        self.client = client
        self.lease = lease
        self.logger = get_logger(__name__, 'redis_lock')

    async def try_lock(self, name: str, timeout: float) -> Optional[Any]:
        lock = self.client.lock(name, timeout=self.lease, blocking_timeout=timeout)
        try:
            acquired = await lock.acquire()
        except (LockError, RedisError, OSError) as e:
            raise CacheUnavailableError(f"Lock acquisition failed: {e}", key=name, operation='lock') from e
        return lock if acquired else None

    async def unlock(self, handle: Any) -> None:
        try:
            await handle.release()
        except LockNotOwnedError:
            self.logger.warning(
                "Lock lease expired before release", operation="unlock", lock_name=handle.name,
            )
        except (LockError, RedisError, OSError) as e:
            # The lease expires on its own
            self.logger.warning(f"Lock release failed: {e}", operation="unlock", lock_name=handle.name)


class LocalLockProvider(LockProvider):
    """In-process locks for single-process deployments and L1-only caches."""

    def __init__(self):
        self._locks: Dict[str, asyncio.Lock] = {}
        self._holders: Dict[str, int] = {}

    async def try_lock(self, name: str, timeout: float) -> Optional[Any]:
        lock = self._locks.setdefault(name, asyncio.Lock())
        self._holders[name] = self._holders.get(name, 0) + 1
        acquire = asyncio.ensure_future(lock.acquire())
        try:
            await asyncio.wait({acquire}, timeout=timeout)
        except BaseException:
            self._abandon(name, lock, acquire)
            raise
        if acquire.done() and not acquire.cancelled():
            return name
        self._abandon(name, lock, acquire)
        return None

    def _abandon(self, name: str, lock: asyncio.Lock, acquire: asyncio.Future) -> None:
        # A grant that lands together with the timeout must not stay held
        if not acquire.done():
            acquire.cancel()
        elif not acquire.cancelled():
            lock.release()
        self._release_reference(name)

    async def unlock(self, handle: Any) -> None:
        lock = self._locks.get(handle)
        if lock is None or not lock.locked():
            return
        lock.release()
        self._release_reference(handle)

    def _release_reference(self, name: str) -> None:
        remaining = self._holders.get(name, 0) - 1
        if remaining > 0:
            self._holders[name] = remaining
        else:
            self._holders.pop(name, None)
            self._locks.pop(name, None)
