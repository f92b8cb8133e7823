"""
Stampede protection.

On a miss, concurrent callers for the same key in this process share one
load (single-flight), and across processes the loading process holds a
distributed lock so the others wait for it and then find the value.
While the shared tier is degraded the distributed lock is skipped and only
the in-process coalescing applies.
"""

import asyncio
import functools
from typing import Any, Awaitable, Callable, Dict, Optional

from ..core.contract import CacheDecorator, CacheService, Loader, call_loader, store_loaded
from ..core.keys import build_cache_key
from ..exceptions import CacheUnavailableError, LockTimeoutError
from ..logging_config import get_logger
from ..metrics_collector import get_metrics_collector

STAMPEDE_LOCK_PREFIX = "cache:stampede:"


class SingleFlightGroup:
    """
    At most one in-flight call per key. Every caller, the first included,
    awaits the same shielded task, so a cancelled caller does not cancel
    the load for the others. The entry is dropped as soon as the task ends.
    """

    def __init__(self):
        self._flights: Dict[str, asyncio.Task] = {}

    async def do(self, key: str, fn: Callable[[], Awaitable[Any]]) -> Any:
        task = self._flights.get(key)
        if task is None:
            task = asyncio.ensure_future(fn())
            self._flights[key] = task
            task.add_done_callback(functools.partial(self._forget, key))
        return await asyncio.shield(task)

    def _forget(self, key: str, task: asyncio.Task) -> None:
        if self._flights.get(key) is task:
            del self._flights[key]
        if not task.cancelled():
            # Mark the exception retrieved even if every waiter went away
            task.exception()

    def in_flight(self, key: Optional[str] = None) -> int:
        if key is not None:
            return 1 if key in self._flights else 0
        return len(self._flights)


class StampedeProtectedCache(CacheDecorator):
    """Adds coalesced, lock-guarded loading to get_or_compute; other calls pass through."""

    layer_name = "stampede"

    def __init__(self, delegate: CacheService, lock_provider, lock_timeout: float = 5.0,
                 flights: Optional[SingleFlightGroup] = None,
                 degraded: Optional[Callable[[], bool]] = None):
        super().__init__(delegate)
        self.degraded = degraded or (lambda: False)
        self.lock_provider = lock_provider
        self.lock_timeout = lock_timeout
        self.flights = flights or SingleFlightGroup()
        self.logger = get_logger(__name__, 'stampede_protection')
        self.metrics = get_metrics_collector()
        self.stats = {
            'loads': 0,
            'lock_fallbacks': 0,
            'degraded_loads': 0,
            'double_check_hits': 0,
        }

    def lock_name(self, key: str) -> str:
        return f"{STAMPEDE_LOCK_PREFIX}{build_cache_key(self.namespace, key)}"

    async def get_or_compute(self, key: str, loader: Loader, ttl: Optional[float] = None) -> Any:
        value = await self.delegate.get(key)
        if value is not None:
            return value
        return await self.flights.do(
            build_cache_key(self.namespace, key), lambda: self._load(key, loader, ttl)
        )

    async def _load(self, key: str, loader: Loader, ttl: Optional[float]) -> Any:
        if self.degraded():
            # Shared tier is down: single-flight only
            self.stats['degraded_loads'] += 1
            return await self._compute(key, loader, ttl)

        lock_name = self.lock_name(key)
        try:
            handle = await self._acquire(lock_name, key)
        except (LockTimeoutError, CacheUnavailableError) as e:
            self.stats['lock_fallbacks'] += 1
            self.metrics.get_counter('cache_stampede_lock_fallbacks_total', tags={'namespace': self.namespace}).increment()
            self.logger.warning(
                f"Loading without lock: {e}", operation="get_or_compute", namespace=self.namespace, cache_key=key,
            )
            return await self._compute(key, loader, ttl)

        try:
            value = await self.delegate.get(key)
            if value is not None:
                self.stats['double_check_hits'] += 1
                return value
            return await self._compute(key, loader, ttl)
        finally:
            await self.lock_provider.unlock(handle)

    async def _acquire(self, lock_name: str, key: str) -> Any:
        handle = await self.lock_provider.try_lock(lock_name, self.lock_timeout)
        if handle is None:
            raise LockTimeoutError(
                f"Lock not acquired within {self.lock_timeout}s",
                lock_name=lock_name, namespace=self.namespace, key=key, operation='get_or_compute',
            )
        return handle

    async def _compute(self, key: str, loader: Loader, ttl: Optional[float]) -> Any:
        self.stats['loads'] += 1
        value = await call_loader(loader)
        if value is not None:
            await store_loaded(self.delegate, key, value, ttl)
        return value
