"""
Multi-level coordinator.

Reads go to the local tier first and fall through to the shared tier,
repairing the local tier on a shared hit. Writes and removals go through
both tiers and are announced on the namespace's eviction channel so that
peers drop their stale local copies.

The coordinator is NORMAL while the circuit guarding the shared tier is
closed or half-open and DEGRADED while it is open; in DEGRADED mode it
serves from the local tier only.
"""

from enum import Enum
from typing import Any, Dict, Iterable, List, Mapping, Optional

from ..core.contract import CacheService
from ..core.statistics import CacheStatistics, StatisticsRecorder
from ..exceptions import CacheUnavailableError, CircuitOpenError
from ..features.circuit_breaker import CircuitBreaker, CircuitState
from ..logging_config import get_logger
from .eviction import EvictionPublisher, EvictionType
from .memory import LocalCache


class CacheMode(str, Enum):
    NORMAL = "NORMAL"
    DEGRADED = "DEGRADED"


class MultiLevelCache(CacheService):
    """Coordinates a LocalCache (L1) with a shared cache (L2) for one namespace."""

    layer_name = "multi_level"

    def __init__(
        self,
        namespace: str,
        local: LocalCache,
        shared: CacheService,
        publisher: Optional[EvictionPublisher] = None,
        breaker: Optional[CircuitBreaker] = None,
        recorder: Optional[StatisticsRecorder] = None,
    ):
        self.namespace = namespace
        self.local = local
        self.shared = shared
        self.publisher = publisher
        self.breaker = breaker
        self.recorder = recorder or StatisticsRecorder(namespace)
        self.logger = get_logger(__name__, 'multi_level_cache')

        if breaker is not None:
            breaker.add_listener(self._on_circuit_transition)

    @property
    def mode(self) -> CacheMode:
        if self.breaker is not None and self.breaker.state is CircuitState.OPEN:
            return CacheMode.DEGRADED
        return CacheMode.NORMAL

    def is_degraded(self) -> bool:
        return self.mode is CacheMode.DEGRADED

    def _on_circuit_transition(self, old_state: CircuitState, new_state: CircuitState) -> None:
        if new_state is CircuitState.OPEN:
            self.logger.warning(
                "Shared tier unavailable, serving from local tier only",
                operation="mode_change", namespace=self.namespace, mode=CacheMode.DEGRADED.value,
            )
        elif old_state is CircuitState.OPEN:
            self.logger.info(
                "Shared tier trial calls permitted",
                operation="mode_change", namespace=self.namespace, mode=CacheMode.NORMAL.value,
            )

    def _shared_failed(self, operation: str, key: Optional[str], error: Exception) -> None:
        self.recorder.record_l2_failure()
        self.recorder.record_fallback()
        self.logger.warning(
            f"Shared tier {operation} failed, falling back to local tier: {error}",
            operation=operation, namespace=self.namespace, cache_key=key,
            error_type=type(error).__name__,
        )

    async def _broadcast(self, event_type: EvictionType, key: Optional[str] = None) -> None:
        if self.publisher is not None:
            await self.publisher.publish(self.namespace, event_type, key=key)

    async def get(self, key: str) -> Optional[bytes]:
        value = await self.local.get(key)
        if value is not None:
            self.recorder.record_l1_hit()
            return value

        if self.mode is CacheMode.DEGRADED:
            self.recorder.record_fallback()
            return None

        try:
            value = await self.shared.get(key)
        except (CircuitOpenError, CacheUnavailableError) as e:
            self._shared_failed('get', key, e)
            return None

        if value is None:
            self.recorder.record_l2_miss()
            return None

        self.recorder.record_l2_hit()
        await self.local.put(key, value)
        return value

    async def put(self, key: str, value: bytes, ttl: Optional[float] = None) -> None:
        await self.local.put(key, value, ttl)

        if self.mode is CacheMode.DEGRADED:
            self.recorder.record_fallback()
            return

        try:
            await self.shared.put(key, value, ttl)
        except CircuitOpenError as e:
            self._shared_failed('put', key, e)
            return
        except CacheUnavailableError:
            self.recorder.record_l2_failure()
            raise

        await self._broadcast(EvictionType.UPDATE, key)

    async def remove(self, key: str) -> bool:
        removed = await self.local.remove(key)
        failure: Optional[CacheUnavailableError] = None

        if self.mode is CacheMode.NORMAL:
            try:
                removed = await self.shared.remove(key) or removed
            except CircuitOpenError as e:
                self._shared_failed('remove', key, e)
            except CacheUnavailableError as e:
                self.recorder.record_l2_failure()
                failure = e

        await self._broadcast(EvictionType.REMOVE, key)
        if failure is not None:
            raise failure
        return removed

    async def contains_key(self, key: str) -> bool:
        if await self.local.contains_key(key):
            return True
        if self.mode is CacheMode.DEGRADED:
            return False
        try:
            return await self.shared.contains_key(key)
        except (CircuitOpenError, CacheUnavailableError) as e:
            self._shared_failed('contains_key', key, e)
            return False

    async def put_if_absent(self, key: str, value: bytes, ttl: Optional[float] = None) -> bool:
        if await self.local.contains_key(key):
            return False

        if self.mode is CacheMode.NORMAL:
            try:
                stored = await self.shared.put_if_absent(key, value, ttl)
            except CircuitOpenError as e:
                self._shared_failed('put_if_absent', key, e)
            else:
                if stored:
                    await self.local.put(key, value, ttl)
                    await self._broadcast(EvictionType.UPDATE, key)
                return stored

        return await self.local.put_if_absent(key, value, ttl)

    async def increment(self, key: str, delta: int = 1) -> int:
        # Counters live in the shared tier only; there is no local fallback
        value = await self.shared.increment(key, delta)
        await self._invalidate_counter(key)
        return value

    async def decrement(self, key: str, delta: int = 1) -> int:
        value = await self.shared.decrement(key, delta)
        await self._invalidate_counter(key)
        return value

    async def _invalidate_counter(self, key: str) -> None:
        await self.local.remove(key)
        await self._broadcast(EvictionType.UPDATE, key)

    async def clear(self) -> None:
        await self.local.clear()
        failure: Optional[CacheUnavailableError] = None
        if self.mode is CacheMode.NORMAL:
            try:
                await self.shared.clear()
            except CircuitOpenError as e:
                self._shared_failed('clear', None, e)
            except CacheUnavailableError as e:
                self.recorder.record_l2_failure()
                failure = e
        await self._broadcast(EvictionType.CLEAR_ALL)
        if failure is not None:
            raise failure

    async def get_many(self, keys: Iterable[str]) -> Dict[str, bytes]:
        keys = list(keys)
        result = await self.local.get_many(keys)
        for _ in result:
            self.recorder.record_l1_hit()

        missing = [key for key in keys if key not in result]
        if not missing:
            return result
        if self.mode is CacheMode.DEGRADED:
            self.recorder.record_fallback()
            return result

        try:
            found = await self.shared.get_many(missing)
        except (CircuitOpenError, CacheUnavailableError) as e:
            self._shared_failed('get_many', None, e)
            return result

        for key in missing:
            if key in found:
                self.recorder.record_l2_hit()
            else:
                self.recorder.record_l2_miss()
        await self.local.put_many(found)
        result.update(found)
        return result

    async def put_many(self, entries: Mapping[str, bytes], ttl: Optional[float] = None) -> None:
        await self.local.put_many(entries, ttl)
        if self.mode is CacheMode.DEGRADED:
            self.recorder.record_fallback()
            return

        try:
            await self.shared.put_many(entries, ttl)
        except CircuitOpenError as e:
            self._shared_failed('put_many', None, e)
            return
        except CacheUnavailableError:
            self.recorder.record_l2_failure()
            raise

        for key in entries:
            await self._broadcast(EvictionType.UPDATE, key)

    def get_statistics(self) -> CacheStatistics:
        return self.recorder.snapshot()

    def layers(self) -> List[str]:
        return [self.layer_name, *self.local.layers(), *self.shared.layers()]
