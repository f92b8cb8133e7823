"""Latency and collector metrics around a cache."""

import time
from typing import Any, Dict, Iterable, Mapping, Optional

from ..core.contract import CacheDecorator, CacheService, Loader
from ..core.statistics import CacheStatistics, StatisticsRecorder
from ..logging_config import get_logger
from ..metrics_collector import MetricsCollector, get_metrics_collector


class MetricsCache(CacheDecorator):
    """
    Records per-operation latency into the namespace's StatisticsRecorder
    and latency plus get hit/miss counters into the metrics collector.

    Never changes results. Failures while emitting to the collector are
    logged and swallowed.
    """

    layer_name = "metrics"

    def __init__(self, delegate: CacheService, recorder: StatisticsRecorder,
                 collector: Optional[MetricsCollector] = None):
        super().__init__(delegate)
        self.recorder = recorder
        self.collector = collector or get_metrics_collector()
        self.logger = get_logger(__name__, 'cache_metrics')
        self._tags = {'namespace': self.namespace}

    def _emit(self, operation: str, seconds: float, outcome: Optional[str] = None) -> None:
        self.recorder.record_latency(operation, seconds)
        try:
            self.collector.get_timer(f"cache_{operation}", tags=self._tags).record(seconds)
            if outcome is not None:
                self.collector.get_counter(f"cache_{outcome}_total", tags=self._tags).increment()
        except Exception as e:
            self.logger.warning(
                f"Failed to emit cache metrics: {e}", operation=operation, namespace=self.namespace,
            )

    def _emit_error(self, operation: str, error: BaseException) -> None:
        try:
            self.collector.get_counter('cache_errors_total', tags=self._tags).increment(
                operation=operation, error=type(error).__name__
            )
        except Exception as e:
            self.logger.warning(
                f"Failed to emit cache metrics: {e}", operation=operation, namespace=self.namespace,
            )

    async def get(self, key: str) -> Optional[Any]:
        start = time.perf_counter()
        try:
            value = await self.delegate.get(key)
        except Exception as e:
            self._emit_error('get', e)
            raise
        self._emit('get', time.perf_counter() - start, 'misses' if value is None else 'hits')
        return value

    async def put(self, key: str, value: Any, ttl: Optional[float] = None) -> None:
        start = time.perf_counter()
        try:
            await self.delegate.put(key, value, ttl)
        except Exception as e:
            self._emit_error('put', e)
            raise
        self._emit('put', time.perf_counter() - start)

    async def remove(self, key: str) -> bool:
        start = time.perf_counter()
        try:
            removed = await self.delegate.remove(key)
        except Exception as e:
            self._emit_error('remove', e)
            raise
        self._emit('remove', time.perf_counter() - start)
        return removed

    async def put_if_absent(self, key: str, value: Any, ttl: Optional[float] = None) -> bool:
        start = time.perf_counter()
        try:
            stored = await self.delegate.put_if_absent(key, value, ttl)
        except Exception as e:
            self._emit_error('put_if_absent', e)
            raise
        self._emit('put_if_absent', time.perf_counter() - start)
        return stored

    async def get_many(self, keys: Iterable[str]) -> Dict[str, Any]:
        start = time.perf_counter()
        try:
            found = await self.delegate.get_many(keys)
        except Exception as e:
            self._emit_error('get_many', e)
            raise
        self._emit('get_many', time.perf_counter() - start)
        return found

    async def put_many(self, entries: Mapping[str, Any], ttl: Optional[float] = None) -> None:
        start = time.perf_counter()
        try:
            await self.delegate.put_many(entries, ttl)
        except Exception as e:
            self._emit_error('put_many', e)
            raise
        self._emit('put_many', time.perf_counter() - start)

    async def get_or_compute(self, key: str, loader: Loader, ttl: Optional[float] = None) -> Any:
        start = time.perf_counter()
        try:
            value = await self.delegate.get_or_compute(key, loader, ttl)
        except Exception as e:
            self._emit_error('get_or_compute', e)
            raise
        self._emit('get_or_compute', time.perf_counter() - start)
        return value

    def get_statistics(self) -> CacheStatistics:
        return self.recorder.snapshot()
