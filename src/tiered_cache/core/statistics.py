"""Per-namespace cache statistics."""

import threading
from collections import deque
from dataclasses import dataclass, asdict, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Deque, Dict, List, Optional


class EvictionCause(str, Enum):
    """Why the local tier dropped an entry on its own."""
    EXPIRED = "expired"
    SIZE = "size"


@dataclass(frozen=True)
class LatencySummary:
    """Latency distribution in milliseconds over the recent sample window."""
    count: int = 0
    avg: float = 0.0
    p50: float = 0.0
    p95: float = 0.0
    p99: float = 0.0
    max: float = 0.0

    @classmethod
    def from_samples(cls, samples: List[float]) -> 'LatencySummary':
        if not samples:
            return cls()
        ordered = sorted(samples)
        return cls(
            count=len(ordered),
            avg=sum(ordered) / len(ordered),
            p50=_percentile(ordered, 50),
            p95=_percentile(ordered, 95),
            p99=_percentile(ordered, 99),
            max=ordered[-1],
        )


def _percentile(ordered: List[float], percent: float) -> float:
    # Nearest-rank on an already sorted sample
    rank = max(1, -(-len(ordered) * percent // 100))
    return ordered[int(rank) - 1]


@dataclass(frozen=True)
class CacheStatistics:
    """Read-only snapshot of one namespace's counters."""
    namespace: str
    timestamp: datetime
    hit_count: int
    miss_count: int
    put_count: int
    remove_count: int
    eviction_count: int
    evictions_by_cause: Dict[str, int]
    l1_hits: int
    l2_hits: int
    l2_misses: int
    l2_failures: int
    l2_fallbacks: int
    current_size: int
    get_latency: LatencySummary = field(default_factory=LatencySummary)
    put_latency: LatencySummary = field(default_factory=LatencySummary)
    remove_latency: LatencySummary = field(default_factory=LatencySummary)

    @property
    def request_count(self) -> int:
        return self.hit_count + self.miss_count

    @property
    def hit_rate(self) -> float:
        total = self.request_count
        return self.hit_count / total if total else 0.0

    @property
    def miss_rate(self) -> float:
        total = self.request_count
        return self.miss_count / total if total else 0.0

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data['timestamp'] = self.timestamp.isoformat()
        data['hit_rate'] = self.hit_rate
        data['miss_rate'] = self.miss_rate
        data['request_count'] = self.request_count
        return data


class StatisticsRecorder:
    """
    Thread-safe accumulator behind CacheStatistics.

    Shared by every layer of one namespace's chain: the metrics decorator
    records hits, misses and latencies, the local tier records evictions,
    and the multi-level coordinator records per-tier outcomes.
    """

    LATENCY_OPERATIONS = ('get', 'put', 'remove')

    def __init__(self, namespace: str, sample_size: int = 1024):
        self.namespace = namespace
        self._lock = threading.Lock()
        self._size_supplier: Optional[Callable[[], int]] = None
        self._counters: Dict[str, int] = {}
        self._evictions: Dict[str, int] = {cause.value: 0 for cause in EvictionCause}
        self._latencies: Dict[str, Deque[float]] = {
            operation: deque(maxlen=sample_size) for operation in self.LATENCY_OPERATIONS
        }
        self.reset()

    def reset(self) -> None:
        with self._lock:
            self._counters = {
                'hits': 0,
                'misses': 0,
                'puts': 0,
                'removes': 0,
                'l1_hits': 0,
                'l2_hits': 0,
                'l2_misses': 0,
                'l2_failures': 0,
                'l2_fallbacks': 0,
            }
            for cause in self._evictions:
                self._evictions[cause] = 0
            for samples in self._latencies.values():
                samples.clear()

    def bind_size_supplier(self, supplier: Callable[[], int]) -> None:
        self._size_supplier = supplier

    def _increment(self, counter: str, amount: int = 1) -> None:
        with self._lock:
            self._counters[counter] += amount

    def record_hit(self) -> None:
        self._increment('hits')

    def record_miss(self) -> None:
        self._increment('misses')

    def record_put(self, count: int = 1) -> None:
        self._increment('puts', count)

    def record_remove(self) -> None:
        self._increment('removes')

    def record_l1_hit(self) -> None:
        self._increment('l1_hits')

    def record_l2_hit(self) -> None:
        self._increment('l2_hits')

    def record_l2_miss(self) -> None:
        self._increment('l2_misses')

    def record_l2_failure(self) -> None:
        self._increment('l2_failures')

    def record_fallback(self) -> None:
        self._increment('l2_fallbacks')

    def record_eviction(self, cause: EvictionCause) -> None:
        with self._lock:
            self._evictions[EvictionCause(cause).value] += 1

    def record_latency(self, operation: str, seconds: float) -> None:
        samples = self._latencies.get(operation)
        if samples is None:
            return
        with self._lock:
            samples.append(seconds * 1000.0)

    def snapshot(self) -> CacheStatistics:
        size = self._size_supplier() if self._size_supplier else 0
        with self._lock:
            counters = dict(self._counters)
            evictions = dict(self._evictions)
            latencies = {op: list(samples) for op, samples in self._latencies.items()}

        return CacheStatistics(
            namespace=self.namespace,
            timestamp=datetime.now(timezone.utc),
            hit_count=counters['hits'],
            miss_count=counters['misses'],
            put_count=counters['puts'],
            remove_count=counters['removes'],
            eviction_count=sum(evictions.values()),
            evictions_by_cause=evictions,
            l1_hits=counters['l1_hits'],
            l2_hits=counters['l2_hits'],
            l2_misses=counters['l2_misses'],
            l2_failures=counters['l2_failures'],
            l2_fallbacks=counters['l2_fallbacks'],
            current_size=size,
            get_latency=LatencySummary.from_samples(latencies['get']),
            put_latency=LatencySummary.from_samples(latencies['put']),
            remove_latency=LatencySummary.from_samples(latencies['remove']),
        )
