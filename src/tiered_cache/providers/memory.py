"""
Process-local cache tier.

``BoundedTTLMap`` is a thread-safe LRU map with per-entry TTL that reports
every entry it drops on its own (expiry or capacity). ``LocalCache`` puts
the cache contract in front of it for one namespace.
"""

import fnmatch
import threading
import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Tuple

from ..core.contract import CacheService, resolve_ttl
from ..core.statistics import CacheStatistics, EvictionCause, StatisticsRecorder
from ..exceptions import CodecError
from ..logging_config import get_logger

EvictionListener = Callable[[str, EvictionCause], None]


@dataclass
class _Slot:
    value: bytes
    expires_at: Optional[float]


class BoundedTTLMap:
    """Thread-safe LRU map with TTL expiry and eviction notification."""

    def __init__(
        self,
        max_size: int = 10_000,
        on_evict: Optional[EvictionListener] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        if max_size < 1:
            raise ValueError("max_size must be at least 1")
        self.max_size = max_size
        self.on_evict = on_evict
        self.clock = clock
        self._data: 'OrderedDict[str, _Slot]' = OrderedDict()
        self._lock = threading.RLock()
        self.stats = {
            'hits': 0,
            'misses': 0,
            'evictions': 0,
            'expirations': 0,
        }

    def _expired(self, slot: _Slot, now: float) -> bool:
        return slot.expires_at is not None and now >= slot.expires_at

    def _live_slot(self, key: str, evicted: List[Tuple[str, EvictionCause]]) -> Optional[_Slot]:
        slot = self._data.get(key)
        if slot is None:
            return None
        if self._expired(slot, self.clock()):
            del self._data[key]
            self.stats['expirations'] += 1
            evicted.append((key, EvictionCause.EXPIRED))
            return None
        return slot

    def _store(self, key: str, value: bytes, ttl: Optional[float], evicted: List[Tuple[str, EvictionCause]]) -> None:
        now = self.clock()
        expires_at = now + ttl if ttl else None

        if key in self._data:
            self._data[key] = _Slot(value, expires_at)
            self._data.move_to_end(key)
            return

        if len(self._data) >= self.max_size:
            self._purge_expired(now, evicted)
        while len(self._data) >= self.max_size:
            oldest_key, _ = self._data.popitem(last=False)
            self.stats['evictions'] += 1
            evicted.append((oldest_key, EvictionCause.SIZE))

        self._data[key] = _Slot(value, expires_at)

    def _purge_expired(self, now: float, evicted: List[Tuple[str, EvictionCause]]) -> None:
        expired = [key for key, slot in self._data.items() if self._expired(slot, now)]
        for key in expired:
            del self._data[key]
            self.stats['expirations'] += 1
            evicted.append((key, EvictionCause.EXPIRED))

    def _notify(self, evicted: List[Tuple[str, EvictionCause]]) -> None:
        # Listeners run outside the lock
        if not self.on_evict:
            return
        for key, cause in evicted:
            self.on_evict(key, cause)

    def get(self, key: str) -> Optional[bytes]:
        evicted: List[Tuple[str, EvictionCause]] = []
        with self._lock:
            slot = self._live_slot(key, evicted)
            if slot is None:
                self.stats['misses'] += 1
                value = None
            else:
                self._data.move_to_end(key)
                self.stats['hits'] += 1
                value = slot.value
        self._notify(evicted)
        return value

    def set(self, key: str, value: bytes, ttl: Optional[float] = None) -> None:
        evicted: List[Tuple[str, EvictionCause]] = []
        with self._lock:
            self._store(key, value, ttl, evicted)
        self._notify(evicted)

    def set_if_absent(self, key: str, value: bytes, ttl: Optional[float] = None) -> bool:
        evicted: List[Tuple[str, EvictionCause]] = []
        with self._lock:
            stored = self._live_slot(key, evicted) is None
            if stored:
                self._store(key, value, ttl, evicted)
        self._notify(evicted)
        return stored

    def add(self, key: str, delta: int, ttl: Optional[float] = None) -> int:
        """Atomically add ``delta`` to an integer stored as ASCII digits."""
        evicted: List[Tuple[str, EvictionCause]] = []
        with self._lock:
            slot = self._live_slot(key, evicted)
            current = 0
            if slot is not None:
                try:
                    current = int(slot.value)
                except ValueError as e:
                    raise CodecError(f"Value at {key} is not an integer") from e
            updated = current + delta
            expires_in = ttl if slot is None else None
            self._store(key, str(updated).encode('ascii'), expires_in, evicted)
            if slot is not None:
                self._data[key].expires_at = slot.expires_at
        self._notify(evicted)
        return updated

    def delete(self, key: str) -> bool:
        with self._lock:
            return self._data.pop(key, None) is not None

    def delete_matching(self, pattern: str) -> int:
        with self._lock:
            matched = [key for key in self._data if fnmatch.fnmatchcase(key, pattern)]
            for key in matched:
                del self._data[key]
            return len(matched)

    def contains(self, key: str) -> bool:
        evicted: List[Tuple[str, EvictionCause]] = []
        with self._lock:
            present = self._live_slot(key, evicted) is not None
        self._notify(evicted)
        return present

    def clear(self) -> None:
        with self._lock:
            self._data.clear()

    def purge_expired(self) -> int:
        evicted: List[Tuple[str, EvictionCause]] = []
        with self._lock:
            self._purge_expired(self.clock(), evicted)
        self._notify(evicted)
        return len(evicted)

    def keys(self) -> List[str]:
        with self._lock:
            return list(self._data.keys())

    def __len__(self) -> int:
        with self._lock:
            return len(self._data)

    def get_stats(self) -> Dict[str, Any]:
        with self._lock:
            total_requests = self.stats['hits'] + self.stats['misses']
            return {
                **self.stats,
                'size': len(self._data),
                'hit_rate': self.stats['hits'] / total_requests if total_requests > 0 else 0,
                'total_requests': total_requests,
            }


class LocalCache(CacheService):
    """L1 tier: one namespace's entries in a local bounded map. Never blocks, never fails on I/O."""

    layer_name = "l1"

    def __init__(
        self,
        namespace: str,
        max_size: int = 10_000,
        max_ttl: float = 300.0,
        default_ttl: float = 3600.0,
        recorder: Optional[StatisticsRecorder] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.namespace = namespace
        self.max_ttl = max_ttl
        self.default_ttl = default_ttl
        self.recorder = recorder
        self.logger = get_logger(__name__, 'local_cache')
        self.map = BoundedTTLMap(max_size, on_evict=self._on_evict, clock=clock)
        if recorder is not None:
            recorder.bind_size_supplier(self.size)

    def _on_evict(self, key: str, cause: EvictionCause) -> None:
        if self.recorder is not None:
            self.recorder.record_eviction(cause)
        self.logger.debug(
            f"Local entry evicted: {key}",
            operation="evict", namespace=self.namespace, cause=cause.value,
        )

    def local_ttl(self, ttl: Optional[float]) -> float:
        """The TTL an entry gets locally: the requested TTL capped by the local maximum."""
        return min(resolve_ttl(ttl, self.default_ttl), self.max_ttl)

    async def get(self, key: str) -> Optional[bytes]:
        return self.map.get(key)

    async def put(self, key: str, value: bytes, ttl: Optional[float] = None) -> None:
        self.map.set(key, value, self.local_ttl(ttl))

    async def remove(self, key: str) -> bool:
        return self.map.delete(key)

    async def contains_key(self, key: str) -> bool:
        return self.map.contains(key)

    async def clear(self) -> None:
        self.map.clear()

    async def put_if_absent(self, key: str, value: bytes, ttl: Optional[float] = None) -> bool:
        return self.map.set_if_absent(key, value, self.local_ttl(ttl))

    async def increment(self, key: str, delta: int = 1) -> int:
        return self.map.add(key, delta, self.local_ttl(None))

    async def get_many(self, keys: Iterable[str]) -> Dict[str, bytes]:
        result = {}
        for key in keys:
            value = self.map.get(key)
            if value is not None:
                result[key] = value
        return result

    async def put_many(self, entries: Mapping[str, bytes], ttl: Optional[float] = None) -> None:
        local_ttl = self.local_ttl(ttl)
        for key, value in entries.items():
            self.map.set(key, value, local_ttl)

    # Synchronous invalidation used by the eviction subscriber

    def invalidate(self, key: str) -> bool:
        return self.map.delete(key)

    def invalidate_matching(self, pattern: str) -> int:
        return self.map.delete_matching(pattern)

    def invalidate_all(self) -> None:
        self.map.clear()

    def size(self) -> int:
        return len(self.map)

    def get_statistics(self) -> Optional[CacheStatistics]:
        return self.recorder.snapshot() if self.recorder is not None else None
