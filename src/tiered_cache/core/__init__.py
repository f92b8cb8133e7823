"""Core types: the cache contract, entry framing, keys and statistics."""

from .contract import CacheService, CacheDecorator, PayloadTransformDecorator, call_loader, resolve_ttl
from .entry import CacheEntry, ValueSerializer, FLAG_COMPRESSED, FLAG_ENCRYPTED
from .keys import build_cache_key, namespace_pattern
from .statistics import CacheStatistics, EvictionCause, LatencySummary, StatisticsRecorder

__all__ = [
    'CacheService',
    'CacheDecorator',
    'PayloadTransformDecorator',
    'call_loader',
    'resolve_ttl',
    'CacheEntry',
    'ValueSerializer',
    'FLAG_COMPRESSED',
    'FLAG_ENCRYPTED',
    'build_cache_key',
    'namespace_pattern',
    'CacheStatistics',
    'EvictionCause',
    'LatencySummary',
    'StatisticsRecorder',
]
