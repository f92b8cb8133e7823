"""Cache tiers and their infrastructure: local map, Redis, eviction pub/sub, locks, coordinator."""

from .memory import BoundedTTLMap, LocalCache
from .redis_cache import RedisCache
from .eviction import EvictionEvent, EvictionPublisher, EvictionSubscriber, EvictionType, new_node_id
from .locks import LockProvider, LocalLockProvider, RedisLockProvider
from .multilevel import CacheMode, MultiLevelCache

__all__ = [
    'BoundedTTLMap',
    'LocalCache',
    'RedisCache',
    'EvictionEvent',
    'EvictionPublisher',
    'EvictionSubscriber',
    'EvictionType',
    'new_node_id',
    'LockProvider',
    'LocalLockProvider',
    'RedisLockProvider',
    'CacheMode',
    'MultiLevelCache',
]
