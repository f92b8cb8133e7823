"""
Tiered cache: a process-local tier in front of a shared Redis tier, with
compression, encryption, metrics, circuit breaking and stampede protection
composed as decorators around one cache contract.
"""

from .annotations import cached, cache_put, cache_evict
from .builder import BaseProvider, CacheChain, CacheChainBuilder, NamespaceCache
from .config import CacheConfiguration, CacheSettings, SerializationFormat, get_settings
from .core import CacheEntry, CacheService, CacheStatistics, EvictionCause, LatencySummary, build_cache_key
from .exceptions import (
    CacheConfigurationError,
    CacheError,
    CacheTimeoutError,
    CacheUnavailableError,
    CircuitOpenError,
    CodecError,
    DecryptionError,
    LockTimeoutError,
)
from .features import CircuitBreaker, CircuitState, generate_key
from .manager import CacheManager, get_cache_manager, initialize_cache, set_cache_manager, shutdown_cache
from .providers import CacheMode, EvictionEvent, EvictionType, MultiLevelCache

__version__ = "0.1.0"

__all__ = [
    'cached',
    'cache_put',
    'cache_evict',
    'BaseProvider',
    'CacheChain',
    'CacheChainBuilder',
    'NamespaceCache',
    'CacheConfiguration',
    'CacheSettings',
    'SerializationFormat',
    'get_settings',
    'CacheEntry',
    'CacheService',
    'CacheStatistics',
    'EvictionCause',
    'LatencySummary',
    'build_cache_key',
    'CacheConfigurationError',
    'CacheError',
    'CacheTimeoutError',
    'CacheUnavailableError',
    'CircuitOpenError',
    'CodecError',
    'DecryptionError',
    'LockTimeoutError',
    'CircuitBreaker',
    'CircuitState',
    'generate_key',
    'CacheManager',
    'get_cache_manager',
    'initialize_cache',
    'set_cache_manager',
    'shutdown_cache',
    'CacheMode',
    'EvictionEvent',
    'EvictionType',
    'MultiLevelCache',
]
