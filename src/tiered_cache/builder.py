"""
Decorator chain assembly.

Layers, outermost first::

    Metrics -> Codec -> Compression -> Encryption -> Circuit Breaker -> Stampede -> base

The codec turns values into framed bytes, so every layer below it sees
bytes. With a multi-level base the circuit breaker is installed around
the Redis tier inside the coordinator, where it drives NORMAL/DEGRADED;
with a Redis-only base it sits at its chain position; a local-only base
has nothing to break.
"""

import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional

from redis.asyncio import Redis

from .config import CacheConfiguration, CacheSettings, get_settings
from .core.contract import CacheDecorator, CacheService
from .core.statistics import CacheStatistics, StatisticsRecorder
from .exceptions import CacheConfigurationError
from .features.circuit_breaker import CircuitBreaker, CircuitBreakerCache
from .features.compression import CompressionCache
from .features.encryption import EncryptionCache
from .features.metrics import MetricsCache
from .features.serialization import ValueCodecCache
from .features.stampede import StampedeProtectedCache
from .logging_config import get_logger
from .metrics_collector import MetricsCollector
from .providers.eviction import EvictionPublisher, EvictionSubscriber, new_node_id
from .providers.locks import LocalLockProvider, LockProvider, RedisLockProvider
from .providers.memory import LocalCache
from .providers.multilevel import MultiLevelCache
from .providers.redis_cache import RedisCache


class BaseProvider(str, Enum):
    LOCAL = "local"
    SHARED = "shared"
    MULTI_LEVEL = "multi_level"


class NamespaceCache(CacheDecorator):
    """
    The handle callers use for one namespace.

    Always the outermost layer, so the hit, miss, put and remove counts it
    keeps are complete whichever optional layers are installed.
    """

    layer_name = "namespace"

    def __init__(self, delegate: CacheService, recorder: StatisticsRecorder):
        super().__init__(delegate)
        self.recorder = recorder

    async def get(self, key: str) -> Optional[Any]:
        value = await self.delegate.get(key)
        if value is None:
            self.recorder.record_miss()
        else:
            self.recorder.record_hit()
        return value

    async def put(self, key: str, value: Any, ttl: Optional[float] = None) -> None:
        await self.delegate.put(key, value, ttl)
        self.recorder.record_put()

    async def remove(self, key: str) -> bool:
        removed = await self.delegate.remove(key)
        self.recorder.record_remove()
        return removed

    async def put_if_absent(self, key: str, value: Any, ttl: Optional[float] = None) -> bool:
        stored = await self.delegate.put_if_absent(key, value, ttl)
        if stored:
            self.recorder.record_put()
        return stored

    async def get_many(self, keys: Iterable[str]) -> Dict[str, Any]:
        keys = list(keys)
        found = await self.delegate.get_many(keys)
        for key in keys:
            if key in found:
                self.recorder.record_hit()
            else:
                self.recorder.record_miss()
        return found

    async def put_many(self, entries: Mapping[str, Any], ttl: Optional[float] = None) -> None:
        await self.delegate.put_many(entries, ttl)
        self.recorder.record_put(len(entries))

    def get_statistics(self) -> CacheStatistics:
        return self.recorder.snapshot()

    def layers(self) -> List[str]:
        return self.delegate.layers()


@dataclass
class CacheChain:
    """Everything built for one namespace."""
    namespace: str
    cache: NamespaceCache
    configuration: CacheConfiguration
    base: BaseProvider
    recorder: StatisticsRecorder
    local: Optional[LocalCache] = None
    shared: Optional[RedisCache] = None
    breaker: Optional[CircuitBreaker] = None
    subscriber: Optional[EvictionSubscriber] = None


class CacheChainBuilder:
    """Builds per-namespace chains that share one Redis client and node identity."""

    def __init__(
        self,
        client: Optional[Redis] = None,
        node_id: Optional[str] = None,
        settings: Optional[CacheSettings] = None,
        lock_provider: Optional[LockProvider] = None,
        collector: Optional[MetricsCollector] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.client = client
        self.node_id = node_id or new_node_id()
        self.settings = settings or get_settings()
        self.collector = collector
        self.clock = clock
        self.logger = get_logger(__name__, 'chain_builder')

        if lock_provider is not None:
            self.lock_provider = lock_provider
        elif client is not None:
            self.lock_provider = RedisLockProvider(client, lease=self.settings.lock_lease)
        else:
            self.lock_provider = LocalLockProvider()
        self.publisher = (
            EvictionPublisher(client, self.node_id, timeout=self.settings.operation_timeout)
            if client is not None else None
        )

    def _breaker(self, namespace: str, configuration: CacheConfiguration) -> CircuitBreaker:
        return CircuitBreaker(
            name=f"cache:{namespace}",
            failure_rate_threshold=configuration.failure_rate_threshold,
            wait_duration=configuration.circuit_wait_duration,
            sliding_window_size=configuration.sliding_window_size,
            minimum_calls=configuration.minimum_calls,
            half_open_max_calls=configuration.half_open_max_calls,
            clock=self.clock,
        )

    def _shared(self, namespace: str, configuration: CacheConfiguration) -> RedisCache:
        if self.client is None:
            raise CacheConfigurationError(
                "A Redis client is required for a shared or multi-level cache", namespace=namespace,
            )
        return RedisCache(
            self.client,
            namespace,
            default_ttl=configuration.ttl,
            operation_timeout=self.settings.operation_timeout,
            clear_timeout=self.settings.clear_timeout,
        )

    def build(
        self,
        namespace: str,
        configuration: Optional[CacheConfiguration] = None,
        base: BaseProvider = BaseProvider.MULTI_LEVEL,
    ) -> CacheChain:
        configuration = configuration or CacheConfiguration.from_settings(self.settings)
        base = BaseProvider(base)
        recorder = StatisticsRecorder(namespace, self.settings.latency_sample_size)
        chain = CacheChain(namespace, None, configuration, base, recorder)
        degraded: Optional[Callable[[], bool]] = None

        if base is BaseProvider.LOCAL:
            chain.local = LocalCache(
                namespace, configuration.l1_max_size, max_ttl=configuration.ttl,
                default_ttl=configuration.ttl, recorder=recorder, clock=self.clock,
            )
            cache: CacheService = chain.local
        elif base is BaseProvider.SHARED:
            chain.shared = self._shared(namespace, configuration)
            cache = chain.shared
        else:
            chain.local = LocalCache(
                namespace, configuration.l1_max_size, max_ttl=configuration.l1_ttl,
                default_ttl=configuration.ttl, recorder=recorder, clock=self.clock,
            )
            chain.shared = self._shared(namespace, configuration)
            shared: CacheService = chain.shared
            if configuration.circuit_breaker_enabled:
                chain.breaker = self._breaker(namespace, configuration)
                shared = CircuitBreakerCache(shared, chain.breaker)
            publisher = self.publisher if configuration.eviction_broadcast_enabled else None
            cache = MultiLevelCache(namespace, chain.local, shared, publisher, chain.breaker, recorder)
            degraded = cache.is_degraded
            if publisher is not None:
                chain.subscriber = EvictionSubscriber(
                    self.client, namespace, self.node_id, chain.local,
                    poll_interval=self.settings.subscriber_poll_interval,
                    reconnect_delay=self.settings.subscriber_reconnect_delay,
                )

        if configuration.stampede_protection_enabled:
            lock_provider = self.lock_provider if base is not BaseProvider.LOCAL else LocalLockProvider()
            cache = StampedeProtectedCache(cache, lock_provider, configuration.lock_timeout, degraded=degraded)

        if configuration.circuit_breaker_enabled and base is BaseProvider.SHARED:
            chain.breaker = self._breaker(namespace, configuration)
            cache = CircuitBreakerCache(cache, chain.breaker)

        if configuration.encryption_enabled:
            cache = EncryptionCache(cache, configuration.encryption_key)

        if configuration.compression_enabled:
            cache = CompressionCache(cache, configuration.compression_threshold)

        cache = ValueCodecCache(cache, configuration.serialization_format)

        if configuration.metrics_enabled:
            cache = MetricsCache(cache, recorder, self.collector)

        chain.cache = NamespaceCache(cache, recorder)
        self.logger.info(
            f"Built cache chain for namespace {namespace}",
            operation="build", namespace=namespace, base=base.value, layers=chain.cache.layers(),
        )
        return chain
