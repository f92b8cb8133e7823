"""
Cache manager: owns the Redis connection, the node identity and one
decorator chain per namespace.
"""

import asyncio
from typing import Any, Dict, Iterable, List, Mapping, Optional

import redis.asyncio as redis
from redis.asyncio import Redis
from redis.exceptions import RedisError

from .builder import BaseProvider, CacheChain, CacheChainBuilder, NamespaceCache
from .config import CacheConfiguration, CacheSettings, get_settings
from .core.contract import Loader
from .core.statistics import CacheStatistics
from .features.circuit_breaker import CircuitState
from .logging_config import get_logger
from .metrics_collector import MetricsCollector
from .providers.eviction import new_node_id
from .providers.locks import LockProvider
from .providers.multilevel import CacheMode


class CacheManager:
    """Registry of namespace caches sharing one Redis client."""

    def __init__(
        self,
        settings: Optional[CacheSettings] = None,
        client: Optional[Redis] = None,
        node_id: Optional[str] = None,
        lock_provider: Optional[LockProvider] = None,
        collector: Optional[MetricsCollector] = None,
        base: BaseProvider = BaseProvider.MULTI_LEVEL,
    ):
        self.settings = settings or get_settings()
        self.node_id = node_id or new_node_id()
        self.base = BaseProvider(base)
        self.client = client
        self._owns_client = client is None
        self._lock_provider = lock_provider
        self._collector = collector
        self._builder: Optional[CacheChainBuilder] = None
        self._chains: Dict[str, CacheChain] = {}
        self._registry_lock = asyncio.Lock()
        self._initialized = False
        self.logger = get_logger(__name__, 'cache_manager')

    async def initialize(self) -> None:
        """Connect to Redis (unless the cache is local-only) and prepare the chain builder."""
        if self._initialized:
            return

        if self.client is None and self.base is not BaseProvider.LOCAL:
            self.client = redis.from_url(
                self.settings.redis_url,
                max_connections=self.settings.redis_pool_size,
                socket_timeout=self.settings.operation_timeout,
                decode_responses=False,
            )

        if self.client is not None:
            try:
                await asyncio.wait_for(self.client.ping(), timeout=self.settings.operation_timeout)
                self.logger.info("Connected to Redis", operation="initialize", node_id=self.node_id)
            except (RedisError, OSError, asyncio.TimeoutError) as e:
                # Caches start degraded rather than refusing to start
                self.logger.warning(
                    f"Redis not reachable at startup: {e}", operation="initialize", node_id=self.node_id,
                )

        self._builder = CacheChainBuilder(
            client=self.client,
            node_id=self.node_id,
            settings=self.settings,
            lock_provider=self._lock_provider,
            collector=self._collector,
        )
        self._initialized = True
        self.logger.info("Cache manager initialized", operation="initialize", base=self.base.value)

    async def shutdown(self) -> None:
        """Stop every subscriber and close the Redis client if this manager created it."""
        async with self._registry_lock:
            chains = list(self._chains.values())
            self._chains.clear()
        for chain in chains:
            if chain.subscriber is not None:
                await chain.subscriber.stop()

        if self.client is not None and self._owns_client:
            await self.client.aclose()
            self.client = None
        self._initialized = False
        self.logger.info("Cache manager shutdown completed", operation="shutdown")

    async def get_cache(self, namespace: str, configuration: Optional[CacheConfiguration] = None) -> NamespaceCache:
        """
        Return the namespace's cache, building it on first use.

        ``configuration`` only applies when the chain is first built; to change
        a namespace's behaviour remove it and get it again.
        """
        if not self._initialized:
            await self.initialize()

        chain = self._chains.get(namespace)
        if chain is not None:
            return chain.cache

        async with self._registry_lock:
            chain = self._chains.get(namespace)
            if chain is None:
                chain = self._builder.build(namespace, configuration, self.base)
                if chain.subscriber is not None:
                    await chain.subscriber.start()
                self._chains[namespace] = chain
        return chain.cache

    async def remove_cache(self, namespace: str) -> bool:
        async with self._registry_lock:
            chain = self._chains.pop(namespace, None)
        if chain is None:
            return False
        if chain.subscriber is not None:
            await chain.subscriber.stop()
        return True

    def get_cache_names(self) -> List[str]:
        return sorted(self._chains)

    def get_chain(self, namespace: str) -> Optional[CacheChain]:
        return self._chains.get(namespace)

    # Namespace-first conveniences

    async def get(self, namespace: str, key: str) -> Optional[Any]:
        return await (await self.get_cache(namespace)).get(key)

    async def put(self, namespace: str, key: str, value: Any, ttl: Optional[float] = None) -> None:
        await (await self.get_cache(namespace)).put(key, value, ttl)

    async def remove(self, namespace: str, key: str) -> bool:
        return await (await self.get_cache(namespace)).remove(key)

    async def contains_key(self, namespace: str, key: str) -> bool:
        return await (await self.get_cache(namespace)).contains_key(key)

    async def put_if_absent(self, namespace: str, key: str, value: Any, ttl: Optional[float] = None) -> bool:
        return await (await self.get_cache(namespace)).put_if_absent(key, value, ttl)

    async def increment(self, namespace: str, key: str, delta: int = 1) -> int:
        return await (await self.get_cache(namespace)).increment(key, delta)

    async def decrement(self, namespace: str, key: str, delta: int = 1) -> int:
        return await (await self.get_cache(namespace)).decrement(key, delta)

    async def get_many(self, namespace: str, keys: Iterable[str]) -> Dict[str, Any]:
        return await (await self.get_cache(namespace)).get_many(keys)

    async def put_many(self, namespace: str, entries: Mapping[str, Any], ttl: Optional[float] = None) -> None:
        await (await self.get_cache(namespace)).put_many(entries, ttl)

    async def get_or_compute(self, namespace: str, key: str, loader: Loader, ttl: Optional[float] = None) -> Any:
        return await (await self.get_cache(namespace)).get_or_compute(key, loader, ttl)

    async def clear(self, namespace: str) -> None:
        await (await self.get_cache(namespace)).clear()

    def get_statistics(self, namespace: str) -> Optional[CacheStatistics]:
        chain = self._chains.get(namespace)
        return chain.cache.get_statistics() if chain is not None else None

    def get_all_statistics(self) -> Dict[str, CacheStatistics]:
        return {namespace: chain.cache.get_statistics() for namespace, chain in self._chains.items()}

    async def health_check(self) -> Dict[str, Any]:
        """Report Redis reachability and each namespace's mode and circuit state."""
        redis_status = 'disabled'
        if self.client is not None:
            try:
                await asyncio.wait_for(self.client.ping(), timeout=self.settings.operation_timeout)
                redis_status = 'healthy'
            except (RedisError, OSError, asyncio.TimeoutError) as e:
                redis_status = f'unhealthy: {e}'

        namespaces = {}
        for namespace, chain in self._chains.items():
            state = chain.breaker.state if chain.breaker is not None else None
            if chain.base is BaseProvider.MULTI_LEVEL:
                mode = CacheMode.DEGRADED if state is CircuitState.OPEN else CacheMode.NORMAL
            else:
                mode = None
            namespaces[namespace] = {
                'base': chain.base.value,
                'mode': mode.value if mode else None,
                'circuit_state': state.value if state else None,
                'subscriber_running': chain.subscriber.running if chain.subscriber else None,
                'local_size': chain.local.size() if chain.local else None,
            }

        degraded = redis_status.startswith('unhealthy') or any(
            info['circuit_state'] == CircuitState.OPEN.value for info in namespaces.values()
        )
        return {
            'status': 'degraded' if degraded else 'healthy',
            'node_id': self.node_id,
            'redis': redis_status,
            'namespaces': namespaces,
        }


_cache_manager: Optional[CacheManager] = None


def get_cache_manager() -> CacheManager:
    """Get the global cache manager instance."""
    global _cache_manager
    if _cache_manager is None:
        _cache_manager = CacheManager()
    return _cache_manager


def set_cache_manager(manager: Optional[CacheManager]) -> None:
    """Install ``manager`` as the global instance (None to drop it)."""
    global _cache_manager
    _cache_manager = manager


async def initialize_cache(settings: Optional[CacheSettings] = None) -> CacheManager:
    """Initialize the global cache manager."""
    global _cache_manager
    if _cache_manager is None:
        _cache_manager = CacheManager(settings)
    await _cache_manager.initialize()
    return _cache_manager


async def shutdown_cache() -> None:
    """Shutdown the global cache manager."""
    global _cache_manager
    if _cache_manager:
        await _cache_manager.shutdown()
        _cache_manager = None
