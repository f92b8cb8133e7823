"""
Shared cache tier backed by Redis.

``RedisCache`` moves framed bytes for one namespace. Every call runs under
a timeout; timeouts become CacheTimeoutError and connection failures
become CacheUnavailableError so that the circuit breaker can count them.
"""

import asyncio
import math
from typing import Any, Awaitable, Dict, Iterable, List, Mapping, Optional

from redis.asyncio import Redis
from redis.exceptions import (
    ConnectionError as RedisConnectionError,
    RedisError,
    ResponseError,
    TimeoutError as RedisTimeoutError,
)

from ..core.contract import CacheService, resolve_ttl
from ..core.keys import build_cache_key, namespace_pattern
from ..exceptions import CacheTimeoutError, CacheUnavailableError, CodecError
from ..logging_config import get_logger
from ..metrics_collector import get_metrics_collector

SCAN_BATCH_SIZE = 500


class RedisCache(CacheService):
    """L2 tier: one namespace's entries in Redis."""

    layer_name = "l2"

    def __init__(
        self,
        client: Redis,
        namespace: str,
        default_ttl: float = 3600.0,
        operation_timeout: float = 0.5,
        clear_timeout: float = 30.0,
    ):
        self.client = client
        self.namespace = namespace
        self.default_ttl = default_ttl
        self.operation_timeout = operation_timeout
        self.clear_timeout = clear_timeout
        self.logger = get_logger(__name__, 'redis_cache')
        self.metrics = get_metrics_collector()

        self.stats = {
            'gets': 0,
            'sets': 0,
            'deletes': 0,
            'errors': 0,
            'timeouts': 0,
        }

    def _key(self, key: str) -> str:
        return build_cache_key(self.namespace, key)

    def _ttl_ms(self, ttl: Optional[float]) -> int:
        # Redis rejects a zero expiry
        return max(1, math.ceil(resolve_ttl(ttl, self.default_ttl) * 1000))

    async def _execute(self, operation: str, key: Optional[str], awaitable: Awaitable[Any],
                       timeout: Optional[float] = None) -> Any:
        timeout = timeout or self.operation_timeout
        try:
            return await asyncio.wait_for(awaitable, timeout=timeout)
        except (asyncio.TimeoutError, RedisTimeoutError) as e:
            self.stats['timeouts'] += 1
            self.metrics.get_counter('cache_l2_timeouts_total', tags={'namespace': self.namespace}).increment()
            raise CacheTimeoutError(
                f"Redis {operation} timed out after {timeout}s",
                timeout=timeout, namespace=self.namespace, key=key, operation=operation,
            ) from e
        except ResponseError:
            raise
        except (RedisConnectionError, RedisError, OSError) as e:
            self.stats['errors'] += 1
            self.metrics.get_counter('cache_l2_errors_total', tags={'namespace': self.namespace}).increment()
            raise CacheUnavailableError(
                f"Redis {operation} failed: {e}",
                namespace=self.namespace, key=key, operation=operation,
            ) from e

    async def get(self, key: str) -> Optional[bytes]:
        self.stats['gets'] += 1
        return await self._execute('get', key, self.client.get(self._key(key)))

    async def put(self, key: str, value: bytes, ttl: Optional[float] = None) -> None:
        ttl_ms = self._ttl_ms(ttl)
        await self._execute('put', key, self.client.set(self._key(key), value, px=ttl_ms))
        self.stats['sets'] += 1

    async def remove(self, key: str) -> bool:
        deleted = await self._execute('remove', key, self.client.delete(self._key(key)))
        self.stats['deletes'] += 1
        return deleted > 0

    async def contains_key(self, key: str) -> bool:
        return await self._execute('contains_key', key, self.client.exists(self._key(key))) > 0

    async def put_if_absent(self, key: str, value: bytes, ttl: Optional[float] = None) -> bool:
        ttl_ms = self._ttl_ms(ttl)
        stored = await self._execute(
            'put_if_absent', key, self.client.set(self._key(key), value, px=ttl_ms, nx=True)
        )
        return bool(stored)

    async def increment(self, key: str, delta: int = 1) -> int:
        try:
            return int(await self._execute('increment', key, self.client.incrby(self._key(key), delta)))
        except ResponseError as e:
            raise CodecError(
                f"Value is not an integer: {e}", namespace=self.namespace, key=key, operation='increment'
            ) from e

    async def decrement(self, key: str, delta: int = 1) -> int:
        try:
            return int(await self._execute('decrement', key, self.client.decrby(self._key(key), delta)))
        except ResponseError as e:
            raise CodecError(
                f"Value is not an integer: {e}", namespace=self.namespace, key=key, operation='decrement'
            ) from e

    async def get_many(self, keys: Iterable[str]) -> Dict[str, bytes]:
        keys = list(keys)
        if not keys:
            return {}
        values = await self._execute('get_many', None, self.client.mget([self._key(k) for k in keys]))
        self.stats['gets'] += len(keys)
        return {key: data for key, data in zip(keys, values) if data is not None}

    async def put_many(self, entries: Mapping[str, bytes], ttl: Optional[float] = None) -> None:
        if not entries:
            return
        ttl_ms = self._ttl_ms(ttl)
        pipe = self.client.pipeline(transaction=False)
        for key, value in entries.items():
            pipe.set(self._key(key), value, px=ttl_ms)
        await self._execute('put_many', None, pipe.execute())
        self.stats['sets'] += len(entries)

    async def clear(self) -> None:
        deleted = await self._execute('clear', None, self._scan_and_delete(), timeout=self.clear_timeout)
        self.logger.info(
            f"Cleared {deleted} keys from namespace: {self.namespace}",
            operation="clear", namespace=self.namespace, deleted=deleted,
        )

    async def _scan_and_delete(self) -> int:
        deleted = 0
        batch: List[bytes] = []
        async for key in self.client.scan_iter(match=namespace_pattern(self.namespace), count=SCAN_BATCH_SIZE):
            batch.append(key)
            if len(batch) >= SCAN_BATCH_SIZE:
                deleted += await self.client.delete(*batch)
                batch = []
        if batch:
            deleted += await self.client.delete(*batch)
        return deleted

    async def ping(self) -> bool:
        return bool(await self._execute('ping', None, self.client.ping()))

    def get_stats(self) -> Dict[str, Any]:
        return dict(self.stats)
