"""
The cache contract shared by every provider and decorator.

Providers and decorators all implement ``CacheService``. Below the value
codec the values are framed entry bytes; above it they are plain Python
values. The contract itself does not care which.
"""

import inspect
from abc import ABC, abstractmethod
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Mapping, Optional, Union

from ..exceptions import CacheUnavailableError
from ..logging_config import get_logger
from .statistics import CacheStatistics

logger = get_logger(__name__, 'cache_contract')

Loader = Callable[[], Union[Any, Awaitable[Any]]]


async def call_loader(loader: Loader) -> Any:
    """Run a loader that may be a plain callable or a coroutine function."""
    result = loader()
    if inspect.isawaitable(result):
        result = await result
    return result


async def store_loaded(cache: 'CacheService', key: str, value: Any, ttl: Optional[float]) -> None:
    """Store a freshly loaded value; an unreachable shared tier does not fail the load."""
    try:
        await cache.put(key, value, ttl)
    except CacheUnavailableError as e:
        context = {**e.context(), "namespace": cache.namespace, "cache_key": key}
        logger.warning(f"Loaded value not stored: {e}", operation="get_or_compute", **context)


def resolve_ttl(ttl: Optional[float], default: float) -> float:
    if ttl is None:
        return default
    if ttl <= 0:
        raise ValueError(f"TTL must be positive, got {ttl}")
    return ttl


class CacheService(ABC):
    """Operations every cache layer supports."""

    namespace: str
    layer_name = "cache"

    @abstractmethod
    async def get(self, key: str) -> Optional[Any]:
        """Return the cached value or None on a miss."""

    @abstractmethod
    async def put(self, key: str, value: Any, ttl: Optional[float] = None) -> None:
        """Store ``value`` under ``key``."""

    @abstractmethod
    async def remove(self, key: str) -> bool:
        """Remove ``key``; return True if an entry existed."""

    @abstractmethod
    async def contains_key(self, key: str) -> bool:
        ...

    @abstractmethod
    async def clear(self) -> None:
        """Remove every entry of this namespace."""

    @abstractmethod
    async def put_if_absent(self, key: str, value: Any, ttl: Optional[float] = None) -> bool:
        """Store ``value`` only if ``key`` is absent; return True if stored."""

    @abstractmethod
    async def increment(self, key: str, delta: int = 1) -> int:
        ...

    async def decrement(self, key: str, delta: int = 1) -> int:
        return await self.increment(key, -delta)

    async def get_many(self, keys: Iterable[str]) -> Dict[str, Any]:
        """Return the hits among ``keys``; misses are left out."""
        result = {}
        for key in keys:
            value = await self.get(key)
            if value is not None:
                result[key] = value
        return result

    async def put_many(self, entries: Mapping[str, Any], ttl: Optional[float] = None) -> None:
        for key, value in entries.items():
            await self.put(key, value, ttl)

    async def get_or_compute(self, key: str, loader: Loader, ttl: Optional[float] = None) -> Any:
        """Return the cached value, computing and storing it on a miss."""
        value = await self.get(key)
        if value is not None:
            return value
        value = await call_loader(loader)
        if value is not None:
            await store_loaded(self, key, value, ttl)
        return value

    def get_statistics(self) -> Optional[CacheStatistics]:
        return None

    def layers(self) -> List[str]:
        """Names of the layers from this one inwards."""
        return [self.layer_name]


class CacheDecorator(CacheService):
    """Pass-through base for decorators; subclasses override what they change."""

    layer_name = "decorator"

    def __init__(self, delegate: CacheService):
        self.delegate = delegate
        self.namespace = delegate.namespace

    async def get(self, key: str) -> Optional[Any]:
        return await self.delegate.get(key)

    async def put(self, key: str, value: Any, ttl: Optional[float] = None) -> None:
        await self.delegate.put(key, value, ttl)

    async def remove(self, key: str) -> bool:
        return await self.delegate.remove(key)

    async def contains_key(self, key: str) -> bool:
        return await self.delegate.contains_key(key)

    async def clear(self) -> None:
        await self.delegate.clear()

    async def put_if_absent(self, key: str, value: Any, ttl: Optional[float] = None) -> bool:
        return await self.delegate.put_if_absent(key, value, ttl)

    async def increment(self, key: str, delta: int = 1) -> int:
        return await self.delegate.increment(key, delta)

    async def decrement(self, key: str, delta: int = 1) -> int:
        return await self.delegate.decrement(key, delta)

    async def get_many(self, keys: Iterable[str]) -> Dict[str, Any]:
        return await self.delegate.get_many(keys)

    async def put_many(self, entries: Mapping[str, Any], ttl: Optional[float] = None) -> None:
        await self.delegate.put_many(entries, ttl)

    async def get_or_compute(self, key: str, loader: Loader, ttl: Optional[float] = None) -> Any:
        return await self.delegate.get_or_compute(key, loader, ttl)

    def get_statistics(self) -> Optional[CacheStatistics]:
        return self.delegate.get_statistics()

    def layers(self) -> List[str]:
        return [self.layer_name] + self.delegate.layers()


class PayloadTransformDecorator(CacheDecorator):
    """
    Base for decorators that rewrite stored bytes (compression, encryption).

    ``encode`` runs on the way in and ``decode`` on the way out; loaders
    passed to ``get_or_compute`` are wrapped so that freshly computed
    values are encoded before inner layers store them.
    """

    def encode(self, key: str, data: bytes) -> bytes:
        raise NotImplementedError

    def decode(self, key: str, data: bytes) -> bytes:
        raise NotImplementedError

    def _decode_optional(self, key: str, data: Optional[bytes]) -> Optional[bytes]:
        return None if data is None else self.decode(key, data)

    async def get(self, key: str) -> Optional[bytes]:
        return self._decode_optional(key, await self.delegate.get(key))

    async def put(self, key: str, value: bytes, ttl: Optional[float] = None) -> None:
        await self.delegate.put(key, self.encode(key, value), ttl)

    async def put_if_absent(self, key: str, value: bytes, ttl: Optional[float] = None) -> bool:
        return await self.delegate.put_if_absent(key, self.encode(key, value), ttl)

    async def get_many(self, keys: Iterable[str]) -> Dict[str, bytes]:
        found = await self.delegate.get_many(keys)
        return {key: self.decode(key, data) for key, data in found.items()}

    async def put_many(self, entries: Mapping[str, bytes], ttl: Optional[float] = None) -> None:
        encoded = {key: self.encode(key, data) for key, data in entries.items()}
        await self.delegate.put_many(encoded, ttl)

    async def get_or_compute(self, key: str, loader: Loader, ttl: Optional[float] = None) -> bytes:
        async def encoding_loader():
            return self.encode(key, await call_loader(loader))

        return self._decode_optional(key, await self.delegate.get_or_compute(key, encoding_loader, ttl))
