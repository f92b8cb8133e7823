"""
Value codec: turns caller values into framed entry bytes and back.

Sits just inside the metrics decorator. Everything below it handles
framed bytes; by the time a stored entry comes back up to the codec every
transformation must have been undone, so a marker with bits still set
means the chain cannot read the entry.
"""

from typing import Any, Dict, Iterable, Mapping, Optional

from ..config import SerializationFormat
from ..core.contract import CacheDecorator, CacheService, Loader, call_loader
from ..core.entry import CacheEntry, ValueSerializer
from ..exceptions import CodecError


class _NothingLoaded(Exception):
    """Raised through inner layers when a loader returns None."""


class ValueCodecCache(CacheDecorator):

    layer_name = "codec"

    def __init__(self, delegate: CacheService,
                 serialization_format: SerializationFormat = SerializationFormat.JSON):
        super().__init__(delegate)
        self.serializer = ValueSerializer(serialization_format)

    def encode(self, key: str, value: Any) -> bytes:
        if value is None:
            raise CodecError("None cannot be cached", namespace=self.namespace, key=key, operation='encode')
        return CacheEntry.raw(self.serializer.serialize(value)).to_bytes()

    def decode(self, key: str, data: bytes) -> Any:
        try:
            entry = CacheEntry.from_bytes(data)
            if entry.flags:
                raise CodecError(f"Entry flags {entry.flags:#04x} were not reversed by this cache's configuration")
            return self.serializer.deserialize(entry.payload)
        except CodecError as e:
            if e.key is None:
                e.namespace, e.key, e.operation = self.namespace, key, 'decode'
            raise

    async def get(self, key: str) -> Optional[Any]:
        data = await self.delegate.get(key)
        return None if data is None else self.decode(key, data)

    async def put(self, key: str, value: Any, ttl: Optional[float] = None) -> None:
        await self.delegate.put(key, self.encode(key, value), ttl)

    async def put_if_absent(self, key: str, value: Any, ttl: Optional[float] = None) -> bool:
        return await self.delegate.put_if_absent(key, self.encode(key, value), ttl)

    async def get_many(self, keys: Iterable[str]) -> Dict[str, Any]:
        found = await self.delegate.get_many(keys)
        return {key: self.decode(key, data) for key, data in found.items()}

    async def put_many(self, entries: Mapping[str, Any], ttl: Optional[float] = None) -> None:
        await self.delegate.put_many({key: self.encode(key, value) for key, value in entries.items()}, ttl)

    async def get_or_compute(self, key: str, loader: Loader, ttl: Optional[float] = None) -> Any:
        async def encoding_loader():
            value = await call_loader(loader)
            if value is None:
                raise _NothingLoaded()
            return self.encode(key, value)

        try:
            data = await self.delegate.get_or_compute(key, encoding_loader, ttl)
        except _NothingLoaded:
            return None
        return None if data is None else self.decode(key, data)
