"""Gzip compression of stored payloads above a size threshold."""

import gzip
import zlib
from typing import Dict

from ..core.contract import CacheService, PayloadTransformDecorator
from ..core.entry import CacheEntry, FLAG_COMPRESSED
from ..exceptions import CodecError
from ..logging_config import get_logger


class CompressionCache(PayloadTransformDecorator):
    """
    Compresses payloads of at least ``threshold`` bytes and sets the
    compressed bit; smaller payloads are stored raw with the bit clear.
    Reads decompress only when the bit is set.
    """

    layer_name = "compression"

    def __init__(self, delegate: CacheService, threshold: int = 1024, level: int = 6):
        super().__init__(delegate)
        self.threshold = threshold
        self.level = level
        self.logger = get_logger(__name__, 'compression')
        self.stats = {
            'compressed': 0,
            'stored_raw': 0,
            'bytes_in': 0,
            'bytes_out': 0,
        }

    def encode(self, key: str, data: bytes) -> bytes:
        entry = CacheEntry.from_bytes(data)
        if entry.is_compressed or entry.is_encrypted:
            raise CodecError("Entry is already transformed", namespace=self.namespace, key=key, operation='compress')
        if len(entry.payload) < self.threshold:
            self.stats['stored_raw'] += 1
            return data

        compressed = gzip.compress(entry.payload, compresslevel=self.level)
        self.stats['compressed'] += 1
        self.stats['bytes_in'] += len(entry.payload)
        self.stats['bytes_out'] += len(compressed)
        return entry.with_payload(compressed, set_flags=FLAG_COMPRESSED).to_bytes()

    def decode(self, key: str, data: bytes) -> bytes:
        entry = CacheEntry.from_bytes(data)
        if entry.is_encrypted:
            raise CodecError(
                "Entry is encrypted but this cache has no encryption configured",
                namespace=self.namespace, key=key, operation='decompress',
            )
        if not entry.is_compressed:
            return data

        try:
            payload = gzip.decompress(entry.payload)
        except (OSError, EOFError, zlib.error) as e:
            self.logger.error(
                f"Failed to decompress entry: {e}", operation="decompress", namespace=self.namespace, cache_key=key,
            )
            raise CodecError(
                f"Corrupt compressed payload: {e}", namespace=self.namespace, key=key, operation='decompress',
            ) from e
        return entry.with_payload(payload, clear_flags=FLAG_COMPRESSED).to_bytes()

    def get_stats(self) -> Dict[str, int]:
        return dict(self.stats)
