"""
Stored entry framing and value serialization.

Every payload written to either tier is framed as one marker byte
followed by the payload. The marker's bit flags record which
transformations were applied, so a reader can undo them in reverse
order without consulting configuration.
"""

import json
import pickle
from dataclasses import dataclass
from typing import Any

from ..config import SerializationFormat
from ..exceptions import CodecError

FLAG_COMPRESSED = 0x01
FLAG_ENCRYPTED = 0x02
KNOWN_FLAGS = FLAG_COMPRESSED | FLAG_ENCRYPTED


@dataclass(frozen=True)
class CacheEntry:
    """A framed payload: marker flags plus the (possibly transformed) bytes."""

    flags: int
    payload: bytes

    @property
    def is_compressed(self) -> bool:
        return bool(self.flags & FLAG_COMPRESSED)

    @property
    def is_encrypted(self) -> bool:
        return bool(self.flags & FLAG_ENCRYPTED)

    def with_payload(self, payload: bytes, set_flags: int = 0, clear_flags: int = 0) -> 'CacheEntry':
        return CacheEntry((self.flags | set_flags) & ~clear_flags, payload)

    def to_bytes(self) -> bytes:
        if self.flags & ~KNOWN_FLAGS:
            raise CodecError(f"Unknown entry flags: {self.flags:#04x}")
        return bytes((self.flags,)) + self.payload

    @classmethod
    def from_bytes(cls, data: bytes) -> 'CacheEntry':
        if not isinstance(data, (bytes, bytearray, memoryview)):
            raise CodecError(f"Stored entry must be bytes, got {type(data).__name__}")
        data = bytes(data)
        if not data:
            raise CodecError("Stored entry is empty")
        flags = data[0]
        if flags & ~KNOWN_FLAGS:
            raise CodecError(f"Unknown entry flags: {flags:#04x}")
        return cls(flags, data[1:])

    @classmethod
    def raw(cls, payload: bytes) -> 'CacheEntry':
        return cls(0, payload)


class ValueSerializer:
    """Serialize Python values to bytes and back."""

    def __init__(self, serialization_format: SerializationFormat = SerializationFormat.JSON):
        self.serialization_format = SerializationFormat(serialization_format)

    def serialize(self, value: Any) -> bytes:
        try:
            if self.serialization_format is SerializationFormat.JSON:
                return json.dumps(value, separators=(',', ':')).encode('utf-8')
            return pickle.dumps(value, protocol=pickle.HIGHEST_PROTOCOL)
        except (TypeError, ValueError, pickle.PicklingError, AttributeError) as e:
            raise CodecError(f"Cannot serialize value of type {type(value).__name__}: {e}") from e

    def deserialize(self, data: bytes) -> Any:
        try:
            if self.serialization_format is SerializationFormat.JSON:
                return json.loads(data.decode('utf-8'))
            return pickle.loads(data)
        except (UnicodeDecodeError, ValueError, pickle.UnpicklingError, EOFError, AttributeError) as e:
            raise CodecError(f"Cannot deserialize stored value: {e}") from e
