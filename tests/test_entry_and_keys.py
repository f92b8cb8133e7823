"""Tests for entry framing, value serialization and physical keys."""

import pytest

from tiered_cache.config import SerializationFormat
from tiered_cache.core.entry import CacheEntry, ValueSerializer, FLAG_COMPRESSED, FLAG_ENCRYPTED
from tiered_cache.core.keys import MAX_KEY_LENGTH, build_cache_key, escape_glob, namespace_pattern
from tiered_cache.exceptions import CodecError


class TestCacheEntry:
    """Test the one-byte marker framing."""

    def test_marker_byte_prefixes_payload(self):
        entry = CacheEntry(FLAG_COMPRESSED | FLAG_ENCRYPTED, b"payload")
        data = entry.to_bytes()

        assert data[0] == 0x03
        assert data[1:] == b"payload"
        assert CacheEntry.from_bytes(data) == entry

    def test_flag_properties(self):
        entry = CacheEntry.raw(b"x")
        assert not entry.is_compressed
        assert not entry.is_encrypted

        entry = entry.with_payload(b"y", set_flags=FLAG_COMPRESSED)
        assert entry.is_compressed
        assert entry.payload == b"y"

        entry = entry.with_payload(b"z", clear_flags=FLAG_COMPRESSED)
        assert entry.flags == 0

    def test_empty_buffer_rejected(self):
        with pytest.raises(CodecError):
            CacheEntry.from_bytes(b"")

    def test_unknown_flags_rejected(self):
        with pytest.raises(CodecError):
            CacheEntry.from_bytes(bytes([0x80]) + b"data")

        with pytest.raises(CodecError):
            CacheEntry(0x10, b"data").to_bytes()

    def test_non_bytes_rejected(self):
        with pytest.raises(CodecError):
            CacheEntry.from_bytes("not bytes")


class TestValueSerializer:
    """Test value serialization formats."""

    def test_json_values(self):
        serializer = ValueSerializer(SerializationFormat.JSON)
        value = {"name": "Ada", "roles": ["admin"], "age": 36}

        assert serializer.deserialize(serializer.serialize(value)) == value

    def test_pickle_preserves_types(self):
        serializer = ValueSerializer(SerializationFormat.PICKLE)
        value = {"ids": (1, 2, 3), "tags": {"a", "b"}}

        assert serializer.deserialize(serializer.serialize(value)) == value

    def test_json_rejects_unserializable_value(self):
        serializer = ValueSerializer("json")

        with pytest.raises(CodecError):
            serializer.serialize(object())

    def test_corrupt_payload_is_codec_error(self):
        with pytest.raises(CodecError):
            ValueSerializer("json").deserialize(b"\xff\xfe{")

        with pytest.raises(CodecError):
            ValueSerializer("pickle").deserialize(b"not a pickle")


class TestKeys:
    """Test physical key construction."""

    def test_namespace_prefix(self):
        assert build_cache_key("users", "42") == "users:42"

    def test_long_keys_are_hashed(self):
        key = "k" * 300
        physical = build_cache_key("users", key)

        assert physical.startswith("users:hash:")
        assert len(physical) <= MAX_KEY_LENGTH
        assert physical == build_cache_key("users", key)
        assert physical != build_cache_key("users", key + "x")

    def test_namespace_pattern_escapes_glob_characters(self):
        assert namespace_pattern("users") == "users:*"
        assert namespace_pattern("a*b") == "a\\*b:*"
        assert escape_glob("x?[y]") == "x\\?\\[y\\]"
