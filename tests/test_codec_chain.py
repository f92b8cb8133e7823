"""Tests for compression, encryption, the value codec and chain assembly."""

import base64
import os

import pytest

from conftest import FakeRedis
from tiered_cache.builder import BaseProvider, CacheChainBuilder
from tiered_cache.config import CacheConfiguration
from tiered_cache.core.entry import CacheEntry, FLAG_COMPRESSED, FLAG_ENCRYPTED
from tiered_cache.exceptions import CacheConfigurationError, CodecError, DecryptionError
from tiered_cache.features.compression import CompressionCache
from tiered_cache.features.encryption import EncryptionCache, generate_key
from tiered_cache.features.serialization import ValueCodecCache
from tiered_cache.providers.memory import LocalCache

KEY = generate_key()


def raw_entry(payload: bytes) -> bytes:
    return CacheEntry.raw(payload).to_bytes()


class TestCompression:

    @pytest.mark.asyncio
    async def test_threshold_decides_compression(self):
        store = LocalCache("docs")
        cache = CompressionCache(store, threshold=100)

        await cache.put("small", raw_entry(b"a" * 99))
        await cache.put("large", raw_entry(b"a" * 100))

        assert CacheEntry.from_bytes(await store.get("small")).flags == 0
        stored = CacheEntry.from_bytes(await store.get("large"))
        assert stored.flags == FLAG_COMPRESSED
        assert len(stored.payload) < 100

        assert await cache.get("small") == raw_entry(b"a" * 99)
        assert await cache.get("large") == raw_entry(b"a" * 100)

    @pytest.mark.asyncio
    async def test_corrupt_compressed_payload_is_codec_error(self):
        store = LocalCache("docs")
        cache = CompressionCache(store, threshold=10)
        await store.put("bad", CacheEntry(FLAG_COMPRESSED, b"not gzip at all").to_bytes())

        with pytest.raises(CodecError):
            await cache.get("bad")

    @pytest.mark.asyncio
    async def test_encrypted_entry_without_decryption_is_codec_error(self):
        store = LocalCache("docs")
        cache = CompressionCache(store)
        await store.put("enc", CacheEntry(FLAG_ENCRYPTED, os.urandom(40)).to_bytes())

        with pytest.raises(CodecError):
            await cache.get("enc")


class TestEncryption:

    @pytest.mark.asyncio
    async def test_payload_is_encrypted_with_fresh_nonce(self):
        store = LocalCache("secrets")
        cache = EncryptionCache(store, KEY)

        await cache.put("a", raw_entry(b"top secret"))
        first = await store.get("a")
        await cache.put("a", raw_entry(b"top secret"))
        second = await store.get("a")

        assert CacheEntry.from_bytes(first).flags == FLAG_ENCRYPTED
        assert b"top secret" not in first
        assert first != second
        assert await cache.get("a") == raw_entry(b"top secret")

    @pytest.mark.asyncio
    async def test_tampered_ciphertext_raises_decryption_error(self):
        store = LocalCache("secrets")
        cache = EncryptionCache(store, KEY)
        await cache.put("a", raw_entry(b"value"))

        stored = bytearray(await store.get("a"))
        stored[-1] ^= 0x01
        await store.put("a", bytes(stored))

        with pytest.raises(DecryptionError) as exc_info:
            await cache.get("a")
        assert exc_info.value.key == "a"

    @pytest.mark.asyncio
    async def test_flipped_marker_fails_authentication(self):
        store = LocalCache("secrets")
        cache = EncryptionCache(store, KEY)
        await cache.put("a", raw_entry(b"value"))

        stored = bytearray(await store.get("a"))
        stored[0] |= FLAG_COMPRESSED
        await store.put("a", bytes(stored))

        with pytest.raises(DecryptionError):
            await cache.get("a")

    @pytest.mark.asyncio
    async def test_wrong_key_raises_decryption_error(self):
        store = LocalCache("secrets")
        await EncryptionCache(store, KEY).put("a", raw_entry(b"value"))

        with pytest.raises(DecryptionError):
            await EncryptionCache(store, generate_key()).get("a")

    @pytest.mark.asyncio
    async def test_unencrypted_or_truncated_entries_are_rejected(self):
        store = LocalCache("secrets")
        cache = EncryptionCache(store, KEY)
        await store.put("plain", raw_entry(b"value"))
        await store.put("short", CacheEntry(FLAG_ENCRYPTED, b"tiny").to_bytes())

        with pytest.raises(DecryptionError):
            await cache.get("plain")
        with pytest.raises(DecryptionError):
            await cache.get("short")

    def test_invalid_keys_rejected_at_construction(self):
        store = LocalCache("secrets")

        with pytest.raises(CacheConfigurationError):
            EncryptionCache(store, base64.b64encode(b"short").decode())
        with pytest.raises(CacheConfigurationError):
            EncryptionCache(store, "***not base64***")


class TestChainAssembly:
    """Test the builder's fixed layer order and end-to-end transformations."""

    def test_full_chain_order(self, redis_client, settings):
        config = CacheConfiguration(compression_enabled=True, encryption_enabled=True, encryption_key=KEY)
        chain = CacheChainBuilder(redis_client, node_id="n1", settings=settings).build("users", config)

        assert chain.cache.layers() == [
            "metrics", "codec", "compression", "encryption", "stampede",
            "multi_level", "l1", "circuit_breaker", "l2",
        ]

    def test_shared_base_puts_breaker_at_its_position(self, redis_client, settings):
        config = CacheConfiguration(compression_enabled=True)
        chain = CacheChainBuilder(redis_client, settings=settings).build("users", config, BaseProvider.SHARED)

        assert chain.cache.layers() == ["metrics", "codec", "compression", "circuit_breaker", "stampede", "l2"]

    def test_local_base_has_no_breaker(self, settings):
        config = CacheConfiguration(metrics_enabled=False, stampede_protection_enabled=False)
        chain = CacheChainBuilder(settings=settings).build("users", config, BaseProvider.LOCAL)

        assert chain.cache.layers() == ["codec", "l1"]
        assert chain.breaker is None

    def test_shared_base_requires_client(self, settings):
        with pytest.raises(CacheConfigurationError):
            CacheChainBuilder(settings=settings).build("users", base=BaseProvider.SHARED)

    @pytest.mark.asyncio
    @pytest.mark.parametrize("compression,encryption", [
        (False, False), (True, False), (False, True), (True, True),
    ])
    async def test_round_trip_through_enabled_layers(self, settings, compression, encryption):
        config = CacheConfiguration(
            compression_enabled=compression, compression_threshold=64,
            encryption_enabled=encryption, encryption_key=KEY,
        )
        cache = CacheChainBuilder(settings=settings).build("docs", config, BaseProvider.LOCAL).cache
        value = {"title": "Report", "body": "lorem ipsum " * 50, "pages": 12}

        await cache.put("r1", value)

        assert await cache.get("r1") == value

    @pytest.mark.asyncio
    async def test_users_scenario_sets_both_bits(self, redis_server, settings):
        config = CacheConfiguration(
            compression_enabled=True, compression_threshold=1024,
            encryption_enabled=True, encryption_key=KEY,
        )
        cache = CacheChainBuilder(FakeRedis(redis_server), settings=settings).build("users", config).cache
        value = "u" * 1998  # serializes to 2000 JSON bytes

        await cache.put("u1", value)

        stored = redis_server.live("users:u1")
        assert stored[0] == FLAG_COMPRESSED | FLAG_ENCRYPTED

        reader = CacheChainBuilder(FakeRedis(redis_server), settings=settings).build("users", config).cache
        assert await reader.get("u1") == value

    @pytest.mark.asyncio
    async def test_configuration_mismatch_is_codec_error(self, settings):
        builder = CacheChainBuilder(settings=settings)
        chain = builder.build("docs", CacheConfiguration(compression_enabled=True, compression_threshold=1), BaseProvider.LOCAL)
        await chain.cache.put("a", "x" * 100)

        # Same local tier read through a chain without compression
        plain = ValueCodecCache(chain.local)
        with pytest.raises(CodecError):
            await plain.get("a")

    @pytest.mark.asyncio
    async def test_none_values_are_not_cacheable(self, settings):
        cache = CacheChainBuilder(settings=settings).build("docs", base=BaseProvider.LOCAL).cache

        with pytest.raises(CodecError):
            await cache.put("a", None)
