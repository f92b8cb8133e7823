"""Tests for the cache manager, function decorators and configuration."""

import pytest
import pytest_asyncio

from conftest import FakeRedis, wait_until
from tiered_cache.annotations import cache_evict, cache_put, cached, default_key
from tiered_cache.builder import BaseProvider
from tiered_cache.config import CacheConfiguration, CacheSettings, SerializationFormat
from tiered_cache.exceptions import CacheConfigurationError
from tiered_cache.features.encryption import generate_key
from tiered_cache.manager import CacheManager, get_cache_manager, set_cache_manager


@pytest_asyncio.fixture
async def manager(redis_server, settings):
    manager = CacheManager(settings=settings, client=FakeRedis(redis_server), node_id="node-a")
    await manager.initialize()
    yield manager
    await manager.shutdown()


@pytest_asyncio.fixture
async def peer(redis_server, settings):
    manager = CacheManager(settings=settings, client=FakeRedis(redis_server), node_id="node-b")
    await manager.initialize()
    yield manager
    await manager.shutdown()


class TestCacheManager:
    """Test the namespace registry and its facade."""

    @pytest.mark.asyncio
    async def test_get_cache_registers_namespace_once(self, manager):
        users = await manager.get_cache("users")
        again = await manager.get_cache("users")
        await manager.get_cache("orders")

        assert users is again
        assert manager.get_cache_names() == ["orders", "users"]
        assert manager.get_chain("users").subscriber.running

    @pytest.mark.asyncio
    async def test_remove_cache_stops_subscriber(self, manager):
        await manager.get_cache("users")
        chain = manager.get_chain("users")

        assert await manager.remove_cache("users") is True
        assert await manager.remove_cache("users") is False
        assert not chain.subscriber.running
        assert manager.get_cache_names() == []

    @pytest.mark.asyncio
    async def test_configuration_applies_on_first_build(self, manager):
        config = CacheConfiguration(compression_enabled=True, stampede_protection_enabled=False)
        cache = await manager.get_cache("docs", config)

        assert "compression" in cache.layers()
        assert "stampede" not in cache.layers()

    @pytest.mark.asyncio
    async def test_facade_operations(self, manager):
        await manager.put("users", "1", {"name": "Ada"})

        assert await manager.get("users", "1") == {"name": "Ada"}
        assert await manager.contains_key("users", "1") is True
        assert await manager.put_if_absent("users", "1", {"name": "Bob"}) is False
        assert await manager.increment("visits", "home", 2) == 2
        assert await manager.decrement("visits", "home") == 1

        await manager.put_many("users", {"2": "b", "3": "c"})
        assert await manager.get_many("users", ["2", "3", "4"]) == {"2": "b", "3": "c"}
        assert await manager.get_or_compute("users", "5", lambda: "computed") == "computed"

        assert await manager.remove("users", "1") is True
        await manager.clear("users")
        assert await manager.get("users", "2") is None

        stats = manager.get_statistics("users")
        assert stats.put_count >= 3
        assert set(manager.get_all_statistics()) == {"users", "visits"}
        assert manager.get_statistics("unknown") is None

    @pytest.mark.asyncio
    async def test_peers_see_each_others_updates(self, manager, peer):
        await manager.put("users", "1", "v1")
        assert await peer.get("users", "1") == "v1"

        await manager.put("users", "1", "v2")

        assert await wait_until(lambda: peer.get_chain("users").local.map.get("1") is None)
        assert await peer.get("users", "1") == "v2"

    @pytest.mark.asyncio
    async def test_health_check(self, manager, redis_server):
        await manager.get_cache("users")

        health = await manager.health_check()
        assert health['status'] == "healthy"
        assert health['redis'] == "healthy"
        assert health['node_id'] == "node-a"
        assert health['namespaces']['users']['mode'] == "NORMAL"
        assert health['namespaces']['users']['circuit_state'] == "CLOSED"

        redis_server.fail = True
        health = await manager.health_check()
        assert health['status'] == "degraded"
        assert health['redis'].startswith("unhealthy")

    @pytest.mark.asyncio
    async def test_starts_when_redis_is_down(self, redis_server, settings):
        redis_server.fail = True
        manager = CacheManager(settings=settings, client=FakeRedis(redis_server))

        await manager.initialize()
        try:
            assert await manager.get("users", "1") is None
        finally:
            await manager.shutdown()

    @pytest.mark.asyncio
    async def test_local_only_manager(self, settings):
        manager = CacheManager(settings=settings, base=BaseProvider.LOCAL)
        await manager.initialize()
        try:
            await manager.put("users", "1", "local")
            assert await manager.get("users", "1") == "local"

            health = await manager.health_check()
            assert health['redis'] == "disabled"
            assert health['namespaces']['users']['mode'] is None
            assert manager.client is None
        finally:
            await manager.shutdown()

    @pytest.mark.asyncio
    async def test_shutdown_keeps_injected_client_open(self, redis_server, settings):
        client = FakeRedis(redis_server)
        manager = CacheManager(settings=settings, client=client)
        await manager.get_cache("users")
        chain = manager.get_chain("users")

        await manager.shutdown()

        assert not chain.subscriber.running
        assert manager.get_cache_names() == []
        assert client.closed is False

    def test_global_manager(self, settings):
        manager = CacheManager(settings=settings, base=BaseProvider.LOCAL)
        set_cache_manager(manager)
        try:
            assert get_cache_manager() is manager
        finally:
            set_cache_manager(None)


class TestAnnotations:
    """Test the coroutine decorators."""

    @pytest.mark.asyncio
    async def test_cached_runs_function_once(self, manager):
        calls = []

        @cached("users", ttl=60, manager=manager)
        async def load_user(user_id):
            calls.append(user_id)
            return {"id": user_id}

        assert await load_user(7) == {"id": 7}
        assert await load_user(7) == {"id": 7}
        assert await load_user(8) == {"id": 8}
        assert calls == [7, 8]
        assert await manager.get("users", "load_user:7") == {"id": 7}

    @pytest.mark.asyncio
    async def test_cache_put_and_evict(self, manager):
        @cache_put("users", key_func=lambda user: user["id"], manager=manager)
        async def save_user(user):
            return user

        @cache_evict("users", key_func=lambda user_id: user_id, manager=manager)
        async def delete_user(user_id):
            return True

        await save_user({"id": "u1", "name": "Ada"})
        assert await manager.get("users", "u1") == {"id": "u1", "name": "Ada"}

        assert await delete_user("u1") is True
        assert await manager.get("users", "u1") is None

    @pytest.mark.asyncio
    async def test_evict_all_entries_before_invocation(self, manager):
        await manager.put_many("users", {"a": 1, "b": 2})
        seen = []

        @cache_evict("users", all_entries=True, before_invocation=True, manager=manager)
        async def rebuild():
            seen.append(await manager.get("users", "a"))

        await rebuild()

        assert seen == [None]
        assert await manager.get("users", "b") is None

    @pytest.mark.asyncio
    async def test_evict_is_skipped_when_function_fails(self, manager):
        await manager.put("users", "u1", "kept")

        @cache_evict("users", key_func=lambda user_id: user_id, manager=manager)
        async def delete_user(user_id):
            raise RuntimeError("database down")

        with pytest.raises(RuntimeError):
            await delete_user("u1")
        assert await manager.get("users", "u1") == "kept"

    def test_sync_functions_are_rejected(self):
        with pytest.raises(TypeError):
            @cached("users")
            def load_user(user_id):
                return user_id

    def test_default_key(self):
        def report(region, year=None):
            pass

        assert default_key(report, ("eu",), {"year": 2024}) == "report:eu:year=2024"


class TestConfiguration:

    def test_defaults_are_valid(self):
        config = CacheConfiguration()

        assert config.ttl == 3600.0
        assert config.serialization_format is SerializationFormat.JSON

    @pytest.mark.parametrize("options", [
        {"ttl": 0},
        {"failure_rate_threshold": 0},
        {"failure_rate_threshold": 101},
        {"sliding_window_size": 5, "minimum_calls": 6},
        {"compression_threshold": -1},
        {"serialization_format": "yaml"},
        {"encryption_enabled": True},
        {"encryption_enabled": True, "encryption_key": "c2hvcnQ="},
    ])
    def test_invalid_configuration_is_rejected(self, options):
        with pytest.raises(CacheConfigurationError):
            CacheConfiguration(**options)

    def test_replace_validates(self):
        config = CacheConfiguration()

        assert config.replace(ttl=10).ttl == 10
        with pytest.raises(CacheConfigurationError):
            config.replace(lock_timeout=-1)

    def test_encryption_with_generated_key(self):
        config = CacheConfiguration(encryption_enabled=True, encryption_key=generate_key())

        assert len(config.decoded_encryption_key()) == 32

    def test_from_settings_with_overrides(self, settings):
        config = CacheConfiguration.from_settings(settings, ttl=120, compression_enabled=True)

        assert config.ttl == 120
        assert config.compression_enabled is True
        assert config.lock_timeout == settings.lock_timeout

        with pytest.raises(CacheConfigurationError):
            CacheConfiguration.from_settings(settings, no_such_option=True)

    def test_settings_read_prefixed_environment(self, monkeypatch):
        monkeypatch.setenv("CACHE_DEFAULT_TTL", "42")
        monkeypatch.setenv("CACHE_COMPRESSION_ENABLED", "true")
        monkeypatch.setenv("CACHE_SERIALIZATION_FORMAT", "pickle")

        settings = CacheSettings(_env_file=None)

        assert settings.default_ttl == 42.0
        assert settings.compression_enabled is True
        assert settings.serialization_format is SerializationFormat.PICKLE
        assert CacheConfiguration.from_settings(settings).ttl == 42.0
