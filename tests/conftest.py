"""
Shared fixtures.

``FakeRedis`` is an in-memory stand-in for ``redis.asyncio.Redis`` that
implements the commands the cache uses. Clients created on the same
``FakeRedisServer`` share data and pub/sub channels, so two cache managers
on one server behave like two processes talking to one Redis.
"""

import asyncio
import re
import time
import uuid
from collections import defaultdict
from typing import Any, Dict, List, Optional, Tuple

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError, LockNotOwnedError, ResponseError

from tiered_cache.config import CacheSettings
from tiered_cache.metrics_collector import MetricsCollector


def _glob_to_regex(pattern: str) -> re.Pattern:
    parts = []
    i = 0
    while i < len(pattern):
        char = pattern[i]
        if char == '\\' and i + 1 < len(pattern):
            parts.append(re.escape(pattern[i + 1]))
            i += 2
            continue
        if char == '*':
            parts.append('.*')
        elif char == '?':
            parts.append('.')
        else:
            parts.append(re.escape(char))
        i += 1
    return re.compile(''.join(parts) + r'\Z', re.DOTALL)


def _text(value: Any) -> str:
    return value.decode('utf-8') if isinstance(value, (bytes, bytearray)) else str(value)


def _bytes(value: Any) -> bytes:
    if isinstance(value, (bytes, bytearray)):
        return bytes(value)
    return str(value).encode('utf-8')


class FakeRedisServer:
    """Shared state behind any number of FakeRedis clients."""

    def __init__(self):
        self.data: Dict[str, Tuple[bytes, Optional[float]]] = {}
        self.subscribers: Dict[str, List['FakePubSub']] = defaultdict(list)
        self.published: List[Tuple[str, bytes]] = []
        self.commands: List[str] = []
        self.fail = False
        self.fail_publish = False
        self.delay = 0.0

    def live(self, key: str) -> Optional[bytes]:
        item = self.data.get(key)
        if item is None:
            return None
        value, expires_at = item
        if expires_at is not None and time.monotonic() >= expires_at:
            del self.data[key]
            return None
        return value

    def ttl_of(self, key: str) -> Optional[float]:
        item = self.data.get(key)
        if item is None or item[1] is None:
            return None
        return item[1] - time.monotonic()


class FakePipeline:

    def __init__(self, client: 'FakeRedis'):
        self.client = client
        self.queued = []

    def set(self, name, value, ex=None, px=None, nx=False):
        self.queued.append((name, value, ex, px, nx))
        return self

    async def execute(self):
        results = []
        for name, value, ex, px, nx in self.queued:
            results.append(await self.client.set(name, value, ex=ex, px=px, nx=nx))
        self.queued = []
        return results


class FakePubSub:

    def __init__(self, server: FakeRedisServer):
        self.server = server
        self.channels: List[str] = []
        self.queue: asyncio.Queue = asyncio.Queue()
        self.closed = False

    async def subscribe(self, *channels):
        if self.server.fail:
            raise RedisConnectionError("Connection refused")
        for channel in channels:
            channel = _text(channel)
            self.channels.append(channel)
            self.server.subscribers[channel].append(self)

    async def get_message(self, ignore_subscribe_messages=False, timeout=0.0):
        if self.server.fail:
            raise RedisConnectionError("Connection lost")
        try:
            return await asyncio.wait_for(self.queue.get(), timeout=timeout)
        except asyncio.TimeoutError:
            return None

    async def aclose(self):
        for channel in self.channels:
            if self in self.server.subscribers[channel]:
                self.server.subscribers[channel].remove(self)
        self.channels = []
        self.closed = True


class FakeLock:

    def __init__(self, client: 'FakeRedis', name: str, timeout: Optional[float], blocking_timeout: Optional[float]):
        self.client = client
        self.name = name
        self.timeout = timeout
        self.blocking_timeout = blocking_timeout
        self.token = uuid.uuid4().hex.encode('ascii')

    async def acquire(self) -> bool:
        loop = asyncio.get_running_loop()
        deadline = None if self.blocking_timeout is None else loop.time() + self.blocking_timeout
        while True:
            px = int(self.timeout * 1000) if self.timeout else None
            if await self.client.set(self.name, self.token, px=px, nx=True):
                return True
            if deadline is not None and loop.time() >= deadline:
                return False
            await asyncio.sleep(0.005)

    async def release(self) -> None:
        server = self.client.server
        if server.live(self.name) != self.token:
            raise LockNotOwnedError("Cannot release a lock that's no longer owned")
        del server.data[self.name]


class FakeRedis:
    """In-memory async Redis client for tests."""

    def __init__(self, server: Optional[FakeRedisServer] = None):
        self.server = server or FakeRedisServer()
        self.closed = False

    async def _command(self, name: str) -> None:
        self.server.commands.append(name)
        if self.server.delay:
            await asyncio.sleep(self.server.delay)
        if self.server.fail:
            raise RedisConnectionError("Connection refused")

    async def ping(self):
        await self._command('PING')
        return True

    async def get(self, name):
        await self._command('GET')
        return self.server.live(_text(name))

    async def set(self, name, value, ex=None, px=None, nx=False):
        await self._command('SET')
        if (ex is not None and ex <= 0) or (px is not None and px <= 0):
            raise ResponseError("invalid expire time in 'set' command")
        key = _text(name)
        if nx and self.server.live(key) is not None:
            return None
        expires_at = None
        if ex is not None:
            expires_at = time.monotonic() + ex
        elif px is not None:
            expires_at = time.monotonic() + px / 1000.0
        self.server.data[key] = (_bytes(value), expires_at)
        return True

    async def delete(self, *names):
        await self._command('DEL')
        deleted = 0
        for name in names:
            key = _text(name)
            if self.server.live(key) is not None:
                del self.server.data[key]
                deleted += 1
        return deleted

    async def exists(self, *names):
        await self._command('EXISTS')
        return sum(1 for name in names if self.server.live(_text(name)) is not None)

    async def incrby(self, name, amount=1):
        await self._command('INCRBY')
        key = _text(name)
        current = self.server.live(key)
        try:
            value = int(current) if current is not None else 0
        except ValueError:
            raise ResponseError("value is not an integer or out of range")
        expires_at = self.server.data[key][1] if current is not None else None
        value += amount
        self.server.data[key] = (str(value).encode('ascii'), expires_at)
        return value

    async def decrby(self, name, amount=1):
        return await self.incrby(name, -amount)

    async def mget(self, keys, *args):
        await self._command('MGET')
        return [self.server.live(_text(key)) for key in list(keys) + list(args)]

    def pipeline(self, transaction=True):
        return FakePipeline(self)

    async def scan_iter(self, match=None, count=None):
        await self._command('SCAN')
        regex = _glob_to_regex(match) if match else None
        for key in list(self.server.data):
            if self.server.live(key) is None:
                continue
            if regex is None or regex.match(key):
                yield key.encode('utf-8')

    async def publish(self, channel, message):
        await self._command('PUBLISH')
        if self.server.fail_publish:
            raise RedisConnectionError("Connection refused")
        channel = _text(channel)
        data = _bytes(message)
        self.server.published.append((channel, data))
        receivers = list(self.server.subscribers.get(channel, []))
        for pubsub in receivers:
            pubsub.queue.put_nowait({'type': 'message', 'pattern': None, 'channel': channel.encode(), 'data': data})
        return len(receivers)

    def pubsub(self):
        return FakePubSub(self.server)

    def lock(self, name, timeout=None, blocking_timeout=None, **kwargs):
        return FakeLock(self, name, timeout, blocking_timeout)

    async def aclose(self):
        self.closed = True


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


async def wait_until(predicate, timeout: float = 2.0, interval: float = 0.01) -> bool:
    """Poll ``predicate`` until it is true or ``timeout`` elapses."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while loop.time() < deadline:
        if predicate():
            return True
        await asyncio.sleep(interval)
    return predicate()


@pytest.fixture(autouse=True)
def fresh_metrics_collector():
    """Give every test an empty metrics registry."""
    MetricsCollector.reset_instance()
    yield
    MetricsCollector.reset_instance()


@pytest.fixture
def redis_server():
    return FakeRedisServer()


@pytest.fixture
def redis_client(redis_server):
    return FakeRedis(redis_server)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def settings():
    return CacheSettings(
        _env_file=None,
        operation_timeout=0.2,
        subscriber_poll_interval=0.01,
        subscriber_reconnect_delay=0.01,
        lock_timeout=1.0,
        lock_lease=5.0,
    )
