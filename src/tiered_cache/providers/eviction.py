"""
Cross-process local-tier invalidation over Redis pub/sub.

Each namespace has its own channel, ``cache:eviction:<namespace>``. Every
write or removal that reaches the shared tier is announced there; every
other process drops its local copy when it hears about it. Delivery is
at-most-once: a lost message leaves a peer stale until its local TTL runs
out.
"""

import asyncio
import json
import time
import uuid
from dataclasses import dataclass, asdict
from enum import Enum
from typing import Any, Dict, Optional

from redis.asyncio import Redis
from redis.exceptions import RedisError

from ..logging_config import get_logger
from ..metrics_collector import increment_counter

CHANNEL_PREFIX = "cache:eviction:"


def new_node_id() -> str:
    """Identity of this process on the eviction channels."""
    return uuid.uuid4().hex[:8]


def channel_for(namespace: str) -> str:
    return f"{CHANNEL_PREFIX}{namespace}"


class EvictionType(str, Enum):
    REMOVE = "REMOVE"
    UPDATE = "UPDATE"
    PATTERN = "PATTERN"
    CLEAR_ALL = "CLEAR_ALL"


@dataclass(frozen=True)
class EvictionEvent:
    """A notification that entries of a namespace changed or went away."""

    namespace: str
    type: EvictionType
    origin_node_id: str
    key: Optional[str] = None
    pattern: Optional[str] = None
    timestamp: float = 0.0

    @classmethod
    def create(cls, namespace: str, event_type: EvictionType, origin_node_id: str,
               key: Optional[str] = None, pattern: Optional[str] = None) -> 'EvictionEvent':
        return cls(namespace, EvictionType(event_type), origin_node_id, key, pattern, time.time())

    def to_json(self) -> str:
        data = asdict(self)
        data['type'] = self.type.value
        return json.dumps(data)

    @classmethod
    def from_json(cls, raw: Any) -> 'EvictionEvent':
        """Parse an event; raises ValueError on anything malformed."""
        if isinstance(raw, (bytes, bytearray)):
            raw = raw.decode('utf-8')
        data = json.loads(raw)
        if not isinstance(data, dict):
            raise ValueError("Eviction event must be a JSON object")
        try:
            return cls(
                namespace=data['namespace'],
                type=EvictionType(data['type']),
                origin_node_id=data['origin_node_id'],
                key=data.get('key'),
                pattern=data.get('pattern'),
                timestamp=float(data.get('timestamp') or 0.0),
            )
        except (KeyError, TypeError) as e:
            raise ValueError(f"Malformed eviction event: {e}") from e


class EvictionPublisher:
    """Best-effort publisher: failures are logged and reported, never raised."""

    def __init__(self, client: Redis, node_id: str, timeout: float = 0.5):
        self.client = client
        self.node_id = node_id
        self.timeout = timeout
        self.logger = get_logger(__name__, 'eviction_publisher')

    async def publish(self, namespace: str, event_type: EvictionType,
                      key: Optional[str] = None, pattern: Optional[str] = None) -> bool:
        event = EvictionEvent.create(namespace, event_type, self.node_id, key=key, pattern=pattern)
        try:
            await asyncio.wait_for(self.client.publish(channel_for(namespace), event.to_json()), timeout=self.timeout)
        except (RedisError, OSError, asyncio.TimeoutError) as e:
            self.logger.warning(
                f"Failed to publish eviction event: {e}",
                operation="publish", namespace=namespace, cache_key=key, event_type=event.type.value,
            )
            increment_counter('cache_eviction_publish_failures_total', namespace=namespace)
            return False
        return True


class EvictionSubscriber:
    """
    Listens on one namespace's channel and invalidates the local tier.

    Runs as a cancellable asyncio task. Events from this node and events
    for other namespaces are ignored. Connection failures are logged and
    the subscription is re-established after ``reconnect_delay``. Any other
    error is logged and listening carries on.
    """

    def __init__(
        self,
        client: Redis,
        namespace: str,
        node_id: str,
        local_cache,
        poll_interval: float = 1.0,
        reconnect_delay: float = 2.0,
    ):
        self.client = client
        self.namespace = namespace
        self.node_id = node_id
        self.local_cache = local_cache
        self.poll_interval = poll_interval
        self.reconnect_delay = reconnect_delay
        self.channel = channel_for(namespace)
        self.logger = get_logger(__name__, 'eviction_subscriber')
        self._pubsub = None
        self._task: Optional[asyncio.Task] = None
        self.stats = {
            'received': 0,
            'applied': 0,
            'ignored_own': 0,
            'ignored_other_namespace': 0,
            'malformed': 0,
            'reconnects': 0,
            'errors': 0,
        }

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def start(self) -> None:
        """Subscribe, then start the listening task."""
        if self.running:
            return
        try:
            await self._subscribe()
        except (RedisError, OSError) as e:
            # The listen loop keeps retrying
            self.logger.warning(
                f"Initial subscription failed: {e}", operation="start", namespace=self.namespace,
            )
            await self._close_pubsub()
        self._task = asyncio.create_task(self._listen(), name=f"eviction-subscriber:{self.namespace}")
        self.logger.info("Eviction subscriber started", operation="start", namespace=self.namespace)

    async def stop(self) -> None:
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        await self._close_pubsub()
        self.logger.info("Eviction subscriber stopped", operation="stop", namespace=self.namespace)

    async def _subscribe(self) -> None:
        self._pubsub = self.client.pubsub()
        await self._pubsub.subscribe(self.channel)

    async def _close_pubsub(self) -> None:
        pubsub, self._pubsub = self._pubsub, None
        if pubsub is None:
            return
        try:
            await pubsub.aclose()
        except (RedisError, OSError) as e:
            self.logger.debug(f"Error closing pubsub: {e}", operation="stop", namespace=self.namespace)

    async def _listen(self) -> None:
        while True:
            try:
                if self._pubsub is None:
                    await self._subscribe()
                message = await self._pubsub.get_message(
                    ignore_subscribe_messages=True, timeout=self.poll_interval
                )
                if message is not None and message.get('type') == 'message':
                    self.handle_message(message.get('data'))
            except (RedisError, OSError) as e:
                self.stats['reconnects'] += 1
                self.logger.warning(
                    f"Eviction subscription lost, retrying in {self.reconnect_delay}s: {e}",
                    operation="listen", namespace=self.namespace,
                )
                await self._close_pubsub()
                await asyncio.sleep(self.reconnect_delay)
            except Exception:
                self.stats['errors'] += 1
                self.logger.exception(
                    "Unexpected error in eviction subscriber", operation="listen", namespace=self.namespace,
                )
                await asyncio.sleep(self.reconnect_delay)

    def handle_message(self, raw: Any) -> bool:
        """Apply one raw channel message; return True if the local tier was touched."""
        self.stats['received'] += 1
        try:
            event = EvictionEvent.from_json(raw)
        except ValueError as e:
            self.stats['malformed'] += 1
            self.logger.warning(f"Ignoring malformed eviction event: {e}", operation="handle_message")
            return False

        if event.origin_node_id == self.node_id:
            self.stats['ignored_own'] += 1
            return False
        if event.namespace != self.namespace:
            self.stats['ignored_other_namespace'] += 1
            return False

        self.apply(event)
        self.stats['applied'] += 1
        increment_counter('cache_eviction_events_applied_total', namespace=self.namespace, type=event.type.value)
        return True

    def apply(self, event: EvictionEvent) -> None:
        if event.type in (EvictionType.REMOVE, EvictionType.UPDATE):
            if event.key is not None:
                self.local_cache.invalidate(event.key)
        elif event.type is EvictionType.PATTERN and event.pattern:
            self.local_cache.invalidate_matching(event.pattern)
        else:
            self.local_cache.invalidate_all()

        self.logger.debug(
            "Applied remote eviction",
            operation="apply", namespace=self.namespace, cache_key=event.key,
            event_type=event.type.value, origin=event.origin_node_id,
        )

    def get_stats(self) -> Dict[str, Any]:
        return {**self.stats, 'running': self.running, 'channel': self.channel}
