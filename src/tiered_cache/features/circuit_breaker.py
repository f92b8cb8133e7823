"""
Circuit breaking for the shared tier.

``CircuitBreaker`` is the state machine: a count-based rolling window of
call outcomes that opens once the failure rate reaches the threshold,
waits, then lets a limited number of trial calls through. Only
CacheUnavailableError (timeouts included) counts as a failure.

``CircuitBreakerCache`` guards every call of a delegate cache with it.
"""

import threading
import time
from collections import deque
from enum import Enum
from typing import Any, Awaitable, Callable, Deque, Dict, Iterable, List, Mapping, Optional

from ..core.contract import CacheDecorator, CacheService, Loader
from ..exceptions import CacheUnavailableError, CircuitOpenError
from ..logging_config import get_logger
from ..metrics_collector import get_metrics_collector

StateListener = Callable[['CircuitState', 'CircuitState'], None]


class CircuitState(str, Enum):
    CLOSED = "CLOSED"
    OPEN = "OPEN"
    HALF_OPEN = "HALF_OPEN"


class CircuitBreaker:
    """Thread-safe circuit breaker state machine."""

    def __init__(
        self,
        name: str,
        failure_rate_threshold: float = 50.0,
        wait_duration: float = 60.0,
        sliding_window_size: int = 20,
        minimum_calls: int = 10,
        half_open_max_calls: int = 3,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.name = name
        self.failure_rate_threshold = failure_rate_threshold
        self.wait_duration = wait_duration
        self.minimum_calls = minimum_calls
        self.half_open_max_calls = half_open_max_calls
        self.clock = clock
        self.logger = get_logger(__name__, 'circuit_breaker')

        self._lock = threading.Lock()
        self._state = CircuitState.CLOSED
        self._outcomes: Deque[bool] = deque(maxlen=sliding_window_size)
        self._opened_at = 0.0
        self._trial_calls = 0
        self._listeners: List[StateListener] = []
        self.stats = {
            'successes': 0,
            'failures': 0,
            'rejected': 0,
            'opened': 0,
        }

    def add_listener(self, listener: StateListener) -> None:
        self._listeners.append(listener)

    @property
    def state(self) -> CircuitState:
        """Current state; an OPEN breaker whose wait has elapsed reports HALF_OPEN."""
        with self._lock:
            transition = self._refresh()
            state = self._state
        self._notify(transition)
        return state

    def failure_rate(self) -> float:
        """Failure percentage over the window, or -1 below the minimum number of calls."""
        with self._lock:
            return self._failure_rate()

    def _failure_rate(self) -> float:
        if len(self._outcomes) < self.minimum_calls:
            return -1.0
        failures = sum(1 for ok in self._outcomes if not ok)
        return failures * 100.0 / len(self._outcomes)

    def _refresh(self):
        if self._state is CircuitState.OPEN and self.clock() - self._opened_at >= self.wait_duration:
            return self._transition(CircuitState.HALF_OPEN)
        return None

    def _transition(self, new_state: CircuitState):
        old_state = self._state
        self._state = new_state
        self._trial_calls = 0
        if new_state is CircuitState.OPEN:
            self._opened_at = self.clock()
            self.stats['opened'] += 1
        if new_state is CircuitState.CLOSED:
            self._outcomes.clear()
        return old_state, new_state

    def _notify(self, transition) -> None:
        if transition is None:
            return
        old_state, new_state = transition
        log = self.logger.warning if new_state is CircuitState.OPEN else self.logger.info
        log(
            f"Circuit {self.name} transitioned {old_state.value} -> {new_state.value}",
            operation="transition", circuit=self.name,
        )
        for listener in list(self._listeners):
            listener(old_state, new_state)

    def acquire_permission(self) -> None:
        """Raise CircuitOpenError unless a call may proceed now."""
        with self._lock:
            transition = self._refresh()
            rejected = None
            if self._state is CircuitState.OPEN:
                rejected = max(0.0, self.wait_duration - (self.clock() - self._opened_at))
            elif self._state is CircuitState.HALF_OPEN:
                if self._trial_calls >= self.half_open_max_calls:
                    rejected = 0.0
                else:
                    self._trial_calls += 1
            if rejected is not None:
                self.stats['rejected'] += 1
        self._notify(transition)
        if rejected is not None:
            raise CircuitOpenError(f"Circuit {self.name} is open", retry_after=rejected)

    def on_success(self) -> None:
        with self._lock:
            self.stats['successes'] += 1
            transition = None
            if self._state is CircuitState.HALF_OPEN:
                transition = self._transition(CircuitState.CLOSED)
            elif self._state is CircuitState.CLOSED:
                self._outcomes.append(True)
        self._notify(transition)

    def on_failure(self) -> None:
        with self._lock:
            self.stats['failures'] += 1
            transition = None
            if self._state is CircuitState.HALF_OPEN:
                transition = self._transition(CircuitState.OPEN)
            elif self._state is CircuitState.CLOSED:
                self._outcomes.append(False)
                if self._failure_rate() >= self.failure_rate_threshold:
                    transition = self._transition(CircuitState.OPEN)
        self._notify(transition)

    def on_ignored(self) -> None:
        """A permitted call ended with an error that does not count either way."""
        with self._lock:
            if self._state is CircuitState.HALF_OPEN and self._trial_calls > 0:
                self._trial_calls -= 1

    def reset(self) -> None:
        with self._lock:
            transition = self._transition(CircuitState.CLOSED) if self._state is not CircuitState.CLOSED else None
            self._outcomes.clear()
        self._notify(transition)

    def get_stats(self) -> Dict[str, Any]:
        with self._lock:
            return {
                **self.stats,
                'state': self._state.value,
                'failure_rate': self._failure_rate(),
                'window_calls': len(self._outcomes),
            }


class CircuitBreakerCache(CacheDecorator):
    """Guards every delegate call with a CircuitBreaker."""

    layer_name = "circuit_breaker"

    def __init__(self, delegate: CacheService, breaker: CircuitBreaker):
        super().__init__(delegate)
        self.breaker = breaker
        self.metrics = get_metrics_collector()

    @property
    def state(self) -> CircuitState:
        return self.breaker.state

    async def _guard(self, operation: str, key: Optional[str], call: Callable[[], Awaitable[Any]]) -> Any:
        try:
            self.breaker.acquire_permission()
        except CircuitOpenError as e:
            e.namespace, e.key, e.operation = self.namespace, key, operation
            self.metrics.get_counter('cache_circuit_rejections_total', tags={'namespace': self.namespace}).increment()
            raise

        try:
            result = await call()
        except CacheUnavailableError:
            self.breaker.on_failure()
            raise
        except BaseException:
            self.breaker.on_ignored()
            raise
        self.breaker.on_success()
        return result

    async def get(self, key: str) -> Optional[Any]:
        return await self._guard('get', key, lambda: self.delegate.get(key))

    async def put(self, key: str, value: Any, ttl: Optional[float] = None) -> None:
        await self._guard('put', key, lambda: self.delegate.put(key, value, ttl))

    async def remove(self, key: str) -> bool:
        return await self._guard('remove', key, lambda: self.delegate.remove(key))

    async def contains_key(self, key: str) -> bool:
        return await self._guard('contains_key', key, lambda: self.delegate.contains_key(key))

    async def clear(self) -> None:
        await self._guard('clear', None, self.delegate.clear)

    async def put_if_absent(self, key: str, value: Any, ttl: Optional[float] = None) -> bool:
        return await self._guard('put_if_absent', key, lambda: self.delegate.put_if_absent(key, value, ttl))

    async def increment(self, key: str, delta: int = 1) -> int:
        return await self._guard('increment', key, lambda: self.delegate.increment(key, delta))

    async def decrement(self, key: str, delta: int = 1) -> int:
        return await self._guard('decrement', key, lambda: self.delegate.decrement(key, delta))

    async def get_many(self, keys: Iterable[str]) -> Dict[str, Any]:
        keys = list(keys)
        return await self._guard('get_many', None, lambda: self.delegate.get_many(keys))

    async def put_many(self, entries: Mapping[str, Any], ttl: Optional[float] = None) -> None:
        await self._guard('put_many', None, lambda: self.delegate.put_many(entries, ttl))

    async def get_or_compute(self, key: str, loader: Loader, ttl: Optional[float] = None) -> Any:
        return await self._guard('get_or_compute', key, lambda: self.delegate.get_or_compute(key, loader, ttl))
