"""
Decorators for caching coroutine results.

    @cached("users", ttl=600)
    async def load_user(user_id): ...

    @cache_put("users", key_func=lambda user: str(user["id"]))
    async def save_user(user): ...

    @cache_evict("users")
    async def delete_user(user_id): ...
"""

import inspect
import functools
from typing import Any, Callable, Optional

from .manager import CacheManager, get_cache_manager


def default_key(func: Callable, args: tuple, kwargs: dict) -> str:
    key_parts = [func.__name__]
    key_parts.extend(str(arg) for arg in args)
    key_parts.extend(f"{k}={v}" for k, v in sorted(kwargs.items()))
    return ":".join(key_parts)


def _resolve_key(func: Callable, key_func: Optional[Callable], args: tuple, kwargs: dict) -> str:
    if key_func is not None:
        return str(key_func(*args, **kwargs))
    return default_key(func, args, kwargs)


def _require_coroutine(func: Callable, decorator: str) -> None:
    if not inspect.iscoroutinefunction(func):
        raise TypeError(f"@{decorator} only supports coroutine functions, got {func.__qualname__}")


def cached(namespace: str, ttl: Optional[float] = None, key_func: Optional[Callable] = None,
           manager: Optional[CacheManager] = None):
    """Return the cached result when present; otherwise run the function once and cache its result."""
    def decorator(func: Callable) -> Callable:
        _require_coroutine(func, 'cached')

        @functools.wraps(func)
        async def wrapper(*args, **kwargs):
            cache = await (manager or get_cache_manager()).get_cache(namespace)
            cache_key = _resolve_key(func, key_func, args, kwargs)
            return await cache.get_or_compute(cache_key, lambda: func(*args, **kwargs), ttl)

        return wrapper

    return decorator


def cache_put(namespace: str, ttl: Optional[float] = None, key_func: Optional[Callable] = None,
              manager: Optional[CacheManager] = None):
    """Always run the function and store its result."""
    def decorator(func: Callable) -> Callable:
        _require_coroutine(func, 'cache_put')

        @functools.wraps(func)
        async def wrapper(*args, **kwargs):
            result = await func(*args, **kwargs)
            if result is not None:
                cache = await (manager or get_cache_manager()).get_cache(namespace)
                await cache.put(_resolve_key(func, key_func, args, kwargs), result, ttl)
            return result

        return wrapper

    return decorator


def cache_evict(namespace: str, key_func: Optional[Callable] = None, all_entries: bool = False,
                before_invocation: bool = False, manager: Optional[CacheManager] = None):
    """Remove the entry for the call's key (or the whole namespace) after, or before, the function runs."""
    def decorator(func: Callable) -> Callable:
        _require_coroutine(func, 'cache_evict')

        async def evict(args: tuple, kwargs: dict) -> Any:
            cache = await (manager or get_cache_manager()).get_cache(namespace)
            if all_entries:
                await cache.clear()
            else:
                await cache.remove(_resolve_key(func, key_func, args, kwargs))

        @functools.wraps(func)
        async def wrapper(*args, **kwargs):
            if before_invocation:
                await evict(args, kwargs)
                return await func(*args, **kwargs)
            result = await func(*args, **kwargs)
            await evict(args, kwargs)
            return result

        return wrapper

    return decorator
