"""
Exception hierarchy for the tiered cache.

Every error raised by the cache derives from CacheError and carries the
namespace, key and operation it was raised for when those are known.
"""

from typing import Any, Dict, Optional


class CacheError(Exception):
    """Base class for all cache errors."""

    def __init__(
        self,
        message: str,
        namespace: Optional[str] = None,
        key: Optional[str] = None,
        operation: Optional[str] = None,
    ):
        super().__init__(message)
        self.message = message
        self.namespace = namespace
        self.key = key
        self.operation = operation

    def context(self) -> Dict[str, Any]:
        """Return the error context as a dictionary suitable for logging."""
        return {
            'error_type': type(self).__name__,
            'namespace': self.namespace,
            'cache_key': self.key,
            'cache_operation': self.operation,
        }

    def __str__(self) -> str:
        parts = [self.message]
        if self.namespace is not None:
            parts.append(f"namespace={self.namespace}")
        if self.key is not None:
            parts.append(f"key={self.key}")
        if self.operation is not None:
            parts.append(f"operation={self.operation}")
        return " ".join(parts)


class CacheUnavailableError(CacheError):
    """The remote store could not be reached or did not answer in time."""

    def __init__(self, message: str, timed_out: bool = False, **context):
        super().__init__(message, **context)
        self.timed_out = timed_out


class CacheTimeoutError(CacheUnavailableError):
    """A remote call exceeded its configured timeout."""

    def __init__(self, message: str, timeout: Optional[float] = None, **context):
        super().__init__(message, timed_out=True, **context)
        self.timeout = timeout


class CodecError(CacheError):
    """A stored payload could not be framed, serialized or decompressed."""


class DecryptionError(CodecError):
    """A stored payload failed authentication or could not be decrypted."""


class CircuitOpenError(CacheError):
    """The circuit breaker is open and the call was not attempted."""

    def __init__(self, message: str, retry_after: Optional[float] = None, **context):
        super().__init__(message, **context)
        self.retry_after = retry_after


class LockTimeoutError(CacheError):
    """A distributed lock could not be acquired within the wait budget."""

    def __init__(self, message: str, lock_name: Optional[str] = None, **context):
        super().__init__(message, **context)
        self.lock_name = lock_name


class CacheConfigurationError(CacheError):
    """A cache configuration is invalid."""
