"""
Cache configuration.

Two layers:

- ``CacheSettings``: process-wide settings loaded from the environment
  (``CACHE_`` prefix) and an optional ``.env`` file.
- ``CacheConfiguration``: an immutable per-namespace configuration,
  validated at construction and derived from the settings.
"""

import base64
import binascii
import dataclasses
from dataclasses import dataclass
from enum import Enum
from typing import Any, Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from .exceptions import CacheConfigurationError


ENCRYPTION_KEY_BYTES = 32


class SerializationFormat(str, Enum):
    """Value serialization formats."""
    JSON = "json"
    PICKLE = "pickle"


class CacheSettings(BaseSettings):
    """Process-wide cache settings."""

    # Redis connection
    redis_url: str = Field("redis://localhost:6379/0")
    redis_pool_size: int = Field(20)
    operation_timeout: float = Field(0.5, description="Timeout for a single L2 call in seconds")
    clear_timeout: float = Field(30.0, description="Timeout for a namespace scan-and-delete")

    # Local tier
    l1_max_size: int = Field(10_000)
    l1_ttl: float = Field(300.0)

    # Defaults applied to every namespace
    default_ttl: float = Field(3600.0)
    serialization_format: SerializationFormat = Field(SerializationFormat.JSON)
    eviction_broadcast_enabled: bool = Field(True)
    subscriber_poll_interval: float = Field(1.0)
    subscriber_reconnect_delay: float = Field(2.0)

    compression_enabled: bool = Field(False)
    compression_threshold: int = Field(1024)

    encryption_enabled: bool = Field(False)
    encryption_key: Optional[str] = Field(None)

    stampede_protection_enabled: bool = Field(True)
    lock_timeout: float = Field(5.0)
    lock_lease: float = Field(30.0)

    circuit_breaker_enabled: bool = Field(True)
    failure_rate_threshold: float = Field(50.0)
    circuit_wait_duration: float = Field(60.0)
    sliding_window_size: int = Field(20)
    minimum_calls: int = Field(10)
    half_open_max_calls: int = Field(3)

    metrics_enabled: bool = Field(True)
    latency_sample_size: int = Field(1024)

    log_level: str = Field("INFO")

    model_config = SettingsConfigDict(
        env_prefix="CACHE_",
        env_file=".env",
        case_sensitive=False,
        extra="ignore",
    )

    @field_validator("redis_pool_size", "l1_max_size", "sliding_window_size", "minimum_calls", "half_open_max_calls")
    @classmethod
    def validate_positive_int(cls, v):
        if v < 1:
            raise ValueError("Value must be at least 1")
        return v

    @field_validator("operation_timeout", "clear_timeout", "l1_ttl", "default_ttl", "lock_timeout", "lock_lease")
    @classmethod
    def validate_positive_duration(cls, v):
        if v <= 0:
            raise ValueError("Duration must be positive")
        return v


_settings: Optional[CacheSettings] = None


def get_settings() -> CacheSettings:
    """Get the process-wide cache settings, loading them on first use."""
    global _settings
    if _settings is None:
        _settings = CacheSettings()
    return _settings


def decode_encryption_key(key: Optional[str]) -> bytes:
    """Decode a base64 AES-256 key, raising CacheConfigurationError if it is unusable."""
    if not key:
        raise CacheConfigurationError("Encryption is enabled but no encryption key is configured")
    try:
        raw = base64.b64decode(key, validate=True)
    except (binascii.Error, ValueError) as e:
        raise CacheConfigurationError(f"Encryption key is not valid base64: {e}") from e
    if len(raw) != ENCRYPTION_KEY_BYTES:
        raise CacheConfigurationError(
            f"Encryption key must decode to {ENCRYPTION_KEY_BYTES} bytes, got {len(raw)}"
        )
    return raw


@dataclass(frozen=True)
class CacheConfiguration:
    """Immutable behaviour configuration for one namespace."""

    ttl: float = 3600.0
    compression_enabled: bool = False
    compression_threshold: int = 1024
    encryption_enabled: bool = False
    encryption_key: Optional[str] = dataclasses.field(default=None, repr=False)
    stampede_protection_enabled: bool = True
    lock_timeout: float = 5.0
    lock_lease: float = 30.0
    circuit_breaker_enabled: bool = True
    failure_rate_threshold: float = 50.0
    circuit_wait_duration: float = 60.0
    sliding_window_size: int = 20
    minimum_calls: int = 10
    half_open_max_calls: int = 3
    metrics_enabled: bool = True
    serialization_format: SerializationFormat = SerializationFormat.JSON
    l1_max_size: int = 10_000
    l1_ttl: float = 300.0
    eviction_broadcast_enabled: bool = True

    def __post_init__(self):
        if not isinstance(self.serialization_format, SerializationFormat):
            try:
                object.__setattr__(self, 'serialization_format', SerializationFormat(self.serialization_format))
            except ValueError as e:
                raise CacheConfigurationError(f"Unknown serialization format: {self.serialization_format}") from e

        for name in ('ttl', 'lock_timeout', 'lock_lease', 'l1_ttl'):
            if getattr(self, name) <= 0:
                raise CacheConfigurationError(f"{name} must be positive")
        if self.circuit_wait_duration < 0:
            raise CacheConfigurationError("circuit_wait_duration must not be negative")
        if self.compression_threshold < 0:
            raise CacheConfigurationError("compression_threshold must not be negative")
        if not 1 <= self.failure_rate_threshold <= 100:
            raise CacheConfigurationError("failure_rate_threshold must be between 1 and 100")
        for name in ('sliding_window_size', 'minimum_calls', 'half_open_max_calls', 'l1_max_size'):
            if getattr(self, name) < 1:
                raise CacheConfigurationError(f"{name} must be at least 1")
        if self.minimum_calls > self.sliding_window_size:
            raise CacheConfigurationError("minimum_calls cannot exceed sliding_window_size")
        if self.encryption_enabled:
            decode_encryption_key(self.encryption_key)

    @classmethod
    def from_settings(cls, settings: Optional[CacheSettings] = None, **overrides: Any) -> 'CacheConfiguration':
        """Build a configuration from process settings, with per-namespace overrides."""
        settings = settings or get_settings()
        values = {
            'ttl': settings.default_ttl,
            'compression_enabled': settings.compression_enabled,
            'compression_threshold': settings.compression_threshold,
            'encryption_enabled': settings.encryption_enabled,
            'encryption_key': settings.encryption_key,
            'stampede_protection_enabled': settings.stampede_protection_enabled,
            'lock_timeout': settings.lock_timeout,
            'lock_lease': settings.lock_lease,
            'circuit_breaker_enabled': settings.circuit_breaker_enabled,
            'failure_rate_threshold': settings.failure_rate_threshold,
            'circuit_wait_duration': settings.circuit_wait_duration,
            'sliding_window_size': settings.sliding_window_size,
            'minimum_calls': settings.minimum_calls,
            'half_open_max_calls': settings.half_open_max_calls,
            'metrics_enabled': settings.metrics_enabled,
            'serialization_format': settings.serialization_format,
            'l1_max_size': settings.l1_max_size,
            'l1_ttl': settings.l1_ttl,
            'eviction_broadcast_enabled': settings.eviction_broadcast_enabled,
        }
        unknown = set(overrides) - set(values)
        if unknown:
            raise CacheConfigurationError(f"Unknown configuration options: {sorted(unknown)}")
        values.update(overrides)
        return cls(**values)

    def replace(self, **changes: Any) -> 'CacheConfiguration':
        """Return a new validated configuration with the given fields changed."""
        return dataclasses.replace(self, **changes)

    def decoded_encryption_key(self) -> bytes:
        return decode_encryption_key(self.encryption_key)
