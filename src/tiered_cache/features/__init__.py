"""Cache decorators: value codec, compression, encryption, metrics, circuit breaking, stampede protection."""

from .circuit_breaker import CircuitBreaker, CircuitBreakerCache, CircuitState
from .compression import CompressionCache
from .encryption import EncryptionCache, generate_key
from .metrics import MetricsCache
from .serialization import ValueCodecCache
from .stampede import SingleFlightGroup, StampedeProtectedCache, STAMPEDE_LOCK_PREFIX

__all__ = [
    'CircuitBreaker',
    'CircuitBreakerCache',
    'CircuitState',
    'CompressionCache',
    'EncryptionCache',
    'generate_key',
    'MetricsCache',
    'ValueCodecCache',
    'SingleFlightGroup',
    'StampedeProtectedCache',
    'STAMPEDE_LOCK_PREFIX',
]
