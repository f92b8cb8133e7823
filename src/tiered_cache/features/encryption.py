"""
AES-256-GCM encryption of stored payloads.

Stored form: ``[marker | ENCRYPTED][nonce (12 bytes)][ciphertext + tag]``.
The marker without the encrypted bit is bound as associated data, so the
other flags cannot be flipped without failing authentication.
"""

import base64
import secrets
from typing import Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from ..config import ENCRYPTION_KEY_BYTES, decode_encryption_key
from ..core.contract import CacheService, PayloadTransformDecorator
from ..core.entry import CacheEntry, FLAG_ENCRYPTED
from ..exceptions import CacheConfigurationError, DecryptionError
from ..logging_config import get_logger

NONCE_BYTES = 12
TAG_BYTES = 16


def generate_key() -> str:
    """Generate a new base64-encoded AES-256 key."""
    return base64.b64encode(secrets.token_bytes(ENCRYPTION_KEY_BYTES)).decode('ascii')


class EncryptionCache(PayloadTransformDecorator):
    """Encrypts on write, authenticates and decrypts on read."""

    layer_name = "encryption"

    def __init__(self, delegate: CacheService, key: str):
        super().__init__(delegate)
        self.logger = get_logger(__name__, 'encryption')
        self._aead = AESGCM(decode_encryption_key(key))
        self._self_test()

    def _self_test(self) -> None:
        probe = CacheEntry.raw(b'probe').to_bytes()
        try:
            if self.decode('__probe__', self.encode('__probe__', probe)) != probe:
                raise CacheConfigurationError("Encryption self-test produced different bytes")
        except DecryptionError as e:
            raise CacheConfigurationError(f"Encryption self-test failed: {e}") from e

    def encode(self, key: str, data: bytes) -> bytes:
        entry = CacheEntry.from_bytes(data)
        nonce = secrets.token_bytes(NONCE_BYTES)
        ciphertext = self._aead.encrypt(nonce, entry.payload, bytes((entry.flags,)))
        return entry.with_payload(nonce + ciphertext, set_flags=FLAG_ENCRYPTED).to_bytes()

    def decode(self, key: str, data: bytes) -> bytes:
        entry = CacheEntry.from_bytes(data)
        if not entry.is_encrypted:
            self._fail(key, "Entry is not encrypted")
        if len(entry.payload) < NONCE_BYTES + TAG_BYTES:
            self._fail(key, "Encrypted payload is truncated")

        plain = entry.with_payload(b'', clear_flags=FLAG_ENCRYPTED)
        nonce, ciphertext = entry.payload[:NONCE_BYTES], entry.payload[NONCE_BYTES:]
        try:
            payload = self._aead.decrypt(nonce, ciphertext, bytes((plain.flags,)))
        except InvalidTag as e:
            self._fail(key, "Authentication failed", e)
        return plain.with_payload(payload).to_bytes()

    def _fail(self, key: str, reason: str, cause: Optional[Exception] = None) -> None:
        self.logger.error(
            f"Decryption failed: {reason}", operation="decrypt", namespace=self.namespace, cache_key=key,
        )
        raise DecryptionError(reason, namespace=self.namespace, key=key, operation='decrypt') from cause
