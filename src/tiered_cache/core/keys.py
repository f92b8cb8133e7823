"""Physical key construction for namespaced cache entries."""

import hashlib

MAX_KEY_LENGTH = 250

_GLOB_SPECIALS = set('*?[]\\')


def build_cache_key(namespace: str, key: str) -> str:
    """
    Build the physical key ``namespace:key``.

    Keys longer than MAX_KEY_LENGTH are replaced by ``namespace:hash:<sha256>``
    so that arbitrary logical keys stay within remote store limits.
    """
    key_data = f"{namespace}:{key}"
    if len(key_data) > MAX_KEY_LENGTH:
        key_hash = hashlib.sha256(key_data.encode('utf-8')).hexdigest()
        return f"{namespace}:hash:{key_hash}"
    return key_data


def escape_glob(value: str) -> str:
    """Escape glob metacharacters so ``value`` matches itself in a SCAN pattern."""
    return ''.join(f"\\{char}" if char in _GLOB_SPECIALS else char for char in value)


def namespace_pattern(namespace: str) -> str:
    """SCAN MATCH pattern covering every key of one namespace and nothing else."""
    return f"{escape_glob(namespace)}:*"
