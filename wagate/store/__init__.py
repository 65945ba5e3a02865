"""
Durable session storage for wagate.

Public API:
    - KeyValueBackend: Abstract key-value backend (TTL, sets, introspection)
    - InMemoryBackend: Backend for tests and local runs
    - RedisBackend: redis.asyncio backend
    - create_backend: Build a backend by name
    - StoreError: Backend failure

    - SessionCredential: Primary credential + auxiliary keys for one identity
    - SessionInfo: Existence / TTL / connected snapshot
    - CredentialStore: Typed load/save/delete/list/info over a backend
    - CorruptRecord: Raised internally for unreadable records
"""

from .backend import (
    TTL_MISSING,
    TTL_PERSISTENT,
    InMemoryBackend,
    KeyValueBackend,
    RedisBackend,
    StoreError,
    create_backend,
)

from .codec import CorruptRecord

from .credentials import (
    CredentialStore,
    SessionCredential,
    SessionInfo,
)


__all__ = [
    # Backends
    "TTL_MISSING",
    "TTL_PERSISTENT",
    "InMemoryBackend",
    "KeyValueBackend",
    "RedisBackend",
    "StoreError",
    "create_backend",

    # Credentials
    "CorruptRecord",
    "CredentialStore",
    "SessionCredential",
    "SessionInfo",
]
