"""
Key-value backends for wagate's durable session store.

The credential store only needs four primitives from its backend: string
values with a per-key TTL, set membership, key existence, and TTL
introspection. This module defines that contract and two implementations:
Redis for production and an in-memory map for tests and local runs.

TTL convention follows Redis: ``-2`` means the key does not exist, ``-1``
means it exists without an expiry.
"""

from __future__ import annotations

import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Callable

import redis.asyncio as redis
from redis.exceptions import RedisError

logger = logging.getLogger(__name__)

TTL_MISSING = -2
TTL_PERSISTENT = -1


class StoreError(Exception):
    """Raised when the backing store cannot complete an operation."""
    pass


class KeyValueBackend(ABC):
    """
    Abstract base class for the durable store used by CredentialStore.

    Every operation is atomic for a single key. Nothing here is
    transactional across keys; callers must tolerate partial failure of
    multi-key work.
    """

    @abstractmethod
    async def get(self, key: str) -> str | None:
        """Return the string stored under ``key``, or None if absent."""
        pass

    @abstractmethod
    async def set(self, key: str, value: str, ex: int | None = None) -> None:
        """Store ``value`` under ``key``, expiring after ``ex`` seconds if given."""
        pass

    @abstractmethod
    async def delete(self, *keys: str) -> int:
        """Delete keys. Returns how many existed."""
        pass

    @abstractmethod
    async def exists(self, key: str) -> bool:
        pass

    @abstractmethod
    async def ttl(self, key: str) -> int:
        """Remaining lifetime of ``key`` in seconds (see module TTL convention)."""
        pass

    @abstractmethod
    async def expire(self, key: str, seconds: int) -> bool:
        pass

    @abstractmethod
    async def sadd(self, key: str, member: str) -> int:
        pass

    @abstractmethod
    async def srem(self, key: str, member: str) -> int:
        pass

    @abstractmethod
    async def smembers(self, key: str) -> set[str]:
        pass

    async def scard(self, key: str) -> int:
        return len(await self.smembers(key))

    async def ping(self) -> bool:
        return True

    async def close(self) -> None:
        pass


@dataclass
class _Entry:
    value: str | set[str]
    expires_at: float | None = None


class InMemoryBackend(KeyValueBackend):
    """
    In-memory implementation of KeyValueBackend.

    Expiry is evaluated lazily on access against a monotonic clock, which
    can be swapped out in tests to simulate time passing.

    Thread Safety:
        Not thread-safe. Safe for use from a single event loop.

    Example:
        backend = InMemoryBackend()
        await backend.set("whatsapp:session:628123", "{}", ex=60)
        assert await backend.ttl("whatsapp:session:628123") == 60
    """

    def __init__(self, clock: Callable[[], float] | None = None) -> None:
        self._clock = clock or time.monotonic
        self._data: dict[str, _Entry] = {}

    def _live(self, key: str) -> _Entry | None:
        entry = self._data.get(key)
        if entry is None:
            return None
        if entry.expires_at is not None and entry.expires_at <= self._clock():
            del self._data[key]
            return None
        return entry

    async def get(self, key: str) -> str | None:
        entry = self._live(key)
        if entry is None:
            return None
        if not isinstance(entry.value, str):
            raise StoreError(f"Key '{key}' does not hold a string value")
        return entry.value

    async def set(self, key: str, value: str, ex: int | None = None) -> None:
        expires_at = self._clock() + ex if ex is not None else None
        self._data[key] = _Entry(value=value, expires_at=expires_at)

    async def delete(self, *keys: str) -> int:
        removed = 0
        for key in keys:
            if self._live(key) is not None:
                del self._data[key]
                removed += 1
        return removed

    async def exists(self, key: str) -> bool:
        return self._live(key) is not None

    async def ttl(self, key: str) -> int:
        entry = self._live(key)
        if entry is None:
            return TTL_MISSING
        if entry.expires_at is None:
            return TTL_PERSISTENT
        return int(round(entry.expires_at - self._clock()))

    async def expire(self, key: str, seconds: int) -> bool:
        entry = self._live(key)
        if entry is None:
            return False
        entry.expires_at = self._clock() + seconds
        return True

    async def sadd(self, key: str, member: str) -> int:
        entry = self._live(key)
        if entry is None:
            entry = _Entry(value=set())
            self._data[key] = entry
        if not isinstance(entry.value, set):
            raise StoreError(f"Key '{key}' does not hold a set")
        if member in entry.value:
            return 0
        entry.value.add(member)
        return 1

    async def srem(self, key: str, member: str) -> int:
        entry = self._live(key)
        if entry is None or not isinstance(entry.value, set):
            return 0
        if member not in entry.value:
            return 0
        entry.value.discard(member)
        # Redis drops empty sets
        if not entry.value:
            del self._data[key]
        return 1

    async def smembers(self, key: str) -> set[str]:
        entry = self._live(key)
        if entry is None:
            return set()
        if not isinstance(entry.value, set):
            raise StoreError(f"Key '{key}' does not hold a set")
        return set(entry.value)

    def __len__(self) -> int:
        return sum(1 for key in list(self._data) if self._live(key) is not None)

    def __repr__(self) -> str:
        return f"<InMemoryBackend keys={len(self)}>"


class RedisBackend(KeyValueBackend):
    """
    Redis implementation of KeyValueBackend using ``redis.asyncio``.

    Connection errors from redis-py are re-raised as StoreError so the
    credential store only has to handle one exception family.
    """

    def __init__(self, url: str, client: redis.Redis | None = None) -> None:
        self._url = url
        self._client = client or redis.from_url(url, decode_responses=True)

    @property
    def client(self) -> redis.Redis:
        return self._client

    async def get(self, key: str) -> str | None:
        try:
            return await self._client.get(key)
        except RedisError as exc:
            raise StoreError(f"GET {key} failed: {exc}") from exc

    async def set(self, key: str, value: str, ex: int | None = None) -> None:
        try:
            await self._client.set(key, value, ex=ex)
        except RedisError as exc:
            raise StoreError(f"SET {key} failed: {exc}") from exc

    async def delete(self, *keys: str) -> int:
        if not keys:
            return 0
        try:
            return int(await self._client.delete(*keys))
        except RedisError as exc:
            raise StoreError(f"DEL {' '.join(keys)} failed: {exc}") from exc

    async def exists(self, key: str) -> bool:
        try:
            return bool(await self._client.exists(key))
        except RedisError as exc:
            raise StoreError(f"EXISTS {key} failed: {exc}") from exc

    async def ttl(self, key: str) -> int:
        try:
            return int(await self._client.ttl(key))
        except RedisError as exc:
            raise StoreError(f"TTL {key} failed: {exc}") from exc

    async def expire(self, key: str, seconds: int) -> bool:
        try:
            return bool(await self._client.expire(key, seconds))
        except RedisError as exc:
            raise StoreError(f"EXPIRE {key} failed: {exc}") from exc

    async def sadd(self, key: str, member: str) -> int:
        try:
            return int(await self._client.sadd(key, member))
        except RedisError as exc:
            raise StoreError(f"SADD {key} failed: {exc}") from exc

    async def srem(self, key: str, member: str) -> int:
        try:
            return int(await self._client.srem(key, member))
        except RedisError as exc:
            raise StoreError(f"SREM {key} failed: {exc}") from exc

    async def smembers(self, key: str) -> set[str]:
        try:
            return set(await self._client.smembers(key))
        except RedisError as exc:
            raise StoreError(f"SMEMBERS {key} failed: {exc}") from exc

    async def scard(self, key: str) -> int:
        try:
            return int(await self._client.scard(key))
        except RedisError as exc:
            raise StoreError(f"SCARD {key} failed: {exc}") from exc

    async def ping(self) -> bool:
        try:
            return bool(await self._client.ping())
        except RedisError:
            logger.warning("Redis ping failed for %s", self._url)
            return False

    async def close(self) -> None:
        await self._client.aclose()

    def __repr__(self) -> str:
        return f"<RedisBackend url={self._url}>"


def create_backend(kind: str, url: str = "") -> KeyValueBackend:
    """
    Build a backend by name.

    Args:
        kind: ``"redis"`` or ``"memory"``.
        url: Redis URL, required for the redis backend.

    Raises:
        ValueError: If ``kind`` is unknown or the redis URL is missing.
    """
    if kind == "memory":
        return InMemoryBackend()
    if kind == "redis":
        if not url:
            raise ValueError("REDIS_URL is required for the redis backend")
        return RedisBackend(url)
    raise ValueError(f"Unknown store backend: {kind}")
