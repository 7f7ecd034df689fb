"""Durable key-value storage for the offline-first contact store.

The offline queue, contact list, group list, last-sync timestamp, and CRM
connections are each persisted as a single JSON blob under a fixed key.
Two backends are provided:

- InMemoryKeyValueStore: process-local dict, used by tests and ephemeral runs.
- RedisKeyValueStore: redis.asyncio backed, every key prefixed with
  ``{prefix}:`` so several devices/profiles can share one Redis.
"""

from __future__ import annotations

from abc import ABC, abstractmethod

import redis.asyncio as aioredis
import structlog

from src.circles.config import get_settings

logger = structlog.get_logger(__name__)


class StorageKeys:
    """Keys of the persisted blobs."""

    OFFLINE_QUEUE = "offline_queue"
    CONTACTS = "contacts"
    GROUPS = "groups"
    LAST_SYNC = "last_sync"
    CRM_CONNECTIONS = "crm_connections"


class KeyValueStore(ABC):
    """Abstract durable key-value store (get/set/remove by string key)."""

    @abstractmethod
    async def get(self, key: str) -> bytes | None:
        """Return the blob stored under key, or None."""
        ...

    @abstractmethod
    async def set(self, key: str, value: bytes) -> None:
        """Store value under key, replacing any previous blob."""
        ...

    @abstractmethod
    async def remove(self, key: str) -> None:
        """Remove key. Removing a missing key is not an error."""
        ...


class InMemoryKeyValueStore(KeyValueStore):
    """Dict-backed store. Contents are lost when the process exits."""

    def __init__(self, initial: dict[str, bytes] | None = None) -> None:
        self._data: dict[str, bytes] = dict(initial or {})

    async def get(self, key: str) -> bytes | None:
        return self._data.get(key)

    async def set(self, key: str, value: bytes) -> None:
        self._data[key] = value

    async def remove(self, key: str) -> None:
        self._data.pop(key, None)

    def keys(self) -> list[str]:
        return list(self._data)


class RedisKeyValueStore(KeyValueStore):
    """Redis-backed store with automatic key prefixing.

    Args:
        redis_client: Async Redis client. Must NOT use decode_responses, since
            blobs are returned as bytes.
        prefix: Namespace prefix for every key.
    """

    def __init__(self, redis_client: aioredis.Redis, prefix: str = "circles") -> None:
        self._redis = redis_client
        self._prefix = prefix

    @classmethod
    def from_settings(cls) -> RedisKeyValueStore:
        """Build a store from REDIS_URL / STORAGE_KEY_PREFIX settings."""
        settings = get_settings()
        client = aioredis.from_url(settings.REDIS_URL, decode_responses=False)
        return cls(client, prefix=settings.STORAGE_KEY_PREFIX)

    def _key(self, key: str) -> str:
        return f"{self._prefix}:{key}"

    async def get(self, key: str) -> bytes | None:
        return await self._redis.get(self._key(key))

    async def set(self, key: str, value: bytes) -> None:
        await self._redis.set(self._key(key), value)
        logger.debug("storage.set", key=key, size=len(value))

    async def remove(self, key: str) -> None:
        await self._redis.delete(self._key(key))

    async def close(self) -> None:
        """Close the underlying Redis connection pool."""
        await self._redis.aclose()
