"""
Persistent Key/Value Store Interface

Defines the key/value contract shared by every component (cache tier,
document records, version history, backups, alert history) together with a
Redis-backed implementation and an in-process implementation used for tests
and single-node deployments.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from enum import Enum
import time
from typing import Callable, Protocol, runtime_checkable

import redis.asyncio as redis
from redis.exceptions import RedisError
import structlog

from .exceptions import CacheOperationError, StoreUnavailableError

logger = structlog.get_logger(__name__)


@runtime_checkable
class KeyValueStore(Protocol):
    """Minimal async key/value interface. No multi-key transactions are assumed."""

    async def get(self, key: str) -> bytes | None: ...

    async def set(self, key: str, value: bytes, ttl: int | None = None) -> None: ...

    async def delete(self, key: str) -> None: ...

    async def keys_with_prefix(self, prefix: str) -> list[str]: ...

    async def ping(self) -> bool: ...


class PersistStatus(str, Enum):
    """Outcome of an internal persistence call"""

    OK = "ok"
    DEGRADED = "degraded"
    FAILED = "failed"


@dataclass(frozen=True)
class PersistResult:
    """Distinguishes "succeeded", "succeeded but not durably" and "failed"."""

    status: PersistStatus
    key: str | None = None
    message: str | None = None

    @classmethod
    def ok(cls, key: str | None = None) -> PersistResult:
        return cls(PersistStatus.OK, key)

    @classmethod
    def degraded(cls, key: str | None, message: str) -> PersistResult:
        return cls(PersistStatus.DEGRADED, key, message)

    @classmethod
    def failed(cls, key: str | None, message: str) -> PersistResult:
        return cls(PersistStatus.FAILED, key, message)

    @property
    def is_ok(self) -> bool:
        return self.status is PersistStatus.OK


async def best_effort_set(
    store: KeyValueStore,
    key: str,
    value: bytes,
    ttl: int | None = None,
    event: str = "store_write_degraded",
) -> PersistResult:
    """Write a record whose loss is tolerable; failures degrade to a warning."""
    try:
        await store.set(key, value, ttl)
        return PersistResult.ok(key)
    except Exception as e:
        logger.warning(event, key=key, error=str(e))
        return PersistResult.degraded(key, str(e))


async def best_effort_delete(store: KeyValueStore, key: str) -> PersistResult:
    """Delete a record; failures degrade to a warning."""
    try:
        await store.delete(key)
        return PersistResult.ok(key)
    except Exception as e:
        logger.warning("store_delete_degraded", key=key, error=str(e))
        return PersistResult.degraded(key, str(e))


class RedisKeyValueStore:
    """
    Redis-backed key/value store.

    Provides async get/set/delete with TTL support and prefix enumeration.
    Driver errors are surfaced as StoreUnavailableError so callers never
    depend on redis exception types.
    """

    def __init__(
        self,
        redis_url: str = "redis://localhost:6379/0",
        socket_timeout: int = 5,
        socket_connect_timeout: int = 5,
    ):
        """
        Initialize the RedisKeyValueStore.

        Args:
            redis_url: Redis connection URL
            socket_timeout: Socket read/write timeout in seconds
            socket_connect_timeout: Socket connect timeout in seconds
        """
        self.redis_url = redis_url
        self.socket_timeout = socket_timeout
        self.socket_connect_timeout = socket_connect_timeout
        self.redis_client: redis.Redis | None = None

    async def connect(self) -> None:
        """Establish Redis connection"""
        try:
            self.redis_client = redis.from_url(
                self.redis_url,
                decode_responses=False,
                socket_connect_timeout=self.socket_connect_timeout,
                socket_timeout=self.socket_timeout,
                retry_on_timeout=True,
                health_check_interval=30,
            )
            # Test connection
            await self.redis_client.ping()
            logger.info("redis_connected", redis_url=self.redis_url)
        except RedisError as e:
            logger.error("redis_connect_failed", error=str(e))
            self.redis_client = None
            raise CacheOperationError(f"Redis connection failed: {str(e)}") from e

    async def disconnect(self) -> None:
        """Close Redis connection"""
        if self.redis_client:
            try:
                await self.redis_client.aclose()
                logger.info("redis_disconnected")
            except RedisError as e:
                logger.warning("redis_close_failed", error=str(e))
            finally:
                self.redis_client = None

    def _client(self, key: str | None = None) -> redis.Redis:
        if self.redis_client is None:
            raise StoreUnavailableError("Redis client not connected", key=key)
        return self.redis_client

    async def get(self, key: str) -> bytes | None:
        client = self._client(key)
        try:
            value = await client.get(key)
        except RedisError as e:
            raise StoreUnavailableError(f"Redis get failed: {e}", key=key, operation="get") from e
        if value is None:
            return None
        return value if isinstance(value, bytes) else str(value).encode("utf-8")

    async def set(self, key: str, value: bytes, ttl: int | None = None) -> None:
        client = self._client(key)
        try:
            if ttl:
                await client.setex(key, ttl, value)
            else:
                await client.set(key, value)
        except RedisError as e:
            raise StoreUnavailableError(f"Redis set failed: {e}", key=key, operation="set") from e

    async def delete(self, key: str) -> None:
        client = self._client(key)
        try:
            await client.delete(key)
        except RedisError as e:
            raise StoreUnavailableError(
                f"Redis delete failed: {e}", key=key, operation="delete"
            ) from e

    async def keys_with_prefix(self, prefix: str) -> list[str]:
        client = self._client()
        try:
            keys = [key async for key in client.scan_iter(match=f"{prefix}*")]
        except RedisError as e:
            raise StoreUnavailableError(
                f"Redis scan failed: {e}", operation="keys_with_prefix"
            ) from e
        return sorted(k.decode("utf-8") if isinstance(k, bytes) else str(k) for k in keys)

    async def ping(self) -> bool:
        client = self._client()
        try:
            return bool(await client.ping())
        except RedisError as e:
            raise StoreUnavailableError(f"Redis ping failed: {e}", operation="ping") from e


class InMemoryKeyValueStore:
    """
    Process-local key/value store with TTL expiry.

    Used by tests and by single-process deployments without Redis.
    """

    def __init__(self, monotonic: Callable[[], float] | None = None):
        self._data: dict[str, tuple[bytes, float | None]] = {}
        self._monotonic = monotonic or time.monotonic
        self._lock = asyncio.Lock()

    def _expired(self, expires_at: float | None) -> bool:
        return expires_at is not None and self._monotonic() >= expires_at

    async def get(self, key: str) -> bytes | None:
        entry = self._data.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if self._expired(expires_at):
            self._data.pop(key, None)
            return None
        return value

    async def set(self, key: str, value: bytes, ttl: int | None = None) -> None:
        if not isinstance(value, (bytes, bytearray)):
            raise StoreUnavailableError("Store values must be bytes", key=key, operation="set")
        expires_at = self._monotonic() + ttl if ttl else None
        async with self._lock:
            self._data[key] = (bytes(value), expires_at)

    async def delete(self, key: str) -> None:
        async with self._lock:
            self._data.pop(key, None)

    async def keys_with_prefix(self, prefix: str) -> list[str]:
        return sorted(
            key
            for key, (_, expires_at) in list(self._data.items())
            if key.startswith(prefix) and not self._expired(expires_at)
        )

    async def ping(self) -> bool:
        return True

    def __len__(self) -> int:
        return len(self._data)
