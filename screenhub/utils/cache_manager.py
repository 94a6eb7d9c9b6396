"""
Tiered Cache Manager

Two cache tiers sit in front of the authoritative document records:

- a process-local LRU tier with per-entry TTL
- a shared tier in the key/value store (``config:cache:<name>``), reached
  through a circuit breaker

Shared-tier failures never surface to callers: reads degrade to a miss and
writes degrade to a logged warning.
"""

from collections import OrderedDict
from dataclasses import dataclass
from typing import Any

import structlog

from ..core.documents import deep_copy, dumps, loads
from ..core.store import KeyValueStore, PersistResult
from .clock import Clock, system_clock
from .resilience import CircuitBreaker

logger = structlog.get_logger(__name__)

MEMORY_TIER = "memory"
SHARED_TIER = "shared"


@dataclass
class CacheEntry:
    """Memory tier entry"""

    value: dict[str, Any]
    created_at: float
    expires_at: float | None = None
    hit_count: int = 0

    def is_expired(self, now: float) -> bool:
        return self.expires_at is not None and now >= self.expires_at


@dataclass
class CacheStatistics:
    """Cache performance statistics."""

    memory_entries: int = 0
    memory_hits: int = 0
    shared_hits: int = 0
    misses: int = 0
    lru_evictions: int = 0
    expired_evictions: int = 0
    shared_errors: int = 0

    @property
    def total_accesses(self) -> int:
        return self.memory_hits + self.shared_hits + self.misses

    @property
    def hit_rate(self) -> float:
        total = self.total_accesses
        return (self.memory_hits + self.shared_hits) / total if total else 0.0


class MemoryCache:
    """LRU cache with TTL; the most recently used entry sits at the end."""

    def __init__(self, max_entries: int = 500, ttl_seconds: int | None = 60, clock: Clock = system_clock):
        self.max_entries = max_entries
        self.ttl_seconds = ttl_seconds
        self.clock = clock
        self._cache: OrderedDict[str, CacheEntry] = OrderedDict()
        self.lru_evictions = 0
        self.expired_evictions = 0

    def get(self, key: str) -> dict[str, Any] | None:
        entry = self._cache.get(key)
        if entry is None:
            return None
        if entry.is_expired(self.clock.monotonic()):
            del self._cache[key]
            self.expired_evictions += 1
            return None
        entry.hit_count += 1
        self._cache.move_to_end(key)
        return deep_copy(entry.value)

    def set(self, key: str, value: dict[str, Any]) -> None:
        now = self.clock.monotonic()
        expires_at = now + self.ttl_seconds if self.ttl_seconds else None
        self._cache[key] = CacheEntry(value=deep_copy(value), created_at=now, expires_at=expires_at)
        self._cache.move_to_end(key)
        while len(self._cache) > self.max_entries:
            evicted, _ = self._cache.popitem(last=False)
            self.lru_evictions += 1
            logger.debug("memory_cache_evicted", key=evicted)

    def delete(self, key: str) -> bool:
        return self._cache.pop(key, None) is not None

    def clear(self) -> int:
        count = len(self._cache)
        self._cache.clear()
        return count

    def keys(self) -> list[str]:
        return list(self._cache.keys())

    def __len__(self) -> int:
        return len(self._cache)

    def __contains__(self, key: object) -> bool:
        return key in self._cache


class TieredCacheManager:
    """
    Read-through cache over the memory and shared tiers.

    Values are JSON-compatible dicts (the cached document record). A shared
    tier hit back-fills the memory tier.
    """

    def __init__(
        self,
        store: KeyValueStore,
        breaker: CircuitBreaker | None = None,
        key_prefix: str = "config:cache:",
        memory_max_entries: int = 500,
        memory_ttl_seconds: int | None = 60,
        shared_ttl_seconds: int | None = 3600,
        clock: Clock = system_clock,
    ):
        self.store = store
        self.breaker = breaker or CircuitBreaker("shared_cache", clock=clock)
        self.key_prefix = key_prefix
        self.shared_ttl_seconds = shared_ttl_seconds
        self.memory = MemoryCache(memory_max_entries, memory_ttl_seconds, clock)
        self._stats = CacheStatistics()

    def _key(self, name: str) -> str:
        return f"{self.key_prefix}{name}"

    async def get(self, name: str) -> tuple[dict[str, Any] | None, str | None]:
        """
        Look a name up in both tiers.

        Returns:
            Tuple of (value, tier) where tier is "memory", "shared" or None on miss
        """
        value = self.memory.get(name)
        if value is not None:
            self._stats.memory_hits += 1
            return value, MEMORY_TIER

        value = await self.get_shared(name)
        if value is not None:
            self._stats.shared_hits += 1
            self.memory.set(name, value)
            return value, SHARED_TIER

        self._stats.misses += 1
        return None, None

    async def get_shared(self, name: str) -> dict[str, Any] | None:
        """Read the shared tier only; errors degrade to a miss."""
        key = self._key(name)
        try:
            raw = await self.breaker.call(lambda: self.store.get(key))
        except Exception as e:
            self._stats.shared_errors += 1
            logger.warning("shared_cache_read_failed", key=key, error=str(e))
            return None
        if raw is None:
            return None
        try:
            value = loads(raw)
        except ValueError as e:
            logger.warning("shared_cache_entry_corrupt", key=key, error=str(e))
            return None
        return value if isinstance(value, dict) else None

    def peek_memory(self, name: str) -> dict[str, Any] | None:
        return self.memory.get(name)

    async def set(self, name: str, value: dict[str, Any]) -> PersistResult:
        """Write both tiers. The memory tier always succeeds."""
        self.memory.set(name, value)
        key = self._key(name)
        try:
            await self.breaker.call(lambda: self.store.set(key, dumps(value), self.shared_ttl_seconds))
        except Exception as e:
            self._stats.shared_errors += 1
            logger.warning("shared_cache_write_failed", key=key, error=str(e))
            return PersistResult.degraded(key, str(e))
        return PersistResult.ok(key)

    async def invalidate(self, name: str) -> PersistResult:
        """Drop a name from both tiers."""
        self.memory.delete(name)
        key = self._key(name)
        try:
            await self.breaker.call(lambda: self.store.delete(key))
        except Exception as e:
            self._stats.shared_errors += 1
            logger.warning("shared_cache_delete_failed", key=key, error=str(e))
            return PersistResult.degraded(key, str(e))
        return PersistResult.ok(key)

    def clear_memory(self) -> int:
        count = self.memory.clear()
        if count:
            logger.info("memory_cache_cleared", entries=count)
        return count

    def get_statistics(self) -> CacheStatistics:
        """Get current cache statistics."""
        return CacheStatistics(
            memory_entries=len(self.memory),
            memory_hits=self._stats.memory_hits,
            shared_hits=self._stats.shared_hits,
            misses=self._stats.misses,
            lru_evictions=self.memory.lru_evictions,
            expired_evictions=self.memory.expired_evictions,
            shared_errors=self._stats.shared_errors,
        )
