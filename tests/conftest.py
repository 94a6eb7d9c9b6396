"""
Shared fixtures for the configuration distribution tests.
"""

from datetime import datetime, timezone

import asyncio

import pytest
import pytest_asyncio

from screenhub.core.exceptions import StoreUnavailableError
from screenhub.core.store import InMemoryKeyValueStore
from screenhub.services.backup_service import BackupService
from screenhub.services.distribution_service import DistributionCore
from screenhub.services.health_service import HealthAlertEngine
from screenhub.services.metrics_service import MetricsAggregator
from screenhub.services.version_service import VersionStore
from screenhub.utils.cache_manager import TieredCacheManager
from screenhub.utils.clock import FrozenClock
from screenhub.utils.resilience import CircuitBreaker


class FlakyStore(InMemoryKeyValueStore):
    """In-memory store whose writes fail or stall for selected keys or prefixes"""

    def __init__(self):
        super().__init__()
        self.failing_set_keys: set[str] = set()
        self.failing_prefixes: set[str] = set()
        self.fail_all = False
        self.slow_set_keys: dict[str, float] = {}
        self.set_calls: list[str] = []

    def _should_fail(self, key: str) -> bool:
        return (
            self.fail_all
            or key in self.failing_set_keys
            or any(key.startswith(prefix) for prefix in self.failing_prefixes)
        )

    async def get(self, key):
        if self.fail_all:
            raise StoreUnavailableError("store offline", key=key, operation="get")
        return await super().get(key)

    async def set(self, key, value, ttl=None):
        self.set_calls.append(key)
        if key in self.slow_set_keys:
            await asyncio.sleep(self.slow_set_keys[key])
        if self._should_fail(key):
            raise StoreUnavailableError("injected write failure", key=key, operation="set")
        await super().set(key, value, ttl)

    async def ping(self):
        if self.fail_all:
            raise StoreUnavailableError("store offline", operation="ping")
        return True


class RecordingPublisher:
    def __init__(self, fail: bool = False):
        self.fail = fail
        self.published: list[tuple[str, dict]] = []

    async def publish(self, topic, payload):
        if self.fail:
            raise RuntimeError("transport down")
        self.published.append((topic, payload))


@pytest.fixture
def clock():
    return FrozenClock(start=datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc))


@pytest.fixture
def store():
    return FlakyStore()


@pytest.fixture
def metrics(clock):
    return MetricsAggregator(clock=clock)


@pytest.fixture
def versions(store, clock):
    return VersionStore(store, max_versions=5, clock=clock)


@pytest.fixture
def cache(store, clock):
    return TieredCacheManager(
        store,
        breaker=CircuitBreaker("shared_cache", clock=clock),
        memory_max_entries=10,
        memory_ttl_seconds=60,
        clock=clock,
    )


@pytest.fixture
def publisher():
    return RecordingPublisher()


@pytest.fixture
def core(store, versions, cache, metrics, publisher, clock):
    return DistributionCore(
        store,
        versions,
        cache,
        metrics,
        publisher=publisher,
        store_breaker=CircuitBreaker("document_store", clock=clock),
        write_retries=0,
        clock=clock,
    )


@pytest.fixture
def backups(store, core, metrics, clock):
    service = BackupService(store, core, max_backups=3, metrics=metrics, clock=clock)
    core.attach_services(backups=service)
    return service


@pytest_asyncio.fixture
async def health(store, core, metrics, clock):
    engine = HealthAlertEngine(store, metrics=metrics, clock=clock)
    core.attach_services(health=engine)
    yield engine
    await engine.stop_monitoring()
