"""
Screen Configuration Hub - Application Container

Builds every service from ApplicationSettings, wires the cross-service
dependencies and manages the background timers (automatic backups, health
monitoring, cache refresh) and the event bus.
"""

import structlog

from .core.config import ApplicationSettings, get_settings
from .core.events import EventBus, EventBusPublisher, Publisher
from .core.exceptions import CacheOperationError, StoreUnavailableError
from .core.logging import setup_logging
from .core.store import InMemoryKeyValueStore, KeyValueStore, RedisKeyValueStore
from .services.backup_service import BackupService
from .services.distribution_service import DistributionCore
from .services.health_checks import register_default_checks
from .services.health_service import HealthAlertEngine
from .services.metrics_service import MetricsAggregator
from .services.notification_service import AlertNotificationService
from .services.version_service import VersionStore
from .utils.cache_manager import TieredCacheManager
from .utils.clock import Clock, system_clock
from .utils.resilience import CircuitBreaker
from .utils.template_resolver import FilterRegistry, ProviderRegistry, VariableResolver

logger = structlog.get_logger(__name__)


class ScreenHubApplication:
    """Service container with an explicit start/stop lifecycle"""

    def __init__(
        self,
        settings: ApplicationSettings | None = None,
        store: KeyValueStore | None = None,
        publisher: Publisher | None = None,
        clock: Clock = system_clock,
    ):
        self.settings = settings or get_settings()
        self.clock = clock
        s = self.settings
        prefix = s.distribution.key_prefix

        self.store = store or self._build_store()
        self.event_bus = EventBus()
        self.publisher = publisher or EventBusPublisher(self.event_bus)

        self.metrics = MetricsAggregator(s.metrics.latency_buckets, clock=clock)
        self.versions = VersionStore(
            self.store,
            max_versions=s.versioning.max_versions_per_config,
            history_ttl_seconds=s.versioning.version_history_ttl_seconds,
            key_prefix=prefix,
            clock=clock,
        )
        self.cache = TieredCacheManager(
            self.store,
            breaker=self._breaker("shared_cache"),
            key_prefix=f"{prefix}cache:",
            memory_max_entries=s.distribution.memory_cache_max_entries,
            memory_ttl_seconds=s.distribution.memory_cache_ttl_seconds,
            shared_ttl_seconds=s.distribution.shared_cache_ttl_seconds,
            clock=clock,
        )
        self.resolver = VariableResolver(
            FilterRegistry.with_defaults(),
            ProviderRegistry.with_defaults(s.environment, s.app_version, clock),
        )
        self.core = DistributionCore(
            self.store,
            self.versions,
            self.cache,
            self.metrics,
            publisher=self.publisher,
            resolver=self.resolver,
            store_breaker=self._breaker("document_store"),
            key_prefix=prefix,
            publish_topic=s.distribution.publish_topic,
            cache_refresh_interval_seconds=s.distribution.cache_refresh_interval_seconds,
            clock=clock,
        )
        self.notifier = AlertNotificationService(
            self.store,
            gotify_url=s.notifications.gotify_url,
            gotify_token=s.notifications.gotify_token,
            http_timeout=s.notifications.http_timeout_seconds,
            record_ttl_seconds=s.notifications.notification_record_ttl_seconds,
            environment=s.environment,
            key_prefix=prefix,
            clock=clock,
        )
        self.health = HealthAlertEngine(
            self.store,
            metrics=self.metrics,
            notifier=self.notifier,
            event_bus=self.event_bus,
            interval_seconds=s.health.health_check_interval_seconds,
            status_ttl_seconds=s.health.health_status_ttl_seconds,
            alert_ttl_seconds=s.health.alert_history_ttl_seconds,
            check_timeout_seconds=s.health.check_timeout_seconds,
            key_prefix=prefix,
            clock=clock,
        )
        self.backups = BackupService(
            self.store,
            self.core,
            max_backups=s.backup.max_backups,
            backup_interval_seconds=s.backup.backup_interval_seconds,
            backup_ttl_seconds=s.backup.backup_ttl_seconds,
            restore_item_timeout_seconds=s.backup.restore_item_timeout_seconds,
            environment=s.environment,
            app_version=s.app_version,
            key_prefix=prefix,
            metrics=self.metrics,
            clock=clock,
        )
        self.core.attach_services(backups=self.backups, health=self.health)
        register_default_checks(self.health, self.core, self.metrics)
        self._started = False

    def _build_store(self) -> KeyValueStore:
        if self.settings.distribution.store_backend == "memory":
            return InMemoryKeyValueStore()
        redis_settings = self.settings.redis
        return RedisKeyValueStore(
            redis_settings.redis_url,
            socket_timeout=redis_settings.redis_socket_timeout,
            socket_connect_timeout=redis_settings.redis_socket_connect_timeout,
        )

    def _breaker(self, name: str) -> CircuitBreaker:
        return CircuitBreaker(
            name,
            failure_threshold=self.settings.distribution.circuit_failure_threshold,
            reset_timeout=self.settings.distribution.circuit_reset_timeout_seconds,
            clock=self.clock,
        )

    async def start(self) -> None:
        if self._started:
            return
        s = self.settings

        if isinstance(self.store, RedisKeyValueStore):
            try:
                await self.store.connect()
            except CacheOperationError as e:
                logger.error("store_connect_failed", error=e.message)

        await self.event_bus.start()

        try:
            await self.core.load_all()
        except StoreUnavailableError as e:
            logger.warning("initial_load_failed", error=e.message)

        if s.distribution.cache_refresh_enabled:
            self.core.start_cache_refresh()
        if s.backup.backup_enabled:
            self.backups.start_automatic_backup()
        if s.health.health_enabled:
            self.health.start_monitoring()

        self._started = True
        logger.info("application_started", environment=s.environment, version=s.app_version)

    async def stop(self) -> None:
        if not self._started:
            return
        await self.health.stop_monitoring()
        await self.backups.stop_automatic_backup()
        await self.core.stop_cache_refresh()
        await self.event_bus.stop()
        if isinstance(self.store, RedisKeyValueStore):
            await self.store.disconnect()
        self._started = False
        logger.info("application_stopped")

    async def __aenter__(self) -> "ScreenHubApplication":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.stop()


def create_application(settings: ApplicationSettings | None = None, **kwargs) -> ScreenHubApplication:
    """Configure logging from settings and build the application container."""
    settings = settings or get_settings()
    setup_logging(settings.logging.log_level, settings.logging.log_format)
    return ScreenHubApplication(settings, **kwargs)
