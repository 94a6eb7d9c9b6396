"""
Configuration Distribution Core

Owns the working set of named configurations and the single write path
used by updates, rollbacks, restores and reloads:

    build version -> write authoritative record -> append version
    -> update working set -> refresh cache tiers -> publish

Only the authoritative record write can fail the operation. Cache writes
and publishing are best-effort.
"""

import asyncio
from datetime import datetime
import re
from typing import Any, Mapping

import structlog

from ..core.documents import content_hash, deep_copy, dumps, loads, validate_root_document
from ..core.events import Publisher
from ..core.exceptions import (
    ConfigurationError,
    ResourceNotFoundError,
    StoreUnavailableError,
    ValidationError,
)
from ..core.store import KeyValueStore, PersistResult
from ..schemas.backup import BackupSet, BackupSummary, RestoreResult
from ..schemas.configuration import (
    ChangeType,
    NamedConfiguration,
    Version,
    VersionComparison,
    VersionMetadata,
)
from ..schemas.health import AlertRecord, HealthSnapshot
from ..schemas.metrics import DocumentMetricsSummary, MetricsSnapshot
from ..utils.cache_manager import TieredCacheManager
from ..utils.clock import Clock, system_clock
from ..utils.periodic import PeriodicTask
from ..utils.resilience import CircuitBreaker, retry_async
from ..utils.template_resolver import VariableResolver
from .metrics_service import (
    CACHE_HITS_TOTAL,
    CACHE_MISSES_TOTAL,
    ERRORS_TOTAL,
    LOADED_DOCUMENTS,
    PUBLISH_FAILURES_TOTAL,
    REQUEST_DURATION,
    REQUESTS_TOTAL,
    UPDATE_DURATION,
    UPDATES_TOTAL,
    VERSIONS_CREATED_TOTAL,
    MetricsAggregator,
)
from .version_service import VersionStore

logger = structlog.get_logger(__name__)

NAME_PATTERN = re.compile(r"^[A-Za-z0-9_.-]{1,128}$")


def validate_name(name: Any) -> str:
    if not isinstance(name, str) or not NAME_PATTERN.match(name):
        raise ValidationError(
            "Configuration names must be 1-128 characters of letters, digits, '_', '.' or '-'",
            field="name",
            value=name,
            validation_type="name",
        )
    return name


class DistributionCore:
    """
    Orchestrates versioning, caching, publishing, backups and health.

    The backup service and health engine are attached after construction
    because the backup service reads documents back through this object.
    """

    def __init__(
        self,
        store: KeyValueStore,
        versions: VersionStore,
        cache: TieredCacheManager,
        metrics: MetricsAggregator,
        publisher: Publisher | None = None,
        resolver: VariableResolver | None = None,
        store_breaker: CircuitBreaker | None = None,
        key_prefix: str = "config:",
        publish_topic: str = "config.updated",
        cache_refresh_interval_seconds: float = 300,
        write_retries: int = 2,
        retry_base_delay: float = 0.1,
        clock: Clock = system_clock,
    ):
        self.store = store
        self.versions = versions
        self.cache = cache
        self.metrics = metrics
        self.publisher = publisher
        self.resolver = resolver or VariableResolver()
        self.store_breaker = store_breaker or CircuitBreaker("document_store", clock=clock)
        self.key_prefix = key_prefix
        self.publish_topic = publish_topic
        self.cache_refresh_interval_seconds = cache_refresh_interval_seconds
        self.write_retries = write_retries
        self.retry_base_delay = retry_base_delay
        self.clock = clock

        self.backups = None
        self.health = None
        self._documents: dict[str, NamedConfiguration] = {}
        self._refresh_timer: PeriodicTask | None = None

    def attach_services(self, backups=None, health=None) -> None:
        if backups is not None:
            self.backups = backups
        if health is not None:
            self.health = health

    def _document_key(self, name: str) -> str:
        return f"{self.key_prefix}document:{name}"

    # Records

    @staticmethod
    def _to_record(doc: NamedConfiguration) -> dict[str, Any]:
        return {
            "name": doc.name,
            "value": doc.current_value,
            "version_id": doc.current_version_id,
            "content_hash": doc.content_hash,
            "updated_at": doc.updated_at.isoformat(),
        }

    @staticmethod
    def _from_record(record: Mapping[str, Any]) -> NamedConfiguration:
        value = record["value"]
        return NamedConfiguration(
            name=record["name"],
            current_value=deep_copy(value),
            current_version_id=record.get("version_id"),
            content_hash=record.get("content_hash") or content_hash(value),
            updated_at=datetime.fromisoformat(record["updated_at"]),
        )

    async def _read_record(self, name: str) -> dict[str, Any] | None:
        key = self._document_key(name)
        try:
            raw = await self.store_breaker.call(lambda: self.store.get(key))
        except StoreUnavailableError:
            raise
        except Exception as e:
            raise StoreUnavailableError(f"Failed to read {key}: {e}", key=key, operation="get") from e
        return loads(raw) if raw is not None else None

    async def _write_record(self, doc: NamedConfiguration, operation: str = "update") -> None:
        key = self._document_key(doc.name)
        labels = {"config_name": doc.name, "operation": operation}
        payload = dumps(self._to_record(doc))

        async def write() -> None:
            await self.store_breaker.call(lambda: self.store.set(key, payload))

        try:
            await retry_async(
                write,
                max_retries=self.write_retries,
                base_delay=self.retry_base_delay,
            )
        except StoreUnavailableError:
            self.metrics.increment_counter(ERRORS_TOTAL, labels=labels)
            logger.error("document_write_failed", config_name=doc.name, key=key)
            raise
        except Exception as e:
            self.metrics.increment_counter(ERRORS_TOTAL, labels=labels)
            logger.error("document_write_failed", config_name=doc.name, key=key, error=str(e))
            raise StoreUnavailableError(f"Failed to write {key}: {e}", key=key, operation="set") from e

    # Reads

    async def get_document(self, name: str) -> NamedConfiguration:
        """
        Read a document: memory tier, then shared tier, then the authoritative store.

        Raises:
            ResourceNotFoundError: if the name is unknown
            StoreUnavailableError: if the store is down and the name is not in the working set
        """
        validate_name(name)
        started = self.clock.monotonic()
        labels = {"config_name": name, "operation": "get"}
        self.metrics.increment_counter(REQUESTS_TOTAL, labels=labels)
        try:
            record, tier = await self.cache.get(name)
            if record is not None:
                self.metrics.increment_counter(CACHE_HITS_TOTAL, labels={"config_name": name})
                logger.debug("document_cache_hit", config_name=name, tier=tier)
                return self._from_record(record)

            self.metrics.increment_counter(CACHE_MISSES_TOTAL, labels={"config_name": name})
            try:
                record = await self._read_record(name)
            except StoreUnavailableError as e:
                self.metrics.increment_counter(ERRORS_TOTAL, labels=labels)
                cached = self._documents.get(name)
                if cached is None:
                    raise
                logger.warning("document_served_from_working_set", config_name=name, error=e.message)
                return cached.model_copy(update={"current_value": deep_copy(cached.current_value)})

            if record is None:
                raise ResourceNotFoundError(
                    f"Configuration {name} not found", resource_type="configuration", resource_id=name
                )

            doc = self._from_record(record)
            self._documents.setdefault(name, doc)
            await self.cache.set(name, record)
            return doc
        finally:
            self.metrics.observe_histogram(REQUEST_DURATION, self.clock.monotonic() - started, labels)

    def list_documents(self) -> list[str]:
        return sorted(self._documents)

    async def render_document(self, name: str, context: Mapping[str, Any] | None = None) -> Any:
        """Resolve template tokens in the document's current value."""
        doc = await self.get_document(name)
        return self.resolver.resolve(doc.current_value, context or {})

    # Write path

    async def update_document(
        self,
        name: str,
        new_value: dict[str, Any],
        metadata: VersionMetadata | dict[str, Any] | None = None,
    ) -> Version:
        """
        Write a new value for a document.

        Returns:
            The new Version, or the head Version when the content is unchanged

        Raises:
            ValidationError: for malformed names or documents
            StoreUnavailableError: if the authoritative record could not be written
        """
        validate_name(name)
        validate_root_document(new_value)
        return await self._apply(name, new_value, metadata, operation="update")

    async def rollback_document(
        self,
        name: str,
        version_id: str,
        metadata: VersionMetadata | dict[str, Any] | None = None,
    ) -> Version:
        validate_name(name)
        target = await self.versions.get_version(name, version_id)
        return await self._apply(
            name,
            target.snapshot,
            metadata,
            operation="rollback",
            change_type=ChangeType.ROLLBACK,
            rollback_from=target.id,
        )

    async def apply_restored_document(
        self, name: str, value: dict[str, Any], metadata: dict[str, Any], timeout: float | None = None
    ) -> Version:
        """
        Write a document taken from a backup.

        ``timeout`` bounds the authoritative record write only. A timed-out
        write leaves the document untouched; once the record is written the
        version, working set and caches are updated regardless.
        """
        validate_name(name)
        validate_root_document(value)
        return await self._apply(name, value, metadata, operation="restore", write_timeout=timeout)

    async def _apply(
        self,
        name: str,
        value: dict[str, Any],
        metadata: VersionMetadata | dict[str, Any] | None,
        operation: str,
        change_type: ChangeType | None = None,
        rollback_from: str | None = None,
        write_timeout: float | None = None,
    ) -> Version:
        started = self.clock.monotonic()
        labels = {"config_name": name, "operation": operation}
        structlog.contextvars.bind_contextvars(operation=f"{operation}_document", config_name=name)
        try:
            async with self.versions.lock_for(name):
                head = await self.versions.get_head(name)
                # Rollback to content equal to the head is a no-op like any other write.
                if head is not None and head.content_hash == content_hash(value):
                    logger.info("document_unchanged", config_name=name, version_id=head.id)
                    return head

                if change_type is None:
                    existed = head is not None or name in self._documents
                    change_type = ChangeType.UPDATE if existed else ChangeType.CREATE

                version = self.versions.build_version(name, value, metadata, change_type, rollback_from)
                doc = NamedConfiguration(
                    name=name,
                    current_value=deep_copy(version.snapshot),
                    current_version_id=version.id,
                    content_hash=version.content_hash,
                    updated_at=version.metadata.created_at,
                )

                await asyncio.wait_for(self._write_record(doc, operation), timeout=write_timeout)
                # Record is committed; the rest must not be split by cancellation.
                await asyncio.shield(self._commit(doc, version, labels))

            await self._publish(doc, version)
            logger.info(
                "document_updated",
                version_id=version.id,
                change_type=version.metadata.change_type.value,
            )
            return version
        finally:
            self.metrics.observe_histogram(UPDATE_DURATION, self.clock.monotonic() - started, labels)
            structlog.contextvars.unbind_contextvars("operation", "config_name")

    async def _commit(self, doc: NamedConfiguration, version: Version, labels: dict[str, str]) -> None:
        await self.versions.append_version(version)
        self._documents[doc.name] = doc
        await self.cache.set(doc.name, self._to_record(doc))

        self.metrics.increment_counter(UPDATES_TOTAL, labels=labels)
        self.metrics.increment_counter(VERSIONS_CREATED_TOTAL, labels=labels)
        self.metrics.set_gauge(LOADED_DOCUMENTS, len(self._documents))

    async def _publish(self, doc: NamedConfiguration, version: Version) -> None:
        if self.publisher is None:
            return
        payload = {
            "name": doc.name,
            "version_id": version.id,
            "change_type": version.metadata.change_type.value,
            "updated_at": doc.updated_at.isoformat(),
            "content_hash": doc.content_hash,
            "value": deep_copy(doc.current_value),
        }
        try:
            await self.publisher.publish(self.publish_topic, payload)
        except Exception as e:
            self.metrics.increment_counter(PUBLISH_FAILURES_TOTAL)
            logger.warning("publish_failed", config_name=doc.name, topic=self.publish_topic, error=str(e))

    # Versions

    async def list_versions(self, name: str) -> list[Version]:
        validate_name(name)
        return await self.versions.list_versions(name)

    async def compare_versions(self, name: str, version_a: str, version_b: str) -> VersionComparison:
        validate_name(name)
        return await self.versions.compare_versions(name, version_a, version_b)

    # Cache maintenance

    async def reload_document(self, name: str) -> NamedConfiguration:
        """Drop cached copies and reload a document from the authoritative store."""
        validate_name(name)
        await self.cache.invalidate(name)
        record = await self._read_record(name)
        if record is None:
            self._documents.pop(name, None)
            raise ResourceNotFoundError(
                f"Configuration {name} not found", resource_type="configuration", resource_id=name
            )
        doc = self._from_record(record)
        self._documents[name] = doc
        await self.cache.set(name, record)
        logger.info("document_reloaded", config_name=name, version_id=doc.current_version_id)
        return doc

    async def clear_document_cache(self, name: str) -> PersistResult:
        validate_name(name)
        return await self.cache.invalidate(name)

    async def load_all(self) -> int:
        """Warm the working set from the authoritative store."""
        prefix = self._document_key("")
        keys = await self.store_breaker.call(lambda: self.store.keys_with_prefix(prefix))
        loaded = 0
        for key in keys:
            name = key[len(prefix) :]
            try:
                record = await self._read_record(name)
                if record is None:
                    continue
                doc = self._from_record(record)
            except (StoreUnavailableError, ValueError, KeyError) as e:
                logger.warning("document_load_failed", config_name=name, error=str(e))
                continue
            self._documents[name] = doc
            self.cache.memory.set(name, record)
            loaded += 1

        self.metrics.set_gauge(LOADED_DOCUMENTS, len(self._documents))
        logger.info("documents_loaded", count=loaded)
        return loaded

    async def refresh_cache(self) -> int:
        """Re-populate both cache tiers from the working set."""
        refreshed = 0
        for name, doc in list(self._documents.items()):
            result = await self.cache.set(name, self._to_record(doc))
            if result.is_ok:
                refreshed += 1
        logger.debug("cache_refreshed", refreshed=refreshed, total=len(self._documents))
        return refreshed

    def start_cache_refresh(self) -> bool:
        if self._refresh_timer is None:
            self._refresh_timer = PeriodicTask("cache_refresh", self.cache_refresh_interval_seconds, self.refresh_cache)
        return self._refresh_timer.start()

    async def stop_cache_refresh(self) -> None:
        if self._refresh_timer is not None:
            await self._refresh_timer.stop()

    async def count_inconsistent_documents(self) -> int:
        """Documents whose shared cache copy disagrees with the working set."""
        mismatched = 0
        for name, doc in list(self._documents.items()):
            cached = await self.cache.get_shared(name)
            if cached is not None and cached.get("content_hash") != doc.content_hash:
                mismatched += 1
        return mismatched

    async def measure_store_round_trip_ms(self) -> float:
        started = self.clock.monotonic()
        await self.store_breaker.call(self.store.ping)
        return (self.clock.monotonic() - started) * 1000

    # Backups

    def _require_backups(self):
        if self.backups is None:
            raise ConfigurationError("Backup service is not configured", config_key="backup")
        return self.backups

    async def snapshot_documents(self) -> dict[str, dict[str, Any]]:
        return {name: deep_copy(doc.current_value) for name, doc in self._documents.items()}

    async def create_backup(self) -> BackupSet:
        return await self._require_backups().create_full_backup()

    async def list_backups(self) -> list[BackupSummary]:
        return await self._require_backups().list_backups()

    async def restore_backup(self, backup_id: str) -> RestoreResult:
        return await self._require_backups().restore_from_backup(backup_id)

    # Health and metrics

    def _require_health(self):
        if self.health is None:
            raise ConfigurationError("Health engine is not configured", config_key="health")
        return self.health

    def get_health_status(self) -> HealthSnapshot:
        return self._require_health().get_status()

    async def get_alert_history(self, days: int = 7) -> list[AlertRecord]:
        return await self._require_health().get_alert_history(days)

    async def run_manual_health_check(self) -> HealthSnapshot:
        return await self._require_health().run_manual_health_check()

    def get_metrics_snapshot(self) -> MetricsSnapshot:
        self.metrics.set_gauge(LOADED_DOCUMENTS, len(self._documents))
        return self.metrics.snapshot()

    def get_document_metrics(self, name: str) -> DocumentMetricsSummary:
        validate_name(name)
        return self.metrics.document_summary(name)

    def get_stats(self) -> dict[str, Any]:
        cache_stats = self.cache.get_statistics()
        return {
            "documents": {
                "loaded": len(self._documents),
                "names": self.list_documents(),
            },
            "versions": self.versions.get_statistics(),
            "cache": {
                "memory_entries": cache_stats.memory_entries,
                "memory_hits": cache_stats.memory_hits,
                "shared_hits": cache_stats.shared_hits,
                "misses": cache_stats.misses,
                "hit_rate": cache_stats.hit_rate,
                "lru_evictions": cache_stats.lru_evictions,
                "shared_errors": cache_stats.shared_errors,
            },
            "circuit_breakers": {
                "document_store": self.store_breaker.get_status(),
                "shared_cache": self.cache.breaker.get_status(),
            },
            "metrics": self.metrics.summary().model_dump(),
        }
