"""
Configuration Backup Service

Takes full point-in-time snapshots of every configuration document and
restores them item by item. A restore never fails as a whole: each document
is applied independently and failures are reported per name.
"""

import asyncio
from typing import Any, Protocol

import structlog

from ..core.documents import deep_copy, dumps, loads
from ..core.exceptions import ResourceNotFoundError, StoreUnavailableError
from ..core.store import KeyValueStore, best_effort_delete, best_effort_set
from ..schemas.backup import BackupMetadata, BackupSet, BackupSummary, RestoreResult, TriggerType
from ..utils.clock import Clock, system_clock
from ..utils.identifiers import time_based_id
from ..utils.periodic import PeriodicTask
from .metrics_service import BACKUPS_CREATED_TOTAL, RESTORE_FAILURES_TOTAL, MetricsAggregator

logger = structlog.get_logger(__name__)


class DocumentSource(Protocol):
    """What the backup service needs from the owner of the working set"""

    async def snapshot_documents(self) -> dict[str, dict[str, Any]]: ...

    async def apply_restored_document(
        self, name: str, value: dict[str, Any], metadata: dict[str, Any], timeout: float | None = None
    ) -> Any: ...


class BackupService:
    """
    Backup/restore service.

    Backup records live at ``<prefix>backup:<id>`` and the newest-first id
    list at ``<prefix>backup:index``; the index is trimmed to
    ``max_backups`` and evicted records are deleted.
    """

    def __init__(
        self,
        store: KeyValueStore,
        source: DocumentSource,
        max_backups: int = 24,
        backup_interval_seconds: float = 21600,
        backup_ttl_seconds: int | None = 604800,
        restore_item_timeout_seconds: float = 10.0,
        environment: str = "development",
        app_version: str = "1.0.0",
        key_prefix: str = "config:",
        metrics: MetricsAggregator | None = None,
        clock: Clock = system_clock,
    ):
        self.store = store
        self.source = source
        self.max_backups = max_backups
        self.backup_interval_seconds = backup_interval_seconds
        self.backup_ttl_seconds = backup_ttl_seconds
        self.restore_item_timeout_seconds = restore_item_timeout_seconds
        self.environment = environment
        self.app_version = app_version
        self.key_prefix = key_prefix
        self.metrics = metrics
        self.clock = clock

        self._index_lock = asyncio.Lock()
        self._timer: PeriodicTask | None = None

    def _backup_key(self, backup_id: str) -> str:
        return f"{self.key_prefix}backup:{backup_id}"

    @property
    def _index_key(self) -> str:
        return f"{self.key_prefix}backup:index"

    async def _read_index(self) -> list[str]:
        try:
            raw = await self.store.get(self._index_key)
        except Exception as e:
            logger.warning("backup_index_read_failed", error=str(e))
            return []
        if raw is None:
            return []
        try:
            ids = loads(raw)
        except ValueError as e:
            logger.warning("backup_index_corrupt", error=str(e))
            return []
        return [str(i) for i in ids] if isinstance(ids, list) else []

    async def create_full_backup(self, trigger_type: TriggerType = TriggerType.MANUAL) -> BackupSet:
        """
        Snapshot every document and record the backup.

        Raises:
            StoreUnavailableError: if the backup record itself cannot be written
        """
        documents = await self.source.snapshot_documents()
        configs = {name: deep_copy(value) for name, value in sorted(documents.items())}

        backup = BackupSet(
            id=time_based_id("backup_", self.clock),
            timestamp=self.clock.now(),
            configs=configs,
            metadata=BackupMetadata(
                total_configs=len(configs),
                trigger_type=trigger_type,
                environment=self.environment,
                app_version=self.app_version,
            ),
        )

        key = self._backup_key(backup.id)
        try:
            await self.store.set(key, dumps(backup.model_dump(mode="json")), self.backup_ttl_seconds)
        except StoreUnavailableError:
            logger.error("backup_write_failed", backup_id=backup.id, key=key)
            raise
        except Exception as e:
            logger.error("backup_write_failed", backup_id=backup.id, key=key, error=str(e))
            raise StoreUnavailableError(f"Failed to write backup {backup.id}: {e}", key=key) from e

        await self._update_index(backup.id)

        if self.metrics:
            self.metrics.increment_counter(BACKUPS_CREATED_TOTAL)
        logger.info(
            "backup_created",
            backup_id=backup.id,
            trigger_type=trigger_type.value,
            total_configs=len(configs),
        )
        return backup

    async def _update_index(self, backup_id: str) -> None:
        async with self._index_lock:
            ids = [i for i in await self._read_index() if i != backup_id]
            ids.insert(0, backup_id)
            evicted = ids[self.max_backups :]
            ids = ids[: self.max_backups]
            await best_effort_set(self.store, self._index_key, dumps(ids), event="backup_index_write_failed")

        for old_id in evicted:
            await best_effort_delete(self.store, self._backup_key(old_id))
        if evicted:
            logger.info("backups_evicted", backup_ids=evicted)

    async def get_backup(self, backup_id: str) -> BackupSet:
        key = self._backup_key(backup_id)
        raw = await self.store.get(key)
        if raw is None:
            raise ResourceNotFoundError(
                f"Backup {backup_id} not found", resource_type="backup", resource_id=backup_id
            )
        return BackupSet.model_validate(loads(raw))

    async def list_backups(self) -> list[BackupSummary]:
        """Summaries of retained backups, newest first."""
        summaries = []
        for backup_id in (await self._read_index())[: self.max_backups]:
            try:
                backup = await self.get_backup(backup_id)
            except ResourceNotFoundError:
                continue
            except Exception as e:
                logger.warning("backup_read_failed", backup_id=backup_id, error=str(e))
                continue
            summaries.append(
                BackupSummary(
                    id=backup.id,
                    timestamp=backup.timestamp,
                    total_configs=backup.metadata.total_configs,
                    trigger_type=backup.metadata.trigger_type,
                    config_names=sorted(backup.configs),
                )
            )
        return summaries

    async def restore_from_backup(self, backup_id: str) -> RestoreResult:
        """
        Apply every document in a backup independently.

        Raises:
            ResourceNotFoundError: if the backup id is unknown
        """
        backup = await self.get_backup(backup_id)
        structlog.contextvars.bind_contextvars(operation="restore_backup", backup_id=backup_id)

        restored: list[str] = []
        failures: dict[str, str] = {}
        metadata = {"created_by": "backup_service", "source": "restore", "comment": f"Restored from {backup_id}"}

        try:
            for name in sorted(backup.configs):
                try:
                    await self.source.apply_restored_document(
                        name,
                        deep_copy(backup.configs[name]),
                        metadata,
                        timeout=self.restore_item_timeout_seconds,
                    )
                except asyncio.TimeoutError:
                    failures[name] = f"Timed out after {self.restore_item_timeout_seconds}s"
                except Exception as e:
                    failures[name] = str(e) or type(e).__name__
                else:
                    restored.append(name)
                    continue

                if self.metrics:
                    self.metrics.increment_counter(RESTORE_FAILURES_TOTAL)
                logger.warning("restore_item_failed", config_name=name, reason=failures[name])
        finally:
            structlog.contextvars.unbind_contextvars("operation", "backup_id")

        result = RestoreResult(
            backup_id=backup_id,
            restored_names=restored,
            failed_names=sorted(failures),
            failures=failures,
            timestamp=self.clock.now(),
        )
        logger.info(
            "backup_restored",
            backup_id=backup_id,
            restored=len(restored),
            failed=len(failures),
        )
        return result

    async def run_scheduled_backup(self) -> BackupSet:
        return await self.create_full_backup(TriggerType.SCHEDULED)

    def start_automatic_backup(self) -> bool:
        if self._timer is None:
            self._timer = PeriodicTask("automatic_backup", self.backup_interval_seconds, self.run_scheduled_backup)
        return self._timer.start()

    async def stop_automatic_backup(self) -> None:
        if self._timer is not None:
            await self._timer.stop()

    @property
    def automatic_backup_running(self) -> bool:
        return self._timer is not None and self._timer.is_running
