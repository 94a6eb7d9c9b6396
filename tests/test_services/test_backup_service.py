"""
Tests for BackupService

Tests cover:
- Full backups and the retained index
- Item-by-item restore with partial failure reporting
- Restore timeouts
- Automatic backup timer lifecycle
"""

import asyncio

import pytest

from screenhub.core.documents import loads
from screenhub.core.exceptions import ResourceNotFoundError, StoreUnavailableError
from screenhub.schemas.backup import TriggerType
from screenhub.schemas.configuration import ChangeType
from screenhub.services.backup_service import BackupService
from screenhub.services.metrics_service import BACKUPS_CREATED_TOTAL, RESTORE_FAILURES_TOTAL


async def _seed(core, values):
    for name, value in values.items():
        await core.update_document(name, value)


class TestCreateBackup:
    """Snapshotting the working set"""

    async def test_backup_captures_every_document(self, core, backups, store, metrics):
        await _seed(core, {"lobby": {"a": 1}, "hall": {"b": 2}})
        backup = await backups.create_full_backup()

        assert backup.id.startswith("backup_")
        assert backup.configs == {"hall": {"b": 2}, "lobby": {"a": 1}}
        assert backup.metadata.total_configs == 2
        assert backup.metadata.trigger_type is TriggerType.MANUAL
        assert loads(await store.get("config:backup:index")) == [backup.id]
        assert metrics.get_counter(BACKUPS_CREATED_TOTAL) == 1

    async def test_empty_working_set(self, backups):
        backup = await backups.create_full_backup()
        assert backup.configs == {}
        assert backup.metadata.total_configs == 0

    async def test_backup_is_isolated_from_later_updates(self, core, backups):
        await _seed(core, {"lobby": {"a": 1}})
        backup = await backups.create_full_backup()
        await core.update_document("lobby", {"a": 2})

        stored = await backups.get_backup(backup.id)
        assert stored.configs["lobby"] == {"a": 1}

    async def test_record_write_failure_raises(self, core, backups, store):
        await _seed(core, {"lobby": {"a": 1}})
        store.failing_prefixes.add("config:backup:backup_")

        with pytest.raises(StoreUnavailableError):
            await backups.create_full_backup()
        assert await backups.list_backups() == []

    async def test_retention_evicts_oldest(self, core, backups, store):
        await _seed(core, {"lobby": {"a": 1}})
        created = [await backups.create_full_backup() for _ in range(4)]

        summaries = await backups.list_backups()
        assert [s.id for s in summaries] == [b.id for b in reversed(created[1:])]
        assert summaries[0].config_names == ["lobby"]
        assert await store.get(f"config:backup:{created[0].id}") is None

    async def test_unknown_backup(self, backups):
        with pytest.raises(ResourceNotFoundError):
            await backups.get_backup("backup_0_missing")

    async def test_scheduled_trigger(self, backups):
        backup = await backups.run_scheduled_backup()
        assert backup.metadata.trigger_type is TriggerType.SCHEDULED


class TestRestore:
    """Per-item restore semantics"""

    async def test_full_restore(self, core, backups):
        await _seed(core, {"lobby": {"a": 1}, "hall": {"b": 1}})
        backup = await backups.create_full_backup()
        await _seed(core, {"lobby": {"a": 2}, "hall": {"b": 2}})

        result = await backups.restore_from_backup(backup.id)

        assert result.success
        assert result.restored_names == ["hall", "lobby"]
        assert (await core.get_document("lobby")).current_value == {"a": 1}
        head = (await core.list_versions("lobby"))[0]
        assert head.metadata.source == "restore"
        assert head.metadata.created_by == "backup_service"
        assert head.metadata.change_type is ChangeType.UPDATE

    async def test_partial_restore_reports_failures(self, core, backups, store, metrics):
        await _seed(core, {"alpha": {"v": 1}, "beta": {"v": 1}, "gamma": {"v": 1}})
        backup = await backups.create_full_backup()
        await _seed(core, {"alpha": {"v": 2}, "beta": {"v": 2}, "gamma": {"v": 2}})

        store.failing_set_keys.add("config:document:beta")
        result = await backups.restore_from_backup(backup.id)

        assert result.restored_names == ["alpha", "gamma"]
        assert result.failed_names == ["beta"]
        assert "beta" in result.failures
        assert result.is_partial
        assert not result.success
        assert (await core.get_document("alpha")).current_value == {"v": 1}
        assert (await core.get_document("beta")).current_value == {"v": 2}
        assert (await core.get_document("gamma")).current_value == {"v": 1}
        assert metrics.get_counter(RESTORE_FAILURES_TOTAL) == 1

    async def test_restore_unchanged_documents_is_noop(self, core, backups):
        await _seed(core, {"lobby": {"a": 1}})
        backup = await backups.create_full_backup()

        result = await backups.restore_from_backup(backup.id)
        assert result.restored_names == ["lobby"]
        assert len(await core.list_versions("lobby")) == 1

    async def test_restore_unknown_backup(self, backups):
        with pytest.raises(ResourceNotFoundError):
            await backups.restore_from_backup("backup_0_missing")

    async def test_slow_item_times_out(self, store, clock):
        class SlowSource:
            async def snapshot_documents(self):
                return {"fast": {"a": 1}, "slow": {"b": 1}}

            async def apply_restored_document(self, name, value, metadata, timeout=None):
                if name == "slow":
                    await asyncio.wait_for(asyncio.sleep(1), timeout)

        service = BackupService(store, SlowSource(), restore_item_timeout_seconds=0.01, clock=clock)
        backup = await service.create_full_backup()
        result = await service.restore_from_backup(backup.id)

        assert result.restored_names == ["fast"]
        assert result.failed_names == ["slow"]
        assert "Timed out" in result.failures["slow"]

    async def test_slow_record_write_leaves_document_untouched(self, store, core, metrics, clock):
        service = BackupService(store, core, restore_item_timeout_seconds=0.05, metrics=metrics, clock=clock)
        await _seed(core, {"beta": {"v": 1}})
        backup = await service.create_full_backup()
        await _seed(core, {"beta": {"v": 2}})

        store.slow_set_keys["config:document:beta"] = 1
        result = await service.restore_from_backup(backup.id)
        del store.slow_set_keys["config:document:beta"]

        assert result.failed_names == ["beta"]
        assert "Timed out" in result.failures["beta"]
        assert loads(await store.get("config:document:beta"))["value"] == {"v": 2}
        assert (await core.get_document("beta")).current_value == {"v": 2}
        history = await core.list_versions("beta")
        assert len(history) == 2
        assert history[0].snapshot == {"v": 2}

    async def test_slow_history_write_after_commit_completes_item(self, store, core, metrics, clock):
        service = BackupService(store, core, restore_item_timeout_seconds=0.05, metrics=metrics, clock=clock)
        await _seed(core, {"beta": {"v": 1}})
        backup = await service.create_full_backup()
        await _seed(core, {"beta": {"v": 2}})

        store.slow_set_keys["config:versions:beta"] = 0.2
        result = await service.restore_from_backup(backup.id)

        assert result.restored_names == ["beta"]
        assert loads(await store.get("config:document:beta"))["value"] == {"v": 1}
        assert (await core.get_document("beta")).current_value == {"v": 1}
        assert (await core.list_versions("beta"))[0].snapshot == {"v": 1}

        await core.update_document("beta", {"v": 2})
        assert (await core.get_document("beta")).current_value == {"v": 2}


class TestAutomaticBackup:
    async def test_timer_lifecycle(self, backups):
        assert backups.start_automatic_backup() is True
        assert backups.automatic_backup_running
        assert backups.start_automatic_backup() is False

        await backups.stop_automatic_backup()
        assert not backups.automatic_backup_running
