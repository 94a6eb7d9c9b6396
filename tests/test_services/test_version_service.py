"""
Tests for VersionStore

Tests cover:
- Version creation, idempotent writes and history ordering
- Retention cap and eviction
- Rollback and comparison
- Best-effort persistence of history records
"""

import asyncio

import pytest

from screenhub.core.documents import loads
from screenhub.core.exceptions import ResourceNotFoundError, ValidationError
from screenhub.schemas.configuration import ChangeType, DiffType
from screenhub.services.version_service import VersionStore


async def _write_series(versions, clock, name, count):
    created = []
    for index in range(count):
        clock.advance(1)
        created.append(await versions.create_version(name, {"revision": index}))
    return created


class TestCreateVersion:
    """Appending versions"""

    async def test_first_version_is_create(self, versions):
        version = await versions.create_version("lobby", {"brightness": 80})

        assert version.id.startswith("v")
        assert version.metadata.change_type is ChangeType.CREATE
        assert version.metadata.created_by == "system"
        assert len(version.content_hash) == 64

    async def test_subsequent_versions_are_updates(self, versions, clock):
        await versions.create_version("lobby", {"brightness": 80})
        clock.advance(1)
        version = await versions.create_version("lobby", {"brightness": 60}, {"created_by": "ops"})

        assert version.metadata.change_type is ChangeType.UPDATE
        assert version.metadata.created_by == "ops"

    async def test_unchanged_content_is_idempotent(self, versions, clock):
        first = await versions.create_version("lobby", {"a": 1, "b": 2})
        clock.advance(1)
        second = await versions.create_version("lobby", {"b": 2, "a": 1})

        assert second.id == first.id
        assert len(await versions.list_versions("lobby")) == 1

    async def test_snapshot_is_isolated_from_caller(self, versions):
        document = {"zones": [1, 2]}
        version = await versions.create_version("lobby", document)
        document["zones"].append(3)
        assert version.snapshot == {"zones": [1, 2]}

    async def test_non_object_document_rejected(self, versions):
        with pytest.raises(ValidationError):
            await versions.create_version("lobby", ["not", "a", "map"])

    async def test_concurrent_identical_writes_create_one_version(self, versions):
        results = await asyncio.gather(
            *(versions.create_version("lobby", {"same": True}) for _ in range(5))
        )
        assert len({v.id for v in results}) == 1
        assert len(await versions.list_versions("lobby")) == 1


class TestHistory:
    """Ordering and retention"""

    async def test_newest_first_and_capped(self, versions, clock):
        created = await _write_series(versions, clock, "lobby", 8)
        history = await versions.list_versions("lobby")

        assert len(history) == versions.max_versions
        assert [v.id for v in history] == [v.id for v in reversed(created[-5:])]
        timestamps = [v.metadata.created_at for v in history]
        assert timestamps == sorted(timestamps, reverse=True)

    async def test_evicted_version_not_found(self, versions, clock):
        created = await _write_series(versions, clock, "lobby", 6)
        with pytest.raises(ResourceNotFoundError):
            await versions.get_version("lobby", created[0].id)

    async def test_history_is_persisted_and_reloaded(self, versions, store, clock):
        created = await _write_series(versions, clock, "lobby", 2)

        raw = await store.get("config:versions:lobby")
        assert [item["id"] for item in loads(raw)] == [created[1].id, created[0].id]

        reloaded = VersionStore(store, max_versions=5, clock=clock)
        assert (await reloaded.get_head("lobby")).id == created[1].id

    async def test_persist_failure_keeps_memory_history(self, versions, store):
        store.failing_set_keys.add("config:versions:lobby")
        version = await versions.create_version("lobby", {"a": 1})
        assert (await versions.get_head("lobby")).id == version.id

    async def test_unreadable_history_starts_empty(self, store, clock):
        await store.set("config:versions:lobby", b"garbage")
        versions = VersionStore(store, clock=clock)
        assert await versions.list_versions("lobby") == []

    async def test_statistics(self, versions, clock):
        await _write_series(versions, clock, "lobby", 2)
        await versions.create_version("hall", {"a": 1})
        stats = versions.get_statistics()
        assert stats["tracked_configs"] == 2
        assert stats["total_versions"] == 3


class TestRollback:
    async def test_rollback_appends_copy_of_target(self, versions, clock):
        v1, v2 = await _write_series(versions, clock, "lobby", 2)
        clock.advance(1)
        rolled = await versions.rollback("lobby", v1.id, {"comment": "revert"})

        assert rolled.snapshot == v1.snapshot
        assert rolled.content_hash == v1.content_hash
        assert rolled.metadata.change_type is ChangeType.ROLLBACK
        assert rolled.metadata.rollback_from == v1.id
        assert rolled.metadata.comment == "revert"
        assert [v.id for v in await versions.list_versions("lobby")] == [rolled.id, v2.id, v1.id]

    async def test_rollback_to_head_is_noop(self, versions, clock):
        _, v2 = await _write_series(versions, clock, "lobby", 2)
        assert (await versions.rollback("lobby", v2.id)).id == v2.id

    async def test_rollback_unknown_version(self, versions):
        with pytest.raises(ResourceNotFoundError):
            await versions.rollback("lobby", "v0_missing")


class TestCompare:
    async def test_compare_versions(self, versions, clock):
        await versions.create_version("lobby", {"a": 1, "b": {"c": 1}})
        clock.advance(1)
        v1 = await versions.get_head("lobby")
        v2 = await versions.create_version("lobby", {"a": 1, "b": {"c": 2}, "d": True})

        changes = await versions.compare("lobby", v1.id, v2.id)
        assert [(c.type, c.path) for c in changes] == [
            (DiffType.MODIFIED, "b.c"),
            (DiffType.ADDED, "d"),
        ]

        comparison = await versions.compare_versions("lobby", v1.id, v2.id)
        assert comparison.summary.total == 2
        assert comparison.unified_diff.startswith(f"--- {v1.id}")
