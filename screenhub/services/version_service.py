"""
Configuration Version Store

Keeps an append-only, bounded, newest-first version history per
configuration name with structural diff and rollback. Histories are held in
memory and mirrored to the key/value store on a best-effort basis.
"""

import asyncio
from typing import Any

import structlog

from ..core.documents import content_hash, deep_copy, dumps, loads, validate_root_document
from ..core.exceptions import ResourceNotFoundError
from ..core.store import KeyValueStore, PersistResult, best_effort_set
from ..schemas.configuration import (
    ChangeType,
    DiffEntry,
    Version,
    VersionComparison,
    VersionMetadata,
)
from ..utils.clock import Clock, system_clock
from ..utils.diff_generator import DiffGenerator
from ..utils.identifiers import time_based_id

logger = structlog.get_logger(__name__)


class VersionStore:
    """
    Version history service.

    Writes to the same name are serialized by a per-name asyncio.Lock held
    across "read head -> hash -> append"; different names proceed in
    parallel. Callers that need to do work between building and appending a
    version (the distribution write path) take ``lock_for(name)`` themselves
    and use ``build_version``/``append_version`` directly.
    """

    def __init__(
        self,
        store: KeyValueStore,
        max_versions: int = 10,
        history_ttl_seconds: int | None = 604800,
        key_prefix: str = "config:",
        diff_generator: DiffGenerator | None = None,
        clock: Clock = system_clock,
    ):
        self.store = store
        self.max_versions = max_versions
        self.history_ttl_seconds = history_ttl_seconds
        self.key_prefix = key_prefix
        self.diff_generator = diff_generator or DiffGenerator()
        self.clock = clock

        self._histories: dict[str, list[Version]] = {}
        self._locks: dict[str, asyncio.Lock] = {}

    def _history_key(self, name: str) -> str:
        return f"{self.key_prefix}versions:{name}"

    def lock_for(self, name: str) -> asyncio.Lock:
        lock = self._locks.get(name)
        if lock is None:
            lock = self._locks[name] = asyncio.Lock()
        return lock

    async def _history(self, name: str) -> list[Version]:
        """Return the in-memory history, loading it from the store on first access."""
        history = self._histories.get(name)
        if history is not None:
            return history

        key = self._history_key(name)
        history = []
        try:
            raw = await self.store.get(key)
            if raw is not None:
                history = [Version.model_validate(item) for item in loads(raw)]
                history.sort(key=lambda v: v.metadata.created_at, reverse=True)
                del history[self.max_versions :]
        except Exception as e:
            logger.warning("version_history_load_failed", config_name=name, key=key, error=str(e))
            history = []

        # A concurrent loader may have finished first
        return self._histories.setdefault(name, history)

    async def get_head(self, name: str) -> Version | None:
        history = await self._history(name)
        return history[0] if history else None

    def build_version(
        self,
        name: str,
        snapshot: dict[str, Any],
        metadata: VersionMetadata | dict[str, Any] | None = None,
        change_type: ChangeType | None = None,
        rollback_from: str | None = None,
    ) -> Version:
        """Create (but do not append) a Version holding a deep copy of ``snapshot``."""
        snapshot = deep_copy(validate_root_document(snapshot))
        meta = self._coerce_metadata(metadata, change_type, rollback_from)

        existing = {v.id for v in self._histories.get(name, [])}
        version_id = time_based_id("v", self.clock)
        while version_id in existing:
            version_id = time_based_id("v", self.clock)

        return Version(
            id=version_id,
            config_name=name,
            snapshot=snapshot,
            metadata=meta,
            content_hash=content_hash(snapshot),
        )

    def _coerce_metadata(
        self,
        metadata: VersionMetadata | dict[str, Any] | None,
        change_type: ChangeType | None,
        rollback_from: str | None,
    ) -> VersionMetadata:
        if isinstance(metadata, VersionMetadata):
            values = metadata.model_dump()
        else:
            values = dict(metadata or {})
        values["created_at"] = self.clock.now()
        if change_type is not None:
            values["change_type"] = change_type
        if rollback_from is not None:
            values["rollback_from"] = rollback_from
        return VersionMetadata.model_validate(values)

    async def append_version(self, version: Version) -> PersistResult:
        """Prepend ``version`` to its history, evict the oldest beyond the cap and persist."""
        history = await self._history(version.config_name)
        history.insert(0, version)
        evicted = history[self.max_versions :]
        del history[self.max_versions :]

        logger.info(
            "version_created",
            config_name=version.config_name,
            version_id=version.id,
            change_type=version.metadata.change_type.value,
            content_hash=version.content_hash,
            evicted=[v.id for v in evicted],
        )
        return await self._persist(version.config_name, history)

    async def _persist(self, name: str, history: list[Version]) -> PersistResult:
        payload = dumps([v.model_dump(mode="json") for v in history])
        return await best_effort_set(
            self.store,
            self._history_key(name),
            payload,
            self.history_ttl_seconds,
            event="version_persist_failed",
        )

    async def create_version(
        self,
        name: str,
        snapshot: dict[str, Any],
        metadata: VersionMetadata | dict[str, Any] | None = None,
        change_type: ChangeType | None = None,
        rollback_from: str | None = None,
    ) -> Version:
        """
        Record a new version unless the content matches the head.

        Returns:
            The new Version, or the current head when the canonical hash is unchanged
        """
        async with self.lock_for(name):
            head = await self.get_head(name)
            if head is not None and head.content_hash == content_hash(snapshot):
                logger.debug("version_unchanged", config_name=name, version_id=head.id)
                return head
            if head is None and change_type is None:
                change_type = ChangeType.CREATE
            version = self.build_version(name, snapshot, metadata, change_type, rollback_from)
            await self.append_version(version)
            return version

    async def get_version(self, name: str, version_id: str) -> Version:
        for version in await self._history(name):
            if version.id == version_id:
                return version
        raise ResourceNotFoundError(
            f"Version {version_id} not found for configuration {name}",
            resource_type="version",
            resource_id=version_id,
        )

    async def list_versions(self, name: str) -> list[Version]:
        """Versions newest-first, at most ``max_versions`` long."""
        return list(await self._history(name))

    async def rollback(
        self,
        name: str,
        version_id: str,
        metadata: VersionMetadata | dict[str, Any] | None = None,
    ) -> Version:
        """Append a new version whose snapshot equals the target version's."""
        target = await self.get_version(name, version_id)
        return await self.create_version(
            name,
            target.snapshot,
            metadata,
            change_type=ChangeType.ROLLBACK,
            rollback_from=target.id,
        )

    async def compare(self, name: str, version_a: str, version_b: str) -> list[DiffEntry]:
        """Structural changes going from version_a to version_b."""
        old = await self.get_version(name, version_a)
        new = await self.get_version(name, version_b)
        return self.diff_generator.generate_structural_diff(old.snapshot, new.snapshot)

    async def compare_versions(self, name: str, version_a: str, version_b: str) -> VersionComparison:
        old = await self.get_version(name, version_a)
        new = await self.get_version(name, version_b)
        changes = self.diff_generator.generate_structural_diff(old.snapshot, new.snapshot)
        return VersionComparison(
            config_name=name,
            version_a=version_a,
            version_b=version_b,
            changes=changes,
            summary=self.diff_generator.get_diff_summary(changes),
            unified_diff=self.diff_generator.generate_unified_diff(
                old.snapshot, new.snapshot, old_name=version_a, new_name=version_b
            ),
        )

    def get_statistics(self) -> dict[str, Any]:
        return {
            "tracked_configs": len(self._histories),
            "total_versions": sum(len(h) for h in self._histories.values()),
            "max_versions_per_config": self.max_versions,
        }
