"""
Named configuration and version history schemas.
"""

from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator


class ChangeType(str, Enum):
    CREATE = "create"
    UPDATE = "update"
    ROLLBACK = "rollback"


class DiffType(str, Enum):
    ADDED = "added"
    REMOVED = "removed"
    MODIFIED = "modified"


class NamedConfiguration(BaseModel):
    """Current value of a named configuration document"""

    name: str = Field(..., min_length=1, max_length=128, description="Configuration name")
    current_value: dict[str, Any] = Field(..., description="Current document value")
    current_version_id: str | None = Field(None, description="Head version id")
    content_hash: str | None = Field(None, description="SHA-256 of the canonical document")
    updated_at: datetime = Field(..., description="When the value was last written")


class VersionMetadata(BaseModel):
    """Provenance recorded with each version"""

    model_config = ConfigDict(frozen=True)

    created_at: datetime = Field(..., description="Version creation time")
    created_by: str = Field(default="system", description="Actor that produced the change")
    change_type: ChangeType = Field(default=ChangeType.UPDATE, description="Kind of change")
    rollback_from: str | None = Field(None, description="Target version id of a rollback")
    source: str | None = Field(None, description="Originating subsystem (api, restore, reload)")
    comment: str | None = Field(None, max_length=1000, description="Free-form change note")


class Version(BaseModel):
    """Immutable snapshot of a configuration at a point in time"""

    model_config = ConfigDict(frozen=True)

    id: str = Field(..., description="Version id, v<epoch-ms>_<random>")
    config_name: str = Field(..., description="Configuration this version belongs to")
    snapshot: dict[str, Any] = Field(..., description="Deep copy of the document")
    metadata: VersionMetadata
    content_hash: str = Field(..., min_length=64, max_length=64, description="SHA-256 hex")

    @field_validator("content_hash")
    @classmethod
    def validate_content_hash(cls, v: str) -> str:
        if any(c not in "0123456789abcdef" for c in v.lower()):
            raise ValueError("Content hash must be hexadecimal")
        return v.lower()


class DiffEntry(BaseModel):
    """Single structural difference between two documents"""

    model_config = ConfigDict(frozen=True)

    type: DiffType
    path: str = Field(..., description="Dot-joined key path")
    old_value: Any = None
    new_value: Any = None


class DiffSummary(BaseModel):
    added: int = 0
    removed: int = 0
    modified: int = 0
    total: int = 0


class VersionComparison(BaseModel):
    """Structural and textual comparison of two versions"""

    config_name: str
    version_a: str
    version_b: str
    changes: list[DiffEntry] = Field(default_factory=list)
    summary: DiffSummary = Field(default_factory=DiffSummary)
    unified_diff: str = ""
