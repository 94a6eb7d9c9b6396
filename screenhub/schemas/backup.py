"""
Backup and restore schemas.
"""

from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class TriggerType(str, Enum):
    SCHEDULED = "scheduled"
    MANUAL = "manual"


class BackupMetadata(BaseModel):
    model_config = ConfigDict(frozen=True)

    total_configs: int = Field(..., ge=0, description="Number of documents captured")
    trigger_type: TriggerType = Field(default=TriggerType.MANUAL)
    environment: str = Field(default="development")
    app_version: str = Field(default="1.0.0")


class BackupSet(BaseModel):
    """Point-in-time snapshot of every configuration document"""

    model_config = ConfigDict(frozen=True)

    id: str = Field(..., description="Backup id, backup_<epoch-ms>_<random>")
    timestamp: datetime
    configs: dict[str, dict[str, Any]] = Field(default_factory=dict)
    metadata: BackupMetadata


class BackupSummary(BaseModel):
    """Backup listing entry without document bodies"""

    id: str
    timestamp: datetime
    total_configs: int
    trigger_type: TriggerType
    config_names: list[str] = Field(default_factory=list)


class RestoreResult(BaseModel):
    """Outcome of restoring a backup; failures are reported per document"""

    backup_id: str
    restored_names: list[str] = Field(default_factory=list)
    failed_names: list[str] = Field(default_factory=list)
    failures: dict[str, str] = Field(default_factory=dict, description="Failure reason per name")
    timestamp: datetime

    @property
    def is_partial(self) -> bool:
        return bool(self.failed_names) and bool(self.restored_names)

    @property
    def success(self) -> bool:
        return not self.failed_names
