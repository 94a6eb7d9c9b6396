from .backup import BackupMetadata, BackupSet, BackupSummary, RestoreResult, TriggerType
from .configuration import (
    ChangeType,
    DiffEntry,
    DiffSummary,
    DiffType,
    NamedConfiguration,
    Version,
    VersionComparison,
    VersionMetadata,
)
from .health import (
    AlertLevel,
    AlertRecord,
    CheckOutcome,
    CheckStatus,
    HealthCheckResult,
    HealthSnapshot,
    OverallHealth,
    Thresholds,
)
from .metrics import HistogramSnapshot, MetricsSnapshot, MetricsSummary

__all__ = [
    "AlertLevel",
    "AlertRecord",
    "BackupMetadata",
    "BackupSet",
    "BackupSummary",
    "ChangeType",
    "CheckOutcome",
    "CheckStatus",
    "DiffEntry",
    "DiffSummary",
    "DiffType",
    "HealthCheckResult",
    "HealthSnapshot",
    "HistogramSnapshot",
    "MetricsSnapshot",
    "MetricsSummary",
    "NamedConfiguration",
    "OverallHealth",
    "RestoreResult",
    "Thresholds",
    "TriggerType",
    "Version",
    "VersionComparison",
    "VersionMetadata",
]
