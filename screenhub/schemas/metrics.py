"""
Metrics snapshot schemas.
"""

from datetime import datetime

from pydantic import BaseModel, Field


class HistogramSnapshot(BaseModel):
    """Cumulative bucket counts keyed by upper bound ("+Inf" for the overflow bucket)"""

    buckets: dict[str, int] = Field(default_factory=dict)
    sum: float = 0.0
    count: int = 0


class MetricsSummary(BaseModel):
    """Values derived from raw counters at read time"""

    total_requests: int = 0
    cache_hits: int = 0
    cache_misses: int = 0
    cache_hit_rate: float = 0.0
    errors: int = 0
    error_rate: float = 0.0
    average_request_duration: float = 0.0
    average_update_duration: float = 0.0
    p95_request_duration: float | None = None


class DocumentMetricsSummary(BaseModel):
    """Per-document request, cache and error figures"""

    config_name: str
    requests: int = 0
    updates: int = 0
    cache_hits: int = 0
    cache_misses: int = 0
    cache_hit_rate: float = 0.0
    errors: int = 0
    error_rate: float = 0.0
    average_request_duration: float = 0.0
    p95_request_duration: float | None = None


class MetricsSnapshot(BaseModel):
    counters: dict[str, int] = Field(default_factory=dict)
    labelled_counters: dict[str, dict[str, int]] = Field(
        default_factory=dict, description="Counter series keyed by rendered labels, e.g. config_name=lobby,operation=get"
    )
    gauges: dict[str, float] = Field(default_factory=dict)
    histograms: dict[str, HistogramSnapshot] = Field(default_factory=dict)
    summary: MetricsSummary = Field(default_factory=MetricsSummary)
    timestamp: datetime
