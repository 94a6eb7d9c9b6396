"""
Metrics Aggregator

Counters, gauges and fixed-bucket histograms held in plain in-memory maps.
Rates and percentiles are derived on read. Text export uses the Prometheus
exposition format through a custom prometheus_client collector.

Counters and histograms accept optional labels (``config_name``,
``operation``). Every observation updates the metric's aggregate and exactly
one labelled series, so the exported series always partition the aggregate.
"""

import math
import re
from typing import Iterable, Mapping

from prometheus_client import CollectorRegistry, generate_latest
from prometheus_client.core import (
    CounterMetricFamily,
    GaugeMetricFamily,
    HistogramMetricFamily,
)
import structlog

from ..core.exceptions import ResourceConflictError, ValidationError
from ..schemas.metrics import DocumentMetricsSummary, HistogramSnapshot, MetricsSnapshot, MetricsSummary
from ..utils.clock import Clock, system_clock

logger = structlog.get_logger(__name__)

DEFAULT_LATENCY_BUCKETS = [0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0]

# Metric names used across the services
REQUESTS_TOTAL = "config_requests_total"
ERRORS_TOTAL = "config_errors_total"
CACHE_HITS_TOTAL = "config_cache_hits_total"
CACHE_MISSES_TOTAL = "config_cache_misses_total"
UPDATES_TOTAL = "config_updates_total"
VERSIONS_CREATED_TOTAL = "config_versions_created_total"
BACKUPS_CREATED_TOTAL = "config_backups_created_total"
RESTORE_FAILURES_TOTAL = "config_restore_failures_total"
PUBLISH_FAILURES_TOTAL = "config_publish_failures_total"
ALERTS_TRIGGERED_TOTAL = "config_alerts_triggered_total"
LOADED_DOCUMENTS = "config_loaded_documents"
MEMORY_USAGE_BYTES = "config_memory_usage_bytes"
REQUEST_DURATION = "config_request_duration_seconds"
UPDATE_DURATION = "config_update_duration_seconds"

_INVALID_NAME_CHARS = re.compile(r"[^a-zA-Z0-9_:]")
_LABEL_NAME = re.compile(r"^[a-zA-Z_][a-zA-Z0-9_]*$")

LabelKey = tuple[tuple[str, str], ...]


class Histogram:
    """Cumulative histogram over fixed, sorted upper bounds plus +Inf"""

    def __init__(self, boundaries: Iterable[float]):
        bounds = sorted(float(b) for b in boundaries if not math.isinf(float(b)))
        if not bounds:
            raise ValidationError("Histogram needs at least one finite boundary", field="buckets")
        if len(set(bounds)) != len(bounds):
            raise ValidationError("Histogram boundaries must be unique", field="buckets")
        self.boundaries = bounds
        self.cumulative = [0] * len(bounds)
        self.sum = 0.0
        self.count = 0

    def observe(self, value: float) -> None:
        for index, boundary in enumerate(self.boundaries):
            if value <= boundary:
                self.cumulative[index] += 1
        self.sum += value
        self.count += 1

    def percentile(self, q: float) -> float | None:
        """Estimate the q-quantile by linear interpolation inside the bucket."""
        if self.count == 0:
            return None
        rank = q * self.count
        previous_count = 0
        lower = 0.0
        for index, boundary in enumerate(self.boundaries):
            cumulative = self.cumulative[index]
            if cumulative >= rank:
                in_bucket = cumulative - previous_count
                if in_bucket <= 0:
                    return boundary
                return lower + (boundary - lower) * (rank - previous_count) / in_bucket
            previous_count = cumulative
            lower = boundary
        # Rank falls in the +Inf bucket
        return self.boundaries[-1]

    def average(self) -> float:
        return self.sum / self.count if self.count else 0.0

    def snapshot(self) -> HistogramSnapshot:
        buckets = {_format_bound(b): c for b, c in zip(self.boundaries, self.cumulative)}
        buckets["+Inf"] = self.count
        return HistogramSnapshot(buckets=buckets, sum=self.sum, count=self.count)


def _format_bound(bound: float) -> str:
    return repr(float(bound))


def _metric_name(name: str) -> str:
    sanitized = _INVALID_NAME_CHARS.sub("_", name)
    return sanitized if not sanitized[:1].isdigit() else f"_{sanitized}"


def label_key(labels: Mapping[str, str] | None) -> LabelKey:
    """Normalize a label mapping into a hashable, ordered key."""
    if not labels:
        return ()
    for label in labels:
        if not isinstance(label, str) or not _LABEL_NAME.match(label) or label == "le":
            raise ValidationError(
                f"Invalid metric label name: {label!r}",
                field="labels",
                value=label,
                validation_type="metric",
            )
    return tuple(sorted((name, str(value)) for name, value in labels.items()))


def _render_key(key: LabelKey) -> str:
    return ",".join(f"{name}={value}" for name, value in key)


def _family_labels(keys: Iterable[LabelKey]) -> list[str]:
    return sorted({name for key in keys for name, _ in key})


def _label_values(key: LabelKey, names: list[str]) -> list[str]:
    values = dict(key)
    return [values.get(name, "") for name in names]


class MetricsAggregator:
    """
    In-memory metric state.

    Mutations are synchronous arithmetic: they never block, never do I/O and
    never fail on valid input.
    """

    def __init__(
        self,
        default_buckets: Iterable[float] | None = None,
        clock: Clock = system_clock,
    ):
        self.default_buckets = list(default_buckets or DEFAULT_LATENCY_BUCKETS)
        self.clock = clock
        self.counters: dict[str, int] = {}
        self.gauges: dict[str, float] = {}
        self.histograms: dict[str, Histogram] = {}
        self.counter_series: dict[str, dict[LabelKey, int]] = {}
        self.histogram_series: dict[str, dict[LabelKey, Histogram]] = {}
        self._declared: dict[str, list[float]] = {}
        self._declare_defaults()

    def _declare_defaults(self) -> None:
        for name in (REQUEST_DURATION, UPDATE_DURATION):
            self.register_histogram(name, self.default_buckets)

    def increment_counter(self, name: str, delta: int = 1, labels: Mapping[str, str] | None = None) -> int:
        if delta < 0:
            raise ValidationError(
                "Counter increments must be non-negative",
                field=name,
                value=delta,
                validation_type="metric",
            )
        key = label_key(labels)
        series = self.counter_series.setdefault(name, {})
        series[key] = series.get(key, 0) + int(delta)
        self.counters[name] = self.counters.get(name, 0) + int(delta)
        return self.counters[name]

    def set_gauge(self, name: str, value: float) -> None:
        self.gauges[name] = float(value)

    def register_histogram(self, name: str, buckets: Iterable[float]) -> None:
        boundaries = sorted(float(b) for b in buckets)
        existing = self._declared.get(name)
        if existing is not None:
            if existing == boundaries:
                return
            raise ResourceConflictError(
                f"Histogram '{name}' already registered with different buckets",
                resource_type="histogram",
                conflicting_value=name,
            )
        self.histograms[name] = Histogram(boundaries)
        self.histogram_series[name] = {}
        self._declared[name] = boundaries

    def observe_histogram(self, name: str, value: float, labels: Mapping[str, str] | None = None) -> None:
        key = label_key(labels)
        if name not in self.histograms:
            self.register_histogram(name, self.default_buckets)
        series = self.histogram_series[name]
        if key not in series:
            series[key] = Histogram(self._declared[name])
        self.histograms[name].observe(float(value))
        series[key].observe(float(value))

    def _histogram(self, name: str, labels: Mapping[str, str] | None) -> Histogram | None:
        if labels is None:
            return self.histograms.get(name)
        return self.histogram_series.get(name, {}).get(label_key(labels))

    def percentile(self, name: str, q: float, labels: Mapping[str, str] | None = None) -> float | None:
        """Estimate a quantile (0..1) of a histogram; None when empty or unknown."""
        if not 0.0 <= q <= 1.0:
            raise ValidationError("Quantile must be between 0 and 1", field="q", value=q)
        histogram = self._histogram(name, labels)
        if histogram is None:
            return None
        return histogram.percentile(q)

    def get_counter(self, name: str, labels: Mapping[str, str] | None = None) -> int:
        """Aggregate value, or a single series when ``labels`` is given."""
        if labels is None:
            return self.counters.get(name, 0)
        return self.counter_series.get(name, {}).get(label_key(labels), 0)

    def sum_counter(self, name: str, **match: str) -> int:
        """Sum of every series of ``name`` whose labels include ``match``."""
        wanted = {k: str(v) for k, v in match.items()}
        total = 0
        for key, value in self.counter_series.get(name, {}).items():
            labels = dict(key)
            if all(labels.get(k) == v for k, v in wanted.items()):
                total += value
        return total

    def get_gauge(self, name: str) -> float | None:
        return self.gauges.get(name)

    def average(self, name: str, labels: Mapping[str, str] | None = None) -> float:
        histogram = self._histogram(name, labels)
        return histogram.average() if histogram is not None else 0.0

    def summary(self) -> MetricsSummary:
        """Derive rates from the raw counters."""
        requests = self.get_counter(REQUESTS_TOTAL)
        hits = self.get_counter(CACHE_HITS_TOTAL)
        misses = self.get_counter(CACHE_MISSES_TOTAL)
        errors = self.get_counter(ERRORS_TOTAL)
        lookups = hits + misses
        return MetricsSummary(
            total_requests=requests,
            cache_hits=hits,
            cache_misses=misses,
            cache_hit_rate=hits / lookups if lookups else 0.0,
            errors=errors,
            error_rate=errors / requests if requests else 0.0,
            average_request_duration=self.average(REQUEST_DURATION),
            average_update_duration=self.average(UPDATE_DURATION),
            p95_request_duration=self.percentile(REQUEST_DURATION, 0.95),
        )

    def document_summary(self, config_name: str) -> DocumentMetricsSummary:
        """Per-document rates built from the ``config_name`` labelled series."""
        requests = self.sum_counter(REQUESTS_TOTAL, config_name=config_name)
        hits = self.sum_counter(CACHE_HITS_TOTAL, config_name=config_name)
        misses = self.sum_counter(CACHE_MISSES_TOTAL, config_name=config_name)
        errors = self.sum_counter(ERRORS_TOTAL, config_name=config_name)
        lookups = hits + misses
        read_labels = {"config_name": config_name, "operation": "get"}
        return DocumentMetricsSummary(
            config_name=config_name,
            requests=requests,
            updates=self.sum_counter(UPDATES_TOTAL, config_name=config_name),
            cache_hits=hits,
            cache_misses=misses,
            cache_hit_rate=hits / lookups if lookups else 0.0,
            errors=errors,
            error_rate=errors / requests if requests else 0.0,
            average_request_duration=self.average(REQUEST_DURATION, read_labels),
            p95_request_duration=self.percentile(REQUEST_DURATION, 0.95, read_labels),
        )

    def snapshot(self) -> MetricsSnapshot:
        return MetricsSnapshot(
            counters=dict(self.counters),
            labelled_counters={
                name: {_render_key(key): value for key, value in series.items() if key}
                for name, series in self.counter_series.items()
                if any(series)
            },
            gauges=dict(self.gauges),
            histograms={name: h.snapshot() for name, h in self.histograms.items()},
            summary=self.summary(),
            timestamp=self.clock.now(),
        )

    def reset(self) -> None:
        """Clear every metric; declared histograms keep their buckets."""
        self.counters.clear()
        self.counter_series.clear()
        self.gauges.clear()
        self.histograms = {name: Histogram(bounds) for name, bounds in self._declared.items()}
        self.histogram_series = {name: {} for name in self._declared}
        logger.info("metrics_reset")

    def collect(self):
        """prometheus_client collector protocol"""
        for name, series in sorted(self.counter_series.items()):
            metric_name = _metric_name(name)
            if metric_name.endswith("_total"):
                metric_name = metric_name[: -len("_total")]
            label_names = _family_labels(series)
            family = CounterMetricFamily(metric_name, f"Counter {name}", labels=label_names)
            for key, value in sorted(series.items()):
                family.add_metric(_label_values(key, label_names), value)
            yield family

        for name, value in sorted(self.gauges.items()):
            family = GaugeMetricFamily(_metric_name(name), f"Gauge {name}")
            family.add_metric([], value)
            yield family

        for name, aggregate in sorted(self.histograms.items()):
            series = self.histogram_series.get(name) or {(): aggregate}
            label_names = _family_labels(series)
            family = HistogramMetricFamily(_metric_name(name), f"Histogram {name}", labels=label_names)
            for key, histogram in sorted(series.items()):
                buckets = [(_format_bound(b), c) for b, c in zip(histogram.boundaries, histogram.cumulative)]
                buckets.append(("+Inf", histogram.count))
                family.add_metric(_label_values(key, label_names), buckets, sum_value=histogram.sum)
            yield family

    def render_text(self) -> str:
        """Render all metrics in the Prometheus text exposition format."""
        registry = CollectorRegistry()
        registry.register(self)
        return generate_latest(registry).decode("utf-8")
