"""
Default health checks for the distribution service.
"""

import psutil

from ..schemas.health import CheckOutcome, Thresholds
from .distribution_service import DistributionCore
from .health_service import HealthAlertEngine
from .metrics_service import MEMORY_USAGE_BYTES, REQUEST_DURATION, MetricsAggregator

RESPONSE_TIME_THRESHOLDS = Thresholds(warning=2.0, critical=5.0)
ERROR_RATE_THRESHOLDS = Thresholds(warning=0.05, critical=0.15)
CACHE_HIT_RATE_THRESHOLDS = Thresholds(warning=0.8, critical=0.6, inverse=True)
STORE_LATENCY_THRESHOLDS = Thresholds(warning=1000.0, critical=5000.0)
CONSISTENCY_THRESHOLDS = Thresholds(warning=1.0, critical=5.0)
MEMORY_USAGE_THRESHOLDS = Thresholds(warning=0.7, critical=0.9)


def register_default_checks(
    engine: HealthAlertEngine,
    core: DistributionCore,
    metrics: MetricsAggregator,
) -> None:
    """Register the standard check set on ``engine``."""

    async def response_time() -> CheckOutcome:
        histogram = metrics.histograms.get(REQUEST_DURATION)
        if histogram is None or histogram.count == 0:
            return CheckOutcome(value=None, message="No requests recorded yet")
        average = metrics.average(REQUEST_DURATION)
        return CheckOutcome(
            value=average,
            message=f"Average request latency {average:.3f}s",
            details={"requests": histogram.count, "p95": metrics.percentile(REQUEST_DURATION, 0.95)},
        )

    async def error_rate() -> CheckOutcome:
        summary = metrics.summary()
        if summary.total_requests == 0:
            return CheckOutcome(value=None, message="No requests recorded yet")
        return CheckOutcome(
            value=summary.error_rate,
            message=f"Error rate {summary.error_rate:.2%}",
            details={"errors": summary.errors, "requests": summary.total_requests},
        )

    async def cache_hit_rate() -> CheckOutcome:
        summary = metrics.summary()
        lookups = summary.cache_hits + summary.cache_misses
        if lookups == 0:
            return CheckOutcome(value=None, message="No cache lookups recorded yet")
        return CheckOutcome(
            value=summary.cache_hit_rate,
            message=f"Cache hit rate {summary.cache_hit_rate:.2%}",
            details={"hits": summary.cache_hits, "misses": summary.cache_misses},
        )

    async def store_connectivity() -> CheckOutcome:
        latency_ms = await core.measure_store_round_trip_ms()
        return CheckOutcome(value=latency_ms, message=f"Store round trip {latency_ms:.1f}ms")

    async def config_consistency() -> CheckOutcome:
        mismatched = await core.count_inconsistent_documents()
        return CheckOutcome(
            value=float(mismatched),
            message=f"{mismatched} cached document(s) disagree with the working set",
        )

    async def memory_usage() -> CheckOutcome:
        memory = psutil.virtual_memory()
        rss = psutil.Process().memory_info().rss
        metrics.set_gauge(MEMORY_USAGE_BYTES, rss)
        return CheckOutcome(
            value=memory.percent / 100,
            message=f"Memory usage: {memory.percent:.1f}%",
            details={
                "total_bytes": memory.total,
                "available_bytes": memory.available,
                "process_rss_bytes": rss,
            },
        )

    async def loaded_documents() -> CheckOutcome:
        count = len(core.list_documents())
        return CheckOutcome(value=float(count), message=f"{count} document(s) loaded")

    engine.register_check("response_time", response_time, RESPONSE_TIME_THRESHOLDS, critical=True)
    engine.register_check("error_rate", error_rate, ERROR_RATE_THRESHOLDS, critical=True)
    engine.register_check("cache_hit_rate", cache_hit_rate, CACHE_HIT_RATE_THRESHOLDS)
    engine.register_check(
        "store_connectivity", store_connectivity, STORE_LATENCY_THRESHOLDS, critical=True
    )
    engine.register_check(
        "config_consistency", config_consistency, CONSISTENCY_THRESHOLDS, critical=True
    )
    engine.register_check("memory_usage", memory_usage, MEMORY_USAGE_THRESHOLDS)
    engine.register_check("loaded_documents", loaded_documents)
