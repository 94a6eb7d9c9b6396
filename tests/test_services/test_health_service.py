"""
Tests for HealthAlertEngine

Tests cover:
- Threshold evaluation and overall status
- Alert deduplication, resolution and escalation
- Cycle reentrancy
- Alert history and critical notifications
- Alert events pushed to event bus subscribers
- The default check set
"""

import asyncio
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import pytest

from screenhub.core.documents import loads
from screenhub.core.events import EventBus
from screenhub.core.exceptions import ResourceConflictError, ResourceNotFoundError, ValidationError
from screenhub.schemas.health import (
    AlertLevel,
    CheckOutcome,
    CheckStatus,
    OverallHealth,
    Thresholds,
)
from screenhub.services import health_checks
from screenhub.services.health_checks import register_default_checks
from screenhub.services.health_service import HealthAlertEngine, alert_level_for
from screenhub.services.metrics_service import (
    ALERTS_TRIGGERED_TOTAL,
    ERRORS_TOTAL,
    MEMORY_USAGE_BYTES,
    REQUESTS_TOTAL,
)


class ValueCheck:
    """Check function returning a value the test controls"""

    def __init__(self, value=None):
        self.value = value

    async def __call__(self):
        if isinstance(self.value, Exception):
            raise self.value
        return self.value


@pytest.fixture
def error_rate():
    return ValueCheck(0.0)


@pytest.fixture
def engine(health, error_rate):
    health.register_check("error_rate", error_rate, {"warning": 0.05, "critical": 0.15}, critical=True)
    return health


class TestThresholds:
    """Value to status mapping"""

    def test_boundaries_are_strict(self):
        thresholds = Thresholds(warning=1, critical=5)
        assert thresholds.evaluate(1) is CheckStatus.OK
        assert thresholds.evaluate(1.5) is CheckStatus.WARNING
        assert thresholds.evaluate(5) is CheckStatus.WARNING
        assert thresholds.evaluate(6) is CheckStatus.CRITICAL
        assert thresholds.evaluate(None) is CheckStatus.OK

    def test_inverse(self):
        thresholds = Thresholds(warning=0.8, critical=0.6, inverse=True)
        assert thresholds.evaluate(0.9) is CheckStatus.OK
        assert thresholds.evaluate(0.7) is CheckStatus.WARNING
        assert thresholds.evaluate(0.5) is CheckStatus.CRITICAL

    def test_misordered_thresholds_rejected(self):
        with pytest.raises(ValueError):
            Thresholds(warning=5, critical=1)

    def test_alert_level_mapping(self):
        assert alert_level_for(CheckStatus.OK, True) is None
        assert alert_level_for(CheckStatus.WARNING, True) is AlertLevel.WARNING
        assert alert_level_for(CheckStatus.ERROR, True) is AlertLevel.CRITICAL
        assert alert_level_for(CheckStatus.ERROR, False) is None


class TestRegistration:
    def test_duplicate_name(self, engine):
        with pytest.raises(ResourceConflictError):
            engine.register_check("error_rate", ValueCheck())

    def test_non_callable(self, health):
        with pytest.raises(ValidationError):
            health.register_check("broken", None)

    def test_unregister(self, engine):
        engine.unregister_check("error_rate")
        assert engine.check_names == []
        with pytest.raises(ResourceNotFoundError):
            engine.unregister_check("error_rate")


class TestCycle:
    """Running checks and building snapshots"""

    async def test_status_unknown_before_first_cycle(self, engine):
        assert engine.get_status().overall is OverallHealth.UNKNOWN

    async def test_healthy_cycle(self, engine, store):
        snapshot = await engine.run_cycle()

        assert snapshot.overall is OverallHealth.HEALTHY
        assert snapshot.checks["error_rate"].status is CheckStatus.OK
        assert engine.get_status() is snapshot
        persisted = loads(await store.get("config:health:status"))
        assert persisted["overall"] == "healthy"

    async def test_overall_levels(self, engine, error_rate):
        engine.register_check("hit_rate", ValueCheck(0.7), {"warning": 0.8, "critical": 0.6, "inverse": True})
        assert (await engine.run_cycle()).overall is OverallHealth.DEGRADED

        error_rate.value = 0.5
        assert (await engine.run_cycle()).overall is OverallHealth.UNHEALTHY

    async def test_failing_check_is_error_not_abort(self, engine):
        engine.register_check("exploding", ValueCheck(RuntimeError("sensor unreachable")))
        snapshot = await engine.run_cycle()

        assert snapshot.checks["exploding"].status is CheckStatus.ERROR
        assert snapshot.checks["exploding"].message == "sensor unreachable"
        assert snapshot.checks["error_rate"].status is CheckStatus.OK
        assert engine.get_active_alerts() == []

    async def test_non_numeric_value_is_error_not_abort(self, health):
        health.register_check("good", ValueCheck(1.0), {"warning": 5, "critical": 10})
        health.register_check("bad", ValueCheck("n/a"), {"warning": 5, "critical": 10})

        snapshot = await health.run_cycle()

        assert snapshot is not None
        assert snapshot.checks["good"].status is CheckStatus.OK
        assert snapshot.checks["bad"].status is CheckStatus.ERROR
        assert [a.check_name for a in health.get_active_alerts()] == ["bad"]

    async def test_timed_out_check(self, store, clock):
        async def hangs():
            await asyncio.sleep(1)

        engine = HealthAlertEngine(store, check_timeout_seconds=0.01, clock=clock)
        engine.register_check("hangs", hangs, {"warning": 1, "critical": 2})
        snapshot = await engine.run_cycle()

        assert snapshot.checks["hangs"].status is CheckStatus.ERROR
        assert engine.get_active_alerts()[0].level is AlertLevel.CRITICAL

    async def test_check_without_thresholds_reports_own_status(self, health):
        async def degraded():
            return CheckOutcome(value=1, status=CheckStatus.WARNING, message="replica lagging")

        health.register_check("replica", degraded)
        snapshot = await health.run_cycle()
        assert snapshot.checks["replica"].status is CheckStatus.WARNING
        assert snapshot.checks["replica"].message == "replica lagging"

    async def test_overlapping_cycle_is_skipped(self, health):
        release = asyncio.Event()

        async def blocking():
            await release.wait()
            return 0

        health.register_check("blocking", blocking)
        first = asyncio.create_task(health.run_cycle())
        for _ in range(10):
            await asyncio.sleep(0)

        assert await health.run_cycle() is None
        assert health.cycles_skipped == 1

        release.set()
        assert await first is not None
        assert health.cycles_run == 1

    async def test_manual_check_waits_for_running_cycle(self, health):
        release = asyncio.Event()

        async def blocking():
            await release.wait()
            return 0

        health.register_check("blocking", blocking)
        first = asyncio.create_task(health.run_cycle())
        for _ in range(10):
            await asyncio.sleep(0)

        manual = asyncio.create_task(health.run_manual_health_check())
        await asyncio.sleep(0)
        release.set()
        snapshot = await first
        assert await manual is snapshot


class TestAlerts:
    """Alert lifecycle"""

    async def test_repeated_breach_creates_one_alert(self, engine, error_rate, metrics):
        error_rate.value = 0.5
        for _ in range(5):
            await engine.run_cycle()

        active = engine.get_active_alerts()
        assert len(active) == 1
        assert active[0].level is AlertLevel.CRITICAL
        assert len(await engine.get_alert_history(1)) == 1
        assert metrics.get_counter(ALERTS_TRIGGERED_TOTAL) == 1

    async def test_recovery_resolves_and_new_breach_realerts(self, engine, error_rate, clock):
        error_rate.value = 0.5
        await engine.run_cycle()
        first = engine.get_active_alerts()[0]

        clock.advance(60)
        error_rate.value = 0.0
        await engine.run_cycle()
        assert engine.get_active_alerts() == []

        history = await engine.get_alert_history(1)
        assert history[0].id == first.id
        assert history[0].resolved_at is not None

        clock.advance(60)
        error_rate.value = 0.5
        await engine.run_cycle()
        second = engine.get_active_alerts()[0]
        assert second.id != first.id
        assert len(await engine.get_alert_history(1)) == 2

    async def test_escalation_replaces_warning(self, engine, error_rate, clock):
        error_rate.value = 0.1
        await engine.run_cycle()
        assert [a.level for a in engine.get_active_alerts()] == [AlertLevel.WARNING]

        clock.advance(30)
        error_rate.value = 0.5
        await engine.run_cycle()
        assert [a.level for a in engine.get_active_alerts()] == [AlertLevel.CRITICAL]

        history = await engine.get_alert_history(1)
        warning = next(a for a in history if a.level is AlertLevel.WARNING)
        assert warning.resolved_at is not None

    async def test_history_window(self, engine, error_rate, clock):
        error_rate.value = 0.5
        await engine.run_cycle()

        clock.advance(8 * 86400)
        assert await engine.get_alert_history(7) == []
        with pytest.raises(ValidationError):
            await engine.get_alert_history(0)

    async def test_alert_persist_failure_keeps_alert_active(self, engine, error_rate, store):
        store.failing_prefixes.add("config:alert:")
        error_rate.value = 0.5
        await engine.run_cycle()
        assert len(engine.get_active_alerts()) == 1


class TestNotifications:
    async def test_critical_trigger_and_resolve_notify(self, store, clock):
        notifier = MagicMock()
        notifier.notify = AsyncMock(return_value={"log": True})
        check = ValueCheck(0.5)
        engine = HealthAlertEngine(store, notifier=notifier, clock=clock)
        engine.register_check("error_rate", check, {"warning": 0.05, "critical": 0.15})

        await engine.run_cycle()
        await engine.drain_notifications()
        notifier.notify.assert_awaited_once()
        assert notifier.notify.await_args.args[0].level is AlertLevel.CRITICAL

        check.value = 0.0
        await engine.run_cycle()
        await engine.drain_notifications()
        assert notifier.notify.await_count == 2
        assert notifier.notify.await_args.args[0].resolved_at is not None

    async def test_warning_does_not_notify(self, store, clock):
        notifier = MagicMock()
        notifier.notify = AsyncMock()
        engine = HealthAlertEngine(store, notifier=notifier, clock=clock)
        engine.register_check("error_rate", ValueCheck(0.1), {"warning": 0.05, "critical": 0.15})

        await engine.run_cycle()
        await engine.drain_notifications()
        notifier.notify.assert_not_awaited()

    async def test_notifier_failure_does_not_break_cycle(self, store, clock):
        notifier = MagicMock()
        notifier.notify = AsyncMock(side_effect=RuntimeError("gotify down"))
        engine = HealthAlertEngine(store, notifier=notifier, clock=clock)
        engine.register_check("error_rate", ValueCheck(0.5), {"warning": 0.05, "critical": 0.15})

        assert await engine.run_cycle() is not None
        await engine.drain_notifications()
        assert len(engine.get_active_alerts()) == 1


class TestAlertEvents:
    """Alert transitions pushed to event bus subscribers"""

    async def test_trigger_and_resolve_are_emitted(self, store, clock):
        bus = EventBus()
        received = []

        async def on_alert(event):
            received.append(event)

        bus.subscribe(["alert.triggered", "alert.resolved"], on_alert)
        await bus.start()
        try:
            check = ValueCheck(0.1)
            engine = HealthAlertEngine(store, event_bus=bus, clock=clock)
            engine.register_check("error_rate", check, {"warning": 0.05, "critical": 0.15})

            await engine.run_cycle()
            check.value = 0.0
            await engine.run_cycle()
        finally:
            await bus.stop()

        assert [e.event_type for e in received] == ["alert.triggered", "alert.resolved"]
        assert received[0].check_name == "error_rate"
        assert received[0].level == "warning"
        assert received[0].alert_id == received[1].alert_id
        assert received[0].resolved_at is None
        assert received[1].resolved_at is not None

    async def test_no_bus_is_fine(self, engine, error_rate):
        error_rate.value = 0.5
        assert await engine.run_cycle() is not None


class TestDefaultChecks:
    """Standard check set wired to the distribution core"""

    @pytest.fixture(autouse=True)
    def memory(self, monkeypatch):
        memory = SimpleNamespace(percent=40.0, total=8 * 2**30, available=5 * 2**30)
        monkeypatch.setattr(health_checks.psutil, "virtual_memory", lambda: memory)
        return memory

    @pytest.fixture
    def default_engine(self, store, core, metrics, clock):
        engine = HealthAlertEngine(store, metrics=metrics, clock=clock)
        register_default_checks(engine, core, metrics)
        return engine

    async def test_idle_service_is_healthy(self, default_engine):
        snapshot = await default_engine.run_cycle()

        assert set(snapshot.checks) == {
            "response_time",
            "error_rate",
            "cache_hit_rate",
            "store_connectivity",
            "config_consistency",
            "memory_usage",
            "loaded_documents",
        }
        assert snapshot.overall is OverallHealth.HEALTHY

    async def test_high_error_rate_is_unhealthy(self, default_engine, metrics):
        metrics.increment_counter(REQUESTS_TOTAL, 10)
        metrics.increment_counter(ERRORS_TOTAL, 2)

        snapshot = await default_engine.run_cycle()
        assert snapshot.checks["error_rate"].status is CheckStatus.CRITICAL
        assert snapshot.overall is OverallHealth.UNHEALTHY

    async def test_store_outage_is_reported(self, default_engine, store):
        store.fail_all = True
        snapshot = await default_engine.run_cycle()
        assert snapshot.checks["store_connectivity"].status is CheckStatus.ERROR
        assert snapshot.overall is OverallHealth.UNHEALTHY

    async def test_loaded_documents_count(self, default_engine, core):
        await core.update_document("lobby", {"a": 1})
        snapshot = await default_engine.run_cycle()
        assert snapshot.checks["loaded_documents"].value == 1.0

    async def test_memory_usage_thresholds(self, default_engine, memory, metrics):
        snapshot = await default_engine.run_cycle()
        assert snapshot.checks["memory_usage"].value == pytest.approx(0.4)
        assert snapshot.checks["memory_usage"].status is CheckStatus.OK
        assert metrics.get_gauge(MEMORY_USAGE_BYTES) > 0

        memory.percent = 75.0
        assert (await default_engine.run_cycle()).checks["memory_usage"].status is CheckStatus.WARNING

        memory.percent = 95.0
        snapshot = await default_engine.run_cycle()
        assert snapshot.checks["memory_usage"].status is CheckStatus.CRITICAL
        assert snapshot.overall is OverallHealth.DEGRADED
