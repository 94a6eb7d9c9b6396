"""
Health & Alert Engine

Runs registered checks on an interval, maps each value onto threshold
levels, keeps at most one active alert per (check, level), emits alert
transitions on the event bus and hands critical alerts to the notification
service without waiting on delivery.
"""

import asyncio
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Awaitable, Callable

import structlog

from ..core.documents import dumps, loads
from ..core.events import AlertEvent, EventBus
from ..core.exceptions import ResourceConflictError, ResourceNotFoundError, ValidationError
from ..core.store import KeyValueStore, best_effort_set
from ..schemas.health import (
    AlertLevel,
    AlertRecord,
    CheckOutcome,
    CheckStatus,
    HealthCheckResult,
    HealthSnapshot,
    OverallHealth,
    Thresholds,
)
from ..utils.clock import Clock, system_clock
from ..utils.identifiers import time_based_id
from ..utils.periodic import PeriodicTask
from .metrics_service import ALERTS_TRIGGERED_TOTAL, MetricsAggregator
from .notification_service import AlertNotificationService

logger = structlog.get_logger(__name__)

CheckFn = Callable[[], Awaitable[CheckOutcome | float | int | None]]


@dataclass
class RegisteredCheck:
    name: str
    check_fn: CheckFn
    thresholds: Thresholds | None
    critical: bool
    display_name: str


def alert_level_for(status: CheckStatus, has_thresholds: bool) -> AlertLevel | None:
    """Map a check status onto the alert level it implies, if any."""
    if status is CheckStatus.CRITICAL:
        return AlertLevel.CRITICAL
    if status is CheckStatus.WARNING:
        return AlertLevel.WARNING
    if status is CheckStatus.ERROR and has_thresholds:
        return AlertLevel.CRITICAL
    return None


def compute_overall(results: dict[str, HealthCheckResult]) -> OverallHealth:
    if not results:
        return OverallHealth.HEALTHY
    failing = (CheckStatus.CRITICAL, CheckStatus.ERROR)
    if any(r.critical and r.status in failing for r in results.values()):
        return OverallHealth.UNHEALTHY
    if any(r.status is CheckStatus.WARNING or r.status in failing for r in results.values()):
        return OverallHealth.DEGRADED
    return OverallHealth.HEALTHY


class HealthAlertEngine:
    """
    Health monitoring service.

    Check functions are async callables returning a CheckOutcome (or a bare
    number). A check that raises or times out is reported with status
    ``error`` and never aborts the cycle.
    """

    def __init__(
        self,
        store: KeyValueStore,
        metrics: MetricsAggregator | None = None,
        notifier: AlertNotificationService | None = None,
        event_bus: EventBus | None = None,
        interval_seconds: float = 30,
        status_ttl_seconds: int | None = 300,
        alert_ttl_seconds: int | None = 604800,
        check_timeout_seconds: float = 10.0,
        key_prefix: str = "config:",
        clock: Clock = system_clock,
    ):
        self.store = store
        self.metrics = metrics
        self.notifier = notifier
        self.event_bus = event_bus
        self.interval_seconds = interval_seconds
        self.status_ttl_seconds = status_ttl_seconds
        self.alert_ttl_seconds = alert_ttl_seconds
        self.check_timeout_seconds = check_timeout_seconds
        self.key_prefix = key_prefix
        self.clock = clock

        self._checks: dict[str, RegisteredCheck] = {}
        self._active_alerts: dict[tuple[str, AlertLevel], AlertRecord] = {}
        self._last_snapshot: HealthSnapshot | None = None
        self._cycle_lock = asyncio.Lock()
        self._history_lock = asyncio.Lock()
        self._notification_tasks: set[asyncio.Task] = set()
        self._timer: PeriodicTask | None = None
        self.cycles_run = 0
        self.cycles_skipped = 0

    # Registration

    def register_check(
        self,
        name: str,
        check_fn: CheckFn,
        thresholds: Thresholds | dict[str, Any] | None = None,
        critical: bool = False,
        display_name: str | None = None,
    ) -> None:
        if not callable(check_fn):
            raise ValidationError(f"Health check '{name}' must be callable", field=name, validation_type="check")
        if name in self._checks:
            raise ResourceConflictError(
                f"Health check '{name}' is already registered",
                resource_type="health_check",
                conflicting_value=name,
            )
        if isinstance(thresholds, dict):
            thresholds = Thresholds.model_validate(thresholds)
        self._checks[name] = RegisteredCheck(
            name=name,
            check_fn=check_fn,
            thresholds=thresholds,
            critical=critical,
            display_name=display_name or name.replace("_", " ").title(),
        )
        logger.debug("health_check_registered", check_name=name, critical=critical)

    def unregister_check(self, name: str) -> None:
        if self._checks.pop(name, None) is None:
            raise ResourceNotFoundError(
                f"Health check '{name}' is not registered", resource_type="health_check", resource_id=name
            )

    @property
    def check_names(self) -> list[str]:
        return sorted(self._checks)

    # Cycle

    async def run_cycle(self) -> HealthSnapshot | None:
        """
        Run every check once and update alerts.

        Returns:
            The new snapshot, or None when another cycle is still running
        """
        if self._cycle_lock.locked():
            self.cycles_skipped += 1
            logger.warning("health_cycle_skipped", reason="previous cycle still running")
            return None

        async with self._cycle_lock:
            checks = list(self._checks.values())
            results = await asyncio.gather(*(self._run_check(check) for check in checks))

            for check, result in zip(checks, results):
                level = alert_level_for(result.status, check.thresholds is not None)
                await self._reconcile_alerts(check, result, level)

            snapshot = HealthSnapshot(
                overall=compute_overall({r.check_name: r for r in results}),
                checks={r.check_name: r for r in results},
                active_alerts=self.get_active_alerts(),
                timestamp=self.clock.now(),
            )
            self._last_snapshot = snapshot
            self.cycles_run += 1

            await best_effort_set(
                self.store,
                f"{self.key_prefix}health:status",
                dumps(snapshot.model_dump(mode="json")),
                self.status_ttl_seconds,
                event="health_status_persist_failed",
            )
            logger.debug("health_cycle_completed", overall=snapshot.overall.value, checks=len(results))
            return snapshot

    async def _run_check(self, check: RegisteredCheck) -> HealthCheckResult:
        now = self.clock.now()
        try:
            outcome = await asyncio.wait_for(check.check_fn(), timeout=self.check_timeout_seconds)
            if not isinstance(outcome, CheckOutcome):
                outcome = CheckOutcome(value=None if outcome is None else float(outcome))

            if check.thresholds is not None:
                status = check.thresholds.evaluate(outcome.value)
            else:
                status = outcome.status

            return HealthCheckResult(
                check_name=check.name,
                display_name=check.display_name,
                status=status,
                value=outcome.value,
                message=outcome.message or _default_message(check, status, outcome.value),
                timestamp=now,
                critical=check.critical,
                details=outcome.details,
            )
        except asyncio.TimeoutError:
            return self._error_result(check, f"Check timed out after {self.check_timeout_seconds}s", now)
        except Exception as e:
            logger.warning("health_check_failed", check_name=check.name, error=str(e))
            return self._error_result(check, str(e) or type(e).__name__, now)

    def _error_result(self, check: RegisteredCheck, message: str, now) -> HealthCheckResult:
        return HealthCheckResult(
            check_name=check.name,
            display_name=check.display_name,
            status=CheckStatus.ERROR,
            value=None,
            message=message,
            timestamp=now,
            critical=check.critical,
        )

    # Alerts

    async def _reconcile_alerts(
        self, check: RegisteredCheck, result: HealthCheckResult, level: AlertLevel | None
    ) -> None:
        for active_level in list(AlertLevel):
            if active_level is not level and (check.name, active_level) in self._active_alerts:
                await self._resolve_alert(check.name, active_level)

        if level is not None and (check.name, level) not in self._active_alerts:
            await self._trigger_alert(check, result, level)

    async def _trigger_alert(
        self, check: RegisteredCheck, result: HealthCheckResult, level: AlertLevel
    ) -> AlertRecord:
        alert = AlertRecord(
            id=time_based_id("alert_", self.clock),
            check_name=check.name,
            level=level,
            message=result.message,
            value=result.value,
            triggered_at=self.clock.now(),
        )
        self._active_alerts[(check.name, level)] = alert

        log = logger.error if level is AlertLevel.CRITICAL else logger.warning
        log(
            "alert_triggered",
            alert_id=alert.id,
            check_name=check.name,
            level=level.value,
            value=result.value,
            message=result.message,
        )
        if self.metrics:
            self.metrics.increment_counter(ALERTS_TRIGGERED_TOTAL)

        await self._persist_alert(alert, new=True)
        self._emit_alert_event(alert)
        if level is AlertLevel.CRITICAL:
            self._schedule_notification(alert)
        return alert

    async def _resolve_alert(self, check_name: str, level: AlertLevel) -> AlertRecord | None:
        alert = self._active_alerts.pop((check_name, level), None)
        if alert is None:
            return None
        resolved = alert.model_copy(update={"resolved_at": self.clock.now()})
        logger.info(
            "alert_resolved",
            alert_id=resolved.id,
            check_name=check_name,
            level=level.value,
            duration_seconds=(resolved.resolved_at - resolved.triggered_at).total_seconds(),
        )
        await self._persist_alert(resolved, new=False)
        self._emit_alert_event(resolved)
        if level is AlertLevel.CRITICAL:
            self._schedule_notification(resolved)
        return resolved

    async def _persist_alert(self, alert: AlertRecord, new: bool) -> None:
        await best_effort_set(
            self.store,
            f"{self.key_prefix}alert:record:{alert.id}",
            dumps(alert.model_dump(mode="json")),
            self.alert_ttl_seconds,
            event="alert_persist_failed",
        )
        if not new:
            return

        day_key = f"{self.key_prefix}alert:daily:{alert.triggered_at.date().isoformat()}"
        async with self._history_lock:
            try:
                raw = await self.store.get(day_key)
                ids = loads(raw) if raw is not None else []
            except Exception as e:
                logger.warning("alert_index_read_failed", key=day_key, error=str(e))
                ids = []
            ids.append(alert.id)
            await best_effort_set(
                self.store, day_key, dumps(ids), self.alert_ttl_seconds, event="alert_index_persist_failed"
            )

    def _emit_alert_event(self, alert: AlertRecord) -> None:
        if self.event_bus is None:
            return
        self.event_bus.emit_nowait(
            AlertEvent(
                event_type="alert.resolved" if alert.resolved_at else "alert.triggered",
                alert_id=alert.id,
                check_name=alert.check_name,
                level=alert.level.value,
                message=alert.message,
                value=alert.value,
                triggered_at=alert.triggered_at,
                resolved_at=alert.resolved_at,
            )
        )

    def _schedule_notification(self, alert: AlertRecord) -> None:
        if self.notifier is None:
            return
        task = asyncio.create_task(self._notify(alert))
        self._notification_tasks.add(task)
        task.add_done_callback(self._notification_tasks.discard)

    async def _notify(self, alert: AlertRecord) -> None:
        try:
            await self.notifier.notify(alert)
        except Exception as e:
            logger.error("alert_notification_failed", alert_id=alert.id, error=str(e))

    async def drain_notifications(self) -> None:
        """Wait for in-flight notification tasks."""
        if self._notification_tasks:
            await asyncio.gather(*list(self._notification_tasks), return_exceptions=True)

    def get_active_alerts(self) -> list[AlertRecord]:
        return sorted(self._active_alerts.values(), key=lambda a: a.triggered_at, reverse=True)

    async def get_alert_history(self, days: int = 7) -> list[AlertRecord]:
        """Alerts triggered in the last ``days`` days, newest first."""
        if days < 1:
            raise ValidationError("Alert history window must be at least one day", field="days", value=days)

        today = self.clock.now().date()
        records: dict[str, AlertRecord] = {}
        for offset in range(days):
            day_key = f"{self.key_prefix}alert:daily:{(today - timedelta(days=offset)).isoformat()}"
            try:
                raw = await self.store.get(day_key)
                if raw is None:
                    continue
                for alert_id in loads(raw):
                    record_raw = await self.store.get(f"{self.key_prefix}alert:record:{alert_id}")
                    if record_raw is not None:
                        records[alert_id] = AlertRecord.model_validate(loads(record_raw))
            except Exception as e:
                logger.warning("alert_history_read_failed", key=day_key, error=str(e))

        return sorted(records.values(), key=lambda a: a.triggered_at, reverse=True)

    # Status

    def get_status(self) -> HealthSnapshot:
        if self._last_snapshot is None:
            return HealthSnapshot(
                overall=OverallHealth.UNKNOWN,
                active_alerts=self.get_active_alerts(),
                timestamp=self.clock.now(),
            )
        return self._last_snapshot

    async def run_manual_health_check(self) -> HealthSnapshot:
        """Run a cycle now; if one is already running, wait for it and return its result."""
        snapshot = await self.run_cycle()
        if snapshot is not None:
            return snapshot
        async with self._cycle_lock:
            pass
        return self.get_status()

    def start_monitoring(self) -> bool:
        if self._timer is None:
            self._timer = PeriodicTask("health_monitor", self.interval_seconds, self.run_cycle, run_immediately=True)
        return self._timer.start()

    async def stop_monitoring(self) -> None:
        if self._timer is not None:
            await self._timer.stop()
        await self.drain_notifications()

    @property
    def monitoring(self) -> bool:
        return self._timer is not None and self._timer.is_running


def _default_message(check: RegisteredCheck, status: CheckStatus, value: float | None) -> str:
    if status is CheckStatus.OK:
        return f"{check.display_name} is healthy"
    if check.thresholds is None:
        return f"{check.display_name} reported {status.value}"
    limit = check.thresholds.critical if status is CheckStatus.CRITICAL else check.thresholds.warning
    direction = "below" if check.thresholds.inverse else "above"
    return f"{check.display_name} is {direction} {status.value} threshold ({value} vs {limit})"
