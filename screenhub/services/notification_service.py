"""
Alert Notification Service

Renders alert notifications with Jinja2 templates and delivers them to the
configured channels: the structured log always, and Gotify when a server URL
and application token are configured. Delivery problems are logged and never
propagate to the health cycle that triggered them.
"""

from datetime import datetime
from typing import Any

from jinja2 import BaseLoader, Environment, StrictUndefined
import httpx
import structlog

from ..core.documents import dumps
from ..core.store import KeyValueStore, best_effort_set
from ..schemas.health import AlertLevel, AlertRecord
from ..utils.clock import Clock, system_clock

logger = structlog.get_logger(__name__)

TITLE_TEMPLATE = "{{ level | level_emoji }} [{{ environment }}] {{ check_name }} {{ state }}"

TRIGGERED_TEMPLATE = """
{{ level | level_emoji }} **{{ level | upper }} ALERT: {{ check_name }}**

**Message**: {{ message | truncate_text(500) }}
{% if value is not none %}
**Value**: {{ value }}
{% endif %}
**Triggered**: {{ triggered_at | format_timestamp }}
**Alert ID**: {{ alert_id }}
""".strip()

RESOLVED_TEMPLATE = """
✅ **RESOLVED: {{ check_name }}** ({{ level }})

**Message**: {{ message | truncate_text(500) }}
**Triggered**: {{ triggered_at | format_timestamp }}
**Resolved**: {{ resolved_at | format_timestamp }}
""".strip()

GOTIFY_PRIORITIES = {
    AlertLevel.CRITICAL: 8,
    AlertLevel.WARNING: 5,
}
RESOLVED_PRIORITY = 2


class AlertNotificationService:
    """
    Out-of-band alert delivery.

    Channels:
    - log: always enabled
    - gotify: enabled when both ``gotify_url`` and ``gotify_token`` are set
    """

    def __init__(
        self,
        store: KeyValueStore | None = None,
        gotify_url: str | None = None,
        gotify_token: str | None = None,
        http_timeout: float = 30,
        record_ttl_seconds: int | None = 86400,
        environment: str = "development",
        key_prefix: str = "config:",
        http_client: httpx.AsyncClient | None = None,
        clock: Clock = system_clock,
    ):
        self.store = store
        self.gotify_url = gotify_url
        self.gotify_token = gotify_token
        self.http_timeout = http_timeout
        self.record_ttl_seconds = record_ttl_seconds
        self.environment = environment
        self.key_prefix = key_prefix
        self.clock = clock
        self._http_client = http_client
        self._jinja_env = self._setup_jinja_environment()
        self.sent_count = 0
        self.failed_count = 0

    def _setup_jinja_environment(self) -> Environment:
        """Initialize Jinja2 environment for template rendering."""
        env = Environment(
            loader=BaseLoader(),
            undefined=StrictUndefined,
            trim_blocks=True,
            lstrip_blocks=True,
            autoescape=False,
        )
        env.filters["format_timestamp"] = self._format_timestamp_filter
        env.filters["truncate_text"] = self._truncate_text_filter
        env.filters["level_emoji"] = self._level_emoji_filter
        return env

    @staticmethod
    def _format_timestamp_filter(value: Any, format_str: str = "%Y-%m-%d %H:%M:%S UTC") -> str:
        if isinstance(value, datetime):
            return value.strftime(format_str)
        return str(value)

    @staticmethod
    def _truncate_text_filter(value: Any, length: int = 100, suffix: str = "...") -> str:
        text = str(value)
        if len(text) <= length:
            return text
        return text[:length] + suffix

    @staticmethod
    def _level_emoji_filter(level: Any) -> str:
        emojis = {"warning": "🟡", "critical": "🔴"}
        return emojis.get(str(getattr(level, "value", level)).lower(), "⚪")

    @property
    def gotify_enabled(self) -> bool:
        return bool(self.gotify_url and self.gotify_token)

    def render(self, alert: AlertRecord) -> tuple[str, str]:
        """Render notification title and message for an alert."""
        resolved = alert.resolved_at is not None
        context = {
            "alert_id": alert.id,
            "check_name": alert.check_name,
            "level": alert.level.value,
            "message": alert.message,
            "value": alert.value,
            "triggered_at": alert.triggered_at,
            "resolved_at": alert.resolved_at,
            "environment": self.environment,
            "state": "resolved" if resolved else "triggered",
        }
        title = self._jinja_env.from_string(TITLE_TEMPLATE).render(**context).strip()
        body_template = RESOLVED_TEMPLATE if resolved else TRIGGERED_TEMPLATE
        message = self._jinja_env.from_string(body_template).render(**context).strip()
        return title, message

    async def notify(self, alert: AlertRecord) -> dict[str, bool]:
        """
        Deliver an alert to every enabled channel.

        Returns:
            Channel name -> delivered flag
        """
        try:
            title, message = self.render(alert)
        except Exception as e:
            logger.error("notification_render_failed", alert_id=alert.id, error=str(e))
            title, message = f"{alert.level.value} alert: {alert.check_name}", alert.message

        results = {"log": self._send_to_log(alert, title)}
        if self.gotify_enabled:
            priority = RESOLVED_PRIORITY if alert.resolved_at else GOTIFY_PRIORITIES[alert.level]
            results["gotify"] = await self._send_to_gotify(title, message, priority)

        delivered = sum(1 for ok in results.values() if ok)
        self.sent_count += delivered
        self.failed_count += len(results) - delivered
        await self._record_receipt(alert, results)
        return results

    def _send_to_log(self, alert: AlertRecord, title: str) -> bool:
        log = logger.error if alert.level is AlertLevel.CRITICAL and not alert.resolved_at else logger.warning
        log(
            "alert_notification",
            alert_id=alert.id,
            check_name=alert.check_name,
            level=alert.level.value,
            title=title,
            resolved=alert.resolved_at is not None,
        )
        return True

    async def _send_to_gotify(self, title: str, message: str, priority: int) -> bool:
        url = f"{self.gotify_url.rstrip('/')}/message"
        payload = {"title": title, "message": message, "priority": priority}
        params = {"token": self.gotify_token}

        try:
            if self._http_client is not None:
                response = await self._http_client.post(url, json=payload, params=params)
            else:
                async with httpx.AsyncClient(timeout=self.http_timeout) as client:
                    response = await client.post(url, json=payload, params=params)
        except httpx.HTTPError as e:
            logger.error("gotify_notification_failed", error=str(e))
            return False

        if response.status_code != 200:
            logger.error(
                "gotify_notification_failed",
                status_code=response.status_code,
                response_text=response.text[:200],
            )
            return False

        try:
            message_id = response.json().get("id")
        except ValueError:
            message_id = None
        logger.info("gotify_notification_sent", message_id=message_id)
        return True

    async def _record_receipt(self, alert: AlertRecord, results: dict[str, bool]) -> None:
        if self.store is None:
            return
        receipt = {
            "alert_id": alert.id,
            "check_name": alert.check_name,
            "level": alert.level.value,
            "resolved": alert.resolved_at is not None,
            "channels": results,
            "sent_at": self.clock.now().isoformat(),
        }
        await best_effort_set(
            self.store,
            f"{self.key_prefix}notification:{alert.id}",
            dumps(receipt),
            self.record_ttl_seconds,
            event="notification_receipt_failed",
        )
