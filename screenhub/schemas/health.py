"""
Health check and alert schemas.
"""

from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field, model_validator


class CheckStatus(str, Enum):
    OK = "ok"
    WARNING = "warning"
    CRITICAL = "critical"
    ERROR = "error"


class AlertLevel(str, Enum):
    WARNING = "warning"
    CRITICAL = "critical"


class OverallHealth(str, Enum):
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    UNHEALTHY = "unhealthy"
    UNKNOWN = "unknown"


class Thresholds(BaseModel):
    """Warning/critical boundaries; inverse thresholds alert on low values"""

    warning: float
    critical: float
    inverse: bool = False

    @model_validator(mode="after")
    def validate_ordering(self) -> "Thresholds":
        if self.inverse and self.critical > self.warning:
            raise ValueError("Inverse thresholds require critical <= warning")
        if not self.inverse and self.critical < self.warning:
            raise ValueError("Thresholds require critical >= warning")
        return self

    def evaluate(self, value: float | None) -> CheckStatus:
        if value is None:
            return CheckStatus.OK
        if self.inverse:
            if value < self.critical:
                return CheckStatus.CRITICAL
            if value < self.warning:
                return CheckStatus.WARNING
            return CheckStatus.OK
        if value > self.critical:
            return CheckStatus.CRITICAL
        if value > self.warning:
            return CheckStatus.WARNING
        return CheckStatus.OK


class CheckOutcome(BaseModel):
    """Value returned by a check function"""

    value: float | None = None
    message: str = ""
    details: dict[str, Any] = Field(default_factory=dict)
    status: CheckStatus = Field(
        default=CheckStatus.OK, description="Used only when the check has no thresholds"
    )


class HealthCheckResult(BaseModel):
    check_name: str
    display_name: str
    status: CheckStatus
    value: float | None = None
    message: str = ""
    timestamp: datetime
    critical: bool = False
    details: dict[str, Any] = Field(default_factory=dict)


class AlertRecord(BaseModel):
    """Alert raised when a check crosses a threshold"""

    id: str
    check_name: str
    level: AlertLevel
    message: str
    value: float | None = None
    triggered_at: datetime
    resolved_at: datetime | None = None

    @property
    def is_active(self) -> bool:
        return self.resolved_at is None


class HealthSnapshot(BaseModel):
    overall: OverallHealth = OverallHealth.UNKNOWN
    checks: dict[str, HealthCheckResult] = Field(default_factory=dict)
    active_alerts: list[AlertRecord] = Field(default_factory=list)
    timestamp: datetime | None = None
