"""
Screen Configuration Hub - Custom Exceptions

This module defines custom exception classes for configuration distribution
errors, providing structured error handling with detailed context information.
"""

from typing import Optional, Dict, Any
from datetime import datetime, timezone


class ScreenHubException(Exception):
    """Base exception class for configuration distribution errors"""

    def __init__(
        self,
        message: str,
        error_code: str = "SCREENHUB_ERROR",
        details: Optional[Dict[str, Any]] = None,
        operation: Optional[str] = None,
    ):
        super().__init__(message)
        self.message = message
        self.error_code = error_code
        self.details = details or {}
        self.operation = operation
        self.timestamp = datetime.now(timezone.utc)

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary for JSON serialization"""
        return {
            "error_code": self.error_code,
            "message": self.message,
            "details": self.details,
            "operation": self.operation,
            "timestamp": self.timestamp.isoformat(),
        }


class ValidationError(ScreenHubException):
    """Raised when write input or a registration is malformed"""

    def __init__(
        self,
        message: str,
        field: Optional[str] = None,
        value: Optional[Any] = None,
        validation_type: str = "document",
    ):
        details = {"validation_type": validation_type}
        if field:
            details["field"] = field
        if value is not None:
            details["value"] = str(value)[:200]

        super().__init__(
            message=message,
            error_code="VALIDATION_ERROR",
            details=details,
            operation="data_validation",
        )


class ResourceNotFoundError(ScreenHubException):
    """Raised when a document, version or backup is not found"""

    def __init__(
        self,
        message: str,
        resource_type: str,
        resource_id: Optional[str] = None,
    ):
        details = {"resource_type": resource_type}
        if resource_id:
            details["resource_id"] = resource_id

        super().__init__(
            message=message,
            error_code="RESOURCE_NOT_FOUND",
            details=details,
            operation="resource_lookup",
        )


class ResourceConflictError(ScreenHubException):
    """Raised when a registration collides with an existing name"""

    def __init__(
        self,
        message: str,
        resource_type: str,
        conflicting_value: Optional[str] = None,
    ):
        details = {"resource_type": resource_type}
        if conflicting_value:
            details["conflicting_value"] = conflicting_value

        super().__init__(
            message=message,
            error_code="RESOURCE_CONFLICT",
            details=details,
            operation="resource_registration",
        )


class StoreUnavailableError(ScreenHubException):
    """Raised when the persistent key/value interface fails"""

    def __init__(
        self,
        message: str = "Persistent store unavailable",
        key: Optional[str] = None,
        operation: str = "store_access",
        details: Optional[Dict[str, Any]] = None,
    ):
        details = details or {}
        if key:
            details["key"] = key

        super().__init__(
            message=message,
            error_code="STORE_UNAVAILABLE",
            details=details,
            operation=operation,
        )


class CircuitOpenError(StoreUnavailableError):
    """Raised when a circuit breaker rejects a call"""

    def __init__(self, service_name: str, retry_after_seconds: Optional[float] = None):
        details: Dict[str, Any] = {"service_name": service_name}
        if retry_after_seconds is not None:
            details["retry_after_seconds"] = round(retry_after_seconds, 3)

        super().__init__(
            message=f"Circuit breaker is open for service: {service_name}",
            operation="circuit_breaker",
            details=details,
        )
        self.error_code = "CIRCUIT_OPEN"


class CacheOperationError(ScreenHubException):
    """Raised when the shared cache tier cannot be reached"""

    def __init__(self, message: str, cache_key: Optional[str] = None):
        details = {}
        if cache_key:
            details["cache_key"] = cache_key

        super().__init__(
            message=message,
            error_code="CACHE_OPERATION_ERROR",
            details=details,
            operation="cache_operation",
        )


class ConfigurationError(ScreenHubException):
    """Raised when service settings are invalid or missing"""

    def __init__(self, message: str, config_key: Optional[str] = None):
        details = {}
        if config_key:
            details["config_key"] = config_key

        super().__init__(
            message=message,
            error_code="CONFIGURATION_ERROR",
            details=details,
            operation="configuration",
        )
