"""
Core modules: settings, logging, exceptions, document model, key/value store and events.
"""

from .config import ApplicationSettings, get_settings
from .exceptions import (
    CacheOperationError,
    CircuitOpenError,
    ConfigurationError,
    ResourceConflictError,
    ResourceNotFoundError,
    ScreenHubException,
    StoreUnavailableError,
    ValidationError,
)

__all__ = [
    "ApplicationSettings",
    "get_settings",
    "ScreenHubException",
    "ValidationError",
    "ResourceNotFoundError",
    "ResourceConflictError",
    "StoreUnavailableError",
    "CircuitOpenError",
    "CacheOperationError",
    "ConfigurationError",
]
