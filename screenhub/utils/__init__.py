"""
Screen Configuration Hub - Utilities Package

Template resolution, structural diffs, tiered caching, resilience helpers
and time sources shared by the services.
"""

from .cache_manager import TieredCacheManager
from .clock import Clock, FrozenClock, system_clock
from .diff_generator import DiffGenerator
from .resilience import CircuitBreaker, CircuitState, retry_async
from .template_resolver import FilterRegistry, ProviderRegistry, VariableResolver

__all__ = [
    "CircuitBreaker",
    "CircuitState",
    "Clock",
    "DiffGenerator",
    "FilterRegistry",
    "FrozenClock",
    "ProviderRegistry",
    "TieredCacheManager",
    "VariableResolver",
    "retry_async",
    "system_clock",
]
