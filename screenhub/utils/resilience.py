"""
Resilience helpers: circuit breaker and retry with exponential backoff.
"""

import asyncio
from enum import Enum
from typing import Any, Awaitable, Callable, TypeVar

import structlog

from ..core.exceptions import CircuitOpenError
from .clock import Clock, system_clock

logger = structlog.get_logger(__name__)

T = TypeVar("T")


class CircuitState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitBreaker:
    """
    Consecutive-failure circuit breaker.

    Opens after ``failure_threshold`` consecutive failures and rejects calls
    with CircuitOpenError until ``reset_timeout`` has elapsed, then lets a
    single trial call through (half-open). A successful trial closes the
    circuit; a failed one reopens it.
    """

    def __init__(
        self,
        service_name: str,
        failure_threshold: int = 5,
        reset_timeout: float = 30.0,
        clock: Clock = system_clock,
    ):
        self.service_name = service_name
        self.failure_threshold = failure_threshold
        self.reset_timeout = reset_timeout
        self.clock = clock
        self.state = CircuitState.CLOSED
        self.failures = 0
        self.opened_at: float | None = None
        self.total_rejections = 0

    def _before_call(self) -> None:
        if self.state is CircuitState.OPEN:
            elapsed = self.clock.monotonic() - (self.opened_at or 0.0)
            if elapsed < self.reset_timeout:
                self.total_rejections += 1
                raise CircuitOpenError(self.service_name, self.reset_timeout - elapsed)
            self.state = CircuitState.HALF_OPEN
            logger.info("circuit_half_open", service=self.service_name)

    def record_success(self) -> None:
        if self.state is not CircuitState.CLOSED:
            logger.info("circuit_closed", service=self.service_name)
        self.state = CircuitState.CLOSED
        self.failures = 0
        self.opened_at = None

    def record_failure(self) -> None:
        self.failures += 1
        if self.state is CircuitState.HALF_OPEN or self.failures >= self.failure_threshold:
            if self.state is not CircuitState.OPEN:
                logger.warning(
                    "circuit_opened", service=self.service_name, failures=self.failures
                )
            self.state = CircuitState.OPEN
            self.opened_at = self.clock.monotonic()

    async def call(self, operation: Callable[[], Awaitable[T]]) -> T:
        """Run ``operation`` through the breaker."""
        self._before_call()
        try:
            result = await operation()
        except Exception:
            self.record_failure()
            raise
        self.record_success()
        return result

    def get_status(self) -> dict[str, Any]:
        return {
            "service": self.service_name,
            "state": self.state.value,
            "failures": self.failures,
            "failure_threshold": self.failure_threshold,
            "reset_timeout_seconds": self.reset_timeout,
            "total_rejections": self.total_rejections,
        }


async def retry_async(
    operation: Callable[[], Awaitable[T]],
    max_retries: int = 3,
    base_delay: float = 1.0,
    max_delay: float = 10.0,
    retry_on: tuple[type[BaseException], ...] = (Exception,),
    no_retry_on: tuple[type[BaseException], ...] = (CircuitOpenError,),
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
) -> T:
    """
    Run ``operation`` with exponential backoff.

    The delay before retry ``n`` is ``min(base_delay * 2**n, max_delay)``.
    Exceptions in ``no_retry_on`` propagate immediately.
    """
    attempt = 0
    while True:
        try:
            return await operation()
        except no_retry_on:
            raise
        except retry_on as e:
            if attempt >= max_retries:
                raise
            delay = min(base_delay * (2**attempt), max_delay)
            logger.warning(
                "operation_retry",
                attempt=attempt + 1,
                max_attempts=max_retries + 1,
                delay_seconds=delay,
                error=str(e),
            )
            await sleep(delay)
            attempt += 1
