"""
Circuit breaker for calls into backing services.

The permission service wraps every entity store call in one breaker so a
failing store is shed quickly instead of stacking up timeouts. State is
kept per breaker instance and is not shared across processes.
"""

import time
from enum import Enum
from typing import Dict, Any, Callable, Awaitable, Tuple, Type, Union

from shared.errors import StoreUnavailableError
from shared.logging import get_logger


class CircuitBreakerState(Enum):
    """Circuit breaker states."""
    CLOSED = "closed"      # Normal operation
    OPEN = "open"          # Failing, requests blocked
    HALF_OPEN = "half_open"  # One probe allowed through


class CircuitBreakerOpenException(StoreUnavailableError):
    """Raised instead of calling through while the breaker is open."""

    def __init__(self, name: str, retry_in: float):
        super().__init__(
            f"Circuit breaker '{name}' is OPEN - blocking call",
            {"circuit_breaker": name, "retry_in_seconds": round(retry_in, 3)},
            code="CIRCUIT_OPEN"
        )


class CircuitBreaker:
    """Consecutive-failure circuit breaker.

    Only exceptions matching ``expected_exception`` count as failures;
    anything else propagates without touching the breaker state. A single
    failed probe in HALF_OPEN reopens the breaker.
    """

    def __init__(self,
                 failure_threshold: int = 5,
                 recovery_timeout: float = 60.0,
                 expected_exception: Union[Type[BaseException], Tuple[Type[BaseException], ...]] = Exception,
                 name: str = "default",
                 clock: Callable[[], float] = time.monotonic):
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout
        self.expected_exception = expected_exception
        self.name = name
        self.logger = get_logger(f"circuit_breaker.{name}")
        self._clock = clock

        self._state = CircuitBreakerState.CLOSED
        self._consecutive_failures = 0
        self._opened_at = 0.0
        self._trips = 0

    @property
    def state(self) -> CircuitBreakerState:
        return self._state

    def _retry_in(self) -> float:
        return max(0.0, self.recovery_timeout - (self._clock() - self._opened_at))

    def _admit(self) -> bool:
        """Whether the next call may go through, moving OPEN to HALF_OPEN when due."""
        if self._state != CircuitBreakerState.OPEN:
            return True
        if self._retry_in() > 0:
            return False
        self._state = CircuitBreakerState.HALF_OPEN
        self.logger.info("Circuit breaker half-open, probing", breaker=self.name)
        return True

    async def call(self, func: Callable[..., Awaitable[Any]], *args, **kwargs) -> Any:
        """Execute ``func`` under breaker protection."""
        if not self._admit():
            raise CircuitBreakerOpenException(self.name, self._retry_in())

        try:
            result = await func(*args, **kwargs)
        except self.expected_exception:
            self._on_failure()
            raise

        self._on_success()
        return result

    def _on_success(self):
        if self._state == CircuitBreakerState.HALF_OPEN:
            self._state = CircuitBreakerState.CLOSED
            self.logger.info("Circuit breaker closed after successful probe", breaker=self.name)
        self._consecutive_failures = 0

    def _on_failure(self):
        self._consecutive_failures += 1
        if self._state == CircuitBreakerState.HALF_OPEN or self._consecutive_failures >= self.failure_threshold:
            self._state = CircuitBreakerState.OPEN
            self._opened_at = self._clock()
            self._trips += 1
            self.logger.warning(
                "Circuit breaker opened",
                breaker=self.name,
                consecutive_failures=self._consecutive_failures,
                threshold=self.failure_threshold
            )

    def get_state(self) -> Dict[str, Any]:
        """Snapshot for health reporting."""
        return {
            "name": self.name,
            "state": self._state.value,
            "consecutive_failures": self._consecutive_failures,
            "failure_threshold": self.failure_threshold,
            "recovery_timeout": self.recovery_timeout,
            "trips": self._trips
        }

    def is_open(self) -> bool:
        """Check if circuit breaker is in OPEN state."""
        return self._state == CircuitBreakerState.OPEN
