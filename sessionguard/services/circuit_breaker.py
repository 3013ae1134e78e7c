"""
Circuit breaker for outbound provider calls.
Lets a failing dependency (the geolocation provider) be skipped quickly
instead of paying its timeout on every request.
"""
import time
import logging
import asyncio
from enum import Enum
from typing import Dict, Callable, Any, Optional, TypeVar, Awaitable
from dataclasses import dataclass

logger = logging.getLogger(__name__)

T = TypeVar("T")


class CircuitState(str, Enum):
    """Circuit breaker states."""
    CLOSED = "closed"  # Normal operation
    OPEN = "open"  # Failing, rejecting requests
    HALF_OPEN = "half_open"  # Testing if service recovered


@dataclass
class CircuitStats:
    """Statistics for a circuit breaker."""
    total_calls: int = 0
    successful_calls: int = 0
    failed_calls: int = 0
    rejected_calls: int = 0
    consecutive_failures: int = 0
    half_open_successes: int = 0
    last_failure_time: Optional[float] = None
    last_success_time: Optional[float] = None
    open_since: Optional[float] = None
    state_changes: int = 0


@dataclass
class CircuitBreakerConfig:
    """Configuration for a circuit breaker."""
    failure_threshold: int = 5  # Failures before opening
    success_threshold: int = 1  # Successes in half-open before closing
    timeout_seconds: float = 60.0  # Time before trying half-open
    half_open_max_calls: int = 1  # Max concurrent trial calls in half-open
    excluded_exceptions: tuple = ()  # Exceptions that don't count as failures


class CircuitOpenError(Exception):
    """Raised when circuit is open and call is rejected."""

    def __init__(self, circuit_name: str, retry_after: float):
        self.circuit_name = circuit_name
        self.retry_after = retry_after
        super().__init__(f"Circuit '{circuit_name}' is open. Retry after {retry_after:.1f}s")


class CircuitBreaker:
    """
    Circuit Breaker for resilient service calls.

    States:
    - CLOSED: Normal operation, failures are counted
    - OPEN: Service is failing, all calls rejected immediately
    - HALF_OPEN: Testing recovery, limited calls allowed

    Usage:
        cb = CircuitBreaker("geolocation")
        payload = await cb.call(fetch_location, ip)
    """

    def __init__(
        self,
        name: str,
        config: Optional[CircuitBreakerConfig] = None,
        time_func: Callable[[], float] = time.monotonic,
    ):
        self.name = name
        self.config = config or CircuitBreakerConfig()
        self._time = time_func

        self._state = CircuitState.CLOSED
        self._stats = CircuitStats()
        self._lock = asyncio.Lock()
        self._half_open_calls = 0

    @property
    def state(self) -> CircuitState:
        """Get current circuit state."""
        return self._state

    @property
    def stats(self) -> CircuitStats:
        return self._stats

    @property
    def is_closed(self) -> bool:
        return self._state == CircuitState.CLOSED

    def _transition_to_open(self) -> None:
        self._state = CircuitState.OPEN
        self._stats.open_since = self._time()
        self._stats.state_changes += 1
        logger.warning(
            f"Circuit '{self.name}' opened after "
            f"{self._stats.consecutive_failures} consecutive failures"
        )

    def _transition_to_half_open(self) -> None:
        self._state = CircuitState.HALF_OPEN
        self._half_open_calls = 0
        self._stats.half_open_successes = 0
        self._stats.state_changes += 1
        logger.info(f"Circuit '{self.name}' transitioning to half-open")

    def _transition_to_closed(self) -> None:
        self._state = CircuitState.CLOSED
        self._stats.consecutive_failures = 0
        self._stats.open_since = None
        self._half_open_calls = 0
        self._stats.state_changes += 1
        logger.info(f"Circuit '{self.name}' closed (service recovered)")

    def _record_success(self) -> None:
        self._stats.total_calls += 1
        self._stats.successful_calls += 1
        self._stats.last_success_time = self._time()
        self._stats.consecutive_failures = 0

        if self._state == CircuitState.HALF_OPEN:
            self._half_open_calls = max(0, self._half_open_calls - 1)
            self._stats.half_open_successes += 1
            if self._stats.half_open_successes >= self.config.success_threshold:
                self._transition_to_closed()

    def _record_failure(self) -> None:
        self._stats.total_calls += 1
        self._stats.failed_calls += 1
        self._stats.consecutive_failures += 1
        self._stats.last_failure_time = self._time()

        if self._state == CircuitState.HALF_OPEN:
            # Any failure in half-open reopens the circuit
            self._transition_to_open()
        elif self._state == CircuitState.CLOSED:
            if self._stats.consecutive_failures >= self.config.failure_threshold:
                self._transition_to_open()

    def _should_allow_call(self) -> bool:
        if self._state == CircuitState.CLOSED:
            return True

        if self._state == CircuitState.OPEN:
            if self._stats.open_since is not None:
                elapsed = self._time() - self._stats.open_since
                if elapsed >= self.config.timeout_seconds:
                    self._transition_to_half_open()
                    return True
            return False

        # HALF_OPEN
        return self._half_open_calls < self.config.half_open_max_calls

    def _get_retry_after(self) -> float:
        if self._stats.open_since is not None:
            elapsed = self._time() - self._stats.open_since
            return max(0.0, self.config.timeout_seconds - elapsed)
        return 0.0

    async def call(
        self,
        func: Callable[..., Awaitable[T]],
        *args: Any,
        **kwargs: Any,
    ) -> T:
        """
        Execute a function through the circuit breaker.

        Raises:
            CircuitOpenError: If circuit is open
        """
        async with self._lock:
            if not self._should_allow_call():
                self._stats.rejected_calls += 1
                raise CircuitOpenError(self.name, self._get_retry_after())

            if self._state == CircuitState.HALF_OPEN:
                self._half_open_calls += 1

        try:
            result = await func(*args, **kwargs)
        except self.config.excluded_exceptions:
            raise
        except Exception:
            self._record_failure()
            raise

        self._record_success()
        return result

    def reset(self) -> None:
        """Reset the circuit breaker to initial state."""
        self._state = CircuitState.CLOSED
        self._stats = CircuitStats()
        self._half_open_calls = 0
        logger.info(f"Circuit '{self.name}' reset")

    def get_status(self) -> Dict[str, Any]:
        """Get detailed circuit status."""
        return {
            "name": self.name,
            "state": self._state.value,
            "stats": {
                "total_calls": self._stats.total_calls,
                "successful_calls": self._stats.successful_calls,
                "failed_calls": self._stats.failed_calls,
                "rejected_calls": self._stats.rejected_calls,
                "consecutive_failures": self._stats.consecutive_failures,
                "state_changes": self._stats.state_changes,
            },
            "retry_after": self._get_retry_after() if self._state == CircuitState.OPEN else None,
        }
