"""
Circuit Breaker

Guards the payment gateways: after repeated outages calls are refused
locally for a while instead of piling up on a dead provider.
"""
import asyncio
import threading
import time
from dataclasses import dataclass
from enum import Enum
from typing import Awaitable, Callable, ParamSpec, TypeVar

from freight.core.exceptions import AppException, CircuitBreakerOpenError
from freight.core.logging import get_logger

logger = get_logger(__name__)

P = ParamSpec("P")
T = TypeVar("T")


class CircuitState(Enum):
    CLOSED = "closed"        # calls pass through
    OPEN = "open"            # calls refused
    HALF_OPEN = "half_open"  # probing recovery


@dataclass
class CircuitBreakerConfig:
    failure_threshold: int = 5
    success_threshold: int = 2
    timeout_seconds: float = 30.0
    half_open_max_calls: int = 3


def _counts_as_failure(error: Exception) -> bool:
    """Business declines are answers, not outages"""
    if isinstance(error, AppException):
        return error.retryable
    return True


class CircuitBreaker:
    """One breaker per external service, shared process-wide"""

    _instances: dict[str, "CircuitBreaker"] = {}
    _instances_lock = threading.Lock()

    def __init__(self, service_name: str, config: CircuitBreakerConfig | None = None):
        self.service_name = service_name
        self.config = config or CircuitBreakerConfig()
        self._state = CircuitState.CLOSED
        self._failures = 0
        self._successes = 0
        self._half_open_calls = 0
        self._opened_at = 0.0
        # threading.Lock ולא asyncio.Lock: Celery יוצר event loop חדש לכל task
        self._lock = threading.Lock()

    @classmethod
    def get_instance(cls, service_name: str, config: CircuitBreakerConfig | None = None) -> "CircuitBreaker":
        if service_name not in cls._instances:
            with cls._instances_lock:
                if service_name not in cls._instances:
                    cls._instances[service_name] = cls(service_name, config)
        return cls._instances[service_name]

    @classmethod
    def reset_all(cls) -> None:
        """Drop every breaker (tests)"""
        with cls._instances_lock:
            cls._instances.clear()

    @property
    def state(self) -> CircuitState:
        return self._state

    @property
    def is_closed(self) -> bool:
        return self._state == CircuitState.CLOSED

    @property
    def is_open(self) -> bool:
        return self._state == CircuitState.OPEN

    @property
    def is_half_open(self) -> bool:
        return self._state == CircuitState.HALF_OPEN

    def _move_to(self, new_state: CircuitState) -> None:
        old_state = self._state
        self._state = new_state
        if new_state == CircuitState.OPEN:
            self._opened_at = time.monotonic()
        self._successes = 0
        self._half_open_calls = 0
        if new_state == CircuitState.CLOSED:
            self._failures = 0
        logger.info(
            f"Circuit breaker '{self.service_name}' transitioned",
            extra_data={"service": self.service_name, "old_state": old_state.value, "new_state": new_state.value}
        )

    def get_retry_after(self) -> float:
        if self._state != CircuitState.OPEN:
            return 0.0
        return max(0.0, self.config.timeout_seconds - (time.monotonic() - self._opened_at))

    def can_execute(self) -> bool:
        with self._lock:
            if self._state == CircuitState.OPEN:
                if self.get_retry_after() > 0:
                    return False
                self._move_to(CircuitState.HALF_OPEN)
            if self._state == CircuitState.HALF_OPEN:
                if self._half_open_calls >= self.config.half_open_max_calls:
                    return False
                self._half_open_calls += 1
            return True

    def record_success(self) -> None:
        with self._lock:
            if self._state == CircuitState.HALF_OPEN:
                self._successes += 1
                if self._successes >= self.config.success_threshold:
                    self._move_to(CircuitState.CLOSED)
            else:
                self._failures = 0

    def record_failure(self, error: Exception | None = None) -> None:
        with self._lock:
            self._failures += 1
            logger.warning(
                f"Circuit breaker '{self.service_name}' recorded failure",
                extra_data={
                    "service": self.service_name,
                    "failure_count": self._failures,
                    "threshold": self.config.failure_threshold,
                    "error": str(error) if error else None,
                }
            )
            if self._state == CircuitState.HALF_OPEN or self._failures >= self.config.failure_threshold:
                self._move_to(CircuitState.OPEN)

    async def execute(self, func: Callable[P, Awaitable[T]], *args: P.args, **kwargs: P.kwargs) -> T:
        """
        Run ``func`` under the breaker.

        Raises:
            CircuitBreakerOpenError: if the circuit is open
        """
        if not self.can_execute():
            raise CircuitBreakerOpenError(self.service_name, self.get_retry_after())
        try:
            result = func(*args, **kwargs)
            if asyncio.iscoroutine(result):
                result = await result
        except Exception as e:
            if _counts_as_failure(e):
                self.record_failure(e)
            else:
                self.record_success()
            raise
        self.record_success()
        return result


def get_gateway_circuit_breaker(gateway_name: str) -> CircuitBreaker:
    """Breaker for one payment gateway"""
    return CircuitBreaker.get_instance(
        f"gateway:{gateway_name}",
        CircuitBreakerConfig(failure_threshold=5, success_threshold=2, timeout_seconds=60.0),
    )
