"""
Circuit Breaker

Guards outbound calls to the payment gateway and the notifier so a provider
outage fails fast instead of stacking up timeouts on every callback.
"""
import asyncio
import threading
import time
from dataclasses import dataclass
from enum import Enum
from typing import Awaitable, Callable, TypeVar

from citizen_ledger.core.exceptions import CircuitBreakerOpenError
from citizen_ledger.core.logging import get_logger

logger = get_logger(__name__)

T = TypeVar("T")

GATEWAY_SERVICE = "payment_gateway"
NOTIFIER_SERVICE = "notifier"


class CircuitState(Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


@dataclass
class CircuitBreakerConfig:
    failure_threshold: int = 5
    success_threshold: int = 2
    timeout_seconds: float = 30.0
    half_open_max_calls: int = 3


@dataclass
class _Counters:
    failures: int = 0
    successes: int = 0
    half_open_calls: int = 0
    opened_at: float = 0.0


class CircuitBreaker:
    """
    Per-service breaker shared process-wide.

    CLOSED counts consecutive failures; reaching the threshold opens the
    circuit. After ``timeout_seconds`` a limited number of trial calls are let
    through (HALF_OPEN); enough successes close it again, any failure reopens it.
    """

    _registry: dict[str, "CircuitBreaker"] = {}
    _registry_lock = threading.Lock()

    def __init__(self, service_name: str, config: CircuitBreakerConfig | None = None):
        self.service_name = service_name
        self.config = config or CircuitBreakerConfig()
        self._state = CircuitState.CLOSED
        self._counters = _Counters()
        # threading.Lock: Celery tasks run each coroutine on its own event loop
        self._lock = threading.Lock()

    @classmethod
    def get_instance(
        cls,
        service_name: str,
        config: CircuitBreakerConfig | None = None
    ) -> "CircuitBreaker":
        with cls._registry_lock:
            breaker = cls._registry.get(service_name)
            if breaker is None:
                breaker = cls(service_name, config)
                cls._registry[service_name] = breaker
            return breaker

    @classmethod
    def reset_all(cls) -> None:
        """Forget every breaker (tests)."""
        with cls._registry_lock:
            cls._registry.clear()

    @property
    def state(self) -> CircuitState:
        return self._state

    @property
    def is_open(self) -> bool:
        return self._state == CircuitState.OPEN

    def _set_state(self, new_state: CircuitState) -> None:
        old_state = self._state
        self._state = new_state
        if new_state == CircuitState.OPEN:
            self._counters.opened_at = time.monotonic()
        elif new_state == CircuitState.HALF_OPEN:
            self._counters.half_open_calls = 0
            self._counters.successes = 0
        else:
            self._counters = _Counters()

        logger.info(
            f"Circuit breaker '{self.service_name}' {old_state.value} -> {new_state.value}",
            extra_data={
                "service": self.service_name,
                "old_state": old_state.value,
                "new_state": new_state.value,
            }
        )

    def _allow_request(self) -> bool:
        with self._lock:
            if self._state == CircuitState.OPEN:
                if time.monotonic() - self._counters.opened_at < self.config.timeout_seconds:
                    return False
                self._set_state(CircuitState.HALF_OPEN)

            if self._state == CircuitState.HALF_OPEN:
                if self._counters.half_open_calls >= self.config.half_open_max_calls:
                    return False
                self._counters.half_open_calls += 1
            return True

    def _on_success(self) -> None:
        with self._lock:
            if self._state == CircuitState.HALF_OPEN:
                self._counters.successes += 1
                if self._counters.successes >= self.config.success_threshold:
                    self._set_state(CircuitState.CLOSED)
            else:
                self._counters.failures = 0

    def _on_failure(self, error: Exception) -> None:
        with self._lock:
            self._counters.failures += 1
            logger.warning(
                f"Circuit breaker '{self.service_name}' recorded failure",
                extra_data={
                    "service": self.service_name,
                    "failure_count": self._counters.failures,
                    "threshold": self.config.failure_threshold,
                    "error": str(error),
                }
            )
            if (
                self._state == CircuitState.HALF_OPEN
                or self._counters.failures >= self.config.failure_threshold
            ):
                self._set_state(CircuitState.OPEN)

    def retry_after(self) -> float:
        if self._state != CircuitState.OPEN:
            return 0.0
        elapsed = time.monotonic() - self._counters.opened_at
        return max(0.0, self.config.timeout_seconds - elapsed)

    async def execute(
        self,
        func: Callable[..., Awaitable[T]],
        *args,
        **kwargs
    ) -> T:
        """
        Await ``func(*args, **kwargs)`` under breaker protection.

        Raises:
            CircuitBreakerOpenError: the circuit is open; ``func`` is not called
        """
        if not self._allow_request():
            raise CircuitBreakerOpenError(self.service_name, self.retry_after())

        try:
            result = func(*args, **kwargs)
            if asyncio.iscoroutine(result):
                result = await result
        except Exception as e:
            self._on_failure(e)
            raise

        self._on_success()
        return result


def get_gateway_circuit_breaker() -> CircuitBreaker:
    """Breaker for payment gateway session/validation calls"""
    return CircuitBreaker.get_instance(
        GATEWAY_SERVICE,
        CircuitBreakerConfig(failure_threshold=5, success_threshold=2, timeout_seconds=60.0)
    )


def get_notifier_circuit_breaker() -> CircuitBreaker:
    """Breaker for the notification webhook"""
    return CircuitBreaker.get_instance(
        NOTIFIER_SERVICE,
        CircuitBreakerConfig(failure_threshold=5, success_threshold=2, timeout_seconds=30.0)
    )
