"""
Circuit breaker for the payment provider.

Fails fast while the provider is down instead of stacking up slow requests
behind the booking screen. Only network exceptions count as failures; a 4xx
answer means the provider is up.

Usage:
    from agenda.utils.circuit_breaker import payment_provider_breaker

    @payment_provider_breaker
    async def call_provider():
        ...
"""
import asyncio
import logging
import time
from enum import Enum
from functools import wraps
from typing import Callable, Tuple, Type

import httpx

logger = logging.getLogger(__name__)


class CircuitState(Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


NETWORK_EXCEPTIONS: Tuple[Type[Exception], ...] = (
    httpx.TimeoutException,
    httpx.ConnectError,
    httpx.ReadError,
    httpx.WriteError,
    httpx.RemoteProtocolError,
    ConnectionError,
    TimeoutError,
)


class CircuitBreakerOpen(Exception):
    """Raised when circuit breaker is open and request is rejected."""


class CircuitBreaker:
    """Async circuit breaker usable as a decorator."""

    def __init__(
        self,
        name: str,
        failure_threshold: int = 5,
        recovery_timeout: float = 60.0,
        expected_exceptions: Tuple[Type[Exception], ...] = NETWORK_EXCEPTIONS,
    ):
        self.name = name
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout
        self.expected_exceptions = expected_exceptions

        self._state = CircuitState.CLOSED
        self._failure_count = 0
        self._last_failure_time: float | None = None
        self._lock = asyncio.Lock()
        # HALF_OPEN lets exactly one trial request through
        self._trial_in_flight = False

    @property
    def state(self) -> CircuitState:
        return self._state

    @property
    def failure_count(self) -> int:
        return self._failure_count

    async def _should_allow_request(self) -> bool:
        if self._state == CircuitState.CLOSED:
            return True

        if self._state == CircuitState.OPEN:
            if self._last_failure_time is None:
                return False
            if time.time() - self._last_failure_time < self.recovery_timeout:
                return False
            async with self._lock:
                self._state = CircuitState.HALF_OPEN
                self._trial_in_flight = False
                logger.info(f"Circuit {self.name}: OPEN -> HALF_OPEN")

        async with self._lock:
            if self._trial_in_flight:
                return False
            self._trial_in_flight = True
            return True

    async def _on_success(self):
        async with self._lock:
            if self._state == CircuitState.HALF_OPEN:
                logger.info(f"Circuit {self.name}: HALF_OPEN -> CLOSED (recovered)")
            self._state = CircuitState.CLOSED
            self._failure_count = 0
            self._trial_in_flight = False

    async def _on_failure(self, error: Exception):
        async with self._lock:
            self._failure_count += 1
            self._last_failure_time = time.time()
            self._trial_in_flight = False

            if self._state == CircuitState.HALF_OPEN:
                self._state = CircuitState.OPEN
                logger.warning(f"Circuit {self.name}: HALF_OPEN -> OPEN ({error!r})")
            elif self._failure_count >= self.failure_threshold:
                self._state = CircuitState.OPEN
                logger.error(
                    f"Circuit {self.name}: CLOSED -> OPEN "
                    f"(threshold {self.failure_threshold} reached)"
                )

    def __call__(self, func: Callable) -> Callable:
        @wraps(func)
        async def wrapper(*args, **kwargs):
            if not await self._should_allow_request():
                raise CircuitBreakerOpen(f"Circuit {self.name} is OPEN - failing fast")

            try:
                result = await func(*args, **kwargs)
            except self.expected_exceptions as e:
                await self._on_failure(e)
                raise
            except BaseException:
                # Non-network errors do not count, but the trial slot is released
                async with self._lock:
                    self._trial_in_flight = False
                raise
            await self._on_success()
            return result

        return wrapper

    def reset(self):
        """Reset circuit breaker state (for testing)."""
        self._state = CircuitState.CLOSED
        self._failure_count = 0
        self._last_failure_time = None
        self._trial_in_flight = False


payment_provider_breaker = CircuitBreaker(
    "payment_provider",
    failure_threshold=5,
    recovery_timeout=30.0,
    expected_exceptions=NETWORK_EXCEPTIONS,
)


def get_circuit_stats() -> dict:
    """Get stats for all circuit breakers (for monitoring)."""
    return {
        "payment_provider": {
            "state": payment_provider_breaker.state.value,
            "failures": payment_provider_breaker.failure_count,
        },
    }
