"""
Per-server circuit breakers.

A server that keeps refusing connections or timing out is taken out of
rotation for a recovery period instead of having every incident on it burn
its retry budget. States: CLOSED (normal), OPEN (calls fail fast),
HALF_OPEN (trial calls allowed after the recovery timeout).
"""
import logging
import time
from enum import Enum
from typing import Callable, Dict, Optional

from ..config import Settings
from ..exceptions import CircuitOpen, CommandTimeout, PoolExhausted, RemoteConnectionError

logger = logging.getLogger("healer-core.execution.circuit")


class CircuitState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


def counts_as_failure(error: BaseException) -> bool:
    """Connection loss and timeouts trip the breaker; pool pressure and rejected credentials do not."""
    if isinstance(error, (PoolExhausted, CircuitOpen)):
        return False
    return isinstance(error, (RemoteConnectionError, CommandTimeout)) and error.retryable


class CircuitBreaker:
    def __init__(
        self,
        name: str,
        failure_threshold: int = 5,
        success_threshold: int = 1,
        recovery_timeout: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.name = name
        self.failure_threshold = failure_threshold
        self.success_threshold = success_threshold
        self.recovery_timeout = recovery_timeout
        self._clock = clock
        self._state = CircuitState.CLOSED
        self._failures = 0
        self._successes = 0
        self._opened_at: Optional[float] = None

    @property
    def state(self) -> CircuitState:
        return self._state

    @property
    def failure_count(self) -> int:
        return self._failures

    def before_call(self):
        """Raise CircuitOpen while the breaker is open and still cooling down."""
        if self._state != CircuitState.OPEN:
            return
        elapsed = self._clock() - (self._opened_at or 0.0)
        if elapsed >= self.recovery_timeout:
            self._state = CircuitState.HALF_OPEN
            self._successes = 0
            logger.info(f"Circuit '{self.name}': HALF_OPEN (testing recovery)")
            return
        retry_after = self.recovery_timeout - elapsed
        raise CircuitOpen(
            f"Calls to server {self.name} suspended after {self._failures} consecutive failures; "
            f"retry in {retry_after:.0f}s",
            server_id=self.name,
            retry_after=retry_after,
        )

    def record_success(self):
        self._failures = 0
        if self._state == CircuitState.HALF_OPEN:
            self._successes += 1
            if self._successes >= self.success_threshold:
                self._state = CircuitState.CLOSED
                self._successes = 0
                logger.info(f"Circuit '{self.name}': CLOSED (recovered)")

    def record_failure(self, error: BaseException):
        self._failures += 1
        if self._state == CircuitState.HALF_OPEN:
            self._open()
            logger.warning(f"Circuit '{self.name}': OPEN (recovery failed: {type(error).__name__})")
        elif self._state == CircuitState.CLOSED and self._failures >= self.failure_threshold:
            self._open()
            logger.error(
                f"Circuit '{self.name}': OPEN after {self._failures} failures "
                f"(last: {type(error).__name__})"
            )
        else:
            logger.warning(f"Circuit '{self.name}': failure {self._failures}/{self.failure_threshold}")

    def _open(self):
        self._state = CircuitState.OPEN
        self._opened_at = self._clock()
        self._successes = 0

    def reset(self):
        self._state = CircuitState.CLOSED
        self._failures = 0
        self._successes = 0
        self._opened_at = None
        logger.info(f"Circuit '{self.name}': manually reset to CLOSED")

    def stats(self) -> dict:
        return {
            "name": self.name,
            "state": self._state.value,
            "failures": self._failures,
            "failure_threshold": self.failure_threshold,
            "recovery_timeout": self.recovery_timeout,
        }


class CircuitBreakerRegistry:
    """One breaker per server id, created on first use."""

    def __init__(
        self,
        failure_threshold: int = 5,
        success_threshold: int = 1,
        recovery_timeout: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._failure_threshold = failure_threshold
        self._success_threshold = success_threshold
        self._recovery_timeout = recovery_timeout
        self._clock = clock
        self._breakers: Dict[str, CircuitBreaker] = {}

    @classmethod
    def from_settings(cls, settings: Settings, clock: Callable[[], float] = time.monotonic) -> "CircuitBreakerRegistry":
        return cls(
            failure_threshold=settings.CIRCUIT_FAILURE_THRESHOLD,
            success_threshold=settings.CIRCUIT_SUCCESS_THRESHOLD,
            recovery_timeout=settings.CIRCUIT_RECOVERY_TIMEOUT,
            clock=clock,
        )

    def get(self, server_id: str) -> CircuitBreaker:
        breaker = self._breakers.get(server_id)
        if breaker is None:
            breaker = CircuitBreaker(
                server_id,
                failure_threshold=self._failure_threshold,
                success_threshold=self._success_threshold,
                recovery_timeout=self._recovery_timeout,
                clock=self._clock,
            )
            self._breakers[server_id] = breaker
        return breaker

    def stats(self) -> Dict[str, dict]:
        return {server_id: breaker.stats() for server_id, breaker in self._breakers.items()}
