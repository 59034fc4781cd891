"""
Per-endpoint circuit breaker shared by all in-flight requests.
"""

import asyncio
import time
from dataclasses import dataclass, replace
from enum import Enum
from typing import Callable, Optional

from recommender.shared.exceptions import CircuitBreakerOpenError
from recommender.shared.logging import get_logger

logger = get_logger(__name__)


class CircuitStatus(str, Enum):
    CLOSED = "CLOSED"
    OPEN = "OPEN"
    HALF_OPEN = "HALF_OPEN"


@dataclass(frozen=True)
class CircuitState:
    """Point-in-time view of a breaker."""
    status: CircuitStatus = CircuitStatus.CLOSED
    consecutive_failures: int = 0
    opened_at: Optional[float] = None


class CircuitBreaker:
    """Circuit breaker for one model endpoint.

    All transitions happen under a single lock so concurrent requests observe
    them in one total order. While HALF_OPEN exactly one caller holds the
    trial slot; everyone else is rejected until the trial reports back.
    """

    def __init__(
        self,
        endpoint: str,
        failure_threshold: int = 5,
        reset_seconds: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.endpoint = endpoint
        self.failure_threshold = failure_threshold
        self.reset_seconds = reset_seconds
        self._clock = clock
        self._state = CircuitState()
        self._trial_in_flight = False
        self._lock = asyncio.Lock()

    @property
    def state(self) -> CircuitState:
        return self._state

    async def acquire(self) -> bool:
        """Admit a call or raise CircuitBreakerOpenError.

        Returns True when the admitted call is the half-open trial.
        """
        async with self._lock:
            status = self._state.status

            if status == CircuitStatus.CLOSED:
                return False

            if status == CircuitStatus.OPEN:
                elapsed = self._clock() - (self._state.opened_at or 0.0)
                if elapsed < self.reset_seconds:
                    raise CircuitBreakerOpenError(
                        f"Circuit for {self.endpoint} is OPEN. "
                        f"Retry in {self.reset_seconds - elapsed:.1f} seconds.",
                        self.endpoint,
                    )
                self._state = replace(self._state, status=CircuitStatus.HALF_OPEN)
                logger.info(f"Circuit breaker HALF_OPEN for {self.endpoint}", extra={"endpoint": self.endpoint})

            if self._trial_in_flight:
                raise CircuitBreakerOpenError(
                    f"Circuit for {self.endpoint} is HALF_OPEN with a trial in flight",
                    self.endpoint,
                )
            self._trial_in_flight = True
            return True

    async def record_success(self, trial: bool = False):
        """Record successful operation."""
        async with self._lock:
            if trial:
                self._trial_in_flight = False
                self._state = CircuitState()
                logger.info(f"Circuit breaker CLOSED for {self.endpoint}", extra={"endpoint": self.endpoint})
            elif self._state.status == CircuitStatus.CLOSED:
                self._state = replace(self._state, consecutive_failures=0)

    async def record_failure(self, trial: bool = False):
        """Record failed operation."""
        async with self._lock:
            if trial:
                self._trial_in_flight = False
                self._open(self._state.consecutive_failures + 1)
                return

            if self._state.status != CircuitStatus.CLOSED:
                # Stale outcome from a call admitted before the circuit opened.
                return

            failures = self._state.consecutive_failures + 1
            if failures >= self.failure_threshold:
                self._open(failures)
            else:
                self._state = replace(self._state, consecutive_failures=failures)

    def release_trial(self):
        """Give back an abandoned trial slot without recording an outcome.

        Synchronous so cancellation handlers can call it without awaiting.
        """
        self._trial_in_flight = False

    def _open(self, failures: int):
        self._state = CircuitState(
            status=CircuitStatus.OPEN,
            consecutive_failures=failures,
            opened_at=self._clock(),
        )
        logger.warning(
            f"Circuit breaker OPEN for {self.endpoint} after {failures} failures",
            extra={"endpoint": self.endpoint},
        )
