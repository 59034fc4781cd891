"""
Model client: uniform call interface to inference endpoints with
deadline, retry and circuit-breaker policy per endpoint.
"""

import asyncio
import random
import time
from typing import Any, Callable, Dict, Iterable, Optional, Type, Union

from pydantic import BaseModel, ValidationError

from recommender.inference.breaker import CircuitBreaker, CircuitState
from recommender.inference.schemas import ENDPOINTS
from recommender.inference.transport import InferenceTransport
from recommender.shared.config import InferenceConfig, settings
from recommender.shared.exceptions import (
    InferenceError,
    InferenceTimeoutError,
    InvalidResponseError,
)
from recommender.shared.logging import get_logger

logger = get_logger(__name__)


class ModelClient:
    """Calls inference endpoints through a transport."""

    def __init__(
        self,
        transport: InferenceTransport,
        config: Optional[InferenceConfig] = None,
        endpoints: Iterable[str] = ENDPOINTS,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Any] = asyncio.sleep,
        rng: Optional[random.Random] = None,
    ):
        self.transport = transport
        self.config = config or settings.inference
        self._clock = clock
        self._sleep = sleep
        self._rng = rng or random.Random()
        self._breakers: Dict[str, CircuitBreaker] = {}
        for endpoint in endpoints:
            self.breaker(endpoint)

    def breaker(self, endpoint: str) -> CircuitBreaker:
        """Get or create the breaker for an endpoint."""
        if endpoint not in self._breakers:
            self._breakers[endpoint] = CircuitBreaker(
                endpoint,
                failure_threshold=self.config.circuit_failure_threshold,
                reset_seconds=self.config.circuit_cooldown_seconds,
                clock=self._clock,
            )
        return self._breakers[endpoint]

    def circuit_snapshot(self) -> Dict[str, CircuitState]:
        return {name: b.state for name, b in self._breakers.items()}

    def backoff_seconds(self, attempt: int) -> float:
        """Exponential backoff before the attempt after `attempt`, with jitter in [0, backoff)."""
        backoff = min(
            self.config.backoff_base_seconds * (2 ** (attempt - 1)),
            self.config.backoff_max_seconds,
        )
        return backoff + self._rng.uniform(0, backoff)

    async def invoke(
        self,
        endpoint: str,
        payload: Dict[str, Any],
        timeout_ms: float,
        response_model: Optional[Type[BaseModel]] = None,
    ) -> Union[Dict[str, Any], BaseModel]:
        """
        Call an endpoint.

        Args:
            endpoint: Endpoint name
            payload: JSON-like request body
            timeout_ms: Budget for the whole call, retries and backoff included
            response_model: Optional pydantic model the answer must satisfy

        Returns:
            The raw answer, or the validated model when response_model is given

        Raises:
            InferenceTimeoutError, EndpointUnavailableError,
            InvalidResponseError, CircuitBreakerOpenError
        """
        budget_end = self._clock() + timeout_ms / 1000.0
        breaker = self.breaker(endpoint)
        last_error: Optional[InferenceError] = None

        for attempt in range(1, self.config.max_attempts + 1):
            remaining = budget_end - self._clock()
            if remaining <= 0:
                raise last_error or InferenceTimeoutError(
                    f"No time left to call {endpoint}", endpoint
                )

            trial = await breaker.acquire()
            try:
                result = await self._attempt(endpoint, payload, remaining, response_model)
            except asyncio.CancelledError:
                if trial:
                    breaker.release_trial()
                raise
            except InferenceError as e:
                await breaker.record_failure(trial)
                last_error = e
                if not e.transient or attempt == self.config.max_attempts:
                    raise
                backoff = self.backoff_seconds(attempt)
                if self._clock() + backoff >= budget_end:
                    raise
                logger.info(
                    f"Retrying {endpoint} after {e.reason} (attempt {attempt}, backoff {backoff:.2f}s)",
                    extra={"endpoint": endpoint},
                )
                await self._sleep(backoff)
                continue

            await breaker.record_success(trial)
            return result

        # Unreachable: the loop either returns or raises.
        raise last_error or InferenceTimeoutError(f"No attempts made for {endpoint}", endpoint)

    async def _attempt(
        self,
        endpoint: str,
        payload: Dict[str, Any],
        timeout_seconds: float,
        response_model: Optional[Type[BaseModel]],
    ):
        try:
            raw = await asyncio.wait_for(
                self.transport.send(endpoint, payload), timeout=timeout_seconds
            )
        except asyncio.TimeoutError as e:
            raise InferenceTimeoutError(
                f"{endpoint} did not answer within {timeout_seconds * 1000:.0f}ms", endpoint
            ) from e
        except InferenceError:
            raise
        except Exception as e:
            # Anything outside the taxonomy is treated as a broken answer.
            raise InvalidResponseError(
                f"{endpoint} call failed: {type(e).__name__}: {e}", endpoint
            ) from e

        if response_model is None:
            return raw

        try:
            return response_model.model_validate(raw)
        except ValidationError as e:
            raise InvalidResponseError(f"{endpoint} response failed validation: {e}", endpoint) from e
