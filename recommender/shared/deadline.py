"""
Monotonic request deadlines.
"""

import time
from typing import Callable, Optional


class Deadline:
    """An absolute point on the monotonic clock that a request must finish by."""

    def __init__(self, expires_at: float, clock: Callable[[], float] = time.monotonic):
        self.expires_at = expires_at
        self._clock = clock

    @classmethod
    def after_ms(cls, budget_ms: float, clock: Callable[[], float] = time.monotonic) -> "Deadline":
        return cls(clock() + budget_ms / 1000.0, clock)

    @property
    def remaining_seconds(self) -> float:
        return max(0.0, self.expires_at - self._clock())

    @property
    def remaining_ms(self) -> float:
        return self.remaining_seconds * 1000.0

    @property
    def expired(self) -> bool:
        return self._clock() >= self.expires_at

    def cap_ms(self, timeout_ms: Optional[float]) -> float:
        """Clamp a per-call timeout to what is left of this deadline."""
        if timeout_ms is None:
            return self.remaining_ms
        return min(float(timeout_ms), self.remaining_ms)
