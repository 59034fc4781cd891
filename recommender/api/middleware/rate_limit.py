"""
Per-student rate limiting with sliding window.
"""

import re
import time
from collections import defaultdict
from typing import Callable, Optional

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware

from recommender.shared.config import settings
from recommender.shared.logging import get_logger

logger = get_logger(__name__)

_STUDENT_PATH = re.compile(r"^/students/([^/]+)/")


class SlidingWindowRateLimiter:
    """In-memory sliding window rate limiter per key."""

    def __init__(self, requests_per_minute: int = 120, clock: Callable[[], float] = time.time):
        self.requests_per_minute = requests_per_minute
        self.window_seconds = 60
        self._clock = clock
        # key -> request timestamps in window; keys with none are dropped
        self._requests: dict[str, list[float]] = defaultdict(list)

    def _prune(self, key: str) -> list[float]:
        """Remove timestamps older than window; returns what is left."""
        timestamps = self._requests.get(key)
        if not timestamps:
            self._requests.pop(key, None)
            return []
        cutoff = self._clock() - self.window_seconds
        recent = [t for t in timestamps if t > cutoff]
        if recent:
            self._requests[key] = recent
        else:
            del self._requests[key]
        return recent

    def is_allowed(self, key: str) -> bool:
        return len(self._prune(key)) < self.requests_per_minute

    def record(self, key: str):
        self._requests[key].append(self._clock())

    def retry_after_seconds(self, key: str) -> int:
        """Seconds until next request allowed (oldest in window expires)."""
        recent = self._prune(key)
        if len(recent) < self.requests_per_minute:
            return 0
        oldest = min(recent)
        return max(1, int(self.window_seconds - (self._clock() - oldest)))


def get_rate_limit_key(request: Request) -> Optional[str]:
    """Student id from the path, else X-Rate-Limit-Key, else client IP."""
    match = _STUDENT_PATH.match(request.url.path)
    if match:
        return f"student:{match.group(1)[:64]}"
    rate_key = request.headers.get("X-Rate-Limit-Key")
    if rate_key:
        return f"key:{rate_key[:64]}"
    client = request.client
    if client:
        return f"ip:{client.host}"
    return None


class RateLimitMiddleware(BaseHTTPMiddleware):
    """Per-student rate limiting middleware."""

    def __init__(
        self,
        app,
        requests_per_minute: Optional[int] = None,
        skip_paths: Optional[list[str]] = None,
    ):
        super().__init__(app)
        self.limiter = SlidingWindowRateLimiter(
            requests_per_minute or settings.api.rate_limit_requests_per_minute
        )
        self.skip_paths = set(skip_paths or ["/health", "/docs", "/openapi.json", "/redoc"])

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        path = request.url.path
        if path in self.skip_paths or path.startswith("/docs") or path.startswith("/redoc"):
            return await call_next(request)

        key = get_rate_limit_key(request)
        if not key:
            return await call_next(request)

        if not self.limiter.is_allowed(key):
            retry_after = self.limiter.retry_after_seconds(key)
            logger.warning(
                "Rate limit exceeded",
                extra={"rate_key": key[:16], "retry_after": retry_after},
            )
            return Response(
                content='{"detail":"Rate limit exceeded. Try again later."}',
                status_code=429,
                headers={"Retry-After": str(retry_after), "Content-Type": "application/json"},
            )

        self.limiter.record(key)
        return await call_next(request)
