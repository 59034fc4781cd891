"""
Exception hierarchy for the recommender.
"""

from typing import Optional


class RecommenderError(Exception):
    """Base exception for all recommender errors."""
    pass


class ConfigurationError(RecommenderError):
    """Raised when required configuration is missing or inconsistent."""
    pass


class InferenceError(RecommenderError):
    """Base exception for model endpoint failures."""

    transient = False
    reason = "inference_error"

    def __init__(self, message: str, endpoint: Optional[str] = None):
        super().__init__(message)
        self.endpoint = endpoint


class InferenceTimeoutError(InferenceError):
    """Raised when an endpoint does not answer within its deadline."""
    transient = True
    reason = "timeout"


class EndpointUnavailableError(InferenceError):
    """Raised when an endpoint cannot be reached or reports a server error."""
    transient = True
    reason = "unavailable"


class CircuitBreakerOpenError(InferenceError):
    """Raised when circuit breaker is open and operation is blocked."""
    transient = True
    reason = "circuit_open"


class InvalidResponseError(InferenceError):
    """Raised when an endpoint answers with a malformed payload."""
    reason = "invalid_response"


class SafetyError(RecommenderError):
    """Base exception for safety-related errors."""
    pass


class UnsafeRecommendationError(SafetyError):
    """Raised when a candidate falls outside the student's safe difficulty range."""
    reason = "unsafe_recommendation"


class NoEligibleContentError(RecommenderError):
    """Raised when not even the heuristic tier can find a candidate."""
    pass


class DeadlineExceededError(RecommenderError):
    """Raised when the request deadline passes before a result can be produced."""
    reason = "deadline_exceeded"


class PersistenceError(RecommenderError):
    """Raised when student state cannot be read or written."""
    pass


class StateInvariantError(PersistenceError):
    """Raised when a state mutation would break a StudentState invariant."""
    pass
