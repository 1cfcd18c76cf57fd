"""
ChurnShield Recovery Engine - Error Taxonomy

Every failure the engine reports maps to one of these kinds.
Routers translate them to HTTP responses in one place (main.py).

- ValidationError: malformed/missing input, no state change
- NotFound: unknown case, session token or account
- InvalidTransition: state machine precondition violated (usually returned
  as a benign outcome instead of raised)
- ConflictRace: a concurrent writer won a guarded update
- UpstreamUnavailable: storage or provider call failed, safe to redeliver
- RateLimited: rejected immediately, carries a retry-after hint
"""
from typing import Optional


class EngineError(Exception):
    """Base class for all engine errors."""
    status_code = 500
    code = "ENGINE_ERROR"

    def __init__(self, message: str = ""):
        super().__init__(message)
        self.message = message or self.code


class ValidationError(EngineError):
    """Raised when input is malformed or missing."""
    status_code = 400
    code = "VALIDATION_ERROR"


class NotFound(EngineError):
    """Raised when a case, session or account does not exist."""
    status_code = 404
    code = "NOT_FOUND"


class InvalidTransition(EngineError):
    """Raised when a state machine precondition is violated."""
    status_code = 409
    code = "INVALID_TRANSITION"


class ConflictRace(EngineError):
    """Raised when a guarded write lost against a concurrent writer."""
    status_code = 409
    code = "CONFLICT_RACE"


class UpstreamUnavailable(EngineError):
    """Raised when storage or an external collaborator fails."""
    status_code = 503
    code = "UPSTREAM_UNAVAILABLE"


class ScoreWriteFailed(UpstreamUnavailable):
    """Raised when a risk snapshot could not be persisted."""
    code = "SCORE_WRITE_FAILED"


class RateLimited(EngineError):
    """Raised when a fixed-window limiter rejects a request."""
    status_code = 429
    code = "RATE_LIMITED"

    def __init__(self, message: str = "", retry_after: Optional[int] = None):
        super().__init__(message or "Too many requests. Please try again later.")
        self.retry_after = retry_after
