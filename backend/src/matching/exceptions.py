"""Matching service exception hierarchy.

Transient errors (candidate directory, bus, lock) are retryable: an inbound
event whose handling raised one is not acknowledged so the bus redelivers it.
Exhaustion outcomes (no candidates, attempts used up) are never raised; they
become a FAILED state.
"""


class MatchingError(Exception):
    """Base class for matching service errors."""
    pass


class StateTransitionError(MatchingError):
    """Raised when an invalid state transition is attempted."""
    pass


class CandidateRepositoryError(MatchingError):
    """Raised when the agent directory cannot be queried (transient)."""
    pass


class EventPublishError(MatchingError):
    """Raised when a canonical event cannot be written to the bus (transient)."""
    pass


class LockTimeoutError(MatchingError):
    """Raised when the per-request lock is not acquired in time (transient)."""

    def __init__(self, request_id: str, timeout_seconds: float):
        self.request_id = request_id
        self.timeout_seconds = timeout_seconds
        super().__init__(
            f"Could not acquire lock for request {request_id} within {timeout_seconds}s"
        )


class AdminOverrideError(MatchingError):
    """Raised when an admin override is rejected."""

    def __init__(self, message: str, code: str = "override_rejected"):
        self.code = code
        super().__init__(message)


class PeakSeasonConfigError(MatchingError):
    """Raised at startup when the peak-season table is invalid."""
    pass


class InboundEventValidationError(MatchingError):
    """Raised when an inbound event payload is malformed."""

    def __init__(self, message: str, errors=None):
        self.errors = errors or []
        super().__init__(message)


TRANSIENT_ERRORS = (CandidateRepositoryError, EventPublishError, LockTimeoutError)
