"""Agent matching engine.

Selects one STAR plus N BENCH agents per travel request, tracks their
responses, rematches when too many decline or time out, and applies
peak-season adjustments to thresholds.
"""

from .exceptions import (
    AdminOverrideError,
    CandidateRepositoryError,
    EventPublishError,
    InboundEventValidationError,
    LockTimeoutError,
    MatchingError,
    PeakSeasonConfigError,
    StateTransitionError,
)
from .ports import AgentCandidate, MatchingRequest, ScoredCandidate

__all__ = [
    "AdminOverrideError",
    "AgentCandidate",
    "CandidateRepositoryError",
    "EventPublishError",
    "InboundEventValidationError",
    "LockTimeoutError",
    "MatchingError",
    "MatchingRequest",
    "PeakSeasonConfigError",
    "ScoredCandidate",
    "StateTransitionError",
]
