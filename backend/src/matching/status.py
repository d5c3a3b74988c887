"""Matching status state machine.

State Flow:
    MATCHING -> AGENTS_MATCHED -> MATCHED
                               -> REMATCHING -> AGENTS_MATCHED | FAILED
    MATCHING | REMATCHING -> FAILED (no candidates)

CANCELLED is reachable from every non-terminal state.

Terminal States: MATCHED, FAILED, CANCELLED
"""

from typing import List

from models.matching_state import MatchingStatus
from models.agent_match import AgentMatchStatus

from .exceptions import StateTransitionError


ALLOWED_TRANSITIONS = {
    MatchingStatus.MATCHING: [
        MatchingStatus.AGENTS_MATCHED,
        MatchingStatus.FAILED,
        MatchingStatus.CANCELLED,
    ],
    MatchingStatus.AGENTS_MATCHED: [
        MatchingStatus.MATCHED,
        MatchingStatus.REMATCHING,
        MatchingStatus.FAILED,
        MatchingStatus.CANCELLED,
    ],
    MatchingStatus.REMATCHING: [
        MatchingStatus.AGENTS_MATCHED,
        MatchingStatus.FAILED,
        MatchingStatus.CANCELLED,
    ],
    MatchingStatus.MATCHED: [],  # Terminal state
    MatchingStatus.FAILED: [],  # Terminal state
    MatchingStatus.CANCELLED: [],  # Terminal state
}

TERMINAL_STATES = frozenset(
    status for status, targets in ALLOWED_TRANSITIONS.items() if not targets
)

# Agent match statuses; only PENDING may move
ALLOWED_MATCH_TRANSITIONS = {
    AgentMatchStatus.PENDING: [
        AgentMatchStatus.ACCEPTED,
        AgentMatchStatus.DECLINED,
        AgentMatchStatus.EXPIRED,
        AgentMatchStatus.SUPERSEDED,
    ],
    AgentMatchStatus.ACCEPTED: [],
    AgentMatchStatus.DECLINED: [],
    AgentMatchStatus.EXPIRED: [],
    AgentMatchStatus.SUPERSEDED: [],
}

# Statuses that permanently exclude an agent from later rounds
EXCLUDING_MATCH_STATUSES = frozenset({AgentMatchStatus.DECLINED, AgentMatchStatus.EXPIRED})


def validate_transition(
    current_status: MatchingStatus,
    new_status: MatchingStatus
) -> None:
    """Validate that a matching state transition is allowed.

    Args:
        current_status: Current matching status
        new_status: Target status to transition to

    Raises:
        StateTransitionError: If transition is not allowed
    """
    allowed = ALLOWED_TRANSITIONS.get(current_status, [])
    if new_status not in allowed:
        raise StateTransitionError(
            f"Invalid transition: {current_status.value} -> {new_status.value}. "
            f"Allowed transitions from {current_status.value}: "
            f"{[s.value for s in allowed]}"
        )


def can_transition(
    current_status: MatchingStatus,
    new_status: MatchingStatus
) -> bool:
    """Check if a state transition is allowed without raising exception."""
    return new_status in ALLOWED_TRANSITIONS.get(current_status, [])


def get_allowed_transitions(status: MatchingStatus) -> List[MatchingStatus]:
    """Get list of allowed transitions from a given status."""
    return ALLOWED_TRANSITIONS.get(status, [])


def is_terminal(status: MatchingStatus) -> bool:
    return status in TERMINAL_STATES


def validate_match_transition(
    current_status: AgentMatchStatus,
    new_status: AgentMatchStatus
) -> None:
    """Validate an agent match status change.

    Raises:
        StateTransitionError: If the match is no longer PENDING or the target is invalid
    """
    allowed = ALLOWED_MATCH_TRANSITIONS.get(current_status, [])
    if new_status not in allowed:
        raise StateTransitionError(
            f"Invalid match transition: {current_status.value} -> {new_status.value}"
        )
