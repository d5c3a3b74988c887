"""Decline/rematch coordinator.

Decides what the orchestrator does after a match leaves PENDING through a
decline, an expiry or an admin removal. The decision is a pure function of
the live match count, the round threshold and the attempt counter.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Optional


class RematchAction(str, Enum):
    NO_OP = "NO_OP"
    REMATCH = "REMATCH"
    FAIL = "FAIL"


FAIL_REASON_MAX_ATTEMPTS = "max_attempts_reached"


@dataclass(frozen=True)
class RematchDecision:
    """Next orchestrator action.

    Attributes:
        action: NO_OP, REMATCH or FAIL
        next_attempt: Attempt number of the new round (REMATCH only)
        reason: Structured failure reason (FAIL only)
    """
    action: RematchAction
    next_attempt: Optional[int] = None
    reason: Optional[str] = None


def decide_next_action(
    request_id: str,
    declined_agent_id: str,
    reason: str,
    remaining_matches: int,
    adjusted_min_agents: int,
    attempt: int,
    max_attempts: int,
) -> RematchDecision:
    """Decide the next action after a match left PENDING.

    Args:
        request_id: Request the decline belongs to
        declined_agent_id: Agent that declined, expired or was removed
        reason: Decline reason (informational)
        remaining_matches: PENDING matches left for the request
        adjusted_min_agents: Live matches required for the round
        attempt: Current attempt (0 for the first round)
        max_attempts: Maximum number of rematch rounds

    Returns:
        NO_OP while remaining_matches >= adjusted_min_agents,
        REMATCH(attempt + 1) while attempt < max_attempts,
        FAIL(max_attempts_reached) otherwise.

    Example:
        >>> decide_next_action("r1", "a2", "declined", 1, 3, 0, 3)
        RematchDecision(action=<RematchAction.REMATCH: 'REMATCH'>, next_attempt=1, reason=None)
    """
    if remaining_matches >= adjusted_min_agents:
        return RematchDecision(action=RematchAction.NO_OP)
    if attempt < max_attempts:
        return RematchDecision(action=RematchAction.REMATCH, next_attempt=attempt + 1)
    return RematchDecision(action=RematchAction.FAIL, reason=FAIL_REASON_MAX_ATTEMPTS)
