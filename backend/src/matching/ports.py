"""Matching ports and value types for hexagonal architecture.

The orchestrator depends only on these abstractions; concrete adapters live
in matching.candidates (agent directory), scheduler (timeouts) and events
(bus and broadcasts).
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field, asdict
from datetime import date, datetime
from typing import Callable, Iterable, List, Optional

from models.agent_match import AgentTier


@dataclass(frozen=True)
class MatchingRequest:
    """Projection of a travel request as seen by the matching engine.

    Attributes:
        request_id: Request identifier from the requests service
        destinations: Free-text destinations (e.g. "Goa, India")
        start_date: First travel day
        end_date: Last travel day
        budget_min / budget_max / budget_currency: Budget range
        travel_style: Trip type (ADVENTURE, HONEYMOON, FAMILY, ...)
        languages: Preferred languages, may be empty
        travelers: Number of travelers
        user_id: Requesting user, carried into event metadata
    """
    request_id: str
    destinations: List[str]
    start_date: date
    end_date: date
    travel_style: Optional[str] = None
    languages: List[str] = field(default_factory=list)
    budget_min: Optional[float] = None
    budget_max: Optional[float] = None
    budget_currency: Optional[str] = None
    travelers: int = 1
    user_id: Optional[str] = None

    def to_snapshot(self) -> dict:
        data = asdict(self)
        data["start_date"] = self.start_date.isoformat()
        data["end_date"] = self.end_date.isoformat()
        return data

    @classmethod
    def from_snapshot(cls, data: dict) -> "MatchingRequest":
        values = dict(data)
        values["start_date"] = date.fromisoformat(values["start_date"])
        values["end_date"] = date.fromisoformat(values["end_date"])
        values["destinations"] = list(values.get("destinations") or [])
        values["languages"] = list(values.get("languages") or [])
        return cls(**values)


@dataclass(frozen=True)
class AgentCandidate:
    """Immutable snapshot of an agent at scoring time."""
    agent_id: str
    tier: AgentTier
    specializations: List[str] = field(default_factory=list)
    languages: List[str] = field(default_factory=list)
    destinations: List[str] = field(default_factory=list)
    rating: float = 0.0
    completed_bookings: int = 0
    response_time_p50_hours: Optional[float] = None
    response_time_p90_hours: Optional[float] = None
    is_available: bool = True
    current_workload: int = 0
    max_workload: int = 10

    @property
    def has_capacity(self) -> bool:
        return self.current_workload < self.max_workload


@dataclass(frozen=True)
class ScoredCandidate:
    """Candidate with its computed score, ordered reasons and star eligibility."""
    candidate: AgentCandidate
    score: float
    reasons: List[str]
    star_eligible: bool

    @property
    def agent_id(self) -> str:
        return self.candidate.agent_id


class CandidateRepositoryPort(ABC):
    """Port for the agent directory.

    Implementations must filter by availability, remaining capacity and
    destination or specialization overlap, and must never return an excluded
    agent.
    """

    @abstractmethod
    def fetch_candidates(
        self,
        request: MatchingRequest,
        excluded_agent_ids: Iterable[str],
    ) -> List[AgentCandidate]:
        """Return eligible candidates for a request.

        Args:
            request: Request projection
            excluded_agent_ids: Agents matched in any earlier round

        Returns:
            Eligible candidates, empty list when none

        Raises:
            CandidateRepositoryError: If the directory is unavailable
        """
        pass

    @abstractmethod
    def increment_workload(self, agent_id: str) -> None:
        """Count one more accepted booking against the agent's capacity.

        Raises:
            CandidateRepositoryError: If the directory is unavailable
        """
        pass


ExpiryCallback = Callable[[str, str], None]


class TimeoutSchedulerPort(ABC):
    """Port for per-match expiry timers keyed by match_id.

    Firing an entry invokes the callback with (request_id, match_id).
    A cancelled entry must never fire.
    """

    @abstractmethod
    def arm(self, match_id: str, request_id: str, expires_at: datetime) -> None:
        """Schedule (or reschedule) the expiry of a match. Must not block."""
        pass

    @abstractmethod
    def cancel(self, match_id: str) -> bool:
        """Cancel a scheduled expiry. Returns True if an entry was removed."""
        pass

    def set_callback(self, callback: ExpiryCallback) -> None:
        """Register the function invoked when an entry fires."""
        self._callback = callback
