"""Agent scoring and ranking.

Score formula (every sub-score is in 0.0-1.0):
    S = w_dest * S_dest + w_spec * S_spec + w_lang * S_lang
        + w_rating * S_rating + w_resp * S_resp + w_load * S_load
    score = round(S + star_bonus, 4)     star_bonus only for STAR-eligible agents

Sub-scores:
    S_dest   = 1.0 all destinations covered | 0.7 at least half | 0.5 some
               | 0.2 none | 0.4 generalist (agent lists no destinations)
    S_spec   = 1.0 primary specialization for the trip type | 0.7 related
               | 0.3 none | 0.5 trip type unknown
    S_lang   = 1.0 all preferred languages | 0.6 some | 0.1 none
               | 0.5 no preference
    S_rating = rating / 5
    S_resp   = 1 - min(0.7 * P50 + 0.3 * P90, cap) / cap, 0.5 when unknown
    S_load   = 1.0 at least 80% capacity free | 0.7 at least half | 0.4 at least
               a fifth | 0.2 otherwise

w_load defaults to 0.0, which leaves workload out of the score.

Ranking is descending score, ties broken by ascending agent_id.
"""

from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional, Tuple

from models.agent_match import AgentTier

from .ports import AgentCandidate, MatchingRequest, ScoredCandidate


# Trip type -> specializations, primary first
TRIP_TYPE_SPECIALIZATIONS: Dict[str, List[str]] = {
    "ADVENTURE": ["ADVENTURE", "SOLO"],
    "HONEYMOON": ["HONEYMOON", "LUXURY"],
    "FAMILY": ["FAMILY", "GROUP"],
    "LUXURY": ["LUXURY", "HONEYMOON"],
    "BUDGET": ["BUDGET", "SOLO"],
    "BUSINESS": ["BUSINESS"],
    "SOLO": ["SOLO", "ADVENTURE", "BUDGET"],
    "GROUP": ["GROUP", "FAMILY"],
}

RESPONSE_P50_WEIGHT = 0.7
RESPONSE_P90_WEIGHT = 0.3


def _norm(value: str) -> str:
    return value.strip().lower()


def destination_matches(requested: str, covered: str) -> bool:
    """Case-insensitive substring match in either direction.

    "Goa" matches "Goa, India" and "goa".
    """
    a, b = _norm(requested), _norm(covered)
    if not a or not b:
        return False
    return a in b or b in a


def covered_destinations(requested: Iterable[str], covered: Iterable[str]) -> List[str]:
    """Requested destinations the agent covers, in request order."""
    covered = list(covered)
    return [d for d in requested if any(destination_matches(d, c) for c in covered)]


def trip_specializations(travel_style: Optional[str]) -> List[str]:
    if not travel_style:
        return []
    return TRIP_TYPE_SPECIALIZATIONS.get(travel_style.strip().upper(), [travel_style.strip().upper()])


def specialization_overlap(travel_style: Optional[str], specializations: Iterable[str]) -> List[str]:
    """Agent specializations relevant to the trip type, in trip-type priority order."""
    agent_specs = {s.strip().upper() for s in specializations}
    return [s for s in trip_specializations(travel_style) if s in agent_specs]


@dataclass(frozen=True)
class ScoringWeights:
    """Scoring configuration. Weights must sum to 1.0."""
    destination: float = 0.30
    specialization: float = 0.20
    language: float = 0.10
    rating: float = 0.20
    response_time: float = 0.20
    workload: float = 0.0
    star_bonus: float = 0.10
    response_time_cap_hours: float = 48.0
    star_min_rating: float = 4.5
    star_min_bookings: int = 10

    def __post_init__(self):
        total = (
            self.destination + self.specialization + self.language
            + self.rating + self.response_time + self.workload
        )
        if abs(total - 1.0) > 0.001:
            raise ValueError(f"Scoring weights must sum to 1.0, got {total:.3f}")
        if self.response_time_cap_hours <= 0:
            raise ValueError("response_time_cap_hours must be positive")

    @classmethod
    def from_settings(cls, settings) -> "ScoringWeights":
        return cls(
            destination=settings.SCORE_WEIGHT_DESTINATION,
            specialization=settings.SCORE_WEIGHT_SPECIALIZATION,
            language=settings.SCORE_WEIGHT_LANGUAGE,
            rating=settings.SCORE_WEIGHT_RATING,
            response_time=settings.SCORE_WEIGHT_RESPONSE_TIME,
            workload=settings.SCORE_WEIGHT_WORKLOAD,
            star_bonus=settings.SCORE_STAR_TIER_BONUS,
            response_time_cap_hours=settings.SCORE_RESPONSE_TIME_CAP_HOURS,
            star_min_rating=settings.STAR_AGENT_MIN_RATING,
            star_min_bookings=settings.STAR_AGENT_MIN_BOOKINGS,
        )


class AgentScorer:
    """Deterministic agent scorer.

    Holds no mutable state: identical (request, candidate) inputs always
    produce the identical score and reason list.
    """

    def __init__(self, weights: Optional[ScoringWeights] = None):
        self.weights = weights or ScoringWeights()

    def is_star_eligible(self, candidate: AgentCandidate) -> bool:
        """STAR tier in the directory and above the star quality thresholds."""
        return (
            candidate.tier == AgentTier.STAR
            and candidate.rating >= self.weights.star_min_rating
            and candidate.completed_bookings >= self.weights.star_min_bookings
        )

    def score(self, request: MatchingRequest, candidate: AgentCandidate) -> Tuple[float, List[str]]:
        """Score one candidate for a request.

        Returns:
            Tuple of (score rounded to 4 decimals, ordered reasons)
        """
        w = self.weights
        reasons: List[str] = []

        star_eligible = self.is_star_eligible(candidate)
        if star_eligible:
            reasons.append("Star agent")

        s_dest = self._destination_score(request, candidate, reasons)
        s_spec = self._specialization_score(request, candidate, reasons)
        s_lang = self._language_score(request, candidate, reasons)
        s_rating = self._rating_score(candidate, reasons)
        s_resp = self._response_time_score(candidate, reasons)

        total = (
            w.destination * s_dest
            + w.specialization * s_spec
            + w.language * s_lang
            + w.rating * s_rating
            + w.response_time * s_resp
        )
        if w.workload:
            total += w.workload * self._workload_score(candidate, reasons)
        if star_eligible:
            total += w.star_bonus

        return round(total, 4), reasons

    def rank(self, request: MatchingRequest, candidates: Iterable[AgentCandidate]) -> List[ScoredCandidate]:
        """Score and sort candidates: descending score, then ascending agent_id."""
        scored = []
        for candidate in candidates:
            value, reasons = self.score(request, candidate)
            scored.append(ScoredCandidate(
                candidate=candidate,
                score=value,
                reasons=reasons,
                star_eligible=self.is_star_eligible(candidate),
            ))
        return sorted(scored, key=lambda s: (-s.score, s.agent_id))

    def _destination_score(self, request: MatchingRequest, candidate: AgentCandidate, reasons: List[str]) -> float:
        if not candidate.destinations:
            return 0.4
        if not request.destinations:
            return 0.5

        matched = covered_destinations(request.destinations, candidate.destinations)
        ratio = len(matched) / len(request.destinations)
        if ratio >= 1.0:
            reasons.append("Covers all requested destinations")
            return 1.0
        if ratio >= 0.5:
            reasons.append(f"Covers {len(matched)} of {len(request.destinations)} destinations")
            return 0.7
        if matched:
            reasons.append(f"Covers {len(matched)} of {len(request.destinations)} destinations")
            return 0.5
        return 0.2

    def _specialization_score(self, request: MatchingRequest, candidate: AgentCandidate, reasons: List[str]) -> float:
        wanted = trip_specializations(request.travel_style)
        if not wanted:
            return 0.5

        overlap = specialization_overlap(request.travel_style, candidate.specializations)
        if not overlap:
            return 0.3
        if overlap[0] == wanted[0]:
            reasons.append(f"Specializes in {wanted[0].lower()} trips")
            return 1.0
        reasons.append(f"Related specialization: {overlap[0].lower()}")
        return 0.7

    def _language_score(self, request: MatchingRequest, candidate: AgentCandidate, reasons: List[str]) -> float:
        if not request.languages:
            return 0.5

        spoken = {_norm(lang) for lang in candidate.languages}
        matched = [lang for lang in request.languages if _norm(lang) in spoken]
        if len(matched) == len(request.languages):
            reasons.append(f"Speaks {', '.join(matched)}")
            return 1.0
        if matched:
            reasons.append(f"Speaks {', '.join(matched)}")
            return 0.6
        return 0.1

    def _rating_score(self, candidate: AgentCandidate, reasons: List[str]) -> float:
        rating = min(max(candidate.rating, 0.0), 5.0)
        if rating >= 4.8:
            reasons.append(f"Excellent rating ({rating:.1f})")
        elif rating >= 4.5:
            reasons.append(f"Highly rated ({rating:.1f})")
        elif rating >= 4.0:
            reasons.append(f"Good rating ({rating:.1f})")
        return rating / 5.0

    def _response_time_score(self, candidate: AgentCandidate, reasons: List[str]) -> float:
        p50 = candidate.response_time_p50_hours
        p90 = candidate.response_time_p90_hours
        if p50 is None and p90 is None:
            return 0.5
        if p50 is None:
            p50 = p90
        if p90 is None:
            p90 = p50

        cap = self.weights.response_time_cap_hours
        effective = min(RESPONSE_P50_WEIGHT * p50 + RESPONSE_P90_WEIGHT * p90, cap)
        if p50 <= 1:
            reasons.append("Responds within 1 hour")
        elif p50 <= 4:
            reasons.append("Responds within 4 hours")
        elif p50 <= 12:
            reasons.append("Responds within 12 hours")
        return 1.0 - effective / cap

    def _workload_score(self, candidate: AgentCandidate, reasons: List[str]) -> float:
        if candidate.max_workload <= 0:
            return 0.2
        free = (candidate.max_workload - candidate.current_workload) / candidate.max_workload
        if free >= 0.8:
            reasons.append("High availability")
            return 1.0
        if free >= 0.5:
            reasons.append("Moderate availability")
            return 0.7
        if free >= 0.2:
            return 0.4
        return 0.2
