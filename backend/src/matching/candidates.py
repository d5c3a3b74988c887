"""Candidate repositories (agent directory adapters)."""

import logging
from dataclasses import replace
from typing import Callable, Iterable, List

from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from models.agent_match import AgentTier
from models.agent_profile import AgentProfile

from .exceptions import CandidateRepositoryError
from .ports import AgentCandidate, CandidateRepositoryPort, MatchingRequest
from .scorer import covered_destinations, specialization_overlap

logger = logging.getLogger(__name__)


def is_eligible(request: MatchingRequest, candidate: AgentCandidate) -> bool:
    """Available, below capacity and overlapping the request on destination or specialization."""
    if not candidate.is_available or not candidate.has_capacity:
        return False
    if covered_destinations(request.destinations, candidate.destinations):
        return True
    return bool(specialization_overlap(request.travel_style, candidate.specializations))


class InMemoryCandidateRepository(CandidateRepositoryPort):
    """Directory held in memory (tests, local runs)."""

    def __init__(self, agents: Iterable[AgentCandidate] = ()):
        self._agents = {a.agent_id: a for a in agents}

    def upsert(self, agent: AgentCandidate) -> None:
        self._agents[agent.agent_id] = agent

    def get(self, agent_id: str):
        return self._agents.get(agent_id)

    def fetch_candidates(self, request: MatchingRequest, excluded_agent_ids: Iterable[str]) -> List[AgentCandidate]:
        excluded = set(excluded_agent_ids)
        return [
            agent for agent_id, agent in sorted(self._agents.items())
            if agent_id not in excluded and is_eligible(request, agent)
        ]

    def increment_workload(self, agent_id: str) -> None:
        agent = self._agents.get(agent_id)
        if agent is None:
            logger.debug(f"Workload not tracked for unknown agent {agent_id}", extra={"agent_id": agent_id})
            return
        self._agents[agent_id] = replace(agent, current_workload=agent.current_workload + 1)


def profile_to_candidate(profile: AgentProfile) -> AgentCandidate:
    try:
        tier = AgentTier(profile.tier)
    except ValueError:
        tier = AgentTier.BENCH
    return AgentCandidate(
        agent_id=profile.agent_id,
        tier=tier,
        specializations=list(profile.specializations or []),
        languages=list(profile.languages or []),
        destinations=list(profile.destinations or []),
        rating=float(profile.rating or 0.0),
        completed_bookings=int(profile.completed_bookings or 0),
        response_time_p50_hours=profile.response_time_p50_hours,
        response_time_p90_hours=profile.response_time_p90_hours,
        is_available=bool(profile.is_available),
        current_workload=int(profile.current_workload or 0),
        max_workload=int(profile.max_workload or 0),
    )


class SqlCandidateRepository(CandidateRepositoryPort):
    """Reads the agent_profile projection.

    Availability, capacity and exclusion are filtered in SQL; destination and
    specialization overlap are matched in Python since both sides are JSON
    lists compared case-insensitively.
    """

    def __init__(self, session_factory: Callable[[], Session]):
        self.session_factory = session_factory

    def fetch_candidates(self, request: MatchingRequest, excluded_agent_ids: Iterable[str]) -> List[AgentCandidate]:
        excluded = list(excluded_agent_ids)
        stmt = (
            select(AgentProfile)
            .where(AgentProfile.is_available.is_(True))
            .where(AgentProfile.current_workload < AgentProfile.max_workload)
        )
        if excluded:
            stmt = stmt.where(AgentProfile.agent_id.notin_(excluded))
        stmt = stmt.order_by(AgentProfile.agent_id)

        session = self.session_factory()
        try:
            profiles = list(session.scalars(stmt))
        except SQLAlchemyError as e:
            logger.error(f"Agent directory query failed: {e}", extra={"request_id": request.request_id})
            raise CandidateRepositoryError(f"Agent directory unavailable: {e}") from e
        finally:
            session.close()

        candidates = [profile_to_candidate(p) for p in profiles]
        return [c for c in candidates if is_eligible(request, c)]

    def increment_workload(self, agent_id: str) -> None:
        session = self.session_factory()
        try:
            session.execute(
                update(AgentProfile)
                .where(AgentProfile.agent_id == agent_id)
                .values(current_workload=AgentProfile.current_workload + 1)
            )
            session.commit()
        except SQLAlchemyError as e:
            session.rollback()
            logger.error(f"Workload update failed: {e}", extra={"agent_id": agent_id})
            raise CandidateRepositoryError(f"Agent directory unavailable: {e}") from e
        finally:
            session.close()
