"""Unit tests for the agent directory adapters"""

from unittest.mock import Mock

import pytest
from sqlalchemy.exc import OperationalError

from matching.candidates import InMemoryCandidateRepository, SqlCandidateRepository, is_eligible
from matching.exceptions import CandidateRepositoryError
from models.agent_match import AgentTier
from models.agent_profile import AgentProfile

from fixtures.agents import make_agent, make_request


class TestEligibility:

    def test_destination_overlap(self):
        assert is_eligible(make_request(), make_agent("a", specializations=["LUXURY"])) is True

    def test_specialization_overlap_without_destination(self):
        agent = make_agent("a", destinations=["Bali"], specializations=["GROUP"])
        assert is_eligible(make_request(), agent) is True

    def test_no_overlap(self):
        agent = make_agent("a", destinations=["Bali"], specializations=["LUXURY"])
        assert is_eligible(make_request(), agent) is False

    def test_unavailable_agent(self):
        assert is_eligible(make_request(), make_agent("a", is_available=False)) is False

    def test_agent_at_capacity(self):
        assert is_eligible(make_request(), make_agent("a", workload=8, max_workload=8)) is False
        assert is_eligible(make_request(), make_agent("a", workload=7, max_workload=8)) is True


class TestInMemoryCandidateRepository:

    def test_excluded_agents_never_returned(self):
        repo = InMemoryCandidateRepository([make_agent("a"), make_agent("b"), make_agent("c")])

        result = repo.fetch_candidates(make_request(), excluded_agent_ids=["b"])

        assert [c.agent_id for c in result] == ["a", "c"]

    def test_upsert_replaces_agent(self):
        repo = InMemoryCandidateRepository([make_agent("a")])
        repo.upsert(make_agent("a", is_available=False))

        assert repo.fetch_candidates(make_request(), []) == []

    def test_increment_workload_until_full(self):
        repo = InMemoryCandidateRepository([make_agent("a", workload=1, max_workload=2)])

        repo.increment_workload("a")
        repo.increment_workload("unknown")

        assert repo.get("a").current_workload == 2
        assert repo.fetch_candidates(make_request(), []) == []


class TestSqlCandidateRepository:
    """Test the agent_profile projection reader"""

    def _add_profiles(self, session_factory, *profiles):
        session = session_factory()
        session.add_all(profiles)
        session.commit()
        session.close()

    def test_reads_available_eligible_profiles(self, session_factory):
        self._add_profiles(
            session_factory,
            AgentProfile(
                agent_id="star-1", tier="STAR", destinations=["Goa"], specializations=["FAMILY"],
                languages=["English"], rating=4.9, completed_bookings=80,
                response_time_p50_hours=1.0, response_time_p90_hours=3.0, is_available=True,
            ),
            AgentProfile(agent_id="bench-1", tier="BENCH", destinations=["goa, india"], is_available=True),
            AgentProfile(agent_id="off-1", tier="BENCH", destinations=["Goa"], is_available=False),
            AgentProfile(agent_id="alps-1", tier="BENCH", destinations=["Zermatt"], is_available=True),
            AgentProfile(agent_id="gone-1", tier="BENCH", destinations=["Goa"], is_available=True),
        )
        repo = SqlCandidateRepository(session_factory)

        result = repo.fetch_candidates(make_request(), excluded_agent_ids=["gone-1"])

        assert [c.agent_id for c in result] == ["bench-1", "star-1"]
        star = result[1]
        assert star.tier == AgentTier.STAR
        assert star.rating == pytest.approx(4.9)
        assert star.response_time_p90_hours == pytest.approx(3.0)

    def test_unknown_tier_reads_as_bench(self, session_factory):
        self._add_profiles(session_factory, AgentProfile(agent_id="x", tier="GOLD", destinations=["Goa"]))

        result = SqlCandidateRepository(session_factory).fetch_candidates(make_request(), [])

        assert result[0].tier == AgentTier.BENCH

    def test_full_agents_filtered_and_workload_incremented(self, session_factory):
        self._add_profiles(
            session_factory,
            AgentProfile(agent_id="busy-1", destinations=["Goa"], current_workload=5, max_workload=5),
            AgentProfile(agent_id="free-1", destinations=["Goa"], current_workload=4, max_workload=5),
        )
        repo = SqlCandidateRepository(session_factory)

        [candidate] = repo.fetch_candidates(make_request(), [])
        assert candidate.agent_id == "free-1"
        assert candidate.current_workload == 4
        assert candidate.max_workload == 5

        repo.increment_workload("free-1")

        assert repo.fetch_candidates(make_request(), []) == []
        session = session_factory()
        assert session.get(AgentProfile, "free-1").current_workload == 5
        session.close()

    def test_database_error_is_transient(self):
        session = Mock()
        session.scalars.side_effect = OperationalError("SELECT", {}, Exception("connection refused"))
        repo = SqlCandidateRepository(lambda: session)

        with pytest.raises(CandidateRepositoryError, match="Agent directory unavailable"):
            repo.fetch_candidates(make_request(), [])
        session.close.assert_called_once()
