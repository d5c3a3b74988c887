"""Unit tests for agent scoring and ranking"""

import pytest

from matching.ports import AgentCandidate
from matching.scorer import (
    AgentScorer,
    ScoringWeights,
    covered_destinations,
    destination_matches,
    specialization_overlap,
)
from models.agent_match import AgentTier

from fixtures.agents import make_agent, make_request


class TestDestinationMatching:
    """Case-insensitive substring matching of destinations"""

    def test_substring_either_direction(self):
        assert destination_matches("Goa", "Goa, India") is True
        assert destination_matches("Goa, India", "goa") is True

    def test_empty_values_never_match(self):
        assert destination_matches("", "Goa") is False
        assert destination_matches("Goa", "   ") is False

    def test_covered_destinations_keeps_request_order(self):
        covered = covered_destinations(["Kerala", "Goa", "Paris"], ["goa", "kerala backwaters"])
        assert covered == ["Kerala", "Goa"]


class TestSpecializationOverlap:

    def test_primary_first(self):
        assert specialization_overlap("FAMILY", ["group", "FAMILY"]) == ["FAMILY", "GROUP"]

    def test_unknown_trip_type_maps_to_itself(self):
        assert specialization_overlap("Wellness", ["WELLNESS"]) == ["WELLNESS"]

    def test_no_trip_type(self):
        assert specialization_overlap(None, ["FAMILY"]) == []


class TestAgentScorer:
    """Score formula, reasons and star eligibility"""

    def test_star_agent_full_match(self):
        """Test worked example: star agent covering everything"""
        scorer = AgentScorer()
        candidate = AgentCandidate(
            agent_id="agent-star",
            tier=AgentTier.STAR,
            specializations=["FAMILY"],
            languages=["english"],
            destinations=["Goa, India"],
            rating=5.0,
            completed_bookings=20,
            response_time_p50_hours=2,
            response_time_p90_hours=4,
        )
        request = make_request(destinations=["Goa"])

        score, reasons = scorer.score(request, candidate)

        assert score == pytest.approx(1.0892)
        assert reasons == [
            "Star agent",
            "Covers all requested destinations",
            "Specializes in family trips",
            "Speaks English",
            "Excellent rating (5.0)",
            "Responds within 4 hours",
        ]

    def test_generalist_with_no_profile_data(self):
        """Test agent listing nothing gets the neutral sub-scores"""
        scorer = AgentScorer()
        candidate = AgentCandidate(agent_id="agent-gen", tier=AgentTier.BENCH)

        score, reasons = scorer.score(make_request(), candidate)

        assert score == pytest.approx(0.29)
        assert reasons == []

    def test_bench_agent_breakdown(self):
        scorer = AgentScorer()
        score, reasons = scorer.score(make_request(), make_agent("bench-1", rating=4.4))

        assert score == pytest.approx(0.9435)
        assert reasons == [
            "Covers all requested destinations",
            "Specializes in family trips",
            "Speaks English",
            "Good rating (4.4)",
            "Responds within 12 hours",
        ]

    def test_partial_destinations_and_related_specialization(self):
        scorer = AgentScorer()
        request = make_request(destinations=["Goa", "Kerala", "Delhi"], languages=["English", "Hindi"])
        candidate = make_agent(
            "bench-x",
            destinations=["Goa"],
            specializations=["GROUP"],
            languages=["Hindi"],
            rating=3.0,
            p50=None,
            p90=None,
        )

        _, reasons = scorer.score(request, candidate)

        assert "Covers 1 of 3 destinations" in reasons
        assert "Related specialization: group" in reasons
        assert "Speaks Hindi" in reasons

    def test_star_tier_below_thresholds_is_not_star_eligible(self):
        scorer = AgentScorer()
        low_rating = make_agent("s1", tier=AgentTier.STAR, rating=4.4, completed_bookings=50)
        few_bookings = make_agent("s2", tier=AgentTier.STAR, rating=4.9, completed_bookings=3)
        qualified = make_agent("s3", tier=AgentTier.STAR, rating=4.5, completed_bookings=10)

        assert scorer.is_star_eligible(low_rating) is False
        assert scorer.is_star_eligible(few_bookings) is False
        assert scorer.is_star_eligible(qualified) is True

    def test_star_bonus_is_additive(self):
        scorer = AgentScorer()
        request = make_request()
        star = make_agent("a", tier=AgentTier.STAR, rating=4.8, completed_bookings=40)
        bench = make_agent("b", tier=AgentTier.BENCH, rating=4.8, completed_bookings=40)

        star_score, _ = scorer.score(request, star)
        bench_score, _ = scorer.score(request, bench)

        assert star_score - bench_score == pytest.approx(0.1)

    def test_response_time_uses_available_percentile(self):
        scorer = AgentScorer()
        only_p90 = make_agent("a", p50=None, p90=10.0)
        both = make_agent("b", p50=10.0, p90=10.0)

        assert scorer.score(make_request(), only_p90)[0] == scorer.score(make_request(), both)[0]

    def test_workload_ignored_at_default_weight(self):
        scorer = AgentScorer()

        idle = scorer.score(make_request(), make_agent("a", workload=0))
        busy = scorer.score(make_request(), make_agent("a", workload=9))

        assert idle == busy

    def test_workload_weight_favours_free_capacity(self):
        scorer = AgentScorer(ScoringWeights(rating=0.15, response_time=0.15, workload=0.10))
        request = make_request()

        free_score, free_reasons = scorer.score(request, make_agent("free", rating=5.0, p50=None, p90=None, workload=1))
        busy_score, busy_reasons = scorer.score(request, make_agent("busy", rating=5.0, p50=None, p90=None, workload=6))

        assert free_score == pytest.approx(0.925)
        assert busy_score == pytest.approx(0.865)
        assert free_reasons[-1] == "High availability"
        assert "availability" not in busy_reasons[-1]

    def test_scoring_is_deterministic(self):
        scorer = AgentScorer()
        request = make_request()
        agent = make_agent("bench-1")

        assert scorer.score(request, agent) == scorer.score(request, agent)


class TestRanking:

    def test_descending_score(self):
        scorer = AgentScorer()
        ranked = scorer.rank(make_request(), [
            make_agent("low", rating=3.0),
            make_agent("high", rating=4.9),
        ])
        assert [s.agent_id for s in ranked] == ["high", "low"]

    def test_ties_broken_by_agent_id(self):
        scorer = AgentScorer()
        ranked = scorer.rank(make_request(), [make_agent("b-2"), make_agent("a-9"), make_agent("b-1")])
        assert [s.agent_id for s in ranked] == ["a-9", "b-1", "b-2"]

    def test_star_eligibility_carried_on_ranked_entries(self):
        scorer = AgentScorer()
        ranked = scorer.rank(make_request(), [
            make_agent("star", tier=AgentTier.STAR, rating=4.9, completed_bookings=30),
            make_agent("bench"),
        ])
        assert ranked[0].star_eligible is True
        assert ranked[1].star_eligible is False


class TestScoringWeights:

    def test_weights_must_sum_to_one(self):
        with pytest.raises(ValueError, match="sum to 1.0"):
            ScoringWeights(destination=0.5)

    def test_cap_must_be_positive(self):
        with pytest.raises(ValueError):
            ScoringWeights(response_time_cap_hours=0)
