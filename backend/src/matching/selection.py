"""Selection of one STAR plus N BENCH agents from a ranked pool."""

from dataclasses import dataclass, field
from typing import List

from models.agent_match import AgentTier

from .ports import ScoredCandidate


@dataclass(frozen=True)
class SelectedAgent:
    scored: ScoredCandidate
    tier: AgentTier

    @property
    def agent_id(self) -> str:
        return self.scored.agent_id


@dataclass
class SelectionResult:
    """Outcome of one selection round.

    Attributes:
        selected: Agents to match, STAR first when present
        used_bench_fallback: True when no STAR-eligible agent existed
        pool_size: Number of ranked candidates considered
    """
    selected: List[SelectedAgent] = field(default_factory=list)
    used_bench_fallback: bool = False
    pool_size: int = 0

    @property
    def star_count(self) -> int:
        return sum(1 for s in self.selected if s.tier == AgentTier.STAR)

    @property
    def bench_count(self) -> int:
        return sum(1 for s in self.selected if s.tier == AgentTier.BENCH)


def select_agents(
    ranked: List[ScoredCandidate],
    min_agents: int,
    bench_fallback: bool = True,
) -> SelectionResult:
    """Pick the round's agents.

    The highest ranked STAR-eligible candidate becomes STAR; the next
    ``min_agents - 1`` candidates in rank order become BENCH. A smaller pool
    yields fewer agents. Without a STAR-eligible candidate every slot is
    BENCH when ``bench_fallback`` is on, otherwise nothing is selected.

    Args:
        ranked: Candidates sorted by AgentScorer.rank
        min_agents: Target number of agents for the round (>= 1)
        bench_fallback: Allow an all-BENCH round

    Returns:
        SelectionResult
    """
    result = SelectionResult(pool_size=len(ranked))
    if not ranked or min_agents < 1:
        return result

    star = next((s for s in ranked if s.star_eligible), None)
    if star is None:
        if not bench_fallback:
            return result
        result.used_bench_fallback = True
        result.selected = [SelectedAgent(s, AgentTier.BENCH) for s in ranked[:min_agents]]
        return result

    result.selected.append(SelectedAgent(star, AgentTier.STAR))
    bench = [s for s in ranked if s.agent_id != star.agent_id][:min_agents - 1]
    result.selected.extend(SelectedAgent(s, AgentTier.BENCH) for s in bench)
    return result
