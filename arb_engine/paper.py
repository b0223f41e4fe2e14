"""Paper fill simulation.

Models what would have happened had an opportunity been executed: the fill can
be missed outright, or the odds can slip between detection and placement and
eat the edge.  All randomness comes from an injected ``random.Random`` so runs
are reproducible.
"""

from __future__ import annotations

import random
import time
from typing import Callable, Optional, Sequence, Tuple

from arb_engine.calculations import calculate_edge, round_half_up
from arb_engine.models import FillStatus, Opportunity, OpportunityLeg, PaperFillResult, PaperSimulationConfig

MIN_SLIPPAGE = 0.01
MIN_ODDS = 1.01
EDGE_LOST_ESTIMATE = 0.15

_STATUS_DESCRIPTIONS = {
    FillStatus.OPEN: "Position opened successfully",
    FillStatus.MISSED: "Fill missed due to timing",
    FillStatus.EDGE_LOST: "Edge lost due to odds movement",
}


def decide_fill(
    opportunity: Opportunity,
    sim_config: PaperSimulationConfig,
    min_edge: float,
    rng: random.Random,
) -> PaperFillResult:
    """Decide the outcome of a fill attempt without any delay."""

    original_edge = opportunity.edge_pct
    original_legs = tuple(opportunity.legs)
    latency_ms = rng.randint(sim_config.latency_ms_min, sim_config.latency_ms_max)

    if rng.random() < sim_config.miss_fill_prob:
        return PaperFillResult(
            filled=False,
            status=FillStatus.MISSED,
            original_edge=original_edge,
            final_edge=original_edge,
            original_legs=original_legs,
            final_legs=original_legs,
            latency_ms=latency_ms,
        )

    final_legs, slippage = apply_slippage(original_legs, sim_config)
    raw_edge = calculate_edge(final_legs)
    final_edge = round_half_up(raw_edge)

    if raw_edge < min_edge:
        filled = sim_config.fill_even_if_edge_lost
        status = FillStatus.EDGE_LOST
    else:
        filled = True
        status = FillStatus.OPEN

    return PaperFillResult(
        filled=filled,
        status=status,
        original_edge=original_edge,
        final_edge=final_edge,
        original_legs=original_legs,
        final_legs=final_legs,
        latency_ms=latency_ms,
        slippage_applied=slippage,
    )


def apply_slippage(
    legs: Sequence[OpportunityLeg],
    sim_config: PaperSimulationConfig,
) -> Tuple[Tuple[OpportunityLeg, ...], Tuple[float, ...]]:
    slipped = []
    applied = []
    for leg in legs:
        if sim_config.slippage_bps <= 0:
            slipped.append(leg)
            applied.append(0.0)
            continue
        amount = max(leg.odds * sim_config.slippage_bps / 10000, MIN_SLIPPAGE)
        amount = min(amount, sim_config.max_leg_odds_worsen)
        # never better than the quoted price
        new_odds = min(round_half_up(max(leg.odds - amount, MIN_ODDS)), leg.odds)
        applied.append(leg.odds - new_odds)
        slipped.append(leg.with_odds(new_odds))
    return tuple(slipped), tuple(applied)


def simulate_paper_fill_sync(
    opportunity: Opportunity,
    sim_config: Optional[PaperSimulationConfig] = None,
    min_edge: float = 0.5,
    rng: Optional[random.Random] = None,
) -> PaperFillResult:
    return decide_fill(opportunity, sim_config or PaperSimulationConfig(), min_edge, rng or random.Random())


def simulate_paper_fill(
    opportunity: Opportunity,
    sim_config: Optional[PaperSimulationConfig] = None,
    min_edge: float = 0.5,
    rng: Optional[random.Random] = None,
    sleep: Callable[[float], None] = time.sleep,
) -> PaperFillResult:
    """Like :func:`simulate_paper_fill_sync` but waits out the sampled latency."""

    result = simulate_paper_fill_sync(opportunity, sim_config, min_edge, rng)
    sleep(result.latency_ms / 1000)
    return result


class PaperFillSimulator:
    """Owns a simulation config and a seedable random source."""

    def __init__(
        self,
        sim_config: Optional[PaperSimulationConfig] = None,
        min_edge: float = 0.5,
        rng: Optional[random.Random] = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.sim_config = sim_config or PaperSimulationConfig()
        self.min_edge = min_edge
        self._rng = rng or random.Random()
        self._sleep = sleep

    def simulate(self, opportunity: Opportunity, wait: bool = False) -> PaperFillResult:
        if wait:
            return simulate_paper_fill(opportunity, self.sim_config, self.min_edge, self._rng, self._sleep)
        return decide_fill(opportunity, self.sim_config, self.min_edge, self._rng)


def expected_fill_rate(sim_config: PaperSimulationConfig) -> float:
    """Rough share of attempts expected to end in a filled position."""

    base = 1 - sim_config.miss_fill_prob
    if sim_config.fill_even_if_edge_lost:
        return base
    return base * (1 - EDGE_LOST_ESTIMATE)


def status_description(status: FillStatus) -> str:
    return _STATUS_DESCRIPTIONS.get(FillStatus(status), "Unknown status")
