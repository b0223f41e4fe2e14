"""Middle detection for totals and spreads markets.

A middle pairs two quotes from different bookmakers whose lines leave a window
in which both bets win.  Width is the primary signal; the combined edge only
has to clear a permissive floor, configured per market.
"""

from __future__ import annotations

from typing import List, Optional, Sequence

from arb_engine.arbitrage import build_opportunity, is_away_outcome, is_home_outcome
from arb_engine.calculations import calculate_edge, round_half_up
from arb_engine.models import (
    DetectionConfig,
    MarketKey,
    NormalizedEvent,
    NormalizedMarket,
    Opportunity,
    OpportunityLeg,
    OpportunityType,
)


class MiddleDetector:
    def __init__(self, config: Optional[DetectionConfig] = None) -> None:
        self._config = config or DetectionConfig()

    def detect(self, event: NormalizedEvent) -> List[Opportunity]:
        opportunities: List[Opportunity] = []
        for market in event.markets:
            if market.key == MarketKey.TOTALS:
                opportunities.extend(self._totals(event, market))
            elif market.key == MarketKey.SPREADS:
                opportunities.extend(self._spreads(event, market))
        opportunities.sort(key=lambda opp: opp.middle_width or 0, reverse=True)
        return opportunities

    def _totals(self, event: NormalizedEvent, market: NormalizedMarket) -> List[Opportunity]:
        overs = [o for o in market.outcomes if o.point is not None and "over" in o.name.lower()]
        unders = [
            o
            for o in market.outcomes
            if o.point is not None and "over" not in o.name.lower() and "under" in o.name.lower()
        ]

        opportunities: List[Opportunity] = []
        for over in overs:
            for under in unders:
                if over.bookmaker == under.bookmaker or under.point <= over.point:
                    continue
                width = round_half_up(under.point - over.point)
                legs = [OpportunityLeg.from_outcome(over), OpportunityLeg.from_outcome(under)]
                opportunity = self._evaluate(
                    event, market.key, legs, width, self._config.totals_middle_edge_floor
                )
                if opportunity:
                    opportunities.append(opportunity)
        return opportunities

    def _spreads(self, event: NormalizedEvent, market: NormalizedMarket) -> List[Opportunity]:
        homes = [o for o in market.outcomes if o.point is not None and is_home_outcome(event, o)]
        aways = [o for o in market.outcomes if o.point is not None and is_away_outcome(event, o)]

        opportunities: List[Opportunity] = []
        for home in homes:
            for away in aways:
                if home.bookmaker == away.bookmaker:
                    continue
                # both sides must be getting points
                if home.point <= 0 or away.point <= 0:
                    continue
                width = round_half_up(home.point + away.point)
                legs = [OpportunityLeg.from_outcome(home), OpportunityLeg.from_outcome(away)]
                opportunity = self._evaluate(
                    event, market.key, legs, width, self._config.spreads_middle_edge_floor
                )
                if opportunity:
                    opportunities.append(opportunity)
        return opportunities

    def _evaluate(
        self,
        event: NormalizedEvent,
        market_key: MarketKey,
        legs: Sequence[OpportunityLeg],
        width: float,
        edge_floor: float,
    ) -> Optional[Opportunity]:
        if width < self._config.min_middle_width:
            return None
        edge = round_half_up(calculate_edge(legs))
        if edge < edge_floor:
            return None
        return build_opportunity(event, market_key, OpportunityType.MIDDLE, legs, edge, middle_width=width)


def detect_middles(event: NormalizedEvent, config: Optional[DetectionConfig] = None) -> List[Opportunity]:
    return MiddleDetector(config).detect(event)


def is_middle(legs: Sequence[OpportunityLeg]) -> bool:
    if len(legs) != 2:
        return False
    first, second = legs
    if first.point is None or second.point is None or first.bookmaker == second.bookmaker:
        return False
    pair = _over_under(first, second)
    if pair:
        over, under = pair
        return under.point > over.point
    return first.point > 0 and second.point > 0


def calculate_middle_width(legs: Sequence[OpportunityLeg]) -> float:
    if len(legs) != 2:
        return 0.0
    first, second = legs
    if first.point is None or second.point is None:
        return 0.0
    pair = _over_under(first, second)
    if pair:
        over, under = pair
        return under.point - over.point
    if first.point > 0 and second.point > 0:
        return first.point + second.point
    return 0.0


def _over_under(first: OpportunityLeg, second: OpportunityLeg):
    a, b = first.outcome.lower(), second.outcome.lower()
    if "over" in a and "under" in b:
        return first, second
    if "under" in a and "over" in b:
        return second, first
    return None
