"""Arbitrage detection across bookmakers.

For every market present on an event the detector looks for a set of legs, one
per mutually exclusive outcome, whose implied probabilities sum to less than
one.  The edge is ``(1 - sum(1/odds)) * 100`` rounded to two decimals, and only
candidates at or above ``DetectionConfig.min_edge`` are emitted.

Moneyline markets take the best price per outcome name (2-way and 3-way alike),
totals pair the best Over and Under at each line, and spreads pair each home
quote with away quotes on the mirrored line.
"""

from __future__ import annotations

from collections import defaultdict
from typing import Dict, List, Optional, Sequence

from arb_engine.calculations import calculate_edge, implied_sum, round_half_up, select_best_prices
from arb_engine.models import (
    DetectionConfig,
    MarketKey,
    NormalizedEvent,
    NormalizedMarket,
    NormalizedOutcome,
    Opportunity,
    OpportunityLeg,
    OpportunityType,
)
from dedupe.fingerprint import generate_fingerprint

SPREAD_POINT_TOLERANCE = 0.01


class ArbitrageDetector:
    def __init__(self, config: Optional[DetectionConfig] = None) -> None:
        self._config = config or DetectionConfig()

    def detect(self, event: NormalizedEvent) -> List[Opportunity]:
        opportunities: List[Opportunity] = []
        for market in event.markets:
            if market.key == MarketKey.MONEYLINE:
                opportunities.extend(self._moneyline(event, market))
            elif market.key == MarketKey.TOTALS:
                opportunities.extend(self._totals(event, market))
            elif market.key == MarketKey.SPREADS:
                opportunities.extend(self._spreads(event, market))
        return opportunities

    def _moneyline(self, event: NormalizedEvent, market: NormalizedMarket) -> List[Opportunity]:
        best = select_best_prices(market.outcomes)
        if len(best) < 2:
            return []
        legs = [OpportunityLeg.from_outcome(outcome, label=name) for name, outcome in best.items()]
        opportunity = self._evaluate(event, market.key, legs)
        return [opportunity] if opportunity else []

    def _totals(self, event: NormalizedEvent, market: NormalizedMarket) -> List[Opportunity]:
        overs: Dict[float, List[NormalizedOutcome]] = defaultdict(list)
        unders: Dict[float, List[NormalizedOutcome]] = defaultdict(list)
        for outcome in market.outcomes:
            if outcome.point is None:
                continue
            side = outcome.name.lower()
            if "over" in side:
                overs[outcome.point].append(outcome)
            elif "under" in side:
                unders[outcome.point].append(outcome)

        opportunities: List[Opportunity] = []
        for line, line_overs in overs.items():
            line_unders = unders.get(line)
            if not line_unders:
                continue
            best_over = select_best_prices(line_overs, key=_line_key)[line]
            best_under = select_best_prices(line_unders, key=_line_key)[line]
            legs = [OpportunityLeg.from_outcome(best_over), OpportunityLeg.from_outcome(best_under)]
            opportunity = self._evaluate(event, market.key, legs)
            if opportunity:
                opportunities.append(opportunity)
        return opportunities

    def _spreads(self, event: NormalizedEvent, market: NormalizedMarket) -> List[Opportunity]:
        homes = [o for o in market.outcomes if is_home_outcome(event, o)]
        aways = [o for o in market.outcomes if is_away_outcome(event, o)]

        opportunities: List[Opportunity] = []
        for home in homes:
            if home.point is None:
                continue
            for away in aways:
                if away.point is None or abs(away.point + home.point) >= SPREAD_POINT_TOLERANCE:
                    continue
                if away.bookmaker == home.bookmaker:
                    continue
                legs = [OpportunityLeg.from_outcome(home), OpportunityLeg.from_outcome(away)]
                opportunity = self._evaluate(event, market.key, legs)
                if opportunity:
                    opportunities.append(opportunity)
        return opportunities

    def _evaluate(
        self,
        event: NormalizedEvent,
        market_key: MarketKey,
        legs: Sequence[OpportunityLeg],
    ) -> Optional[Opportunity]:
        if len(legs) < 2 or len({leg.bookmaker for leg in legs}) < 2:
            return None
        if implied_sum(legs) >= 1:
            return None
        edge = round_half_up(calculate_edge(legs))
        if edge < self._config.min_edge:
            return None
        return build_opportunity(event, market_key, OpportunityType.ARB, legs, edge)


def detect_arbitrages(event: NormalizedEvent, config: Optional[DetectionConfig] = None) -> List[Opportunity]:
    return ArbitrageDetector(config).detect(event)


def is_home_outcome(event: NormalizedEvent, outcome: NormalizedOutcome) -> bool:
    return outcome.name == event.home_team or "home" in outcome.name.lower()


def is_away_outcome(event: NormalizedEvent, outcome: NormalizedOutcome) -> bool:
    return outcome.name == event.away_team or "away" in outcome.name.lower()


def build_opportunity(
    event: NormalizedEvent,
    market_key: MarketKey,
    opportunity_type: OpportunityType,
    legs: Sequence[OpportunityLeg],
    edge_pct: float,
    middle_width: Optional[float] = None,
) -> Opportunity:
    legs = tuple(legs)
    return Opportunity(
        fingerprint=generate_fingerprint(event.id, market_key, opportunity_type, legs),
        event_id=event.id,
        sport_key=event.sport_key,
        sport_title=event.sport_title,
        commence_time=event.commence_time,
        home_team=event.home_team,
        away_team=event.away_team,
        type=opportunity_type,
        market_key=market_key,
        edge_pct=edge_pct,
        legs=legs,
        middle_width=middle_width,
    )


def _line_key(outcome: NormalizedOutcome) -> Optional[float]:
    return outcome.point
