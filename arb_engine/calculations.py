"""Odds conversion and implied probability helpers."""

from __future__ import annotations

from decimal import Decimal, ROUND_HALF_UP
from typing import Callable, Dict, Hashable, Iterable, Optional, Sequence

from arb_engine.models import NormalizedOutcome, OpportunityLeg


class OddsConversionError(ValueError):
    """Raised when an odds value cannot be converted."""


def american_to_decimal(american: int) -> Decimal:
    if american == 0:
        raise OddsConversionError("American odds cannot be zero")
    if american > 0:
        return Decimal(american) / Decimal(100) + Decimal(1)
    return Decimal(100) / Decimal(abs(american)) + Decimal(1)


def decimal_to_american(decimal_odds: float) -> int:
    if decimal_odds <= 1:
        raise OddsConversionError(f"Decimal odds must exceed 1.0, got {decimal_odds}")
    if decimal_odds >= 2:
        return int(round_half_up((decimal_odds - 1) * 100, 0))
    return int(round_half_up(-100 / (decimal_odds - 1), 0))


def implied_probability(odds: float) -> float:
    return 1 / odds


def implied_sum(legs: Iterable[OpportunityLeg]) -> float:
    return sum(1 / leg.odds for leg in legs)


def calculate_edge(legs: Sequence[OpportunityLeg]) -> float:
    """Unrounded edge percentage: ``(1 - sum(1/odds)) * 100``."""

    return (1 - implied_sum(legs)) * 100


def is_arbitrage(legs: Sequence[OpportunityLeg]) -> bool:
    return bool(legs) and implied_sum(legs) < 1


def round_half_up(value: float, places: int = 2) -> float:
    """Round away from zero on ties, unlike the built-in banker's rounding."""

    quantum = Decimal(1).scaleb(-places)
    return float(Decimal(repr(value)).quantize(quantum, rounding=ROUND_HALF_UP))


def select_best_prices(
    quotes: Iterable[NormalizedOutcome],
    key: Optional[Callable[[NormalizedOutcome], Hashable]] = None,
) -> Dict[Hashable, NormalizedOutcome]:
    """Keep the highest priced quote per key (outcome name by default).

    Ties keep the first quote seen.
    """

    key = key or (lambda quote: quote.name)
    best: Dict[Hashable, NormalizedOutcome] = {}
    for quote in quotes:
        bucket = key(quote)
        current = best.get(bucket)
        if current is None or quote.price > current.price:
            best[bucket] = quote
    return best
