"""Stake allocation and payout helpers.

Money amounts are ``Decimal`` values quantised to cents.  Arbitrage stakes are
sized so every leg pays out the same amount; the cents lost when rounding each
stake down are added to the last leg so the stakes always sum to the total.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal, ROUND_DOWN, ROUND_HALF_UP
from typing import List, Sequence

from arb_engine.models import Opportunity, OpportunityLeg, OpportunityType, StakedOpportunity

CENT = Decimal("0.01")


@dataclass(frozen=True)
class MiddleOutcomes:
    """Profit or loss of a staked middle under each result."""

    both_win: Decimal
    first_wins: Decimal
    second_wins: Decimal
    both_lose: Decimal


def to_money(value) -> Decimal:
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))


def _odds(leg: OpportunityLeg) -> Decimal:
    return Decimal(str(leg.odds))


def _inverse_sum(legs: Sequence[OpportunityLeg]) -> Decimal:
    return sum((Decimal(1) / _odds(leg) for leg in legs), start=Decimal(0))


def calculate_arb_stakes(legs: Sequence[OpportunityLeg], total_stake) -> List[OpportunityLeg]:
    if not legs:
        return []
    total = to_money(total_stake)
    inverse_sum = _inverse_sum(legs)
    stakes = [((total / _odds(leg)) / inverse_sum).quantize(CENT, rounding=ROUND_DOWN) for leg in legs]
    stakes[-1] += total - sum(stakes, start=Decimal(0))
    return [leg.with_stake(stake) for leg, stake in zip(legs, stakes)]


def calculate_guaranteed_profit(legs: Sequence[OpportunityLeg], total_stake) -> Decimal:
    total = to_money(total_stake)
    payout = total / _inverse_sum(legs)
    return (payout - total).quantize(CENT, rounding=ROUND_HALF_UP)


def calculate_middle_stakes(legs: Sequence[OpportunityLeg], total_stake) -> List[OpportunityLeg]:
    """Flat split across the two legs of a middle.

    Other leg counts fall back to arbitrage sizing.
    """

    if len(legs) != 2:
        return calculate_arb_stakes(legs, total_stake)
    per_leg = (to_money(total_stake) / 2).quantize(CENT, rounding=ROUND_HALF_UP)
    return [leg.with_stake(per_leg) for leg in legs]


def calculate_middle_outcomes(legs: Sequence[OpportunityLeg], total_stake) -> MiddleOutcomes:
    total = to_money(total_stake)
    first, second = calculate_middle_stakes(legs, total)
    first_payout = calculate_payout(first.stake, first.odds)
    second_payout = calculate_payout(second.stake, second.odds)
    return MiddleOutcomes(
        both_win=first_payout + second_payout - total,
        first_wins=first_payout - total,
        second_wins=second_payout - total,
        both_lose=-total,
    )


def calculate_payout(stake, odds: float) -> Decimal:
    return (to_money(stake) * Decimal(str(odds))).quantize(CENT, rounding=ROUND_HALF_UP)


def calculate_roi(profit, stake) -> float:
    stake = to_money(stake)
    if stake == 0:
        return 0.0
    roi = to_money(profit) / stake * 100
    return float(roi.quantize(CENT, rounding=ROUND_HALF_UP))


def add_stakes_to_opportunity(opportunity: Opportunity, total_stake) -> StakedOpportunity:
    total = to_money(total_stake)
    if opportunity.type == OpportunityType.ARB:
        legs = calculate_arb_stakes(opportunity.legs, total)
        profit = calculate_guaranteed_profit(opportunity.legs, total)
    else:
        legs = calculate_middle_stakes(opportunity.legs, total)
        profit = Decimal("0.00")
    return StakedOpportunity(
        opportunity=opportunity,
        legs=tuple(legs),
        total_stake=total,
        guaranteed_profit=profit,
    )


def validate_stakes(legs: Sequence[OpportunityLeg]) -> bool:
    return all(leg.stake is not None and leg.stake.is_finite() and leg.stake > 0 for leg in legs)
