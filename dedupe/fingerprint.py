"""Content hashes identifying opportunities independent of leg order."""

from __future__ import annotations

import hashlib
from typing import Iterable, List

from arb_engine.models import MarketKey, OpportunityLeg, OpportunityType

FINGERPRINT_LENGTH = 32


def generate_fingerprint(
    event_id: str,
    market_key: MarketKey,
    opportunity_type: OpportunityType,
    legs: Iterable[OpportunityLeg],
) -> str:
    parts = [f"{leg.outcome}|{leg.bookmaker}|{leg.odds:.2f}|{_format_point(leg.point)}" for leg in _sorted(legs)]
    return _digest(event_id, market_key, opportunity_type, parts)


def generate_stable_fingerprint(
    event_id: str,
    market_key: MarketKey,
    opportunity_type: OpportunityType,
    legs: Iterable[OpportunityLeg],
) -> str:
    """Fingerprint without odds, so a drifting price keeps the same identity."""

    parts = [f"{leg.outcome}|{leg.bookmaker}|{_format_point(leg.point)}" for leg in _sorted(legs)]
    return _digest(event_id, market_key, opportunity_type, parts)


def _sorted(legs: Iterable[OpportunityLeg]) -> List[OpportunityLeg]:
    return sorted(legs, key=lambda leg: (leg.outcome, leg.bookmaker))


def _format_point(point: float | None) -> str:
    return "null" if point is None else f"{point:.2f}"


def _digest(event_id: str, market_key: MarketKey, opportunity_type: OpportunityType, parts: List[str]) -> str:
    data = "|".join([event_id, MarketKey(market_key).value, OpportunityType(opportunity_type).value, *parts])
    return hashlib.sha256(data.encode("utf-8")).hexdigest()[:FINGERPRINT_LENGTH]
