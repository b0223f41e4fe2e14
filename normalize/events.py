"""Reshape raw provider events into :class:`NormalizedEvent` objects.

The Odds API returns one block per bookmaker, each with its own list of
markets.  Detection wants the opposite view: one list of quotes per market with
every quote tagged by its bookmaker.  This module performs that regrouping and
nothing else; quotes that are missing required fields are dropped here so the
detectors never see them.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, Iterable, List, Optional

from arb_engine.calculations import OddsConversionError, american_to_decimal
from arb_engine.models import MarketKey, NormalizedEvent, NormalizedMarket, NormalizedOutcome

_POINT_MARKETS = {MarketKey.TOTALS, MarketKey.SPREADS}


class MalformedEventError(ValueError):
    """Raised when a raw event lacks the fields needed to identify it."""


@dataclass
class NormalizationResult:
    events: List[NormalizedEvent] = field(default_factory=list)
    skipped: int = 0


class EventNormalizer:
    def __init__(self, odds_format: str = "decimal") -> None:
        if odds_format not in ("decimal", "american"):
            raise ValueError(f"Unsupported odds format: {odds_format}")
        self._odds_format = odds_format

    def normalize_events(self, raw_events: Iterable[dict]) -> NormalizationResult:
        result = NormalizationResult()
        for raw in raw_events:
            try:
                result.events.append(self.normalize_event(raw))
            except MalformedEventError:
                result.skipped += 1
        return result

    def normalize_event(self, raw: dict) -> NormalizedEvent:
        if not isinstance(raw, dict):
            raise MalformedEventError("Event payload must be an object")
        event_id = raw.get("id")
        home_team = raw.get("home_team")
        away_team = raw.get("away_team")
        if not event_id or not home_team or not away_team:
            raise MalformedEventError(f"Event {event_id!r} is missing id or team names")

        grouped: Dict[MarketKey, List[NormalizedOutcome]] = {}
        for bookmaker in _list(raw.get("bookmakers")):
            if not isinstance(bookmaker, dict) or not bookmaker.get("key"):
                continue
            book_key = bookmaker["key"]
            book_title = bookmaker.get("title") or book_key
            for market in _list(bookmaker.get("markets")):
                if not isinstance(market, dict):
                    continue
                market_key = _market_key(market.get("key"))
                if market_key is None:
                    continue
                outcomes = grouped.setdefault(market_key, [])
                for outcome in _list(market.get("outcomes")):
                    parsed = self._outcome(outcome, market_key, book_key, book_title)
                    if parsed is not None:
                        outcomes.append(parsed)

        return NormalizedEvent(
            id=str(event_id),
            sport_key=raw.get("sport_key") or "",
            sport_title=raw.get("sport_title") or "",
            commence_time=parse_time(raw.get("commence_time")),
            home_team=home_team,
            away_team=away_team,
            markets=[NormalizedMarket(key, outcomes) for key, outcomes in grouped.items() if outcomes],
        )

    def _outcome(
        self,
        outcome: object,
        market_key: MarketKey,
        book_key: str,
        book_title: str,
    ) -> Optional[NormalizedOutcome]:
        if not isinstance(outcome, dict):
            return None
        name = outcome.get("name")
        if not isinstance(name, str) or not name.strip():
            return None
        price = self._price(outcome.get("price"))
        if price is None:
            return None
        point = _float_or_none(outcome.get("point"))
        if market_key in _POINT_MARKETS and point is None:
            return None
        return NormalizedOutcome(
            name=name,
            price=price,
            bookmaker=book_key,
            bookmaker_title=book_title,
            point=point,
        )

    def _price(self, value: object) -> Optional[float]:
        if self._odds_format == "american":
            try:
                price = float(american_to_decimal(int(value)))
            except (TypeError, ValueError, OverflowError, OddsConversionError):
                return None
        else:
            price = _float_or_none(value)
        if price is None or price <= 1.0:
            return None
        return price


def _list(value: object) -> list:
    return value if isinstance(value, list) else []


def _market_key(value: object) -> Optional[MarketKey]:
    try:
        return MarketKey(value)
    except ValueError:
        return None


def _float_or_none(value: object) -> Optional[float]:
    if value is None or isinstance(value, bool):
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    if number != number or number in (float("inf"), float("-inf")):
        return None
    return number


def parse_time(value: Optional[str]) -> Optional[datetime]:
    if not value or not isinstance(value, str):
        return None
    try:
        if value.endswith("Z"):
            return datetime.fromisoformat(value.replace("Z", "+00:00"))
        return datetime.fromisoformat(value)
    except ValueError:
        return None
