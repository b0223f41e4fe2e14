"""Core data model shared by the detection, staking and simulation code."""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import List, Optional, Tuple


class MarketKey(str, Enum):
    """Supported market types, valued with the provider's wire keys."""

    MONEYLINE = "h2h"
    TOTALS = "totals"
    SPREADS = "spreads"


class OpportunityType(str, Enum):
    ARB = "ARB"
    MIDDLE = "MIDDLE"


class FillStatus(str, Enum):
    PENDING = "PENDING"
    OPEN = "OPEN"
    MISSED = "MISSED"
    EDGE_LOST = "EDGE_LOST"
    CLOSED = "CLOSED"


class DeliveryStatus(str, Enum):
    SENT = "SENT"
    FAILED = "FAILED"
    SKIPPED = "SKIPPED"


@dataclass(frozen=True)
class NormalizedOutcome:
    """A single bookmaker quote for one outcome."""

    name: str
    price: float
    bookmaker: str
    bookmaker_title: str
    point: Optional[float] = None


@dataclass
class NormalizedMarket:
    key: MarketKey
    outcomes: List[NormalizedOutcome] = field(default_factory=list)


@dataclass
class NormalizedEvent:
    """Per-event odds merged across bookmakers and grouped by market."""

    id: str
    sport_key: str
    sport_title: str
    commence_time: Optional[datetime]
    home_team: str
    away_team: str
    markets: List[NormalizedMarket] = field(default_factory=list)

    def market(self, key: MarketKey) -> Optional[NormalizedMarket]:
        for market in self.markets:
            if market.key == key:
                return market
        return None


@dataclass(frozen=True)
class OpportunityLeg:
    """One bet of an opportunity. ``stake`` stays ``None`` until allocated."""

    outcome: str
    bookmaker: str
    bookmaker_title: str
    odds: float
    point: Optional[float] = None
    stake: Optional[Decimal] = None

    def with_stake(self, stake: Decimal) -> "OpportunityLeg":
        return replace(self, stake=stake)

    def with_odds(self, odds: float) -> "OpportunityLeg":
        return replace(self, odds=odds)

    def as_dict(self) -> dict:
        return {
            "outcome": self.outcome,
            "bookmaker": self.bookmaker,
            "bookmaker_title": self.bookmaker_title,
            "odds": self.odds,
            "point": self.point,
            "stake": float(self.stake) if self.stake is not None else None,
        }

    @classmethod
    def from_outcome(cls, outcome: NormalizedOutcome, label: Optional[str] = None) -> "OpportunityLeg":
        return cls(
            outcome=label if label is not None else outcome.name,
            bookmaker=outcome.bookmaker,
            bookmaker_title=outcome.bookmaker_title,
            odds=outcome.price,
            point=outcome.point,
        )


@dataclass(frozen=True)
class Opportunity:
    """A detected arbitrage or middle. Immutable once created."""

    fingerprint: str
    event_id: str
    sport_key: str
    sport_title: Optional[str]
    commence_time: Optional[datetime]
    home_team: str
    away_team: str
    type: OpportunityType
    market_key: MarketKey
    edge_pct: float
    legs: Tuple[OpportunityLeg, ...]
    middle_width: Optional[float] = None

    @property
    def summary(self) -> str:
        return f"{self.home_team} vs {self.away_team} - {self.market_key.value}"

    @property
    def bookmakers(self) -> set[str]:
        return {leg.bookmaker for leg in self.legs}


@dataclass(frozen=True)
class StakedOpportunity:
    """Derived view of an opportunity with stakes allocated to its legs."""

    opportunity: Opportunity
    legs: Tuple[OpportunityLeg, ...]
    total_stake: Decimal
    guaranteed_profit: Decimal


@dataclass
class BundledOpportunities:
    event_id: str
    opportunities: List[Opportunity]
    best_edge: float


@dataclass(frozen=True)
class DedupeEntry:
    fingerprint: str
    timestamp: float


@dataclass
class DetectionConfig:
    """Thresholds used by the detectors.

    Edge values are percentages; widths are points. The middle edge floors are
    the lowest combined edge a middle may carry and still be emitted.
    """

    min_edge: float = 0.5
    min_middle_width: float = 0.5
    stake_default: Decimal = Decimal("100")
    totals_middle_edge_floor: float = -5.0
    spreads_middle_edge_floor: float = -10.0


@dataclass
class PaperSimulationConfig:
    latency_ms_min: int = 400
    latency_ms_max: int = 2200
    slippage_bps: float = 35
    miss_fill_prob: float = 0.08
    max_leg_odds_worsen: float = 0.15
    fill_even_if_edge_lost: bool = False

    def __post_init__(self) -> None:
        if self.latency_ms_min < 0 or self.latency_ms_max < self.latency_ms_min:
            raise ValueError(
                f"Invalid latency range [{self.latency_ms_min}, {self.latency_ms_max}]"
            )
        if not 0 <= self.miss_fill_prob <= 1:
            raise ValueError(f"miss_fill_prob must be within [0, 1], got {self.miss_fill_prob}")
        if self.slippage_bps < 0:
            raise ValueError("slippage_bps cannot be negative")
        if self.max_leg_odds_worsen < 0:
            raise ValueError("max_leg_odds_worsen cannot be negative")


@dataclass(frozen=True)
class PaperFillResult:
    filled: bool
    status: FillStatus
    original_edge: float
    final_edge: float
    original_legs: Tuple[OpportunityLeg, ...]
    final_legs: Tuple[OpportunityLeg, ...]
    latency_ms: int
    slippage_applied: Tuple[float, ...] = ()
