"""Windowed accumulation and per-event bundling of opportunities."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, Dict, Iterable, List

from arb_engine.calculations import round_half_up
from arb_engine.models import BundledOpportunities, Opportunity, OpportunityType
from dedupe.cache import monotonic_ms


@dataclass(frozen=True)
class BundleStats:
    count: int
    best_edge: float
    avg_edge: float
    arb_count: int
    middle_count: int


def bundle_by_event(opportunities: Iterable[Opportunity], max_per_event: int = 5) -> List[BundledOpportunities]:
    by_event: Dict[str, List[Opportunity]] = {}
    for opportunity in opportunities:
        by_event.setdefault(opportunity.event_id, []).append(opportunity)

    bundles: List[BundledOpportunities] = []
    for event_id, grouped in by_event.items():
        ranked = sorted(grouped, key=lambda opp: opp.edge_pct, reverse=True)[:max_per_event]
        best_edge = ranked[0].edge_pct if ranked else 0.0
        bundles.append(BundledOpportunities(event_id=event_id, opportunities=ranked, best_edge=best_edge))

    bundles.sort(key=lambda bundle: bundle.best_edge, reverse=True)
    return bundles


def flatten_bundles(bundles: Iterable[BundledOpportunities]) -> List[Opportunity]:
    return [opportunity for bundle in bundles for opportunity in bundle.opportunities]


def bundle_stats(bundle: BundledOpportunities) -> BundleStats:
    opportunities = bundle.opportunities
    avg_edge = sum(opp.edge_pct for opp in opportunities) / len(opportunities) if opportunities else 0.0
    return BundleStats(
        count=len(opportunities),
        best_edge=bundle.best_edge,
        avg_edge=round_half_up(avg_edge),
        arb_count=sum(1 for opp in opportunities if opp.type == OpportunityType.ARB),
        middle_count=sum(1 for opp in opportunities if opp.type == OpportunityType.MIDDLE),
    )


class OpportunityBuffer:
    """Collects detections until the window elapses, then hands out bundles."""

    def __init__(self, window_ms: float = 10_000, clock: Callable[[], float] = monotonic_ms) -> None:
        self._window_ms = window_ms
        self._clock = clock
        self._buffer: List[Opportunity] = []
        self._last_flush = clock()

    def add(self, opportunities: Iterable[Opportunity]) -> None:
        self._buffer.extend(opportunities)

    def should_flush(self) -> bool:
        return self._clock() - self._last_flush >= self._window_ms

    def flush(self, max_per_event: int = 5) -> List[BundledOpportunities]:
        bundles = bundle_by_event(self._buffer, max_per_event)
        self.clear()
        return bundles

    def size(self) -> int:
        return len(self._buffer)

    def peek(self) -> List[Opportunity]:
        return list(self._buffer)

    def clear(self) -> None:
        self._buffer = []
        self._last_flush = self._clock()

    def set_window(self, window_ms: float) -> None:
        self._window_ms = window_ms
