"""Scan scheduling and orchestration."""

from __future__ import annotations

import logging
import random
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from typing import Callable, Dict, List, Optional, Sequence

from arb_engine.arbitrage import ArbitrageDetector
from arb_engine.middles import MiddleDetector
from arb_engine.models import (
    DeliveryStatus,
    FillStatus,
    Opportunity,
    OpportunityType,
    StakedOpportunity,
)
from arb_engine.paper import decide_fill
from arb_engine.stakes import add_stakes_to_opportunity
from bundling.buffer import OpportunityBuffer, flatten_bundles
from controller.settings import WorkerSettings
from dedupe.cache import DedupeCache
from normalize.events import EventNormalizer
from odds_client.client import OddsApiClient
from persistence.database import Database, Heartbeat, PaperAccount, PaperPosition

logger = logging.getLogger("edgewatch")

OUTRIGHT_MARKER = "_winner"


@dataclass
class Subscriber:
    """A notification target; ``send`` raises when delivery fails."""

    user_id: str
    channel: str
    send: Callable[[StakedOpportunity], None]


@dataclass
class PollResult:
    poll: int
    sports_scanned: List[str] = field(default_factory=list)
    sports_failed: List[str] = field(default_factory=list)
    detected: int = 0
    flushed: int = 0
    new_opportunities: List[Opportunity] = field(default_factory=list)
    deliveries_sent: int = 0
    deliveries_failed: int = 0
    paper_fills: int = 0
    error: Optional[str] = None


class ScanController:
    def __init__(
        self,
        client: OddsApiClient,
        database: Database,
        settings: WorkerSettings,
        dedupe_cache: DedupeCache,
        buffer: OpportunityBuffer,
        subscribers: Sequence[Subscriber] = (),
        normalizer: Optional[EventNormalizer] = None,
        rng: Optional[random.Random] = None,
    ) -> None:
        self._client = client
        self._db = database
        self._settings = settings
        self._dedupe = dedupe_cache
        self._buffer = buffer
        self._subscribers = list(subscribers)
        self._normalizer = normalizer or EventNormalizer()
        self._rng = rng or random.Random()
        self._arbitrage = ArbitrageDetector(settings.detection)
        self._middles = MiddleDetector(settings.detection)
        self._thread: Optional[threading.Thread] = None
        self._stop_event = threading.Event()
        self._polls = 0
        self._last_error: Optional[str] = None

    @property
    def polls(self) -> int:
        return self._polls

    @property
    def last_error(self) -> Optional[str]:
        return self._last_error

    def start(self) -> None:
        if self._thread and self._thread.is_alive():
            raise RuntimeError("Scan already running")
        self._stop_event.clear()
        self.record_heartbeat()
        self._thread = threading.Thread(target=self._run_loop, name="edgewatch-scanner", daemon=True)
        self._thread.start()
        self._log("info", "Continuous scanning started", {"interval_ms": self._settings.interval_ms})

    def stop(self, timeout: Optional[float] = None) -> None:
        self._stop_event.set()
        if self._thread and self._thread.is_alive():
            self._thread.join(timeout=timeout)
        # a poll still in flight keeps its thread so wait() can finish it
        if self._thread and not self._thread.is_alive():
            self._thread = None
        self._log("info", "Scanning stopped", {"polls": self._polls})

    def wait(self) -> None:
        """Block until the loop thread exits."""

        while self._thread and self._thread.is_alive():
            self._thread.join(timeout=0.5)

    def _run_loop(self) -> None:
        interval = self._settings.interval_ms / 1000
        while not self._stop_event.is_set():
            start_time = time.monotonic()
            try:
                self.run_poll()
            except Exception as exc:
                self._last_error = str(exc)
                logger.exception("Poll %s failed", self._polls)
            sleep_for = max(interval - (time.monotonic() - start_time), 0)
            if sleep_for:
                self._stop_event.wait(timeout=sleep_for)

    def run_poll(self) -> PollResult:
        self._polls += 1
        result = PollResult(poll=self._polls)
        try:
            detected: List[Opportunity] = []
            for sport in self._sports_to_scan():
                try:
                    found = self.scan_sport(sport)
                except Exception as exc:
                    self._log("error", "Sport scan failed", {"sport": sport, "error": str(exc)})
                    result.sports_failed.append(sport)
                    continue
                result.sports_scanned.append(sport)
                detected.extend(found)
            result.detected = len(detected)

            self._buffer.add(detected)
            if self._buffer.should_flush():
                bundles = self._buffer.flush(self._settings.max_per_event_bundle)
                flattened = flatten_bundles(bundles)
                result.flushed = len(flattened)
                if flattened:
                    self._process_opportunities(flattened, result)
            self._last_error = None
        except Exception as exc:
            self._last_error = str(exc)
            result.error = str(exc)
            self._log("error", "Poll failed", {"poll": self._polls, "error": str(exc)})

        self._log(
            "info",
            "Poll completed",
            {
                "poll": self._polls,
                "sports_scanned": len(result.sports_scanned),
                "sports_failed": result.sports_failed,
                "detected": result.detected,
                "flushed": result.flushed,
                "new": len(result.new_opportunities),
            },
        )

        if self._polls % self._settings.heartbeat_every_polls == 0:
            self.record_heartbeat()
        if self._polls % self._settings.cleanup_every_polls == 0:
            removed = self._dedupe.cleanup()
            self._log("info", "Dedupe cache cleaned", {"removed": removed, "size": self._dedupe.size()})
        return result

    def scan_sport(self, sport: str) -> List[Opportunity]:
        raw_events = self._client.get_odds(sport, self._settings.markets)
        rate_limit = self._client.rate_limit
        self._db.log_api_usage(rate_limit.remaining, rate_limit.used)

        normalized = self._normalizer.normalize_events(raw_events)
        opportunities: List[Opportunity] = []
        for event in normalized.events:
            opportunities.extend(self._arbitrage.detect(event))
            opportunities.extend(self._middles.detect(event))
        self._log(
            "info",
            "Sport processed",
            {
                "sport": sport,
                "events_received": len(raw_events),
                "events_skipped": normalized.skipped,
                "opportunities_found": len(opportunities),
            },
        )
        return opportunities

    def record_heartbeat(self) -> None:
        heartbeat = Heartbeat(
            last_scan_at=datetime.now(timezone.utc),
            polls=self._polls,
            last_error=self._last_error,
            api_calls=self._client.api_calls,
        )
        try:
            self._db.record_heartbeat(heartbeat)
        except Exception as exc:
            self._log("error", "Heartbeat update failed", {"error": str(exc)})

    def _log(self, level: str, message: str, context: Optional[dict] = None) -> None:
        # Database.log echoes to the console before it writes the row
        try:
            self._db.log(level, message, context)
        except Exception as exc:
            logger.error("Could not persist log entry %r: %s", message, exc)

    def _sports_to_scan(self) -> List[str]:
        active = [sport.get("key") for sport in self._client.list_sports() if sport.get("key")]
        if self._settings.scan_all_sports:
            return [key for key in active if OUTRIGHT_MARKER not in key]
        available = set(active)
        return [sport for sport in self._settings.sports if sport in available]

    def _process_opportunities(self, opportunities: List[Opportunity], result: PollResult) -> None:
        fresh = [opp for opp in opportunities if self._dedupe.check_and_add(opp.fingerprint)]
        if not fresh:
            return
        result.new_opportunities.extend(fresh)
        self._log("info", "New opportunities found", {"count": len(fresh)})

        ids: Dict[str, int] = {opp.fingerprint: self._db.upsert_opportunity(opp) for opp in fresh}
        for opp in fresh:
            self._deliver(opp, ids[opp.fingerprint], result)
        result.paper_fills += self._process_paper_fills(fresh)

    def _deliver(self, opportunity: Opportunity, opportunity_id: int, result: PollResult) -> None:
        if not self._subscribers:
            return
        staked = add_stakes_to_opportunity(opportunity, self._settings.detection.stake_default)
        for subscriber in self._subscribers:
            if self._db.has_delivered(opportunity_id, subscriber.user_id):
                continue
            try:
                subscriber.send(staked)
            except Exception as exc:
                self._db.record_delivery(
                    opportunity_id, subscriber.user_id, DeliveryStatus.FAILED, subscriber.channel, str(exc)
                )
                self._log(
                    "error",
                    "Notification failed",
                    {"user_id": subscriber.user_id, "channel": subscriber.channel, "error": str(exc)},
                )
                result.deliveries_failed += 1
                continue
            self._db.record_delivery(opportunity_id, subscriber.user_id, DeliveryStatus.SENT, subscriber.channel)
            result.deliveries_sent += 1

    def _process_paper_fills(self, opportunities: List[Opportunity]) -> int:
        fills = 0
        for account in self._db.paper_accounts_with_auto_fill():
            if self._db.open_position_count(account.user_id) >= account.max_open:
                continue
            if self._fill_for_account(account, opportunities):
                fills += 1
        return fills

    def _fill_for_account(self, account: PaperAccount, opportunities: List[Opportunity]) -> bool:
        detection = self._settings.detection
        stake_total: Decimal = detection.stake_default
        for opp in opportunities:
            if opp.type != OpportunityType.ARB or opp.edge_pct < detection.min_edge:
                continue
            if account.bankroll < stake_total:
                continue

            fill = decide_fill(opp, account.simulation, detection.min_edge, self._rng)
            if fill.filled:
                self._db.create_paper_position(
                    PaperPosition(
                        user_id=account.user_id,
                        type=opp.type,
                        event_id=opp.event_id,
                        summary=opp.summary,
                        stake_total=stake_total,
                        edge_pct=fill.final_edge,
                        status=FillStatus.EDGE_LOST if fill.status == FillStatus.EDGE_LOST else FillStatus.OPEN,
                        legs=fill.final_legs,
                        latency_ms=fill.latency_ms,
                        slippage_applied=fill.slippage_applied,
                    )
                )
                self._db.debit_bankroll(account.user_id, stake_total)
                self._log(
                    "info",
                    "Paper fill",
                    {
                        "user_id": account.user_id,
                        "summary": opp.summary,
                        "status": fill.status.value,
                        "edge": fill.final_edge,
                    },
                )
                return True

            self._db.create_paper_position(
                PaperPosition(
                    user_id=account.user_id,
                    type=opp.type,
                    event_id=opp.event_id,
                    summary=opp.summary,
                    stake_total=Decimal("0"),
                    edge_pct=fill.original_edge,
                    status=fill.status,
                    legs=fill.original_legs,
                    latency_ms=fill.latency_ms,
                    slippage_applied=(),
                )
            )
        return False
