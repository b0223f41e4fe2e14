import random
import sqlite3
import time
from decimal import Decimal

from arb_engine.models import FillStatus, OpportunityType, PaperSimulationConfig
from bundling.buffer import OpportunityBuffer
from controller.scheduler import ScanController, Subscriber
from controller.settings import WorkerSettings
from dedupe.cache import DedupeCache
from odds_client.client import OddsApiError, RateLimitState
from persistence.database import Database, PaperAccount, PaperPosition


def raw_event(event_id="evt-1", home="Lakers", away="Celtics"):
    return {
        "id": event_id,
        "sport_key": "basketball_nba",
        "sport_title": "NBA",
        "commence_time": "2025-01-01T19:00:00Z",
        "home_team": home,
        "away_team": away,
        "bookmakers": [
            {
                "key": "book_a",
                "title": "Book A",
                "markets": [
                    {"key": "h2h", "outcomes": [{"name": home, "price": 2.10}, {"name": away, "price": 1.80}]}
                ],
            },
            {
                "key": "book_b",
                "title": "Book B",
                "markets": [
                    {"key": "h2h", "outcomes": [{"name": home, "price": 1.90}, {"name": away, "price": 2.05}]}
                ],
            },
        ],
    }


class DummyClient:
    def __init__(self, events_by_sport, sports=None, failing=()):
        self.events_by_sport = events_by_sport
        if sports is None:
            sports = [{"key": key, "active": True} for key in events_by_sport]
        self.sports = sports
        self.failing = set(failing)
        self.sports_error = None
        self.rate_limit = RateLimitState(remaining=400, used=100)
        self.api_calls = 0
        self.requested = []

    def list_sports(self):
        if self.sports_error:
            raise self.sports_error
        return self.sports

    def get_odds(self, sport_key, markets):
        self.requested.append(sport_key)
        self.api_calls += 1
        if sport_key in self.failing:
            raise OddsApiError("Odds API request failed with status 500", 500)
        return self.events_by_sport.get(sport_key, [])


class RecordingSubscriber:
    def __init__(self, error=None):
        self.received = []
        self.error = error

    def __call__(self, staked):
        if self.error:
            raise self.error
        self.received.append(staked)


def _controller(tmp_path, client, subscribers=(), dedupe=None, **overrides):
    settings = WorkerSettings(odds_api_key="test", **overrides)
    db = Database(tmp_path / "worker.db")
    controller = ScanController(
        client,
        db,
        settings,
        dedupe_cache=dedupe if dedupe is not None else DedupeCache(settings.dedupe_ttl_ms),
        buffer=OpportunityBuffer(window_ms=0),
        subscribers=subscribers,
        rng=random.Random(0),
    )
    return controller, db


def _messages(db):
    return [record.message for record in db.fetch_logs(limit=1000)]


def test_poll_detects_persists_and_delivers(tmp_path):
    client = DummyClient({"basketball_nba": [raw_event()]})
    subscriber = RecordingSubscriber()
    controller, db = _controller(tmp_path, client, [Subscriber("user-1", "telegram", subscriber)])

    result = controller.run_poll()

    assert result.error is None
    assert result.sports_scanned == ["basketball_nba"]
    assert result.detected == 1
    assert len(result.new_opportunities) == 1
    assert result.deliveries_sent == 1

    opportunity = result.new_opportunities[0]
    assert opportunity.type == OpportunityType.ARB
    assert opportunity.edge_pct == 3.6
    assert db.get_opportunity(opportunity.fingerprint) is not None

    (staked,) = subscriber.received
    assert staked.opportunity == opportunity
    assert staked.guaranteed_profit == Decimal("3.73")
    assert sum(leg.stake for leg in staked.legs) == Decimal("100")

    assert db.latest_api_usage() == (400, 100)
    assert "Poll completed" in _messages(db)


def test_repeat_detections_are_suppressed(tmp_path):
    client = DummyClient({"basketball_nba": [raw_event()]})
    subscriber = RecordingSubscriber()
    controller, _ = _controller(tmp_path, client, [Subscriber("user-1", "telegram", subscriber)])

    controller.run_poll()
    second = controller.run_poll()

    assert second.detected == 1
    assert second.new_opportunities == []
    assert len(subscriber.received) == 1


def test_failed_delivery_is_recorded(tmp_path):
    client = DummyClient({"basketball_nba": [raw_event()]})
    failing = RecordingSubscriber(error=RuntimeError("chat not found"))
    working = RecordingSubscriber()
    controller, db = _controller(
        tmp_path,
        client,
        [Subscriber("user-1", "telegram", failing), Subscriber("user-2", "telegram", working)],
    )

    result = controller.run_poll()

    opportunity_id = db.upsert_opportunity(result.new_opportunities[0])
    assert result.deliveries_failed == 1
    assert result.deliveries_sent == 1
    assert not db.has_delivered(opportunity_id, "user-1")
    assert db.has_delivered(opportunity_id, "user-2")
    assert "Notification failed" in _messages(db)


def test_sport_failure_does_not_stop_the_poll(tmp_path):
    client = DummyClient(
        {"basketball_nba": [raw_event()], "icehockey_nhl": [raw_event("evt-2", "Bruins", "Rangers")]},
        failing={"basketball_nba"},
    )
    controller, db = _controller(tmp_path, client)

    result = controller.run_poll()

    assert result.error is None
    assert result.sports_failed == ["basketball_nba"]
    assert result.sports_scanned == ["icehockey_nhl"]
    assert [opp.event_id for opp in result.new_opportunities] == ["evt-2"]
    failure = [record for record in db.fetch_logs() if record.message == "Sport scan failed"]
    assert failure[0].level == "error"
    assert failure[0].context["sport"] == "basketball_nba"


def test_poll_failure_sets_last_error(tmp_path):
    client = DummyClient({"basketball_nba": [raw_event()]})
    client.sports_error = OddsApiError("sports list unavailable", 503)
    controller, _ = _controller(tmp_path, client)

    result = controller.run_poll()

    assert result.error == "sports list unavailable"
    assert controller.last_error == "sports list unavailable"

    client.sports_error = None
    controller.run_poll()
    assert controller.last_error is None


def test_outright_markets_are_skipped_when_scanning_all(tmp_path):
    sports = [
        {"key": "basketball_nba", "active": True},
        {"key": "golf_masters_tournament_winner", "active": True},
    ]
    client = DummyClient({"basketball_nba": []}, sports=sports)
    controller, _ = _controller(tmp_path, client)

    controller.run_poll()

    assert client.requested == ["basketball_nba"]


def test_configured_sports_must_be_active(tmp_path):
    client = DummyClient({"basketball_nba": [], "icehockey_nhl": []})
    controller, _ = _controller(tmp_path, client, sports=["icehockey_nhl", "cricket_test_match"])

    controller.run_poll()

    assert client.requested == ["icehockey_nhl"]


def test_paper_auto_fill(tmp_path):
    client = DummyClient({"basketball_nba": [raw_event("evt-1"), raw_event("evt-2", "Bulls", "Heat")]})
    controller, db = _controller(tmp_path, client)
    no_miss = PaperSimulationConfig(miss_fill_prob=0.0)
    db.save_paper_account(PaperAccount("alice", Decimal("1000"), simulation=no_miss))
    db.save_paper_account(PaperAccount("bob", Decimal("50"), simulation=no_miss))
    db.save_paper_account(PaperAccount("carol", Decimal("1000"), max_open=1, simulation=no_miss))
    db.save_paper_account(PaperAccount("dave", Decimal("1000"), auto_fill=False, simulation=no_miss))
    db.create_paper_position(
        PaperPosition(
            user_id="carol",
            type=OpportunityType.ARB,
            event_id="old",
            summary="old",
            stake_total=Decimal("100"),
            edge_pct=1.0,
            status=FillStatus.OPEN,
            legs=(),
            latency_ms=500,
            slippage_applied=(),
        )
    )

    result = controller.run_poll()

    assert len(result.new_opportunities) == 2
    assert result.paper_fills == 1
    (position,) = db.paper_positions("alice")
    assert position.status == FillStatus.OPEN
    assert position.stake_total == Decimal("100")
    assert position.edge_pct == 3.13
    assert [leg.odds for leg in position.legs] == [2.09, 2.04]
    assert db.get_paper_account("alice").bankroll == Decimal("900")
    assert db.paper_positions("bob") == []
    assert len(db.paper_positions("carol")) == 1
    assert db.paper_positions("dave") == []


def test_missed_fills_are_recorded_without_stake(tmp_path):
    client = DummyClient({"basketball_nba": [raw_event("evt-1"), raw_event("evt-2", "Bulls", "Heat")]})
    controller, db = _controller(tmp_path, client)
    db.save_paper_account(PaperAccount("alice", Decimal("1000"), simulation=PaperSimulationConfig(miss_fill_prob=1.0)))

    result = controller.run_poll()

    positions = db.paper_positions("alice")
    assert result.paper_fills == 0
    assert [p.status for p in positions] == [FillStatus.MISSED, FillStatus.MISSED]
    assert all(p.stake_total == Decimal("0") for p in positions)
    assert db.get_paper_account("alice").bankroll == Decimal("1000")


def test_heartbeat_and_cleanup_cadence(tmp_path, clock):
    client = DummyClient({"basketball_nba": [raw_event()]})
    dedupe = DedupeCache(ttl_ms=1000, clock=clock)
    controller, db = _controller(tmp_path, client, dedupe=dedupe, heartbeat_every_polls=2, cleanup_every_polls=2)

    controller.run_poll()
    assert db.heartbeat_count() == 0
    assert dedupe.size() == 1

    client.events_by_sport["basketball_nba"] = []
    clock.advance(5000)
    controller.run_poll()

    heartbeat = db.latest_heartbeat()
    assert db.heartbeat_count() == 1
    assert heartbeat.polls == 2
    assert heartbeat.api_calls == 2
    assert dedupe.size() == 0
    cleaned = [record for record in db.fetch_logs() if record.message == "Dedupe cache cleaned"]
    assert cleaned[0].context["removed"] == 1


def test_start_and_stop(tmp_path):
    client = DummyClient({"basketball_nba": [raw_event()]})
    controller, db = _controller(tmp_path, client, interval_ms=60_000)

    controller.start()
    controller.stop(timeout=5)
    controller.wait()

    assert db.heartbeat_count() >= 1
    assert "Scanning stopped" in _messages(db)


class LockedDatabase(Database):
    """Database whose writes fail as if another writer held the lock."""

    def __init__(self, path, lock_usage=True, lock_upsert=False):
        super().__init__(path)
        self.lock_usage = lock_usage
        self.lock_upsert = lock_upsert

    def log(self, level, message, context=None):
        raise sqlite3.OperationalError("database is locked")

    def log_api_usage(self, remaining, used):
        if self.lock_usage:
            raise sqlite3.OperationalError("database is locked")
        super().log_api_usage(remaining, used)

    def upsert_opportunity(self, opportunity):
        if self.lock_upsert:
            raise sqlite3.OperationalError("database is locked")
        return super().upsert_opportunity(opportunity)


def _locked_controller(tmp_path, client, db_options=None, **overrides):
    settings = WorkerSettings(odds_api_key="test", **overrides)
    db = LockedDatabase(tmp_path / "locked.db", **(db_options or {}))
    return ScanController(
        client,
        db,
        settings,
        dedupe_cache=DedupeCache(settings.dedupe_ttl_ms),
        buffer=OpportunityBuffer(window_ms=0),
        rng=random.Random(0),
    )


def test_poll_survives_failing_log_writes(tmp_path):
    client = DummyClient({"basketball_nba": [raw_event()]})
    controller = _locked_controller(tmp_path, client, heartbeat_every_polls=1, cleanup_every_polls=1)

    result = controller.run_poll()

    assert result.sports_failed == ["basketball_nba"]
    assert result.error is None
    assert controller.polls == 1


def test_poll_records_persistence_failure_as_last_error(tmp_path):
    client = DummyClient({"basketball_nba": [raw_event()]})
    controller = _locked_controller(tmp_path, client, db_options={"lock_usage": False, "lock_upsert": True})

    result = controller.run_poll()

    assert result.sports_scanned == ["basketball_nba"]
    assert result.error == "database is locked"
    assert controller.last_error == "database is locked"


def test_loop_keeps_polling_when_database_is_locked(tmp_path):
    client = DummyClient({"basketball_nba": [raw_event()]})
    controller = _locked_controller(tmp_path, client, db_options={"lock_upsert": True}, interval_ms=10)

    controller.start()
    deadline = time.monotonic() + 5
    while controller.polls < 3 and time.monotonic() < deadline:
        time.sleep(0.01)
    running = controller._thread is not None and controller._thread.is_alive()
    controller.stop(timeout=5)
    controller.wait()

    assert controller.polls >= 3
    assert running
