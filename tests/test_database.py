from decimal import Decimal
from datetime import datetime, timezone

from arb_engine.models import DeliveryStatus, FillStatus, OpportunityType, PaperSimulationConfig
from builders import make_opportunity
from persistence.database import HEARTBEAT_HISTORY, Database, Heartbeat, PaperAccount, PaperPosition


def test_log_serialization_handles_decimal(tmp_path):
    db = Database(tmp_path / "test.db")
    db.log(
        "info",
        "decimal test",
        {"value": Decimal("1.23"), "time": datetime.now(timezone.utc), "type": OpportunityType.ARB},
    )

    records = db.fetch_logs()
    assert records
    context = records[-1].context
    assert isinstance(context, dict)
    assert context["value"] == 1.23
    assert context["type"] == "ARB"


def test_fetch_logs_since_id(tmp_path):
    db = Database(tmp_path / "logs.db")
    first = db.log("info", "one")
    db.log("error", "two", {"sport": "basketball_nba"})

    records = db.fetch_logs(since_id=first)

    assert [(record.level, record.message) for record in records] == [("error", "two")]
    assert records[0].context == {"sport": "basketball_nba"}


def test_upsert_opportunity_is_idempotent_by_fingerprint(tmp_path):
    db = Database(tmp_path / "opps.db")
    opportunity = make_opportunity(edge=3.6)

    first_id = db.upsert_opportunity(opportunity)
    second_id = db.upsert_opportunity(opportunity)

    assert first_id == second_id
    assert len(db.recent_opportunities()) == 1
    record = db.get_opportunity(opportunity.fingerprint)
    assert record.type == OpportunityType.ARB
    assert record.edge_pct == 3.6
    assert [leg["bookmaker"] for leg in record.legs] == ["book_a", "book_b"]
    assert db.get_opportunity("missing") is None


def test_delivery_tracking_counts_only_sent(tmp_path):
    db = Database(tmp_path / "deliveries.db")
    opportunity_id = db.upsert_opportunity(make_opportunity())

    db.record_delivery(opportunity_id, "user-1", DeliveryStatus.FAILED, "telegram", "timeout")
    assert not db.has_delivered(opportunity_id, "user-1")

    db.record_delivery(opportunity_id, "user-1", DeliveryStatus.SENT, "telegram")
    assert db.has_delivered(opportunity_id, "user-1")
    assert not db.has_delivered(opportunity_id, "user-2")


def test_paper_account_round_trip(tmp_path):
    db = Database(tmp_path / "paper.db")
    simulation = PaperSimulationConfig(latency_ms_min=100, latency_ms_max=200, slippage_bps=10, miss_fill_prob=0.5)
    db.save_paper_account(PaperAccount("user-1", Decimal("1000"), max_open=2, simulation=simulation))
    db.save_paper_account(PaperAccount("user-2", Decimal("500"), auto_fill=False))

    account = db.get_paper_account("user-1")

    assert account.bankroll == Decimal("1000.0")
    assert account.max_open == 2
    assert account.simulation == simulation
    assert [a.user_id for a in db.paper_accounts_with_auto_fill()] == ["user-1"]
    assert db.get_paper_account("nobody") is None

    db.debit_bankroll("user-1", Decimal("100"))
    assert db.get_paper_account("user-1").bankroll == Decimal("900.0")


def test_paper_positions_and_open_count(tmp_path):
    db = Database(tmp_path / "positions.db")
    opportunity = make_opportunity(edge=3.6)
    for status in (FillStatus.OPEN, FillStatus.MISSED, FillStatus.OPEN):
        db.create_paper_position(
            PaperPosition(
                user_id="user-1",
                type=opportunity.type,
                event_id=opportunity.event_id,
                summary=opportunity.summary,
                stake_total=Decimal("100"),
                edge_pct=3.13,
                status=status,
                legs=opportunity.legs,
                latency_ms=900,
                slippage_applied=(0.01, 0.01),
            )
        )

    positions = db.paper_positions("user-1")

    assert db.open_position_count("user-1") == 2
    assert [p.status for p in positions] == [FillStatus.OPEN, FillStatus.MISSED, FillStatus.OPEN]
    assert positions[0].summary == "Lakers vs Celtics - h2h"
    assert [leg.odds for leg in positions[0].legs] == [2.10, 2.05]
    assert positions[0].slippage_applied == [0.01, 0.01]


def test_heartbeats_keep_recent_history(tmp_path):
    db = Database(tmp_path / "heartbeats.db")
    assert db.latest_heartbeat() is None

    for poll in range(HEARTBEAT_HISTORY + 5):
        db.record_heartbeat(Heartbeat(datetime.now(timezone.utc), poll, None, poll * 2))

    latest = db.latest_heartbeat()
    assert db.heartbeat_count() == HEARTBEAT_HISTORY
    assert latest.polls == HEARTBEAT_HISTORY + 4
    assert latest.api_calls == (HEARTBEAT_HISTORY + 4) * 2


def test_api_usage(tmp_path):
    db = Database(tmp_path / "usage.db")
    assert db.latest_api_usage() == (None, None)

    db.log_api_usage(480, 20)
    db.log_api_usage(479, 21)

    assert db.latest_api_usage() == (479, 21)
