"""SQLite persistence layer for EdgeWatch."""

from __future__ import annotations

import json
import logging
import sqlite3
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from pathlib import Path
from typing import Any, Iterator, List, Optional, Sequence

from arb_engine.models import (
    DeliveryStatus,
    FillStatus,
    Opportunity,
    OpportunityLeg,
    OpportunityType,
    PaperSimulationConfig,
)

logger = logging.getLogger("edgewatch")

HEARTBEAT_HISTORY = 100

_LEVELS = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warning": logging.WARNING,
    "error": logging.ERROR,
}

SCHEMA = """
CREATE TABLE IF NOT EXISTS opportunities (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    fingerprint TEXT NOT NULL UNIQUE,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    event_id TEXT NOT NULL,
    sport_key TEXT NOT NULL,
    sport_title TEXT,
    commence_time TEXT,
    home_team TEXT NOT NULL,
    away_team TEXT NOT NULL,
    type TEXT NOT NULL,
    market_key TEXT NOT NULL,
    edge_pct REAL NOT NULL,
    middle_width REAL,
    legs TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS deliveries (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    created_at TEXT NOT NULL,
    opportunity_id INTEGER NOT NULL,
    user_id TEXT NOT NULL,
    status TEXT NOT NULL,
    channel TEXT NOT NULL,
    error TEXT,
    FOREIGN KEY (opportunity_id) REFERENCES opportunities(id) ON DELETE CASCADE
);

CREATE TABLE IF NOT EXISTS paper_accounts (
    user_id TEXT PRIMARY KEY,
    bankroll REAL NOT NULL,
    max_open INTEGER NOT NULL,
    enabled INTEGER NOT NULL,
    auto_fill INTEGER NOT NULL,
    latency_ms_min INTEGER NOT NULL,
    latency_ms_max INTEGER NOT NULL,
    slippage_bps REAL NOT NULL,
    miss_fill_prob REAL NOT NULL,
    max_leg_odds_worsen REAL NOT NULL,
    fill_even_if_edge_lost INTEGER NOT NULL
);

CREATE TABLE IF NOT EXISTS paper_positions (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    created_at TEXT NOT NULL,
    user_id TEXT NOT NULL,
    type TEXT NOT NULL,
    event_id TEXT NOT NULL,
    summary TEXT NOT NULL,
    stake_total REAL NOT NULL,
    edge_pct REAL NOT NULL,
    status TEXT NOT NULL,
    legs TEXT NOT NULL,
    latency_ms INTEGER NOT NULL,
    slippage_applied TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS heartbeats (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    created_at TEXT NOT NULL,
    last_scan_at TEXT NOT NULL,
    polls INTEGER NOT NULL,
    last_error TEXT,
    api_calls INTEGER NOT NULL
);

CREATE TABLE IF NOT EXISTS api_usage (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    created_at TEXT NOT NULL,
    remaining INTEGER,
    used INTEGER
);

CREATE TABLE IF NOT EXISTS logs (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    created_at TEXT NOT NULL,
    level TEXT NOT NULL,
    message TEXT NOT NULL,
    context TEXT
);
"""


@dataclass
class OpportunityRecord:
    id: int
    fingerprint: str
    created_at: datetime
    updated_at: datetime
    event_id: str
    type: OpportunityType
    market_key: str
    edge_pct: float
    middle_width: Optional[float]
    legs: List[dict]


@dataclass
class PaperAccount:
    user_id: str
    bankroll: Decimal
    max_open: int = 5
    enabled: bool = True
    auto_fill: bool = True
    simulation: PaperSimulationConfig = field(default_factory=PaperSimulationConfig)


@dataclass
class PaperPosition:
    user_id: str
    type: OpportunityType
    event_id: str
    summary: str
    stake_total: Decimal
    edge_pct: float
    status: FillStatus
    legs: Sequence[OpportunityLeg]
    latency_ms: int
    slippage_applied: Sequence[float]
    id: Optional[int] = None
    created_at: Optional[datetime] = None


@dataclass
class Heartbeat:
    last_scan_at: datetime
    polls: int
    last_error: Optional[str]
    api_calls: int


@dataclass
class LogRecord:
    id: int
    created_at: datetime
    level: str
    message: str
    context: Optional[dict]


class Database:
    def __init__(self, path: str | Path = "edgewatch.db") -> None:
        self._path = Path(path)
        self._path.parent.mkdir(parents=True, exist_ok=True)
        with self._connect() as conn:
            conn.executescript(SCHEMA)

    @contextmanager
    def _connect(self) -> Iterator[sqlite3.Connection]:
        conn = sqlite3.connect(self._path)
        try:
            yield conn
        finally:
            conn.commit()
            conn.close()

    def upsert_opportunity(self, opportunity: Opportunity) -> int:
        """Insert by fingerprint, or refresh edge, width and legs when already stored."""

        now = _utcnow()
        legs = _dumps([leg.as_dict() for leg in opportunity.legs])
        with self._connect() as conn:
            conn.execute(
                "INSERT INTO opportunities (fingerprint, created_at, updated_at, event_id, sport_key, sport_title,"
                " commence_time, home_team, away_team, type, market_key, edge_pct, middle_width, legs)"
                " VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)"
                " ON CONFLICT(fingerprint) DO UPDATE SET"
                " updated_at = excluded.updated_at, edge_pct = excluded.edge_pct,"
                " middle_width = excluded.middle_width, legs = excluded.legs",
                (
                    opportunity.fingerprint,
                    now,
                    now,
                    opportunity.event_id,
                    opportunity.sport_key,
                    opportunity.sport_title,
                    opportunity.commence_time.isoformat() if opportunity.commence_time else None,
                    opportunity.home_team,
                    opportunity.away_team,
                    opportunity.type.value,
                    opportunity.market_key.value,
                    opportunity.edge_pct,
                    opportunity.middle_width,
                    legs,
                ),
            )
            row = conn.execute(
                "SELECT id FROM opportunities WHERE fingerprint = ?", (opportunity.fingerprint,)
            ).fetchone()
        return int(row[0])

    def get_opportunity(self, fingerprint: str) -> Optional[OpportunityRecord]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT id, fingerprint, created_at, updated_at, event_id, type, market_key, edge_pct,"
                " middle_width, legs FROM opportunities WHERE fingerprint = ?",
                (fingerprint,),
            ).fetchone()
        return _opportunity_record(row) if row else None

    def recent_opportunities(self, limit: int = 100) -> List[OpportunityRecord]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT id, fingerprint, created_at, updated_at, event_id, type, market_key, edge_pct,"
                " middle_width, legs FROM opportunities ORDER BY updated_at DESC, id DESC LIMIT ?",
                (limit,),
            ).fetchall()
        return [_opportunity_record(row) for row in rows]

    def record_delivery(
        self,
        opportunity_id: int,
        user_id: str,
        status: DeliveryStatus,
        channel: str,
        error: Optional[str] = None,
    ) -> None:
        with self._connect() as conn:
            conn.execute(
                "INSERT INTO deliveries (created_at, opportunity_id, user_id, status, channel, error)"
                " VALUES (?, ?, ?, ?, ?, ?)",
                (_utcnow(), opportunity_id, user_id, DeliveryStatus(status).value, channel, error),
            )

    def has_delivered(self, opportunity_id: int, user_id: str) -> bool:
        with self._connect() as conn:
            (count,) = conn.execute(
                "SELECT COUNT(*) FROM deliveries WHERE opportunity_id = ? AND user_id = ? AND status = ?",
                (opportunity_id, user_id, DeliveryStatus.SENT.value),
            ).fetchone()
        return count > 0

    def save_paper_account(self, account: PaperAccount) -> None:
        sim = account.simulation
        with self._connect() as conn:
            conn.execute(
                "REPLACE INTO paper_accounts (user_id, bankroll, max_open, enabled, auto_fill, latency_ms_min,"
                " latency_ms_max, slippage_bps, miss_fill_prob, max_leg_odds_worsen, fill_even_if_edge_lost)"
                " VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                (
                    account.user_id,
                    float(account.bankroll),
                    account.max_open,
                    int(account.enabled),
                    int(account.auto_fill),
                    sim.latency_ms_min,
                    sim.latency_ms_max,
                    sim.slippage_bps,
                    sim.miss_fill_prob,
                    sim.max_leg_odds_worsen,
                    int(sim.fill_even_if_edge_lost),
                ),
            )

    def get_paper_account(self, user_id: str) -> Optional[PaperAccount]:
        with self._connect() as conn:
            row = conn.execute(_ACCOUNT_QUERY + " WHERE user_id = ?", (user_id,)).fetchone()
        return _paper_account(row) if row else None

    def paper_accounts_with_auto_fill(self) -> List[PaperAccount]:
        with self._connect() as conn:
            rows = conn.execute(_ACCOUNT_QUERY + " WHERE enabled = 1 AND auto_fill = 1 ORDER BY user_id").fetchall()
        return [_paper_account(row) for row in rows]

    def open_position_count(self, user_id: str) -> int:
        with self._connect() as conn:
            (count,) = conn.execute(
                "SELECT COUNT(*) FROM paper_positions WHERE user_id = ? AND status = ?",
                (user_id, FillStatus.OPEN.value),
            ).fetchone()
        return int(count)

    def create_paper_position(self, position: PaperPosition) -> int:
        with self._connect() as conn:
            cur = conn.execute(
                "INSERT INTO paper_positions (created_at, user_id, type, event_id, summary, stake_total, edge_pct,"
                " status, legs, latency_ms, slippage_applied) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                (
                    _utcnow(),
                    position.user_id,
                    OpportunityType(position.type).value,
                    position.event_id,
                    position.summary,
                    float(position.stake_total),
                    position.edge_pct,
                    FillStatus(position.status).value,
                    _dumps([leg.as_dict() for leg in position.legs]),
                    position.latency_ms,
                    _dumps(list(position.slippage_applied)),
                ),
            )
            return int(cur.lastrowid)

    def paper_positions(self, user_id: str) -> List[PaperPosition]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT id, created_at, user_id, type, event_id, summary, stake_total, edge_pct, status, legs,"
                " latency_ms, slippage_applied FROM paper_positions WHERE user_id = ? ORDER BY id ASC",
                (user_id,),
            ).fetchall()
        positions: List[PaperPosition] = []
        for row in rows:
            positions.append(
                PaperPosition(
                    id=int(row[0]),
                    created_at=datetime.fromisoformat(row[1]),
                    user_id=row[2],
                    type=OpportunityType(row[3]),
                    event_id=row[4],
                    summary=row[5],
                    stake_total=Decimal(str(row[6])),
                    edge_pct=row[7],
                    status=FillStatus(row[8]),
                    legs=[_leg_from_dict(leg) for leg in json.loads(row[9])],
                    latency_ms=int(row[10]),
                    slippage_applied=json.loads(row[11]),
                )
            )
        return positions

    def debit_bankroll(self, user_id: str, amount: Decimal) -> None:
        with self._connect() as conn:
            conn.execute(
                "UPDATE paper_accounts SET bankroll = bankroll - ? WHERE user_id = ?",
                (float(amount), user_id),
            )

    def record_heartbeat(self, heartbeat: Heartbeat) -> None:
        with self._connect() as conn:
            conn.execute(
                "INSERT INTO heartbeats (created_at, last_scan_at, polls, last_error, api_calls)"
                " VALUES (?, ?, ?, ?, ?)",
                (
                    _utcnow(),
                    heartbeat.last_scan_at.isoformat(),
                    heartbeat.polls,
                    heartbeat.last_error,
                    heartbeat.api_calls,
                ),
            )
            conn.execute(
                "DELETE FROM heartbeats WHERE id NOT IN (SELECT id FROM heartbeats ORDER BY id DESC LIMIT ?)",
                (HEARTBEAT_HISTORY,),
            )

    def latest_heartbeat(self) -> Optional[Heartbeat]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT last_scan_at, polls, last_error, api_calls FROM heartbeats ORDER BY id DESC LIMIT 1"
            ).fetchone()
        if not row:
            return None
        return Heartbeat(
            last_scan_at=datetime.fromisoformat(row[0]),
            polls=int(row[1]),
            last_error=row[2],
            api_calls=int(row[3]),
        )

    def heartbeat_count(self) -> int:
        with self._connect() as conn:
            (count,) = conn.execute("SELECT COUNT(*) FROM heartbeats").fetchone()
        return int(count)

    def log_api_usage(self, remaining: Optional[int], used: Optional[int]) -> None:
        with self._connect() as conn:
            conn.execute(
                "INSERT INTO api_usage (created_at, remaining, used) VALUES (?, ?, ?)",
                (_utcnow(), remaining, used),
            )

    def latest_api_usage(self) -> tuple[Optional[int], Optional[int]]:
        with self._connect() as conn:
            row = conn.execute("SELECT remaining, used FROM api_usage ORDER BY id DESC LIMIT 1").fetchone()
        if not row:
            return None, None
        return row[0], row[1]

    def log(self, level: str, message: str, context: Optional[dict] = None) -> int:
        logger.log(_LEVELS.get(level.lower(), logging.INFO), "%s %s", message, _dumps(context) if context else "")
        with self._connect() as conn:
            cur = conn.execute(
                "INSERT INTO logs (created_at, level, message, context) VALUES (?, ?, ?, ?)",
                (
                    _utcnow(),
                    level,
                    message,
                    _dumps(context) if context else None,
                ),
            )
            return int(cur.lastrowid)

    def fetch_logs(self, since_id: Optional[int] = None, limit: int = 200) -> List[LogRecord]:
        query = "SELECT id, created_at, level, message, context FROM logs"
        params: tuple
        if since_id is not None:
            query += " WHERE id > ? ORDER BY id ASC LIMIT ?"
            params = (since_id, limit)
        else:
            query += " ORDER BY id ASC LIMIT ?"
            params = (limit,)

        with self._connect() as conn:
            cur = conn.execute(query, params)
            records: List[LogRecord] = []
            for log_id, created_at, level, message, context in cur.fetchall():
                parsed_context = json.loads(context) if context else None
                records.append(
                    LogRecord(
                        id=int(log_id),
                        created_at=datetime.fromisoformat(created_at),
                        level=level,
                        message=message,
                        context=parsed_context,
                    )
                )
            return records


_ACCOUNT_QUERY = (
    "SELECT user_id, bankroll, max_open, enabled, auto_fill, latency_ms_min, latency_ms_max, slippage_bps,"
    " miss_fill_prob, max_leg_odds_worsen, fill_even_if_edge_lost FROM paper_accounts"
)


def _paper_account(row: tuple) -> PaperAccount:
    return PaperAccount(
        user_id=row[0],
        bankroll=Decimal(str(row[1])),
        max_open=int(row[2]),
        enabled=bool(row[3]),
        auto_fill=bool(row[4]),
        simulation=PaperSimulationConfig(
            latency_ms_min=int(row[5]),
            latency_ms_max=int(row[6]),
            slippage_bps=row[7],
            miss_fill_prob=row[8],
            max_leg_odds_worsen=row[9],
            fill_even_if_edge_lost=bool(row[10]),
        ),
    )


def _opportunity_record(row: tuple) -> OpportunityRecord:
    return OpportunityRecord(
        id=int(row[0]),
        fingerprint=row[1],
        created_at=datetime.fromisoformat(row[2]),
        updated_at=datetime.fromisoformat(row[3]),
        event_id=row[4],
        type=OpportunityType(row[5]),
        market_key=row[6],
        edge_pct=row[7],
        middle_width=row[8],
        legs=json.loads(row[9]),
    )


def _leg_from_dict(data: dict) -> OpportunityLeg:
    stake = data.get("stake")
    return OpportunityLeg(
        outcome=data["outcome"],
        bookmaker=data["bookmaker"],
        bookmaker_title=data.get("bookmaker_title") or data["bookmaker"],
        odds=data["odds"],
        point=data.get("point"),
        stake=Decimal(str(stake)) if stake is not None else None,
    )


def _utcnow() -> str:
    return datetime.now(timezone.utc).isoformat()


def _json_default(value: Any) -> Any:
    if isinstance(value, Decimal):
        return float(value)
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, (set, frozenset, tuple)):
        return list(value)
    raise TypeError(f"Object of type {type(value).__name__} is not JSON serializable")


def _dumps(value: Any) -> str:
    return json.dumps(value, default=_json_default)
