"""Worker configuration read from environment variables."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from typing import Callable, List, Mapping, Optional, Tuple, TypeVar

from arb_engine.models import DetectionConfig, MarketKey

T = TypeVar("T")

ALL_SPORTS = "all"


class SettingsError(ValueError):
    """Raised when an environment variable holds an unusable value."""


@dataclass
class WorkerSettings:
    odds_api_key: str
    regions: str = "us"
    database_path: str = "edgewatch.db"
    interval_ms: int = 10_000
    sports: List[str] | str = ALL_SPORTS
    markets: Tuple[MarketKey, ...] = (MarketKey.MONEYLINE, MarketKey.TOTALS, MarketKey.SPREADS)
    detection: DetectionConfig = field(default_factory=DetectionConfig)
    bundle_window_ms: int = 10_000
    max_per_event_bundle: int = 5
    dedupe_ttl_ms: int = 180_000
    heartbeat_every_polls: int = 6
    cleanup_every_polls: int = 60

    @property
    def scan_all_sports(self) -> bool:
        return self.sports == ALL_SPORTS


def load_settings(environ: Optional[Mapping[str, str]] = None) -> WorkerSettings:
    env = os.environ if environ is None else environ

    api_key = env.get("ODDS_API_KEY", "").strip()
    if not api_key:
        raise SettingsError("ODDS_API_KEY environment variable is required")

    sports_raw = env.get("SPORTS", ALL_SPORTS).strip()
    sports: List[str] | str = ALL_SPORTS
    if sports_raw and sports_raw.lower() != ALL_SPORTS:
        sports = _split(sports_raw)

    markets = tuple(
        _parse("MARKETS", value, MarketKey) for value in _split(env.get("MARKETS", "h2h,totals,spreads"))
    )
    if not markets:
        raise SettingsError("MARKETS must name at least one market")

    detection = DetectionConfig(
        min_edge=_get(env, "MIN_EDGE", float, 0.5),
        min_middle_width=_get(env, "MIN_MIDDLE_WIDTH", float, 0.5),
        stake_default=_get(env, "STAKE_DEFAULT", _decimal, Decimal("100")),
        totals_middle_edge_floor=_get(env, "TOTALS_MIDDLE_EDGE_FLOOR", float, -5.0),
        spreads_middle_edge_floor=_get(env, "SPREADS_MIDDLE_EDGE_FLOOR", float, -10.0),
    )
    if detection.stake_default <= 0:
        raise SettingsError("STAKE_DEFAULT must be positive")

    return WorkerSettings(
        odds_api_key=api_key,
        regions=env.get("ODDS_API_REGIONS", "us").strip() or "us",
        database_path=env.get("DATABASE_PATH", "edgewatch.db"),
        interval_ms=_positive(env, "SCAN_INTERVAL_MS", 10_000),
        sports=sports,
        markets=markets,
        detection=detection,
        bundle_window_ms=_get(env, "BUNDLE_WINDOW_MS", int, 10_000),
        max_per_event_bundle=_positive(env, "MAX_PER_EVENT_BUNDLE", 5),
        dedupe_ttl_ms=_get(env, "DEDUPE_TTL_MS", int, 180_000),
        heartbeat_every_polls=_positive(env, "HEARTBEAT_EVERY_POLLS", 6),
        cleanup_every_polls=_positive(env, "CLEANUP_EVERY_POLLS", 60),
    )


def _split(value: str) -> List[str]:
    return [item.strip() for item in value.split(",") if item.strip()]


def _decimal(value: str) -> Decimal:
    try:
        number = Decimal(value)
    except InvalidOperation as exc:
        raise ValueError(value) from exc
    if not number.is_finite():
        raise ValueError(value)
    return number


def _parse(name: str, value: str, convert: Callable[[str], T]) -> T:
    try:
        return convert(value)
    except ValueError as exc:
        raise SettingsError(f"{name} has an invalid value: {value!r}") from exc


def _get(env: Mapping[str, str], name: str, convert: Callable[[str], T], default: T) -> T:
    raw = env.get(name)
    if raw is None or not raw.strip():
        return default
    return _parse(name, raw.strip(), convert)


def _positive(env: Mapping[str, str], name: str, default: int) -> int:
    value = _get(env, name, int, default)
    if value <= 0:
        raise SettingsError(f"{name} must be positive, got {value}")
    return value
