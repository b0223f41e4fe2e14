"""Odds API client utilities.

This module wraps the two Odds API endpoints the worker needs: the sports
list and per-sport odds.  Rate limits (429) and server errors are retried with
exponential backoff; anything else, or running out of attempts, raises
:class:`OddsApiError` for the caller to treat as a per-sport failure.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Iterable, List, Mapping, MutableMapping, Optional

import requests

from arb_engine.models import MarketKey

DEFAULT_MARKETS = (MarketKey.MONEYLINE, MarketKey.TOTALS, MarketKey.SPREADS)


class OddsApiError(RuntimeError):
    """Raised when the Odds API returns a non-success status code."""

    def __init__(self, message: str, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.status_code = status_code


@dataclass
class RateLimitState:
    remaining: Optional[int] = None
    used: Optional[int] = None
    last_updated: Optional[datetime] = None


@dataclass
class BackoffPolicy:
    base_ms: int = 1000
    max_ms: int = 30_000
    max_attempts: int = 5

    def delay_ms(self, attempt: int) -> int:
        return min(self.base_ms * 2 ** attempt, self.max_ms)


@dataclass
class _SportsCache:
    data: List[dict] = field(default_factory=list)
    fetched_at: float = 0.0


class OddsApiClient:
    """Simple client that talks to The Odds API."""

    BASE_URL = "https://api.the-odds-api.com/v4"
    SPORTS_CACHE_SECONDS = 600

    def __init__(
        self,
        api_key: str,
        regions: str = "us",
        odds_format: str = "decimal",
        session: Optional[requests.Session] = None,
        backoff: Optional[BackoffPolicy] = None,
        sleep: Callable[[float], None] = time.sleep,
        timeout: float = 15,
    ) -> None:
        if not api_key:
            raise ValueError("An Odds API key must be supplied")
        self._api_key = api_key
        self._regions = regions
        self._odds_format = odds_format
        self._session = session or requests.Session()
        self._backoff = backoff or BackoffPolicy()
        self._sleep = sleep
        self._timeout = timeout
        self._sports_cache: Optional[_SportsCache] = None
        self.rate_limit = RateLimitState()
        self.api_calls = 0

    @property
    def odds_format(self) -> str:
        return self._odds_format

    def list_sports(self) -> List[dict]:
        """Return active sports, cached for ten minutes."""

        cache = self._sports_cache
        if cache and time.monotonic() - cache.fetched_at < self.SPORTS_CACHE_SECONDS:
            return cache.data

        sports = self._get("/sports", {}) or []
        active = [sport for sport in sports if isinstance(sport, dict) and sport.get("active")]
        self._sports_cache = _SportsCache(active, time.monotonic())
        return active

    def get_odds(self, sport_key: str, markets: Iterable[MarketKey | str] = DEFAULT_MARKETS) -> List[dict]:
        """Fetch raw odds for all upcoming events of a sport."""

        params: MutableMapping[str, str] = {
            "regions": self._regions,
            "markets": ",".join(MarketKey(market).value for market in markets),
            "oddsFormat": self._odds_format,
            "dateFormat": "iso",
        }
        data = self._get(f"/sports/{sport_key}/odds", params)
        if isinstance(data, dict):
            return [data]
        return list(data or [])

    def reset_api_call_counter(self) -> None:
        self.api_calls = 0

    def _get(self, path: str, params: Mapping[str, str]) -> Any:
        url = f"{self.BASE_URL}{path}"
        query = {"apiKey": self._api_key, **params}
        response = self._get_with_backoff(url, query)

        self._update_rate_limit(response.headers)
        self.api_calls += 1

        if response.status_code != 200:
            raise OddsApiError(
                f"Odds API request failed with status {response.status_code}: {response.text}",
                response.status_code,
            )
        return response.json()

    def _get_with_backoff(self, url: str, params: Mapping[str, str]) -> requests.Response:
        policy = self._backoff
        for attempt in range(1, policy.max_attempts + 1):
            response = self._session.get(url, params=params, timeout=self._timeout)
            if not _retryable(response.status_code):
                return response
            if attempt >= policy.max_attempts:
                break
            self._sleep(policy.delay_ms(attempt) / 1000)
        raise OddsApiError(
            f"Odds API request failed after {policy.max_attempts} attempts: {response.status_code}",
            response.status_code,
        )

    def _update_rate_limit(self, headers: Mapping[str, str]) -> None:
        remaining = _safe_int(headers.get("x-requests-remaining"))
        used = _safe_int(headers.get("x-requests-used"))
        if remaining is not None:
            self.rate_limit.remaining = remaining
        if used is not None:
            self.rate_limit.used = used
        self.rate_limit.last_updated = datetime.now(timezone.utc)


def _retryable(status_code: int) -> bool:
    return status_code == 429 or 500 <= status_code < 600


def _safe_int(value: Optional[str]) -> Optional[int]:
    if value is None:
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None
