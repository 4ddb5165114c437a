#!/usr/bin/env python3
"""
Market Data Layer
=================
Cost-bounded access to the market-data REST API.

  - RunBudget: lock-guarded request counter shared by all worker threads.
  - MarketDataFetcher: the capability interface the pipeline depends on.
  - HttpMarketDataFetcher: requests-based implementation with response
    caching, exponential backoff on rate limits (1s / 2s / 4s) and
    fail-fast on permanent errors.

Options enrichment per ticker is: probe for any listed contract, then
pull the near-term chain (bounded pagination, highest OI first), then
compute analytics with scoring_engine.compute_options_analytics.
"""

import logging
import os
import threading
import time
from datetime import date, datetime, timedelta, timezone
from typing import Optional, Protocol

import pandas as pd
from pydantic import ValidationError

from schemas import OptionsAnalytics, TickerSnapshot
from scoring_engine import compute_options_analytics

logger = logging.getLogger(__name__)

_NON_RETRYABLE_PATTERNS = ["404", "not found", "403", "not authorized"]
_RATE_LIMIT_PATTERNS = ["429", "too many requests", "rate limit"]

SNAPSHOT_ENDPOINT = "/v2/snapshot/locale/us/markets/stocks/tickers"


def _is_rate_limited(err_str: str) -> bool:
    """Check if an error string indicates API rate limiting."""
    return any(p in err_str.lower() for p in _RATE_LIMIT_PATTERNS)


class FetchError(Exception):
    """A request failed after retries, or failed permanently."""

    def __init__(self, message: str, status_code: int = 0,
                 rate_limited: bool = False):
        super().__init__(message)
        self.status_code = status_code
        self.rate_limited = rate_limited or _is_rate_limited(message)


class BudgetExceededError(Exception):
    """The per-run request cap has been reached.

    A soft stop: callers downgrade the remaining work instead of aborting.
    """


class RunBudget:
    """Per-run API call counter; never allows more than `cap` calls."""

    def __init__(self, cap: int = 2000):
        self.cap = cap
        self.current = 0
        self._lock = threading.Lock()

    def charge(self, n: int = 1):
        with self._lock:
            if self.current + n > self.cap:
                raise BudgetExceededError(
                    f"BUDGET_EXCEEDED: {self.current}/{self.cap} calls used")
            self.current += n

    @property
    def remaining(self) -> int:
        with self._lock:
            return self.cap - self.current

    @property
    def exhausted(self) -> bool:
        return self.remaining <= 0


class MarketDataFetcher(Protocol):
    """What the backfill orchestrator needs from a data source."""

    def fetch(self, endpoint: str, params: Optional[dict] = None,
              use_cache: bool = True,
              budget: Optional[RunBudget] = None) -> dict: ...

    def fetch_options(self, symbol: str, spot: Optional[float] = None,
                      budget: Optional[RunBudget] = None) -> OptionsAnalytics: ...


# =========================================================================
# A. Snapshot parsing
# =========================================================================

def _dig(d: dict, *keys):
    for k in keys:
        if not isinstance(d, dict):
            return None
        d = d.get(k)
    return d


def parse_ticker_snapshot(t: dict) -> dict:
    """Flatten one upstream snapshot record into a validated TickerSnapshot row.

    Price priority: last trade, then day close, then previous close.
    Raises pydantic.ValidationError on non-numeric market fields.
    """
    day = t.get("day") or {}
    prev = t.get("prevDay") or {}
    price = (_dig(t, "lastTrade", "p") or day.get("c") or prev.get("c") or None)
    row = {
        "symbol": str(t.get("ticker", "")).upper(),
        "price": price,
        "prevClose": prev.get("c") or None,
        "volume": day.get("v") or None,
        "prevVolume": prev.get("v") or None,
        "vwap": day.get("vw") or None,
        "dayHigh": day.get("h") or None,
        "dayLow": day.get("l") or None,
        "changePercent": t.get("todaysChangePerc"),
    }
    return TickerSnapshot.model_validate(row).model_dump(exclude_unset=True)


# =========================================================================
# B. HTTP fetcher
# =========================================================================

class HttpMarketDataFetcher:
    """REST client for the market-data API."""

    def __init__(self, cfg: dict, session=None, sleep=time.sleep):
        import requests

        fcfg = cfg.get("fetch", {})
        self.base_url = fcfg.get("base_url", "https://api.polygon.io").rstrip("/")
        self.api_key = os.environ.get(fcfg.get("api_key_env", "MARKET_DATA_API_KEY"), "")
        self.max_retries = fcfg.get("max_retries", 3)
        self.timeout = fcfg.get("request_timeout_seconds", 15)
        self.window_days = fcfg.get("options_window_days", 14)
        self.max_pages = fcfg.get("options_max_pages", 8)
        self.session = session or requests.Session()
        self._sleep = sleep
        self._cache: dict = {}
        self._cache_lock = threading.Lock()

    def _url(self, endpoint: str) -> str:
        if endpoint.startswith("http"):
            return endpoint
        return f"{self.base_url}/{endpoint.lstrip('/')}"

    def fetch(self, endpoint: str, params: Optional[dict] = None,
              use_cache: bool = True,
              budget: Optional[RunBudget] = None) -> dict:
        """GET one endpoint as JSON.

        One budget unit per call (cache hits are free).  429 responses
        back off exponentially; 4xx other than 429 fail immediately.
        """
        import requests

        params = dict(params or {})
        key = (self._url(endpoint), tuple(sorted(params.items())))
        if use_cache:
            with self._cache_lock:
                if key in self._cache:
                    return self._cache[key]
        if budget is not None:
            budget.charge()

        params["apiKey"] = self.api_key
        last_err = None
        status = 0
        for attempt in range(self.max_retries):
            try:
                resp = self.session.get(key[0], params=params, timeout=self.timeout)
                status = resp.status_code
                if status == 429:
                    last_err = "429 too many requests"
                elif 400 <= status < 500:
                    raise FetchError(f"{status} for {endpoint}", status_code=status)
                else:
                    resp.raise_for_status()
                    data = resp.json()
                    if use_cache:
                        with self._cache_lock:
                            self._cache[key] = data
                    return data
            except FetchError:
                raise
            except (requests.RequestException, ValueError) as exc:
                last_err = f"{type(exc).__name__}: {exc}"
                if any(p in last_err.lower() for p in _NON_RETRYABLE_PATTERNS):
                    break
            if attempt < self.max_retries - 1:
                self._sleep(2 ** attempt)
        raise FetchError(f"Failed after {self.max_retries} retries: {last_err}",
                         status_code=status)

    # ---- universe / quotes ----

    def fetch_universe_snapshot(self, budget: Optional[RunBudget] = None) -> pd.DataFrame:
        """Whole-market snapshot as a DataFrame of TickerSnapshot rows."""
        data = self.fetch(SNAPSHOT_ENDPOINT, {}, use_cache=False, budget=budget)
        rows = []
        for t in data.get("tickers") or []:
            try:
                rows.append(parse_ticker_snapshot(t))
            except ValidationError as e:
                logger.warning(f"Dropping malformed snapshot record: {e.error_count()} errors",
                               extra={"ticker": t.get("ticker"), "phase": "universe"})
        df = pd.DataFrame(rows)
        logger.info(f"Universe snapshot: {len(df)} tickers",
                    extra={"phase": "universe", "count": len(df)})
        return df

    def fetch_quote(self, symbol: str, budget: Optional[RunBudget] = None) -> dict:
        data = self.fetch(f"{SNAPSHOT_ENDPOINT}/{symbol}", {}, use_cache=True, budget=budget)
        return parse_ticker_snapshot(data.get("ticker") or {})

    def fetch_macro_change(self, symbol: str = "QQQ",
                           budget: Optional[RunBudget] = None) -> Optional[float]:
        """Today's % change of the macro proxy, or None when unavailable."""
        try:
            q = self.fetch_quote(symbol, budget=budget)
        except (FetchError, BudgetExceededError, ValidationError) as exc:
            logger.warning(f"Macro quote {symbol} failed: {exc}", extra={"ticker": symbol})
            return None
        chg = q.get("changePercent")
        if chg is None and q.get("price") and q.get("prevClose"):
            chg = (q["price"] - q["prevClose"]) / q["prevClose"] * 100
        return chg

    def fetch_daily_closes(self, symbol: str, days: int = 30,
                           budget: Optional[RunBudget] = None) -> pd.Series:
        end = date.today()
        start = end - timedelta(days=days * 2)
        data = self.fetch(f"/v2/aggs/ticker/{symbol}/range/1/day/{start}/{end}",
                          {"adjusted": "true", "sort": "asc"}, budget=budget)
        bars = data.get("results") or []
        return pd.Series([b.get("c") for b in bars], dtype=float).dropna()

    def fetch_last_news_time(self, symbol: str,
                             budget: Optional[RunBudget] = None) -> Optional[str]:
        data = self.fetch("/v2/reference/news", {"ticker": symbol, "limit": 1,
                                                  "order": "desc"}, budget=budget)
        results = data.get("results") or []
        return results[0].get("published_utc") if results else None

    # ---- options ----

    def probe_options(self, symbol: str, budget: Optional[RunBudget] = None) -> bool:
        data = self.fetch(f"/v3/snapshot/options/{symbol}", {"limit": 10}, budget=budget)
        return bool(data.get("results"))

    def fetch_options_chain(self, symbol: str,
                            budget: Optional[RunBudget] = None) -> list[dict]:
        """Near-term contracts (window_days), highest OI first, max_pages deep."""
        today = datetime.now(timezone.utc).date()
        params = {
            "limit": 250,
            "expiration_date.gte": str(today),
            "expiration_date.lte": str(today + timedelta(days=self.window_days)),
            "sort": "open_interest",
            "order": "desc",
        }
        page = self.fetch(f"/v3/snapshot/options/{symbol}", params,
                          use_cache=False, budget=budget)
        results = list(page.get("results") or [])
        pages = 1
        next_url = page.get("next_url")
        while next_url and pages < self.max_pages:
            page = self.fetch(next_url, {}, use_cache=False, budget=budget)
            if not page.get("results"):
                break
            results.extend(page["results"])
            next_url = page.get("next_url")
            pages += 1

        contracts = []
        for c in results:
            details = c.get("details") or {}
            try:
                oi = float(c.get("open_interest") or 0)
            except (TypeError, ValueError):
                oi = 0.0
            contracts.append({
                "strike": details.get("strike_price", c.get("strike_price")),
                "contract_type": str(details.get("contract_type",
                                                 c.get("contract_type", ""))).lower(),
                "open_interest": oi,
                "gamma": (c.get("greeks") or {}).get("gamma", 0.0) or 0.0,
            })
        return contracts

    def fetch_options(self, symbol: str, spot: Optional[float] = None,
                      budget: Optional[RunBudget] = None) -> OptionsAnalytics:
        """Full options enrichment for one symbol.

        Raises FetchError / BudgetExceededError; ineligibility is returned
        as a NO_OPTIONS status rather than raised.
        """
        if not self.probe_options(symbol, budget=budget):
            return OptionsAnalytics(status="NO_OPTIONS", reason="NO_OPTIONS_LISTED")
        contracts = self.fetch_options_chain(symbol, budget=budget)
        return compute_options_analytics(contracts, spot=spot)
