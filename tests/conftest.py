"""Shared fixtures for Alpha Selection Engine tests."""

import copy
import sys
import threading
from pathlib import Path

import pandas as pd
import pytest
import yaml

# Ensure project root is importable
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))

from schemas import (  # noqa: E402
    DecisionSSOT, GateStatus, MultiTFScore, OptionsAnalytics,
    ScoreDecomposition, ScoredTicker,
)


@pytest.fixture
def cfg():
    """Load the production config.yaml."""
    with open(ROOT / "config.yaml") as f:
        return yaml.safe_load(f)


@pytest.fixture
def fast_cfg(cfg):
    """Production config with short rounds for orchestrator tests."""
    c = copy.deepcopy(cfg)
    c["backfill"]["max_rounds"] = 3
    c["backfill"]["round_sleep_seconds"] = 20
    c["backfill"]["ticker_timeout_seconds"] = 5
    return c


# =====================================================================
# Builders
# =====================================================================

def ok_options(spot: float = 100.0, pcr: float = 1.0) -> OptionsAnalytics:
    return OptionsAnalytics(status="OK", reason="OK", grade="B", spot=spot,
                            maxPain=round(spot), netGex=0.0, putCallRatio=pcr,
                            callWall=round(spot * 1.05), putFloor=round(spot * 0.95),
                            totalOI=12000.0)


def snapshot_row(symbol: str, price: float = 100.0, change: float = 1.0,
                 volume: float = 1_000_000, prev_volume: float = 1_000_000) -> dict:
    """A liquid snapshot row sitting just above VWAP after an intraday retest."""
    return {
        "symbol": symbol,
        "price": price,
        "prevClose": round(price / (1 + change / 100), 4),
        "volume": volume,
        "prevVolume": prev_volume,
        "vwap": round(price * 0.99, 4),
        "dayHigh": round(price * 1.02, 4),
        "dayLow": round(price * 0.98, 4),
        "changePercent": change,
    }


def make_universe(n: int = 60, extra: list | None = None) -> pd.DataFrame:
    rows = [snapshot_row(f"S{i:03d}", price=50.0 + i, change=0.5 + (i % 7) * 0.5)
            for i in range(n)]
    return pd.DataFrame(rows + list(extra or []))


def make_item(symbol: str = "AAA", alpha: float = 70.0, action: str = "MAINTAIN",
              confidence: int = 80, risk: float = 10.0, price: float = 100.0,
              change: float = 1.0, velocity: str = "►", options_ok: bool = True,
              **extra) -> ScoredTicker:
    """ScoredTicker built directly from the fields a test cares about."""
    each = max(0.0, min(20.0, (alpha - risk) / 4))
    opts = ok_options(price) if options_ok else OptionsAnalytics()
    fields = dict(
        symbol=symbol,
        price=price,
        changePercent=change,
        volRatio=1.0,
        alphaScore=alpha,
        scoreDecomposition=ScoreDecomposition(momentum=each, options=each, structure=each,
                                              regime=each, risk=risk),
        velocity=velocity,
        multiTF=MultiTFScore(score1D=alpha, finalScore=alpha, composition="100/0/0",
                             fallbackReason="1W/1M history missing: 1D only"),
        gateStatus=GateStatus(eligible="FAIL" if action == "EXIT" else "PASS",
                              entryNow="FAIL" if action == "EXIT" else "PASS"),
        decisionSSOT=DecisionSSOT(action=action, confidence=confidence),
        options=opts,
        optionsStatus=opts.status,
        maxPain=opts.maxPain,
        pcr=opts.putCallRatio,
        netGex=opts.netGex,
    )
    fields.update(extra)
    return ScoredTicker(**fields)


@pytest.fixture
def item_factory():
    return make_item


@pytest.fixture
def universe_factory():
    return make_universe


@pytest.fixture
def row_factory():
    return snapshot_row


# =====================================================================
# Fake market-data fetcher
# =====================================================================

class FakeFetcher:
    """In-memory MarketDataFetcher.

    `outcomes` maps symbol -> one outcome or a list consumed per call.  An
    outcome is "OK", "NO_OPTIONS", an OptionsAnalytics, or an exception
    instance to raise.  Unlisted symbols are always OK.
    """

    def __init__(self, universe: pd.DataFrame | None = None, outcomes: dict | None = None,
                 macro_change: float | None = 0.0, news: dict | None = None):
        self.universe = universe if universe is not None else make_universe()
        self.outcomes = {k: list(v) if isinstance(v, list) else v
                         for k, v in (outcomes or {}).items()}
        self.macro_change = macro_change
        self.news = news or {}
        self.calls: list[str] = []
        self._lock = threading.Lock()

    def fetch(self, endpoint, params=None, use_cache=True, budget=None):
        if budget is not None:
            budget.charge()
        return {}

    def fetch_universe_snapshot(self, budget=None):
        if budget is not None:
            budget.charge()
        return self.universe.copy()

    def fetch_macro_change(self, symbol="QQQ", budget=None):
        return self.macro_change

    def fetch_last_news_time(self, symbol, budget=None):
        return self.news.get(symbol)

    def fetch_daily_closes(self, symbol, days=30, budget=None):
        if budget is not None:
            budget.charge()
        return pd.Series([100.0 + i % 2 for i in range(days)], dtype=float)

    def fetch_options(self, symbol, spot=None, budget=None):
        if budget is not None:
            budget.charge()
        with self._lock:
            self.calls.append(symbol)
            outcome = self.outcomes.get(symbol, "OK")
            if isinstance(outcome, list):
                outcome = outcome.pop(0) if len(outcome) > 1 else outcome[0]
        if isinstance(outcome, Exception):
            raise outcome
        if outcome == "OK":
            return ok_options(spot or 100.0)
        if outcome == "NO_OPTIONS":
            return OptionsAnalytics(status="NO_OPTIONS", reason="NO_OPTIONS_LISTED")
        return outcome


@pytest.fixture
def fake_fetcher():
    return FakeFetcher
