"""Tests for price-history summaries: horizon changes, Wilder RSI and
relative strength, with the close-series fetcher injected.
"""

import sys
from pathlib import Path

import numpy as np
import pandas as pd
import pytest

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))
from price_history import (
    PriceHistoryProvider,
    pct_change_over,
    summarize_closes,
    wilder_rsi,
)


def _linear(n=60, start=100.0, step=1.0):
    return pd.Series(start + step * np.arange(n), dtype=float)


class TestSummaries:
    def test_pct_change_over(self):
        closes = pd.Series([100.0, 105.0, 110.0])
        assert pct_change_over(closes, 2) == 10.0

    def test_too_short_is_none(self):
        assert pct_change_over(pd.Series([1.0, 2.0]), 5) is None
        assert wilder_rsi(pd.Series([1.0] * 10)) is None

    def test_rsi_extremes(self):
        assert wilder_rsi(_linear(step=1.0)) == 100.0
        assert wilder_rsi(_linear(step=-1.0)) == 0.0
        assert wilder_rsi(pd.Series([10.0] * 30)) == 50.0

    def test_summary_fields(self):
        s = summarize_closes(_linear(), rs_window=10)
        assert s["change1W"] == pytest.approx(round((159 / 154 - 1) * 100, 2))
        assert s["return10d"] == pytest.approx(round((159 / 149 - 1) * 100, 2))
        assert s["rsi14"] == 100.0

    def test_empty_series(self):
        s = summarize_closes(pd.Series(dtype=float))
        assert s == {"change1W": None, "change1M": None, "return10d": None, "rsi14": None}


class TestProvider:
    def test_load_caches(self, cfg):
        calls = []

        def fetch(sym):
            calls.append(sym)
            return _linear()

        hist = PriceHistoryProvider(cfg, fetch=fetch)
        hist.load(["AAA", "BBB", "AAA"])
        hist.load(["AAA"])
        assert sorted(calls) == ["AAA", "BBB"]
        assert hist.get("AAA")["change1M"] is not None

    def test_failed_fetch_yields_empty_summary(self, cfg):
        def fetch(sym):
            raise ConnectionError("offline")

        hist = PriceHistoryProvider(cfg, fetch=fetch)
        hist.load(["AAA"])
        assert hist.get("AAA")["rsi14"] is None

    def test_unknown_symbol(self, cfg):
        assert PriceHistoryProvider(cfg, fetch=lambda s: _linear()).get("ZZZ")["change1W"] is None

    def test_relative_strength(self, cfg):
        series = {"AAA": _linear(step=2.0), "SPY": _linear(step=1.0)}
        hist = PriceHistoryProvider(cfg, fetch=lambda s: series[s])
        hist.load(["AAA", "SPY"])
        expected = round(hist.get("AAA")["return10d"] - hist.get("SPY")["return10d"], 2)
        assert hist.relative_strength("AAA", "SPY") == expected
        assert expected > 0

    def test_relative_strength_missing_is_zero(self, cfg):
        hist = PriceHistoryProvider(cfg, fetch=lambda s: _linear())
        hist.load(["AAA"])
        assert hist.relative_strength("AAA", "SPY") == 0.0
