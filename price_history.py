#!/usr/bin/env python3
"""
Price History Provider
======================
Daily-close history via yfinance for the multi-horizon blend and TPG:

    change1W   5-session % change
    change1M   21-session % change
    return10d  10-session % change (relative-strength input)
    rsi14      Wilder RSI over 14 sessions

Missing or short history yields None for the affected fields; the scoring
blend then degrades to the horizons that are present.
"""

import logging
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from typing import Optional

import numpy as np
import pandas as pd

logger = logging.getLogger(__name__)

HISTORY_FIELDS = ("change1W", "change1M", "return10d", "rsi14")


def pct_change_over(closes: pd.Series, sessions: int) -> Optional[float]:
    if len(closes) <= sessions:
        return None
    base = float(closes.iloc[-1 - sessions])
    if base <= 0:
        return None
    return round((float(closes.iloc[-1]) / base - 1) * 100, 2)


def wilder_rsi(closes: pd.Series, period: int = 14) -> Optional[float]:
    if len(closes) <= period:
        return None
    delta = closes.diff().dropna()
    gain = delta.clip(lower=0).ewm(alpha=1 / period, adjust=False).mean()
    loss = (-delta.clip(upper=0)).ewm(alpha=1 / period, adjust=False).mean()
    avg_gain, avg_loss = float(gain.iloc[-1]), float(loss.iloc[-1])
    if avg_loss == 0:
        return 100.0 if avg_gain > 0 else 50.0
    rs = avg_gain / avg_loss
    return round(100 - 100 / (1 + rs), 1)


def summarize_closes(closes: pd.Series, rs_window: int = 10) -> dict:
    closes = pd.Series(closes, dtype=float).dropna()
    return {
        "change1W": pct_change_over(closes, 5),
        "change1M": pct_change_over(closes, 21),
        "return10d": pct_change_over(closes, rs_window),
        "rsi14": wilder_rsi(closes),
    }


def fetch_closes(symbol: str, period: str = "3mo", max_retries: int = 3) -> pd.Series:
    """Daily closes for one symbol with exponential backoff (1s / 2s / 4s)."""
    for attempt in range(max_retries):
        try:
            import yfinance as yf
            hist = yf.Ticker(symbol).history(period=period, auto_adjust=True)
            if hist is not None and not hist.empty:
                return hist["Close"].dropna()
            return pd.Series(dtype=float)
        except Exception as e:
            logger.warning(f"History fetch attempt {attempt+1}/{max_retries} failed: {e}",
                           extra={"ticker": symbol})
            if attempt < max_retries - 1:
                time.sleep(2 ** attempt)
    return pd.Series(dtype=float)


class PriceHistoryProvider:
    """Loads and caches per-symbol horizon summaries."""

    def __init__(self, cfg: dict | None = None, fetch=fetch_closes):
        cfg = cfg or {}
        self.rs_window = cfg.get("tpg", {}).get("rs_window_days", 10)
        self.max_workers = cfg.get("fetch", {}).get("max_workers", 3)
        self._fetch = fetch
        self._cache: dict[str, dict] = {}

    def load(self, symbols: list[str]) -> dict[str, dict]:
        todo = [s for s in dict.fromkeys(symbols) if s not in self._cache]
        if todo:
            with ThreadPoolExecutor(max_workers=self.max_workers) as pool:
                futs = {pool.submit(self._fetch, s): s for s in todo}
                for fut in as_completed(futs):
                    sym = futs[fut]
                    try:
                        closes = fut.result(timeout=60)
                    except Exception as e:
                        logger.warning(f"History unavailable: {e}", extra={"ticker": sym})
                        closes = pd.Series(dtype=float)
                    self._cache[sym] = summarize_closes(closes, self.rs_window)
            n_ok = sum(1 for s in todo if self._cache[s]["change1W"] is not None)
            logger.info(f"History loaded for {n_ok}/{len(todo)} symbols",
                        extra={"phase": "history", "count": n_ok})
        return {s: self._cache[s] for s in symbols if s in self._cache}

    def get(self, symbol: str) -> dict:
        return self._cache.get(symbol) or {f: None for f in HISTORY_FIELDS}

    def relative_strength(self, symbol: str, benchmark: str = "SPY") -> float:
        """Ticker minus benchmark N-session return (0.0 when either is missing)."""
        r_t = self.get(symbol).get("return10d")
        r_b = self.get(benchmark).get("return10d")
        if r_t is None or r_b is None or np.isnan(r_t) or np.isnan(r_b):
            return 0.0
        return round(r_t - r_b, 2)
