#!/usr/bin/env python3
"""
Universe Sanitizer & Preliminary Ranker
========================================
Drops non-common-stock symbols, penny stocks and illiquid names from the
raw universe, then ranks the survivors with options-free scoring so the
heavy (options-enriched) subset can be chosen.
"""

import logging

import pandas as pd

from scoring_engine import score_ticker

logger = logging.getLogger(__name__)

EXCLUSION_REASONS = ("WARRANT_SUFFIX", "PENNY_FILTER", "LIQUIDITY_FILTER")


def is_warrant_like(symbol: str, cfg: dict) -> bool:
    """Warrants, units, rights and share-class tickers are not tradeable here."""
    ucfg = cfg.get("universe", {})
    suffixes = ucfg.get("blocked_suffixes", ["WS", "W", "U"])
    r_min = ucfg.get("r_suffix_min_length", 5)
    specials = ucfg.get("special_chars", [".", "/", "-"])

    if any(ch in symbol for ch in specials):
        return True
    if any(symbol.endswith(s) for s in suffixes):
        return True
    return symbol.endswith("R") and len(symbol) >= r_min


def sanitize_universe(df: pd.DataFrame, cfg: dict) -> tuple[pd.DataFrame, dict]:
    """Filter the raw snapshot frame.

    Returns (kept_df, excluded_reasons) where excluded_reasons counts each
    exclusion code.  The first failing rule wins for a given symbol.
    """
    ucfg = cfg.get("universe", {})
    min_price = ucfg.get("min_price", 5.0)
    min_dollar_vol = ucfg.get("min_dollar_volume", 20_000_000)
    manual = {t.upper() for t in ucfg.get("exclude_tickers", [])}

    reasons = {r: 0 for r in EXCLUSION_REASONS}
    if df.empty:
        return df.copy(), reasons

    df = df.copy()
    df["symbol"] = df["symbol"].astype(str).str.strip().str.upper()
    df = df.drop_duplicates(subset="symbol", keep="last")
    if manual:
        df = df[~df["symbol"].isin(manual)]

    price = pd.to_numeric(df.get("price"), errors="coerce").fillna(0.0)
    volume = pd.to_numeric(df.get("volume"), errors="coerce").fillna(0.0)

    warrant = df["symbol"].map(lambda s: is_warrant_like(s, cfg))
    penny = ~warrant & (price < min_price)
    illiquid = ~warrant & ~penny & (price * volume < min_dollar_vol)

    reasons["WARRANT_SUFFIX"] = int(warrant.sum())
    reasons["PENNY_FILTER"] = int(penny.sum())
    reasons["LIQUIDITY_FILTER"] = int(illiquid.sum())

    kept = df[~(warrant | penny | illiquid)].reset_index(drop=True)
    logger.info(f"Universe sanitized: {len(kept)} kept of {len(df)}",
                extra={"phase": "universe", "count": len(kept)})
    return kept, reasons


def preliminary_rank(df: pd.DataFrame, regime: str = "Neutral") -> pd.DataFrame:
    """Score every row options-free and sort by alphaScore desc, symbol asc."""
    if df.empty:
        return df.assign(alphaScore=pd.Series(dtype=float))
    scores = [score_ticker(row, regime, strict=False).alphaScore
              for _, row in df.iterrows()]
    ranked = df.assign(alphaScore=scores)
    ranked = ranked.sort_values(["alphaScore", "symbol"], ascending=[False, True],
                                kind="mergesort").reset_index(drop=True)
    ranked["prelimRank"] = range(1, len(ranked) + 1)
    return ranked


def select_heavy_subset(ranked: pd.DataFrame, top_k: int = 60) -> list[str]:
    """Symbols of the top-K preliminary rows (the options-enrichment set)."""
    return ranked["symbol"].head(top_k).tolist()
