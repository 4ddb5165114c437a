#!/usr/bin/env python3
"""
Final Selection (3 / 7 / 2)
===========================
Builds the 12-name shortlist from the amplified pool:

  1. Selection pool: incumbents (previous Top-3) plus at most
     max_new_entrants challengers, backfilled from the remaining
     challengers only when the pool would otherwise be short of 12.
  2. TPG on the top `candidates` of the pool.
  3. ALPHA x3: first three TPG-passed, non-FIRST_BREAK candidates;
     pure score order (tpgFallback) when fewer than three qualify.
  4. HIGH_RISK x2: velocity weight + |day change|, ties in score order.
  5. CORE x7: next best by score.

Fewer than 12 available marks the selection degraded (never padded);
fewer than abort_floor raises SelectionUnderSupplyError.
"""

import logging
from datetime import datetime
from typing import Callable, Optional

from schemas import ScoredTicker, SelectionContract, TPGResult
from scoring_engine import PipelineAbort
from tpg_engine import compute_tpg

logger = logging.getLogger(__name__)

VELOCITY_WEIGHT = {"▲": 2.0, "▼": 1.5, "►": 0.0}


class SelectionUnderSupplyError(PipelineAbort):
    """Too few eligible tickers to publish a selection."""


class SelectionResult:
    """Ordered final items plus flags describing how they were chosen."""

    def __init__(self, items: list[ScoredTicker], degraded: bool, tpg_fallback: bool,
                 tpg_results: dict, pool_symbols: list[str]):
        self.items = items
        self.degraded = degraded
        self.tpg_fallback = tpg_fallback
        self.tpg_results = tpg_results
        self.pool_symbols = pool_symbols

    @property
    def top3(self) -> list[ScoredTicker]:
        return [it for it in self.items if it.role == "ALPHA"]

    @property
    def top_picks(self) -> list[str]:
        return [it.symbol for it in self.top3]

    def contract(self) -> SelectionContract:
        roles = [it.role for it in self.items]
        return SelectionContract(total=len(self.items), top3=roles.count("ALPHA"),
                                 core=roles.count("CORE"), highRisk=roles.count("HIGH_RISK"))


def _by_score(items: list[ScoredTicker]) -> list[ScoredTicker]:
    return sorted(items, key=lambda it: (-it.selection_score, it.symbol))


def build_selection_pool(pool: list[ScoredTicker], incumbents: list[str],
                         max_new: int = 3, target: int = 12) -> list[ScoredTicker]:
    """Incumbents plus capped challengers, score-ordered."""
    inc = set(incumbents or [])
    ordered = _by_score(pool)
    holders = [it for it in ordered if it.symbol in inc]
    challengers = [it for it in ordered if it.symbol not in inc]
    selected = holders + challengers[:max_new]
    if len(selected) < target:
        selected += challengers[max_new:max_new + target - len(selected)]
    return _by_score(selected)


def pick_high_risk(remaining: list[ScoredTicker], n: int = 2) -> list[ScoredTicker]:
    # sorted() is stable, so equal weights keep score order
    return sorted(remaining,
                  key=lambda it: -(VELOCITY_WEIGHT.get(it.velocity, 0.0) + abs(it.changePercent)))[:n]


def select_final(pool: list[ScoredTicker], incumbents: list[str], cfg: dict,
                 rs_provider: Optional[Callable[[str], float]] = None,
                 now: Optional[datetime] = None) -> SelectionResult:
    scfg = cfg.get("selection", {})
    n_top = scfg.get("top3", 3)
    n_core = scfg.get("core", 7)
    n_hr = scfg.get("high_risk", 2)
    target = n_top + n_core + n_hr
    abort_floor = scfg.get("abort_floor", 6)
    n_cand = cfg.get("tpg", {}).get("candidates", 10)
    rs_provider = rs_provider or (lambda _sym: 0.0)

    sel_pool = build_selection_pool(pool, incumbents, scfg.get("max_new_entrants", 3), target)
    if len(sel_pool) < abort_floor:
        raise SelectionUnderSupplyError(
            f"Only {len(sel_pool)} eligible tickers (floor {abort_floor})")

    # TPG on the leading candidates
    tpg: dict[str, TPGResult] = {}
    for it in sel_pool[:n_cand]:
        tpg[it.symbol] = compute_tpg(it, rs_provider(it.symbol), now, cfg)
        logger.debug(f"TPG {tpg[it.symbol].score}/4: {tpg[it.symbol].explanation}",
                     extra={"ticker": it.symbol, "phase": "tpg"})

    passed = [it for it in sel_pool[:n_cand]
              if tpg[it.symbol].passed and tpg[it.symbol].retestStatus != "FIRST_BREAK"]
    tpg_fallback = len(passed) < n_top
    if tpg_fallback:
        logger.warning(f"TPG candidates insufficient ({len(passed)}/{n_top}), "
                       f"using score-order fallback", extra={"phase": "tpg"})
        alpha = sel_pool[:n_top]
    else:
        alpha = passed[:n_top]

    taken = {it.symbol for it in alpha}
    remaining = [it for it in sel_pool if it.symbol not in taken]
    high_risk = pick_high_risk(remaining, n_hr)
    taken |= {it.symbol for it in high_risk}
    core = [it for it in sel_pool if it.symbol not in taken][:n_core]

    items = []
    for role, group in (("ALPHA", alpha), ("CORE", core), ("HIGH_RISK", high_risk)):
        for it in group:
            items.append(it.model_copy(update={
                "role": role, "rank": len(items) + 1, "tpg": tpg.get(it.symbol)}))

    degraded = len(items) < target
    if degraded:
        logger.warning(f"Selection degraded: {len(items)}/{target} items",
                       extra={"phase": "selection", "count": len(items)})
    return SelectionResult(items, degraded, tpg_fallback, tpg,
                           [it.symbol for it in sel_pool])
