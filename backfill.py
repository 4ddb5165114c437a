#!/usr/bin/env python3
"""
Backfill Orchestrator
=====================
Bounded, incremental options enrichment of the heavy subset across retry
rounds.

Round loop (1..max_rounds):
  1. Tickers whose options were OK earlier (this run or a prior report)
     are frozen and re-scored via merge_enrichment, never re-fetched.
  2. Heavy, not-OK, not-excluded tickers are fetched on a bounded thread
     pool.  Each fetch races a per-ticker timeout that starts when a
     worker picks the ticker up.
  3. NO_OPTIONS_LISTED is a permanent exclusion: never re-fetched and
     dropped from the scored items.  Every other failure
     (timeout, rate limit, malformed response, zero OI) keeps the ticker
     options-free and retries it next round.
  4. Budget exhaustion stops enrichment immediately.
  5. Every remaining sanitized ticker is re-scored; progress events are published.
  6. Stop when nothing is pending or max_rounds is reached, else sleep
     the remainder of the round interval on the injected clock.
"""

import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FuturesTimeout
from typing import Callable, Optional

import pandas as pd

from instrumentation import (
    BackfillFinished, ProgressBus, RoundCompleted, RoundStarted, TickerEnriched,
)
from market_data import BudgetExceededError, FetchError, RunBudget
from schemas import OptionsAnalytics, ScoredTicker
from scoring_engine import PipelineAbort, merge_enrichment, score_ticker
from universe import preliminary_rank, sanitize_universe, select_heavy_subset

logger = logging.getLogger(__name__)

PERMANENT_EXCLUSION = "NO_OPTIONS_LISTED"


class QualityGateError(PipelineAbort):
    """Sanitized universe too small to produce a meaningful report."""


class BackfillResult:
    """Outcome of one orchestrated backfill."""

    def __init__(self, items: list[ScoredTicker], rounds: int,
                 excluded_reasons: dict, ok_count: int, fail_count: int,
                 fetch_attempts: dict, universe_count_raw: int,
                 heavy_symbols: list[str], budget_exhausted: bool,
                 sanitized: Optional[pd.DataFrame] = None,
                 prelim: Optional[pd.DataFrame] = None):
        self.items = items
        self.rounds = rounds
        self.excluded_reasons = excluded_reasons
        self.ok_count = ok_count
        self.fail_count = fail_count
        self.fetch_attempts = fetch_attempts
        self.universe_count_raw = universe_count_raw
        self.heavy_symbols = heavy_symbols
        self.budget_exhausted = budget_exhausted
        self.sanitized = sanitized
        self.prelim = prelim

    @property
    def universe_count(self) -> int:
        return len(self.items)


class BackfillOrchestrator:
    """Round state machine for heavy-subset options enrichment."""

    def __init__(self, fetcher, cfg: dict, budget: Optional[RunBudget] = None,
                 clock: Callable[[], float] = time.monotonic,
                 sleep: Callable[[float], None] = time.sleep,
                 observer: Optional[ProgressBus] = None,
                 history=None):
        self.fetcher = fetcher
        self.cfg = cfg
        bcfg = cfg.get("backfill", {})
        fcfg = cfg.get("fetch", {})
        self.max_rounds = bcfg.get("max_rounds", 20)
        self.round_sleep = bcfg.get("round_sleep_seconds", 20)
        self.ticker_timeout = bcfg.get("ticker_timeout_seconds", 60)
        self.production = bcfg.get("production", True)
        self.max_workers = fcfg.get("max_workers", 3)
        self.benchmark = fcfg.get("benchmark", "SPY")
        self.top_k = cfg.get("universe", {}).get("top_k", 60)
        self.min_universe = cfg.get("universe", {}).get("min_universe", 50)
        self.strict = cfg.get("scoring", {}).get("strict", True)
        self.budget = budget or RunBudget(fcfg.get("budget_cap", 2000))
        self.clock = clock
        self.sleep = sleep
        self.observer = observer or ProgressBus()
        self.history = history
        self._lock = threading.Lock()

    # ---- one ticker (runs on a worker thread) ----

    def _enrich_one(self, symbol: str, spot: Optional[float]) -> dict:
        t0 = time.monotonic()
        rec = {"symbol": symbol}
        try:
            rec["options"] = self.fetcher.fetch_options(symbol, spot=spot, budget=self.budget)
        except BudgetExceededError as exc:
            rec["options"] = OptionsAnalytics(status="PENDING", reason="BUDGET_EXCEEDED")
            rec["_error"] = str(exc)
            rec["_budget_exceeded"] = True
        except FetchError as exc:
            rec["options"] = OptionsAnalytics(status="PENDING", reason="FETCH_ERROR")
            rec["_error"] = str(exc)
            rec["_rate_limited"] = exc.rate_limited
        except (KeyError, TypeError, ValueError, AttributeError) as exc:
            rec["options"] = OptionsAnalytics(status="PENDING", reason="FETCH_ERROR")
            rec["_error"] = f"malformed response: {type(exc).__name__}: {exc}"
        rec["_fetch_time_ms"] = round((time.monotonic() - t0) * 1000)
        return rec

    def _enrich_with_deadline(self, symbol: str, spot: Optional[float]) -> dict:
        """Race one fetch against the per-ticker timeout.

        The clock starts when a pool worker picks the ticker up, so tickers
        queued behind a slow one are never timed out unfetched.  A fetch that
        overruns is abandoned on its own thread and the worker slot is freed.
        """
        runner = ThreadPoolExecutor(max_workers=1)
        fut = runner.submit(self._enrich_one, symbol, spot)
        try:
            return fut.result(timeout=self.ticker_timeout)
        except FuturesTimeout:
            return {"symbol": symbol, "_error": "timeout",
                    "options": OptionsAnalytics(status="PENDING", reason="TIMEOUT"),
                    "_fetch_time_ms": round(self.ticker_timeout * 1000)}
        finally:
            runner.shutdown(wait=False)

    # ---- round helpers ----

    def _fetch_round(self, rnd: int, pending: list[str], spots: dict,
                     workers: int) -> list[dict]:
        """Fan out one round; results are returned in submission order."""
        records = []
        pool = ThreadPoolExecutor(max_workers=workers)
        try:
            futs = [(sym, pool.submit(self._enrich_with_deadline, sym, spots.get(sym)))
                    for sym in pending]
            for sym, fut in futs:
                rec = fut.result()
                records.append(rec)
                opts = rec["options"]
                self.observer.publish(TickerEnriched(
                    round=rnd, symbol=sym, status=opts.status, reason=opts.reason,
                    elapsed_ms=rec["_fetch_time_ms"]))
        finally:
            pool.shutdown(wait=False, cancel_futures=True)
        return records

    def _snapshot_rows(self, kept: pd.DataFrame, heavy: set) -> list[dict]:
        rows = []
        for row in kept.to_dict("records"):
            sym = row["symbol"]
            hist = self.history.get(sym) if (self.history is not None and sym in heavy) else {}
            for field in ("rsi14", "return10d", "change1W", "change1M"):
                if hist.get(field) is not None:
                    row[field] = hist[field]
            rows.append(row)
        return rows

    def _score_all(self, rows: list[dict], frozen: dict, pending_opts: dict,
                   regime: str) -> list[ScoredTicker]:
        items = []
        for row in rows:
            sym = row["symbol"]
            if sym in frozen:
                item = merge_enrichment(row, frozen[sym], regime, strict=self.strict)
            else:
                item = score_ticker(row, regime, options=pending_opts.get(sym), strict=False)
            items.append(item)
        items.sort(key=lambda it: (-it.alphaScore, it.symbol))
        return items

    # ---- main loop ----

    def run(self, snapshots_df: pd.DataFrame, regime: str = "Neutral",
            prior_items: Optional[list] = None,
            refresh: Optional[Callable[[], pd.DataFrame]] = None) -> BackfillResult:
        raw_count = len(snapshots_df)
        kept, excluded_reasons = sanitize_universe(snapshots_df, self.cfg)
        excluded_reasons[PERMANENT_EXCLUSION] = 0

        if self.production and len(kept) < self.min_universe:
            raise QualityGateError(
                f"Sanitized universe {len(kept)} < minimum {self.min_universe}")

        prelim = preliminary_rank(kept, regime)
        heavy_list = select_heavy_subset(prelim, self.top_k)
        heavy = set(heavy_list)
        if self.history is not None:
            self.history.load(heavy_list + [self.benchmark])

        frozen: dict = {}
        for prior in prior_items or []:
            sym = prior["symbol"] if isinstance(prior, dict) else prior.symbol
            status = (prior.get("options") or {}).get("status") if isinstance(prior, dict) \
                else prior.options.status
            if sym in heavy and status == "OK":
                frozen[sym] = prior
        if frozen:
            logger.info(f"Reusing OK options from prior report for {len(frozen)} tickers",
                        extra={"phase": "backfill", "count": len(frozen)})

        excluded: set = set()
        pending_opts: dict[str, OptionsAnalytics] = {}
        attempts: dict[str, int] = {}
        workers = self.max_workers
        budget_exhausted = False
        items: list[ScoredTicker] = []
        rnd = 0

        for rnd in range(1, self.max_rounds + 1):
            t_round = self.clock()
            if refresh is not None and rnd > 1:
                kept, _ = sanitize_universe(refresh(), self.cfg)
            spots = dict(zip(kept["symbol"], kept["price"])) if not kept.empty else {}

            with self._lock:
                pending = sorted(s for s in heavy
                                 if s not in frozen and s not in excluded and s in spots)
            self.observer.publish(RoundStarted(round=rnd, pending=len(pending)))

            rate_limited = False
            failed_this_round = 0
            if pending and not budget_exhausted:
                for rec in self._fetch_round(rnd, pending, spots, workers):
                    sym = rec["symbol"]
                    opts: OptionsAnalytics = rec["options"]
                    with self._lock:
                        attempts[sym] = attempts.get(sym, 0) + 1
                        if opts.status == "OK":
                            frozen[sym] = {"symbol": sym, "options": opts.model_dump()}
                            pending_opts.pop(sym, None)
                        elif opts.reason == PERMANENT_EXCLUSION:
                            excluded.add(sym)
                            excluded_reasons[PERMANENT_EXCLUSION] += 1
                            pending_opts.pop(sym, None)
                        else:
                            failed_this_round += 1
                            # Retryable: score options-free, keep reason for display
                            pending_opts[sym] = OptionsAnalytics(status="PENDING",
                                                                 reason=opts.reason)
                    if rec.get("_rate_limited"):
                        rate_limited = True
                    if rec.get("_budget_exceeded"):
                        budget_exhausted = True
                    if rec.get("_error"):
                        logger.debug(f"Enrichment failed: {rec['_error']}",
                                     extra={"ticker": sym, "round": rnd, "status": opts.reason})

            # Permanently excluded tickers are ineligible for the report
            rows = [r for r in self._snapshot_rows(kept, heavy) if r["symbol"] not in excluded]
            items = self._score_all(rows, frozen, pending_opts, regime)

            with self._lock:
                still_pending = [s for s in heavy if s not in frozen and s not in excluded]
                ok_count = sum(1 for s in heavy if s in frozen)
            self.observer.publish(RoundCompleted(
                round=rnd, ok=ok_count, failed=failed_this_round,
                pending=len(still_pending), excluded=len(excluded)))
            logger.info(f"Round {rnd}: ok={ok_count} pending={len(still_pending)} "
                        f"excluded={len(excluded)} budget={self.budget.current}/{self.budget.cap}",
                        extra={"phase": "backfill", "round": rnd, "count": ok_count})

            if budget_exhausted:
                logger.warning("BUDGET_EXCEEDED: stopping enrichment",
                               extra={"phase": "backfill", "round": rnd})
                break
            if not still_pending or rnd == self.max_rounds:
                break

            if rate_limited and workers > 1:
                workers -= 1
                logger.warning(f"Rate limit detected: reducing workers to {workers}",
                               extra={"phase": "backfill", "round": rnd})
            elapsed = self.clock() - t_round
            self.sleep(max(0.0, self.round_sleep - elapsed))

        with self._lock:
            ok_count = sum(1 for s in heavy if s in frozen)
            fail_count = sum(1 for s in heavy if s not in frozen and s not in excluded)
        self.observer.publish(BackfillFinished(rounds=rnd, ok=ok_count, pending=fail_count))

        return BackfillResult(
            items=items,
            rounds=rnd,
            excluded_reasons=excluded_reasons,
            ok_count=ok_count,
            fail_count=fail_count,
            fetch_attempts=attempts,
            universe_count_raw=raw_count,
            heavy_symbols=heavy_list,
            budget_exhausted=budget_exhausted,
            sanitized=kept,
            prelim=prelim,
        )
