#!/usr/bin/env python3
"""
Alpha Selection Engine: Master Entry Point
===========================================
Single-command pipeline:
    python run_pipeline.py                  # Full production run
    python run_pipeline.py --dev            # Skip the universe quality gate
    python run_pipeline.py --max-rounds 3   # Shorter backfill
    python run_pipeline.py --force          # Overwrite today's dated report

Stages: universe snapshot -> sanitize -> preliminary rank -> options
backfill rounds -> anti-churn -> report diff -> quality tiers -> TPG ->
3/7/2 selection -> continuity tracker -> snapshot validation -> persist.

Exit code 1 on config errors and on any PipelineAbort (quality gate,
under-supply, integrity violation, no universe snapshot).  Budget
exhaustion mid-run is a soft stop: remaining enrichment is options-free.
"""

import argparse
import sys
import time
from datetime import datetime, timezone
from functools import partial
from pathlib import Path
from typing import Optional

import pandas as pd
import yaml
from pydantic import ValidationError

from amplifier import (
    apply_anti_churn, apply_quality_tiers, attach_diff_reasons,
    compute_power_meta, determine_regime, generate_report_diff, regime_label,
)
from backfill import BackfillOrchestrator
from continuity_tracker import format_changelog, no_trade_explanation, run_continuity
from instrumentation import (
    BackfillFinished, EventLog, ProgressBus, RoundCompleted, trace_event,
)
from market_data import BudgetExceededError, FetchError, RunBudget
from price_history import PriceHistoryProvider
from run_context import ET, RunContext, make_run_id
from schemas import OptionsStatusSummary, RunConfig
from scoring_engine import PipelineAbort
from selection_engine import select_final
from stores import ReportExistsError

ROOT = Path(__file__).resolve().parent
ENGINE_VERSION = "alpha-selection-1.0.0"

REQUIRED_META_FIELDS = ("universeSource", "universeCount", "universeSelectedK",
                        "itemsCount", "topPicks", "runId", "timestamp")


# ---------------------------------------------------------------------------
# CLI argument parsing
# ---------------------------------------------------------------------------
def parse_args(argv=None):
    p = argparse.ArgumentParser(description="Alpha Selection Engine")
    p.add_argument("--config", type=str, default=str(ROOT / "config.yaml"),
                   help="Path to config.yaml")
    p.add_argument("--dev", action="store_true",
                   help="Non-production run: skip the minimum-universe quality gate")
    p.add_argument("--max-rounds", type=int, default=None,
                   help="Override backfill.max_rounds")
    p.add_argument("--force", action="store_true",
                   help="Overwrite an existing dated report")
    p.add_argument("--no-excel", action="store_true",
                   help="Skip the selection workbook")
    return p.parse_args(argv)


# ---------------------------------------------------------------------------
# Config loader with error handling
# ---------------------------------------------------------------------------
def load_config_safe(path: Optional[str] = None) -> dict:
    """Load and validate config.yaml; print the problem and exit(1) on failure."""
    config_path = Path(path) if path else ROOT / "config.yaml"
    if not config_path.exists():
        print(f"\n  ERROR: config.yaml not found at {config_path}")
        sys.exit(1)
    try:
        with open(config_path) as f:
            cfg = yaml.safe_load(f)
        if not isinstance(cfg, dict):
            raise ValueError("config.yaml is empty or malformed")
        return RunConfig(**cfg).model_dump()
    except ValidationError as e:
        print(f"\n  ERROR: Invalid config.yaml:\n{e}")
        sys.exit(1)
    except (yaml.YAMLError, ValueError) as e:
        print(f"\n  ERROR: Failed to parse config.yaml: {e}")
        sys.exit(1)


# ---------------------------------------------------------------------------
# Snapshot contract
# ---------------------------------------------------------------------------
def compute_options_status(items: list, target: int = 12) -> OptionsStatusSummary:
    ok = sum(1 for it in items if it.optionsStatus == "OK")
    pct = round(ok / target * 100) if target else 0
    pct = max(0, min(100, pct))
    if pct >= 90:
        return OptionsStatusSummary(status="OK", coveragePct=pct)
    status = "PARTIAL" if pct >= 20 else "PENDING"
    return OptionsStatusSummary(status=status, coveragePct=pct,
                                reason=f"{ok}/{target} selected tickers have options analytics")


def validate_snapshot_meta(snapshot: dict) -> list[str]:
    """Contract checks on a built snapshot. Returns a list of error strings."""
    errors = [f"missing field: {f}" for f in REQUIRED_META_FIELDS
              if snapshot.get(f) is None]
    picks = snapshot.get("topPicks") or []
    if len(picks) != 3:
        errors.append(f"topPicks must have 3 entries (got {len(picks)})")
    sel = snapshot.get("selection") or {}
    if sel.get("total") != 12:
        errors.append(f"selection.total must be 12 (got {sel.get('total')})")
    if sel.get("top3") != 3:
        errors.append(f"selection.top3 must be 3 (got {sel.get('top3')})")
    return errors


def build_snapshot(selection, backfill, pool, tracker_state, diffs, power_meta,
                   cfg: dict, run_id: str, now: datetime) -> dict:
    opt_status = compute_options_status(selection.items)
    snapshot = {
        "runId": run_id,
        "timestamp": now.astimezone(timezone.utc).isoformat(),
        "etDate": now.astimezone(ET).date().isoformat(),
        "engineVersion": ENGINE_VERSION,
        "universeSource": "market_snapshot",
        "universeCountRaw": backfill.universe_count_raw,
        "universeCount": backfill.universe_count,
        "universeSelectedK": len(backfill.heavy_symbols),
        "universeExcludedReasons": backfill.excluded_reasons,
        "backfillRound": backfill.rounds,
        "itemsCount": len(selection.items),
        "items": [it.model_dump(mode="json") for it in selection.items],
        "topPicks": selection.top_picks,
        "selection": selection.contract().model_dump(),
        "degraded": selection.degraded,
        "tpgFallback": selection.tpg_fallback,
        "optionsStatus": opt_status.model_dump(),
        "powerMeta": power_meta,
        "diffs": diffs,
        "changelog": [e.model_dump(mode="json") for e in tracker_state.changelog],
        "timeStopTracker": {k: v.model_dump(mode="json")
                            for k, v in tracker_state.timeStopTracker.items()},
        "integrity": {"oiPolicy": "NO_SUBSTITUTE",
                      "pendingAllowed": opt_status.status != "OK"},
    }
    # Near-misses among TPG candidates that did not make the Top-3
    picks = set(selection.top_picks)
    snapshot["noTrade"] = [
        no_trade_explanation(sym, next(it.alphaScore for it in pool if it.symbol == sym),
                             r.passed, r.score, r.retestStatus)
        for sym, r in selection.tpg_results.items() if sym not in picks
    ]
    errors = validate_snapshot_meta(snapshot)
    snapshot["validation"] = {"isValid": not errors, "errors": errors}
    ok = not errors and not selection.degraded and opt_status.status == "OK"
    snapshot["mode"] = "PASS" if ok else "PARTIAL"
    return snapshot


def _scored_frame(items: list) -> pd.DataFrame:
    cols = ["symbol", "price", "changePercent", "volRatio", "alphaScore", "powerScore",
            "qualityTier", "optionsStatus", "velocity", "isBoosted", "boostAmount"]
    rows = [{c: getattr(it, c) for c in cols} | {
        "action": it.decisionSSOT.action, "confidence": it.decisionSSOT.confidence,
        "finalScore": it.multiTF.finalScore} for it in items]
    return pd.DataFrame(rows)


# ---------------------------------------------------------------------------
# Pipeline
# ---------------------------------------------------------------------------
def build_history_provider(cfg: dict, fetcher, budget: RunBudget) -> PriceHistoryProvider:
    """History provider for `tpg.history_source`.

    Daily aggregates from the market-data API are charged to the run budget;
    yfinance history is not.
    """
    if cfg.get("tpg", {}).get("history_source") == "market_data":
        return PriceHistoryProvider(cfg, fetch=partial(fetcher.fetch_daily_closes, budget=budget))
    return PriceHistoryProvider(cfg)


def run_selection(cfg: dict, fetcher, report_store, tracker_store, history=None,
                  now: Optional[datetime] = None, run_id: Optional[str] = None,
                  clock=time.monotonic, sleep=time.sleep,
                  observer: Optional[ProgressBus] = None,
                  event_log: Optional[EventLog] = None,
                  ctx: Optional[RunContext] = None, force: bool = False,
                  budget: Optional[RunBudget] = None):
    """Run every stage once and persist the result. Returns (snapshot, stats)."""
    now = now or datetime.now(timezone.utc)
    run_id = run_id or make_run_id(now)
    fcfg = cfg.get("fetch", {})
    kind = cfg.get("stores", {}).get("report_kind", "selection")
    if budget is None:
        budget = RunBudget(fcfg.get("budget_cap", 2000))
    observer = observer or ProgressBus()
    stats = {}

    # ---- 1. Regime & universe ----
    with trace_event(event_log, "NET", "Macro + universe snapshot"):
        macro_chg = fetcher.fetch_macro_change(fcfg.get("macro_symbol", "QQQ"), budget=budget)
        regime, regime_reason = determine_regime(macro_chg, cfg)
        try:
            raw_df = fetcher.fetch_universe_snapshot(budget=budget)
        except BudgetExceededError as e:
            # Nothing to degrade to without a universe
            raise PipelineAbort(f"No universe snapshot: {e}") from e
    print(f"  Regime: {regime} ({regime_reason}); universe: {len(raw_df)} tickers")

    prev_report = report_store.load_latest(kind) or {}
    prev_items = prev_report.get("items") or []

    # ---- 2. Backfill rounds ----
    orchestrator = BackfillOrchestrator(fetcher, cfg, budget=budget, clock=clock,
                                        sleep=sleep, observer=observer, history=history)
    with trace_event(event_log, "NET", "Options backfill"):
        backfill = orchestrator.run(raw_df, regime_label(regime), prior_items=prev_items)
    if ctx is not None:
        ctx.save_universe(backfill.sanitized["symbol"].tolist(), backfill.excluded_reasons,
                          heavy=backfill.heavy_symbols)
        ctx.save_artifact("universe_sanitized", backfill.sanitized)
        ctx.save_artifact("prelim_rank", backfill.prelim)

    # ---- 3. Amplification ----
    with trace_event(event_log, "CALC", "Anti-churn + quality tiers"):
        items = apply_anti_churn(backfill.items, prev_items, cfg)
        items.sort(key=lambda it: (-it.alphaScore, it.symbol))
        raw_syms = set(raw_df["symbol"].astype(str).str.upper()) if not raw_df.empty else set()
        missing = {p["symbol"] for p in prev_items} - raw_syms
        diffs = generate_report_diff(prev_items, items, missing)
        items = attach_diff_reasons(items, diffs)
        pool = apply_quality_tiers(items, {p["symbol"] for p in prev_items}, regime, cfg)
        power_meta = compute_power_meta(pool, regime, regime_reason)
    if ctx is not None:
        ctx.save_artifact("scored_pool", _scored_frame(pool))

    # ---- 4. News freshness for the leading candidates ----
    n_news = cfg.get("tpg", {}).get("candidates", 10) + \
        cfg.get("selection", {}).get("max_new_entrants", 3)
    for i, it in enumerate(pool[:n_news]):
        try:
            ts = fetcher.fetch_last_news_time(it.symbol, budget=budget)
        except FetchError:
            continue
        except BudgetExceededError:
            break
        if ts:
            pool[i] = it.model_copy(update={"lastNewsTime": ts})

    # ---- 5. Selection & continuity ----
    tracker = tracker_store.load()
    benchmark = fcfg.get("benchmark", "SPY")
    rs_provider = (lambda sym: history.relative_strength(sym, benchmark)) if history else None
    with trace_event(event_log, "CALC", "TPG + 3/7/2 selection"):
        selection = select_final(pool, tracker.top3, cfg, rs_provider=rs_provider, now=now)
    today = now.astimezone(ET).date().isoformat()
    new_state = run_continuity(tracker, selection.top3, today, cfg)
    power_meta["top3Stats"] = {"tpgFallback": selection.tpg_fallback,
                               "degraded": selection.degraded}

    # ---- 6. Snapshot ----
    snapshot = build_snapshot(selection, backfill, pool, new_state, diffs, power_meta,
                              cfg, run_id, now)
    if not snapshot["validation"]["isValid"]:
        for err in snapshot["validation"]["errors"]:
            print(f"  WARNING: snapshot validation: {err}")

    with trace_event(event_log, "IO", "Persist snapshot + tracker"):
        report_store.save(snapshot["etDate"], kind, snapshot, force=force)
        tracker_store.save(new_state)

    stats.update({
        "regime": regime,
        "universe_raw": backfill.universe_count_raw,
        "universe_sanitized": backfill.universe_count,
        "excluded": backfill.excluded_reasons,
        "heavy": len(backfill.heavy_symbols),
        "rounds": backfill.rounds,
        "options_ok": backfill.ok_count,
        "options_pending": backfill.fail_count,
        "budget_used": budget.current,
        "budget_cap": budget.cap,
        "budget_exhausted": backfill.budget_exhausted,
        "changelog_text": format_changelog(new_state.changelog),
    })
    return snapshot, stats


# ---------------------------------------------------------------------------
# Diagnostics printer
# ---------------------------------------------------------------------------
def _print_progress(event):
    if isinstance(event, RoundCompleted):
        print(f"  Round {event.round}: ok={event.ok} failed={event.failed} "
              f"pending={event.pending} excluded={event.excluded}")
    elif isinstance(event, BackfillFinished):
        print(f"  Backfill finished after {event.rounds} round(s): "
              f"ok={event.ok} pending={event.pending}")


def print_full_summary(snapshot: dict, stats: dict, excel_path: Optional[str],
                       total_time: float):
    print()
    print("============================================")
    print("  ALPHA SELECTION ENGINE: FULL RUN")
    print("============================================")
    print(f"Run id:                   {snapshot['runId']}")
    print(f"Regime:                   {stats['regime']}")
    print("--------------------------------------------")
    print("UNIVERSE:")
    print(f"  Raw tickers:            {stats['universe_raw']}")
    print(f"  Sanitized:              {stats['universe_sanitized']}")
    for reason, n in stats["excluded"].items():
        print(f"    {reason + ':':<22s} {n}")
    print("--------------------------------------------")
    print("BACKFILL:")
    print(f"  Heavy subset:           {stats['heavy']}")
    print(f"  Rounds:                 {stats['rounds']}")
    print(f"  Options OK / pending:   {stats['options_ok']} / {stats['options_pending']}")
    print(f"  API budget:             {stats['budget_used']}/{stats['budget_cap']}"
          + ("  (EXHAUSTED)" if stats["budget_exhausted"] else ""))
    print("--------------------------------------------")
    print("SELECTION:")
    sel = snapshot["selection"]
    print(f"  Items:                  {sel['total']} (ALPHA {sel['top3']} / CORE {sel['core']}"
          f" / HIGH_RISK {sel['highRisk']})")
    print(f"  Top picks:              {', '.join(snapshot['topPicks'])}")
    print(f"  Options coverage:       {snapshot['optionsStatus']['coveragePct']}% "
          f"({snapshot['optionsStatus']['status']})")
    print(f"  Mode:                   {snapshot['mode']}"
          + ("  [degraded]" if snapshot["degraded"] else "")
          + ("  [TPG fallback]" if snapshot["tpgFallback"] else ""))
    print("--------------------------------------------")
    print(stats["changelog_text"])
    print("--------------------------------------------")
    print("OUTPUT:")
    print(f"  snapshot                OK  ({snapshot['etDate']})")
    print(f"  workbook                {excel_path or 'skipped'}")
    print(f"Total runtime:            {total_time}s")
    print("============================================")


# ---------------------------------------------------------------------------
# MAIN
# ---------------------------------------------------------------------------
def main(argv=None):
    from market_data import HttpMarketDataFetcher
    from selection_workbook import write_selection_workbook
    from stores import FileReportStore, FileTrackerStore

    t0 = time.time()
    args = parse_args(argv)
    ctx = RunContext()

    print("============================================")
    print(f"  ALPHA SELECTION ENGINE  [run_id={ctx.run_id}]")
    print("============================================")

    print("Loading configuration...")
    cfg = load_config_safe(args.config)
    if args.dev:
        cfg["backfill"]["production"] = False
    if args.max_rounds:
        cfg["backfill"]["max_rounds"] = args.max_rounds
    ctx.save_config(cfg)
    ctx.log.info("Config loaded", extra={"phase": "init"})

    event_log = EventLog()
    bus = ProgressBus()
    bus.subscribe(event_log.on_progress)
    bus.subscribe(_print_progress)

    scfg = cfg["stores"]
    fetcher = HttpMarketDataFetcher(cfg)
    budget = RunBudget(cfg["fetch"]["budget_cap"])
    try:
        snapshot, stats = run_selection(
            cfg,
            fetcher=fetcher,
            report_store=FileReportStore(scfg["snapshots_dir"]),
            tracker_store=FileTrackerStore(scfg["tracker_file"]),
            history=build_history_provider(cfg, fetcher, budget),
            run_id=ctx.run_id,
            observer=bus,
            event_log=event_log,
            ctx=ctx,
            force=args.force,
            budget=budget,
        )
    except (PipelineAbort, ReportExistsError) as e:
        ctx.log.error(f"Run aborted: {type(e).__name__}: {e}", extra={"phase": "abort"})
        print(f"\n  *** ABORTED: {e} ***")
        event_log.flush_all(ctx.run_dir)
        ctx.save_metadata({"aborted": True, "error": f"{type(e).__name__}: {e}"})
        ctx.close()
        sys.exit(1)

    excel_path = None
    if cfg["output"]["write_excel"] and not args.no_excel:
        with trace_event(event_log, "IO", "Write selection workbook"):
            excel_path = write_selection_workbook(snapshot, ROOT / cfg["output"]["excel_file"])

    total_time = round(time.time() - t0, 1)
    print_full_summary(snapshot, stats, excel_path, total_time)

    event_log.flush_all(ctx.run_dir)
    ctx.save_metadata({
        "cli_flags": {"dev": args.dev, "max_rounds": args.max_rounds,
                      "force": args.force, "no_excel": args.no_excel},
        "config_hash": ctx.config_hash(cfg),
        "stats": {k: v for k, v in stats.items() if k != "changelog_text"},
        "mode": snapshot["mode"],
        "total_time_seconds": total_time,
    })
    print(f"\n  Run artifacts saved to: runs/{ctx.run_id}/")
    ctx.close()


if __name__ == "__main__":
    main()
