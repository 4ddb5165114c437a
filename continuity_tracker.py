#!/usr/bin/env python3
"""
Continuity Tracker
==================
Cross-run memory for the Top-3:

  - Time-stop pressure: a Top-3 name that misses its first target
    (entry x 1.05) while volume fades accumulates rebuild pressure
    (+3 on D+1 with volume < 0.8 x previous, +2 more from D+2).  Hitting
    the target resets it.
  - Changelog: OUT / IN / NO_CHANGE entries between the previous and new
    Top-3, with trigger and execution guidance.

`today` is always injected so runs are reproducible.
"""

import logging
from datetime import date
from typing import Optional

from schemas import ChangelogEntry, ScoredTicker, TimeStopEntry, TrackerState

logger = logging.getLogger(__name__)


def _days_between(d1: str, d2: str) -> int:
    return abs((date.fromisoformat(d2) - date.fromisoformat(d1)).days)


def update_time_stop(state: TrackerState, symbol: str, price: float,
                     volume: Optional[float], prev_volume: Optional[float],
                     today: str, target1: Optional[float] = None,
                     cfg: Optional[dict] = None) -> TimeStopEntry:
    """Create or advance the time-stop entry for one Top-3 member (mutates state)."""
    tcfg = (cfg or {}).get("time_stop", {})
    target_pct = tcfg.get("target_pct", 5.0)
    drop_ratio = tcfg.get("volume_drop_ratio", 0.8)

    entry = state.timeStopTracker.get(symbol)
    if entry is not None and entry.lastUpdateDate == today:
        # Already advanced for this trading date
        return entry
    if entry is None:
        entry = TimeStopEntry(
            ticker=symbol, entryDate=today, entryPrice=price,
            target1=target1 or round(price * (1 + target_pct / 100), 4),
            lastUpdateDate=today,
        )
    else:
        entry.daysSinceEntry = _days_between(entry.entryDate, today)
        entry.lastUpdateDate = today
        if price >= entry.target1:
            entry.target1Hit = True
            entry.rebuildPressure = 0
        elif entry.daysSinceEntry >= 1 and not entry.target1Hit:
            if (volume or 0) < (prev_volume or 0) * drop_ratio:
                entry.rebuildPressure += tcfg.get("d1_pressure", 3)
            if entry.daysSinceEntry >= 2:
                entry.rebuildPressure += tcfg.get("d2_pressure", 2)
            logger.info(f"Time-stop D+{entry.daysSinceEntry}: pressure {entry.rebuildPressure}",
                        extra={"ticker": symbol, "phase": "continuity"})
    state.timeStopTracker[symbol] = entry
    return entry


def generate_changelog(prev_top3: list[str], new_top3: list[ScoredTicker],
                       tracker: dict, cfg: Optional[dict] = None) -> list[ChangelogEntry]:
    tcfg = (cfg or {}).get("time_stop", {})
    rotation = tcfg.get("rotation_threshold", 8)
    forced = tcfg.get("forced_threshold", 5)
    new_syms = [t.symbol for t in new_top3]
    log: list[ChangelogEntry] = []

    for i, sym in enumerate(prev_top3):
        if sym in new_syms:
            continue
        entry = tracker.get(sym)
        pressure = entry.rebuildPressure if entry else 0
        if pressure >= rotation:
            trigger = f"TimeStop +{rotation}"
            reason = f"D+{entry.daysSinceEntry} target missed with fading volume: rotate"
        elif pressure >= forced:
            trigger = f"+{forced}"
            reason = "repeated target misses: forced replacement"
        else:
            trigger, reason = "N/A", "rank drop out of Top-3"
        log.append(ChangelogEntry(
            action="OUT", ticker=sym, reason=reason, trigger=trigger,
            execution="PARTIAL" if trigger.startswith("TimeStop") else "FULL",
            prevRank=i + 1))

    incumbent_survives = any(p in new_syms for p in prev_top3)
    for i, t in enumerate(new_top3):
        tpg_score = t.tpg.score if t.tpg else None
        tpg_text = t.tpg.explanation if t.tpg else "TPG passed"
        if t.symbol not in prev_top3:
            if i > 0 and prev_top3 and incumbent_survives:
                trigger = "EH"
                reason = f"score close with velocity edge: early handoff ({tpg_text})"
            else:
                trigger = "+3"
                reason = f"AlphaScore {t.alphaScore:.1f} + {tpg_text}"
            log.append(ChangelogEntry(
                action="IN", ticker=t.symbol, reason=reason, trigger=trigger,
                execution="PARTIAL" if trigger == "EH" else "FULL",
                newRank=i + 1, alphaScore=t.alphaScore, tpgScore=tpg_score))
        else:
            prev_rank = prev_top3.index(t.symbol) + 1
            if prev_rank != i + 1:
                log.append(ChangelogEntry(
                    action="NO_CHANGE", ticker=t.symbol,
                    reason=f"rank change ({prev_rank} -> {i + 1})",
                    trigger="N/A", execution="N/A",
                    prevRank=prev_rank, newRank=i + 1, alphaScore=t.alphaScore))
    return log


def run_continuity(state: TrackerState, top3_items: list[ScoredTicker], today: str,
                   cfg: Optional[dict] = None) -> TrackerState:
    """Advance the tracker by one run; the input state is not modified."""
    new_state = state.model_copy(deep=True)
    for it in top3_items:
        update_time_stop(new_state, it.symbol, it.price, it.volume, it.prevVolume, today, cfg=cfg)

    changelog = generate_changelog(state.top3, top3_items, new_state.timeStopTracker, cfg)

    keep = {it.symbol for it in top3_items}
    for sym in list(new_state.timeStopTracker):
        if sym not in keep:
            del new_state.timeStopTracker[sym]

    new_state.top3 = [it.symbol for it in top3_items]
    new_state.changelog = changelog
    new_state.lastReportDate = today
    return new_state


def no_trade_explanation(symbol: str, alpha: float, tpg_passed: bool,
                         tpg_score: int, retest: str) -> str:
    """Why a candidate is not in the Top-3."""
    reasons = []
    if not tpg_passed:
        reasons.append(f"TPG {tpg_score}/4 not met")
    if retest == "FIRST_BREAK":
        reasons.append("first break, no chase (await retest)")
    if alpha < 60:
        reasons.append(f"AlphaScore {alpha:.1f} below bar")
    if not reasons:
        return f"{symbol}: qualifies but ranks below current leaders"
    return f"{symbol}: {' + '.join(reasons)} -> re-evaluate on TPG pass + retest"


def format_changelog(changelog: list[ChangelogEntry]) -> str:
    if not changelog:
        return "**CHANGELOG**: No Change (Top-3 held)"
    lines = ["**CHANGELOG**:"]
    for e in changelog:
        if e.action == "IN":
            tag, rank = "IN", f"-> #{e.newRank}"
        elif e.action == "OUT":
            tag, rank = "OUT", f"(#{e.prevRank})"
        else:
            tag, rank = "RANK", f"#{e.prevRank}->#{e.newRank}"
        lines.append(f"- {tag} **{e.ticker}** {rank}: {e.reason} [{e.trigger}] ({e.execution})")
    return "\n".join(lines)
