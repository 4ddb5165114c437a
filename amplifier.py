#!/usr/bin/env python3
"""
Anti-Churn & Quality-Tier Amplifier
====================================
Post-scoring adjustments that favour continuity over noise:

  A. Anti-churn: held names that stay healthy get a small alpha bonus.
  B. Report diff: why each previous top-12 name moved (CONTINUATION,
     WEAKENING, RECOVERY, EXIT_SIGNAL, UNIVERSE_OUT, DATA_MISSING) and
     which new names entered (NEW_ENTRY).
  C. Regime from the macro proxy's daily change.
  D. Power score and quality tier (ACTIONABLE / WATCH / FILLER).

All functions are pure: inputs are never mutated; updated copies are
returned.
"""

import logging
from typing import Optional

from schemas import ScoredTicker

logger = logging.getLogger(__name__)

REGIME_LABELS = {"RISK_ON": "Risk-On", "NEUTRAL": "Neutral", "RISK_OFF": "Risk-Off"}


def _as_dict(item) -> dict:
    return item if isinstance(item, dict) else item.model_dump()


def _action(item: dict) -> Optional[str]:
    return (item.get("decisionSSOT") or {}).get("action")


def _prev_top12(prev_items: list) -> list[dict]:
    prev = [_as_dict(p) for p in prev_items or []]
    ranked = [p for p in prev if p.get("rank")]
    if ranked:
        prev = sorted(ranked, key=lambda p: p["rank"])
    return prev[:12]


# =========================================================================
# A. Anti-churn
# =========================================================================

def apply_anti_churn(items: list[ScoredTicker], prev_items: list,
                     cfg: dict) -> list[ScoredTicker]:
    """Boost names that were MAINTAIN/CAUTION last run and still qualify.

    Qualifying: confidence >= min_confidence, alpha drop < max_score_drop,
    risk sub-score < max_risk.
    """
    acfg = cfg.get("anti_churn", {})
    min_conf = acfg.get("min_confidence", 70)
    max_drop = acfg.get("max_score_drop", 12)
    max_risk = acfg.get("max_risk", 18)
    bonus = {"MAINTAIN": acfg.get("maintain_bonus", 5.0),
             "CAUTION": acfg.get("caution_bonus", 2.0)}

    prev_map = {p["symbol"]: p for p in map(_as_dict, prev_items or [])}
    out = []
    n_boosted = 0
    for item in items:
        prev = prev_map.get(item.symbol)
        prev_action = _action(prev) if prev else None
        if (prev_action in bonus
                and item.decisionSSOT.confidence >= min_conf
                and (prev.get("alphaScore", 0) - item.alphaScore) < max_drop
                and item.scoreDecomposition.risk < max_risk):
            amt = bonus[prev_action]
            item = item.model_copy(update={
                "alphaScore": round(item.alphaScore + amt, 1),
                "isBoosted": True,
                "boostAmount": amt,
            })
            n_boosted += 1
        out.append(item)
    if n_boosted:
        logger.info(f"Anti-churn boosted {n_boosted} tickers",
                    extra={"phase": "amplify", "count": n_boosted})
    return out


# =========================================================================
# B. Report diff
# =========================================================================

def generate_report_diff(prev_items: list, curr_items: list,
                         missing: Optional[set] = None) -> list[dict]:
    """Classify movements between the previous and current top 12."""
    missing = missing or set()
    prev12 = _prev_top12(prev_items)
    if not prev12:
        return []
    curr = [_as_dict(c) for c in curr_items]
    curr_map = {c["symbol"]: c for c in curr}
    # Unranked current items take their list position
    curr_rank = {c["symbol"]: c.get("rank") or i + 1 for i, c in enumerate(curr)}
    prev_syms = {p["symbol"] for p in prev12}

    diffs = []
    for p in prev12:
        sym = p["symbol"]
        prev_action = _action(p) or "EXIT"
        c = curr_map.get(sym)
        if c is None:
            code = "DATA_MISSING" if sym in missing else "UNIVERSE_OUT"
            diffs.append({"ticker": sym, "fromRank": p.get("rank"), "toRank": None,
                          "fromState": prev_action,
                          "toState": "MISSING" if code == "DATA_MISSING" else "OUT",
                          "reasonCode": code})
            continue
        curr_action = _action(c) or "MAINTAIN"
        code = None
        if prev_action == "MAINTAIN" and curr_action == "MAINTAIN":
            code = "CONTINUATION"
        elif prev_action == "MAINTAIN" and curr_action == "CAUTION":
            code = "WEAKENING"
        elif prev_action == "CAUTION" and curr_action == "MAINTAIN":
            code = "RECOVERY"
        elif prev_action in ("MAINTAIN", "CAUTION") and curr_action in ("EXIT", "REPLACE"):
            code = "EXIT_SIGNAL"
        if code:
            diffs.append({"ticker": sym, "fromRank": p.get("rank"), "toRank": curr_rank[sym],
                          "fromState": prev_action, "toState": curr_action,
                          "reasonCode": code})

    for c in curr[:12]:
        if c["symbol"] not in prev_syms and (_action(c) or "MAINTAIN") == "MAINTAIN":
            diffs.append({"ticker": c["symbol"], "fromRank": None, "toRank": curr_rank[c["symbol"]],
                          "fromState": "NEW", "toState": "MAINTAIN",
                          "reasonCode": "NEW_ENTRY"})
    return diffs


def attach_diff_reasons(items: list[ScoredTicker], diffs: list[dict]) -> list[ScoredTicker]:
    reasons = {d["ticker"]: d["reasonCode"] for d in diffs}
    return [it.model_copy(update={"reportDiffReason": reasons[it.symbol]})
            if it.symbol in reasons else it for it in items]


# =========================================================================
# C. Regime
# =========================================================================

def determine_regime(ndx_change_pct: Optional[float], cfg: Optional[dict] = None) -> tuple[str, str]:
    """Return (regime, reason) from the macro proxy's daily % change."""
    rcfg = (cfg or {}).get("regime", {})
    off = rcfg.get("risk_off_threshold", -1.5)
    on = rcfg.get("risk_on_threshold", 0.5)
    if ndx_change_pct is None:
        return "NEUTRAL", "macro data incomplete"
    if ndx_change_pct <= off:
        return "RISK_OFF", f"NDX proxy {ndx_change_pct:.2f}% (risk-off)"
    if ndx_change_pct >= on:
        return "RISK_ON", f"NDX proxy +{ndx_change_pct:.2f}% (risk-on)"
    return "NEUTRAL", f"NDX proxy {ndx_change_pct:.2f}% (neutral)"


def regime_label(regime: str) -> str:
    """Scoring label (Risk-On / Neutral / Risk-Off) for a regime code."""
    return REGIME_LABELS.get(regime, "Neutral")


# =========================================================================
# D. Quality tiers and power score
# =========================================================================

def compute_quality_tier(item: ScoredTicker, prev_symbols: set, regime: str,
                         leaders: set, cfg: dict) -> dict:
    """Power score, tier and reason for one item.

    Options-incomplete items keep their alpha as power score and can reach
    WATCH at most.
    """
    pcfg = cfg.get("power_score", {})
    qcfg = cfg.get("quality_tiers", {})
    watch_min = qcfg.get("watch_min_score", 50)
    actionable_min = (qcfg.get("risk_off_actionable_min_score", 80) if regime == "RISK_OFF"
                      else qcfg.get("actionable_min_score", 65))

    score = item.alphaScore
    if item.optionsStatus != "OK":
        tier = ("WATCH" if score >= watch_min and item.decisionSSOT.action != "EXIT"
                else "FILLER")
        return {"qualityTier": tier, "powerScore": round(score, 1), "isBackfilled": True,
                "qualityReason": f"options incomplete ({item.options.reason})"}

    diff = item.reportDiffReason
    was_prev = item.symbol in prev_symbols
    action = item.decisionSSOT.action
    if diff == "CONTINUATION":
        score += pcfg.get("bonus_continuation", 5.0)
    if diff == "RECOVERY":
        score += pcfg.get("bonus_recovery", 8.0)
    if was_prev:
        score += pcfg.get("bonus_stability", 3.0)
    if item.symbol in leaders:
        score += pcfg.get("bonus_leader", 4.0)
    if diff == "WEAKENING":
        score += pcfg.get("penalty_weakening", -5.0)
    if action == "EXIT":
        score += pcfg.get("penalty_exit", -15.0)
    if not was_prev:
        score += pcfg.get("penalty_new_entry", -2.0)
    score = round(max(0.0, min(100.0, score)), 1)

    if action == "EXIT":
        tier, reason = "FILLER", "exit signal"
    elif score >= actionable_min:
        tier, reason = "ACTIONABLE", f"power {score} >= {actionable_min}"
    elif score >= watch_min:
        tier, reason = "WATCH", f"power {score} >= {watch_min}"
    else:
        tier, reason = "FILLER", f"power {score} < {watch_min}"
    return {"qualityTier": tier, "powerScore": score, "isBackfilled": False,
            "qualityReason": reason}


def apply_quality_tiers(items: list[ScoredTicker], prev_symbols: set, regime: str,
                        cfg: dict) -> list[ScoredTicker]:
    """Annotate every item and order by powerScore desc, symbol asc."""
    leaders = set(cfg.get("power_score", {}).get("leaders", []))
    out = [it.model_copy(update=compute_quality_tier(it, prev_symbols, regime, leaders, cfg))
           for it in items]
    out.sort(key=lambda it: (-it.powerScore, it.symbol))
    return out


def compute_power_meta(items: list[ScoredTicker], regime: str, reason: str) -> dict:
    tiers = [it.qualityTier for it in items]
    return {
        "regime": regime,
        "regimeReason": reason,
        "counts": {
            "actionableCount": tiers.count("ACTIONABLE"),
            "watchCount": sum(1 for it in items
                              if it.qualityTier == "WATCH" and it.optionsStatus == "OK"),
            "fillerCount": tiers.count("FILLER"),
            "backfillCount": sum(1 for it in items if it.isBackfilled),
        },
    }
