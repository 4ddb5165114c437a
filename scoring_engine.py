#!/usr/bin/env python3
"""
Scoring Engine for the Alpha Selection Engine
==============================================
Deterministic 5-factor scoring of a single ticker snapshot:

    momentum + options + structure + regime + risk  ->  alphaScore (0-100)

plus velocity, gate status, the multi-horizon blend and the decision
state (Decision SSOT).  Also computes options-chain analytics (max pain,
net GEX, put/call ratio, walls) from raw contracts, and merges prior-round
enrichment into a freshly scored snapshot.

Usage:
    from scoring_engine import score_ticker, compute_options_analytics

    opts = compute_options_analytics(contracts, spot=212.4)
    item = score_ticker(row, "Neutral", options=opts, strict=True)
"""

import logging
from typing import Optional

import numpy as np
import pandas as pd

from schemas import (
    DecisionSSOT, GateStatus, MultiTFScore, OptionsAnalytics,
    ScoreDecomposition, ScoredTicker,
)

logger = logging.getLogger(__name__)

REGIME_POINTS = {"Risk-On": 18.0, "Neutral": 12.0, "Risk-Off": 5.0}
SUM_TOLERANCE = 0.11

# Multi-horizon weights (1D, 1W, 1M) keyed by which horizons are present
_BLEND = {
    (True, True): ((0.5, 0.3, 0.2), "50/30/20", None),
    (False, True): ((0.7, 0.0, 0.3), "70/0/30", "1W history missing: blended 1D/1M"),
    (True, False): ((0.8, 0.2, 0.0), "80/20/0", "1M history missing: blended 1D/1W"),
    (False, False): ((1.0, 0.0, 0.0), "100/0/0", "1W/1M history missing: 1D only"),
}

_SNAPSHOT_PASSTHROUGH = ("prevClose", "volume", "prevVolume", "vwap", "dayHigh",
                         "dayLow", "high52w", "rsi14", "lastNewsTime", "return10d")


class PipelineAbort(Exception):
    """Base class for errors that abort the whole run."""


class ScoreIntegrityError(PipelineAbort):
    """Strict-mode scoring found incomplete options or an inconsistent sum."""


# =========================================================================
# A. Helpers
# =========================================================================

def _clamp(v: float, lo: float, hi: float) -> float:
    return max(lo, min(hi, v))


def _num(snapshot, key: str) -> Optional[float]:
    """Read a numeric field from a dict or pandas row; NaN and junk -> None."""
    try:
        v = snapshot.get(key)
    except AttributeError:
        v = getattr(snapshot, key, None)
    if v is None:
        return None
    try:
        f = float(v)
    except (TypeError, ValueError):
        return None
    if np.isnan(f):
        return None
    return f


def _text(snapshot, key: str) -> Optional[str]:
    v = snapshot.get(key) if hasattr(snapshot, "get") else getattr(snapshot, key, None)
    if v is None or (isinstance(v, float) and np.isnan(v)):
        return None
    return str(v)


def _horizons(history: Optional[dict], snapshot) -> tuple:
    """Resolve 1W/1M changes from explicit history, else the snapshot."""
    history = history or {}
    c1w = history.get("change1W")
    c1m = history.get("change1M")
    if c1w is None:
        c1w = _num(snapshot, "change1W")
    if c1m is None:
        c1m = _num(snapshot, "change1M")
    return c1w, c1m


# =========================================================================
# B. Sub-scores
# =========================================================================

def momentum_score(change_pct: float, vol_ratio: float) -> float:
    vol_bonus = _clamp((vol_ratio - 1) * 2, -3, 5)
    return _clamp(10 + change_pct * 2 + vol_bonus, 0, 20)


def options_score(price: float, options: Optional[OptionsAnalytics]) -> float:
    if options is not None and options.status == "OK":
        pcr = options.putCallRatio
        return min(20.0, (pcr if pcr else 1.0) * 10)
    # Volatility proxy from price position; never a fabricated zero
    return _clamp(10 + (price % 10) / 10 * 5 - 2.5, 5, 15)


def structure_score(vol_ratio: float, options: Optional[OptionsAnalytics]) -> float:
    if options is not None and options.status == "OK" and options.netGex is not None:
        return _clamp(10 + options.netGex / 1e6, 0, 20)
    return _clamp(8 + vol_ratio * 2, 5, 15)


def risk_score(rsi: float, vol_ratio: float) -> float:
    penalty = min(5.0, (vol_ratio - 2) * 2) if vol_ratio > 2 else 0.0
    return _clamp(20 - abs(50 - rsi) / 2.5 - penalty, 0, 20)


def compute_velocity(change_pct: float, vol_ratio: float) -> str:
    if change_pct > 3 and vol_ratio > 1.2:
        return "▲"
    if change_pct < -2:
        return "▼"
    return "►"


# =========================================================================
# C. Gates, horizons and decision
# =========================================================================

def compute_gate_status(alpha: float, momentum: float, options_status: str) -> GateStatus:
    reasons = []
    eligible = "PASS"
    if alpha < 40:
        eligible = "FAIL"
        reasons.append("LOW_ALPHA")
    if options_status == "FAILED":
        eligible = "FAIL"
        reasons.append("OPTIONS_MISSING")

    if eligible == "FAIL":
        entry = "FAIL"
    elif alpha >= 60 and momentum >= 12:
        entry = "PASS"
        reasons.append("STRONG_MOMENTUM")
    else:
        entry = "WAIT"
        reasons.append("TREND_OK_WAIT" if alpha >= 50 else "WATCH_ZONE")
    return GateStatus(eligible=eligible, entryNow=entry, reasons=reasons[:3])


def blend_horizons(score_1d: float, change_1w: Optional[float],
                   change_1m: Optional[float]) -> MultiTFScore:
    """Blend the 1D alpha with 1W/1M trend scores, degrading gracefully."""
    s1w = _clamp(50 + change_1w * 2, 0, 100) if change_1w is not None else None
    s1m = _clamp(50 + change_1m, 0, 100) if change_1m is not None else None
    (w1d, w1w, w1m), composition, reason = _BLEND[(s1w is not None, s1m is not None)]
    final = score_1d * w1d + (s1w or 0) * w1w + (s1m or 0) * w1m
    return MultiTFScore(
        score1D=score_1d,
        score1W=round(s1w, 1) if s1w is not None else None,
        score1M=round(s1m, 1) if s1m is not None else None,
        finalScore=round(final, 1),
        composition=composition,
        fallbackReason=reason,
    )


def decide(gate: GateStatus, multi_tf: MultiTFScore) -> DecisionSSOT:
    """Decision state machine: EXIT / MAINTAIN / CAUTION with confidence."""
    final = multi_tf.finalScore
    triggers = []
    if gate.eligible == "FAIL":
        action, conf = "EXIT", 92.0
        triggers.append("GATE_FAIL")
    elif gate.entryNow == "PASS":
        action = "MAINTAIN"
        conf = min(99.0, 80 + (final - 60))
        triggers.append("ENTRY_PASS")
        if (multi_tf.score1W or 0) > 60 or (multi_tf.score1M or 0) > 60:
            conf += 5
            triggers.append("LONG_TREND_POSITIVE")
    elif final > 65:
        action, conf = "MAINTAIN", 75.0
        triggers.append("LONG_TREND_HOLDS")
    else:
        action, conf = "CAUTION", 65.0
        triggers.append("MOMENTUM_WEAK")
    triggers.extend(gate.reasons)
    return DecisionSSOT(action=action,
                        confidence=int(round(_clamp(conf, 1, 99))),
                        triggers=triggers[:3])


# =========================================================================
# D. Scoring function
# =========================================================================

def _decompose(raw: dict) -> ScoreDecomposition:
    return ScoreDecomposition(**{k: round(v, 2) for k, v in raw.items()})


def score_ticker(snapshot, regime: str = "Neutral",
                 options: Optional[OptionsAnalytics] = None,
                 history: Optional[dict] = None,
                 strict: bool = False) -> ScoredTicker:
    """Score one snapshot into a ScoredTicker.

    In strict mode the options block must be OK and the emitted
    decomposition must sum to alpha within SUM_TOLERANCE; otherwise
    ScoreIntegrityError is raised.
    """
    symbol = _text(snapshot, "symbol") or "?"
    opt_status = options.status if options is not None else "PENDING"
    if opt_status == "NO_OPTIONS":
        opt_status = "PENDING"
    if strict and opt_status != "OK":
        raise ScoreIntegrityError(
            f"{symbol}: strict scoring requires options status OK (got {opt_status})")

    ok = opt_status == "OK"
    price = options.spot if ok and options.spot else (_num(snapshot, "price") or 0.0)
    prev_close = _num(snapshot, "prevClose")
    if prev_close and prev_close > 0:
        change_p = (price - prev_close) / prev_close * 100
    else:
        change_p = _num(snapshot, "changePercent") or 0.0
    volume = _num(snapshot, "volume") or 0.0
    vol_ratio = volume / (_num(snapshot, "prevVolume") or 1.0)
    rsi = _num(snapshot, "rsi14")
    if rsi is None:
        rsi = 50.0

    raw = {
        "momentum": momentum_score(change_p, vol_ratio),
        "options": options_score(price, options if ok else None),
        "structure": structure_score(vol_ratio, options if ok else None),
        "regime": REGIME_POINTS.get(regime, REGIME_POINTS["Neutral"]),
        "risk": risk_score(rsi, vol_ratio),
    }
    alpha = round(sum(raw.values()), 1)
    decomposition = _decompose(raw)
    total = decomposition.total()
    if strict and abs(total - alpha) > SUM_TOLERANCE:
        raise ScoreIntegrityError(
            f"{symbol}: sub-score sum {total:.2f} disagrees with alpha {alpha}")

    gate = compute_gate_status(alpha, raw["momentum"], opt_status)
    c1w, c1m = _horizons(history, snapshot)
    multi_tf = blend_horizons(alpha, c1w, c1m)
    decision = decide(gate, multi_tf)

    fields = {k: _num(snapshot, k) for k in _SNAPSHOT_PASSTHROUGH}
    fields["lastNewsTime"] = _text(snapshot, "lastNewsTime")
    if options is None:
        options = OptionsAnalytics()

    return ScoredTicker(
        symbol=symbol,
        price=price,
        changePercent=round(change_p, 2),
        volRatio=round(vol_ratio, 2),
        alphaScore=alpha,
        scoreDecomposition=decomposition,
        velocity=compute_velocity(change_p, vol_ratio),
        multiTF=multi_tf,
        gateStatus=gate,
        decisionSSOT=decision,
        options=options,
        optionsStatus=options.status,
        maxPain=options.maxPain if ok else None,
        pcr=options.putCallRatio if ok else None,
        netGex=options.netGex if ok else None,
        **fields,
    )


def merge_enrichment(base, prior, regime: str = "Neutral",
                     history: Optional[dict] = None,
                     strict: bool = False) -> ScoredTicker:
    """Re-score a fresh snapshot carrying only the prior options block.

    `prior` is a ScoredTicker or its JSON dict form (from a stored report).
    Nothing else from the prior item is inherited, so stale prices and
    scores never leak into the new round.
    """
    if isinstance(prior, dict):
        options = OptionsAnalytics.model_validate(prior.get("options") or {})
    else:
        options = prior.options
    return score_ticker(base, regime, options=options,
                        history=history, strict=strict)


# =========================================================================
# E. Options analytics
# =========================================================================

def compute_options_analytics(contracts, spot: Optional[float] = None) -> OptionsAnalytics:
    """Derive max pain, net GEX, PCR and walls from option contracts.

    `contracts` is a list of dicts or a DataFrame with columns
    contract_type ('call'/'put'), strike, open_interest and optional gamma.
    """
    df = contracts if isinstance(contracts, pd.DataFrame) else pd.DataFrame(list(contracts or []))
    if df.empty:
        return OptionsAnalytics(status="NO_OPTIONS", reason="NO_CONTRACTS")

    df = df.copy()
    df["contract_type"] = df.get("contract_type", pd.Series("", index=df.index)).astype(str).str.lower()
    df["strike"] = pd.to_numeric(df.get("strike"), errors="coerce")
    df["open_interest"] = pd.to_numeric(df.get("open_interest"), errors="coerce").fillna(0)
    gamma = df["gamma"] if "gamma" in df.columns else pd.Series(0.0, index=df.index)
    df["gamma"] = pd.to_numeric(gamma, errors="coerce").fillna(0)
    df = df.dropna(subset=["strike"])

    total_oi = float(df["open_interest"].sum())
    if df.empty or total_oi <= 0:
        return OptionsAnalytics(status="NO_OPTIONS", reason="ZERO_OI")

    calls = df[df["contract_type"] == "call"]
    puts = df[df["contract_type"] == "put"]
    call_oi = float(calls["open_interest"].sum())
    put_oi = float(puts["open_interest"].sum())

    # Max pain: payout to holders at each candidate settlement strike
    strikes = np.unique(df["strike"].to_numpy(dtype=float))
    c_k = calls["strike"].to_numpy(dtype=float)
    c_oi = calls["open_interest"].to_numpy(dtype=float)
    p_k = puts["strike"].to_numpy(dtype=float)
    p_oi = puts["open_interest"].to_numpy(dtype=float)
    call_pain = (np.maximum(0.0, strikes[:, None] - c_k[None, :]) * c_oi).sum(axis=1)
    put_pain = (np.maximum(0.0, p_k[None, :] - strikes[:, None]) * p_oi).sum(axis=1)
    max_pain = float(strikes[int(np.argmin(call_pain + put_pain))])

    sign = np.where(df["contract_type"] == "call", 1.0, -1.0)
    net_gex = float((sign * df["gamma"] * df["open_interest"] * 100).sum())

    call_wall = float(calls.groupby("strike")["open_interest"].sum().idxmax()) if call_oi > 0 else None
    put_floor = float(puts.groupby("strike")["open_interest"].sum().idxmax()) if put_oi > 0 else None

    return OptionsAnalytics(
        status="OK",
        reason="OK",
        grade="B" if total_oi > 5000 else "C",
        spot=float(spot) if spot else None,
        maxPain=max_pain,
        netGex=round(net_gex, 2),
        putCallRatio=round(put_oi / call_oi, 4) if call_oi > 0 else None,
        callWall=call_wall,
        putFloor=put_floor,
        totalOI=total_oi,
    )
