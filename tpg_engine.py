#!/usr/bin/env python3
"""
Trend-Persistence Gate (TPG)
============================
Four binary gates decide whether a candidate is still trending:

    highZone        within high_zone_pct of its reference high
    retestRecovery  pulled back intraday and recovered above VWAP
    rsRising        composite relative strength > 0
    sectorSync      positive day change together with rising RS

A candidate passes with >= min_gates gates.  VWAP position, RSI status
and news shelf-life are classified alongside for the explanation strings
and the (informational) score adjustment.
"""

from datetime import datetime, timezone
from typing import Optional

import pandas as pd

from schemas import ScoredTicker, TPGGates, TPGResult


def _tcfg(cfg: Optional[dict]) -> dict:
    return (cfg or {}).get("tpg", {})


def check_high_zone(price: float, high52w: Optional[float], day_high: Optional[float],
                    cfg: Optional[dict] = None) -> bool:
    ref = high52w or day_high or price
    if not ref or ref <= 0:
        return False
    return (ref - price) / ref * 100 <= _tcfg(cfg).get("high_zone_pct", 5.0)


def check_retest_status(price: float, vwap: Optional[float], prev_close: Optional[float],
                        day_high: Optional[float], day_low: Optional[float],
                        cfg: Optional[dict] = None) -> str:
    """Intraday retest state: NO_DATA, RETEST_OK, FIRST_BREAK, PULLBACK or FAIL."""
    t = _tcfg(cfg)
    day_high = day_high if day_high is not None else price
    day_low = day_low or price
    if not vwap or not day_high:
        return "NO_DATA"

    above_vwap = price > vwap
    pullback = (day_high - price) / day_high * 100
    recovery = (price - day_low) / day_low * 100 if day_low else 0.0

    if (above_vwap and pullback > t.get("pullback_min_pct", 1.0)
            and recovery > t.get("recovery_min_pct", 0.5)):
        return "RETEST_OK"
    if above_vwap and pullback < t.get("first_break_max_pullback_pct", 0.5):
        return "FIRST_BREAK"
    if not above_vwap and price > (prev_close or 0):
        return "PULLBACK"
    return "FAIL"


def relative_strength(rs_vs_benchmark: float, cfg: Optional[dict] = None) -> dict:
    """Blend benchmark-relative and sector-proxy RS into one composite."""
    t = _tcfg(cfg)
    rs_spy = rs_vs_benchmark or 0.0
    rs_sector = rs_spy * t.get("rs_sector_multiplier", 1.1)
    composite = (t.get("rs_sector_weight", 0.6) * rs_sector
                 + t.get("rs_benchmark_weight", 0.4) * rs_spy)
    return {"rsSpy": round(rs_spy, 2), "rsSector": round(rs_sector, 2),
            "rsComposite": round(composite, 2)}


def vwap_position(price: float, vwap: Optional[float], cfg: Optional[dict] = None) -> tuple[str, float]:
    if not vwap:
        return "NO_DATA", 0.0
    dist = (price - vwap) / vwap * 100
    if abs(dist) < _tcfg(cfg).get("vwap_at_band_pct", 0.2):
        return "AT", 0.0
    return ("ABOVE" if dist > 0 else "BELOW"), round(dist, 2)


def rsi_status(rsi: Optional[float], cfg: Optional[dict] = None) -> str:
    t = _tcfg(cfg)
    if rsi is None:
        return "NO_DATA"
    if rsi >= t.get("rsi_overbought", 70):
        return "OVERBOUGHT"
    if rsi <= t.get("rsi_oversold", 30):
        return "OVERSOLD"
    return "NEUTRAL"


def news_shelf_life(last_news_time: Optional[str], now: datetime,
                    cfg: Optional[dict] = None) -> str:
    if not last_news_time:
        return "NO_NEWS"
    ts = pd.Timestamp(last_news_time)
    if ts.tzinfo is None:
        ts = ts.tz_localize("UTC")
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    hours = (pd.Timestamp(now) - ts).total_seconds() / 3600
    return "FRESH" if hours <= _tcfg(cfg).get("news_fresh_hours", 72) else "STALE"


def score_adjustment(result: TPGResult) -> float:
    adj = result.score * 5
    adj += {"RETEST_OK": 5, "FIRST_BREAK": -10, "FAIL": -5}.get(result.retestStatus, 0)
    if result.rsScore > 5:
        adj += 3
    if result.rsScore > 10:
        adj += 2
    adj += {"ABOVE": 2, "BELOW": -2}.get(result.vwapPosition, 0)
    adj += {"OVERBOUGHT": -3, "OVERSOLD": -1}.get(result.rsiStatus, 0)
    if result.newsShelfLife == "STALE":
        adj -= 2
    return float(max(0, min(30, adj)))


def why_summary(gates: TPGGates, vwap_pos: str, rsi_stat: str, news: str,
                change_pct: float) -> str:
    """One-line 'reasons / risk / action' card text for a Top-3 pick."""
    reasons = []
    if vwap_pos == "ABOVE":
        reasons.append("holding above VWAP")
    if gates.retestRecovery:
        reasons.append("retest recovered")
    if gates.rsRising:
        reasons.append("RS leader")
    if gates.highZone:
        reasons.append("near highs")
    if gates.sectorSync:
        reasons.append("sector in sync")
    if change_pct > 2:
        reasons.append(f"+{change_pct:.1f}% strength")

    risks = []
    if rsi_stat == "OVERBOUGHT":
        risks.append("RSI overheated")
    if vwap_pos == "BELOW":
        risks.append("below VWAP")
    if news == "STALE":
        risks.append("catalyst older than 72h")
    if news == "NO_NEWS" and change_pct > 3:
        risks.append("rally without news")
    if gates.highZone:
        risks.append("close to prior high")

    action = "enter after VWAP support holds"
    if gates.retestRecovery:
        action = "retest confirmed, entry possible"
    if rsi_stat == "OVERBOUGHT":
        action = "overheated, do not chase"

    head = " + ".join(reasons[:2]) or "neutral flow"
    return f"{head} / risk: {risks[0] if risks else 'low'} / {action}"


def compute_tpg(item: ScoredTicker, rs: float = 0.0, now: Optional[datetime] = None,
                cfg: Optional[dict] = None) -> TPGResult:
    """Run all gates for one candidate.

    `rs` is the ticker's N-session return minus the benchmark's.
    """
    now = now or datetime.now(timezone.utc)
    price = item.price
    day_high = item.dayHigh or price
    rs_data = relative_strength(rs, cfg)

    retest = check_retest_status(price, item.vwap, item.prevClose, day_high, item.dayLow, cfg)
    rs_rising = rs_data["rsComposite"] > 0
    gates = TPGGates(
        highZone=check_high_zone(price, item.high52w, day_high, cfg),
        retestRecovery=retest == "RETEST_OK",
        rsRising=rs_rising,
        sectorSync=item.changePercent > 0 and rs_rising,
    )
    n = gates.count()
    passed = n >= _tcfg(cfg).get("min_gates", 2)

    vpos, vdist = vwap_position(price, item.vwap, cfg)
    rsi_stat = rsi_status(item.rsi14, cfg)
    news = news_shelf_life(item.lastNewsTime, now, cfg)

    if passed:
        names = [label for flag, label in (
            (gates.highZone, "high zone"), (gates.retestRecovery, "retest recovery"),
            (gates.rsRising, "RS rising"), (gates.sectorSync, "sector sync")) if flag]
        explanation = f"TPG {n}/4 passed ({', '.join(names)})"
        if vpos == "ABOVE":
            explanation += f" | VWAP +{vdist}%"
        if rsi_stat == "OVERBOUGHT":
            explanation += f" | RSI overheated {item.rsi14}"
        if news == "STALE":
            explanation += " | catalyst aged"
    else:
        explanation = f"TPG not met ({n}/4): excluded from Top-3 candidates"

    result = TPGResult(
        passed=passed,
        score=n,
        gates=gates,
        retestStatus=retest,
        rsScore=rs_data["rsComposite"],
        vwapPosition=vpos,
        vwapDistance=vdist,
        rsiValue=item.rsi14,
        rsiStatus=rsi_stat,
        newsShelfLife=news,
        explanation=explanation,
        whySummary=why_summary(gates, vpos, rsi_stat, news, item.changePercent),
    )
    result.scoreAdjustment = score_adjustment(result)
    return result
