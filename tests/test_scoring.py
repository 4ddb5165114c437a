"""Tests for the scoring engine: sub-scores, horizon blend, gates,
decision state machine and strict-mode integrity checks.
"""

import sys
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))
import scoring_engine
from schemas import OptionsAnalytics
from scoring_engine import (
    REGIME_POINTS,
    SUM_TOLERANCE,
    ScoreIntegrityError,
    blend_horizons,
    compute_gate_status,
    compute_velocity,
    decide,
    merge_enrichment,
    momentum_score,
    options_score,
    risk_score,
    score_ticker,
    structure_score,
)


def _ok(spot=100.0, pcr=1.2, gex=0.0):
    return OptionsAnalytics(status="OK", reason="OK", grade="B", spot=spot, maxPain=spot,
                            netGex=gex, putCallRatio=pcr, totalOI=9000.0)


# =====================================================================
# SUB-SCORES
# =====================================================================

class TestSubScores:
    def test_momentum_flat_day(self):
        assert momentum_score(0.0, 1.0) == 10.0

    def test_momentum_clamped_high(self):
        assert momentum_score(15.0, 5.0) == 20.0

    def test_momentum_clamped_low(self):
        assert momentum_score(-15.0, 0.1) == 0.0

    def test_volume_bonus_capped(self):
        """Volume surprise contributes at most +5."""
        assert momentum_score(0.0, 100.0) == 15.0

    def test_options_score_uses_pcr_when_ok(self):
        assert options_score(100.0, _ok(pcr=1.2)) == pytest.approx(12.0)

    def test_options_score_caps_at_20(self):
        assert options_score(100.0, _ok(pcr=3.0)) == 20.0

    def test_options_proxy_when_pending(self):
        """Pending options use a price-position proxy inside [5, 15], never zero."""
        for price in (3.0, 47.9, 100.0, 512.3):
            s = options_score(price, None)
            assert 5.0 <= s <= 15.0

    def test_structure_from_gex(self):
        assert structure_score(1.0, _ok(gex=5e6)) == 15.0

    def test_structure_proxy_without_options(self):
        assert structure_score(1.0, None) == 10.0

    def test_risk_neutral_rsi_no_penalty(self):
        assert risk_score(50.0, 1.0) == 20.0

    def test_risk_overbought_penalised(self):
        assert risk_score(80.0, 1.0) == pytest.approx(8.0)

    def test_risk_volume_spike_penalty(self):
        assert risk_score(50.0, 3.0) == pytest.approx(18.0)

    @pytest.mark.parametrize("chg,vr,expected", [
        (4.0, 1.5, "▲"),
        (4.0, 1.0, "►"),
        (-3.0, 1.0, "▼"),
        (0.5, 2.0, "►"),
    ])
    def test_velocity(self, chg, vr, expected):
        assert compute_velocity(chg, vr) == expected


# =====================================================================
# MULTI-HORIZON BLEND
# =====================================================================

class TestBlendHorizons:
    def test_all_horizons(self):
        m = blend_horizons(60.0, 5.0, 10.0)
        assert m.composition == "50/30/20"
        assert m.fallbackReason is None
        # 60*.5 + 60*.3 + 60*.2
        assert m.finalScore == pytest.approx(60.0)

    def test_missing_week(self):
        m = blend_horizons(60.0, None, 10.0)
        assert m.composition == "70/0/30"
        assert "1W" in m.fallbackReason
        assert m.score1W is None

    def test_missing_month(self):
        m = blend_horizons(60.0, 5.0, None)
        assert m.composition == "80/20/0"
        assert "1M" in m.fallbackReason

    def test_missing_both(self):
        m = blend_horizons(72.4, None, None)
        assert m.composition == "100/0/0"
        assert m.finalScore == 72.4
        assert m.fallbackReason

    def test_trend_scores_clamped(self):
        m = blend_horizons(50.0, 40.0, -80.0)
        assert m.score1W == 100.0
        assert m.score1M == 0.0


# =====================================================================
# GATES & DECISION
# =====================================================================

class TestDecision:
    def test_low_alpha_fails_gate(self):
        g = compute_gate_status(35.0, 10.0, "OK")
        assert g.eligible == "FAIL"
        assert "LOW_ALPHA" in g.reasons

    def test_failed_options_scenario(self):
        """alpha 35 with FAILED options -> EXIT with confidence >= 90."""
        g = compute_gate_status(35.0, 10.0, "FAILED")
        d = decide(g, blend_horizons(35.0, None, None))
        assert d.action == "EXIT"
        assert d.confidence >= 90
        assert g.reasons[:2] == ["LOW_ALPHA", "OPTIONS_MISSING"]

    def test_failed_options_exit_even_with_high_alpha(self):
        g = compute_gate_status(75.0, 15.0, "FAILED")
        assert decide(g, blend_horizons(75.0, None, None)).action == "EXIT"

    def test_entry_pass_maintain(self):
        g = compute_gate_status(70.0, 14.0, "OK")
        d = decide(g, blend_horizons(70.0, None, None))
        assert g.entryNow == "PASS"
        assert d.action == "MAINTAIN"
        assert d.confidence == 90

    def test_long_trend_adds_confidence(self):
        g = compute_gate_status(70.0, 14.0, "OK")
        base = decide(g, blend_horizons(70.0, None, None)).confidence
        boosted = decide(g, blend_horizons(70.0, 10.0, None))
        assert "LONG_TREND_POSITIVE" in boosted.triggers
        assert boosted.confidence == base + 5

    def test_weak_maintain_on_blended_score(self):
        g = compute_gate_status(66.0, 10.0, "OK")
        d = decide(g, blend_horizons(66.0, None, None))
        assert g.entryNow == "WAIT"
        assert (d.action, d.confidence) == ("MAINTAIN", 75)

    def test_caution(self):
        g = compute_gate_status(55.0, 10.0, "PENDING")
        d = decide(g, blend_horizons(55.0, None, None))
        assert (d.action, d.confidence) == ("CAUTION", 65)

    def test_triggers_and_reasons_bounded(self):
        g = compute_gate_status(30.0, 5.0, "FAILED")
        d = decide(g, blend_horizons(30.0, None, None))
        assert len(g.reasons) <= 3
        assert len(d.triggers) <= 3


# =====================================================================
# score_ticker
# =====================================================================

class TestScoreTicker:
    def test_options_free_scoring(self, row_factory):
        item = score_ticker(row_factory("AAPL", price=200.0, change=1.0), "Neutral")
        assert item.optionsStatus == "PENDING"
        assert item.maxPain is None and item.pcr is None and item.netGex is None
        assert item.scoreDecomposition.regime == REGIME_POINTS["Neutral"]

    def test_sum_matches_alpha(self, row_factory):
        item = score_ticker(row_factory("MSFT", change=2.3), "Risk-On", options=_ok())
        assert abs(item.scoreDecomposition.total() - item.alphaScore) <= SUM_TOLERANCE

    def test_ok_options_copied_to_top_level(self, row_factory):
        item = score_ticker(row_factory("NVDA"), options=_ok(pcr=0.8))
        assert item.optionsStatus == "OK"
        assert item.pcr == 0.8
        assert item.maxPain == 100.0

    def test_strict_requires_ok_options(self, row_factory):
        with pytest.raises(ScoreIntegrityError, match="strict scoring requires"):
            score_ticker(row_factory("TSLA"), strict=True)

    def test_strict_passes_with_ok(self, row_factory):
        item = score_ticker(row_factory("TSLA"), options=_ok(), strict=True)
        assert item.symbol == "TSLA"

    def test_strict_rejects_decomposition_drift(self, row_factory, monkeypatch):
        real = scoring_engine._decompose

        def drifted(raw):
            return real(raw).model_copy(update={"regime": raw["regime"] + 1.0})

        monkeypatch.setattr(scoring_engine, "_decompose", drifted)
        with pytest.raises(ScoreIntegrityError, match="disagrees with alpha"):
            score_ticker(row_factory("TSLA"), options=_ok(), strict=True)
        # Lenient scoring still emits the item
        assert score_ticker(row_factory("TSLA"), options=_ok()).symbol == "TSLA"

    def test_no_options_status_scored_as_pending(self, row_factory):
        opts = OptionsAnalytics(status="NO_OPTIONS", reason="NO_OPTIONS_LISTED")
        item = score_ticker(row_factory("ABCD"), options=opts)
        assert item.optionsStatus == "NO_OPTIONS"
        assert item.options.reason == "NO_OPTIONS_LISTED"
        assert item.gateStatus.eligible == "PASS"

    def test_change_derived_from_prev_close(self):
        item = score_ticker({"symbol": "x", "price": 110.0, "prevClose": 100.0,
                             "volume": 2e6, "prevVolume": 1e6})
        assert item.changePercent == pytest.approx(10.0)
        assert item.volRatio == 2.0

    def test_missing_rsi_defaults_to_neutral(self, row_factory):
        item = score_ticker(row_factory("META"))
        assert item.scoreDecomposition.risk == 20.0

    def test_history_drives_blend(self, row_factory):
        item = score_ticker(row_factory("AMD"), history={"change1W": 4.0, "change1M": 8.0})
        assert item.multiTF.composition == "50/30/20"

    def test_pandas_row_with_nan(self, universe_factory):
        df = universe_factory(3)
        df.loc[0, "vwap"] = float("nan")
        item = score_ticker(df.iloc[0])
        assert item.vwap is None


# =====================================================================
# merge_enrichment
# =====================================================================

class TestMergeEnrichment:
    def test_only_options_inherited(self, row_factory, item_factory):
        prior = item_factory("AAPL", alpha=90.0, price=150.0, rank=1, role="ALPHA",
                             isBoosted=True, boostAmount=5.0)
        fresh = merge_enrichment(row_factory("AAPL", price=160.0), prior, strict=True)
        assert fresh.optionsStatus == "OK"
        assert fresh.rank is None and fresh.role is None
        assert fresh.isBoosted is False
        assert fresh.alphaScore != 90.0

    def test_dict_prior_from_stored_report(self, row_factory):
        prior = {"symbol": "AAPL", "options": _ok(spot=150.0).model_dump(), "alphaScore": 99}
        fresh = merge_enrichment(row_factory("AAPL"), prior)
        assert fresh.optionsStatus == "OK"
        assert fresh.price == 150.0

    def test_dict_prior_without_options(self, row_factory):
        fresh = merge_enrichment(row_factory("AAPL"), {"symbol": "AAPL"})
        assert fresh.optionsStatus == "PENDING"
