"""Tests for anti-churn boosting, report diffs, regime detection and the
quality-tier / power-score amplifier.
"""

import sys
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))
from amplifier import (
    apply_anti_churn,
    apply_quality_tiers,
    attach_diff_reasons,
    compute_power_meta,
    compute_quality_tier,
    determine_regime,
    generate_report_diff,
    regime_label,
)


def _prev(symbol, action="MAINTAIN", alpha=75.0, rank=None):
    return {"symbol": symbol, "alphaScore": alpha, "rank": rank,
            "decisionSSOT": {"action": action, "confidence": 80}}


# =====================================================================
# ANTI-CHURN
# =====================================================================

class TestAntiChurn:
    def test_maintain_scenario_boost(self, cfg, item_factory):
        """Prior MAINTAIN, confidence 80, drop of 5, risk 10 -> +5.0."""
        cur = item_factory("AAPL", alpha=70.0, confidence=80, risk=10.0)
        out = apply_anti_churn([cur], [_prev("AAPL", alpha=75.0)], cfg)
        assert out[0].isBoosted is True
        assert out[0].boostAmount == 5.0
        assert out[0].alphaScore == 75.0

    def test_caution_bonus(self, cfg, item_factory):
        cur = item_factory("AAPL", alpha=70.0)
        out = apply_anti_churn([cur], [_prev("AAPL", action="CAUTION")], cfg)
        assert out[0].boostAmount == 2.0

    def test_large_drop_not_boosted(self, cfg, item_factory):
        cur = item_factory("AAPL", alpha=60.0)
        out = apply_anti_churn([cur], [_prev("AAPL", alpha=72.0)], cfg)
        assert out[0].isBoosted is False

    def test_low_confidence_not_boosted(self, cfg, item_factory):
        cur = item_factory("AAPL", alpha=70.0, confidence=69)
        assert apply_anti_churn([cur], [_prev("AAPL")], cfg)[0].isBoosted is False

    def test_high_risk_not_boosted(self, cfg, item_factory):
        cur = item_factory("AAPL", alpha=70.0, risk=18.0)
        assert apply_anti_churn([cur], [_prev("AAPL")], cfg)[0].isBoosted is False

    def test_prior_exit_not_boosted(self, cfg, item_factory):
        cur = item_factory("AAPL", alpha=70.0)
        out = apply_anti_churn([cur], [_prev("AAPL", action="EXIT")], cfg)
        assert out[0].isBoosted is False

    def test_new_name_not_boosted(self, cfg, item_factory):
        out = apply_anti_churn([item_factory("NEW")], [_prev("AAPL")], cfg)
        assert out[0].boostAmount == 0.0

    def test_input_untouched(self, cfg, item_factory):
        cur = item_factory("AAPL", alpha=70.0)
        apply_anti_churn([cur], [_prev("AAPL")], cfg)
        assert cur.alphaScore == 70.0 and cur.isBoosted is False

    def test_sum_invariant_with_boost(self, cfg, item_factory):
        """Sub-scores plus boost account for the boosted alpha."""
        cur = item_factory("AAPL", alpha=70.0, risk=10.0)
        out = apply_anti_churn([cur], [_prev("AAPL")], cfg)[0]
        total = out.scoreDecomposition.total() + out.boostAmount
        assert total == pytest.approx(out.alphaScore, abs=0.11)

    def test_thresholds_configurable(self, cfg, item_factory):
        cfg["anti_churn"]["min_confidence"] = 90
        cur = item_factory("AAPL", alpha=70.0, confidence=85)
        assert apply_anti_churn([cur], [_prev("AAPL")], cfg)[0].isBoosted is False


# =====================================================================
# REPORT DIFF
# =====================================================================

class TestReportDiff:
    def test_reason_codes(self, item_factory):
        prev = [_prev("A", rank=1), _prev("B", rank=2), _prev("C", "CAUTION", rank=3),
                _prev("D", rank=4), _prev("E", rank=5), _prev("F", rank=6)]
        curr = [item_factory("A"), item_factory("B", action="CAUTION"),
                item_factory("C"), item_factory("D", action="EXIT"),
                item_factory("N")]
        diffs = generate_report_diff(prev, curr, missing={"F"})
        codes = {d["ticker"]: d["reasonCode"] for d in diffs}
        assert codes == {"A": "CONTINUATION", "B": "WEAKENING", "C": "RECOVERY",
                         "D": "EXIT_SIGNAL", "E": "UNIVERSE_OUT", "F": "DATA_MISSING",
                         "N": "NEW_ENTRY"}

    def test_ranks_recorded(self, item_factory):
        prev = [_prev("A", rank=3)]
        curr = [item_factory("Z"), item_factory("A")]
        diff = generate_report_diff(prev, curr)
        a = next(d for d in diff if d["ticker"] == "A")
        assert (a["fromRank"], a["toRank"]) == (3, 2)

    def test_no_previous_report(self, item_factory):
        assert generate_report_diff([], [item_factory("A")]) == []

    def test_only_previous_top12_considered(self, item_factory):
        prev = [_prev(f"P{i:02d}", rank=i + 1) for i in range(15)]
        diffs = generate_report_diff(prev, [])
        assert len(diffs) == 12

    def test_attach_reasons(self, item_factory):
        items = [item_factory("A"), item_factory("B")]
        out = attach_diff_reasons(items, [{"ticker": "A", "reasonCode": "CONTINUATION"}])
        assert out[0].reportDiffReason == "CONTINUATION"
        assert out[1].reportDiffReason is None


# =====================================================================
# REGIME
# =====================================================================

class TestRegime:
    @pytest.mark.parametrize("chg,expected", [
        (-2.0, "RISK_OFF"),
        (-1.5, "RISK_OFF"),
        (0.0, "NEUTRAL"),
        (0.5, "RISK_ON"),
        (1.8, "RISK_ON"),
    ])
    def test_thresholds(self, chg, expected, cfg):
        assert determine_regime(chg, cfg)[0] == expected

    def test_missing_macro_is_neutral(self, cfg):
        regime, reason = determine_regime(None, cfg)
        assert regime == "NEUTRAL"
        assert "incomplete" in reason

    def test_labels(self):
        assert regime_label("RISK_ON") == "Risk-On"
        assert regime_label("RISK_OFF") == "Risk-Off"
        assert regime_label("???") == "Neutral"


# =====================================================================
# QUALITY TIERS
# =====================================================================

class TestQualityTiers:
    def test_continuation_incumbent_leader(self, cfg, item_factory):
        item = item_factory("NVDA", alpha=62.0, reportDiffReason="CONTINUATION")
        res = compute_quality_tier(item, {"NVDA"}, "NEUTRAL", {"NVDA"}, cfg)
        # 62 + 5 continuation + 3 stability + 4 leader
        assert res["powerScore"] == 74.0
        assert res["qualityTier"] == "ACTIONABLE"

    def test_new_entry_penalty(self, cfg, item_factory):
        res = compute_quality_tier(item_factory("XYZ", alpha=60.0), set(), "NEUTRAL",
                                   set(), cfg)
        assert res["powerScore"] == 58.0
        assert res["qualityTier"] == "WATCH"

    def test_exit_is_filler(self, cfg, item_factory):
        item = item_factory("XYZ", alpha=90.0, action="EXIT")
        res = compute_quality_tier(item, {"XYZ"}, "NEUTRAL", set(), cfg)
        assert res["qualityTier"] == "FILLER"
        assert res["powerScore"] == 78.0

    def test_risk_off_raises_bar(self, cfg, item_factory):
        item = item_factory("XYZ", alpha=72.0)
        neutral = compute_quality_tier(item, {"XYZ"}, "NEUTRAL", set(), cfg)
        off = compute_quality_tier(item, {"XYZ"}, "RISK_OFF", set(), cfg)
        assert neutral["qualityTier"] == "ACTIONABLE"
        assert off["qualityTier"] == "WATCH"

    def test_options_incomplete_capped_at_watch(self, cfg, item_factory):
        item = item_factory("XYZ", alpha=95.0, options_ok=False)
        res = compute_quality_tier(item, {"XYZ"}, "NEUTRAL", {"XYZ"}, cfg)
        assert res["qualityTier"] == "WATCH"
        assert res["isBackfilled"] is True
        assert res["powerScore"] == 95.0

    def test_options_incomplete_exit_is_filler(self, cfg, item_factory):
        item = item_factory("XYZ", alpha=95.0, action="EXIT", options_ok=False)
        assert compute_quality_tier(item, set(), "NEUTRAL", set(), cfg)["qualityTier"] == "FILLER"

    def test_power_clamped(self, cfg, item_factory):
        item = item_factory("XYZ", alpha=99.0, reportDiffReason="RECOVERY")
        res = compute_quality_tier(item, {"XYZ"}, "NEUTRAL", {"XYZ"}, cfg)
        assert res["powerScore"] == 100.0

    def test_order_and_purity(self, cfg, item_factory):
        items = [item_factory("B", alpha=60.0), item_factory("A", alpha=60.0),
                 item_factory("C", alpha=80.0)]
        out = apply_quality_tiers(items, set(), "NEUTRAL", cfg)
        assert [it.symbol for it in out] == ["C", "A", "B"]
        assert items[0].powerScore is None
        again = apply_quality_tiers(items, set(), "NEUTRAL", cfg)
        assert [it.model_dump() for it in out] == [it.model_dump() for it in again]

    def test_power_meta_counts(self, cfg, item_factory):
        items = apply_quality_tiers([
            item_factory("A", alpha=80.0), item_factory("B", alpha=55.0),
            item_factory("C", alpha=30.0), item_factory("D", alpha=60.0, options_ok=False),
        ], set(), "NEUTRAL", cfg)
        meta = compute_power_meta(items, "NEUTRAL", "NDX proxy 0.10% (neutral)")
        assert meta["counts"] == {"actionableCount": 1, "watchCount": 1,
                                  "fillerCount": 1, "backfillCount": 1}
