#!/usr/bin/env python3
"""
Typed schemas for the Alpha Selection Engine.

Provides Pydantic models for data validation at pipeline boundaries:
the raw ticker snapshot coming from the market-data fetcher, the options
analytics block, the scored ticker that flows through amplification and
selection, the TPG result, the persisted tracker state, and the validated
config.yaml contents (RunConfig).

Output-contract models use camelCase field names because the snapshot
JSON is consumed as-is by the dashboard.
"""

from typing import Literal, Optional
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


OptionsStatus = Literal["OK", "PENDING", "FAILED", "NO_OPTIONS"]
DecisionAction = Literal["MAINTAIN", "CAUTION", "EXIT", "REPLACE"]
Role = Literal["ALPHA", "CORE", "HIGH_RISK"]
RetestStatus = Literal["FIRST_BREAK", "PULLBACK", "RETEST_OK", "FAIL", "NO_DATA"]

# Fields that may only carry a number when options status is OK
OPTIONS_NUMERIC_FIELDS = ("spot", "maxPain", "netGex", "putCallRatio",
                          "callWall", "putFloor", "totalOI")


class TickerSnapshot(BaseModel):
    """Raw market data for one symbol, refreshed every round."""
    symbol: str
    price: Optional[float] = None
    prevClose: Optional[float] = None
    volume: Optional[float] = None
    prevVolume: Optional[float] = None
    vwap: Optional[float] = None
    dayHigh: Optional[float] = None
    dayLow: Optional[float] = None

    # Optional enrichment
    high52w: Optional[float] = None
    changePercent: Optional[float] = None
    rsi14: Optional[float] = None
    change1W: Optional[float] = None
    change1M: Optional[float] = None
    return10d: Optional[float] = None
    lastNewsTime: Optional[str] = None

    model_config = ConfigDict(extra="allow")

    @field_validator("symbol")
    @classmethod
    def symbol_upper(cls, v: str) -> str:
        return v.strip().upper()


class OptionsAnalytics(BaseModel):
    """Options-chain derived analytics for one symbol.

    Every numeric field stays None unless status == OK. Day volume is
    never used as a stand-in for open interest.
    """
    status: OptionsStatus = "PENDING"
    reason: str = "UNKNOWN_PENDING"
    grade: str = "N/A"

    spot: Optional[float] = None
    maxPain: Optional[float] = None
    netGex: Optional[float] = None
    putCallRatio: Optional[float] = None
    callWall: Optional[float] = None
    putFloor: Optional[float] = None
    totalOI: Optional[float] = None

    @model_validator(mode="after")
    def numeric_fields_null_unless_ok(self) -> "OptionsAnalytics":
        if self.status != "OK":
            populated = [f for f in OPTIONS_NUMERIC_FIELDS
                         if getattr(self, f) is not None]
            if populated:
                raise ValueError(
                    f"Options numeric fields must be null unless status is OK "
                    f"(status={self.status}, populated={populated})"
                )
        return self


class ScoreDecomposition(BaseModel):
    momentum: float = Field(ge=0, le=20)
    options: float = Field(ge=0, le=20)
    structure: float = Field(ge=0, le=20)
    regime: float = Field(ge=0, le=20)
    risk: float = Field(ge=0, le=20)

    def total(self) -> float:
        return self.momentum + self.options + self.structure + self.regime + self.risk


class MultiTFScore(BaseModel):
    score1D: float
    score1W: Optional[float] = None
    score1M: Optional[float] = None
    finalScore: float
    composition: Literal["50/30/20", "70/0/30", "80/20/0", "100/0/0"]
    fallbackReason: Optional[str] = None


class GateStatus(BaseModel):
    eligible: Literal["PASS", "FAIL"]
    entryNow: Literal["PASS", "WAIT", "FAIL"]
    reasons: list[str] = Field(default_factory=list, max_length=3)


class DecisionSSOT(BaseModel):
    action: DecisionAction
    confidence: int = Field(ge=1, le=99)
    triggers: list[str] = Field(default_factory=list, max_length=3)


class TPGGates(BaseModel):
    highZone: bool = False
    retestRecovery: bool = False
    rsRising: bool = False
    sectorSync: bool = False

    def count(self) -> int:
        return sum([self.highZone, self.retestRecovery, self.rsRising, self.sectorSync])


class TPGResult(BaseModel):
    """Trend-Persistence Gate outcome for one candidate."""
    passed: bool
    score: int = Field(ge=0, le=4)
    gates: TPGGates
    retestStatus: RetestStatus
    rsScore: float = 0.0
    vwapPosition: Literal["ABOVE", "BELOW", "AT", "NO_DATA"] = "NO_DATA"
    vwapDistance: float = 0.0
    rsiValue: Optional[float] = None
    rsiStatus: Literal["OVERBOUGHT", "OVERSOLD", "NEUTRAL", "NO_DATA"] = "NO_DATA"
    newsShelfLife: Literal["FRESH", "STALE", "NO_NEWS"] = "NO_NEWS"
    scoreAdjustment: float = Field(0.0, ge=0, le=30)
    explanation: str = ""
    whySummary: str = ""


class ScoredTicker(BaseModel):
    """A ticker snapshot plus its decomposed score and decision state."""
    symbol: str
    price: float
    prevClose: Optional[float] = None
    volume: Optional[float] = None
    prevVolume: Optional[float] = None
    vwap: Optional[float] = None
    dayHigh: Optional[float] = None
    dayLow: Optional[float] = None
    high52w: Optional[float] = None
    rsi14: Optional[float] = None
    lastNewsTime: Optional[str] = None
    return10d: Optional[float] = None

    changePercent: float
    volRatio: float

    alphaScore: float
    scoreDecomposition: ScoreDecomposition
    velocity: Literal["▲", "►", "▼"]
    multiTF: MultiTFScore
    gateStatus: GateStatus
    decisionSSOT: DecisionSSOT

    options: OptionsAnalytics = Field(default_factory=OptionsAnalytics)
    optionsStatus: OptionsStatus = "PENDING"
    maxPain: Optional[float] = None
    pcr: Optional[float] = None
    netGex: Optional[float] = None

    # Amplification / selection annotations
    isBoosted: bool = False
    boostAmount: float = 0.0
    isBackfilled: bool = False
    reportDiffReason: Optional[str] = None
    qualityTier: Optional[Literal["ACTIONABLE", "WATCH", "FILLER"]] = None
    qualityReason: Optional[str] = None
    powerScore: Optional[float] = None
    rank: Optional[int] = Field(None, ge=1)
    role: Optional[Role] = None
    tpg: Optional[TPGResult] = None

    @model_validator(mode="after")
    def options_fields_follow_status(self) -> "ScoredTicker":
        if self.optionsStatus != "OK":
            for name in ("maxPain", "pcr", "netGex"):
                if getattr(self, name) is not None:
                    raise ValueError(
                        f"{name} must be null when optionsStatus is {self.optionsStatus}"
                    )
        return self

    @property
    def selection_score(self) -> float:
        """Score used for ranking after amplification (falls back to alphaScore)."""
        return self.powerScore if self.powerScore is not None else self.alphaScore


# =========================================================================
# Continuity tracker state
# =========================================================================

class TimeStopEntry(BaseModel):
    ticker: str
    entryDate: str
    entryPrice: float
    target1: float
    target1Hit: bool = False
    daysSinceEntry: int = Field(0, ge=0)
    rebuildPressure: int = Field(0, ge=0)
    lastUpdateDate: str


class ChangelogEntry(BaseModel):
    action: Literal["IN", "OUT", "NO_CHANGE"]
    ticker: str
    reason: str
    trigger: str
    execution: Literal["FULL", "PARTIAL", "N/A"]
    prevRank: Optional[int] = None
    newRank: Optional[int] = None
    alphaScore: Optional[float] = None
    tpgScore: Optional[int] = None


class TrackerState(BaseModel):
    """Cross-run memory for the continuity tracker."""
    top3: list[str] = Field(default_factory=list)
    timeStopTracker: dict[str, TimeStopEntry] = Field(default_factory=dict)
    lastReportDate: str = ""
    changelog: list[ChangelogEntry] = Field(default_factory=list)


# =========================================================================
# Snapshot contract pieces
# =========================================================================

class SelectionContract(BaseModel):
    total: int = Field(ge=0, le=12)
    top3: int = Field(ge=0, le=3)
    core: int = Field(ge=0, le=7)
    highRisk: int = Field(ge=0, le=2)


class OptionsStatusSummary(BaseModel):
    status: Literal["OK", "PARTIAL", "PENDING"]
    coveragePct: int = Field(ge=0, le=100)
    reason: Optional[str] = None


# =========================================================================
# RunConfig: top-level config schema
# =========================================================================

class _BonusBase(BaseModel):
    """Base for bonus sections: every *_bonus / bonus_* value must be >= 0."""

    @model_validator(mode="after")
    def bonuses_non_negative(self) -> "_BonusBase":
        for name, v in self.__dict__.items():
            if "bonus" in name and isinstance(v, (int, float)) and v < 0:
                raise ValueError(f"Bonus values must be >= 0 ({name}={v})")
        return self


class RunConfig(BaseModel):
    """Schema for validated config.yaml contents."""

    class UniverseConfig(BaseModel):
        min_price: float = Field(5.0, ge=0)
        min_dollar_volume: float = Field(20_000_000, ge=0)
        blocked_suffixes: list[str] = ["WS", "W", "U"]
        r_suffix_min_length: int = Field(5, ge=1)
        special_chars: list[str] = [".", "/", "-"]
        top_k: int = Field(60, ge=1)
        min_universe: int = Field(50, ge=0)
        exclude_tickers: list[str] = []

    class BackfillConfig(BaseModel):
        max_rounds: int = Field(20, ge=1, le=100)
        round_sleep_seconds: float = Field(20, ge=0)
        ticker_timeout_seconds: float = Field(60, gt=0)
        production: bool = True

    class FetchConfig(BaseModel):
        base_url: str = "https://api.polygon.io"
        api_key_env: str = "MARKET_DATA_API_KEY"
        max_workers: int = Field(3, ge=1, le=5)
        max_retries: int = Field(3, ge=1)
        request_timeout_seconds: float = Field(15, gt=0)
        budget_cap: int = Field(2000, ge=1)
        options_window_days: int = Field(14, ge=1)
        options_max_pages: int = Field(8, ge=1)
        benchmark: str = "SPY"
        macro_symbol: str = "QQQ"

    class ScoringConfig(BaseModel):
        strict: bool = True

    class AntiChurnConfig(_BonusBase):
        min_confidence: float = Field(70, ge=1, le=99)
        max_score_drop: float = Field(12, gt=0)
        max_risk: float = Field(18, ge=0, le=20)
        maintain_bonus: float = 5.0
        caution_bonus: float = 2.0

    class QualityTierConfig(BaseModel):
        actionable_min_score: float = Field(65, ge=0, le=100)
        watch_min_score: float = Field(50, ge=0, le=100)
        risk_off_actionable_min_score: float = Field(80, ge=0, le=100)

        @model_validator(mode="after")
        def thresholds_ordered(self) -> "RunConfig.QualityTierConfig":
            if self.actionable_min_score < self.watch_min_score:
                raise ValueError(
                    "actionable_min_score must be >= watch_min_score "
                    f"(got {self.actionable_min_score} < {self.watch_min_score})"
                )
            return self

    class PowerScoreConfig(_BonusBase):
        bonus_continuation: float = 5.0
        bonus_recovery: float = 8.0
        bonus_stability: float = 3.0
        bonus_leader: float = 4.0
        penalty_weakening: float = Field(-5.0, le=0)
        penalty_exit: float = Field(-15.0, le=0)
        penalty_new_entry: float = Field(-2.0, le=0)
        leaders: list[str] = []

    class RegimeConfig(BaseModel):
        risk_off_threshold: float = -1.5
        risk_on_threshold: float = 0.5

        @model_validator(mode="after")
        def thresholds_ordered(self) -> "RunConfig.RegimeConfig":
            if self.risk_off_threshold >= self.risk_on_threshold:
                raise ValueError("risk_off_threshold must be below risk_on_threshold")
            return self

    class TPGConfig(BaseModel):
        candidates: int = Field(10, ge=1)
        min_gates: int = 2
        high_zone_pct: float = Field(5.0, gt=0)
        pullback_min_pct: float = 1.0
        recovery_min_pct: float = 0.5
        first_break_max_pullback_pct: float = 0.5
        vwap_at_band_pct: float = 0.2
        rsi_overbought: float = 70
        rsi_oversold: float = 30
        news_fresh_hours: float = 72
        rs_window_days: int = Field(10, ge=2)
        history_source: Literal["yfinance", "market_data"] = "yfinance"
        rs_sector_multiplier: float = 1.1
        rs_sector_weight: float = 0.6
        rs_benchmark_weight: float = 0.4

        @field_validator("min_gates")
        @classmethod
        def gate_count_in_range(cls, v: int) -> int:
            if not 0 <= v <= 4:
                raise ValueError(f"TPG gate count must be between 0 and 4, got {v}")
            return v

    class SelectionConfig(BaseModel):
        top3: int = 3
        core: int = 7
        high_risk: int = 2
        max_new_entrants: int = Field(3, ge=0)
        abort_floor: int = Field(6, ge=0, le=12)

        @model_validator(mode="after")
        def shape_is_twelve(self) -> "RunConfig.SelectionConfig":
            if (self.top3, self.core, self.high_risk) != (3, 7, 2):
                raise ValueError(
                    "Selection shape must sum to 12 as 3/7/2 "
                    f"(got {self.top3}/{self.core}/{self.high_risk})"
                )
            return self

    class TimeStopConfig(BaseModel):
        target_pct: float = Field(5.0, gt=0)
        volume_drop_ratio: float = Field(0.8, gt=0, le=1)
        d1_pressure: int = Field(3, ge=0)
        d2_pressure: int = Field(2, ge=0)
        rotation_threshold: int = Field(8, ge=1)
        forced_threshold: int = Field(5, ge=1)

    class StoresConfig(BaseModel):
        snapshots_dir: str = "snapshots"
        tracker_file: str = "snapshots/engine_tracker.json"
        report_kind: str = "selection"

    class OutputConfig(BaseModel):
        excel_file: str = "selection_output.xlsx"
        write_excel: bool = True

    universe: UniverseConfig = UniverseConfig()
    backfill: BackfillConfig = BackfillConfig()
    fetch: FetchConfig = FetchConfig()
    scoring: ScoringConfig = ScoringConfig()
    anti_churn: AntiChurnConfig = AntiChurnConfig()
    quality_tiers: QualityTierConfig = QualityTierConfig()
    power_score: PowerScoreConfig = PowerScoreConfig()
    regime: RegimeConfig = RegimeConfig()
    tpg: TPGConfig = TPGConfig()
    selection: SelectionConfig = SelectionConfig()
    time_stop: TimeStopConfig = TimeStopConfig()
    stores: StoresConfig = StoresConfig()
    output: OutputConfig = OutputConfig()
