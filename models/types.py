from enum import Enum
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Protocol, Optional, List, Iterable

class StatusSink(Protocol):
    def cycle_started(self, name: str):
        ...

    def cycle_finished(self, name: str, summary: str = ""):
        ...

    def error(self, msg: str):
        ...

class MarketRegime(str, Enum):
    TREND = "TREND"
    RANGE = "RANGE"
    HIGH_VOLATILITY = "HIGH_VOLATILITY"

    @property
    def multiplier(self) -> float:
        return REGIME_MULTIPLIERS[self]

    @property
    def display_name(self) -> str:
        return self.value.replace("_", " ").title()

    @property
    def description(self) -> str:
        return REGIME_DESCRIPTIONS[self]

REGIME_MULTIPLIERS = MappingProxyType({
    MarketRegime.TREND: 1.1,
    MarketRegime.RANGE: 0.9,
    MarketRegime.HIGH_VOLATILITY: 0.7,
})

REGIME_DESCRIPTIONS = MappingProxyType({
    MarketRegime.TREND: "Market showing clear directional movement",
    MarketRegime.RANGE: "Market moving sideways in a defined range",
    MarketRegime.HIGH_VOLATILITY: "Market experiencing large price swings",
})

class RsiBucket(str, Enum):
    LOW = "LOW"
    MID = "MID"
    HIGH = "HIGH"

class EmaTrend(str, Enum):
    BULL = "BULL"
    BEAR = "BEAR"

class VolumeBucket(str, Enum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"

    @property
    def label(self) -> str:
        # Bucket ids use the short form
        return "MED" if self is VolumeBucket.MEDIUM else self.value

class StrategyType(str, Enum):
    TREND_FOLLOWING = "TREND_FOLLOWING"
    MEAN_REVERSION = "MEAN_REVERSION"
    MOMENTUM = "MOMENTUM"
    BREAKOUT = "BREAKOUT"
    HYBRID = "HYBRID"

class BuildState(Enum):
    IDLE = "IDLE"
    BUILDING = "BUILDING"

@dataclass(slots=True, frozen=True)
class Candle:
    open_time: int  # Open time (ms), 15m aligned
    open: float
    high: float
    low: float
    close: float
    volume: float

@dataclass(slots=True, frozen=True)
class Snapshot:
    timestamp: int
    price: Optional[float] = None
    ema50: Optional[float] = None
    ema200: Optional[float] = None
    rsi: Optional[float] = None
    macd_line: Optional[float] = None
    signal_line: Optional[float] = None
    macd_histogram: Optional[float] = None
    volume_change_pct: Optional[float] = None
    price_change_1h: Optional[float] = None
    price_change_4h: Optional[float] = None
    price_change_24h: Optional[float] = None

    @property
    def ema_bullish(self) -> Optional[bool]:
        """EMA50 >= EMA200, or None when either EMA is still warming up."""
        if self.ema50 is None or self.ema200 is None:
            return None
        return self.ema50 >= self.ema200

    @property
    def volume_bucket(self) -> Optional[VolumeBucket]:
        from config.settings import VOLUME_LOW_THRESHOLD, VOLUME_HIGH_THRESHOLD
        if self.volume_change_pct is None:
            return None
        if self.volume_change_pct < VOLUME_LOW_THRESHOLD:
            return VolumeBucket.LOW
        if self.volume_change_pct > VOLUME_HIGH_THRESHOLD:
            return VolumeBucket.HIGH
        return VolumeBucket.MEDIUM

@dataclass(slots=True, frozen=True)
class IndicatorRow:
    open_time: int
    ema50: Optional[float] = None
    ema200: Optional[float] = None
    rsi14: Optional[float] = None
    atr14: Optional[float] = None
    bb_upper: Optional[float] = None
    bb_middle: Optional[float] = None
    bb_lower: Optional[float] = None
    avg_volume20: Optional[float] = None

@dataclass(slots=True, frozen=True)
class HistoricalPattern:
    candle_time: int
    strategy_bucket_id: str
    snapshot: Snapshot
    evaluated: bool = False
    max_profit_pct_24h: Optional[float] = None
    hours_to_max: Optional[int] = None
    evaluated_at: Optional[int] = None

    @property
    def is_profitable(self) -> bool:
        return self.max_profit_pct_24h is not None and self.max_profit_pct_24h > 0

@dataclass(slots=True, frozen=True)
class StrategyStats:
    bucket_id: str
    total_predictions: int = 0
    successes: int = 0
    failures: int = 0
    score: int = 0
    success_rate_pct: float = 50.0
    weight: float = 0.5
    degradation_alerted: bool = False
    last_updated: int = 0

    # Rate2 (confidence evaluation)
    confidence_positive: int = 0
    confidence_negative: int = 0
    confidence_neutral: int = 0
    confidence_score: int = 0
    rate2: Optional[float] = None

    # Profit evaluation
    total_pnl_usd: float = 0.0
    profit_trades_count: int = 0
    sum_profit_pct: float = 0.0

    @property
    def avg_profit_pct(self) -> Optional[float]:
        if self.profit_trades_count == 0:
            return None
        from utils.rounding import round_half_up
        return round_half_up(self.sum_profit_pct / self.profit_trades_count, 2)

@dataclass(slots=True, frozen=True)
class RegimeObservation:
    timestamp: int
    regime: MarketRegime
    confidence: float
    matched_conditions: int
    total_conditions: int

    @property
    def effective_multiplier(self) -> float:
        return self.regime.multiplier * self.confidence

    @property
    def confidence_percent(self) -> str:
        return f"{self.confidence * 100:.0f}%"

@dataclass(slots=True, frozen=True)
class RegimeDetection:
    observation: RegimeObservation
    previous_regime: Optional[MarketRegime] = None

    @property
    def regime_changed(self) -> bool:
        return self.previous_regime is not None and self.previous_regime != self.observation.regime

    def change_message(self) -> Optional[str]:
        if not self.regime_changed:
            return None
        obs = self.observation
        return (
            f"Market Regime Changed: {self.previous_regime.display_name} -> {obs.regime.display_name} "
            f"(confidence {obs.confidence_percent}). {obs.regime.description}. "
            f"Signal multiplier: {obs.regime.multiplier:.1f}"
        )

@dataclass(slots=True)
class EvaluationResult:
    base_probability: float
    strategy_weight: float
    historical_factor: float
    regime_factor: float
    regime_confidence: float
    market_regime: MarketRegime
    final_probability: float
    history_enabled: bool
    strategy_allowed_in_regime: bool = True

    @property
    def regime_confidence_percent(self) -> str:
        return f"{self.regime_confidence * 100:.0f}%"

@dataclass(slots=True)
class ProbabilityResult:
    bucket_id: Optional[str]
    probability_up_pct: float
    avg_profit_pct: float
    avg_hours_to_max: float
    matched_samples: int
    snapshot: Snapshot
    strategy_weight: float
    weighted_probability: float
    evaluation: Optional[EvaluationResult] = None

@dataclass(slots=True)
class StrategyAnalysisResult:
    bucket_id: str
    base_probability: float
    final_probability: float
    strategy_weight: float
    avg_profit_pct: float
    avg_hours_to_max: float
    matched_patterns: int
    historical_factor: Optional[float] = None
    evaluation: Optional[EvaluationResult] = None
    pnl_coefficient: float = 1.0
    boosted_probability: float = 0.0

    @property
    def has_data(self) -> bool:
        return self.matched_patterns > 0

    def meets_conditions(self, min_probability: float, min_profit: float, min_samples: int) -> bool:
        if self.matched_patterns < min_samples:
            return False
        if self.final_probability < min_probability:
            return False
        return self.avg_profit_pct >= min_profit

@dataclass(slots=True)
class AggregatedAnalysisResult:
    snapshot: Snapshot
    strategy_results: List[StrategyAnalysisResult]
    avg_probability: float = 0.0
    pattern_weighted_avg_probability: float = 0.0
    avg_profit_pct: float = 0.0
    total_matched_patterns: int = 0
    strategies_with_data: int = 0
    best: Optional[StrategyAnalysisResult] = None

    def has_qualifying_strategy(self, min_probability: float, min_profit: float, min_samples: int) -> bool:
        return any(r.meets_conditions(min_probability, min_profit, min_samples) for r in self.strategy_results)

@dataclass(slots=True)
class BuildResult:
    success: bool
    built: int = 0
    skipped: int = 0
    errors: int = 0
    elapsed_ms: int = 0
    message: str = ""
    busy: bool = False

    def __str__(self):
        status = "OK" if self.success else ("BUSY" if self.busy else "FAILED")
        return f"[{status}] built={self.built} skipped={self.skipped} errors={self.errors} ({self.elapsed_ms}ms) {self.message}"

@dataclass(slots=True)
class PendingPrediction:
    bucket_id: str
    entry_price: float
    predicted_profit_pct: float
    predicted_hours: int
    created_at: int
    evaluate_at: int
    id: Optional[int] = None
    evaluated: bool = False
    success: Optional[bool] = None
    actual_max_price: Optional[float] = None
    actual_profit_pct: Optional[float] = None
    final_probability: Optional[float] = None

# --- Collaborator contracts ---

class CandleSource(Protocol):
    def min_open_time(self) -> Optional[int]: ...
    def max_open_time(self) -> Optional[int]: ...
    def candles_between(self, start: int, end: int) -> List[Candle]: ...  # ascending, inclusive
    def last_n_candles_before(self, t: int, n: int) -> List[Candle]: ...  # descending, open_time <= t
    def candle_at(self, t: int) -> Optional[Candle]: ...
    def count(self) -> int: ...
    def upsert_candles(self, candles: Iterable[Candle]) -> int: ...
    def max_high_between(self, start: int, end: int) -> Optional[float]: ...

class IndicatorSource(Protocol):
    def recent_n(self, n: int) -> List[IndicatorRow]: ...  # descending
    def between(self, start: int, end: int) -> List[IndicatorRow]: ...  # ascending
    def at(self, t: int) -> Optional[IndicatorRow]: ...
    def max_time(self) -> Optional[int]: ...
    def save(self, row: IndicatorRow): ...
    def delete_all(self): ...
    def count(self) -> int: ...

class PatternStore(Protocol):
    def exists_at(self, t: int) -> bool: ...
    def get(self, t: int) -> Optional[HistoricalPattern]: ...
    def upsert(self, pattern: HistoricalPattern): ...
    def delete_all(self): ...
    def by_strategy_bucket(self, bucket_id: str) -> List[HistoricalPattern]: ...
    def unevaluated_before(self, t: int) -> List[HistoricalPattern]: ...
    def evaluated_since(self, t: int) -> List[HistoricalPattern]: ...
    def max_candle_time(self) -> Optional[int]: ...
    def max_evaluated_candle_time(self) -> Optional[int]: ...
    def count(self) -> int: ...
    def count_evaluated(self) -> int: ...

class StrategyStatsStore(Protocol):
    def get(self, bucket_id: str) -> Optional[StrategyStats]: ...
    def get_or_create(self, bucket_id: str) -> StrategyStats: ...
    def save(self, stats: StrategyStats): ...
    def all_ordered_by_success_rate(self) -> List[StrategyStats]: ...

class RegimeStore(Protocol):
    def append(self, observation: RegimeObservation): ...
    def most_recent(self) -> Optional[RegimeObservation]: ...
    def recent_n(self, n: int) -> List[RegimeObservation]: ...  # descending
    def between(self, start: int, end: int) -> List[RegimeObservation]: ...  # ascending

class PredictionStore(Protocol):
    def save(self, prediction: PendingPrediction) -> PendingPrediction: ...
    def ready_for_evaluation(self, now: int) -> List[PendingPrediction]: ...
    def count_pending(self) -> int: ...

@dataclass
class EngineStatus:
    regime: Optional[RegimeObservation] = None
    best: Optional[StrategyAnalysisResult] = None
    aggregated: Optional[AggregatedAnalysisResult] = None
    last_build: Optional[BuildResult] = None
    pattern_cache_size: int = 0
    alerts: List[str] = field(default_factory=list)
