from dataclasses import dataclass
from types import MappingProxyType
from typing import Optional, List, FrozenSet
from models.types import (
    Snapshot, MarketRegime, StrategyType, RsiBucket, EmaTrend, VolumeBucket,
)
from config.settings import RSI_LOW_THRESHOLD, RSI_HIGH_THRESHOLD
from utils.logger import setup_logger

logger = setup_logger("StrategyRegistry")

DEFAULT_ALLOWED_REGIMES = MappingProxyType({
    StrategyType.TREND_FOLLOWING: frozenset({MarketRegime.TREND}),
    StrategyType.MEAN_REVERSION: frozenset({MarketRegime.RANGE}),
    StrategyType.MOMENTUM: frozenset({MarketRegime.TREND, MarketRegime.HIGH_VOLATILITY}),
    StrategyType.BREAKOUT: frozenset({MarketRegime.TREND, MarketRegime.HIGH_VOLATILITY}),
    StrategyType.HYBRID: frozenset(MarketRegime),
})

_RSI_NAMES = {RsiBucket.LOW: "Oversold", RsiBucket.MID: "Neutral RSI", RsiBucket.HIGH: "Overbought"}
_VOLUME_NAMES = {VolumeBucket.LOW: "Low Volume", VolumeBucket.MEDIUM: "Normal Volume", VolumeBucket.HIGH: "High Volume"}

_RSI_TEXT = {
    RsiBucket.LOW: "RSI indicates oversold conditions (<30). ",
    RsiBucket.MID: "RSI in neutral zone (30-70). ",
    RsiBucket.HIGH: "RSI indicates overbought conditions (>70). ",
}
_VOLUME_TEXT = {
    VolumeBucket.LOW: "Low volume may indicate weak conviction.",
    VolumeBucket.MEDIUM: "Normal volume levels.",
    VolumeBucket.HIGH: "High volume suggests strong market interest.",
}

@dataclass(slots=True, frozen=True)
class StrategyDefinition:
    bucket_id: str
    name: str
    description: str
    type: StrategyType
    rsi_bucket: RsiBucket
    ema_trend: EmaTrend
    volume_bucket: VolumeBucket
    allowed_regimes: FrozenSet[MarketRegime]

    def is_allowed_in(self, regime: MarketRegime) -> bool:
        return regime in self.allowed_regimes

# --- Bucket classification ---

def classify_rsi(rsi: float) -> RsiBucket:
    if rsi < RSI_LOW_THRESHOLD:
        return RsiBucket.LOW
    if rsi > RSI_HIGH_THRESHOLD:
        return RsiBucket.HIGH
    return RsiBucket.MID

def make_bucket_id(rsi: RsiBucket, ema: EmaTrend, vol: VolumeBucket) -> str:
    return f"RSI_{rsi.value}_EMA_{ema.value}_VOL_{vol.label}"

def bucket_id_for(snapshot: Optional[Snapshot]) -> Optional[str]:
    """
    Bucket of a snapshot, or None when RSI or either EMA is missing.
    A missing volume change counts as normal volume.
    """
    if snapshot is None or snapshot.rsi is None or snapshot.ema_bullish is None:
        return None
    ema = EmaTrend.BULL if snapshot.ema_bullish else EmaTrend.BEAR
    vol = snapshot.volume_bucket or VolumeBucket.MEDIUM
    return make_bucket_id(classify_rsi(snapshot.rsi), ema, vol)

def determine_strategy_type(rsi: RsiBucket, ema: EmaTrend, vol: VolumeBucket) -> StrategyType:
    if rsi is RsiBucket.LOW and ema is EmaTrend.BULL:
        return StrategyType.MEAN_REVERSION
    if rsi is RsiBucket.HIGH and ema is EmaTrend.BEAR:
        return StrategyType.MEAN_REVERSION
    if vol is VolumeBucket.HIGH:
        return StrategyType.BREAKOUT
    if ema is EmaTrend.BULL and rsi is not RsiBucket.LOW:
        return StrategyType.TREND_FOLLOWING
    if rsi is RsiBucket.LOW and vol is VolumeBucket.HIGH:
        return StrategyType.MOMENTUM
    return StrategyType.HYBRID

def _describe(rsi: RsiBucket, ema: EmaTrend, vol: VolumeBucket, strategy_type: StrategyType) -> str:
    trend = "EMA50 above EMA200 suggests uptrend. " if ema is EmaTrend.BULL else "EMA50 below EMA200 suggests downtrend. "
    return (
        f"{strategy_type.value.replace('_', ' ')} strategy: "
        f"{_RSI_TEXT[rsi]}{trend}{_VOLUME_TEXT[vol]}"
    )

def _create(rsi: RsiBucket, ema: EmaTrend, vol: VolumeBucket) -> StrategyDefinition:
    strategy_type = determine_strategy_type(rsi, ema, vol)
    ema_name = "Bullish Trend" if ema is EmaTrend.BULL else "Bearish Trend"
    return StrategyDefinition(
        bucket_id=make_bucket_id(rsi, ema, vol),
        name=f"{_RSI_NAMES[rsi]} + {ema_name} + {_VOLUME_NAMES[vol]}",
        description=_describe(rsi, ema, vol, strategy_type),
        type=strategy_type,
        rsi_bucket=rsi,
        ema_trend=ema,
        volume_bucket=vol,
        allowed_regimes=DEFAULT_ALLOWED_REGIMES[strategy_type],
    )

class StrategyRegistry:
    """The 18 RSI x EMA x volume strategies, built once and read-only after."""

    def __init__(self):
        self._strategies = MappingProxyType({
            d.bucket_id: d
            for d in (
                _create(rsi, ema, vol)
                for rsi in RsiBucket for ema in EmaTrend for vol in VolumeBucket
            )
        })
        logger.info(f"Strategy registry initialized with {len(self._strategies)} strategies")

    def get(self, bucket_id: str) -> Optional[StrategyDefinition]:
        return self._strategies.get(bucket_id)

    def all(self) -> List[StrategyDefinition]:
        return list(self._strategies.values())

    def ids(self) -> List[str]:
        return list(self._strategies.keys())

    def by_type(self, strategy_type: StrategyType) -> List[StrategyDefinition]:
        return [d for d in self._strategies.values() if d.type is strategy_type]

    def for_regime(self, regime: MarketRegime) -> List[StrategyDefinition]:
        return [d for d in self._strategies.values() if d.is_allowed_in(regime)]

    def type_of(self, bucket_id: str) -> StrategyType:
        """Unknown buckets are treated as HYBRID."""
        definition = self.get(bucket_id)
        return definition.type if definition else StrategyType.HYBRID

    def is_allowed(self, bucket_id: str, regime: MarketRegime) -> bool:
        definition = self.get(bucket_id)
        if definition is None:
            return regime in DEFAULT_ALLOWED_REGIMES[StrategyType.HYBRID]
        return definition.is_allowed_in(regime)

    def __len__(self):
        return len(self._strategies)
