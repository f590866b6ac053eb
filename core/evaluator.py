from typing import List, Optional
from models.types import (
    Snapshot, IndicatorRow, IndicatorSource, RegimeObservation, EvaluationResult,
)
from core.regime import detect_from_snapshot, type_adjustment
from core.strategy_registry import StrategyRegistry
from core.strategy_ledger import StrategyLedger
from config.settings import (
    STRATEGY_HISTORY_ENABLED, STRATEGY_HISTORY_WEIGHT, STRATEGY_REGIME_ENABLED, HISTORY_LOOKBACK,
)
from utils.rounding import round_half_up, clamp
from utils.logger import setup_logger

logger = setup_logger("StrategyEvaluator")

# --- Historical factor ---
# Each helper returns None when its inputs are missing so it is left out of
# the mean.

def _split_halves(values: List[Optional[float]]):
    half = len(values) // 2
    if half < 2:
        return None
    early = [v for v in values[:half] if v is not None]
    late = [v for v in values[half:] if v is not None]
    if not early or not late:
        return None
    return sum(early) / len(early), sum(late) / len(late)

def rsi_momentum_factor(rows: List[IndicatorRow]) -> Optional[float]:
    halves = _split_halves([r.rsi14 for r in rows])
    if halves is None:
        return None
    early, late = halves
    x = clamp((late - early) / 10.0, -1.0, 1.0)
    return 1.0 + x * 0.3

def ema_gap_factor(rows: List[IndicatorRow]) -> Optional[float]:
    if len(rows) < 4:
        return None
    first, last = rows[0], rows[-1]
    if None in (first.ema50, first.ema200, last.ema50, last.ema200):
        return None
    if first.ema200 == 0 or last.ema200 == 0:
        return None
    first_gap = (first.ema50 - first.ema200) / first.ema200
    last_gap = (last.ema50 - last.ema200) / last.ema200
    x = clamp((last_gap - first_gap) * 50, -1.0, 1.0)
    return 1.0 + x * 0.2

def oversold_recovery_factor(rows: List[IndicatorRow], snapshot: Snapshot) -> Optional[float]:
    if snapshot.rsi is None:
        return None
    was_oversold = any(r.rsi14 is not None and r.rsi14 < 30 for r in rows)
    recovering = 30 <= snapshot.rsi <= 45
    return 1.2 if was_oversold and recovering else 1.0

def bollinger_position_factor(rows: List[IndicatorRow], snapshot: Snapshot) -> Optional[float]:
    latest = rows[-1]
    if latest.bb_lower is None or latest.bb_upper is None or latest.bb_middle is None:
        return None
    width = latest.bb_upper - latest.bb_lower
    if width <= 0:
        return 1.0
    price = snapshot.price if snapshot.price is not None else latest.bb_middle
    position = (price - latest.bb_lower) / width
    if position < 0.3:
        return 1.15
    if position > 0.7:
        return 0.9
    return 1.0

def atr_trend_factor(rows: List[IndicatorRow]) -> Optional[float]:
    if len(rows) < 4:
        return None
    first, last = rows[0].atr14, rows[-1].atr14
    if first is None or last is None:
        return None
    if first <= 0:
        return 1.0
    change = (last - first) / first
    if change < -0.1:
        return 1.1
    if change > 0.2:
        return 0.95
    return 1.0

def volume_trend_factor(rows: List[IndicatorRow]) -> Optional[float]:
    halves = _split_halves([r.avg_volume20 for r in rows])
    if halves is None:
        return None
    early, late = halves
    if early <= 0:
        return 1.0
    change = (late - early) / early
    if change > 0.1:
        return 1.1
    if change < -0.1:
        return 0.95
    return 1.0

def historical_factor(rows: List[IndicatorRow], snapshot: Snapshot) -> float:
    """
    Mean of the available momentum sub-factors over chronological `rows`,
    clamped to [0.5, 1.5]. 1.0 when nothing can be computed.
    """
    if not rows:
        return 1.0

    factors = [
        rsi_momentum_factor(rows),
        ema_gap_factor(rows),
        oversold_recovery_factor(rows, snapshot),
        bollinger_position_factor(rows, snapshot),
        atr_trend_factor(rows),
        volume_trend_factor(rows),
    ]
    available = [f for f in factors if f is not None]
    if not available:
        return 1.0
    return round_half_up(clamp(sum(available) / len(available), 0.5, 1.5), 4)

class StrategyEvaluator:
    """
    final = clamp(base * regime_factor * regime_confidence * combined_weight, 0, 100)
    """

    def __init__(
        self,
        ledger: StrategyLedger,
        registry: StrategyRegistry,
        indicators: IndicatorSource,
        history_enabled: bool = STRATEGY_HISTORY_ENABLED,
        history_weight: float = STRATEGY_HISTORY_WEIGHT,
        regime_enabled: bool = STRATEGY_REGIME_ENABLED,
    ):
        self.ledger = ledger
        self.registry = registry
        self.indicators = indicators
        self.history_enabled = history_enabled
        self.history_weight = history_weight
        self.regime_enabled = regime_enabled

    def recent_rows(self) -> List[IndicatorRow]:
        """Last HISTORY_LOOKBACK indicator rows, oldest first."""
        return list(reversed(self.indicators.recent_n(HISTORY_LOOKBACK)))

    def evaluate(
        self,
        base_probability: float,
        snapshot: Snapshot,
        bucket_id: str,
        regime: Optional[RegimeObservation] = None,
        recent_rows: Optional[List[IndicatorRow]] = None,
    ) -> EvaluationResult:
        weight = self.ledger.weight_of(bucket_id)
        observation = regime or detect_from_snapshot(snapshot)

        if not self.registry.is_allowed(bucket_id, observation.regime):
            logger.debug(f"Strategy {bucket_id} not allowed in regime {observation.regime.value}, suppressing signal")
            return EvaluationResult(
                base_probability=base_probability,
                strategy_weight=weight,
                historical_factor=1.0,
                regime_factor=observation.regime.multiplier,
                regime_confidence=observation.confidence,
                market_regime=observation.regime,
                final_probability=0.0,
                history_enabled=self.history_enabled,
                strategy_allowed_in_regime=False,
            )

        regime_factor = observation.regime.multiplier
        if self.regime_enabled:
            regime_factor *= type_adjustment(observation.regime, self.registry.type_of(bucket_id))

        factor = 1.0
        combined_weight = weight
        if self.history_enabled:
            rows = recent_rows if recent_rows is not None else self.recent_rows()
            if len(rows) < HISTORY_LOOKBACK:
                logger.debug(f"Not enough historical indicators for evaluation: {len(rows)}")
            else:
                factor = historical_factor(rows, snapshot)
                combined_weight = (1 - self.history_weight) * weight + self.history_weight * factor

        final = base_probability * regime_factor * observation.confidence * combined_weight
        final = clamp(round_half_up(final, 4), 0.0, 100.0)

        logger.debug(
            f"Evaluation: base={base_probability}%, regime={observation.regime.value} "
            f"(mult={regime_factor:.4f}, conf={observation.confidence_percent}), "
            f"strategy={weight}, history={factor}, final={final}%"
        )

        return EvaluationResult(
            base_probability=base_probability,
            strategy_weight=weight,
            historical_factor=factor,
            regime_factor=regime_factor,
            regime_confidence=observation.confidence,
            market_regime=observation.regime,
            final_probability=final,
            history_enabled=self.history_enabled,
        )
