import time
import pandas as pd
from types import MappingProxyType
from typing import List, Optional, Dict, Tuple
from models.types import (
    Candle, IndicatorRow, Snapshot, MarketRegime, StrategyType,
    RegimeObservation, RegimeDetection, CandleSource, IndicatorSource, RegimeStore,
)
from config.settings import (
    REGIME_LOOKBACK_CANDLES, TREND_EMA_DISTANCE_THRESHOLD, RANGE_EMA_DISTANCE_THRESHOLD,
    RANGE_ATR_THRESHOLD, HIGH_VOL_ATR_THRESHOLD, HIGH_VOL_PRICE_CHANGE_THRESHOLD,
    BB_INSIDE_THRESHOLD, BB_OUTSIDE_THRESHOLD, LARGE_WICK_THRESHOLD,
    TREND_CONSECUTIVE_CANDLES, RSI_CROSS_MIN, LARGE_MOVES_MIN,
)
from utils.rounding import safe_div
from utils.logger import setup_logger

logger = setup_logger("RegimeDetector")

MIN_REGIME_CANDLES = 10
FULL_CONDITIONS = 4
LIGHT_CONDITIONS = 3

TYPE_ADJUSTMENTS = MappingProxyType({
    (MarketRegime.TREND, StrategyType.TREND_FOLLOWING): 1.2,
    (MarketRegime.TREND, StrategyType.MEAN_REVERSION): 0.7,
    (MarketRegime.TREND, StrategyType.MOMENTUM): 1.1,
    (MarketRegime.TREND, StrategyType.BREAKOUT): 1.0,
    (MarketRegime.TREND, StrategyType.HYBRID): 1.0,
    (MarketRegime.RANGE, StrategyType.TREND_FOLLOWING): 0.7,
    (MarketRegime.RANGE, StrategyType.MEAN_REVERSION): 1.3,
    (MarketRegime.RANGE, StrategyType.MOMENTUM): 0.8,
    (MarketRegime.RANGE, StrategyType.BREAKOUT): 0.9,
    (MarketRegime.RANGE, StrategyType.HYBRID): 1.0,
    (MarketRegime.HIGH_VOLATILITY, StrategyType.TREND_FOLLOWING): 0.8,
    (MarketRegime.HIGH_VOLATILITY, StrategyType.MEAN_REVERSION): 0.7,
    (MarketRegime.HIGH_VOLATILITY, StrategyType.MOMENTUM): 1.2,
    (MarketRegime.HIGH_VOLATILITY, StrategyType.BREAKOUT): 1.3,
    (MarketRegime.HIGH_VOLATILITY, StrategyType.HYBRID): 0.9,
})

def type_adjustment(regime: MarketRegime, strategy_type: StrategyType) -> float:
    return TYPE_ADJUSTMENTS.get((regime, strategy_type), 1.0)

def _now_ms() -> int:
    return int(time.time() * 1000)

def pick_regime(trend: int, range_: int, high_vol: int) -> Tuple[MarketRegime, int]:
    """
    Highest score wins. Ties go to HIGH_VOLATILITY first, then TREND over RANGE.
    """
    if high_vol >= trend and high_vol >= range_:
        return MarketRegime.HIGH_VOLATILITY, high_vol
    if trend >= range_:
        return MarketRegime.TREND, trend
    return MarketRegime.RANGE, range_

def default_observation(now: int) -> RegimeObservation:
    return RegimeObservation(now, MarketRegime.RANGE, 0.5, 0, 1)

# --- Full detection conditions ---

def _ema_distance_pct(row: IndicatorRow, price: float) -> float:
    return safe_div(abs(row.ema50 - row.ema200), price) * 100

def _trend_matched(latest: IndicatorRow, price: float, frame: pd.DataFrame) -> int:
    if latest.ema50 is None or latest.ema200 is None:
        return 0
    matched = 0

    if _ema_distance_pct(latest, price) > TREND_EMA_DISTANCE_THRESHOLD:
        matched += 1

    bull = latest.ema50 > latest.ema200 and price > latest.ema50
    bear = latest.ema50 < latest.ema200 and price < latest.ema50
    if bull or bear:
        matched += 1

    if len(frame) >= TREND_CONSECUTIVE_CANDLES:
        tail = frame.tail(TREND_CONSECUTIVE_CANDLES)
        higher_highs = (tail['high'].diff().iloc[1:] > 0).all()
        lower_lows = (tail['low'].diff().iloc[1:] < 0).all()
        if higher_highs or lower_lows:
            matched += 1

    if latest.rsi14 is not None and 35 <= latest.rsi14 <= 65:
        matched += 1

    return matched

def _count_rsi_crosses(frame: pd.DataFrame) -> int:
    rsi = frame['rsi14'].dropna()
    prev = rsi.shift(1)
    crossed = ((prev < 50) & (rsi >= 50)) | ((prev >= 50) & (rsi < 50))
    return int(crossed.sum())

def _banded(frame: pd.DataFrame) -> pd.DataFrame:
    return frame.dropna(subset=['bb_lower', 'bb_upper'])

def _range_matched(latest: IndicatorRow, price: float, frame: pd.DataFrame) -> int:
    if latest.ema50 is None or latest.ema200 is None:
        return 0
    matched = 0

    banded = _banded(frame)
    if len(banded) > 0:
        inside = ((banded['close'] >= banded['bb_lower']) & (banded['close'] <= banded['bb_upper'])).sum()
        if inside / len(banded) >= BB_INSIDE_THRESHOLD:
            matched += 1

    if latest.atr14 is not None and safe_div(latest.atr14, price) * 100 < RANGE_ATR_THRESHOLD:
        matched += 1

    if _ema_distance_pct(latest, price) < RANGE_EMA_DISTANCE_THRESHOLD:
        matched += 1

    if _count_rsi_crosses(frame) >= RSI_CROSS_MIN:
        matched += 1

    return matched

def _high_vol_matched(latest: IndicatorRow, price: float, frame: pd.DataFrame) -> int:
    matched = 0

    if latest.atr14 is not None and safe_div(latest.atr14, price) * 100 > HIGH_VOL_ATR_THRESHOLD:
        matched += 1

    moves = frame['close'].pct_change().abs() * 100
    if int((moves > HIGH_VOL_PRICE_CHANGE_THRESHOLD).sum()) >= LARGE_MOVES_MIN:
        matched += 1

    banded = _banded(frame)
    if len(banded) > 0:
        outside = ((banded['close'] < banded['bb_lower']) | (banded['close'] > banded['bb_upper'])).sum()
        if outside / len(banded) >= BB_OUTSIDE_THRESHOLD:
            matched += 1

    body = (frame['close'] - frame['open']).abs()
    wick = (frame['high'] - frame['low']) - body
    large_wicks = int(((body > 0) & (wick > body * 2)).sum())
    if large_wicks >= len(frame) * LARGE_WICK_THRESHOLD:
        matched += 1

    return matched

def _frame(candles: List[Candle], rows: List[IndicatorRow]) -> pd.DataFrame:
    """Ascending candles left-joined with the indicator row of the same open_time."""
    candle_df = pd.DataFrame([
        {'open_time': c.open_time, 'open': c.open, 'high': c.high, 'low': c.low, 'close': c.close}
        for c in candles
    ])
    indicator_df = pd.DataFrame(
        [{'open_time': r.open_time, 'rsi14': r.rsi14, 'bb_upper': r.bb_upper, 'bb_lower': r.bb_lower} for r in rows],
        columns=['open_time', 'rsi14', 'bb_upper', 'bb_lower'],
    )
    frame = candle_df.merge(indicator_df, on='open_time', how='left')
    frame[['rsi14', 'bb_upper', 'bb_lower']] = frame[['rsi14', 'bb_upper', 'bb_lower']].astype(float)
    return frame.sort_values('open_time').reset_index(drop=True)

def classify(candles: List[Candle], rows: List[IndicatorRow], now: int) -> RegimeObservation:
    """
    Full detection. `candles` and `rows` are most-recent-first, as the stores
    return them.
    """
    if len(candles) < MIN_REGIME_CANDLES or not rows:
        logger.warning(f"Not enough data for regime detection: candles={len(candles)}, indicators={len(rows)}")
        return default_observation(now)

    latest = rows[0]
    price = candles[0].close
    frame = _frame(list(reversed(candles)), rows)

    trend = _trend_matched(latest, price, frame)
    range_ = _range_matched(latest, price, frame)
    high_vol = _high_vol_matched(latest, price, frame)
    logger.debug(f"Regime scores: trend={trend}/4 range={range_}/4 high_vol={high_vol}/4")

    regime, matched = pick_regime(trend, range_, high_vol)
    return RegimeObservation(now, regime, matched / FULL_CONDITIONS, matched, FULL_CONDITIONS)

# --- Lightweight detection ---

def detect_from_snapshot(snapshot: Optional[Snapshot], now: Optional[int] = None) -> RegimeObservation:
    """Three cheap checks on a single snapshot, no store access."""
    now = now if now is not None else _now_ms()
    if snapshot is None:
        return RegimeObservation(now, MarketRegime.RANGE, 0.5, 0, LIGHT_CONDITIONS)

    trend = range_ = high_vol = 0

    if snapshot.ema50 is not None and snapshot.ema200 is not None and snapshot.price:
        distance = abs(snapshot.ema50 - snapshot.ema200) / snapshot.price * 100
        if distance > TREND_EMA_DISTANCE_THRESHOLD:
            trend += 1
        if distance < RANGE_EMA_DISTANCE_THRESHOLD:
            range_ += 1

    if snapshot.price_change_1h is not None:
        change = abs(snapshot.price_change_1h)
        if change > HIGH_VOL_PRICE_CHANGE_THRESHOLD:
            high_vol += 1
        if change < 0.5:
            range_ += 1

    if snapshot.rsi is not None:
        if 35 < snapshot.rsi < 65:
            trend += 1
            range_ += 1
        if snapshot.rsi < 25 or snapshot.rsi > 75:
            high_vol += 1

    if high_vol > 0 and high_vol >= trend and high_vol >= range_:
        regime, matched = MarketRegime.HIGH_VOLATILITY, high_vol
    elif trend >= range_:
        regime, matched = MarketRegime.TREND, trend
    else:
        regime, matched = MarketRegime.RANGE, range_

    confidence = max(0.3, matched / LIGHT_CONDITIONS)
    return RegimeObservation(now, regime, confidence, matched, LIGHT_CONDITIONS)

class RegimeDetector:
    def __init__(self, candles: CandleSource, indicators: IndicatorSource, store: RegimeStore):
        self.candles = candles
        self.indicators = indicators
        self.store = store
        self._current: Optional[RegimeObservation] = None

    def detect(self, now: Optional[int] = None) -> RegimeObservation:
        now = now if now is not None else _now_ms()
        max_time = self.candles.max_open_time()
        candles = [] if max_time is None else self.candles.last_n_candles_before(max_time, REGIME_LOOKBACK_CANDLES)
        rows = self.indicators.recent_n(REGIME_LOOKBACK_CANDLES)

        observation = classify(candles, rows, now)
        self._current = observation
        logger.info(
            f"Regime detected: {observation.regime.value} (confidence: {observation.confidence_percent}, "
            f"matched: {observation.matched_conditions}/{observation.total_conditions})"
        )
        return observation

    def detect_and_persist(self, now: Optional[int] = None) -> RegimeDetection:
        previous = self.store.most_recent()
        observation = self.detect(now)
        self.store.append(observation)

        detection = RegimeDetection(observation, previous.regime if previous else None)
        if detection.regime_changed:
            logger.warning(detection.change_message())
        return detection

    def current(self) -> RegimeObservation:
        if self._current is None:
            return self.detect()
        return self._current

    def history(self, limit: int) -> List[RegimeObservation]:
        return self.store.recent_n(limit)

    def changes(self, limit: int) -> List[RegimeObservation]:
        """Observations whose regime differs from the one before, newest first."""
        observations = list(reversed(self.store.recent_n(limit * 4)))
        changes = [
            obs for prev, obs in zip(observations, observations[1:])
            if obs.regime != prev.regime
        ]
        return list(reversed(changes))[:limit]

    def distribution(self, start: int, end: int) -> Dict[MarketRegime, int]:
        counts = {regime: 0 for regime in MarketRegime}
        for obs in self.store.between(start, end):
            counts[obs.regime] += 1
        return counts
