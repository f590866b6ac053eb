import pandas as pd
import numpy as np
from decimal import Decimal
from typing import List, Optional, Sequence, Tuple
from models.types import Candle, Snapshot, IndicatorRow
from config.settings import (
    MIN_SNAPSHOT_CANDLES, MACD_MIN_CANDLES, RSI_PERIOD, VOLUME_AVG_PERIOD,
    PRICE_CHANGE_1H, PRICE_CHANGE_4H, PRICE_CHANGE_24H,
    INDICATOR_LOOKBACK_CANDLES, ATR_WINDOW, BB_WINDOW, BB_STD_MULTIPLIER, AVG_VOLUME_WINDOW,
)
from utils.rounding import round_half_up, safe_div

PRICE_PLACES = 8

# --- Core Math Helpers ---

def ema_series(values: Sequence[float], period: int) -> List[Optional[float]]:
    """
    EMA aligned with `values`: None until `period` values exist, seeded with
    their simple mean, then ema = v*k + ema*(1-k).
    """
    out: List[Optional[float]] = [None] * len(values)
    if period <= 0 or len(values) < period:
        return out

    k = 2.0 / (period + 1)
    ema = float(np.mean(values[:period]))
    out[period - 1] = ema
    for i in range(period, len(values)):
        ema = values[i] * k + ema * (1 - k)
        out[i] = ema
    return out

def calculate_ema(closes: Sequence[float], period: int) -> Optional[float]:
    if len(closes) < period:
        return None
    return ema_series(closes, period)[-1]

def calculate_rsi(closes: Sequence[float], period: int = RSI_PERIOD) -> Optional[float]:
    """Simple-mean RSI over the last `period` deltas (no Wilder smoothing)."""
    if len(closes) < period + 1:
        return None

    deltas = np.diff(np.asarray(closes[-(period + 1):], dtype=float))
    avg_gain = float(np.clip(deltas, 0, None).mean())
    avg_loss = float(np.clip(-deltas, 0, None).mean())

    if avg_loss == 0:
        return 100.0
    rs = avg_gain / avg_loss
    return 100.0 - 100.0 / (1.0 + rs)

def calculate_macd(closes: Sequence[float]) -> Optional[Tuple[float, float, float]]:
    """(macd_line, signal_line, histogram), histogram = line - signal to 4 places."""
    if len(closes) < MACD_MIN_CANDLES:
        return None

    ema12 = ema_series(closes, 12)
    ema26 = ema_series(closes, 26)
    macd_values = [fast - slow for fast, slow in zip(ema12[25:], ema26[25:])]

    signal = ema_series(macd_values, 9)[-1]
    if signal is None:
        return None

    macd_line = round_half_up(macd_values[-1], 4)
    signal_line = round_half_up(signal, 4)
    histogram = round_half_up(float(Decimal(str(macd_line)) - Decimal(str(signal_line))), 4)
    return macd_line, signal_line, histogram

def calculate_volume_change_pct(volumes: Sequence[float], period: int = VOLUME_AVG_PERIOD) -> Optional[float]:
    if len(volumes) < period + 1:
        return None
    avg = float(np.mean(volumes[-(period + 1):-1]))
    return round_half_up(safe_div(volumes[-1] - avg, avg) * 100, 4)

def calculate_price_change_pct(closes: Sequence[float], n: int) -> Optional[float]:
    if len(closes) < n + 1:
        return None
    past = closes[-(n + 1)]
    return round_half_up(safe_div(closes[-1] - past, past) * 100, 4)

# --- Snapshot ---

def build_snapshot(window: List[Candle]) -> Optional[Snapshot]:
    """
    Point-in-time feature vector at the last candle of an ascending window.
    Returns None when the window is shorter than MIN_SNAPSHOT_CANDLES.
    """
    if len(window) < MIN_SNAPSHOT_CANDLES:
        return None

    closes = [c.close for c in window]
    volumes = [c.volume for c in window]

    macd = calculate_macd(closes)
    macd_line, signal_line, histogram = macd if macd else (None, None, None)

    return Snapshot(
        timestamp=window[-1].open_time,
        price=closes[-1],
        ema50=round_half_up(calculate_ema(closes, 50), 4),
        ema200=round_half_up(calculate_ema(closes, 200), 4),
        rsi=round_half_up(calculate_rsi(closes), 4),
        macd_line=macd_line,
        signal_line=signal_line,
        macd_histogram=histogram,
        volume_change_pct=calculate_volume_change_pct(volumes),
        price_change_1h=calculate_price_change_pct(closes, PRICE_CHANGE_1H),
        price_change_4h=calculate_price_change_pct(closes, PRICE_CHANGE_4H),
        price_change_24h=calculate_price_change_pct(closes, PRICE_CHANGE_24H),
    )

# --- Indicator rows (Incremental) ---

def _true_ranges(window: List[Candle], count: int) -> List[float]:
    trs = []
    start = len(window) - count
    for i in range(start, len(window)):
        c = window[i]
        p = window[i - 1] if i > 0 else None
        if p:
            trs.append(max(c.high - c.low, abs(c.high - p.close), abs(c.low - p.close)))
        else:
            trs.append(c.high - c.low)
    return trs

def _continue_ema(close: float, previous: Optional[float], period: int, closes: Sequence[float]) -> Optional[float]:
    if previous is not None:
        k = 2.0 / (period + 1)
        return close * k + previous * (1 - k)
    return calculate_ema(closes, period)

def calculate_indicator_row(window: List[Candle], previous: Optional[IndicatorRow] = None) -> Optional[IndicatorRow]:
    """
    O(window) row for the last candle of `window`.
    EMA50/EMA200 continue from `previous` when it holds them, otherwise they
    are seeded from the window itself.
    """
    if len(window) < INDICATOR_LOOKBACK_CANDLES:
        return None

    curr = window[-1]
    closes = [c.close for c in window]

    ema50 = _continue_ema(curr.close, previous.ema50 if previous else None, 50, closes)
    ema200 = _continue_ema(curr.close, previous.ema200 if previous else None, 200, closes)

    atr = float(np.mean(_true_ranges(window, ATR_WINDOW)))

    bb_closes = np.asarray(closes[-BB_WINDOW:], dtype=float)
    bb_middle = float(bb_closes.mean())
    bb_std = float(bb_closes.std(ddof=0))

    avg_volume = float(np.mean([c.volume for c in window[-AVG_VOLUME_WINDOW:]]))

    return IndicatorRow(
        open_time=curr.open_time,
        ema50=round_half_up(ema50, PRICE_PLACES),
        ema200=round_half_up(ema200, PRICE_PLACES),
        rsi14=round_half_up(calculate_rsi(closes), 4),
        atr14=round_half_up(atr, PRICE_PLACES),
        bb_upper=round_half_up(bb_middle + BB_STD_MULTIPLIER * bb_std, PRICE_PLACES),
        bb_middle=round_half_up(bb_middle, PRICE_PLACES),
        bb_lower=round_half_up(bb_middle - BB_STD_MULTIPLIER * bb_std, PRICE_PLACES),
        avg_volume20=round_half_up(avg_volume, PRICE_PLACES),
    )

# --- Indicator rows (Full Calculation) ---

def _seeded_ewm(close: pd.Series, period: int) -> pd.Series:
    if len(close) < period:
        return pd.Series(np.nan, index=close.index)
    seeded = close.copy()
    seeded.iloc[:period - 1] = np.nan
    seeded.iloc[period - 1] = close.iloc[:period].mean()
    out = pd.Series(np.nan, index=close.index)
    out.iloc[period - 1:] = seeded.iloc[period - 1:].ewm(span=period, adjust=False).mean().to_numpy()
    return out

def _to_optional(value) -> Optional[float]:
    if value is None or pd.isna(value):
        return None
    return float(value)

def calculate_indicator_rows_full(candles: List[Candle]) -> List[IndicatorRow]:
    """
    Batch rows for the whole history (vectorised).
    Used for full recalculation; matches the incremental rows.
    """
    if len(candles) < INDICATOR_LOOKBACK_CANDLES:
        return []

    df = pd.DataFrame([
        {'open_time': c.open_time, 'high': c.high, 'low': c.low, 'close': c.close, 'volume': c.volume}
        for c in candles
    ])

    df['ema50'] = _seeded_ewm(df['close'], 50)
    df['ema200'] = _seeded_ewm(df['close'], 200)

    delta = df['close'].diff()
    avg_gain = delta.clip(lower=0).rolling(window=RSI_PERIOD).mean()
    avg_loss = (-delta).clip(lower=0).rolling(window=RSI_PERIOD).mean()
    rs = avg_gain / avg_loss.replace(0, np.nan)
    df['rsi14'] = (100.0 - 100.0 / (1.0 + rs)).where(avg_loss != 0, 100.0)

    df['prev_close'] = df['close'].shift(1)
    df['tr1'] = df['high'] - df['low']
    df['tr2'] = (df['high'] - df['prev_close']).abs()
    df['tr3'] = (df['low'] - df['prev_close']).abs()
    df['tr'] = df[['tr1', 'tr2', 'tr3']].max(axis=1)
    df['atr14'] = df['tr'].rolling(window=ATR_WINDOW).mean()

    df['bb_middle'] = df['close'].rolling(window=BB_WINDOW).mean()
    bb_std = df['close'].rolling(window=BB_WINDOW).std(ddof=0)
    df['bb_upper'] = df['bb_middle'] + BB_STD_MULTIPLIER * bb_std
    df['bb_lower'] = df['bb_middle'] - BB_STD_MULTIPLIER * bb_std

    df['avg_volume20'] = df['volume'].rolling(window=AVG_VOLUME_WINDOW).mean()

    rows = []
    for row in df.iloc[INDICATOR_LOOKBACK_CANDLES - 1:].itertuples(index=False):
        rows.append(IndicatorRow(
            open_time=int(row.open_time),
            ema50=round_half_up(_to_optional(row.ema50), PRICE_PLACES),
            ema200=round_half_up(_to_optional(row.ema200), PRICE_PLACES),
            rsi14=round_half_up(_to_optional(row.rsi14), 4),
            atr14=round_half_up(_to_optional(row.atr14), PRICE_PLACES),
            bb_upper=round_half_up(_to_optional(row.bb_upper), PRICE_PLACES),
            bb_middle=round_half_up(_to_optional(row.bb_middle), PRICE_PLACES),
            bb_lower=round_half_up(_to_optional(row.bb_lower), PRICE_PLACES),
            avg_volume20=round_half_up(_to_optional(row.avg_volume20), PRICE_PLACES),
        ))
    return rows
