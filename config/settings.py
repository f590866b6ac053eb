import os

# Asset (single-asset engine)
SYMBOL = os.environ.get("ENGINE_SYMBOL", "BTCUSDT")

# Timeframe
TIMEFRAME_15M = "15m"
CANDLE_TIMEFRAME_MINUTES = 15
CANDLE_INTERVAL_MS = CANDLE_TIMEFRAME_MINUTES * 60 * 1000

# REST endpoint for klines
BINANCE_KLINES_URL = "https://api.binance.com/api/v3/klines"
KLINES_FETCH_LIMIT = 1000
INITIAL_SYNC_DAYS = int(os.environ.get("INITIAL_SYNC_DAYS", 30))

# Snapshot windows
MIN_SNAPSHOT_CANDLES = 100
MACD_MIN_CANDLES = 35
RSI_PERIOD = 14
VOLUME_AVG_PERIOD = 20
PRICE_CHANGE_1H = 4
PRICE_CHANGE_4H = 16
PRICE_CHANGE_24H = 96

# Indicator history rows (EMA 200 needs 201 candles)
INDICATOR_LOOKBACK_CANDLES = 201
ATR_WINDOW = 14
BB_WINDOW = 20
BB_STD_MULTIPLIER = 2.0
AVG_VOLUME_WINDOW = 20

# Pattern dataset
# 200 candles of history so EMA200 is populated in every pattern snapshot
PATTERN_LOOKBACK_CANDLES = int(os.environ.get("PATTERN_LOOKBACK_CANDLES", 200))
FUTURE_CANDLES = 96  # 24h of 15m candles
MIN_FUTURE_CANDLES = 86  # tolerate up to 10 missing future candles
PATTERN_CACHE_DAYS = int(os.environ.get("PATTERN_CACHE_DAYS", 30))

# Pattern matching
RSI_TOLERANCE = 5.0
RSI_LOW_THRESHOLD = 30
RSI_HIGH_THRESHOLD = 70
VOLUME_LOW_THRESHOLD = -20
VOLUME_HIGH_THRESHOLD = 50

# Strategy evaluation
STRATEGY_HISTORY_ENABLED = os.environ.get("STRATEGY_HISTORY_ENABLED", "true").lower() == "true"
STRATEGY_HISTORY_WEIGHT = float(os.environ.get("STRATEGY_HISTORY_WEIGHT", 0.3))
STRATEGY_REGIME_ENABLED = os.environ.get("STRATEGY_REGIME_ENABLED", "true").lower() == "true"
HISTORY_LOOKBACK = 8  # 2 hours of 15m indicator rows

# Strategy ledger
DEFAULT_STRATEGY_WEIGHT = 0.5
MIN_STRATEGY_WEIGHT = 0.05
MAX_STRATEGY_WEIGHT = 1.0
PNL_COEFFICIENT_SCALE = 10.0
PNL_COEFFICIENT_MAX = 1.5

# Regime detection
REGIME_LOOKBACK_CANDLES = 96
TREND_EMA_DISTANCE_THRESHOLD = 1.5  # %
RANGE_EMA_DISTANCE_THRESHOLD = 0.5  # %
RANGE_ATR_THRESHOLD = 1.0  # ATR / price %
HIGH_VOL_ATR_THRESHOLD = 2.0  # ATR / price %
HIGH_VOL_PRICE_CHANGE_THRESHOLD = 2.0  # %
BB_INSIDE_THRESHOLD = 0.8
BB_OUTSIDE_THRESHOLD = 0.15
LARGE_WICK_THRESHOLD = 0.2
TREND_CONSECUTIVE_CANDLES = 8
RSI_CROSS_MIN = 3
LARGE_MOVES_MIN = 3

# Signals
MIN_SIGNAL_PROBABILITY = 60.0
MIN_SIGNAL_PROFIT_PCT = 1.0
MIN_SIGNAL_SAMPLES = 10

# Prediction outcomes
TRADE_AMOUNT_USD = 10.0  # notional per signal for PnL tracking
CONFIDENCE_PROBABILITY_THRESHOLD = 50.0

# Storage
DATABASE_PATH = os.environ.get("ENGINE_DB_PATH", "data/engine.sqlite3")

# Scheduling
CYCLE_INTERVAL_SECONDS = CANDLE_TIMEFRAME_MINUTES * 60
CYCLE_OFFSET_SECONDS = 60  # run shortly after the candle close

# Logging
LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")
LOG_FILE = "utils/engine.log"
DEBUG_LOG_FILE = "utils/debug_engine.log"

# Console
ENABLE_STATUS_PANEL = True
