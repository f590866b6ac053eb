import sqlite3
from contextlib import contextmanager, closing
from dataclasses import replace
from pathlib import Path
from typing import List, Optional, Iterable
from models.types import (
    Candle, IndicatorRow, Snapshot, HistoricalPattern, StrategyStats,
    RegimeObservation, MarketRegime, PendingPrediction,
)
from config.settings import DATABASE_PATH
from utils.logger import setup_logger

logger = setup_logger("SqliteStore")

SCHEMA = """
CREATE TABLE IF NOT EXISTS candle_15m (
    open_time INTEGER PRIMARY KEY,
    open REAL NOT NULL,
    high REAL NOT NULL,
    low REAL NOT NULL,
    close REAL NOT NULL,
    volume REAL NOT NULL
);
CREATE TABLE IF NOT EXISTS indicator_15m (
    open_time INTEGER PRIMARY KEY,
    ema50 REAL, ema200 REAL, rsi14 REAL, atr14 REAL,
    bb_upper REAL, bb_middle REAL, bb_lower REAL, avg_volume20 REAL
);
CREATE TABLE IF NOT EXISTS historical_pattern (
    candle_time INTEGER PRIMARY KEY,
    strategy_id TEXT NOT NULL,
    rsi REAL, ema50 REAL, ema200 REAL,
    volume_change_pct REAL, price_change_1h REAL, price_change_4h REAL,
    evaluated INTEGER NOT NULL DEFAULT 0,
    max_profit_pct REAL,
    hours_to_max INTEGER,
    evaluated_at INTEGER
);
CREATE INDEX IF NOT EXISTS idx_pattern_strategy ON historical_pattern(strategy_id);
CREATE INDEX IF NOT EXISTS idx_pattern_evaluated ON historical_pattern(evaluated, candle_time);
CREATE TABLE IF NOT EXISTS strategy_stats (
    strategy_name TEXT PRIMARY KEY,
    total_predictions INTEGER NOT NULL DEFAULT 0,
    successful_predictions INTEGER NOT NULL DEFAULT 0,
    failed_predictions INTEGER NOT NULL DEFAULT 0,
    score INTEGER NOT NULL DEFAULT 0,
    success_rate REAL NOT NULL DEFAULT 50,
    weight REAL NOT NULL DEFAULT 0.5,
    degradation_alerted INTEGER NOT NULL DEFAULT 0,
    last_updated INTEGER NOT NULL DEFAULT 0,
    confidence_positive INTEGER NOT NULL DEFAULT 0,
    confidence_negative INTEGER NOT NULL DEFAULT 0,
    confidence_neutral INTEGER NOT NULL DEFAULT 0,
    confidence_score INTEGER NOT NULL DEFAULT 0,
    rate2 REAL,
    total_pnl_usd REAL NOT NULL DEFAULT 0,
    profit_trades_count INTEGER NOT NULL DEFAULT 0,
    sum_profit_pct REAL NOT NULL DEFAULT 0
);
CREATE TABLE IF NOT EXISTS market_regime (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    timestamp INTEGER NOT NULL,
    regime_type TEXT NOT NULL,
    confidence REAL NOT NULL,
    matched_conditions INTEGER NOT NULL,
    total_conditions INTEGER NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_regime_timestamp ON market_regime(timestamp);
CREATE TABLE IF NOT EXISTS pending_prediction (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    strategy_id TEXT NOT NULL,
    entry_price REAL NOT NULL,
    predicted_profit_pct REAL NOT NULL,
    predicted_hours INTEGER NOT NULL,
    created_at INTEGER NOT NULL,
    evaluate_at INTEGER NOT NULL,
    evaluated INTEGER NOT NULL DEFAULT 0,
    success INTEGER,
    actual_max_price REAL,
    actual_profit_pct REAL,
    final_probability REAL
);
"""

class SqliteDatabase:
    """Owns the schema; hands out one connection per call."""

    def __init__(self, db_path: str = DATABASE_PATH):
        self.db_path = db_path
        if db_path != ":memory:":
            Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        self._init_db()

    def _init_db(self):
        with self.connect() as conn:
            conn.executescript(SCHEMA)
        logger.info(f"SQLite store ready at {self.db_path}")

    @contextmanager
    def connect(self):
        with closing(sqlite3.connect(self.db_path)) as conn:
            conn.row_factory = sqlite3.Row
            with conn:
                yield conn

class _Store:
    def __init__(self, db: SqliteDatabase):
        self.db = db

    def _one(self, sql: str, params=()):
        with self.db.connect() as conn:
            return conn.execute(sql, params).fetchone()

    def _all(self, sql: str, params=()):
        with self.db.connect() as conn:
            return conn.execute(sql, params).fetchall()

    def _scalar(self, sql: str, params=()):
        row = self._one(sql, params)
        return row[0] if row is not None else None

    def _execute(self, sql: str, params=()):
        with self.db.connect() as conn:
            return conn.execute(sql, params)

def _candle(row) -> Candle:
    return Candle(row['open_time'], row['open'], row['high'], row['low'], row['close'], row['volume'])

class SqliteCandleStore(_Store):
    def min_open_time(self) -> Optional[int]:
        return self._scalar("SELECT MIN(open_time) FROM candle_15m")

    def max_open_time(self) -> Optional[int]:
        return self._scalar("SELECT MAX(open_time) FROM candle_15m")

    def candles_between(self, start: int, end: int) -> List[Candle]:
        rows = self._all(
            "SELECT * FROM candle_15m WHERE open_time BETWEEN ? AND ? ORDER BY open_time ASC", (start, end)
        )
        return [_candle(r) for r in rows]

    def last_n_candles_before(self, t: int, n: int) -> List[Candle]:
        rows = self._all(
            "SELECT * FROM candle_15m WHERE open_time <= ? ORDER BY open_time DESC LIMIT ?", (t, n)
        )
        return [_candle(r) for r in rows]

    def candle_at(self, t: int) -> Optional[Candle]:
        row = self._one("SELECT * FROM candle_15m WHERE open_time = ?", (t,))
        return _candle(row) if row else None

    def count(self) -> int:
        return self._scalar("SELECT COUNT(*) FROM candle_15m")

    def upsert_candles(self, candles: Iterable[Candle]) -> int:
        with self.db.connect() as conn:
            before = conn.execute("SELECT COUNT(*) FROM candle_15m").fetchone()[0]
            conn.executemany(
                "INSERT OR REPLACE INTO candle_15m (open_time, open, high, low, close, volume) VALUES (?, ?, ?, ?, ?, ?)",
                [(c.open_time, c.open, c.high, c.low, c.close, c.volume) for c in candles],
            )
            after = conn.execute("SELECT COUNT(*) FROM candle_15m").fetchone()[0]
        return after - before

    def max_high_between(self, start: int, end: int) -> Optional[float]:
        return self._scalar("SELECT MAX(high) FROM candle_15m WHERE open_time BETWEEN ? AND ?", (start, end))

_INDICATOR_COLUMNS = ("open_time", "ema50", "ema200", "rsi14", "atr14", "bb_upper", "bb_middle", "bb_lower", "avg_volume20")

def _indicator(row) -> IndicatorRow:
    return IndicatorRow(**{c: row[c] for c in _INDICATOR_COLUMNS})

class SqliteIndicatorStore(_Store):
    def recent_n(self, n: int) -> List[IndicatorRow]:
        rows = self._all("SELECT * FROM indicator_15m ORDER BY open_time DESC LIMIT ?", (n,))
        return [_indicator(r) for r in rows]

    def between(self, start: int, end: int) -> List[IndicatorRow]:
        rows = self._all(
            "SELECT * FROM indicator_15m WHERE open_time BETWEEN ? AND ? ORDER BY open_time ASC", (start, end)
        )
        return [_indicator(r) for r in rows]

    def at(self, t: int) -> Optional[IndicatorRow]:
        row = self._one("SELECT * FROM indicator_15m WHERE open_time = ?", (t,))
        return _indicator(row) if row else None

    def max_time(self) -> Optional[int]:
        return self._scalar("SELECT MAX(open_time) FROM indicator_15m")

    def save(self, row: IndicatorRow):
        placeholders = ", ".join("?" for _ in _INDICATOR_COLUMNS)
        self._execute(
            f"INSERT OR REPLACE INTO indicator_15m ({', '.join(_INDICATOR_COLUMNS)}) VALUES ({placeholders})",
            tuple(getattr(row, c) for c in _INDICATOR_COLUMNS),
        )

    def delete_all(self):
        self._execute("DELETE FROM indicator_15m")

    def count(self) -> int:
        return self._scalar("SELECT COUNT(*) FROM indicator_15m")

def _pattern(row) -> HistoricalPattern:
    return HistoricalPattern(
        candle_time=row['candle_time'],
        strategy_bucket_id=row['strategy_id'],
        snapshot=Snapshot(
            timestamp=row['candle_time'],
            rsi=row['rsi'],
            ema50=row['ema50'],
            ema200=row['ema200'],
            volume_change_pct=row['volume_change_pct'],
            price_change_1h=row['price_change_1h'],
            price_change_4h=row['price_change_4h'],
        ),
        evaluated=bool(row['evaluated']),
        max_profit_pct_24h=row['max_profit_pct'],
        hours_to_max=row['hours_to_max'],
        evaluated_at=row['evaluated_at'],
    )

class SqlitePatternStore(_Store):
    def exists_at(self, t: int) -> bool:
        return self._one("SELECT 1 FROM historical_pattern WHERE candle_time = ?", (t,)) is not None

    def get(self, t: int) -> Optional[HistoricalPattern]:
        row = self._one("SELECT * FROM historical_pattern WHERE candle_time = ?", (t,))
        return _pattern(row) if row else None

    def upsert(self, pattern: HistoricalPattern):
        s = pattern.snapshot
        self._execute(
            """
            INSERT OR REPLACE INTO historical_pattern
                (candle_time, strategy_id, rsi, ema50, ema200, volume_change_pct, price_change_1h,
                 price_change_4h, evaluated, max_profit_pct, hours_to_max, evaluated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                pattern.candle_time, pattern.strategy_bucket_id, s.rsi, s.ema50, s.ema200,
                s.volume_change_pct, s.price_change_1h, s.price_change_4h, int(pattern.evaluated),
                pattern.max_profit_pct_24h, pattern.hours_to_max, pattern.evaluated_at,
            ),
        )

    def delete_all(self):
        self._execute("DELETE FROM historical_pattern")

    def by_strategy_bucket(self, bucket_id: str) -> List[HistoricalPattern]:
        rows = self._all(
            "SELECT * FROM historical_pattern WHERE strategy_id = ? ORDER BY candle_time ASC", (bucket_id,)
        )
        return [_pattern(r) for r in rows]

    def unevaluated_before(self, t: int) -> List[HistoricalPattern]:
        rows = self._all(
            "SELECT * FROM historical_pattern WHERE evaluated = 0 AND candle_time <= ? ORDER BY candle_time ASC", (t,)
        )
        return [_pattern(r) for r in rows]

    def evaluated_since(self, t: int) -> List[HistoricalPattern]:
        rows = self._all(
            "SELECT * FROM historical_pattern WHERE evaluated = 1 AND candle_time >= ? ORDER BY candle_time ASC", (t,)
        )
        return [_pattern(r) for r in rows]

    def max_candle_time(self) -> Optional[int]:
        return self._scalar("SELECT MAX(candle_time) FROM historical_pattern")

    def max_evaluated_candle_time(self) -> Optional[int]:
        return self._scalar("SELECT MAX(candle_time) FROM historical_pattern WHERE evaluated = 1")

    def count(self) -> int:
        return self._scalar("SELECT COUNT(*) FROM historical_pattern")

    def count_evaluated(self) -> int:
        return self._scalar("SELECT COUNT(*) FROM historical_pattern WHERE evaluated = 1")

_STATS_COLUMNS = {
    "bucket_id": "strategy_name",
    "total_predictions": "total_predictions",
    "successes": "successful_predictions",
    "failures": "failed_predictions",
    "score": "score",
    "success_rate_pct": "success_rate",
    "weight": "weight",
    "degradation_alerted": "degradation_alerted",
    "last_updated": "last_updated",
    "confidence_positive": "confidence_positive",
    "confidence_negative": "confidence_negative",
    "confidence_neutral": "confidence_neutral",
    "confidence_score": "confidence_score",
    "rate2": "rate2",
    "total_pnl_usd": "total_pnl_usd",
    "profit_trades_count": "profit_trades_count",
    "sum_profit_pct": "sum_profit_pct",
}

def _stats(row) -> StrategyStats:
    values = {field: row[column] for field, column in _STATS_COLUMNS.items()}
    values["degradation_alerted"] = bool(values["degradation_alerted"])
    return StrategyStats(**values)

class SqliteStrategyStatsStore(_Store):
    def get(self, bucket_id: str) -> Optional[StrategyStats]:
        row = self._one("SELECT * FROM strategy_stats WHERE strategy_name = ?", (bucket_id,))
        return _stats(row) if row else None

    def get_or_create(self, bucket_id: str) -> StrategyStats:
        stats = self.get(bucket_id)
        if stats is None:
            stats = StrategyStats(bucket_id=bucket_id)
            self.save(stats)
        return stats

    def save(self, stats: StrategyStats):
        columns = ", ".join(_STATS_COLUMNS.values())
        placeholders = ", ".join("?" for _ in _STATS_COLUMNS)
        values = [getattr(stats, field) for field in _STATS_COLUMNS]
        self._execute(f"INSERT OR REPLACE INTO strategy_stats ({columns}) VALUES ({placeholders})", values)

    def all_ordered_by_success_rate(self) -> List[StrategyStats]:
        rows = self._all("SELECT * FROM strategy_stats ORDER BY success_rate DESC, strategy_name ASC")
        return [_stats(r) for r in rows]

def _observation(row) -> RegimeObservation:
    return RegimeObservation(
        timestamp=row['timestamp'],
        regime=MarketRegime(row['regime_type']),
        confidence=row['confidence'],
        matched_conditions=row['matched_conditions'],
        total_conditions=row['total_conditions'],
    )

class SqliteRegimeStore(_Store):
    def append(self, observation: RegimeObservation):
        self._execute(
            "INSERT INTO market_regime (timestamp, regime_type, confidence, matched_conditions, total_conditions) "
            "VALUES (?, ?, ?, ?, ?)",
            (observation.timestamp, observation.regime.value, observation.confidence,
             observation.matched_conditions, observation.total_conditions),
        )

    def most_recent(self) -> Optional[RegimeObservation]:
        row = self._one("SELECT * FROM market_regime ORDER BY timestamp DESC, id DESC LIMIT 1")
        return _observation(row) if row else None

    def recent_n(self, n: int) -> List[RegimeObservation]:
        rows = self._all("SELECT * FROM market_regime ORDER BY timestamp DESC, id DESC LIMIT ?", (n,))
        return [_observation(r) for r in rows]

    def between(self, start: int, end: int) -> List[RegimeObservation]:
        rows = self._all(
            "SELECT * FROM market_regime WHERE timestamp BETWEEN ? AND ? ORDER BY timestamp ASC, id ASC", (start, end)
        )
        return [_observation(r) for r in rows]

def _prediction(row) -> PendingPrediction:
    return PendingPrediction(
        id=row['id'],
        bucket_id=row['strategy_id'],
        entry_price=row['entry_price'],
        predicted_profit_pct=row['predicted_profit_pct'],
        predicted_hours=row['predicted_hours'],
        created_at=row['created_at'],
        evaluate_at=row['evaluate_at'],
        evaluated=bool(row['evaluated']),
        success=None if row['success'] is None else bool(row['success']),
        actual_max_price=row['actual_max_price'],
        actual_profit_pct=row['actual_profit_pct'],
        final_probability=row['final_probability'],
    )

class SqlitePredictionStore(_Store):
    def save(self, prediction: PendingPrediction) -> PendingPrediction:
        success = None if prediction.success is None else int(prediction.success)
        values = (
            prediction.bucket_id, prediction.entry_price, prediction.predicted_profit_pct,
            prediction.predicted_hours, prediction.created_at, prediction.evaluate_at,
            int(prediction.evaluated), success, prediction.actual_max_price, prediction.actual_profit_pct,
            prediction.final_probability,
        )
        if prediction.id is None:
            cursor = self._execute(
                """
                INSERT INTO pending_prediction
                    (strategy_id, entry_price, predicted_profit_pct, predicted_hours, created_at, evaluate_at,
                     evaluated, success, actual_max_price, actual_profit_pct, final_probability)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                values,
            )
            return replace(prediction, id=cursor.lastrowid)

        self._execute(
            """
            UPDATE pending_prediction SET
                strategy_id = ?, entry_price = ?, predicted_profit_pct = ?, predicted_hours = ?,
                created_at = ?, evaluate_at = ?, evaluated = ?, success = ?,
                actual_max_price = ?, actual_profit_pct = ?, final_probability = ?
            WHERE id = ?
            """,
            values + (prediction.id,),
        )
        return prediction

    def ready_for_evaluation(self, now: int) -> List[PendingPrediction]:
        rows = self._all(
            "SELECT * FROM pending_prediction WHERE evaluated = 0 AND evaluate_at <= ? ORDER BY evaluate_at ASC", (now,)
        )
        return [_prediction(r) for r in rows]

    def count_pending(self) -> int:
        return self._scalar("SELECT COUNT(*) FROM pending_prediction WHERE evaluated = 0")

    def get(self, prediction_id: int) -> Optional[PendingPrediction]:
        row = self._one("SELECT * FROM pending_prediction WHERE id = ?", (prediction_id,))
        return _prediction(row) if row else None
