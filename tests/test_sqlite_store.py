import os
import tempfile
import unittest
from dataclasses import replace
from data.sqlite_store import (
    SqliteDatabase, SqliteCandleStore, SqliteIndicatorStore, SqlitePatternStore,
    SqliteStrategyStatsStore, SqliteRegimeStore, SqlitePredictionStore,
)
from models.types import (
    Candle, IndicatorRow, Snapshot, HistoricalPattern, StrategyStats,
    RegimeObservation, MarketRegime, PendingPrediction,
)
from config.settings import CANDLE_INTERVAL_MS

BASE_TS = 1699999200000

def ts(i):
    return BASE_TS + i * CANDLE_INTERVAL_MS

def candle(i, high=101.0):
    return Candle(ts(i), 100.0, high, 99.0, 100.5, 10.0 + i)

def stored_pattern(i, bucket="RSI_MID_EMA_BULL_VOL_MED", evaluated=False):
    snap = Snapshot(timestamp=ts(i), rsi=50.0, ema50=101.0, ema200=100.0,
                    volume_change_pct=5.0, price_change_1h=0.4, price_change_4h=-1.2)
    if evaluated:
        return HistoricalPattern(ts(i), bucket, snap, True, 2.5, 3, ts(i + 96))
    return HistoricalPattern(ts(i), bucket, snap)

class SqliteTestCase(unittest.TestCase):
    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.db = SqliteDatabase(os.path.join(self.tmp.name, "nested", "engine.db"))

    def tearDown(self):
        self.tmp.cleanup()

class TestSqliteDatabase(SqliteTestCase):
    def test_creates_parent_directory(self):
        self.assertTrue(os.path.exists(self.db.db_path))

    def test_schema_is_reentrant(self):
        SqliteCandleStore(self.db).upsert_candles([candle(0)])
        reopened = SqliteDatabase(self.db.db_path)
        self.assertEqual(SqliteCandleStore(reopened).count(), 1)

class TestSqliteCandleStore(SqliteTestCase):
    def setUp(self):
        super().setUp()
        self.store = SqliteCandleStore(self.db)

    def test_empty(self):
        self.assertEqual(self.store.count(), 0)
        self.assertIsNone(self.store.min_open_time())
        self.assertIsNone(self.store.max_open_time())
        self.assertIsNone(self.store.max_high_between(ts(0), ts(10)))

    def test_upsert_counts_only_new_rows(self):
        self.assertEqual(self.store.upsert_candles([candle(i) for i in range(5)]), 5)
        self.assertEqual(self.store.upsert_candles([candle(i) for i in range(3, 8)]), 3)
        self.assertEqual(self.store.count(), 8)
        self.assertEqual(self.store.min_open_time(), ts(0))
        self.assertEqual(self.store.max_open_time(), ts(7))

    def test_replace_keeps_latest_values(self):
        self.store.upsert_candles([candle(0)])
        self.store.upsert_candles([candle(0, high=150.0)])
        self.assertEqual(self.store.candle_at(ts(0)).high, 150.0)
        self.assertIsNone(self.store.candle_at(ts(1)))

    def test_ranges(self):
        self.store.upsert_candles([candle(i, high=101.0 + i) for i in range(10)])
        between = self.store.candles_between(ts(2), ts(4))
        self.assertEqual([c.open_time for c in between], [ts(2), ts(3), ts(4)])

        last = self.store.last_n_candles_before(ts(5), 3)
        self.assertEqual([c.open_time for c in last], [ts(5), ts(4), ts(3)])
        self.assertEqual(self.store.max_high_between(ts(1), ts(3)), 104.0)

class TestSqliteIndicatorStore(SqliteTestCase):
    def setUp(self):
        super().setUp()
        self.store = SqliteIndicatorStore(self.db)

    def test_save_and_read(self):
        row = IndicatorRow(open_time=ts(0), ema50=101.0, ema200=100.0, rsi14=55.0, atr14=1.2,
                           bb_upper=103.0, bb_middle=100.0, bb_lower=97.0, avg_volume20=900.0)
        self.store.save(row)
        self.store.save(IndicatorRow(open_time=ts(1), rsi14=60.0))
        self.assertEqual(self.store.at(ts(0)), row)
        self.assertIsNone(self.store.at(ts(1)).ema50)
        self.assertEqual(self.store.max_time(), ts(1))
        self.assertEqual([r.open_time for r in self.store.recent_n(5)], [ts(1), ts(0)])
        self.assertEqual([r.open_time for r in self.store.between(ts(0), ts(1))], [ts(0), ts(1)])

    def test_delete_all(self):
        self.store.save(IndicatorRow(open_time=ts(0)))
        self.store.delete_all()
        self.assertEqual(self.store.count(), 0)
        self.assertIsNone(self.store.max_time())

class TestSqlitePatternStore(SqliteTestCase):
    def setUp(self):
        super().setUp()
        self.store = SqlitePatternStore(self.db)

    def test_round_trip(self):
        pattern = stored_pattern(1, evaluated=True)
        self.store.upsert(pattern)
        self.assertEqual(self.store.get(ts(1)), pattern)
        self.assertTrue(self.store.exists_at(ts(1)))
        self.assertFalse(self.store.exists_at(ts(2)))
        self.assertIsNone(self.store.get(ts(2)))

    def test_evaluation_queries(self):
        self.store.upsert(stored_pattern(0))
        self.store.upsert(stored_pattern(1))
        self.store.upsert(stored_pattern(2, evaluated=True))
        self.store.upsert(stored_pattern(3, bucket="RSI_LOW_EMA_BEAR_VOL_LOW", evaluated=True))

        self.assertEqual([p.candle_time for p in self.store.unevaluated_before(ts(1))], [ts(0), ts(1)])
        self.assertEqual([p.candle_time for p in self.store.evaluated_since(ts(3))], [ts(3)])
        self.assertEqual(len(self.store.by_strategy_bucket("RSI_MID_EMA_BULL_VOL_MED")), 3)
        self.assertEqual(self.store.count(), 4)
        self.assertEqual(self.store.count_evaluated(), 2)
        self.assertEqual(self.store.max_candle_time(), ts(3))
        self.assertEqual(self.store.max_evaluated_candle_time(), ts(3))

    def test_upsert_replaces_structural_row(self):
        self.store.upsert(stored_pattern(0))
        self.store.upsert(stored_pattern(0, evaluated=True))
        self.assertEqual(self.store.count(), 1)
        self.assertTrue(self.store.get(ts(0)).evaluated)

        self.store.delete_all()
        self.assertEqual(self.store.count(), 0)

class TestSqliteStrategyStatsStore(SqliteTestCase):
    def setUp(self):
        super().setUp()
        self.store = SqliteStrategyStatsStore(self.db)

    def test_get_or_create_persists_default(self):
        self.assertIsNone(self.store.get("A"))
        created = self.store.get_or_create("A")
        self.assertEqual(created.weight, 0.5)
        self.assertEqual(self.store.get("A"), created)

    def test_round_trip_all_fields(self):
        stats = StrategyStats(
            bucket_id="A", total_predictions=4, successes=3, failures=1, score=2,
            success_rate_pct=75.0, weight=0.8, degradation_alerted=True, last_updated=BASE_TS,
            confidence_positive=2, confidence_negative=1, confidence_neutral=1, confidence_score=1,
            rate2=66.67, total_pnl_usd=0.35, profit_trades_count=2, sum_profit_pct=3.5,
        )
        self.store.save(stats)
        self.assertEqual(self.store.get("A"), stats)

    def test_ordering(self):
        self.store.save(StrategyStats(bucket_id="B", success_rate_pct=60.0))
        self.store.save(StrategyStats(bucket_id="A", success_rate_pct=60.0))
        self.store.save(StrategyStats(bucket_id="C", success_rate_pct=90.0))
        ordered = [s.bucket_id for s in self.store.all_ordered_by_success_rate()]
        self.assertEqual(ordered, ["C", "A", "B"])

class TestSqliteRegimeStore(SqliteTestCase):
    def setUp(self):
        super().setUp()
        self.store = SqliteRegimeStore(self.db)

    def test_append_and_query(self):
        self.assertIsNone(self.store.most_recent())
        self.store.append(RegimeObservation(ts(0), MarketRegime.RANGE, 0.5, 0, 1))
        self.store.append(RegimeObservation(ts(1), MarketRegime.TREND, 0.75, 3, 4))
        self.store.append(RegimeObservation(ts(1), MarketRegime.HIGH_VOLATILITY, 1.0, 4, 4))

        self.assertIs(self.store.most_recent().regime, MarketRegime.HIGH_VOLATILITY)
        self.assertEqual(len(self.store.recent_n(2)), 2)
        between = self.store.between(ts(0), ts(1))
        self.assertEqual([o.regime for o in between],
                         [MarketRegime.RANGE, MarketRegime.TREND, MarketRegime.HIGH_VOLATILITY])

class TestSqlitePredictionStore(SqliteTestCase):
    def setUp(self):
        super().setUp()
        self.store = SqlitePredictionStore(self.db)

    def test_insert_assigns_id(self):
        p = self.store.save(PendingPrediction("A", 100.0, 4.0, 2, BASE_TS, BASE_TS + 7_200_000,
                                              final_probability=72.5))
        self.assertIsNotNone(p.id)
        self.assertEqual(self.store.get(p.id), p)
        self.assertEqual(self.store.count_pending(), 1)

    def test_update_and_ready(self):
        early = self.store.save(PendingPrediction("A", 100.0, 4.0, 1, BASE_TS, BASE_TS + 3_600_000))
        self.store.save(PendingPrediction("B", 100.0, 4.0, 3, BASE_TS, BASE_TS + 10_800_000))

        ready = self.store.ready_for_evaluation(BASE_TS + 3_600_000)
        self.assertEqual([p.id for p in ready], [early.id])

        done = replace(early, evaluated=True, success=False, actual_max_price=100.5, actual_profit_pct=0.5)
        self.store.save(done)
        self.assertEqual(self.store.get(early.id), done)
        self.assertEqual(self.store.count_pending(), 1)
        self.assertEqual(self.store.ready_for_evaluation(BASE_TS + 3_600_000), [])

if __name__ == '__main__':
    unittest.main()
