import unittest
from unittest.mock import MagicMock
from core.engine import Engine
from data.memory_store import (
    MemoryCandleStore, MemoryIndicatorStore, MemoryPatternStore,
    MemoryStrategyStatsStore, MemoryRegimeStore, MemoryPredictionStore,
)
from models.types import (
    Candle, Snapshot, StrategyStats, StrategyAnalysisResult, AggregatedAnalysisResult, MarketRegime,
)
from config.settings import CANDLE_INTERVAL_MS

BASE_TS = 1699999200000
HOUR_MS = 60 * 60 * 1000
BUCKET = "RSI_MID_EMA_BULL_VOL_MED"

def ts(i):
    return BASE_TS + i * CANDLE_INTERVAL_MS

def flat_candles(n, spike_at=None):
    return [
        Candle(ts(i), 100.0, 105.0 if i == spike_at else 100.0, 100.0, 100.0, 1000.0)
        for i in range(n)
    ]

def aggregated_with(best):
    return AggregatedAnalysisResult(
        snapshot=Snapshot(timestamp=ts(300), price=100.0),
        strategy_results=[best],
        best=best,
    )

class TestEngine(unittest.TestCase):
    def setUp(self):
        self.candles = MemoryCandleStore()
        self.indicators = MemoryIndicatorStore()
        self.patterns = MemoryPatternStore()
        self.stats = MemoryStrategyStatsStore()
        self.regimes = MemoryRegimeStore()
        self.predictions = MemoryPredictionStore()
        self.feed = MagicMock()
        self.sink = MagicMock()
        self.engine = Engine(
            self.candles, self.indicators, self.patterns, self.stats, self.regimes, self.predictions,
            feed=self.feed, status_sink=self.sink,
        )

    def test_cycle_on_empty_store(self):
        status = self.engine.run_cycle(now=ts(0))

        self.feed.sync.assert_called_once_with(self.candles, ts(0))
        self.assertIs(status.regime.regime, MarketRegime.RANGE)
        self.assertIsNone(status.aggregated)
        self.assertFalse(status.last_build.success)
        self.assertEqual(len(self.regimes.recent_n(5)), 1)
        self.sink.cycle_started.assert_called_once_with("15m cycle")
        self.sink.cycle_finished.assert_called_once_with("15m cycle", "regime=RANGE signal=no")

    def test_cycle_builds_dataset(self):
        self.candles.upsert_candles(flat_candles(300, spike_at=208))
        status = self.engine.run_cycle(now=ts(300))

        self.assertTrue(status.last_build.success)
        self.assertGreater(self.indicators.count(), 0)
        self.assertGreater(self.patterns.count_evaluated(), 0)
        self.assertEqual(status.pattern_cache_size, len(self.engine.cache))
        self.assertIsNotNone(status.regime)
        self.assertIsNotNone(status.aggregated)
        self.assertEqual(status.aggregated.snapshot.timestamp, ts(299))
        # Too few samples for a signal
        self.assertEqual(self.predictions.count_pending(), 0)
        self.sink.cycle_finished.assert_called_once()
        self.sink.error.assert_not_called()

    def test_second_cycle_is_incremental(self):
        self.candles.upsert_candles(flat_candles(300, spike_at=208))
        self.engine.run_cycle(now=ts(300))
        before = self.patterns.count()

        self.candles.upsert_candles(flat_candles(304)[300:])
        self.engine.run_cycle(now=ts(304))
        self.assertGreaterEqual(self.patterns.count(), before)
        self.assertEqual(len(self.regimes.recent_n(5)), 2)

    def test_signal_stores_prediction(self):
        best = StrategyAnalysisResult(BUCKET, 80.0, 70.0, 0.8, 1.5, 2.5, 12)
        self.assertTrue(self.engine._maybe_signal(aggregated_with(best), ts(300)))

        prediction = self.predictions.get(1)
        self.assertEqual(prediction.bucket_id, BUCKET)
        self.assertEqual(prediction.predicted_hours, 3)
        self.assertEqual(prediction.final_probability, 70.0)
        self.assertEqual(prediction.evaluate_at, ts(300) + 3 * HOUR_MS)
        self.assertEqual(self.engine.signals, 1)

    def test_signal_needs_all_thresholds(self):
        too_few = StrategyAnalysisResult(BUCKET, 80.0, 70.0, 0.8, 1.5, 2.5, 9)
        too_weak = StrategyAnalysisResult(BUCKET, 80.0, 59.9, 0.8, 1.5, 2.5, 12)
        too_small = StrategyAnalysisResult(BUCKET, 80.0, 70.0, 0.8, 0.99, 2.5, 12)
        for best in (too_few, too_weak, too_small):
            self.assertFalse(self.engine._maybe_signal(aggregated_with(best), ts(300)))
        self.assertEqual(self.predictions.count_pending(), 0)

    def test_short_horizon_rounds_up_to_one_hour(self):
        best = StrategyAnalysisResult(BUCKET, 80.0, 70.0, 0.8, 1.5, 0.2, 12)
        self.engine._maybe_signal(aggregated_with(best), ts(300))
        self.assertEqual(self.predictions.get(1).predicted_hours, 1)

    def test_degradation_alert_is_reported_once(self):
        self.stats.save(StrategyStats(bucket_id=BUCKET, total_predictions=20, failures=19, successes=1,
                                      success_rate_pct=5.0, weight=0.05))
        self.engine._collect_alerts()
        self.engine._collect_alerts()

        self.assertEqual(len(self.engine.status.alerts), 1)
        self.assertIn(BUCKET, self.engine.status.alerts[0])
        self.assertTrue(self.stats.get(BUCKET).degradation_alerted)

    def test_failed_cycle_reports_error(self):
        self.feed.sync.side_effect = RuntimeError("feed down")
        status = self.engine.run_cycle(now=ts(0))

        self.assertIs(status, self.engine.status)
        self.sink.error.assert_called_once_with("Cycle failed: feed down")
        self.sink.cycle_finished.assert_not_called()

    def test_runs_without_feed_or_sink(self):
        engine = Engine(
            self.candles, self.indicators, self.patterns, self.stats, self.regimes, self.predictions,
        )
        self.candles.upsert_candles(flat_candles(120))
        status = engine.run_cycle(now=ts(120))
        self.assertIsNotNone(status.regime)

if __name__ == '__main__':
    unittest.main()
