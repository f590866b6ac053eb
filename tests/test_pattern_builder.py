import unittest
import threading
import time
from dataclasses import replace
from unittest.mock import MagicMock
from core.pattern_builder import (
    PatternBuilder, PatternCache, BuildStateToken, compute_outcome,
)
from core.indicator_history import IndicatorHistoryBuilder
from data.memory_store import MemoryCandleStore, MemoryIndicatorStore, MemoryPatternStore
from models.types import Candle, BuildState, HistoricalPattern, Snapshot
from utils.rwlock import ReadWriteLock
from config.settings import CANDLE_INTERVAL_MS

BASE_TS = 1699999200000
FLAT_BUCKET = "RSI_HIGH_EMA_BULL_VOL_MED"

def ts(i):
    return BASE_TS + i * CANDLE_INTERVAL_MS

def flat_candles(n, spike_at=None, spike_high=105.0, skip=()):
    candles = []
    for i in range(n):
        if i in skip:
            continue
        high = spike_high if i == spike_at else 100.0
        candles.append(Candle(ts(i), 100.0, high, 100.0, 100.0, 1000.0))
    return candles

class TestOutcome(unittest.TestCase):
    def test_max_profit_and_hours(self):
        future = [Candle(ts(101 + j), 100.0, 100.0, 100.0, 100.0, 1.0) for j in range(96)]
        future[7] = Candle(ts(108), 100.0, 105.0, 100.0, 100.0, 1.0)
        self.assertEqual(compute_outcome(100.0, future), (5.0, 2))

    def test_spike_on_first_future_candle(self):
        spike = Candle(ts(101), 100.0, 105.0, 100.0, 100.0, 1.0)
        flat = [Candle(ts(102 + j), 100.0, 100.0, 100.0, 100.0, 1.0) for j in range(95)]
        self.assertEqual(compute_outcome(100.0, [spike] + flat), (5.0, 0))

    def test_no_gain_is_zero_at_hour_zero(self):
        future = [Candle(ts(j), 100.0, 99.0, 98.0, 99.0, 1.0) for j in range(96)]
        self.assertEqual(compute_outcome(100.0, future), (0.0, 0))

    def test_first_high_wins_ties(self):
        future = [Candle(ts(j), 100.0, 100.0, 100.0, 100.0, 1.0) for j in range(96)]
        future[3] = Candle(ts(3), 100.0, 102.0, 100.0, 100.0, 1.0)
        future[50] = Candle(ts(50), 100.0, 102.0, 100.0, 100.0, 1.0)
        self.assertEqual(compute_outcome(100.0, future), (2.0, 1))

    def test_missing_future_tolerance(self):
        future = [Candle(ts(j), 100.0, 101.0, 100.0, 100.0, 1.0) for j in range(86)]
        self.assertIsNotNone(compute_outcome(100.0, future))
        self.assertIsNone(compute_outcome(100.0, future[:85]))

class TestBuildStateToken(unittest.TestCase):
    def test_compare_and_set(self):
        token = BuildStateToken()
        self.assertTrue(token.try_acquire())
        self.assertTrue(token.busy)
        self.assertFalse(token.try_acquire())
        self.assertFalse(token.compare_and_set(BuildState.IDLE, BuildState.BUILDING))
        token.release()
        self.assertIs(token.state, BuildState.IDLE)

    def test_only_one_thread_acquires(self):
        token = BuildStateToken()
        wins = []
        barrier = threading.Barrier(8)

        def contend():
            barrier.wait()
            if token.try_acquire():
                wins.append(1)

        threads = [threading.Thread(target=contend) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        self.assertEqual(len(wins), 1)

class TestReadWriteLock(unittest.TestCase):
    def setUp(self):
        self.lock = ReadWriteLock()

    def test_readers_share_the_lock(self):
        barrier = threading.Barrier(3, timeout=2)
        passed = []

        def read():
            with self.lock.read_locked():
                # Every reader must be inside at once for the barrier to open
                barrier.wait()
                passed.append(1)

        threads = [threading.Thread(target=read) for _ in range(3)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        self.assertEqual(len(passed), 3)

    def test_writer_waits_for_readers(self):
        acquired = threading.Event()

        def write():
            with self.lock.write_locked():
                acquired.set()

        with self.lock.read_locked():
            writer = threading.Thread(target=write)
            writer.start()
            self.assertFalse(acquired.wait(0.2))
        self.assertTrue(acquired.wait(2))
        writer.join()

    def test_waiting_writer_blocks_new_readers(self):
        order = []
        reader_in = threading.Event()

        def write():
            with self.lock.write_locked():
                order.append("writer")

        def read():
            with self.lock.read_locked():
                order.append("reader")
                reader_in.set()

        held = self.lock.read_locked()
        held.__enter__()
        writer = threading.Thread(target=write)
        writer.start()
        while self.lock._writers_waiting == 0:
            time.sleep(0.01)

        reader = threading.Thread(target=read)
        reader.start()
        self.assertFalse(reader_in.wait(0.2))

        held.__exit__(None, None, None)
        writer.join(2)
        reader.join(2)
        self.assertEqual(order, ["writer", "reader"])

def evaluated_pattern(i):
    return HistoricalPattern(
        candle_time=ts(i), strategy_bucket_id=FLAT_BUCKET, snapshot=Snapshot(timestamp=ts(i)),
        evaluated=True, max_profit_pct_24h=1.0, hours_to_max=1, evaluated_at=ts(i),
    )

class TestPatternCacheConcurrency(unittest.TestCase):
    def test_append_under_concurrent_reads(self):
        cache = PatternCache(days=30)
        expected = [evaluated_pattern(i) for i in range(400)]
        failures = []
        done = threading.Event()

        def append_all():
            for p in expected:
                cache.append(p)
            done.set()

        def read():
            last = 0
            while not done.is_set():
                seen = cache.patterns()
                # Always an in-order prefix that only grows
                if seen != expected[:len(seen)] or len(seen) < last:
                    failures.append(len(seen))
                last = len(seen)

        readers = [threading.Thread(target=read) for _ in range(4)]
        for t in readers:
            t.start()
        append_all()
        for t in readers:
            t.join()
        self.assertEqual(failures, [])
        self.assertEqual(cache.patterns(), expected)

    def test_reload_swaps_whole_list(self):
        cache = PatternCache(days=30)
        small, large = MemoryPatternStore(), MemoryPatternStore()
        for i in range(100):
            small.upsert(evaluated_pattern(i))
        for i in range(250):
            large.upsert(evaluated_pattern(i))
        snapshots = {0: [], 100: small.evaluated_since(0), 250: large.evaluated_since(0)}
        failures = []
        done = threading.Event()

        def reload_many():
            for n in range(40):
                cache.reload(small if n % 2 == 0 else large, ts(400))
            done.set()

        def read():
            while not done.is_set():
                seen = cache.patterns()
                if snapshots.get(len(seen)) != seen:
                    failures.append(len(seen))

        readers = [threading.Thread(target=read) for _ in range(4)]
        for t in readers:
            t.start()
        reload_many()
        for t in readers:
            t.join()
        self.assertEqual(failures, [])
        self.assertEqual(len(cache), 250)

class TestPatternBuilder(unittest.TestCase):
    def setUp(self):
        self.candles = MemoryCandleStore()
        self.indicators = MemoryIndicatorStore()
        self.patterns = MemoryPatternStore()
        self.cache = PatternCache(days=30)
        self.state = BuildStateToken()
        self.builder = PatternBuilder(self.candles, self.indicators, self.patterns, self.cache, self.state)

    def test_full_build_outcome(self):
        # Patterns at candles 200..203; the spike at 208 lies inside every horizon
        self.candles.upsert_candles(flat_candles(300, spike_at=208))
        now = ts(300)
        result = self.builder.full_build(now)

        self.assertTrue(result.success)
        self.assertEqual(result.built, 4)
        self.assertEqual(self.patterns.count(), 4)
        first = self.patterns.get(ts(200))
        self.assertEqual(first.strategy_bucket_id, FLAT_BUCKET)
        self.assertTrue(first.evaluated)
        self.assertEqual(first.max_profit_pct_24h, 5.0)
        self.assertEqual(first.hours_to_max, 2)
        self.assertEqual(first.evaluated_at, now)
        self.assertEqual(self.patterns.get(ts(203)).hours_to_max, 1)
        # Stored snapshots keep EMAs and RSI
        self.assertEqual(first.snapshot.rsi, 100.0)
        self.assertEqual(first.snapshot.ema200, 100.0)
        self.assertIsNone(first.snapshot.price)
        self.assertEqual(len(self.cache), 4)

    def test_rebuild_is_idempotent(self):
        self.candles.upsert_candles(flat_candles(300, spike_at=208))
        self.builder.full_build(ts(300))
        again = self.builder.incremental_build(ts(300))
        self.assertTrue(again.success)
        self.assertEqual(again.built, 0)
        self.assertEqual(self.patterns.count(), 4)

        # A second full build replaces rather than duplicates
        self.builder.full_build(ts(300))
        self.assertEqual(self.patterns.count(), 4)

    def test_incremental_picks_up_new_candles(self):
        self.candles.upsert_candles(flat_candles(298))
        self.assertEqual(self.builder.full_build(ts(298)).built, 2)
        self.candles.upsert_candles(flat_candles(300)[298:])
        result = self.builder.incremental_build(ts(300))
        self.assertEqual(result.built, 2)
        self.assertEqual(self.patterns.max_candle_time(), ts(203))

    def test_future_tolerance_in_build(self):
        # 10 missing future candles are tolerated
        self.candles.upsert_candles(flat_candles(297, skip=range(250, 260)))
        self.assertEqual(self.builder.full_build(ts(297)).built, 1)

    def test_too_many_missing_future_candles(self):
        self.candles.upsert_candles(flat_candles(297, skip=range(250, 261)))
        result = self.builder.full_build(ts(297))
        self.assertTrue(result.success)
        self.assertEqual(result.built, 0)
        self.assertEqual(result.skipped, 1)

    def test_no_candles(self):
        result = self.builder.full_build(ts(0))
        self.assertFalse(result.success)
        self.assertEqual(result.message, "No candles available")

    def test_not_enough_candles_keeps_existing(self):
        self.candles.upsert_candles(flat_candles(300, spike_at=208))
        self.builder.full_build(ts(300))
        short = PatternBuilder(MemoryCandleStore(), self.indicators, self.patterns, self.cache)
        short.candles.upsert_candles(flat_candles(50))
        result = short.full_build(ts(50))
        self.assertTrue(result.success)
        self.assertEqual(result.message, "Not enough candles")
        self.assertEqual(self.patterns.count(), 4)

    def test_busy_builder_refuses(self):
        self.candles.upsert_candles(flat_candles(300))
        self.assertTrue(self.state.try_acquire())
        try:
            for result in (
                self.builder.full_build(ts(300)),
                self.builder.incremental_build(ts(300)),
                self.builder.resume_from_indicators(ts(300)),
                self.builder.evaluate_pending(ts(300)),
            ):
                self.assertFalse(result.success)
                self.assertTrue(result.busy)
        finally:
            self.state.release()
        self.assertEqual(self.patterns.count(), 0)
        self.assertFalse(self.builder.busy)

    def test_flag_released_after_failure(self):
        candles = MagicMock()
        candles.min_open_time.side_effect = RuntimeError("db down")
        builder = PatternBuilder(candles, self.indicators, self.patterns, self.cache, self.state)
        result = builder.full_build(ts(0))
        self.assertFalse(result.success)
        self.assertEqual(result.message, "db down")
        self.assertFalse(self.state.busy)

    def test_step_errors_are_counted(self):
        self.candles.upsert_candles(flat_candles(298))
        patterns = MagicMock(wraps=self.patterns)
        patterns.upsert.side_effect = [RuntimeError("write failed"), None]
        builder = PatternBuilder(self.candles, self.indicators, patterns, self.cache, self.state)
        result = builder.full_build(ts(298))
        self.assertTrue(result.success)
        self.assertEqual(result.errors, 1)
        self.assertEqual(result.built, 1)

    def test_resume_then_evaluate(self):
        self.candles.upsert_candles(flat_candles(297, spike_at=208))
        IndicatorHistoryBuilder(self.candles, self.indicators).recalculate_all()

        resumed = self.builder.resume_from_indicators(ts(297))
        self.assertTrue(resumed.success)
        self.assertEqual(resumed.built, 97)
        self.assertEqual(self.patterns.count_evaluated(), 0)
        self.assertEqual(len(self.cache), 0)

        # Horizons of candles 200 and 201 have elapsed
        evaluated = self.builder.evaluate_pending(ts(297))
        self.assertEqual(evaluated.built, 2)
        self.assertEqual(self.patterns.get(ts(200)).max_profit_pct_24h, 5.0)
        self.assertEqual(len(self.cache), 2)

        # Nothing left to do on a second pass
        again = self.builder.evaluate_pending(ts(297))
        self.assertEqual(again.built, 0)
        self.assertEqual(self.patterns.count_evaluated(), 2)

    def test_evaluate_pattern_is_idempotent(self):
        self.candles.upsert_candles(flat_candles(297, spike_at=208))
        pattern = self.builder.build_structural(ts(200))
        self.patterns.upsert(pattern)

        self.assertTrue(self.builder.evaluate_pattern(pattern, ts(297)))
        stored = self.patterns.get(ts(200))
        self.assertFalse(self.builder.evaluate_pattern(pattern, ts(400)))
        self.assertEqual(self.patterns.get(ts(200)), stored)

    def test_update_with_newest_candle(self):
        self.candles.upsert_candles(flat_candles(297, spike_at=208))
        self.cache.reload(self.patterns, ts(297))
        result = self.builder.update_with_newest_candle(ts(297))
        self.assertEqual(result.built, 1)
        self.assertTrue(self.patterns.exists_at(ts(200)))
        self.assertEqual(len(self.cache), 1)

        again = self.builder.update_with_newest_candle(ts(297))
        self.assertEqual(again.built, 0)
        self.assertEqual(again.skipped, 1)

    def test_cache_window(self):
        self.candles.upsert_candles(flat_candles(300, spike_at=208))
        self.builder.full_build(ts(300))
        self.assertEqual(self.cache.reload(self.patterns, ts(300)), 4)
        # Evaluated 40 days ago falls outside a 30-day window
        late = ts(300) + 40 * 24 * 60 * 60 * 1000
        self.assertEqual(self.cache.reload(self.patterns, late), 0)
        self.assertTrue(self.cache.loaded)

    def test_stats(self):
        self.candles.upsert_candles(flat_candles(298))
        self.builder.full_build(ts(298))
        self.assertEqual(self.builder.stats(), {'total': 2, 'evaluated': 2, 'cached': 2, 'busy': False})

if __name__ == '__main__':
    unittest.main()
