import time
import threading
from dataclasses import replace
from typing import List, Optional, Tuple
from models.types import (
    Candle, Snapshot, HistoricalPattern, BuildState, BuildResult,
    CandleSource, IndicatorSource, PatternStore,
)
from core.indicators import build_snapshot
from core.strategy_registry import bucket_id_for
from config.settings import (
    CANDLE_INTERVAL_MS, PATTERN_LOOKBACK_CANDLES, FUTURE_CANDLES, MIN_FUTURE_CANDLES,
    PATTERN_CACHE_DAYS,
)
from utils.rounding import round_half_up, safe_div
from utils.rwlock import ReadWriteLock
from utils.logger import setup_logger

logger = setup_logger("PatternBuilder")

DAY_MS = 24 * 60 * 60 * 1000

def _now_ms() -> int:
    return int(time.time() * 1000)

class BuildStateToken:
    """IDLE/BUILDING flag with compare-and-swap. One per guarded resource."""

    def __init__(self):
        self._lock = threading.Lock()
        self._state = BuildState.IDLE

    @property
    def state(self) -> BuildState:
        return self._state

    def compare_and_set(self, expected: BuildState, new: BuildState) -> bool:
        with self._lock:
            if self._state is not expected:
                return False
            self._state = new
            return True

    def try_acquire(self) -> bool:
        return self.compare_and_set(BuildState.IDLE, BuildState.BUILDING)

    def release(self):
        with self._lock:
            self._state = BuildState.IDLE

    @property
    def busy(self) -> bool:
        return self._state is BuildState.BUILDING

class PatternCache:
    """Evaluated patterns of the last N days, many readers / one writer."""

    def __init__(self, days: int = PATTERN_CACHE_DAYS):
        self.days = days
        self._lock = ReadWriteLock()
        self._patterns: List[HistoricalPattern] = []
        self._loaded = False

    def patterns(self) -> List[HistoricalPattern]:
        with self._lock.read_locked():
            return list(self._patterns)

    def reload(self, store: PatternStore, now: Optional[int] = None) -> int:
        now = now if now is not None else _now_ms()
        fresh = store.evaluated_since(now - self.days * DAY_MS)
        with self._lock.write_locked():
            self._patterns = fresh
            self._loaded = True
        logger.info(f"Pattern cache reloaded: {len(fresh)} evaluated patterns (last {self.days} days)")
        return len(fresh)

    def append(self, pattern: HistoricalPattern):
        with self._lock.write_locked():
            self._patterns.append(pattern)

    @property
    def loaded(self) -> bool:
        return self._loaded

    def __len__(self):
        with self._lock.read_locked():
            return len(self._patterns)

# --- Outcome ---

def compute_outcome(entry_close: float, future: List[Candle]) -> Optional[Tuple[float, int]]:
    """
    (max_profit_pct_24h, hours_to_max) from the ascending future window, or
    None when fewer than MIN_FUTURE_CANDLES are present.
    """
    if len(future) < MIN_FUTURE_CANDLES:
        return None

    max_price = entry_close
    hours_to_max = 0
    for j, candle in enumerate(future):
        if candle.high > max_price:
            max_price = candle.high
            hours_to_max = (j + 1) // 4

    profit = round_half_up(safe_div(max_price - entry_close, entry_close) * 100, 4)
    return profit, hours_to_max

def pattern_snapshot(snapshot: Snapshot) -> Snapshot:
    """The subset of fields a stored pattern keeps."""
    return Snapshot(
        timestamp=snapshot.timestamp,
        ema50=snapshot.ema50,
        ema200=snapshot.ema200,
        rsi=snapshot.rsi,
        volume_change_pct=snapshot.volume_change_pct,
        price_change_1h=snapshot.price_change_1h,
        price_change_4h=snapshot.price_change_4h,
    )

class PatternBuilder:
    """
    Builds the historical pattern dataset one timestamp at a time.
    Every step loads only its own lookback and future windows.
    """

    def __init__(
        self,
        candles: CandleSource,
        indicators: IndicatorSource,
        patterns: PatternStore,
        cache: Optional[PatternCache] = None,
        state: Optional[BuildStateToken] = None,
        lookback: int = PATTERN_LOOKBACK_CANDLES,
    ):
        self.candles = candles
        self.indicators = indicators
        self.patterns = patterns
        self.cache = cache if cache is not None else PatternCache()
        self.state = state if state is not None else BuildStateToken()
        self.lookback = lookback

    @property
    def busy(self) -> bool:
        return self.state.busy

    # --- Steps ---

    def _window(self, t: int) -> Optional[List[Candle]]:
        window = self.candles.last_n_candles_before(t, self.lookback + 1)
        if len(window) < self.lookback + 1 or window[0].open_time != t:
            return None
        window.reverse()
        return window

    def _future(self, t: int) -> List[Candle]:
        return self.candles.candles_between(t + CANDLE_INTERVAL_MS, t + FUTURE_CANDLES * CANDLE_INTERVAL_MS)

    def build_structural(self, t: int) -> Optional[HistoricalPattern]:
        """Unevaluated pattern (bucket + features) at t, None if the window is incomplete."""
        window = self._window(t)
        if window is None:
            return None
        snapshot = build_snapshot(window)
        bucket_id = bucket_id_for(snapshot)
        if bucket_id is None:
            return None
        return HistoricalPattern(candle_time=t, strategy_bucket_id=bucket_id, snapshot=pattern_snapshot(snapshot))

    def build_with_outcome(self, t: int, now: int) -> Optional[HistoricalPattern]:
        window = self._window(t)
        if window is None:
            return None
        outcome = compute_outcome(window[-1].close, self._future(t))
        if outcome is None:
            return None
        snapshot = build_snapshot(window)
        bucket_id = bucket_id_for(snapshot)
        if bucket_id is None:
            return None
        profit, hours = outcome
        return HistoricalPattern(
            candle_time=t,
            strategy_bucket_id=bucket_id,
            snapshot=pattern_snapshot(snapshot),
            evaluated=True,
            max_profit_pct_24h=profit,
            hours_to_max=hours,
            evaluated_at=now,
        )

    # --- Loops ---

    def _busy_result(self, name: str) -> BuildResult:
        logger.warning(f"{name} skipped: pattern build already in progress")
        return BuildResult(success=False, busy=True, message="Build already in progress")

    def _run_range(self, start: int, end: int, build_step, counts: dict, label: str):
        t = start
        while t <= end:
            try:
                if self.patterns.exists_at(t):
                    counts['skipped'] += 1
                else:
                    pattern = build_step(t)
                    if pattern is None:
                        counts['skipped'] += 1
                    else:
                        self.patterns.upsert(pattern)
                        counts['built'] += 1
            except Exception as e:
                counts['errors'] += 1
                logger.error(f"{label}: failed to build pattern at {t}: {e}")
            t += CANDLE_INTERVAL_MS

    def _time_bounds(self) -> Optional[Tuple[int, int]]:
        min_time = self.candles.min_open_time()
        max_time = self.candles.max_open_time()
        if min_time is None or max_time is None:
            return None
        return min_time, max_time

    def _finish(self, label: str, started: float, counts: dict, now: int, message: str = "Success") -> BuildResult:
        self.cache.reload(self.patterns, now)
        elapsed = int((time.monotonic() - started) * 1000)
        result = BuildResult(
            success=True,
            built=counts['built'],
            skipped=counts['skipped'],
            errors=counts['errors'],
            elapsed_ms=elapsed,
            message=message,
        )
        logger.info(f"{label}: completed {result}")
        return result

    def full_build(self, now: Optional[int] = None) -> BuildResult:
        if not self.state.try_acquire():
            return self._busy_result("Full build")
        started = time.monotonic()
        now = now if now is not None else _now_ms()
        try:
            try:
                bounds = self._time_bounds()
                if bounds is None:
                    logger.error("Full build aborted: cannot determine candle time bounds")
                    return BuildResult(success=False, message="No candles available")
                min_time, max_time = bounds
                start = min_time + self.lookback * CANDLE_INTERVAL_MS
                end = max_time - FUTURE_CANDLES * CANDLE_INTERVAL_MS
                if end < start:
                    logger.warning(f"Full build: not enough candles ({self.candles.count()})")
                    return BuildResult(success=True, message="Not enough candles")
                logger.info(f"Full build: deleting existing patterns, range {start} -> {end}")
                self.patterns.delete_all()
            except Exception as e:
                logger.error(f"Full build aborted before start: {e}")
                return BuildResult(success=False, message=str(e))

            counts = {'built': 0, 'skipped': 0, 'errors': 0}
            self._run_range(start, end, lambda t: self.build_with_outcome(t, now), counts, "Full build")
            return self._finish("Full build", started, counts, now)
        finally:
            self.state.release()

    def incremental_build(self, now: Optional[int] = None) -> BuildResult:
        if not self.state.try_acquire():
            return self._busy_result("Incremental build")
        started = time.monotonic()
        now = now if now is not None else _now_ms()
        try:
            try:
                bounds = self._time_bounds()
                if bounds is None:
                    logger.error("Incremental build aborted: cannot determine candle time bounds")
                    return BuildResult(success=False, message="No candles available")
                min_time, max_time = bounds
                start = min_time + self.lookback * CANDLE_INTERVAL_MS
                last_pattern = self.patterns.max_candle_time()
                if last_pattern is not None:
                    start = max(last_pattern + CANDLE_INTERVAL_MS, start)
                end = max_time - FUTURE_CANDLES * CANDLE_INTERVAL_MS
            except Exception as e:
                logger.error(f"Incremental build aborted before start: {e}")
                return BuildResult(success=False, message=str(e))

            counts = {'built': 0, 'skipped': 0, 'errors': 0}
            if end < start:
                logger.info("Incremental build: patterns are up to date")
                return self._finish("Incremental build", started, counts, now, "Already up to date")

            self._run_range(start, end, lambda t: self.build_with_outcome(t, now), counts, "Incremental build")
            return self._finish("Incremental build", started, counts, now)
        finally:
            self.state.release()

    def resume_from_indicators(self, now: Optional[int] = None) -> BuildResult:
        """
        Structural rows up to the latest indicator timestamp. Outcomes are
        filled in later by the evaluation pass.
        """
        if not self.state.try_acquire():
            return self._busy_result("Resume")
        started = time.monotonic()
        now = now if now is not None else _now_ms()
        try:
            try:
                latest_indicator = self.indicators.max_time()
                min_time = self.candles.min_open_time()
                if latest_indicator is None or min_time is None:
                    logger.error("Resume aborted: no indicators or candles")
                    return BuildResult(success=False, message="No indicators available")
                start = min_time + self.lookback * CANDLE_INTERVAL_MS
                last_pattern = self.patterns.max_candle_time()
                if last_pattern is not None:
                    start = max(last_pattern + CANDLE_INTERVAL_MS, start)
            except Exception as e:
                logger.error(f"Resume aborted before start: {e}")
                return BuildResult(success=False, message=str(e))

            counts = {'built': 0, 'skipped': 0, 'errors': 0}
            if start > latest_indicator:
                logger.info("Resume: patterns are up to date (no gap to fill)")
                return self._finish("Resume", started, counts, now, "Already up to date")

            logger.info(f"Resume: building structural patterns {start} -> {latest_indicator}")
            self._run_range(start, latest_indicator, self._structural_step, counts, "Resume")
            return self._finish("Resume", started, counts, now)
        finally:
            self.state.release()

    def _structural_step(self, t: int) -> Optional[HistoricalPattern]:
        if self.indicators.at(t) is None:
            return None
        return self.build_structural(t)

    def update_with_newest_candle(self, now: Optional[int] = None) -> BuildResult:
        """Builds the one pattern whose 24h horizon has just completed and appends it to the cache."""
        if not self.state.try_acquire():
            return self._busy_result("Newest-candle update")
        started = time.monotonic()
        now = now if now is not None else _now_ms()
        try:
            max_time = self.candles.max_open_time()
            if max_time is None:
                return BuildResult(success=False, message="No candles available")
            t = max_time - FUTURE_CANDLES * CANDLE_INTERVAL_MS

            built = skipped = errors = 0
            try:
                if self.patterns.exists_at(t):
                    skipped = 1
                else:
                    pattern = self.build_with_outcome(t, now)
                    if pattern is None:
                        skipped = 1
                    else:
                        self.patterns.upsert(pattern)
                        self.cache.append(pattern)
                        built = 1
            except Exception as e:
                errors = 1
                logger.error(f"Newest-candle update failed at {t}: {e}")

            elapsed = int((time.monotonic() - started) * 1000)
            return BuildResult(success=errors == 0, built=built, skipped=skipped, errors=errors, elapsed_ms=elapsed)
        finally:
            self.state.release()

    # --- Evaluation ---

    def evaluate_pattern(self, pattern: HistoricalPattern, now: Optional[int] = None) -> bool:
        """Fills in the outcome of one stored pattern. False if already evaluated or data is missing."""
        now = now if now is not None else _now_ms()
        current = self.patterns.get(pattern.candle_time)
        if current is None or current.evaluated:
            return False

        entry = self.candles.candle_at(current.candle_time)
        if entry is None:
            return False
        outcome = compute_outcome(entry.close, self._future(current.candle_time))
        if outcome is None:
            return False

        profit, hours = outcome
        self.patterns.upsert(replace(
            current,
            evaluated=True,
            max_profit_pct_24h=profit,
            hours_to_max=hours,
            evaluated_at=now,
        ))
        return True

    def evaluate_pending(self, now: Optional[int] = None) -> BuildResult:
        """Evaluation pass over unevaluated patterns whose 24h horizon has elapsed."""
        if not self.state.try_acquire():
            return self._busy_result("Evaluation pass")
        started = time.monotonic()
        now = now if now is not None else _now_ms()
        try:
            try:
                cutoff = now - FUTURE_CANDLES * CANDLE_INTERVAL_MS
                pending = self.patterns.unevaluated_before(cutoff)
            except Exception as e:
                logger.error(f"Evaluation pass aborted: {e}")
                return BuildResult(success=False, message=str(e))

            if not pending:
                logger.info("No patterns to evaluate")
                return BuildResult(success=True, message="Nothing to evaluate")

            logger.info(f"Evaluating {len(pending)} patterns")
            evaluated = skipped = errors = 0
            for pattern in pending:
                try:
                    if self.evaluate_pattern(pattern, now):
                        evaluated += 1
                    else:
                        skipped += 1
                except Exception as e:
                    errors += 1
                    logger.error(f"Failed to evaluate pattern {pattern.candle_time}: {e}")

            if evaluated:
                self.cache.reload(self.patterns, now)

            elapsed = int((time.monotonic() - started) * 1000)
            result = BuildResult(success=True, built=evaluated, skipped=skipped, errors=errors, elapsed_ms=elapsed)
            logger.info(f"Evaluation pass: completed {result}")
            return result
        finally:
            self.state.release()

    def stats(self) -> dict:
        return {
            'total': self.patterns.count(),
            'evaluated': self.patterns.count_evaluated(),
            'cached': len(self.cache),
            'busy': self.busy,
        }
