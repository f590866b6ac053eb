import time
from typing import Optional
from models.types import (
    EngineStatus, StatusSink, CandleSource, IndicatorSource, PatternStore,
    StrategyStatsStore, RegimeStore, PredictionStore, AggregatedAnalysisResult,
)
from core.indicators import build_snapshot
from core.indicator_history import IndicatorHistoryBuilder
from core.pattern_builder import PatternBuilder, PatternCache, BuildStateToken
from core.regime import RegimeDetector
from core.strategy_registry import StrategyRegistry
from core.strategy_ledger import StrategyLedger
from core.evaluator import StrategyEvaluator
from core.probability import ProbabilityEngine
from core.prediction_tracker import PredictionTracker
from config.settings import (
    INDICATOR_LOOKBACK_CANDLES, MIN_SIGNAL_PROBABILITY, MIN_SIGNAL_PROFIT_PCT, MIN_SIGNAL_SAMPLES,
)
from utils.rounding import round_half_up
from utils.logger import setup_logger, cycle_context

logger = setup_logger("Engine")

MAX_ALERTS = 50

def _now_ms() -> int:
    return int(time.time() * 1000)

class Engine:
    """
    Wires the stores to the analytics components and runs one 15m cycle:
    sync -> indicator rows -> patterns -> evaluation pass -> regime ->
    multi-strategy analysis -> prediction tracking -> ledger notices.
    """

    def __init__(
        self,
        candles: CandleSource,
        indicators: IndicatorSource,
        patterns: PatternStore,
        stats: StrategyStatsStore,
        regimes: RegimeStore,
        predictions: PredictionStore,
        feed=None,
        status_sink: Optional[StatusSink] = None,
    ):
        self.candles = candles
        self.indicators = indicators
        self.feed = feed
        self.status_sink = status_sink

        self.registry = StrategyRegistry()
        self.ledger = StrategyLedger(stats)
        self.cache = PatternCache()
        self.indicator_history = IndicatorHistoryBuilder(candles, indicators, BuildStateToken())
        self.builder = PatternBuilder(candles, indicators, patterns, self.cache, BuildStateToken())
        self.regime = RegimeDetector(candles, indicators, regimes)
        self.evaluator = StrategyEvaluator(self.ledger, self.registry, indicators)
        self.probability = ProbabilityEngine(self.cache, self.evaluator, self.ledger)
        self.tracker = PredictionTracker(predictions, candles, self.ledger)

        self.status = EngineStatus()
        self.signals = 0

    def _prepare_data(self, now: int):
        if self.feed is not None:
            self.feed.sync(self.candles, now)

        if self.indicators.count() == 0:
            self.indicator_history.recalculate_all()
        else:
            self.indicator_history.calculate_new()

        if self.builder.patterns.count() == 0:
            self.status.last_build = self.builder.full_build(now)
        else:
            self.status.last_build = self.builder.incremental_build(now)
        self.builder.resume_from_indicators(now)
        self.builder.evaluate_pending(now)

        if not self.cache.loaded:
            self.cache.reload(self.builder.patterns, now)

    def _maybe_signal(self, aggregated: AggregatedAnalysisResult, now: int) -> bool:
        best = aggregated.best
        if best is None or not best.meets_conditions(MIN_SIGNAL_PROBABILITY, MIN_SIGNAL_PROFIT_PCT, MIN_SIGNAL_SAMPLES):
            return False

        hours = max(1, int(round_half_up(best.avg_hours_to_max, 0)))
        self.tracker.store_prediction(
            best.bucket_id,
            aggregated.snapshot.price,
            best.avg_profit_pct,
            hours,
            now,
            final_probability=best.final_probability,
        )
        self.signals += 1
        logger.info(
            f"SIGNAL: {best.bucket_id} prob={best.final_probability}% profit={best.avg_profit_pct}% "
            f"samples={best.matched_patterns} hours={hours}"
        )
        return True

    def _collect_alerts(self):
        for stats in self.ledger.pending_alerts():
            message = (
                f"Strategy {stats.bucket_id} degraded: success rate {stats.success_rate_pct}% "
                f"over {stats.total_predictions} predictions"
            )
            logger.warning(message)
            self.status.alerts.append(message)
            self.ledger.acknowledge_degradation(stats.bucket_id)
        del self.status.alerts[:-MAX_ALERTS]

    def run_cycle(self, now: Optional[int] = None) -> EngineStatus:
        now = now if now is not None else _now_ms()
        with cycle_context(f"cycle@{now}"):
            return self._run_cycle(now)

    def _run_cycle(self, now: int) -> EngineStatus:
        if self.status_sink:
            self.status_sink.cycle_started("15m cycle")

        try:
            self._prepare_data(now)

            detection = self.regime.detect_and_persist(now)
            self.status.regime = detection.observation
            if detection.regime_changed:
                self.status.alerts.append(detection.change_message())

            latest = self.candles.max_open_time()
            window = self.candles.last_n_candles_before(latest, INDICATOR_LOOKBACK_CANDLES) if latest is not None else []
            snapshot = build_snapshot(list(reversed(window)))

            aggregated = self.probability.analyze_all(snapshot, detection.observation)
            self.status.aggregated = aggregated
            self.status.best = aggregated.best if aggregated else None
            fired = self._maybe_signal(aggregated, now) if aggregated else False

            self.tracker.evaluate_pending(now)
            self._collect_alerts()
            self.status.pattern_cache_size = len(self.cache)
        except Exception as e:
            logger.exception(f"Cycle failed: {e}")
            if self.status_sink:
                self.status_sink.error(f"Cycle failed: {e}")
            return self.status

        if self.status_sink:
            summary = f"regime={self.status.regime.regime.value} signal={'yes' if fired else 'no'}"
            self.status_sink.cycle_finished("15m cycle", summary)
        return self.status
