from collections import defaultdict
from typing import List, Optional, Dict, Tuple
from models.types import (
    Snapshot, HistoricalPattern, RegimeObservation, ProbabilityResult,
    StrategyAnalysisResult, AggregatedAnalysisResult,
)
from core.strategy_registry import bucket_id_for
from core.strategy_ledger import StrategyLedger, apply_pnl_coefficient
from core.evaluator import StrategyEvaluator
from core.regime import detect_from_snapshot
from config.settings import RSI_TOLERANCE
from utils.rounding import round_half_up
from utils.logger import setup_logger

logger = setup_logger("ProbabilityEngine")

# --- Matching predicates (missing field -> no match) ---

def rsi_matches(live: Snapshot, historical: Snapshot) -> bool:
    if live.rsi is None or historical.rsi is None:
        return False
    return abs(live.rsi - historical.rsi) <= RSI_TOLERANCE

def pattern_matches(live: Snapshot, historical: Snapshot) -> bool:
    if not rsi_matches(live, historical):
        return False
    live_bull, hist_bull = live.ema_bullish, historical.ema_bullish
    if live_bull is None or hist_bull is None or live_bull != hist_bull:
        return False
    live_vol, hist_vol = live.volume_bucket, historical.volume_bucket
    if live_vol is None or hist_vol is None:
        return False
    return live_vol == hist_vol

def pattern_stats(matched: List[HistoricalPattern]) -> Tuple[float, float, float]:
    """(probability_up_pct, avg_profit_pct, avg_hours_to_max), zeros for no matches."""
    if not matched:
        return 0.0, 0.0, 0.0
    n = len(matched)
    profitable = sum(1 for p in matched if p.is_profitable)
    profit = sum(p.max_profit_pct_24h or 0.0 for p in matched)
    hours = sum(p.hours_to_max or 0 for p in matched)
    return (
        round_half_up(profitable / n * 100, 2),
        round_half_up(profit / n, 2),
        round_half_up(hours / n, 2),
    )

def aggregate(snapshot: Snapshot, results: List[StrategyAnalysisResult]) -> AggregatedAnalysisResult:
    with_data = [r for r in results if r.has_data]
    if not with_data:
        return AggregatedAnalysisResult(snapshot=snapshot, strategy_results=results)

    count = len(with_data)
    total_patterns = sum(r.matched_patterns for r in with_data)
    weighted = sum(r.final_probability * r.matched_patterns for r in with_data)

    return AggregatedAnalysisResult(
        snapshot=snapshot,
        strategy_results=results,
        avg_probability=round_half_up(sum(r.final_probability for r in with_data) / count, 2),
        pattern_weighted_avg_probability=round_half_up(weighted / total_patterns, 2),
        avg_profit_pct=round_half_up(sum(r.avg_profit_pct for r in with_data) / count, 2),
        total_matched_patterns=total_patterns,
        strategies_with_data=count,
        best=max(with_data, key=lambda r: r.final_probability),
    )

class ProbabilityEngine:
    def __init__(self, cache, evaluator: StrategyEvaluator, ledger: StrategyLedger):
        self.cache = cache
        self.evaluator = evaluator
        self.ledger = ledger

    def analyze(self, snapshot: Optional[Snapshot], regime: Optional[RegimeObservation] = None) -> Optional[ProbabilityResult]:
        """Single-strategy query against the live snapshot's own bucket."""
        if snapshot is None:
            logger.warning("Cannot analyze null snapshot")
            return None

        patterns = self.cache.patterns()
        if not patterns:
            logger.warning("No patterns available for analysis")
            return None

        matched = [p for p in patterns if pattern_matches(snapshot, p.snapshot)]
        bucket_id = bucket_id_for(snapshot)
        weight = self.ledger.weight_of(bucket_id)

        if not matched:
            logger.info(f"No matching patterns found for current snapshot (strategy: {bucket_id})")
            return ProbabilityResult(
                bucket_id=bucket_id,
                probability_up_pct=0.0,
                avg_profit_pct=0.0,
                avg_hours_to_max=0.0,
                matched_samples=0,
                snapshot=snapshot,
                strategy_weight=weight,
                weighted_probability=0.0,
            )

        probability, avg_profit, avg_hours = pattern_stats(matched)
        evaluation = None
        final = 0.0
        if bucket_id is not None:
            evaluation = self.evaluator.evaluate(probability, snapshot, bucket_id, regime)
            final = evaluation.final_probability

        logger.info(
            f"Analysis complete: strategy={bucket_id}, {len(matched)} matched, {probability}% prob "
            f"(final: {final}%), {avg_profit}% profit, weight={weight}"
        )

        return ProbabilityResult(
            bucket_id=bucket_id,
            probability_up_pct=probability,
            avg_profit_pct=avg_profit,
            avg_hours_to_max=avg_hours,
            matched_samples=len(matched),
            snapshot=snapshot,
            strategy_weight=weight,
            weighted_probability=final,
            evaluation=evaluation,
        )

    def analyze_all(self, snapshot: Optional[Snapshot], regime: Optional[RegimeObservation] = None) -> Optional[AggregatedAnalysisResult]:
        """
        Group cached patterns by their stored bucket and evaluate every group
        against the live RSI. One result per bucket present in the cache.
        """
        if snapshot is None:
            logger.warning("Cannot analyze null snapshot")
            return None

        patterns = self.cache.patterns()
        if not patterns:
            logger.warning("No patterns available for analysis")
            return None

        groups: Dict[str, List[HistoricalPattern]] = defaultdict(list)
        for p in patterns:
            groups[p.strategy_bucket_id].append(p)

        observation = regime or detect_from_snapshot(snapshot)
        recent_rows = self.evaluator.recent_rows() if self.evaluator.history_enabled else []

        results = []
        for bucket_id, group in groups.items():
            matched = [p for p in group if rsi_matches(snapshot, p.snapshot)]
            results.append(self._analyze_bucket(bucket_id, matched, snapshot, observation, recent_rows))

        aggregated = aggregate(snapshot, results)
        best = aggregated.best.bucket_id if aggregated.best else "none"
        logger.info(
            f"Multi-strategy analysis: {len(results)} strategies, {aggregated.strategies_with_data} with data, "
            f"avg prob={aggregated.avg_probability}%, best={best}"
        )
        return aggregated

    def _analyze_bucket(self, bucket_id, matched, snapshot, observation, recent_rows) -> StrategyAnalysisResult:
        weight = self.ledger.weight_of(bucket_id)
        if not matched:
            return StrategyAnalysisResult(
                bucket_id=bucket_id,
                base_probability=0.0,
                final_probability=0.0,
                strategy_weight=weight,
                avg_profit_pct=0.0,
                avg_hours_to_max=0.0,
                matched_patterns=0,
            )

        probability, avg_profit, avg_hours = pattern_stats(matched)
        evaluation = self.evaluator.evaluate(probability, snapshot, bucket_id, observation, recent_rows)
        coefficient = self.ledger.pnl_coefficient(bucket_id)
        boosted = apply_pnl_coefficient(evaluation.final_probability, coefficient)
        if coefficient > 1.0:
            logger.debug(
                f"PnL boost applied: strategy={bucket_id}, coeff={coefficient}, "
                f"base={evaluation.final_probability}%, boosted={boosted}%"
            )

        return StrategyAnalysisResult(
            bucket_id=bucket_id,
            base_probability=probability,
            final_probability=evaluation.final_probability,
            strategy_weight=evaluation.strategy_weight,
            avg_profit_pct=avg_profit,
            avg_hours_to_max=avg_hours,
            matched_patterns=len(matched),
            historical_factor=evaluation.historical_factor,
            evaluation=evaluation,
            pnl_coefficient=coefficient,
            boosted_probability=boosted,
        )
