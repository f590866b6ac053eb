import math
import time
import threading
from dataclasses import replace
from typing import Dict, List, Optional
from models.types import StrategyStats, StrategyStatsStore
from config.settings import (
    DEFAULT_STRATEGY_WEIGHT, MIN_STRATEGY_WEIGHT, MAX_STRATEGY_WEIGHT,
    PNL_COEFFICIENT_SCALE, PNL_COEFFICIENT_MAX,
)
from utils.rounding import round_half_up, clamp
from utils.logger import setup_logger

logger = setup_logger("StrategyLedger")

def _now_ms() -> int:
    return int(time.time() * 1000)

# --- Pure transitions ---

def new_stats(bucket_id: str, now: Optional[int] = None) -> StrategyStats:
    return StrategyStats(bucket_id=bucket_id, last_updated=now if now is not None else _now_ms())

def compute_weight(success_rate_pct: float, total: int) -> float:
    raw = 0.1 + (success_rate_pct / 100.0) * math.log(total + 1)
    return round_half_up(clamp(raw, MIN_STRATEGY_WEIGHT, MAX_STRATEGY_WEIGHT), 4)

def _recalculate(stats: StrategyStats, now: Optional[int]) -> StrategyStats:
    rate = stats.success_rate_pct
    if stats.total_predictions > 0:
        rate = round_half_up(stats.successes / stats.total_predictions * 100, 2)
    return replace(
        stats,
        success_rate_pct=rate,
        weight=compute_weight(rate, stats.total_predictions),
        last_updated=now if now is not None else _now_ms(),
    )

def record_success(stats: StrategyStats, now: Optional[int] = None) -> StrategyStats:
    return _recalculate(replace(
        stats,
        total_predictions=stats.total_predictions + 1,
        successes=stats.successes + 1,
        score=stats.score + 1,
    ), now)

def record_failure(stats: StrategyStats, now: Optional[int] = None) -> StrategyStats:
    return _recalculate(replace(
        stats,
        total_predictions=stats.total_predictions + 1,
        failures=stats.failures + 1,
        score=stats.score - 1,
    ), now)

def record_confidence_score(stats: StrategyStats, score: int, now: Optional[int] = None) -> StrategyStats:
    """Rate2 event: +1 positive, -1 negative, 0 neutral."""
    positive, negative, neutral = stats.confidence_positive, stats.confidence_negative, stats.confidence_neutral
    confidence_score = stats.confidence_score
    if score > 0:
        positive += 1
        confidence_score += 1
    elif score < 0:
        negative += 1
        confidence_score -= 1
    else:
        neutral += 1

    evaluated = positive + negative
    rate2 = round_half_up(positive / evaluated * 100, 2) if evaluated > 0 else None

    return replace(
        stats,
        confidence_positive=positive,
        confidence_negative=negative,
        confidence_neutral=neutral,
        confidence_score=confidence_score,
        rate2=rate2,
        last_updated=now if now is not None else _now_ms(),
    )

def record_profit(stats: StrategyStats, profit_pct: float, profit_usd: float, now: Optional[int] = None) -> StrategyStats:
    return replace(
        stats,
        profit_trades_count=stats.profit_trades_count + 1,
        total_pnl_usd=round_half_up(stats.total_pnl_usd + profit_usd, 4),
        sum_profit_pct=round_half_up(stats.sum_profit_pct + profit_pct, 4),
        last_updated=now if now is not None else _now_ms(),
    )

def is_degraded(stats: StrategyStats) -> bool:
    return stats.weight <= MIN_STRATEGY_WEIGHT

def needs_alert(stats: StrategyStats) -> bool:
    return is_degraded(stats) and not stats.degradation_alerted

def acknowledge_degradation(stats: StrategyStats) -> StrategyStats:
    return replace(stats, degradation_alerted=True)

def pnl_coefficient(total_pnl_usd: Optional[float]) -> float:
    """1 + ln(1 + pnl/10), clamped to [1.0, 1.5]; non-positive PnL gives 1.0."""
    if total_pnl_usd is None or total_pnl_usd <= 0:
        return 1.0
    raw = 1.0 + math.log(1.0 + total_pnl_usd / PNL_COEFFICIENT_SCALE)
    return round_half_up(clamp(raw, 1.0, PNL_COEFFICIENT_MAX), 4)

def apply_pnl_coefficient(probability: float, coefficient: float) -> float:
    if probability == 0:
        return probability
    return clamp(round_half_up(probability * coefficient, 2), 0.0, 100.0)

# --- Ledger ---

class StrategyLedger:
    """
    Applies ledger events against a StrategyStatsStore.
    Each bucket's read-modify-write runs under that bucket's lock.
    """

    def __init__(self, store: StrategyStatsStore):
        self.store = store
        self._locks: Dict[str, threading.Lock] = {}
        self._registry_lock = threading.Lock()

    def _lock_for(self, bucket_id: str) -> threading.Lock:
        with self._registry_lock:
            lock = self._locks.get(bucket_id)
            if lock is None:
                lock = threading.Lock()
                self._locks[bucket_id] = lock
            return lock

    def _apply(self, bucket_id: str, transition) -> StrategyStats:
        with self._lock_for(bucket_id):
            updated = transition(self.store.get_or_create(bucket_id))
            self.store.save(updated)
            return updated

    def record_success(self, bucket_id: str) -> StrategyStats:
        stats = self._apply(bucket_id, record_success)
        logger.info(f"Strategy {bucket_id}: SUCCESS -> rate={stats.success_rate_pct}%, weight={stats.weight}")
        return stats

    def record_failure(self, bucket_id: str) -> StrategyStats:
        stats = self._apply(bucket_id, record_failure)
        logger.info(f"Strategy {bucket_id}: FAILURE -> rate={stats.success_rate_pct}%, weight={stats.weight}")
        if needs_alert(stats):
            logger.warning(f"Strategy {bucket_id} degraded (weight {stats.weight})")
        return stats

    def record_confidence_score(self, bucket_id: str, score: int) -> StrategyStats:
        return self._apply(bucket_id, lambda s: record_confidence_score(s, score))

    def record_profit(self, bucket_id: str, profit_pct: float, profit_usd: float) -> StrategyStats:
        stats = self._apply(bucket_id, lambda s: record_profit(s, profit_pct, profit_usd))
        logger.debug(f"Strategy {bucket_id}: profit {profit_pct:+.2f}% (${profit_usd:+.2f}), total ${stats.total_pnl_usd}")
        return stats

    def acknowledge_degradation(self, bucket_id: str) -> StrategyStats:
        return self._apply(bucket_id, acknowledge_degradation)

    def weight_of(self, bucket_id: Optional[str]) -> float:
        if bucket_id is None:
            return DEFAULT_STRATEGY_WEIGHT
        stats = self.store.get(bucket_id)
        return stats.weight if stats else DEFAULT_STRATEGY_WEIGHT

    def stats_of(self, bucket_id: str) -> Optional[StrategyStats]:
        return self.store.get(bucket_id)

    def pnl_coefficient(self, bucket_id: str) -> float:
        stats = self.store.get(bucket_id)
        return pnl_coefficient(stats.total_pnl_usd if stats else None)

    def pending_alerts(self) -> List[StrategyStats]:
        return [s for s in self.store.all_ordered_by_success_rate() if needs_alert(s)]

    def ranking(self) -> List[StrategyStats]:
        return self.store.all_ordered_by_success_rate()
