import bisect
import threading
from dataclasses import replace
from typing import Dict, List, Optional, Iterable
from models.types import (
    Candle, IndicatorRow, HistoricalPattern, StrategyStats, RegimeObservation, PendingPrediction,
)

# Dict-backed stores. Each keeps a sorted key list next to its dict so range
# queries stay O(log n + k).

class _TimeIndexed:
    def __init__(self):
        self._lock = threading.RLock()
        self._items: Dict[int, object] = {}
        self._keys: List[int] = []

    def _put(self, key: int, item):
        if key not in self._items:
            bisect.insort(self._keys, key)
        self._items[key] = item

    def _range(self, start: int, end: int) -> List:
        lo = bisect.bisect_left(self._keys, start)
        hi = bisect.bisect_right(self._keys, end)
        return [self._items[k] for k in self._keys[lo:hi]]

    def _clear(self):
        self._items.clear()
        self._keys.clear()

    def count(self) -> int:
        with self._lock:
            return len(self._keys)

class MemoryCandleStore(_TimeIndexed):
    def upsert_candles(self, candles: Iterable[Candle]) -> int:
        added = 0
        with self._lock:
            for c in candles:
                if c.open_time not in self._items:
                    added += 1
                self._put(c.open_time, c)
        return added

    def min_open_time(self) -> Optional[int]:
        with self._lock:
            return self._keys[0] if self._keys else None

    def max_open_time(self) -> Optional[int]:
        with self._lock:
            return self._keys[-1] if self._keys else None

    def candles_between(self, start: int, end: int) -> List[Candle]:
        with self._lock:
            return self._range(start, end)

    def last_n_candles_before(self, t: int, n: int) -> List[Candle]:
        with self._lock:
            hi = bisect.bisect_right(self._keys, t)
            keys = self._keys[max(0, hi - n):hi]
            return [self._items[k] for k in reversed(keys)]

    def candle_at(self, t: int) -> Optional[Candle]:
        with self._lock:
            return self._items.get(t)

    def max_high_between(self, start: int, end: int) -> Optional[float]:
        candles = self.candles_between(start, end)
        if not candles:
            return None
        return max(c.high for c in candles)

class MemoryIndicatorStore(_TimeIndexed):
    def save(self, row: IndicatorRow):
        with self._lock:
            self._put(row.open_time, row)

    def recent_n(self, n: int) -> List[IndicatorRow]:
        with self._lock:
            return [self._items[k] for k in reversed(self._keys[-n:])] if n > 0 else []

    def between(self, start: int, end: int) -> List[IndicatorRow]:
        with self._lock:
            return self._range(start, end)

    def at(self, t: int) -> Optional[IndicatorRow]:
        with self._lock:
            return self._items.get(t)

    def max_time(self) -> Optional[int]:
        with self._lock:
            return self._keys[-1] if self._keys else None

    def delete_all(self):
        with self._lock:
            self._clear()

class MemoryPatternStore(_TimeIndexed):
    def exists_at(self, t: int) -> bool:
        with self._lock:
            return t in self._items

    def get(self, t: int) -> Optional[HistoricalPattern]:
        with self._lock:
            return self._items.get(t)

    def upsert(self, pattern: HistoricalPattern):
        with self._lock:
            self._put(pattern.candle_time, pattern)

    def delete_all(self):
        with self._lock:
            self._clear()

    def by_strategy_bucket(self, bucket_id: str) -> List[HistoricalPattern]:
        with self._lock:
            return [self._items[k] for k in self._keys if self._items[k].strategy_bucket_id == bucket_id]

    def unevaluated_before(self, t: int) -> List[HistoricalPattern]:
        with self._lock:
            return [p for p in self._range(self._keys[0], t) if not p.evaluated] if self._keys else []

    def evaluated_since(self, t: int) -> List[HistoricalPattern]:
        with self._lock:
            if not self._keys:
                return []
            return [p for p in self._range(t, self._keys[-1]) if p.evaluated]

    def max_candle_time(self) -> Optional[int]:
        with self._lock:
            return self._keys[-1] if self._keys else None

    def max_evaluated_candle_time(self) -> Optional[int]:
        with self._lock:
            for k in reversed(self._keys):
                if self._items[k].evaluated:
                    return k
            return None

    def count_evaluated(self) -> int:
        with self._lock:
            return sum(1 for p in self._items.values() if p.evaluated)

class MemoryStrategyStatsStore:
    def __init__(self):
        self._lock = threading.Lock()
        self._stats: Dict[str, StrategyStats] = {}

    def get(self, bucket_id: str) -> Optional[StrategyStats]:
        with self._lock:
            return self._stats.get(bucket_id)

    def get_or_create(self, bucket_id: str) -> StrategyStats:
        with self._lock:
            stats = self._stats.get(bucket_id)
            if stats is None:
                stats = StrategyStats(bucket_id=bucket_id)
                self._stats[bucket_id] = stats
            return stats

    def save(self, stats: StrategyStats):
        with self._lock:
            self._stats[stats.bucket_id] = stats

    def all_ordered_by_success_rate(self) -> List[StrategyStats]:
        with self._lock:
            return sorted(self._stats.values(), key=lambda s: s.success_rate_pct, reverse=True)

class MemoryRegimeStore:
    def __init__(self):
        self._lock = threading.Lock()
        self._observations: List[RegimeObservation] = []

    def append(self, observation: RegimeObservation):
        with self._lock:
            self._observations.append(observation)

    def most_recent(self) -> Optional[RegimeObservation]:
        with self._lock:
            return self._observations[-1] if self._observations else None

    def recent_n(self, n: int) -> List[RegimeObservation]:
        with self._lock:
            return list(reversed(self._observations[-n:])) if n > 0 else []

    def between(self, start: int, end: int) -> List[RegimeObservation]:
        with self._lock:
            return [o for o in self._observations if start <= o.timestamp <= end]

class MemoryPredictionStore:
    def __init__(self):
        self._lock = threading.Lock()
        self._predictions: Dict[int, PendingPrediction] = {}
        self._next_id = 1

    def save(self, prediction: PendingPrediction) -> PendingPrediction:
        with self._lock:
            if prediction.id is None:
                prediction = replace(prediction, id=self._next_id)
                self._next_id += 1
            self._predictions[prediction.id] = prediction
            return prediction

    def ready_for_evaluation(self, now: int) -> List[PendingPrediction]:
        with self._lock:
            return [p for p in self._predictions.values() if not p.evaluated and p.evaluate_at <= now]

    def count_pending(self) -> int:
        with self._lock:
            return sum(1 for p in self._predictions.values() if not p.evaluated)

    def get(self, prediction_id: int) -> Optional[PendingPrediction]:
        with self._lock:
            return self._predictions.get(prediction_id)
