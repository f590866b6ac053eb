import time
from dataclasses import replace
from typing import Optional
from models.types import PendingPrediction, PredictionStore, CandleSource
from core.strategy_ledger import StrategyLedger
from utils.rounding import round_half_up, safe_div
from config.settings import TRADE_AMOUNT_USD, CONFIDENCE_PROBABILITY_THRESHOLD
from utils.logger import setup_logger

logger = setup_logger("PredictionTracker")

HOUR_MS = 60 * 60 * 1000

def _now_ms() -> int:
    return int(time.time() * 1000)

def is_success(actual_profit_pct: float, predicted_profit_pct: float) -> bool:
    """A prediction holds when price reached at least half of the predicted profit."""
    return actual_profit_pct >= round_half_up(predicted_profit_pct / 2, 4)

def confidence_score(target_hit: bool, final_probability: Optional[float]) -> int:
    """+1 when the confidence call was right, -1 for a confident miss, 0 for an unconfident hit."""
    confident = final_probability is not None and final_probability >= CONFIDENCE_PROBABILITY_THRESHOLD
    if target_hit:
        return 1 if confident else 0
    return -1 if confident else 1

def profit_usd(actual_profit_pct: float) -> float:
    return round_half_up(TRADE_AMOUNT_USD * actual_profit_pct / 100, 4)

class PredictionTracker:
    def __init__(self, store: PredictionStore, candles: CandleSource, ledger: StrategyLedger):
        self.store = store
        self.candles = candles
        self.ledger = ledger

    def store_prediction(
        self,
        bucket_id: str,
        entry_price: float,
        predicted_profit_pct: float,
        predicted_hours: int,
        now: Optional[int] = None,
        final_probability: Optional[float] = None,
    ) -> PendingPrediction:
        now = now if now is not None else _now_ms()
        prediction = self.store.save(PendingPrediction(
            bucket_id=bucket_id,
            entry_price=entry_price,
            predicted_profit_pct=predicted_profit_pct,
            predicted_hours=predicted_hours,
            created_at=now,
            evaluate_at=now + predicted_hours * HOUR_MS,
            final_probability=final_probability,
        ))
        logger.info(
            f"Stored prediction for strategy {bucket_id}: entry={entry_price}, "
            f"profit={predicted_profit_pct}%, hours={predicted_hours}"
        )
        return prediction

    def evaluate_pending(self, now: Optional[int] = None) -> int:
        now = now if now is not None else _now_ms()
        ready = self.store.ready_for_evaluation(now)
        if not ready:
            logger.debug("No predictions ready for evaluation")
            return 0

        logger.info(f"Evaluating {len(ready)} pending predictions")
        evaluated = 0
        for prediction in ready:
            try:
                if self._evaluate(prediction):
                    evaluated += 1
            except Exception as e:
                logger.error(f"Error evaluating prediction {prediction.id}: {e}")
        return evaluated

    def _evaluate(self, prediction: PendingPrediction) -> bool:
        max_price = self.candles.max_high_between(prediction.created_at, prediction.evaluate_at)
        if max_price is None:
            # Left pending until candles for the window arrive
            logger.warning(
                f"No candle data found for prediction evaluation: {prediction.created_at} to {prediction.evaluate_at}"
            )
            return False

        actual = round_half_up(safe_div(max_price - prediction.entry_price, prediction.entry_price) * 100, 4)
        success = is_success(actual, prediction.predicted_profit_pct)

        self.store.save(replace(
            prediction,
            evaluated=True,
            success=success,
            actual_max_price=max_price,
            actual_profit_pct=actual,
        ))

        if success:
            self.ledger.record_success(prediction.bucket_id)
        else:
            self.ledger.record_failure(prediction.bucket_id)

        target_hit = actual >= prediction.predicted_profit_pct
        self.ledger.record_confidence_score(prediction.bucket_id, confidence_score(target_hit, prediction.final_probability))
        self.ledger.record_profit(prediction.bucket_id, actual, profit_usd(actual))

        logger.info(
            f"Prediction evaluated for {prediction.bucket_id}: predicted={prediction.predicted_profit_pct}%, "
            f"actual={actual}%, success={success}"
        )
        return True

    def pending_count(self) -> int:
        return self.store.count_pending()
