from typing import Optional
from models.types import CandleSource, IndicatorSource, IndicatorRow
from core.indicators import calculate_indicator_row, calculate_indicator_rows_full
from core.pattern_builder import BuildStateToken
from config.settings import CANDLE_INTERVAL_MS, INDICATOR_LOOKBACK_CANDLES
from utils.logger import setup_logger

logger = setup_logger("IndicatorHistory")

class IndicatorHistoryBuilder:
    """Keeps the per-candle indicator rows in step with the candle source."""

    def __init__(self, candles: CandleSource, indicators: IndicatorSource, state: Optional[BuildStateToken] = None):
        self.candles = candles
        self.indicators = indicators
        self.state = state if state is not None else BuildStateToken()

    def recalculate_all(self) -> int:
        if not self.state.try_acquire():
            logger.warning("Indicator calculation already in progress")
            return 0
        try:
            min_time = self.candles.min_open_time()
            max_time = self.candles.max_open_time()
            if min_time is None or max_time is None:
                logger.warning("No candles available for indicator calculation")
                return 0

            rows = calculate_indicator_rows_full(self.candles.candles_between(min_time, max_time))
            self.indicators.delete_all()
            saved = 0
            for row in rows:
                try:
                    self.indicators.save(row)
                    saved += 1
                except Exception as e:
                    logger.error(f"Failed to save indicator row {row.open_time}: {e}")
            logger.info(f"Recalculated {saved} indicator rows")
            return saved
        finally:
            self.state.release()

    def calculate_new(self) -> int:
        """Rows for candles after the latest stored row, continuing its EMAs."""
        if not self.state.try_acquire():
            logger.warning("Indicator calculation already in progress")
            return 0
        try:
            min_time = self.candles.min_open_time()
            max_time = self.candles.max_open_time()
            if min_time is None or max_time is None:
                return 0

            latest = self.indicators.max_time()
            previous: Optional[IndicatorRow] = None
            if latest is not None:
                previous = self.indicators.at(latest)
                t = latest + CANDLE_INTERVAL_MS
            else:
                t = min_time + (INDICATOR_LOOKBACK_CANDLES - 1) * CANDLE_INTERVAL_MS

            saved = 0
            while t <= max_time:
                try:
                    window = self.candles.last_n_candles_before(t, INDICATOR_LOOKBACK_CANDLES)
                    if window and window[0].open_time == t:
                        window.reverse()
                        row = calculate_indicator_row(window, previous)
                        if row is not None:
                            self.indicators.save(row)
                            previous = row
                            saved += 1
                except Exception as e:
                    logger.error(f"Failed to calculate indicators at {t}: {e}")
                t += CANDLE_INTERVAL_MS

            if saved:
                logger.info(f"Calculated {saved} new indicator rows")
            return saved
        finally:
            self.state.release()
