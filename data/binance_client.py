import time
from typing import List, Optional
from config.settings import (
    SYMBOL, TIMEFRAME_15M, BINANCE_KLINES_URL, KLINES_FETCH_LIMIT, CANDLE_INTERVAL_MS, INITIAL_SYNC_DAYS,
)
from models.types import Candle, CandleSource, StatusSink
from utils.logger import setup_logger
import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

logger = setup_logger("BinanceClient")

DAY_MS = 24 * 60 * 60 * 1000

def parse_kline(k: list) -> Candle:
    # k schema:
    # 0: Open time, 1: Open, 2: High, 3: Low, 4: Close, 5: Volume, 6: Close time, ...
    return Candle(
        open_time=int(k[0]),
        open=float(k[1]),
        high=float(k[2]),
        low=float(k[3]),
        close=float(k[4]),
        volume=float(k[5]),
    )

class BinanceClient:
    """REST kline feed for one symbol on the 15m timeframe."""

    def __init__(self, symbol: str = SYMBOL, status_sink: StatusSink = None, session: Optional[requests.Session] = None):
        self.symbol = symbol.upper()
        self.status_sink = status_sink
        # Persistent session so repeated syncs reuse sockets
        self.session = session or requests.Session()
        retries = Retry(total=3, backoff_factor=0.5, status_forcelist=[429, 500, 502, 503, 504])
        adapter = HTTPAdapter(max_retries=retries, pool_connections=4, pool_maxsize=4)
        self.session.mount('https://', adapter)
        self.session.mount('http://', adapter)

        logger.info(f"BinanceClient created for {self.symbol} {TIMEFRAME_15M}")

    def fetch_klines(self, start_time: Optional[int] = None, end_time: Optional[int] = None, limit: int = KLINES_FETCH_LIMIT) -> List[Candle]:
        params = {
            "symbol": self.symbol,
            "interval": TIMEFRAME_15M,
            "limit": limit,
        }
        if start_time is not None:
            params["startTime"] = start_time
        if end_time is not None:
            params["endTime"] = end_time

        resp = self.session.get(BINANCE_KLINES_URL, params=params, timeout=10)
        resp.raise_for_status()
        return [parse_kline(k) for k in resp.json()]

    def fetch_closed_since(self, start_time: int, now: Optional[int] = None) -> List[Candle]:
        """All candles from start_time whose 15m period has closed, paging forward."""
        now = now if now is not None else int(time.time() * 1000)
        last_closed_open = (now // CANDLE_INTERVAL_MS) * CANDLE_INTERVAL_MS - CANDLE_INTERVAL_MS

        candles: List[Candle] = []
        cursor = start_time
        while cursor <= last_closed_open:
            batch = self.fetch_klines(start_time=cursor, end_time=last_closed_open)
            if not batch:
                break
            candles.extend(c for c in batch if c.open_time <= last_closed_open)
            cursor = batch[-1].open_time + CANDLE_INTERVAL_MS
            if len(batch) < KLINES_FETCH_LIMIT:
                break
        return candles

    def sync(self, store: CandleSource, now: Optional[int] = None) -> int:
        """Appends newly closed candles to the store. Returns how many were added."""
        now = now if now is not None else int(time.time() * 1000)
        latest = store.max_open_time()
        if latest is None:
            start = (now // CANDLE_INTERVAL_MS) * CANDLE_INTERVAL_MS - INITIAL_SYNC_DAYS * DAY_MS
            logger.info(f"Candle store empty, backfilling {INITIAL_SYNC_DAYS} days of {self.symbol}")
        else:
            start = latest + CANDLE_INTERVAL_MS

        try:
            candles = self.fetch_closed_since(start, now)
        except requests.RequestException as e:
            logger.error(f"Failed to fetch klines for {self.symbol}: {e}")
            if self.status_sink:
                self.status_sink.error(f"Kline fetch failed: {e}")
            return 0

        added = store.upsert_candles(candles) if candles else 0
        if added:
            logger.info(f"Synced {added} candles for {self.symbol}")
        return added

    def close(self):
        self.session.close()
