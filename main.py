import sys, os
from rich.console import Console
from rich.live import Live

# Keep a real stdout for Rich to use
REAL_STDOUT = sys.__stdout__

# Create Rich console bound to REAL terminal output
console = Console(file=REAL_STDOUT)

from ui.console import ConsoleUI  # import AFTER console exists

import time
import signal
import threading
from config.settings import (
    SYMBOL, DATABASE_PATH, CYCLE_INTERVAL_SECONDS, CYCLE_OFFSET_SECONDS, LOG_FILE, DEBUG_LOG_FILE,
)
from data.binance_client import BinanceClient
from data.sqlite_store import (
    SqliteDatabase, SqliteCandleStore, SqliteIndicatorStore, SqlitePatternStore,
    SqliteStrategyStatsStore, SqliteRegimeStore, SqlitePredictionStore,
)
from core.engine import Engine
from utils.logger import setup_logger, shutdown_logging

INSTANCE_ID = os.environ.get("ENGINE_INSTANCE", os.getpid())

logger = setup_logger(
    "engine",
    log_file=LOG_FILE,
)

debug_logger = setup_logger(
    "debug_engine",
    log_file=DEBUG_LOG_FILE,
    level="DEBUG",
)

def seconds_until_next_cycle(now: float, interval: int = CYCLE_INTERVAL_SECONDS, offset: int = CYCLE_OFFSET_SECONDS) -> float:
    """Seconds until the next candle close plus offset."""
    next_close = (int(now) // interval + 1) * interval
    wait = next_close + offset - now
    # Still inside the offset window of the current candle
    if wait > interval:
        wait -= interval
    return wait

def main():
    logger.info(f"Starting 15m Pattern Signal Engine for {SYMBOL} (instance {INSTANCE_ID})...")

    # Components
    ui = ConsoleUI(console=console)
    db = SqliteDatabase(DATABASE_PATH)
    client = BinanceClient(SYMBOL, status_sink=ui)
    engine = Engine(
        candles=SqliteCandleStore(db),
        indicators=SqliteIndicatorStore(db),
        patterns=SqlitePatternStore(db),
        stats=SqliteStrategyStatsStore(db),
        regimes=SqliteRegimeStore(db),
        predictions=SqlitePredictionStore(db),
        feed=client,
        status_sink=ui,
    )
    ui.dirty = True

    stop_event = threading.Event()

    def publish():
        signals_before = ui.status.total_signals
        ui.update_engine(engine.status, engine.ledger.ranking())
        if engine.signals > signals_before:
            ui.signal_fired(engine.signals - signals_before)

    def cycle_worker():
        # First cycle immediately so the dataset is built on startup
        while not stop_event.is_set():
            started = time.monotonic()
            try:
                engine.run_cycle()
                publish()
                debug_logger.debug(
                    f"[CYCLE] took {time.monotonic() - started:.1f}s, "
                    f"patterns={engine.builder.stats()}, pending predictions={engine.tracker.pending_count()}"
                )
            except Exception as e:
                logger.error(f"Error in cycle worker: {e}")
                ui.error(str(e))

            stop_event.wait(seconds_until_next_cycle(time.time()))

    threading.Thread(target=cycle_worker, daemon=True, name="CycleWorker").start()

    # Graceful Shutdown
    def signal_handler(sig, frame):
        logger.info("Shutting down (Signal)...")
        # Let the finally block handle cleanup by raising SystemExit
        sys.exit(0)

    signal.signal(signal.SIGINT, signal_handler)

    # UI Loop
    try:
        with Live(
            ui.generate_layout(),
            console=console,
            auto_refresh=False,
            screen=False
        ) as live:
            while True:
                if ui.dirty:          # set by the cycle worker and status sink
                    ui.dirty = False
                    live.update(ui.generate_layout(), refresh=True)
                time.sleep(0.1)
    except KeyboardInterrupt:
        logger.info("Keyboard Interrupt")
    finally:
        logger.info("Performing cleanup...")
        stop_event.set()
        client.close()
        logger.info("Cleanup complete.")
        shutdown_logging()

if __name__ == "__main__":
    main()
