import atexit
import logging
from contextlib import contextmanager
from contextvars import ContextVar
from logging.handlers import RotatingFileHandler, QueueHandler, QueueListener
from queue import Queue
from pathlib import Path
from typing import Optional
from config.settings import LOG_LEVEL, LOG_FILE

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s [%(cycle)s]: %(message)s"

# One queue + one listener PER log_file, so engine.log and debug_engine.log
# rotate independently.
_LISTENERS_BY_FILE: dict[str, QueueListener] = {}
_QUEUES_BY_FILE: dict[str, Queue] = {}

# Label of the cycle the current thread is running, "-" outside a cycle
_CYCLE: ContextVar[str] = ContextVar("cycle", default="-")

class CycleContextFilter(logging.Filter):
    """Stamps each record with the current cycle label before it is queued."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.cycle = _CYCLE.get()
        return True

@contextmanager
def cycle_context(label: str):
    token = _CYCLE.set(label)
    try:
        yield
    finally:
        _CYCLE.reset(token)

def _ensure_listener(log_file: str, max_bytes: int, backup_count: int) -> QueueHandler:
    log_file = str(Path(log_file))
    if log_file not in _LISTENERS_BY_FILE:
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)

        q: Queue = Queue(-1)
        file_handler = RotatingFileHandler(
            log_file,
            mode="a",
            maxBytes=max_bytes,
            backupCount=backup_count,
            encoding="utf-8",
            delay=True,  # listener owns the file handle lifetime
        )
        file_handler.setFormatter(logging.Formatter(LOG_FORMAT))

        listener = QueueListener(q, file_handler, respect_handler_level=True)
        listener.start()
        _QUEUES_BY_FILE[log_file] = q
        _LISTENERS_BY_FILE[log_file] = listener

    handler = QueueHandler(_QUEUES_BY_FILE[log_file])
    handler.addFilter(CycleContextFilter())
    return handler

def shutdown_logging(log_file: Optional[str] = None):
    """Stops the listener for one file (or all of them) and flushes pending records."""
    files = [str(Path(log_file))] if log_file else list(_LISTENERS_BY_FILE)
    for name in files:
        listener = _LISTENERS_BY_FILE.pop(name, None)
        _QUEUES_BY_FILE.pop(name, None)
        if listener is None:
            continue
        try:
            listener.stop()
        except Exception as e:
            logging.getLogger(__name__).debug(f"Log listener stop failed for {name}: {e}")
        for handler in listener.handlers:
            handler.close()

atexit.register(shutdown_logging)

def setup_logger(
    name: str,
    log_file: str = LOG_FILE,
    level=LOG_LEVEL,
    max_bytes: int = 1024 * 1024 * 5,
    backup_count: int = 6,
):
    logger = logging.getLogger(name)
    logger.setLevel(level)
    logger.propagate = False

    # Avoid duplicate handlers per logger name.
    if not logger.handlers:
        qh = _ensure_listener(log_file, max_bytes, backup_count)
        qh.setLevel(level)
        logger.addHandler(qh)

    return logger
