"""
Logging setup.

curses owns the terminal, so records go to a log file and to an in-memory
ring buffer that the Logs screen reads from.
"""
import logging
import threading
from collections import deque
from pathlib import Path
from typing import List, Optional

LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
MAX_LOG_ENTRIES = 1000


class LogBuffer(logging.Handler):
    """Keeps the most recent records for on-screen display."""

    def __init__(self, capacity: int = MAX_LOG_ENTRIES):
        super().__init__()
        self._records = deque(maxlen=capacity)
        self._records_lock = threading.Lock()

    def emit(self, record: logging.LogRecord) -> None:
        # Worker threads log too
        with self._records_lock:
            self._records.append(record)

    def records(self, min_level: int = logging.NOTSET) -> List[logging.LogRecord]:
        with self._records_lock:
            return [r for r in self._records if r.levelno >= min_level]

    def clear(self) -> None:
        with self._records_lock:
            self._records.clear()


def configure_logging(level: str = "INFO", log_file: Optional[Path] = None) -> LogBuffer:
    """
    Configure the `cloudctl` logger hierarchy.

    Args:
        level: level name for the file handler (e.g. "INFO")
        log_file: optional file to append records to

    Returns:
        The LogBuffer handler attached to the hierarchy.
    """
    root = logging.getLogger("cloudctl")
    root.setLevel(logging.DEBUG)
    for handler in root.handlers[:]:
        root.removeHandler(handler)
    # Keep records away from the terminal
    root.propagate = False

    if log_file is not None:
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_file)
        file_handler.setFormatter(logging.Formatter(LOG_FORMAT))
        file_handler.setLevel(getattr(logging, level.upper(), logging.INFO))
        root.addHandler(file_handler)

    buffer = LogBuffer()
    buffer.setLevel(logging.DEBUG)
    root.addHandler(buffer)
    return buffer
