"""
Logging for the trading controller.

Components log one JSON object per message (`{"event": ..., ...}`). The
process logger renders those on a Rich console and appends them as JSON
lines to a file through a background writer thread, so a slow disk never
stalls a tick. Events that repeat every tick are throttled on the console.
"""

from __future__ import annotations

import atexit
import logging
import queue
import sys
import threading
import time
from datetime import datetime
from typing import Any, Dict, Optional, Set

from rich.logging import RichHandler

from autotrader.core.json_utils import dumps, loads

LOGGER_NAME = "autotrader"

DEFAULT_THROTTLED_EVENTS = frozenset({
    "fill_sync_overflow",
    "missing_queue_overflow",
    "grid_order_failed",
    "grid_fill_check_failed",
    "rate_lookup_failed",
})


def _structured(msg: str) -> Optional[Dict[str, Any]]:
    """The event dict behind a structured message, or None for plain text."""
    if not msg.startswith("{"):
        return None
    try:
        data = loads(msg)
    except ValueError:
        return None
    return data if isinstance(data, dict) else None


class JsonFormatter(logging.Formatter):
    """One JSON line per record; structured events are merged in, plain text goes under msg."""

    def format(self, record: logging.LogRecord) -> str:
        line: Dict[str, Any] = {
            "ts": record.created,
            "ts_iso": datetime.fromtimestamp(record.created).isoformat(timespec="milliseconds"),
            "level": record.levelname,
            "name": record.name,
        }
        msg = record.getMessage()
        fields = _structured(msg)
        if fields is None:
            line["msg"] = msg
        else:
            line.update(fields)
        if record.exc_info:
            line["exc_info"] = self.formatException(record.exc_info)
        return dumps(line)


class AsyncQueueHandler(logging.Handler):
    """
    Hands records to a writer thread that feeds `target`.

    A full queue drops the record; the drop count is reported on close.
    """

    def __init__(self, target: logging.Handler, max_queue_size: int = 10000):
        super().__init__()
        self._target = target
        self._records: queue.Queue = queue.Queue(maxsize=max_queue_size)
        self._closed = False
        self._dropped = 0
        self._writer = threading.Thread(target=self._drain, daemon=True, name="autotrader-log-writer")
        self._writer.start()
        atexit.register(self.close)

    def emit(self, record: logging.LogRecord) -> None:
        if self._closed:
            return
        try:
            self._records.put_nowait(record)
        except queue.Full:
            self._dropped += 1

    def _drain(self) -> None:
        while not (self._closed and self._records.empty()):
            try:
                record = self._records.get(timeout=0.1)
            except queue.Empty:
                continue
            try:
                self._target.emit(record)
            except Exception:
                self._target.handleError(record)

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._writer.join(timeout=2.0)
        if self._dropped:
            sys.stderr.write(f"autotrader: {self._dropped} log records dropped on a full queue\n")
        self._target.close()
        super().close()


class ThrottledFilter(logging.Filter):
    """
    Lets the first of a repeated event through per (event, symbol), then
    drops repeats until cooldown_sec has passed. Other messages always pass.
    """

    def __init__(self, cooldown_sec: float = 30.0, throttled_events: Optional[Set[str]] = None):
        super().__init__()
        self.cooldown_sec = cooldown_sec
        self.throttled_events = set(throttled_events or DEFAULT_THROTTLED_EVENTS)
        self._last_passed: Dict[str, float] = {}

    def filter(self, record: logging.LogRecord) -> bool:
        fields = _structured(record.getMessage())
        if fields is None or fields.get("event") not in self.throttled_events:
            return True
        key = f"{fields['event']}:{fields.get('symbol', '')}"
        now = time.time()
        if now - self._last_passed.get(key, 0.0) < self.cooldown_sec:
            return False
        self._last_passed[key] = now
        return True


def level_from_name(name: Optional[str], default: int = logging.INFO) -> int:
    level = logging.getLevelName((name or "").upper())
    return level if isinstance(level, int) else default


def build_logger(
    name: str = LOGGER_NAME,
    level: int = logging.INFO,
    file_path: Optional[str] = "autotrader.log",
) -> logging.Logger:
    """
    Configure the process logger: throttled Rich console, plus JSON lines at
    file_path (None keeps console only). A second call only updates levels.
    """
    logger = logging.getLogger(name)
    logger.setLevel(level)
    if logger.handlers:
        for handler in logger.handlers:
            handler.setLevel(level)
        return logger

    console = RichHandler(show_path=False, markup=False, rich_tracebacks=False)
    console.setFormatter(logging.Formatter("%(message)s"))
    console.addFilter(ThrottledFilter())
    handlers = [console]

    if file_path:
        json_file = logging.FileHandler(file_path)
        json_file.setFormatter(JsonFormatter())
        handlers.append(AsyncQueueHandler(json_file))

    for handler in handlers:
        handler.setLevel(level)
        logger.addHandler(handler)
    logger.propagate = False
    return logger
