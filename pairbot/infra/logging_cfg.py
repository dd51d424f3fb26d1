"""
Structured logging setup for the pair engine.

- Console: rich handler for humans, or compact JSON lines when json_console=True
- File: JSON lines written by a background thread so the event loop never blocks
- Throttling for events that can repeat every tick (broker fetch errors, freeze)
"""

from __future__ import annotations

import atexit
import json
import logging
import queue
import sys
import threading
import time
from datetime import datetime
from typing import Dict, Optional, Set

from rich.logging import RichHandler


class JsonFormatter(logging.Formatter):
    """Compact JSON formatter for structured log ingestion."""

    def format(self, record: logging.LogRecord) -> str:
        payload = {
            "ts": record.created,
            "ts_iso": datetime.fromtimestamp(record.created).isoformat(timespec="milliseconds"),
            "level": record.levelname,
            "name": record.name,
            "msg": record.getMessage(),
        }
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(payload, separators=(",", ":"))


class AsyncQueueHandler(logging.Handler):
    """
    Non-blocking handler that hands records to a writer thread.

    Records are dropped (and counted) when the queue is full rather than
    stalling the tick loop behind a slow disk.
    """

    def __init__(self, target_handler: logging.Handler, max_queue_size: int = 10000) -> None:
        super().__init__()
        self._queue: queue.Queue = queue.Queue(maxsize=max_queue_size)
        self._target = target_handler
        self._shutdown = False
        self._dropped = 0
        self._thread = threading.Thread(target=self._worker, daemon=True, name="pairbot-log-writer")
        self._thread.start()
        atexit.register(self.close)

    @property
    def dropped(self) -> int:
        return self._dropped

    def emit(self, record: logging.LogRecord) -> None:
        if self._shutdown:
            return
        try:
            self._queue.put_nowait(record)
        except queue.Full:
            self._dropped += 1

    def _worker(self) -> None:
        while not self._shutdown or not self._queue.empty():
            try:
                record = self._queue.get(timeout=0.1)
            except queue.Empty:
                continue
            self._target.handle(record)
            self._queue.task_done()

    def close(self) -> None:
        self._shutdown = True
        if self._thread.is_alive():
            self._thread.join(timeout=2.0)
        if self._dropped > 0:
            sys.stderr.write(f"[logging] dropped {self._dropped} log records (queue full)\n")
        self._target.close()
        super().close()


class ThrottledFilter(logging.Filter):
    """
    Suppresses repeats of selected JSON events for cooldown_sec.

    The key is event name + symbol, so the same warning for two symbols is
    still logged once each.
    """

    DEFAULT_EVENTS = frozenset({
        "reconcile_fetch_error",
        "tick_price_unavailable",
        "tick_skipped_market_frozen",
        "entry_rejected",
    })

    def __init__(self, cooldown_sec: float = 30.0, throttled_events: Optional[Set[str]] = None) -> None:
        super().__init__()
        self._cooldown = cooldown_sec
        self._last_seen: Dict[str, float] = {}
        self._throttled_events = throttled_events or set(self.DEFAULT_EVENTS)

    def filter(self, record: logging.LogRecord) -> bool:
        try:
            data = json.loads(record.getMessage())
        except (json.JSONDecodeError, TypeError):
            return True
        if not isinstance(data, dict):
            return True

        event = data.get("event", "")
        if event not in self._throttled_events:
            return True

        now = time.time()
        key = f"{event}:{data.get('symbol', '')}"
        if now - self._last_seen.get(key, 0.0) < self._cooldown:
            return False
        self._last_seen[key] = now
        return True


def build_logger(
    name: str = "pairbot",
    level: int = logging.INFO,
    file_path: Optional[str] = None,
    json_console: bool = False,
    throttle: bool = True,
) -> logging.Logger:
    """
    Build the process logger.

    Args:
        name: Logger name (components log under "pairbot")
        level: Minimum log level
        file_path: JSON log file (None disables file logging)
        json_console: Emit JSON lines on stdout instead of rich output
        throttle: Apply ThrottledFilter to the console handler

    Returns:
        Configured logger instance
    """
    logger = logging.getLogger(name)
    logger.setLevel(level)

    if logger.handlers:
        for h in logger.handlers:
            h.setLevel(level)
        return logger

    if json_console:
        console: logging.Handler = logging.StreamHandler(sys.stdout)
        console.setFormatter(JsonFormatter())
    else:
        console = RichHandler(
            rich_tracebacks=False,
            show_time=True,
            show_level=True,
            show_path=False,
            markup=False,
        )
        console.setFormatter(logging.Formatter("%(message)s"))
    console.setLevel(level)
    if throttle:
        console.addFilter(ThrottledFilter(cooldown_sec=30.0))
    logger.addHandler(console)

    if file_path:
        file_handler = logging.FileHandler(file_path)
        file_handler.setFormatter(JsonFormatter())
        file_handler.setLevel(level)
        async_handler = AsyncQueueHandler(file_handler)
        async_handler.setLevel(level)
        logger.addHandler(async_handler)

    logger.propagate = False
    return logger


def log_event(
    logger: logging.Logger,
    event: str,
    level: int = logging.INFO,
    **data,
) -> None:
    """
    Log a structured event as a single JSON line.

    Usage:
        log_event(log, "pair_finalized", pair_id="pair-1", reason="TP_HIT")
    """
    payload = {"event": event, **data}
    logger.log(level, json.dumps(payload, default=str))
