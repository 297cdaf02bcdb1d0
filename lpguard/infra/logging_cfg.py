"""
Structured logging setup for the engine.

Every component logs one JSON object per line (``{"event": ..., ...}``).
The console gets a rich rendering with repetitive retry/skip events
throttled; the log file gets flat JSON records, written from a background
thread so a slow disk never stalls the event loop.
"""

from __future__ import annotations

import atexit
import logging
import queue
import sys
import threading
import time
from datetime import datetime
from typing import Any, Dict, Iterable, Optional, Tuple

from rich.logging import RichHandler

from lpguard.core.json_utils import dumps, loads

# Level per kind of event
CRITICAL_SAFETY = logging.CRITICAL  # Emergency liquidation, corrupt state
ERROR = logging.ERROR               # Failed protective actions and orders
WARNING = logging.WARNING           # Retries, skipped cycles
INFO = logging.INFO                 # Decisions: rebalance, trigger, reduce
DEBUG = logging.DEBUG               # Per-position scan detail

DEFAULT_THROTTLED_EVENTS = frozenset({
    "retry",
    "risk_cycle_skipped",
    "rebalance_cycle_skipped",
    "fee_cycle_skipped",
    "order_poll_skipped",
    "volume_fetch_failed",
})

# Fields that identify "the same" noisy event, most specific first.
THROTTLE_KEY_FIELDS: Tuple[str, ...] = ("position_id", "order_id", "pool_id", "label", "loop")


def _parse_event(msg: str) -> Optional[Dict[str, Any]]:
    if not msg.startswith("{"):
        return None
    try:
        data = loads(msg)
    except ValueError:
        return None
    return data if isinstance(data, dict) else None


class JsonFormatter(logging.Formatter):
    """
    One flat JSON object per record.

    Event messages are merged into the record instead of being nested as
    an escaped string, so ``event``/``position_id`` are queryable fields.
    """

    def format(self, record: logging.LogRecord) -> str:
        payload: Dict[str, Any] = {
            "ts": record.created,
            "ts_iso": datetime.fromtimestamp(record.created).isoformat(timespec="milliseconds"),
            "level": record.levelname,
            "name": record.name,
        }
        msg = record.getMessage()
        event = _parse_event(msg)
        if event is None:
            payload["msg"] = msg
        else:
            payload.update(event)
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return dumps(payload)


class AsyncQueueHandler(logging.Handler):
    """
    Hands records to a writer thread through a bounded queue.

    ``emit`` never blocks: when the queue is full the record is dropped and
    counted. ``close`` drains what is queued, then closes the target.
    """

    _STOP = object()

    def __init__(self, target_handler: logging.Handler, max_queue_size: int = 10000):
        super().__init__()
        self._target = target_handler
        self._queue: queue.Queue = queue.Queue(maxsize=max_queue_size)
        self._closed = False
        self._dropped = 0
        self._writer = threading.Thread(target=self._drain, daemon=True, name="lpguard-log-writer")
        self._writer.start()
        atexit.register(self.close)

    @property
    def dropped(self) -> int:
        return self._dropped

    def emit(self, record: logging.LogRecord) -> None:
        if self._closed:
            return
        try:
            self._queue.put_nowait(record)
        except queue.Full:
            self._dropped += 1

    def _drain(self) -> None:
        while True:
            item = self._queue.get()
            if item is self._STOP:
                return
            try:
                self._target.emit(item)
            except Exception:
                self._target.handleError(item)

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        # Blocking put: the sentinel must land even when the queue is full.
        self._queue.put(self._STOP)
        self._writer.join(timeout=2.0)
        if self._dropped:
            sys.stderr.write(f"[lpguard] {self._dropped} log records dropped (queue full)\n")
        self._target.close()
        super().close()


class ThrottledFilter(logging.Filter):
    """
    Pass the first occurrence of a noisy event, then drop repeats of the
    same event for the same position/order/pool for ``cooldown_sec``.
    """

    def __init__(
        self,
        cooldown_sec: float = 30.0,
        throttled_events: Optional[Iterable[str]] = None,
        key_fields: Tuple[str, ...] = THROTTLE_KEY_FIELDS,
    ):
        super().__init__()
        self._cooldown = cooldown_sec
        self._events = frozenset(throttled_events or DEFAULT_THROTTLED_EVENTS)
        self._key_fields = key_fields
        self._last_pass: Dict[Tuple[str, str], float] = {}

    def _key(self, data: Dict[str, Any]) -> Tuple[str, str]:
        for name in self._key_fields:
            value = data.get(name)
            if value:
                return data["event"], str(value)
        return data["event"], ""

    def filter(self, record: logging.LogRecord) -> bool:
        data = _parse_event(record.getMessage())
        if data is None or data.get("event") not in self._events:
            return True
        key = self._key(data)
        now = time.monotonic()
        last = self._last_pass.get(key)
        if last is not None and now - last < self._cooldown:
            return False
        self._last_pass[key] = now
        return True


def _coerce_level(level: int | str) -> int:
    if isinstance(level, int):
        return level
    resolved = logging.getLevelName(level.upper())
    return resolved if isinstance(resolved, int) else logging.INFO


def _console_handler(level: int, throttle: bool) -> logging.Handler:
    handler = RichHandler(show_time=True, show_level=True, show_path=False, markup=False, rich_tracebacks=False)
    handler.setFormatter(logging.Formatter("%(message)s"))
    handler.setLevel(level)
    if throttle:
        handler.addFilter(ThrottledFilter())
    return handler


def _file_handler(path: str, level: int, async_write: bool) -> logging.Handler:
    inner = logging.FileHandler(path)
    inner.setFormatter(JsonFormatter())
    inner.setLevel(level)
    if not async_write:
        return inner
    handler = AsyncQueueHandler(inner)
    handler.setLevel(level)
    return handler


def build_logger(
    name: str = "lpguard",
    level: int | str = logging.INFO,
    file_path: Optional[str] = "lpguard.log",
    async_file: bool = True,
    throttle_warnings: bool = True,
) -> logging.Logger:
    """
    Configure the engine logger. A second call only adjusts levels.

    Args:
        name: Logger name
        level: Minimum level, as a number or a level name
        file_path: JSON log file, or None for console only
        async_file: Write the file from a background thread
        throttle_warnings: Throttle repetitive events on the console
    """
    lvl = _coerce_level(level)
    logger = logging.getLogger(name)
    logger.setLevel(lvl)

    if logger.handlers:
        for h in logger.handlers:
            h.setLevel(lvl)
        return logger

    logger.addHandler(_console_handler(lvl, throttle_warnings))
    if file_path:
        logger.addHandler(_file_handler(file_path, lvl, async_file))
    logger.propagate = False
    return logger


def log_event(logger: logging.Logger, event: str, level: int = INFO, **data: Any) -> None:
    """
    Log one structured event.

        log_event(log, "rebalance_done", level=INFO, position_id=pid)
    """
    logger.log(level, dumps({"event": event, **data}))
