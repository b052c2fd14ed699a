"""
Structured Logging Configuration for voicerelay

All process logs use structured JSON format for machine parseability.
A non-blocking handler ensures audio device callbacks never block on log writes.

These are operator logs. Device telemetry records (the ones the host persists
and the harness verifies) are produced by voicerelay.core.telemetry and are
mirrored here as well.

Log levels:
- CRITICAL: Fatal protocol/transport/consistency violations (process exits)
- ERROR: Telemetry error records, inference service errors, injection failures
- WARNING: Ignored transitions, refused connections
- INFO: Session lifecycle, handshakes, prompts, state transitions
- DEBUG: Per-frame transport traffic, debug counters
- TRACE (=5): Audio buffer scheduling

Debug mode (RELAY_DEBUG=1) forces DEBUG level.
"""

import json
import logging
import os
import queue
import sys
import threading
import time
from typing import Optional

# Custom TRACE level (below DEBUG)
TRACE = 5
logging.addLevelName(TRACE, "TRACE")

# Log queue capacity for non-blocking handler
LOG_QUEUE_CAPACITY = 10_000


class StructuredFormatter(logging.Formatter):
    """Formats log records as structured JSON."""

    def format(self, record: logging.LogRecord) -> str:
        log_entry = {
            "ts": time.time(),
            "level": record.levelname,
            "component": getattr(record, "component", record.name.split(".")[-1]),
            "event": record.getMessage(),
        }

        session = getattr(record, "session", None)
        if session is not None:
            log_entry["session"] = session

        if hasattr(record, "extra_fields") and record.extra_fields:
            log_entry.update(record.extra_fields)

        if record.exc_info and record.exc_info[1]:
            log_entry["exception"] = str(record.exc_info[1])

        return json.dumps(log_entry, default=str, ensure_ascii=False)


class NonBlockingHandler(logging.Handler):
    """
    Non-blocking log handler using a bounded queue.

    Log records are enqueued to a bounded queue. A background thread
    writes records to the target handler. If the queue is full,
    records are dropped (not blocking the producer).
    """

    def __init__(self, target_handler: logging.Handler, capacity: int = LOG_QUEUE_CAPACITY):
        super().__init__()
        self._queue: queue.Queue = queue.Queue(maxsize=capacity)
        self._target = target_handler
        self._dropped_count = 0
        self._running = True
        self._thread = threading.Thread(target=self._writer_loop, name="relay-log-writer", daemon=True)
        self._thread.start()

    def emit(self, record: logging.LogRecord):
        try:
            self._queue.put_nowait(record)
        except queue.Full:
            self._dropped_count += 1

    def _writer_loop(self):
        while self._running or not self._queue.empty():
            try:
                record = self._queue.get(timeout=0.1)
            except queue.Empty:
                continue
            # Handler.handle() routes formatting failures to handleError()
            self._target.handle(record)

    def close(self):
        self._running = False
        if self._thread.is_alive():
            self._thread.join(timeout=2.0)
        self._target.close()
        super().close()

    @property
    def dropped_count(self) -> int:
        return self._dropped_count


def configure_logging(
    level: Optional[str] = None,
    json_format: bool = True,
    non_blocking: bool = True,
) -> logging.Handler:
    """
    Configure voicerelay structured logging.

    Args:
        level: Log level string. Defaults to RELAY_LOG_LEVEL env var or INFO.
        json_format: Use structured JSON format.
        non_blocking: Use non-blocking handler (recommended when audio is live).

    Returns:
        The configured root handler.
    """
    log_level_str = level or os.environ.get("RELAY_LOG_LEVEL", "INFO")
    log_level_map = {
        "TRACE": TRACE,
        "DEBUG": logging.DEBUG,
        "INFO": logging.INFO,
        "WARN": logging.WARNING,
        "WARNING": logging.WARNING,
        "ERROR": logging.ERROR,
    }
    log_level = log_level_map.get(log_level_str.upper(), logging.INFO)

    if os.environ.get("RELAY_DEBUG", "0") == "1":
        log_level = min(log_level, logging.DEBUG)

    stream_handler = logging.StreamHandler(sys.stdout)

    if json_format:
        stream_handler.setFormatter(StructuredFormatter())
    else:
        stream_handler.setFormatter(logging.Formatter(
            "%(asctime)s %(levelname)-8s [%(name)s] %(message)s",
            datefmt="%Y-%m-%dT%H:%M:%S",
        ))

    if non_blocking:
        handler = NonBlockingHandler(stream_handler)
    else:
        handler = stream_handler

    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(log_level)

    # Suppress noisy third-party loggers
    for noisy in ["websockets", "asyncio"]:
        logging.getLogger(noisy).setLevel(logging.WARNING)

    return handler
