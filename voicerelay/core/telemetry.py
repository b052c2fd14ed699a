"""
Device telemetry.

Produces LogRecords stamped with the file and function that emitted them,
mirrors each one to the Python logger, and hands it to the transport for
delivery to the host. Records are the only thing the verification harness
sees, so milestone messages ("Successful handshake", "Model responded") must
go through here.

debug() entries are local only: counted per id, never transmitted.
"""

import inspect
import logging
import os
from collections import deque
from typing import Callable, Deque, Dict, List, Optional

from .models import LogRecord, LogType

logger = logging.getLogger(__name__)

RecordSink = Callable[[LogRecord], None]


class Telemetry:
    """
    Usage:
        telemetry = Telemetry()
        telemetry.attach(transport.submit)
        telemetry.log("Microphone enabled")
    """

    def __init__(self, sink: Optional[RecordSink] = None, max_records: int = 1000):
        self._sink = sink
        self._debug_counts: Dict[str, int] = {}
        self._records: Deque[LogRecord] = deque(maxlen=max_records)

    def attach(self, sink: RecordSink):
        """Route records to `sink` (normally TransportClient.submit)."""
        self._sink = sink

    @property
    def records(self) -> List[LogRecord]:
        """The most recent records emitted (up to max_records), in order."""
        return list(self._records)

    def log(self, message: str) -> LogRecord:
        return self._emit(LogType.LOG, message)

    def error(self, message: str) -> LogRecord:
        return self._emit(LogType.ERROR, message)

    def debug(self, debug_id: str, message: str) -> int:
        """Local debug entry; returns how many times `debug_id` has been seen."""
        count = self._debug_counts.get(debug_id, 0) + 1
        self._debug_counts[debug_id] = count
        logger.debug(f"[{debug_id} #{count}] {message}")
        return count

    def debug_count(self, debug_id: str) -> int:
        return self._debug_counts.get(debug_id, 0)

    def _emit(self, log_type: LogType, message: str) -> LogRecord:
        origin_file, origin_function = _caller()
        record = LogRecord(
            type=log_type,
            message=message,
            origin_file=origin_file,
            origin_function=origin_function,
        )
        self._records.append(record)

        if record.is_error:
            logger.error(f"{message} [{origin_file}:{origin_function}]")
        else:
            logger.info(message)

        if self._sink is not None:
            self._sink(record)
        return record


def _caller():
    """File name and function of the first frame outside this module."""
    frame = inspect.currentframe()
    try:
        while frame is not None and frame.f_code.co_filename == __file__:
            frame = frame.f_back
        if frame is None:
            return "unknown", "unknown"
        return os.path.basename(frame.f_code.co_filename), frame.f_code.co_name
    finally:
        del frame
