"""
Host-side session ledger.

Owns session numbering, the per-session append-only log files, and uptime
accounting.

File layout:
    <logs_dir>/<n>.json   one JSON telemetry record per line, append-only

Session ordinals are dense: the next ordinal is always the count of existing
session files + 1. Aggregate statistics are recomputed by rescanning every
session file at handshake time. This is O(total history) on purpose: the
numbers reported in the handshake must always reflect exactly what is on disk,
so there is no incremental index to drift out of sync.
"""

import json
import logging
import os
import time
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Callable, List, Optional, Tuple

from ..core.errors import ConsistencyViolation, ProtocolViolation
from ..core.models import SessionStats

logger = logging.getLogger(__name__)

SESSION_SUFFIX = ".json"


@dataclass(frozen=True)
class SessionUptime:
    """Duration of one historical session, derived from its first/last record."""
    duration_ms: float
    start_time: float


def session_path(logs_dir: Path, session_number: int) -> Path:
    return Path(logs_dir) / f"{session_number}{SESSION_SUFFIX}"


def list_session_files(logs_dir: Path) -> List[Path]:
    """All session files in the logs directory."""
    return sorted(p for p in Path(logs_dir).iterdir() if p.name.endswith(SESSION_SUFFIX))


def read_records(path: Path) -> List[str]:
    """Non-empty lines of a session file."""
    with open(path, "r", encoding="utf-8") as f:
        return [line for line in f.read().split("\n") if line.strip()]


def midnight_today(now: float) -> float:
    """Epoch seconds of local midnight for the day containing `now`."""
    return datetime.fromtimestamp(now).replace(
        hour=0, minute=0, second=0, microsecond=0
    ).timestamp()


class SessionLedger:
    """
    Session numbering, persistence and uptime accounting on the host.

    Exactly one writer (the connection handler of the single active device
    connection) appends to the current session file.
    """

    def __init__(
        self,
        logs_dir: Path,
        credential_path: Path,
        fsync_records: bool = True,
        clock: Callable[[], float] = time.time,
    ):
        self._logs_dir = Path(logs_dir)
        self._credential_path = Path(credential_path)
        self._fsync = fsync_records
        self._clock = clock

        self._session_number: int = 0
        self._session_file: Optional[Path] = None

        self._logs_dir.mkdir(parents=True, exist_ok=True)

    @property
    def logs_dir(self) -> Path:
        return self._logs_dir

    @property
    def session_number(self) -> int:
        return self._session_number

    @property
    def session_file(self) -> Optional[Path]:
        return self._session_file

    def session_count(self) -> int:
        return len(list_session_files(self._logs_dir))

    def start_session(self) -> SessionStats:
        """
        Open a new session: assign the next ordinal, create its empty log
        file, and compute aggregate statistics over all session files.

        The previous session (if any) is implicitly closed.
        """
        number = self.session_count() + 1
        path = session_path(self._logs_dir, number)
        if path.exists():
            raise ConsistencyViolation(
                f"Session file {path} already exists but {number - 1} session files were counted"
            )

        path.touch()
        self._session_number = number
        self._session_file = path
        logger.info("Session %d opened at %s", number, path)

        return self.compute_statistics()

    def compute_statistics(self) -> SessionStats:
        """Rescan every session file and aggregate uptime and record counts."""
        files = list_session_files(self._logs_dir)
        if not files:
            return SessionStats(session_number=self._session_number)

        now = self._clock()
        today = midnight_today(now)
        total_ms = 0.0
        today_ms = 0.0
        total_logs = 0

        for path in files:
            lines = read_records(path)
            total_logs += len(lines)

            uptime = self._session_uptime(path, lines, now)
            total_ms += uptime.duration_ms
            if uptime.start_time >= today:
                today_ms += uptime.duration_ms

        return SessionStats(
            session_number=self._session_number,
            total_uptime_ms=int(total_ms),
            today_uptime_ms=int(today_ms),
            total_logs=total_logs,
        )

    def _session_uptime(self, path: Path, lines: List[str], now: float) -> SessionUptime:
        if not lines:
            return SessionUptime(duration_ms=0.0, start_time=now)

        first_ts, last_ts = self._edge_timestamps(path, lines)
        return SessionUptime(duration_ms=(last_ts - first_ts) * 1000.0, start_time=first_ts)

    @staticmethod
    def _edge_timestamps(path: Path, lines: List[str]) -> Tuple[float, float]:
        stamps = []
        for line in (lines[0], lines[-1]):
            try:
                stamp = json.loads(line)["timestamp"]
            except (json.JSONDecodeError, KeyError, TypeError) as e:
                raise ConsistencyViolation(f"Corrupt record in {path}: {line[:200]!r} ({e})")
            if isinstance(stamp, bool) or not isinstance(stamp, (int, float)):
                raise ConsistencyViolation(f"Corrupt timestamp in {path}: {stamp!r}")
            stamps.append(float(stamp))
        return stamps[0], stamps[1]

    def read_credential(self) -> str:
        """Runtime credential forwarded to the device in the handshake."""
        return self._credential_path.read_text(encoding="utf-8").strip()

    def append(self, record: dict):
        """
        Durably append one record to the current session file.

        Returns only after the line is flushed (and fsynced when configured),
        so the caller may acknowledge the record afterwards.
        """
        if self._session_file is None:
            raise ProtocolViolation(f"Record received before any session was started: {record!r}")

        line = json.dumps(record, ensure_ascii=False) + "\n"
        with open(self._session_file, "a", encoding="utf-8") as f:
            f.write(line)
            f.flush()
            if self._fsync:
                os.fsync(f.fileno())
