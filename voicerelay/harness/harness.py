"""
Verification harness.

Watches the host's session-log directory and certifies each new session:

    <logs_dir>/<n>.json   session log (written by the host)
    <results_dir>/<n>.txt running result (written here)

At startup the number of session logs must equal the number of result files;
sessions that already exist are not re-tested. Each newly created <n>.json
must be numbered exactly one past the current number of result files.

The watch loop polls at a fixed interval. Growth of a watched session log is
parsed incrementally: only newly appended complete lines are read, and a
trailing partial line is left for the next poll.
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Dict, List, Set

from ..config import HarnessConfig
from ..core.errors import ConsistencyViolation
from ..ledger.session_ledger import SESSION_SUFFIX
from ..performance.metrics import get_metrics
from .test_state import TestState, result_header

logger = logging.getLogger(__name__)

RESULT_SUFFIX = ".txt"


@dataclass
class WatchedSession:
    log_path: Path
    result_path: Path
    state: TestState
    offset: int = 0  # bytes of the log consumed so far


def count_files(directory: Path, suffix: str) -> int:
    return sum(1 for p in directory.iterdir() if p.name.endswith(suffix))


class TestHarness:
    """
    Usage:
        harness = TestHarness(config)
        await harness.run()   # raises ConsistencyViolation / ProtocolViolation
    """
    __test__ = False  # not a pytest test class

    def __init__(self, config: HarnessConfig, clock: Callable[[], float] = time.time):
        self.config = config
        self._logs_dir = Path(config.logs_dir)
        self._results_dir = Path(config.results_dir)
        self._clock = clock

        self._known: Set[str] = set()
        self._sessions: Dict[int, WatchedSession] = {}
        self._prepared = False
        self._metrics = get_metrics()

    @property
    def sessions(self) -> Dict[int, WatchedSession]:
        return self._sessions

    def state(self, session_number: int) -> TestState:
        return self._sessions[session_number].state

    def prepare(self):
        """Create directories and check the startup file counts."""
        self._logs_dir.mkdir(parents=True, exist_ok=True)
        self._results_dir.mkdir(parents=True, exist_ok=True)

        logs = count_files(self._logs_dir, SESSION_SUFFIX)
        results = count_files(self._results_dir, RESULT_SUFFIX)
        if logs != results:
            raise ConsistencyViolation(f"File count mismatch! Logs: {logs}, Tests: {results}")

        self._known = {p.name for p in self._logs_dir.iterdir() if p.name.endswith(SESSION_SUFFIX)}
        self._prepared = True
        logger.info(f"Watching for new sessions in: {self._logs_dir} ({logs} existing)")

    async def run(self):
        if not self._prepared:
            self.prepare()
        while True:
            self.poll_once()
            await asyncio.sleep(self.config.poll_interval_seconds)

    def poll_once(self):
        """One watch iteration: pick up new sessions, then read growth of every watched one."""
        for path in self._new_session_files():
            self._open_session(path)

        for watched in self._sessions.values():
            self._read_growth(watched)

    def _new_session_files(self) -> List[Path]:
        new = [
            p for p in self._logs_dir.iterdir()
            if p.name.endswith(SESSION_SUFFIX) and p.name not in self._known
        ]
        return sorted(new, key=lambda p: _session_number(p))

    def _open_session(self, path: Path):
        self._known.add(path.name)
        number = _session_number(path)
        expected = count_files(self._results_dir, RESULT_SUFFIX) + 1
        if number != expected:
            raise ConsistencyViolation(f"Session number mismatch! Got {number}, expected {expected}")

        result_path = self._results_dir / f"{number}{RESULT_SUFFIX}"
        result_path.write_text(
            result_header(self.config.milestones, self._clock()),
            encoding="utf-8",
        )
        self._sessions[number] = WatchedSession(
            log_path=path,
            result_path=result_path,
            state=TestState(number, milestones=self.config.milestones, clock=self._clock),
        )
        logger.info(f"Testing session {number}")

    def _read_growth(self, watched: WatchedSession):
        with open(watched.log_path, "rb") as f:
            f.seek(watched.offset)
            data = f.read()

        end = data.rfind(b"\n")
        if end < 0:
            return
        complete = data[:end + 1]
        watched.offset += len(complete)

        lines: List[str] = []
        for raw in complete.decode("utf-8").split("\n"):
            if raw.strip():
                lines.extend(watched.state.apply_line(raw))

        if lines:
            self._append_result(watched, lines)

    def _append_result(self, watched: WatchedSession, lines: List[str]):
        with open(watched.result_path, "a", encoding="utf-8") as f:
            f.write("".join(lines))
        state = watched.state
        self._metrics.record_harness_outcome(state.outcome.value)
        logger.info(f"Session {state.session_number}: {state.outcome.value} {state.last_status}")


def _session_number(path: Path) -> int:
    stem = path.name[: -len(SESSION_SUFFIX)]
    try:
        return int(stem)
    except ValueError:
        raise ConsistencyViolation(f"Session log with non-numeric name: {path.name}")
