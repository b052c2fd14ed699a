"""
Per-session verification state.

A TestState is fed one session-log record at a time. After every record it
re-renders a status string from its flags; whenever that string changes it
decides the composite outcome and produces the lines to append to the
session's result file.

Outcome transitions:
    PENDING -> PASSED       once, when every milestone is seen and no error
    PASSED  -> LATE_ERROR   on the first error after passing
    PENDING -> FAILED       on an error before passing (repeats per new error)
    LATE_ERROR repeats per new error and never reverts

The outcome is evaluated after each record, so the final state does not
depend on how the log was chunked when it was read.
"""

import json
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Dict, List, Optional, Tuple

from ..core.errors import ProtocolViolation

PASS_MARK = "✅"
FAIL_MARK = "❌"


class Outcome(Enum):
    PENDING = "pending"
    PASSED = "passed"
    FAILED = "failed"
    LATE_ERROR = "late_error"


@dataclass(frozen=True)
class ErrorDetail:
    file: str
    function: str
    message: str

    def summary(self) -> str:
        return f"{self.file}:{self.function}:{self.message}"


def format_timestamp(epoch: float) -> str:
    """Local time as dd/mm/yyyy, HH:MM:SS."""
    return time.strftime("%d/%m/%Y, %H:%M:%S", time.localtime(epoch))


def result_header(milestones: Tuple[str, ...], started_at: float) -> str:
    """First lines of a session's result file."""
    lines = [f"🚀 Test Started at {format_timestamp(started_at)}", "Requirements:"]
    for i, milestone in enumerate(milestones, start=1):
        lines.append(f'{i}) "{milestone}"')
    lines.append(f"{len(milestones) + 1}) NO errors")
    return "\n".join(lines) + "\n\n"


@dataclass
class TestState:
    """Mutable verification record for one session."""
    __test__ = False  # not a pytest test class

    session_number: int
    milestones: Tuple[str, ...] = ("Successful handshake", "Model responded")
    clock: Callable[[], float] = field(default=time.time, repr=False)

    milestone_hits: Dict[str, bool] = field(default_factory=dict)
    errors: List[ErrorDetail] = field(default_factory=list)
    last_status: Optional[str] = None
    outcome: Outcome = Outcome.PENDING
    last_processed_index: int = -1

    def __post_init__(self):
        for milestone in self.milestones:
            self.milestone_hits.setdefault(milestone, False)

    @property
    def error_detected(self) -> bool:
        return bool(self.errors)

    @property
    def all_requirements_met(self) -> bool:
        return all(self.milestone_hits.values()) and not self.errors

    def render_status(self) -> str:
        parts = [
            f"T{i}:{PASS_MARK if self.milestone_hits[m] else FAIL_MARK}"
            for i, m in enumerate(self.milestones, start=1)
        ]
        err = f"{FAIL_MARK}({len(self.errors)})" if self.errors else PASS_MARK
        parts.append(f"Err:{err}")
        return " ".join(parts)

    def error_summary(self) -> str:
        return "; ".join(e.summary() for e in self.errors)

    def apply_line(self, line: str) -> List[str]:
        """
        Apply one raw log line.

        Raises:
            ProtocolViolation: if the line is not a well-formed record.
        """
        try:
            record = json.loads(line)
        except json.JSONDecodeError as e:
            raise ProtocolViolation(
                f"Session {self.session_number}: unparseable record ({e}): {line[:200]!r}"
            )
        return self.apply_record(record)

    def apply_record(self, record) -> List[str]:
        """Apply one parsed record; returns result-file lines to append (possibly none)."""
        if not isinstance(record, dict) or record.get("type") not in ("log", "error"):
            raise ProtocolViolation(f"Session {self.session_number}: not a log record: {record!r}")
        message = record.get("message")
        if not isinstance(message, str):
            raise ProtocolViolation(f"Session {self.session_number}: record without message: {record!r}")

        self.last_processed_index += 1

        if record["type"] == "error":
            self.errors.append(ErrorDetail(
                file=str(record.get("originFile", "unknown")),
                function=str(record.get("originFunction", "unknown")),
                message=message,
            ))

        for milestone in self.milestones:
            if milestone in message:
                self.milestone_hits[milestone] = True

        status = self.render_status()
        if status == self.last_status:
            return []
        self.last_status = status
        return self._transition(status)

    def _transition(self, status: str) -> List[str]:
        if self.all_requirements_met and self.outcome is Outcome.PENDING:
            self.outcome = Outcome.PASSED
            return [
                f"\n{PASS_MARK} ALL TESTS PASSED! {status}\n",
                f"Test completed successfully at {format_timestamp(self.clock())}\n",
            ]

        if self.errors and self.outcome in (Outcome.PASSED, Outcome.LATE_ERROR):
            self.outcome = Outcome.LATE_ERROR
            return [f"{FAIL_MARK} LATE ERROR! {status} | {self.error_summary()}\n"]

        if self.errors:
            self.outcome = Outcome.FAILED
            return [f"{FAIL_MARK} FAILED! {status} | {self.error_summary()}\n"]

        return [f"⏳ Waiting... {status}\n"]
