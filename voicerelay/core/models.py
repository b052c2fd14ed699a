"""
Data models shared by the device and the host.

Defines telemetry records, prompt envelopes and acknowledgments, handshake
statistics, and the per-session transmission record.
"""

import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, Optional

from .errors import FailureReason, ProtocolViolation


class LogType(Enum):
    """Tagged variant of a telemetry record."""
    LOG = "log"
    ERROR = "error"


@dataclass(frozen=True)
class LogRecord:
    """
    A single telemetry record produced on the device.

    Attributes:
        type: log or error
        message: Human-readable message
        origin_file: Source file that produced the record
        origin_function: Function that produced the record
        timestamp: Epoch seconds at creation
        id: Unique record id (acknowledged by the host)
    """
    type: LogType
    message: str
    origin_file: str
    origin_function: str
    timestamp: float = field(default_factory=time.time)
    id: str = field(default_factory=lambda: uuid.uuid4().hex)

    @property
    def is_error(self) -> bool:
        return self.type is LogType.ERROR

    def to_message(self) -> dict:
        """Wire/file representation (one JSON object per line)."""
        return {
            "type": self.type.value,
            "id": self.id,
            "timestamp": self.timestamp,
            "originFile": self.origin_file,
            "originFunction": self.origin_function,
            "message": self.message,
        }

    @classmethod
    def from_message(cls, message: dict) -> "LogRecord":
        """Build a record from an already shape-checked message."""
        try:
            log_type = LogType(message["type"])
        except (KeyError, ValueError):
            raise ProtocolViolation(f"Not a telemetry record: {message!r}")
        return cls(
            type=log_type,
            message=message["message"],
            origin_file=message["originFile"],
            origin_function=message["originFunction"],
            timestamp=float(message["timestamp"]),
            id=message["id"],
        )


@dataclass(frozen=True)
class PromptEnvelope:
    """
    An injection request.

    call_id correlates the envelope with the inference round trip on the
    device. It stays local and is not transmitted.
    """
    text: str
    category: str = "general"
    timestamp: float = field(default_factory=time.time)
    call_id: Optional[str] = None

    def to_message(self) -> dict:
        return {
            "type": "prompt",
            "text": self.text,
            "category": self.category,
            "timestamp": self.timestamp,
        }

    @classmethod
    def from_message(cls, message: dict) -> "PromptEnvelope":
        return cls(
            text=message["text"],
            category=message["category"],
            timestamp=float(message["timestamp"]),
        )


class PromptStatus(Enum):
    SUCCESS = "success"
    ERROR = "error"


@dataclass(frozen=True)
class PromptAck:
    """Injection result returned by the host."""
    status: PromptStatus
    original_prompt: str
    error: Optional[str] = None
    reason: Optional[FailureReason] = None
    timestamp: float = field(default_factory=time.time)

    @property
    def succeeded(self) -> bool:
        return self.status is PromptStatus.SUCCESS

    @classmethod
    def success(cls, original_prompt: str) -> "PromptAck":
        return cls(status=PromptStatus.SUCCESS, original_prompt=original_prompt)

    @classmethod
    def failure(cls, original_prompt: str, reason: FailureReason, error: str) -> "PromptAck":
        return cls(
            status=PromptStatus.ERROR,
            original_prompt=original_prompt,
            error=error,
            reason=reason,
        )

    def to_message(self) -> dict:
        message = {
            "type": "prompt_ack",
            "status": self.status.value,
            "originalPrompt": self.original_prompt,
            "timestamp": self.timestamp,
        }
        if self.error is not None:
            message["error"] = self.error
        if self.reason is not None:
            message["reason"] = self.reason.value
        return message

    @classmethod
    def from_message(cls, message: dict) -> "PromptAck":
        try:
            status = PromptStatus(message["status"])
        except ValueError:
            raise ProtocolViolation(f"Unknown prompt_ack status: {message['status']!r}")

        reason = None
        if message.get("reason") is not None:
            try:
                reason = FailureReason(message["reason"])
            except ValueError:
                raise ProtocolViolation(f"Unknown prompt_ack reason: {message['reason']!r}")

        if status is PromptStatus.ERROR and not isinstance(message.get("error"), str):
            raise ProtocolViolation(f"Failed prompt_ack without error text: {message!r}")

        return cls(
            status=status,
            original_prompt=message["originalPrompt"],
            error=message.get("error"),
            reason=reason,
            timestamp=float(message.get("timestamp", time.time())),
        )

    def to_function_output(self) -> dict:
        """Result payload resolving the inference service's function call."""
        if self.succeeded:
            return {"status": "success"}
        return {"status": "error", "error": self.error}


@dataclass(frozen=True)
class SessionStats:
    """
    Handshake payload: the assigned session and aggregate history.

    Uptimes are integer milliseconds recomputed by the host from every
    historical session file at handshake time.
    """
    session_number: int
    total_uptime_ms: int = 0
    today_uptime_ms: int = 0
    total_logs: int = 0

    def to_handshake(self, credential: str) -> dict:
        return {
            "type": "handshake",
            "sessionNumber": self.session_number,
            "totalUptime": self.total_uptime_ms,
            "todayUptime": self.today_uptime_ms,
            "totalLogs": self.total_logs,
            "credential": credential,
        }

    @classmethod
    def from_handshake(cls, message: dict) -> "SessionStats":
        return cls(
            session_number=message["sessionNumber"],
            total_uptime_ms=message["totalUptime"],
            today_uptime_ms=message["todayUptime"],
            total_logs=message["totalLogs"],
        )


class TransmissionRecord:
    """
    Tracks delivery of telemetry records: logId -> acknowledged.

    Each sent record must be acknowledged exactly once. Acks may arrive in
    any order. Only unacknowledged records and the most recently acknowledged
    one are held; acknowledged ids are kept to reject duplicates.
    """

    def __init__(self):
        self._acked: Dict[str, bool] = {}
        self._unacked: Dict[str, LogRecord] = {}
        self._acked_count: int = 0
        self._last_acked: Optional[LogRecord] = None

    def mark_sent(self, record: LogRecord):
        if record.id in self._acked:
            raise ProtocolViolation(f"Record {record.id} transmitted twice")
        self._acked[record.id] = False
        self._unacked[record.id] = record

    def mark_acked(self, log_id: str) -> LogRecord:
        if log_id not in self._acked:
            raise ProtocolViolation(f"Ack for unknown record id: {log_id}")
        if self._acked[log_id]:
            raise ProtocolViolation(f"Duplicate ack for record id: {log_id}")
        self._acked[log_id] = True
        self._acked_count += 1
        self._last_acked = self._unacked.pop(log_id)
        return self._last_acked

    def is_acked(self, log_id: str) -> bool:
        return self._acked.get(log_id, False)

    @property
    def pending_count(self) -> int:
        return len(self._unacked)

    @property
    def acked_count(self) -> int:
        return self._acked_count

    @property
    def last_acked(self) -> Optional[LogRecord]:
        return self._last_acked

    def __len__(self) -> int:
        return len(self._acked)
