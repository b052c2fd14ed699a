"""
Error taxonomy for the relay.

Fatal errors terminate the process that observes them: the supervisor logs
them and exits non-zero. There is no reconnect and no local recovery for these.

Recoverable failures (inference service errors, injection failures) are not
raised through the supervisor. They travel as structured results: an error
LogRecord or an error PromptAck.
"""

from enum import Enum


class RelayError(Exception):
    """Base class for all relay errors."""


class FatalError(RelayError):
    """An unrecoverable condition. The owning process must terminate."""

    exit_code = 1


class ProtocolViolation(FatalError):
    """A malformed or unexpected message, event or record."""


class TransportFailure(FatalError):
    """A long-lived stream failed (reset, unexpected EOF, socket error)."""


class ConsistencyViolation(FatalError):
    """Observed session files disagree with the expected ordinal sequence."""


class InferenceServiceError(RelayError):
    """An error event surfaced by the inference service. Logged, not fatal."""

    def __init__(self, error_type: str, message: str):
        super().__init__(f"Error type: {error_type}, message: {message}")
        self.error_type = error_type
        self.message = message


class FailureReason(Enum):
    """Discriminating reason carried by a failed prompt_ack."""
    INJECTION_FAILED = "injection_failed"
    NO_CONVERSATION_SOURCE = "no_conversation_source"
    PROMPT_NOT_FOUND = "prompt_not_found"
    VERIFICATION_ERROR = "verification_error"


class InjectionFailure(RelayError):
    """The injector failed, or the injected text could not be verified. Not fatal."""

    def __init__(self, reason: FailureReason, message: str):
        super().__init__(message)
        self.reason = reason
        self.message = message
