"""
voicerelay - spoken prompts relayed from a handheld device into a terminal.

Three cooperating processes:
  device   Streams microphone audio to a realtime inference service, extracts
           a structured prompt via a function call, and forwards it to the host
  host     Persists per-session telemetry, injects prompts into a terminal,
           and verifies them against the terminal's transcript
  harness  Watches session logs and certifies each run as passed or failed

Device and host talk over one newline-delimited JSON stream.
"""

__version__ = "0.1.0"

from .config import (
    AudioConfig,
    RealtimeConfig,
    TransportConfig,
    LedgerConfig,
    HarnessConfig,
    RelayConfig,
    default_relay_config,
    load_config_from_env,
)

from .core.errors import (
    RelayError,
    FatalError,
    ProtocolViolation,
    TransportFailure,
    ConsistencyViolation,
    InferenceServiceError,
    InjectionFailure,
    FailureReason,
)

from .core.models import (
    LogRecord,
    LogType,
    PromptEnvelope,
    PromptAck,
    PromptStatus,
    SessionStats,
    TransmissionRecord,
)

from .core.controller import SpeechSessionController
from .core.response_queue import ResponseScheduler, ResponseKind
from .core.state_machine import ControllerState, SessionStateMachine
from .core.audio_io import AudioPipeline
from .core.telemetry import Telemetry
from .core.supervisor import Supervisor

from .transport.client import TransportClient
from .transport.server import TransportServer

from .ledger.session_ledger import SessionLedger
from .ledger.verifier import PromptRelay, TranscriptVerifier
from .ledger.injector import AppleScriptInjector

from .harness.harness import TestHarness
from .harness.test_state import TestState, Outcome
