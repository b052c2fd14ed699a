"""
Speech session state machine.

Tracks where the device-side speech session is in its lifecycle and enforces
valid transitions. Every transition is logged; an undefined transition is
logged and ignored (the state is left unchanged).

States: DISCONNECTED, CONNECTING, SESSION_ESTABLISHED, LISTENING,
        SPEECH_DETECTED, PROMPT_EXTRACTION_REQUESTED, AWAITING_AUDIO_RESPONSE, IDLE

The machine is driven synchronously by the controller task, which owns it.
"""

import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Dict, List

from ..performance.metrics import get_metrics

logger = logging.getLogger(__name__)


class ControllerState(Enum):
    """Lifecycle states of the speech session controller."""
    DISCONNECTED = "DISCONNECTED"
    CONNECTING = "CONNECTING"
    SESSION_ESTABLISHED = "SESSION_ESTABLISHED"
    LISTENING = "LISTENING"
    SPEECH_DETECTED = "SPEECH_DETECTED"
    PROMPT_EXTRACTION_REQUESTED = "PROMPT_EXTRACTION_REQUESTED"
    AWAITING_AUDIO_RESPONSE = "AWAITING_AUDIO_RESPONSE"
    IDLE = "IDLE"


class Trigger(Enum):
    """Inputs that drive state transitions."""
    CONNECT = "connect"
    SESSION_CREATED = "session_created"
    MIC_ENABLED = "mic_enabled"
    SPEECH_STARTED = "speech_started"
    SPEECH_STOPPED = "speech_stopped"
    RESPONSE_DONE = "response_done"
    MIC_RELEASED = "mic_released"
    RESPONSE_REQUESTED = "response_requested"
    DISCONNECT = "disconnect"


S = ControllerState
T = Trigger

# Valid state transitions: (current_state, trigger) -> next_state
VALID_TRANSITIONS: Dict[tuple, ControllerState] = {
    # Connection
    (S.DISCONNECTED, T.CONNECT): S.CONNECTING,
    (S.CONNECTING, T.SESSION_CREATED): S.SESSION_ESTABLISHED,
    (S.SESSION_ESTABLISHED, T.MIC_ENABLED): S.LISTENING,
    # Voice activity
    (S.LISTENING, T.SPEECH_STARTED): S.SPEECH_DETECTED,
    (S.SPEECH_DETECTED, T.SPEECH_STOPPED): S.PROMPT_EXTRACTION_REQUESTED,
    (S.PROMPT_EXTRACTION_REQUESTED, T.SPEECH_STARTED): S.SPEECH_DETECTED,
    (S.PROMPT_EXTRACTION_REQUESTED, T.RESPONSE_DONE): S.LISTENING,
    # Responses finishing while the user is still talking or listening
    (S.LISTENING, T.RESPONSE_DONE): S.LISTENING,
    (S.SPEECH_DETECTED, T.RESPONSE_DONE): S.SPEECH_DETECTED,
    (S.IDLE, T.RESPONSE_DONE): S.IDLE,
    # Microphone released
    (S.LISTENING, T.MIC_RELEASED): S.IDLE,
    (S.SPEECH_DETECTED, T.MIC_RELEASED): S.IDLE,
    (S.PROMPT_EXTRACTION_REQUESTED, T.MIC_RELEASED): S.IDLE,
    # Spoken responses
    (S.IDLE, T.RESPONSE_REQUESTED): S.AWAITING_AUDIO_RESPONSE,
    (S.AWAITING_AUDIO_RESPONSE, T.RESPONSE_DONE): S.IDLE,
    # Microphone pressed again (playback is stopped first)
    (S.IDLE, T.MIC_ENABLED): S.LISTENING,
    (S.AWAITING_AUDIO_RESPONSE, T.MIC_ENABLED): S.LISTENING,
}

# Any connected state may drop back to DISCONNECTED
for _state in ControllerState:
    if _state is not ControllerState.DISCONNECTED:
        VALID_TRANSITIONS[(_state, Trigger.DISCONNECT)] = ControllerState.DISCONNECTED


@dataclass
class StateTransitionRecord:
    """Record of a state transition for logging and debugging."""
    from_state: ControllerState
    to_state: ControllerState
    trigger: Trigger
    timestamp: float
    duration_in_previous_state_ms: float


class SessionStateMachine:
    """Enforces VALID_TRANSITIONS and keeps a bounded transition history."""

    def __init__(self, initial: ControllerState = ControllerState.DISCONNECTED, max_history: int = 100):
        self._state = initial
        self._state_entered_at: float = time.monotonic()

        self._transition_history: List[StateTransitionRecord] = []
        self._max_history = max_history

        self._invalid_transition_count: int = 0
        self._total_transitions: int = 0
        self._metrics = get_metrics()

    @property
    def state(self) -> ControllerState:
        return self._state

    @property
    def invalid_transition_count(self) -> int:
        return self._invalid_transition_count

    def can_fire(self, trigger: Trigger) -> bool:
        return (self._state, trigger) in VALID_TRANSITIONS

    def fire(self, trigger: Trigger) -> bool:
        """
        Apply a trigger.

        Returns:
            True if the transition was valid and applied, False otherwise.
        """
        new_state = VALID_TRANSITIONS.get((self._state, trigger))

        if new_state is None:
            self._invalid_transition_count += 1
            logger.warning(
                f"Invalid transition: state={self._state.value}, "
                f"trigger={trigger.value}. Remaining in {self._state.value}. "
                f"Total invalid: {self._invalid_transition_count}"
            )
            return False

        old_state = self._state
        now = time.monotonic()
        duration_ms = (now - self._state_entered_at) * 1000

        self._state = new_state
        self._state_entered_at = now
        self._total_transitions += 1

        self._transition_history.append(StateTransitionRecord(
            from_state=old_state,
            to_state=new_state,
            trigger=trigger,
            timestamp=now,
            duration_in_previous_state_ms=duration_ms,
        ))
        if len(self._transition_history) > self._max_history:
            self._transition_history.pop(0)

        if old_state is not new_state:
            logger.info(
                f"State transition: {old_state.value} -> {new_state.value} "
                f"[trigger={trigger.value}, prev_duration={duration_ms:.1f}ms]"
            )
        self._metrics.record_state_transition(old_state.value, new_state.value, trigger.value)
        return True

    def get_status(self) -> dict:
        return {
            "state": self._state.value,
            "total_transitions": self._total_transitions,
            "invalid_transitions": self._invalid_transition_count,
            "time_in_current_state_ms": (time.monotonic() - self._state_entered_at) * 1000,
        }

    def get_recent_transitions(self, count: int = 10) -> List[StateTransitionRecord]:
        return self._transition_history[-count:]
