"""
Unit tests for the speech session state machine.

- Valid transitions along the connect -> listen -> extract -> respond path
- Invalid transitions are rejected and leave the state unchanged
- Transition history records from-state, to-state and trigger
"""

import pytest

from voicerelay.core.state_machine import (
    ControllerState,
    SessionStateMachine,
    Trigger,
    VALID_TRANSITIONS,
)


@pytest.fixture
def sm():
    return SessionStateMachine()


def drive(sm, *triggers):
    for trigger in triggers:
        assert sm.fire(trigger), f"{trigger} rejected in {sm.state}"


# ── Valid Transitions ──

def test_starts_disconnected(sm):
    assert sm.state == ControllerState.DISCONNECTED


def test_connect_to_listening(sm):
    drive(sm, Trigger.CONNECT, Trigger.SESSION_CREATED, Trigger.MIC_ENABLED)
    assert sm.state == ControllerState.LISTENING


def test_speech_cycle_requests_extraction(sm):
    drive(sm, Trigger.CONNECT, Trigger.SESSION_CREATED, Trigger.MIC_ENABLED)
    drive(sm, Trigger.SPEECH_STARTED)
    assert sm.state == ControllerState.SPEECH_DETECTED

    drive(sm, Trigger.SPEECH_STOPPED)
    assert sm.state == ControllerState.PROMPT_EXTRACTION_REQUESTED

    drive(sm, Trigger.RESPONSE_DONE)
    assert sm.state == ControllerState.LISTENING


def test_release_then_spoken_response_then_idle(sm):
    drive(sm, Trigger.CONNECT, Trigger.SESSION_CREATED, Trigger.MIC_ENABLED)
    drive(sm, Trigger.MIC_RELEASED)
    assert sm.state == ControllerState.IDLE

    drive(sm, Trigger.RESPONSE_REQUESTED)
    assert sm.state == ControllerState.AWAITING_AUDIO_RESPONSE

    drive(sm, Trigger.RESPONSE_DONE)
    assert sm.state == ControllerState.IDLE


def test_mic_pressed_during_spoken_response(sm):
    drive(sm, Trigger.CONNECT, Trigger.SESSION_CREATED, Trigger.MIC_ENABLED,
          Trigger.MIC_RELEASED, Trigger.RESPONSE_REQUESTED)
    drive(sm, Trigger.MIC_ENABLED)
    assert sm.state == ControllerState.LISTENING


def test_disconnect_from_any_connected_state():
    for state in ControllerState:
        if state is ControllerState.DISCONNECTED:
            continue
        assert VALID_TRANSITIONS[(state, Trigger.DISCONNECT)] == ControllerState.DISCONNECTED


# ── Invalid Transitions ──

def test_invalid_transition_leaves_state_unchanged(sm):
    assert not sm.fire(Trigger.SPEECH_STOPPED)
    assert sm.state == ControllerState.DISCONNECTED
    assert sm.invalid_transition_count == 1


def test_speech_before_session_is_rejected(sm):
    drive(sm, Trigger.CONNECT)
    assert not sm.fire(Trigger.SPEECH_STARTED)
    assert sm.state == ControllerState.CONNECTING


def test_can_fire_matches_table(sm):
    assert sm.can_fire(Trigger.CONNECT)
    assert not sm.can_fire(Trigger.MIC_RELEASED)


# ── History ──

def test_transitions_are_recorded(sm):
    drive(sm, Trigger.CONNECT, Trigger.SESSION_CREATED)

    recent = sm.get_recent_transitions()
    assert [(r.from_state, r.to_state, r.trigger) for r in recent] == [
        (ControllerState.DISCONNECTED, ControllerState.CONNECTING, Trigger.CONNECT),
        (ControllerState.CONNECTING, ControllerState.SESSION_ESTABLISHED, Trigger.SESSION_CREATED),
    ]
    assert all(r.duration_in_previous_state_ms >= 0 for r in recent)


def test_status_reports_counts(sm):
    drive(sm, Trigger.CONNECT)
    sm.fire(Trigger.RESPONSE_DONE)

    status = sm.get_status()
    assert status["state"] == "CONNECTING"
    assert status["total_transitions"] == 1
    assert status["invalid_transitions"] == 1


def test_history_is_bounded():
    sm = SessionStateMachine(max_history=3)
    drive(sm, Trigger.CONNECT, Trigger.SESSION_CREATED, Trigger.MIC_ENABLED)
    for _ in range(5):
        drive(sm, Trigger.MIC_RELEASED, Trigger.MIC_ENABLED)

    assert len(sm.get_recent_transitions(count=10)) == 3
