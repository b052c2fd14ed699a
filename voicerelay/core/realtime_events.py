"""
Inference service event vocabulary.

Builders for the client events the controller sends over the realtime
channel, and a parser that turns a received text frame into an event dict.

Client events sent:
    session.update              session configuration (on session.created)
    input_audio_buffer.append   base64 PCM16 @ 24 kHz capture audio
    response.create             prompt extraction / acknowledgment / outcome
    conversation.item.create    function_call_output resolving a prompt call
"""

import json
from typing import Optional

from ..config import AudioConfig, RealtimeConfig
from .errors import ProtocolViolation

# Server events with dedicated handlers in the controller
SESSION_CREATED = "session.created"
SPEECH_STARTED = "input_audio_buffer.speech_started"
SPEECH_STOPPED = "input_audio_buffer.speech_stopped"
BUFFER_COMMITTED = "input_audio_buffer.committed"
RESPONSE_CREATED = "response.created"
RESPONSE_DONE = "response.done"
OUTPUT_ITEM_ADDED = "response.output_item.added"
FUNCTION_CALL_ARGUMENTS_DONE = "response.function_call_arguments.done"
AUDIO_DELTA_EVENTS = ("response.output_audio.delta", "response.audio.delta")
AUDIO_DONE = "response.output_audio.done"
TRANSCRIPT_DONE = "response.output_audio_transcript.done"
OUTPUT_TEXT_DONE = "response.output_text.done"
ERROR = "error"

# Server events that are expected and need no handling
QUIET_EVENTS = frozenset({
    "session.updated",
    "conversation.item.created",
    "conversation.item.added",
    "conversation.item.done",
    "response.content_part.added",
    "response.content_part.done",
    "response.output_item.done",
    "response.audio.done",
    "response.audio_transcript.delta",
    "response.audio_transcript.done",
    "response.output_audio_transcript.delta",
    "response.output_text.delta",
    "response.text.delta",
    "response.text.done",
    "response.function_call_arguments.delta",
    "rate_limits.updated",
    "conversation.item.input_audio_transcription.delta",
    "conversation.item.input_audio_transcription.completed",
})


def parse_event(text) -> dict:
    """
    Parse one frame received from the inference service.

    Raises:
        ProtocolViolation: if the frame is not a JSON object with a non-empty
            string "type".
    """
    if isinstance(text, bytes):
        try:
            text = text.decode("utf-8")
        except UnicodeDecodeError:
            raise ProtocolViolation(f"Binary frame received ({len(text)} bytes) - cannot process")

    try:
        event = json.loads(text)
    except json.JSONDecodeError as e:
        raise ProtocolViolation(f"Failed to parse message as JSON ({e}): {text[:200]}")

    if not isinstance(event, dict):
        raise ProtocolViolation(f"Event is not a JSON object: {text[:200]}")

    event_type = event.get("type")
    if not isinstance(event_type, str) or not event_type:
        raise ProtocolViolation(f"Message missing 'type' field: {text[:200]}")
    return event


def session_update(realtime: RealtimeConfig, audio: AudioConfig) -> dict:
    """Session configuration sent once the session is created."""
    return {
        "type": "session.update",
        "session": {
            "type": "realtime",
            "output_modalities": ["audio"],
            "instructions": realtime.instructions,
            "audio": {
                "input": {
                    "format": {"type": "audio/pcm", "rate": audio.target_sample_rate},
                    "turn_detection": {
                        "type": "server_vad",
                        "threshold": realtime.vad_threshold,
                        "prefix_padding_ms": realtime.vad_prefix_padding_ms,
                        "silence_duration_ms": realtime.vad_silence_duration_ms,
                        "create_response": False,
                        "interrupt_response": True,
                    },
                },
                "output": {
                    "format": {"type": "audio/pcm", "rate": audio.playback_sample_rate},
                    "voice": realtime.voice,
                    "speed": realtime.speech_speed,
                },
            },
            "tools": [prompt_tool(realtime)],
            "tool_choice": "none",
        },
    }


def prompt_tool(realtime: RealtimeConfig) -> dict:
    """The prompt extraction function: one required string field, "prompt"."""
    return {
        "type": "function",
        "name": realtime.prompt_tool_name,
        "description": realtime.prompt_tool_description,
        "parameters": {
            "type": "object",
            "properties": {
                "prompt": {
                    "type": "string",
                    "description": realtime.prompt_field_description,
                },
            },
            "required": ["prompt"],
            "additionalProperties": False,
        },
    }


def extraction_response(realtime: RealtimeConfig) -> dict:
    """Force a call to the prompt function, text output only."""
    return {
        "type": "response.create",
        "response": {
            "instructions": realtime.extraction_instructions,
            "tool_choice": {"type": "function", "name": realtime.prompt_tool_name},
            "output_modalities": ["text"],
        },
    }


def spoken_response(instructions: Optional[str] = None) -> dict:
    """A plain spoken response (acknowledgment or prompt outcome)."""
    if instructions is None:
        return {"type": "response.create"}
    return {"type": "response.create", "response": {"instructions": instructions}}


def function_call_output(call_id: str, output: dict) -> dict:
    """Resolve a function call; the output is carried as a JSON string."""
    return {
        "type": "conversation.item.create",
        "item": {
            "type": "function_call_output",
            "call_id": call_id,
            "output": json.dumps(output),
        },
    }


def audio_append(audio_base64: str) -> dict:
    return {"type": "input_audio_buffer.append", "audio": audio_base64}


def parse_prompt_arguments(event: dict) -> tuple:
    """
    Validate a response.function_call_arguments.done event.

    Returns:
        (call_id, prompt)

    Raises:
        ProtocolViolation: on an empty call id, non-JSON-object arguments, or a
            missing/non-string "prompt".
    """
    call_id = event.get("call_id")
    if not isinstance(call_id, str) or not call_id:
        raise ProtocolViolation(f"Function call without call_id: {event!r}")

    arguments = event.get("arguments")
    if not isinstance(arguments, str):
        raise ProtocolViolation(f"Function call {call_id} without arguments string: {event!r}")
    try:
        parsed = json.loads(arguments)
    except json.JSONDecodeError as e:
        raise ProtocolViolation(f"Function call {call_id} arguments are not JSON ({e}): {arguments[:200]}")

    if not isinstance(parsed, dict) or not isinstance(parsed.get("prompt"), str):
        raise ProtocolViolation(f"Function call {call_id} arguments lack a string 'prompt': {arguments[:200]}")
    return call_id, parsed["prompt"]


def extract_text_prompt(text: str) -> Optional[str]:
    """Pull {"prompt": ...} out of a text output, or None when it isn't there."""
    try:
        parsed = json.loads(text)
    except json.JSONDecodeError:
        return None
    if isinstance(parsed, dict) and isinstance(parsed.get("prompt"), str):
        return parsed["prompt"]
    return None
