"""
Device <-> host wire protocol.

Newline-delimited JSON objects over one persistent stream. Every message
carries a discriminating "type" field; each type has a fixed direction and a
fixed set of required fields. Anything else is a ProtocolViolation.

    type        direction        required fields
    start       client->server   -
    handshake   server->client   sessionNumber, totalUptime, todayUptime, totalLogs, credential
    log/error   client->server   id, timestamp, originFile, originFunction, message
    ack         server->client   logId
    prompt      client->server   text, category, timestamp
    prompt_ack  server->client   status, originalPrompt, [error], [reason]
"""

import json
import logging
from enum import Enum
from typing import Dict, Tuple

from ..core.errors import ProtocolViolation

logger = logging.getLogger(__name__)

NUMBER = (int, float)


class Direction(Enum):
    CLIENT_TO_SERVER = "client->server"
    SERVER_TO_CLIENT = "server->client"


# type -> (direction, {field: accepted python types})
MESSAGE_SCHEMAS: Dict[str, Tuple[Direction, Dict[str, tuple]]] = {
    "start": (Direction.CLIENT_TO_SERVER, {}),
    "handshake": (Direction.SERVER_TO_CLIENT, {
        "sessionNumber": (int,),
        "totalUptime": NUMBER,
        "todayUptime": NUMBER,
        "totalLogs": (int,),
        "credential": (str,),
    }),
    "log": (Direction.CLIENT_TO_SERVER, {
        "id": (str,),
        "timestamp": NUMBER,
        "originFile": (str,),
        "originFunction": (str,),
        "message": (str,),
    }),
    "error": (Direction.CLIENT_TO_SERVER, {
        "id": (str,),
        "timestamp": NUMBER,
        "originFile": (str,),
        "originFunction": (str,),
        "message": (str,),
    }),
    "ack": (Direction.SERVER_TO_CLIENT, {
        "logId": (str,),
    }),
    "prompt": (Direction.CLIENT_TO_SERVER, {
        "text": (str,),
        "category": (str,),
        "timestamp": NUMBER,
    }),
    "prompt_ack": (Direction.SERVER_TO_CLIENT, {
        "status": (str,),
        "originalPrompt": (str,),
    }),
}

# Optional fields that must still be well typed when present
OPTIONAL_FIELDS: Dict[str, Dict[str, tuple]] = {
    "prompt_ack": {"error": (str,), "reason": (str,), "timestamp": NUMBER},
}


def encode_message(message: dict) -> bytes:
    """Serialize one message as a single UTF-8 JSON line."""
    if not isinstance(message.get("type"), str) or message["type"] not in MESSAGE_SCHEMAS:
        raise ProtocolViolation(f"Refusing to send message of unknown type: {message!r}")
    # json.dumps escapes embedded newlines, so one message is always one line
    return (json.dumps(message, ensure_ascii=False, separators=(",", ":")) + "\n").encode("utf-8")


def decode_message(line: bytes, expected: Direction) -> dict:
    """
    Parse and validate one received line.

    Args:
        line: Raw bytes of one frame (with or without the trailing newline).
        expected: Direction the receiver accepts.

    Returns:
        The validated message dict.

    Raises:
        ProtocolViolation: on any parse failure or shape mismatch.
    """
    try:
        text = line.decode("utf-8").strip()
        message = json.loads(text)
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        raise ProtocolViolation(f"Unparseable frame ({e}): {line[:200]!r}")

    validate_message(message, expected)
    return message


def validate_message(message, expected: Direction):
    """Check the type, direction, and required field types of a message."""
    if not isinstance(message, dict):
        raise ProtocolViolation(f"Frame is not a JSON object: {message!r}")

    msg_type = message.get("type")
    if not isinstance(msg_type, str) or not msg_type:
        raise ProtocolViolation(f"Message missing 'type' field: {message!r}")

    schema = MESSAGE_SCHEMAS.get(msg_type)
    if schema is None:
        raise ProtocolViolation(f"Unknown message type: {msg_type!r}")

    direction, required = schema
    if direction is not expected:
        raise ProtocolViolation(
            f"Message type {msg_type!r} not allowed {expected.value} "
            f"(only {direction.value})"
        )

    for name, types in required.items():
        _check_field(message, msg_type, name, types, required=True)

    for name, types in OPTIONAL_FIELDS.get(msg_type, {}).items():
        _check_field(message, msg_type, name, types, required=False)


def _check_field(message: dict, msg_type: str, name: str, types: tuple, required: bool):
    if name not in message or message[name] is None:
        if required:
            raise ProtocolViolation(f"{msg_type} message missing required field {name!r}: {message!r}")
        return
    value = message[name]
    # bool is an int subclass; never accept it where a number is expected
    if isinstance(value, bool) or not isinstance(value, types):
        raise ProtocolViolation(
            f"{msg_type} field {name!r} has wrong type {type(value).__name__}: {message!r}"
        )


def start_message() -> dict:
    return {"type": "start"}


def ack_message(log_id: str) -> dict:
    return {"type": "ack", "logId": log_id}
