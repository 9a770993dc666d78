"""
Command Serializer

Converts between JSON text and the command / response dicts handled by
CommandHandler. The broker itself works on plain dicts; a transport calls
into here at its edge.

Wire format (command envelope), the command name is the first key:
  {"subscribe": "A", "filter": {"count": {"gt": 3}}, "projection": {"count": 1}}
  {"publish": "A", "message": {"body": "hello", "count": 4}}
  {"poll": ["<id>", "<id>"]}
  {"unsubscribe": "<id>"}
"""
from __future__ import annotations

import json
from typing import Any


class SerializationError(Exception):
    """Raised when serialization or deserialization fails."""


def serialize_response(response: dict[str, Any]) -> str:
    """
    Encode a response dict as a JSON string.

    Non-JSON-native values are coerced with str(). Raises SerializationError
    if encoding still fails.
    """
    try:
        return json.dumps(response, default=str)
    except (TypeError, ValueError) as exc:
        raise SerializationError(f"Failed to serialize response: {exc}") from exc


def deserialize_command(raw: str | bytes) -> tuple[str, dict[str, Any]]:
    """
    Decode a JSON command into (command name, command dict).

    Raises SerializationError if decoding fails or the envelope is not a
    non-empty JSON object.
    """
    if isinstance(raw, bytes):
        try:
            raw = raw.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise SerializationError(f"Command is not valid UTF-8: {exc}") from exc
    try:
        command = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise SerializationError(f"Failed to deserialize command: {exc}") from exc

    if not isinstance(command, dict) or not command:
        raise SerializationError(
            f"Malformed command envelope, expected a non-empty object, got: {type(command).__name__}"
        )

    name = next(iter(command))
    return name, command
