"""
Wire messages exchanged over the TCP stream.

Each message is a single JSON object terminated by a newline. Decoding looks
at the ``type`` tag first and then validates the remaining fields against the
model registered for that tag.
"""

import json
from typing import Literal

from pydantic import BaseModel, ValidationError

from wisdom.schemas.challenge import Challenge

TYPE_CHALLENGE = "challenge"
TYPE_SOLUTION = "solution"
TYPE_QUOTE = "quote"
TYPE_ERROR = "error"

# Longest line either side will buffer before giving up on a message
MAX_MESSAGE_BYTES = 64 * 1024


class ProtocolError(ValueError):
    """The peer sent something that is not a valid protocol message."""


class MalformedMessageError(ProtocolError):
    def __init__(self, reason: str, message_type: str | None = None):
        super().__init__(reason)
        # Set when the type tag was recognised but the fields were not
        self.message_type = message_type


class UnknownMessageTypeError(ProtocolError):
    def __init__(self, message_type):
        super().__init__(f"unknown message type: {message_type!r}")
        self.message_type = message_type


class ChallengeMessage(BaseModel):
    type: Literal["challenge"] = TYPE_CHALLENGE
    challenge: Challenge


class SolutionMessage(BaseModel):
    type: Literal["solution"] = TYPE_SOLUTION
    nonce: str


class QuoteMessage(BaseModel):
    type: Literal["quote"] = TYPE_QUOTE
    quote: str


class ErrorMessage(BaseModel):
    type: Literal["error"] = TYPE_ERROR
    error: str


Message = ChallengeMessage | SolutionMessage | QuoteMessage | ErrorMessage

MESSAGE_TYPES: dict[str, type[BaseModel]] = {
    TYPE_CHALLENGE: ChallengeMessage,
    TYPE_SOLUTION: SolutionMessage,
    TYPE_QUOTE: QuoteMessage,
    TYPE_ERROR: ErrorMessage,
}


def encode_message(message: Message) -> bytes:
    """Serialize a message as one newline-terminated JSON line."""
    return message.model_dump_json().encode() + b"\n"


def decode_message(data: bytes | str) -> Message:
    """
    Parse one JSON line into its message model.

    Raises MalformedMessageError for undecodable input or invalid fields and
    UnknownMessageTypeError when the type tag is not recognised.
    """
    try:
        payload = json.loads(data)
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        raise MalformedMessageError(f"invalid JSON: {e}") from e

    if not isinstance(payload, dict):
        raise MalformedMessageError("message must be a JSON object")

    message_type = payload.get("type")
    model = MESSAGE_TYPES.get(message_type) if isinstance(message_type, str) else None
    if model is None:
        raise UnknownMessageTypeError(message_type)

    try:
        return model.model_validate(payload)
    except ValidationError as e:
        raise MalformedMessageError(
            f"invalid {message_type} message: {e.error_count()} field error(s)",
            message_type,
        ) from e


def error_message(reason: str) -> ErrorMessage:
    return ErrorMessage(error=reason)
