"""Payload checks applied before a request is fingerprinted."""

from typing import Any

from aicore.core.errors import InvalidInput
from aicore.core.types import Operation

MAX_MESSAGES = 500
MAX_MESSAGE_CHARS = 16_000
MAX_TEXT_CHARS = 32_000
MAX_EMBED_TEXTS = 100
MAX_EMBED_TEXT_CHARS = 8_000


def parse_operation(raw: str | Operation) -> Operation:
    if isinstance(raw, Operation):
        return raw
    try:
        return Operation(str(raw).strip().lower())
    except ValueError as exc:
        allowed = ", ".join(op.value for op in Operation)
        raise InvalidInput(f"Unknown operation '{raw}'; expected one of {allowed}") from exc


def validate_payload(operation: Operation, payload: Any) -> None:
    if not isinstance(payload, dict):
        raise InvalidInput("payload must be an object")
    if operation in (Operation.SUMMARIZE, Operation.DIGEST):
        _validate_messages(payload.get("messages"))
        if operation == Operation.DIGEST and not _non_empty_str(payload.get("channel_id")):
            raise InvalidInput("digest requires channel_id")
    elif operation == Operation.SENTIMENT:
        if "text" in payload:
            _validate_text(payload["text"])
        elif "messages" in payload:
            _validate_messages(payload["messages"])
        else:
            raise InvalidInput("sentiment requires text or messages")
    elif operation == Operation.MODERATE:
        _validate_text(payload.get("text"))
    elif operation == Operation.EMBED:
        _validate_embed_texts(payload.get("texts"))


def _validate_messages(messages: Any) -> None:
    if not isinstance(messages, list) or not messages:
        raise InvalidInput("messages must be a non-empty list")
    if len(messages) > MAX_MESSAGES:
        raise InvalidInput(f"messages is limited to {MAX_MESSAGES} items")
    for index, message in enumerate(messages):
        if not isinstance(message, dict):
            raise InvalidInput(f"messages[{index}] must be an object")
        content = message.get("content")
        if not isinstance(content, str):
            raise InvalidInput(f"messages[{index}].content must be a string")
        if len(content) > MAX_MESSAGE_CHARS:
            raise InvalidInput(f"messages[{index}].content exceeds {MAX_MESSAGE_CHARS} characters")


def _validate_text(text: Any) -> None:
    if not _non_empty_str(text):
        raise InvalidInput("text must be a non-empty string")
    if len(text) > MAX_TEXT_CHARS:
        raise InvalidInput(f"text exceeds {MAX_TEXT_CHARS} characters")


def _validate_embed_texts(texts: Any) -> None:
    if not isinstance(texts, list) or not texts:
        raise InvalidInput("texts must be a non-empty list")
    if len(texts) > MAX_EMBED_TEXTS:
        raise InvalidInput(f"texts is limited to {MAX_EMBED_TEXTS} items")
    for index, text in enumerate(texts):
        if not isinstance(text, str):
            raise InvalidInput(f"texts[{index}] must be a string")
        if len(text) > MAX_EMBED_TEXT_CHARS:
            raise InvalidInput(f"texts[{index}] exceeds {MAX_EMBED_TEXT_CHARS} characters")


def _non_empty_str(value: Any) -> bool:
    return isinstance(value, str) and bool(value.strip())
