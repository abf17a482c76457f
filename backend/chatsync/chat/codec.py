"""
Push payload codec.

WHAT: Classify raw push frames into ChatMessage, ReadReceipt or Unrecognized
WHY: Malformed frames must be a classification outcome, not an exception in the reader loop
HOW: JSON decode, discriminator check, then structural validation with pydantic
"""

import json
from typing import Any

from pydantic import ValidationError

from ..models.message import (
    READ_RECEIPT_TAG,
    ChatMessage,
    Envelope,
    MessageOrigin,
    ReadReceipt,
    Unrecognized,
)


def decode_envelope(raw: Any, origin: MessageOrigin = MessageOrigin.PUSHED) -> Envelope:
    """
    Decode one push payload.

    Args:
        raw: Text or bytes frame, or an already-parsed mapping
        origin: Origin tag stamped on decoded chat messages

    Returns:
        ChatMessage, ReadReceipt or Unrecognized (never raises)
    """
    try:
        payload = _parse(raw)
    except (ValueError, TypeError) as e:
        return Unrecognized(raw=raw, reason=f"invalid JSON: {e}")
    except RecursionError:
        return Unrecognized(raw=raw, reason="invalid JSON: nesting too deep")

    if not isinstance(payload, dict):
        return Unrecognized(raw=raw, reason=f"expected object, got {type(payload).__name__}")

    if payload.get("type") == READ_RECEIPT_TAG:
        try:
            return ReadReceipt.model_validate(payload)
        except ValidationError as e:
            return Unrecognized(raw=raw, reason=f"malformed read receipt: {e.error_count()} error(s)")

    try:
        message = ChatMessage.model_validate(payload)
    except ValidationError as e:
        return Unrecognized(raw=raw, reason=f"not a chat message: {e.error_count()} error(s)")
    return message.with_origin(origin)


def decode_history(items: list[Any]) -> tuple[list[ChatMessage], list[Unrecognized]]:
    """
    Decode a REST history page.

    Entries that are not chat messages are returned separately so the caller
    can log them; they never abort the page.
    """
    messages: list[ChatMessage] = []
    rejected: list[Unrecognized] = []
    for item in items:
        envelope = decode_envelope(item, origin=MessageOrigin.FETCHED)
        if isinstance(envelope, ChatMessage):
            messages.append(envelope)
        elif isinstance(envelope, Unrecognized):
            rejected.append(envelope)
        else:
            rejected.append(Unrecognized(raw=item, reason="read receipt in message history"))
    return messages, rejected


def _parse(raw: Any) -> Any:
    if isinstance(raw, dict):
        return raw
    if isinstance(raw, (bytes, bytearray)):
        raw = raw.decode("utf-8")
    if not isinstance(raw, str):
        raise TypeError(f"unsupported frame type {type(raw).__name__}")
    return json.loads(raw)
