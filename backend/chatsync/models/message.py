"""
Message and envelope models.

WHAT: Chat message, read receipt and unrecognized-frame variants
WHY: Push frames are duck-typed JSON; downstream code needs a closed set of shapes
HOW: Pydantic v2 models accepting the chat service's wire aliases, plus a plain dataclass for rejects
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Literal, Union

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator

READ_RECEIPT_TAG = "read_receipt"


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _as_aware(value: datetime | None) -> datetime | None:
    """Treat naive timestamps from the chat service as UTC so they stay comparable."""
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class MessageOrigin(str, Enum):
    """How a message reached the local feed."""
    FETCHED = "fetched"
    PUSHED = "pushed"
    PENDING = "pending"  # acknowledged by REST, push echo not seen yet


class Attachment(BaseModel):
    """Image or file attached to a message."""

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    name: str = Field(validation_alias=AliasChoices("file_name", "image_name", "name"))
    url: str = Field(validation_alias=AliasChoices("file_url", "image_url", "url"))
    size: int | None = Field(default=None, validation_alias=AliasChoices("file_size", "size"))
    mime_type: str | None = None


class ChatMessage(BaseModel):
    """A message in a conversation feed."""

    model_config = ConfigDict(populate_by_name=True, coerce_numbers_to_str=True, frozen=True)

    id: str = Field(min_length=1, validation_alias=AliasChoices("_id", "id", "message_id"))
    conversation_id: str = Field(
        min_length=1,
        validation_alias=AliasChoices("transaction_id", "conversation_id", "conversation"),
    )
    sender_id: str = Field(min_length=1, validation_alias=AliasChoices("sender_id", "sender"))
    body: str = Field(default="", validation_alias=AliasChoices("message", "body", "content"))
    message_type: Literal["text", "image", "file"] = "text"
    attachment: Attachment | None = Field(
        default=None,
        validation_alias=AliasChoices("image_attachment", "file_attachment", "attachment"),
    )
    timestamp: datetime | None = None
    origin: MessageOrigin = MessageOrigin.PENDING

    @field_validator("body", mode="before")
    @classmethod
    def none_body_is_empty(cls, v):
        """Attachment-only messages arrive with a null body."""
        return "" if v is None else v

    @field_validator("timestamp")
    @classmethod
    def normalize_timestamp(cls, v: datetime | None) -> datetime | None:
        return _as_aware(v)

    def with_origin(self, origin: MessageOrigin) -> "ChatMessage":
        """Copy of this message tagged with a different origin."""
        return self.model_copy(update={"origin": origin})


class ReadReceipt(BaseModel):
    """Push event asserting messages in a conversation were read."""

    model_config = ConfigDict(populate_by_name=True, coerce_numbers_to_str=True, frozen=True)

    type: Literal["read_receipt"] = READ_RECEIPT_TAG
    conversation_id: str = Field(
        min_length=1,
        validation_alias=AliasChoices("transaction_id", "conversation_id", "conversation"),
    )
    marked_count: int = Field(default=0, ge=0, validation_alias=AliasChoices("marked_count", "marked"))
    received_at: datetime = Field(
        default_factory=_utc_now,
        validation_alias=AliasChoices("received_at", "timestamp"),
    )

    @field_validator("received_at")
    @classmethod
    def normalize_received_at(cls, v: datetime) -> datetime:
        return _as_aware(v)


@dataclass(frozen=True)
class Unrecognized:
    """A push payload that matched no known shape."""
    raw: Any
    reason: str


Envelope = Union[ChatMessage, ReadReceipt, Unrecognized]
