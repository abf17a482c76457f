"""
Pydantic API schemas for the gateway endpoints.

WHAT: Request and response models for FastAPI
WHY: Type-safe validation and serialization of the engine's views
HOW: Pydantic v2 models built from store/aggregator/synchronizer snapshots
"""

from typing import Optional, List, Dict
from pydantic import BaseModel, Field
from datetime import datetime

from ..chat.types import SyncError
from .message import ChatMessage
from .transaction import TransactionSummary


# ========== Shared ==========

class ErrorState(BaseModel):
    """Typed error state exposed next to the data it concerns."""
    kind: str
    message: str
    retryable: bool
    occurred_at: datetime

    @classmethod
    def from_sync_error(cls, error: Optional[SyncError]) -> Optional["ErrorState"]:
        if error is None:
            return None
        return cls(
            kind=error.kind.value,
            message=error.message,
            retryable=error.retryable,
            occurred_at=error.occurred_at,
        )


# ========== Conversations ==========

class ConversationViewResponse(BaseModel):
    """Feed of one open conversation."""
    conversation_id: Optional[str]
    messages: List[ChatMessage]
    pending: List[ChatMessage] = Field(default_factory=list, description="Sent, push echo not seen yet")
    loading: bool
    error: Optional[ErrorState] = None
    transport_error: Optional[ErrorState] = None
    live: bool = False
    connection_state: str = "idle"


class SendMessageRequest(BaseModel):
    """Request to post a message in the open conversation."""
    body: str = Field(..., max_length=5000, description="Message text")


class SendMessageResponse(BaseModel):
    """Send outcome; the message itself arrives through the feed."""
    conversation_id: str
    accepted: bool
    message_id: Optional[str] = None


class CloseConversationResponse(BaseModel):
    conversation_id: str
    closed: bool


class MarkReadResponse(BaseModel):
    """Result of a mark-read action."""
    conversation_id: str
    confirmed: bool
    unread_count: int


# ========== Unread ==========

class UnreadCountsResponse(BaseModel):
    """Per-conversation unread counters and their total."""
    counts: Dict[str, int]
    total: int
    error: Optional[ErrorState] = None


# ========== Transactions ==========

class TransactionListResponse(BaseModel):
    """One partition of the transactions list."""
    archived: bool
    items: List[TransactionSummary]
    loading: bool
    error: Optional[ErrorState] = None
    fetched_at: Optional[datetime] = None


class TransactionSearchResponse(BaseModel):
    query: str
    items: List[TransactionSummary]
