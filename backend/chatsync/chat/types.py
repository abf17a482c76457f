"""
Chat layer types, dataclasses, and exceptions.

WHAT: Standard type definitions for REST and push interactions
WHY: Ensure consistent contracts between client, transport and stores
HOW: Enums for states, dataclasses for error/transport events, custom exceptions for faults
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum


class ConnectionState(str, Enum):
    """Lifecycle of a single push connection."""
    IDLE = "idle"
    CONNECTING = "connecting"
    OPEN = "open"
    CLOSED = "closed"


class TransportCondition(str, Enum):
    """Recoverable conditions a connection reports upstream."""
    OPENED = "opened"
    DISCONNECTED = "disconnected"
    ERROR = "error"
    PARSE_ERROR = "parse_error"


class ErrorKind(str, Enum):
    """Failure taxonomy surfaced to UI consumers."""
    TRANSIENT_NETWORK = "transient_network"
    MALFORMED_PAYLOAD = "malformed_payload"
    AUTH_REQUIRED = "auth_required"
    STALE_RESPONSE = "stale_response"
    VALIDATION = "validation"


@dataclass(frozen=True)
class SyncError:
    """Typed error state held by stores and synchronizers."""
    kind: ErrorKind
    message: str
    occurred_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def retryable(self) -> bool:
        return self.kind is ErrorKind.TRANSIENT_NETWORK


@dataclass(frozen=True)
class TransportEvent:
    """Condition reported by a push connection."""
    conversation_id: str
    condition: TransportCondition
    detail: str | None = None


# Chat exceptions
class ChatApiError(Exception):
    """Base class for chat collaborator failures."""
    kind: ErrorKind = ErrorKind.TRANSIENT_NETWORK


class ChatTimeoutError(ChatApiError):
    """Request to the chat service timed out."""
    pass


class ChatUnavailableError(ChatApiError):
    """Chat service is not reachable."""
    pass


class ChatResponseError(ChatApiError):
    """Chat service returned an invalid or error response."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class AuthRequiredError(ChatApiError):
    """Operation needs a valid session."""
    kind = ErrorKind.AUTH_REQUIRED


class TransportNotReadyError(ChatApiError):
    """Send attempted on a connection that is not open."""

    def __init__(self, conversation_id: str, state: ConnectionState):
        super().__init__(f"Push connection for {conversation_id} is not ready (state={state.value})")
        self.conversation_id = conversation_id
        self.state = state


def to_sync_error(exc: Exception) -> SyncError:
    """Map a caught exception onto the typed error state."""
    if isinstance(exc, ChatApiError):
        return SyncError(kind=exc.kind, message=str(exc))
    return SyncError(kind=ErrorKind.TRANSIENT_NETWORK, message=str(exc) or exc.__class__.__name__)
