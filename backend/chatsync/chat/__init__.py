"""Chat microservice layer (REST client, push transport, codec)."""

from .types import (
    ConnectionState,
    TransportCondition,
    TransportEvent,
    ErrorKind,
    SyncError,
    ChatApiError,
    ChatTimeoutError,
    ChatUnavailableError,
    ChatResponseError,
    AuthRequiredError,
    TransportNotReadyError,
)
from .auth import AuthSession, StaticAuthSession
from .codec import decode_envelope, decode_history
from .client import ChatApiClient, OutgoingFile
from .transport import (
    AiohttpPushConnector,
    PushConnector,
    PushSocket,
    TransportConnection,
    TransportManager,
)

__all__ = [
    "ConnectionState",
    "TransportCondition",
    "TransportEvent",
    "ErrorKind",
    "SyncError",
    "ChatApiError",
    "ChatTimeoutError",
    "ChatUnavailableError",
    "ChatResponseError",
    "AuthRequiredError",
    "TransportNotReadyError",
    "AuthSession",
    "StaticAuthSession",
    "decode_envelope",
    "decode_history",
    "ChatApiClient",
    "OutgoingFile",
    "AiohttpPushConnector",
    "PushConnector",
    "PushSocket",
    "TransportConnection",
    "TransportManager",
]
