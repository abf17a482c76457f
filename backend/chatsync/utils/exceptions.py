"""
Custom business exceptions for the gateway API.

WHAT: Domain-specific exceptions that map to HTTP status codes
WHY: Consistent error handling across all API endpoints
HOW: Custom exception classes with error codes and messages
"""

from typing import Optional, Any

from ..chat.types import ErrorKind, SyncError


class BusinessException(Exception):
    """Base class for business logic exceptions."""

    def __init__(self, message: str, code: str, details: Optional[Any] = None):
        super().__init__(message)
        self.message = message
        self.code = code
        self.details = details


class ConversationNotOpenException(BusinessException):
    """Raised when an operation targets a conversation that has no open scope."""

    def __init__(self, conversation_id: str):
        super().__init__(
            message=f"Conversation not open: {conversation_id}",
            code="CONVERSATION_NOT_OPEN",
            details={"conversation_id": conversation_id}
        )


class ValidationException(BusinessException):
    """Raised for validation errors."""

    def __init__(self, message: str, field: Optional[str] = None):
        super().__init__(
            message=message,
            code="VALIDATION_ERROR",
            details={"field": field} if field else None
        )


class AuthenticationRequiredException(BusinessException):
    """Raised when the operation needs a session and there is none."""

    def __init__(self, message: str = "Authentication required"):
        super().__init__(
            message=message,
            code="AUTH_REQUIRED"
        )


class ChatServiceUnavailableException(BusinessException):
    """Raised when the chat service could not complete the request."""

    def __init__(self, message: str, retryable: bool = True):
        super().__init__(
            message=message,
            code="CHAT_SERVICE_UNAVAILABLE",
            details={"retryable": retryable}
        )


def raise_for_sync_error(error: Optional[SyncError]) -> None:
    """Turn a typed error state into the matching business exception."""
    if error is None:
        return
    if error.kind is ErrorKind.VALIDATION:
        raise ValidationException(error.message, field="body")
    if error.kind is ErrorKind.AUTH_REQUIRED:
        raise AuthenticationRequiredException(error.message)
    raise ChatServiceUnavailableException(error.message, retryable=error.retryable)
