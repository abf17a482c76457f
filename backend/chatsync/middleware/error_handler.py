"""
Global error handling middleware.

WHAT: Translate exceptions to appropriate HTTP responses
WHY: Consistent error responses with proper status codes
HOW: FastAPI exception handlers for chat and business exceptions
"""

from fastapi import Request, status
from fastapi.responses import JSONResponse
from fastapi.exceptions import RequestValidationError
from datetime import datetime

from ..chat.types import (
    AuthRequiredError,
    ChatApiError,
    ChatResponseError,
    ChatTimeoutError,
    ChatUnavailableError,
    TransportNotReadyError,
)
from ..utils.exceptions import (
    BusinessException,
    ConversationNotOpenException,
    ValidationException,
    AuthenticationRequiredException,
    ChatServiceUnavailableException,
)
from ..utils.logger import get_logger

logger = get_logger(__name__)

# Most specific class first; the first isinstance match wins.
CHAT_ERROR_RESPONSES = (
    (AuthRequiredError, status.HTTP_401_UNAUTHORIZED, "AUTH_REQUIRED", "Sign in to use chat"),
    (ChatTimeoutError, status.HTTP_503_SERVICE_UNAVAILABLE, "CHAT_TIMEOUT",
     "Chat service request timed out"),
    (ChatUnavailableError, status.HTTP_503_SERVICE_UNAVAILABLE, "CHAT_UNAVAILABLE",
     "Chat service is not reachable. Check CHAT_API_BASE_URL."),
    (TransportNotReadyError, status.HTTP_409_CONFLICT, "PUSH_NOT_READY",
     "Push connection is not open"),
    (ChatResponseError, status.HTTP_502_BAD_GATEWAY, "CHAT_BAD_GATEWAY",
     "Chat service returned an invalid response"),
)


async def chat_api_error_handler(request: Request, exc: ChatApiError):
    """
    Handle ChatApiError and its subclasses.

    WHAT: A chat collaborator call failed after the client gave up
    WHY: Callers need to tell "sign in again" from "try again later"
    HOW: Look the exception class up in CHAT_ERROR_RESPONSES, 503 otherwise
    """
    status_code, code, detail = (
        status.HTTP_503_SERVICE_UNAVAILABLE, "CHAT_ERROR", "Chat service request failed"
    )
    for exc_type, mapped_status, mapped_code, mapped_detail in CHAT_ERROR_RESPONSES:
        if isinstance(exc, exc_type):
            status_code, code, detail = mapped_status, mapped_code, mapped_detail
            break

    if status_code == status.HTTP_401_UNAUTHORIZED:
        logger.warning(f"Chat auth required: {exc}")
    else:
        logger.error(f"Chat error on {request.method} {request.url.path}: {code} - {exc}")

    return JSONResponse(
        status_code=status_code,
        content={
            "error": code,
            "message": str(exc),
            "detail": detail,
            "kind": exc.kind.value,
        }
    )


async def validation_error_handler(request: Request, exc: RequestValidationError):
    """
    Handle FastAPI RequestValidationError.

    WHAT: Request validation failed
    WHY: Invalid request payload
    HOW: Return 400 with field errors
    """
    logger.warning(f"Validation error: {exc.errors()}")

    cleaned_errors = []
    for error in exc.errors():
        cleaned_errors.append({
            "type": error.get("type"),
            "loc": error.get("loc"),
            "msg": error.get("msg"),
        })

    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content={
            "error": "VALIDATION_ERROR",
            "message": "Request validation failed",
            "details": cleaned_errors,
            "timestamp": datetime.now().isoformat()
        }
    )


async def business_exception_handler(request: Request, exc: BusinessException):
    """
    Handle BusinessException.

    WHAT: Custom API exception
    WHY: Domain-specific error
    HOW: Return appropriate status code based on exception type
    """
    status_code = status.HTTP_400_BAD_REQUEST

    if isinstance(exc, ConversationNotOpenException):
        status_code = status.HTTP_404_NOT_FOUND
    elif isinstance(exc, AuthenticationRequiredException):
        status_code = status.HTTP_401_UNAUTHORIZED
    elif isinstance(exc, ChatServiceUnavailableException):
        status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    elif isinstance(exc, ValidationException):
        status_code = status.HTTP_400_BAD_REQUEST

    logger.warning(f"API exception: {exc.code} - {exc.message}")
    return JSONResponse(
        status_code=status_code,
        content={
            "error": exc.code,
            "message": exc.message,
            "details": exc.details,
            "timestamp": datetime.now().isoformat()
        }
    )


def register_exception_handlers(app):
    """
    Register all exception handlers with FastAPI app.

    Args:
        app: FastAPI application instance
    """
    app.add_exception_handler(ChatApiError, chat_api_error_handler)
    app.add_exception_handler(RequestValidationError, validation_error_handler)
    app.add_exception_handler(BusinessException, business_exception_handler)

    logger.info("Exception handlers registered")
