"""
Conversation endpoints.

WHAT: Open, read, send to, refresh, mark read and close a conversation
WHY: UI clients drive the conversation feed over HTTP
HOW: FastAPI router over the engine's conversation scopes, SSE for feed updates
"""

import json
from datetime import datetime
from typing import AsyncIterator

from fastapi import APIRouter, Query
from sse_starlette.sse import EventSourceResponse

from ....core.config import settings
from ....core.engine import get_engine
from ....models.api_schemas import (
    CloseConversationResponse,
    ConversationViewResponse,
    ErrorState,
    MarkReadResponse,
    SendMessageRequest,
    SendMessageResponse,
)
from ....services.conversation_scope import ConversationScope
from ....services.conversation_store import ConversationView
from ....utils.exceptions import ConversationNotOpenException, raise_for_sync_error
from ....utils.logger import get_logger

logger = get_logger(__name__)

router = APIRouter()


def _require_scope(conversation_id: str) -> ConversationScope:
    scope = get_engine().get_conversation(conversation_id)
    if scope is None:
        raise ConversationNotOpenException(conversation_id)
    return scope


def _to_response(view: ConversationView, scope: ConversationScope) -> ConversationViewResponse:
    return ConversationViewResponse(
        conversation_id=view.conversation_id,
        messages=list(view.messages),
        pending=list(view.pending),
        loading=view.loading,
        error=ErrorState.from_sync_error(view.error),
        transport_error=ErrorState.from_sync_error(view.transport_error),
        live=scope.live,
        connection_state=scope.connection_state.value,
    )


@router.post("/conversations/{conversation_id}/open", response_model=ConversationViewResponse)
async def open_conversation(conversation_id: str, live: bool = Query(True)):
    """
    Open a conversation.

    WHAT: Create (or reuse) the scope, connect push when live, load history
    WHY: Entry point for every conversation view
    HOW: engine.open_conversation, then return the current feed
    """
    scope = await get_engine().open_conversation(conversation_id, live=live)
    return _to_response(scope.view(), scope)


@router.get("/conversations/{conversation_id}", response_model=ConversationViewResponse)
async def get_conversation(conversation_id: str):
    """Current feed of an open conversation."""
    scope = _require_scope(conversation_id)
    return _to_response(scope.view(), scope)


@router.post("/conversations/{conversation_id}/messages", response_model=SendMessageResponse)
async def send_message(conversation_id: str, request: SendMessageRequest):
    """
    Send a message.

    The response only confirms acceptance; the message appears in the feed
    when the push broadcast delivers it.
    """
    scope = _require_scope(conversation_id)
    result = await scope.send(request.body)
    if not result.accepted:
        raise_for_sync_error(result.error)
    return SendMessageResponse(
        conversation_id=conversation_id,
        accepted=result.accepted,
        message_id=result.message_id,
    )


@router.post("/conversations/{conversation_id}/refresh", response_model=ConversationViewResponse)
async def refresh_conversation(conversation_id: str):
    """Reload history; a failed reload keeps the current feed and reports the error."""
    scope = _require_scope(conversation_id)
    await scope.refresh()
    return _to_response(scope.view(), scope)


@router.post("/conversations/{conversation_id}/read", response_model=MarkReadResponse)
async def mark_conversation_read(conversation_id: str):
    """Mark every message of the conversation as read."""
    engine = get_engine()
    scope = engine.get_conversation(conversation_id)
    if scope is not None:
        confirmed = await scope.mark_read()
    else:
        confirmed = await engine.unread.mark_read(conversation_id)
    return MarkReadResponse(
        conversation_id=conversation_id,
        confirmed=confirmed,
        unread_count=engine.unread.count_for(conversation_id),
    )


@router.delete("/conversations/{conversation_id}", response_model=CloseConversationResponse)
async def close_conversation(conversation_id: str):
    """Close the scope and its push connection."""
    closed = await get_engine().close_conversation(conversation_id)
    if not closed:
        raise ConversationNotOpenException(conversation_id)
    return CloseConversationResponse(conversation_id=conversation_id, closed=True)


async def conversation_event_generator(scope: ConversationScope) -> AsyncIterator[dict]:
    """
    Generate SSE events for a conversation feed.

    Yields:
        SSE event dicts, one "conversation" event per published view
    """
    conversation_id = scope.conversation_id
    logger.info(f"Starting SSE stream for conversation {conversation_id}")
    try:
        async for view in scope.store.changes.stream(initial=scope.view()):
            if view.conversation_id != conversation_id:
                # scope was closed or switched
                yield {
                    "event": "closed",
                    "data": json.dumps({
                        "type": "closed",
                        "conversation_id": conversation_id,
                        "timestamp": datetime.now().isoformat()
                    })
                }
                break
            payload = _to_response(view, scope).model_dump(mode="json")
            payload["type"] = "conversation"
            yield {"event": "conversation", "data": json.dumps(payload)}
    finally:
        logger.info(f"SSE stream ended for conversation {conversation_id}")


@router.get("/conversations/{conversation_id}/stream")
async def stream_conversation(conversation_id: str):
    """
    Stream feed updates via SSE.

    Raises:
        ConversationNotOpenException: If the conversation has no open scope
    """
    scope = _require_scope(conversation_id)
    return EventSourceResponse(
        conversation_event_generator(scope),
        ping=settings.SSE_HEARTBEAT_INTERVAL,
        media_type="text/event-stream"
    )
