"""
Unread counter endpoints.

WHAT: Read and clear unread badges, stream counter changes
WHY: Navigation badges and conversation lists need one consistent source
HOW: FastAPI router over the engine's unread aggregator, SSE for snapshots
"""

import json
from typing import AsyncIterator

from fastapi import APIRouter
from sse_starlette.sse import EventSourceResponse

from ....core.config import settings
from ....core.engine import get_engine
from ....models.api_schemas import ErrorState, UnreadCountsResponse
from ....services.unread_aggregator import UnreadAggregator, UnreadSnapshot
from ....utils.logger import get_logger

logger = get_logger(__name__)

router = APIRouter()


def _to_response(snapshot: UnreadSnapshot, aggregator: UnreadAggregator) -> UnreadCountsResponse:
    return UnreadCountsResponse(
        counts=dict(snapshot.counts),
        total=snapshot.total,
        error=ErrorState.from_sync_error(aggregator.error),
    )


@router.get("/unread", response_model=UnreadCountsResponse)
async def get_unread_counts():
    """Current unread counters and total."""
    aggregator = get_engine().unread
    return _to_response(aggregator.snapshot(), aggregator)


@router.post("/unread/refresh", response_model=UnreadCountsResponse)
async def refresh_unread_counts():
    """Pull authoritative counts from the chat service now."""
    aggregator = get_engine().unread
    await aggregator.refresh()
    return _to_response(aggregator.snapshot(), aggregator)


@router.post("/unread/{conversation_id}/clear", response_model=UnreadCountsResponse)
async def clear_unread(conversation_id: str):
    """
    Optimistically clear one conversation's badge.

    Local only; use the conversation read endpoint to confirm with the
    chat service.
    """
    aggregator = get_engine().unread
    aggregator.clear_locally(conversation_id)
    return _to_response(aggregator.snapshot(), aggregator)


async def unread_event_generator(aggregator: UnreadAggregator) -> AsyncIterator[dict]:
    """
    Generate SSE events for unread counters.

    Yields:
        SSE event dicts, one "unread" event per published snapshot
    """
    logger.info("Starting SSE stream for unread counters")
    try:
        async for snapshot in aggregator.watch():
            payload = _to_response(snapshot, aggregator).model_dump(mode="json")
            payload["type"] = "unread"
            yield {"event": "unread", "data": json.dumps(payload)}
    finally:
        logger.info("SSE stream ended for unread counters")


@router.get("/unread/stream")
async def stream_unread_counts():
    """Stream unread counter snapshots via SSE."""
    return EventSourceResponse(
        unread_event_generator(get_engine().unread),
        ping=settings.SSE_HEARTBEAT_INTERVAL,
        media_type="text/event-stream"
    )
