"""
Transaction list endpoints.

WHAT: Active/archived conversation lists and search
WHY: The conversations screen polls nothing itself; the engine keeps the list current
HOW: FastAPI router over the engine's transaction list synchronizer
"""

from fastapi import APIRouter, Query

from ....core.engine import get_engine
from ....models.api_schemas import (
    ErrorState,
    TransactionListResponse,
    TransactionSearchResponse,
)
from ....services.transaction_sync import TransactionListView
from ....utils.exceptions import ValidationException
from ....utils.logger import get_logger

logger = get_logger(__name__)

router = APIRouter()


def _to_response(view: TransactionListView) -> TransactionListResponse:
    return TransactionListResponse(
        archived=view.archived,
        items=list(view.items),
        loading=view.loading,
        error=ErrorState.from_sync_error(view.error),
        fetched_at=view.fetched_at,
    )


@router.get("/transactions", response_model=TransactionListResponse)
async def list_transactions(archived: bool = Query(False), refresh: bool = Query(True)):
    """
    Get one partition of the transactions list.

    WHAT: Cached list, refetched when older than the staleness threshold
    WHY: Mounting a list view should not hammer the chat service
    HOW: synchronizer.refresh() without force, then the partition view
    """
    synchronizer = get_engine().transactions
    if refresh:
        view = await synchronizer.refresh(archived)
    else:
        view = synchronizer.view(archived)
    return _to_response(view)


@router.get("/transactions/search", response_model=TransactionSearchResponse)
async def search_transactions(q: str = Query(..., description="Company, buyer or auction name")):
    """Search transactions (not cached)."""
    query = q.strip()
    if not query:
        raise ValidationException("Search query is empty", field="q")
    items = await get_engine().transactions.search(query)
    logger.info(f"Transaction search '{query}' returned {len(items)} items")
    return TransactionSearchResponse(query=query, items=items)
