"""
Status and health check endpoints.

WHAT: Health monitoring for the chat service and the engine
WHY: Quick diagnostics for frontend and ops
HOW: FastAPI endpoint calling the REST client ping
"""

from fastapi import APIRouter

from ....core.config import settings
from ....core.engine import get_engine
from ....utils.logger import get_logger

logger = get_logger(__name__)

router = APIRouter()


@router.get("/health")
async def health_check():
    """
    Overall application health check.

    WHAT: Health status including version and engine state
    WHY: Ops and monitoring tools need simple health endpoint
    HOW: Aggregate chat API reachability with app metadata

    Returns:
        JSON with overall health status
    """
    try:
        engine_status = await get_engine().health()
        chat_available = engine_status["chat_api"]["available"]
    except Exception as e:
        logger.error(f"Health check failed: {e}")
        engine_status = {"chat_api": {"available": False, "error": str(e)}}
        chat_available = False

    return {
        "status": "healthy" if chat_available else "degraded",
        "version": settings.APP_VERSION,
        "app_name": settings.APP_NAME,
        "components": engine_status,
    }
