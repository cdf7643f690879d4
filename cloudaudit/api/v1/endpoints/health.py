"""
Health check endpoint for monitoring and diagnostics.
"""
import logging
from fastapi import APIRouter, Depends, HTTPException, status

from cloudaudit.core.config import settings
from cloudaudit.core.dependencies import get_progress_hub, get_result_store
from cloudaudit.services.progress_hub import ProgressHub
from cloudaudit.services.result_store import ResultStore

logger = logging.getLogger(__name__)

router = APIRouter()


@router.get("/health")
async def health_check(
    store: ResultStore = Depends(get_result_store),
    hub: ProgressHub = Depends(get_progress_hub),
):
    """
    Health check endpoint that verifies:
    - API is running
    - Result store is reachable

    Returns:
        {
            "ok": true,
            "store": true
        }
    """
    store_ok = False
    try:
        store_ok = store.ping()
    except Exception as e:
        logger.error(f"Unexpected error during health check: {e}", exc_info=True)

    if not store_ok:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Result store unavailable"
        )

    return {
        "ok": True,
        "store": True,
        "backend": settings.RESULT_STORE_BACKEND,
        "environment": settings.APP_ENV,
        "progress": hub.get_stats(),
    }
