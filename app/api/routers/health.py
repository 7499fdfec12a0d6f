"""
Health check endpoints for the Prompt Composer API.

Separate liveness and readiness probes, plus composition cache statistics.
"""
from fastapi import APIRouter, Depends, Request, Response, status
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession
import logging

from app.core.database import get_db

router = APIRouter(tags=["health"])
logger = logging.getLogger(__name__)


@router.get("/health", status_code=status.HTTP_200_OK)
async def liveness_check():
    """
    Simple liveness check - just confirms the app is running.
    Does NOT check database (for fast health checks).
    """
    return {"status": "healthy"}


@router.get("/health/ready", status_code=status.HTTP_200_OK)
async def readiness_check(response: Response, db: AsyncSession = Depends(get_db)):
    """Readiness check - confirms app AND database are ready."""
    try:
        result = await db.execute(text("SELECT 1"))
        result.scalar()
        return {
            "status": "ready",
            "database": "connected"
        }
    except Exception as e:
        logger.error(f"Readiness check failed: {e}", exc_info=True)
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
        return {
            "status": "not_ready",
            "database": "disconnected",
            "error": str(e)
        }


@router.get("/health/cache", status_code=status.HTTP_200_OK)
async def cache_stats(request: Request):
    """Hit/miss statistics of the process-local composition cache."""
    cache = request.app.state.prompt_cache
    get_stats = getattr(cache, "get_stats", None)
    return {"cache": get_stats() if get_stats else {}}
