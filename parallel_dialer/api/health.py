"""Health check endpoint."""
import logging
from fastapi import APIRouter, Depends, Request

from parallel_dialer.core.config import settings
from parallel_dialer.core.dependencies import Dialer, get_dialer

router = APIRouter()
logger = logging.getLogger(__name__)


@router.get("/health")
async def health_check(request: Request, dialer: Dialer = Depends(get_dialer)):
    """Health check endpoint."""
    logger.debug(
        f"[HEALTH] Health check requested - Client: {request.client.host if request.client else 'unknown'}"
    )
    return {
        "status": "healthy",
        "markerBackend": settings.marker_backend,
        "jobs": {
            "running": dialer.jobs.running,
            "pending": dialer.jobs.pending,
            "completed": dialer.jobs.completed_count,
            "failed": len(dialer.jobs.failures),
        },
    }
