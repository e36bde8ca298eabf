"""Health check endpoint."""
import logging

from fastapi import APIRouter, Depends

from ..dependencies import get_db
from core.types import JobStore


router = APIRouter()
logger = logging.getLogger(__name__)


@router.get("/health")
async def health_check(db: JobStore = Depends(get_db)):
    """
    Health check for the control surface and the job store.

    Reads the per-status job counts, which doubles as a connectivity check
    and shows whether workers are keeping up with the queue.

    Args:
        db: Job store (injected)

    Returns:
        dict: Service status, store status and queue backlog

    Example response (healthy):
        ```json
        {
            "status": "ok",
            "database": "ok",
            "queue": {"queued": 4, "running": 2}
        }
        ```

    Example response (store unreachable):
        ```json
        {
            "status": "degraded",
            "database": "error: connection refused",
            "queue": null
        }
        ```
    """
    try:
        stats = await db.job_stats()
    except Exception as e:
        logger.warning(f"Health check could not reach job store: {e}")
        return {"status": "degraded", "database": f"error: {e}", "queue": None}

    return {
        "status": "ok",
        "database": "ok",
        "queue": {"queued": stats.queued, "running": stats.running},
    }
