"""FastAPI dependencies."""
from fastapi import Depends, Request

from core.job_control import JobControlService
from core.types import JobStore


async def get_db(request: Request) -> JobStore:
    """
    Get the job store from app state.

    The store (a ``DatabaseManager``) is created during application startup
    and stored in ``app.state.db``. Tests override this dependency with an
    ``InMemoryJobStore``.

    Args:
        request: FastAPI request object

    Returns:
        JobStore: Job store shared by all requests
    """
    return request.app.state.db


async def get_job_control(db: JobStore = Depends(get_db)) -> JobControlService:
    """Job control operations bound to the request's store."""
    return JobControlService(db)
