"""Job management endpoints."""
import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Response

from ..dependencies import get_job_control
from ..models import (
    CreateJobRequest,
    JobDetailResponse,
    JobListItem,
    JobListResponse,
    JobResponse,
    JobStatsResponse,
    PageResponse,
)
from core.job_control import JobControlService
from core.types import CrawlJob, JobStatus
from utils.error_handling import (
    ConfigurationError,
    CrawlerError,
    InvalidTransitionError,
    JobNotFoundError,
)


router = APIRouter()
logger = logging.getLogger(__name__)


def _http_error(error: CrawlerError) -> HTTPException:
    if isinstance(error, JobNotFoundError):
        return HTTPException(status_code=404, detail=error.message)
    if isinstance(error, InvalidTransitionError):
        return HTTPException(status_code=409, detail=error.message)
    if isinstance(error, ConfigurationError):
        return HTTPException(status_code=400, detail=error.message)
    logger.error(f"Unhandled crawler error: {error}")
    return HTTPException(status_code=500, detail="Internal error")


def _job(job: CrawlJob) -> JobResponse:
    return JobResponse.model_validate(job)


@router.get("", response_model=JobListResponse)
async def list_jobs(
    page: int = Query(default=1, ge=1),
    page_size: int = Query(default=20, ge=1, le=100, alias="pageSize"),
    status: Optional[JobStatus] = Query(default=None),
    provider_id: Optional[int] = Query(default=None, alias="providerId"),
    control: JobControlService = Depends(get_job_control),
):
    """
    List jobs, newest first.

    Args:
        page: 1-based page number
        page_size: Jobs per page (max 100)
        status: Only jobs in this status
        provider_id: Only jobs for this provider

    Example response:
        ```json
        {
            "jobs": [{"id": 12, "status": "running", "pages_total": 40, "...": "..."}],
            "total_count": 57,
            "page": 1,
            "page_size": 20
        }
        ```
    """
    result = await control.list(
        page=page, page_size=page_size, status=status, provider_id=provider_id
    )
    return JobListResponse(
        jobs=[
            JobListItem(
                **_job(job).model_dump(), pages_total=result.page_counts.get(job.id, 0)
            )
            for job in result.jobs
        ],
        total_count=result.total_count,
        page=result.page,
        page_size=result.page_size,
    )


@router.get("/stats", response_model=JobStatsResponse)
async def job_stats(control: JobControlService = Depends(get_job_control)):
    """Job counts per status."""
    return JobStatsResponse.model_validate(await control.stats())


@router.get("/{job_id}", response_model=JobDetailResponse)
async def get_job(job_id: int, control: JobControlService = Depends(get_job_control)):
    """
    Get job status with its 100 most recent page attempts.

    Raises:
        HTTPException: 404 if job not found
    """
    try:
        details = await control.get(job_id)
    except CrawlerError as e:
        raise _http_error(e)

    return JobDetailResponse(
        job=_job(details.job),
        pages_total=details.pages_total,
        recent_pages=[PageResponse.model_validate(p) for p in details.recent_pages],
    )


@router.post("", response_model=JobResponse, status_code=201)
async def create_job(
    req: CreateJobRequest,
    control: JobControlService = Depends(get_job_control),
):
    """
    Queue a new crawl job.

    Raises:
        HTTPException: 400 if the provider does not exist or no start URL is available

    Example request:
        ```json
        {"providerId": 7, "startUrl": "https://shop.example.com/", "maxPages": 200}
        ```
    """
    try:
        job = await control.create(
            req.provider_id,
            start_url=req.start_url,
            sitemap_url=req.sitemap_url,
            max_pages=req.max_pages,
        )
    except CrawlerError as e:
        raise _http_error(e)
    return _job(job)


@router.post("/{job_id}/cancel", response_model=JobResponse)
async def cancel_job(job_id: int, control: JobControlService = Depends(get_job_control)):
    """
    Cancel a queued or running job.

    A running job stops at its worker's next control check; pages already
    stored are kept.

    Raises:
        HTTPException: 404 if job not found, 409 if it is not queued or running
    """
    try:
        return _job(await control.cancel(job_id))
    except CrawlerError as e:
        raise _http_error(e)


@router.post("/{job_id}/pause", response_model=JobResponse)
async def pause_job(job_id: int, control: JobControlService = Depends(get_job_control)):
    """
    Pause a running job and release its lease.

    Raises:
        HTTPException: 404 if job not found, 409 if it is not running
    """
    try:
        return _job(await control.pause(job_id))
    except CrawlerError as e:
        raise _http_error(e)


@router.post("/{job_id}/resume", response_model=JobResponse)
async def resume_job(job_id: int, control: JobControlService = Depends(get_job_control)):
    """
    Put a paused job back in the queue; it skips already fetched pages.

    Raises:
        HTTPException: 404 if job not found, 409 if it is not paused
    """
    try:
        return _job(await control.resume(job_id))
    except CrawlerError as e:
        raise _http_error(e)


@router.post("/{job_id}/retry", response_model=JobResponse, status_code=201)
async def retry_job(job_id: int, control: JobControlService = Depends(get_job_control)):
    """
    Queue a new job with the same parameters as a failed or canceled one.

    Raises:
        HTTPException: 404 if job not found, 409 if it is not failed or canceled
    """
    try:
        return _job(await control.retry(job_id))
    except CrawlerError as e:
        raise _http_error(e)


@router.delete("/{job_id}", status_code=204)
async def delete_job(job_id: int, control: JobControlService = Depends(get_job_control)):
    """
    Delete a job and its pages. Extracted products are kept.

    Raises:
        HTTPException: 404 if job not found, 409 while queued or running
    """
    try:
        await control.delete(job_id)
    except CrawlerError as e:
        raise _http_error(e)
    return Response(status_code=204)
