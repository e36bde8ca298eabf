"""Pydantic models for API request/response schemas."""
from pydantic import BaseModel, Field
from typing import Optional, List
from datetime import datetime

from core.types import JobStatus, PageStatus


class CreateJobRequest(BaseModel):
    """
    Request to queue a new crawl job for a provider.

    ``start_url`` falls back to the provider's website URL when omitted.
    """
    provider_id: int = Field(..., alias="providerId", description="Provider to crawl")
    start_url: Optional[str] = Field(default=None, alias="startUrl", description="Crawl entry point")
    sitemap_url: Optional[str] = Field(default=None, alias="sitemapUrl", description="Explicit sitemap URL")
    max_pages: Optional[int] = Field(default=None, alias="maxPages", ge=1, description="Page bound")

    class Config:
        populate_by_name = True
        json_schema_extra = {
            "example": {
                "providerId": 7,
                "startUrl": "https://shop.example.com/",
                "sitemapUrl": "https://shop.example.com/sitemap.xml",
                "maxPages": 200
            }
        }


class JobResponse(BaseModel):
    """Crawl job state as stored."""
    id: int
    provider_id: int
    start_url: str
    sitemap_url: Optional[str] = None
    max_pages: Optional[int] = None
    status: JobStatus
    created_at: datetime
    started_at: Optional[datetime] = None
    paused_at: Optional[datetime] = None
    canceled_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    lease_owner: Optional[str] = None
    lease_expires_at: Optional[datetime] = None
    error_message: Optional[str] = None

    class Config:
        from_attributes = True


class PageResponse(BaseModel):
    """One fetch attempt within a job."""
    id: int
    url: str
    status: PageStatus
    http_status_code: Optional[int] = None
    content_type: Optional[str] = None
    title: Optional[str] = None
    error_message: Optional[str] = None
    fetched_at: datetime

    class Config:
        from_attributes = True


class JobListItem(JobResponse):
    """Job row in a listing, with its page count."""
    pages_total: int = 0


class JobDetailResponse(BaseModel):
    """Job with its most recent page attempts."""
    job: JobResponse
    pages_total: int = Field(default=0, description="All page attempts for the job")
    recent_pages: List[PageResponse] = Field(default_factory=list, description="Up to 100, newest first")


class JobListResponse(BaseModel):
    """Paginated job listing, newest first."""
    jobs: List[JobListItem]
    total_count: int
    page: int
    page_size: int


class JobStatsResponse(BaseModel):
    """Job counts per status."""
    total: int = 0
    queued: int = 0
    running: int = 0
    paused: int = 0
    succeeded: int = 0
    failed: int = 0
    canceled: int = 0

    class Config:
        from_attributes = True
