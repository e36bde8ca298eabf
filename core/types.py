"""
Core data types for the catalog crawler.

Holds the persisted records (jobs, pages, extracted candidates), the per-run
crawler configuration, strategy results and the Protocol classes that tie the
store, renderer and crawler strategies together.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import (
    Any,
    Dict,
    List,
    Optional,
    Protocol,
    Sequence,
    runtime_checkable,
)

from pydantic import BaseModel, ConfigDict as PydanticConfigDict, Field, field_validator


# ============================================================================
# Aliases
# ============================================================================

URL = str
JobID = int
ProviderID = int
WorkerID = str
HTTPStatusCode = int
HTMLContent = str

DEFAULT_USER_AGENT = "CatalogCrawler/1.0 (+https://example.invalid/bot)"
DEFAULT_CURRENCY = "EUR"


# ============================================================================
# Enums
# ============================================================================


class JobStatus(str, Enum):
    """Crawl job lifecycle states."""

    QUEUED = "queued"
    RUNNING = "running"
    PAUSED = "paused"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELED = "canceled"


class PageStatus(str, Enum):
    """Outcome of a single fetch attempt."""

    SUCCEEDED = "succeeded"
    FAILED = "failed"


class ExtractedProductStatus(str, Enum):
    """Review state of an extracted candidate (owned by the review pipeline)."""

    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    DUPLICATE = "duplicate"


class CrawlerType(str, Enum):
    """Known crawler strategy identifiers."""

    GENERIC = "generic"
    BROWSER = "browser"


# ============================================================================
# Persisted records
# ============================================================================


@dataclass
class CrawlJob:
    """One bounded unit of crawling work for a provider."""

    id: JobID
    provider_id: ProviderID
    start_url: URL
    status: JobStatus
    created_at: datetime
    sitemap_url: Optional[URL] = None
    max_pages: Optional[int] = None
    started_at: Optional[datetime] = None
    paused_at: Optional[datetime] = None
    canceled_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    lease_owner: Optional[WorkerID] = None
    lease_expires_at: Optional[datetime] = None
    error_message: Optional[str] = None
    version: int = 0

    def lease_expired(self, now: datetime) -> bool:
        return self.lease_expires_at is None or self.lease_expires_at < now

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "CrawlJob":
        return cls(
            id=row["id"],
            provider_id=row["provider_id"],
            start_url=row["start_url"],
            status=JobStatus(row["status"]),
            created_at=row["created_at"],
            sitemap_url=row.get("sitemap_url"),
            max_pages=row.get("max_pages"),
            started_at=row.get("started_at"),
            paused_at=row.get("paused_at"),
            canceled_at=row.get("canceled_at"),
            completed_at=row.get("completed_at"),
            lease_owner=row.get("lease_owner"),
            lease_expires_at=row.get("lease_expires_at"),
            error_message=row.get("error_message"),
            version=row.get("version", 0),
        )


@dataclass
class CrawlPage:
    """A single fetch attempt of one URL within a job. Append-only."""

    id: int
    job_id: JobID
    url: URL
    status: PageStatus
    fetched_at: datetime
    http_status_code: Optional[HTTPStatusCode] = None
    content_type: Optional[str] = None
    title: Optional[str] = None
    error_message: Optional[str] = None
    content_hash: Optional[str] = None

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "CrawlPage":
        return cls(
            id=row["id"],
            job_id=row["job_id"],
            url=row["url"],
            status=PageStatus(row["status"]),
            fetched_at=row["fetched_at"],
            http_status_code=row.get("http_status_code"),
            content_type=row.get("content_type"),
            title=row.get("title"),
            error_message=row.get("error_message"),
            content_hash=row.get("content_hash"),
        )


@dataclass
class ExtractedProduct:
    """Candidate product produced by the extraction chain (not yet persisted)."""

    name: Optional[str] = None
    external_id: Optional[str] = None
    description: Optional[str] = None
    price: Optional[float] = None
    currency: Optional[str] = None
    product_url: Optional[URL] = None
    image_urls: List[URL] = field(default_factory=list)
    category: Optional[str] = None
    raw_payload: Optional[str] = None


@dataclass
class ExtractedProductRecord:
    """Persisted candidate, scoped to the job that produced it."""

    id: int
    job_id: Optional[JobID]
    provider_id: ProviderID
    product: ExtractedProduct
    status: ExtractedProductStatus = ExtractedProductStatus.PENDING
    page_id: Optional[int] = None
    imported_product_id: Optional[int] = None
    reviewed_at: Optional[datetime] = None
    created_at: Optional[datetime] = None


@dataclass
class Provider:
    """External provider row; only the fields the crawler reads."""

    id: ProviderID
    name: str
    website_url: Optional[URL] = None
    crawler_config: Optional[Dict[str, Any]] = None


# ============================================================================
# Crawler configuration
# ============================================================================


class CrawlerConfig(BaseModel):
    """Per-provider crawler configuration, immutable for the length of a run.

    Accepts both snake_case and the camelCase keys stored in provider rows.
    """

    model_config = PydanticConfigDict(
        frozen=True, populate_by_name=True, extra="ignore"
    )

    crawler_type: str = Field(CrawlerType.GENERIC.value, alias="crawlerType")
    request_delay_ms: int = Field(1000, ge=0, alias="requestDelayMs")
    max_concurrency: int = Field(2, ge=1, alias="maxConcurrency")
    respect_robots_txt: bool = Field(True, alias="respectRobotsTxt")
    user_agent: str = Field(DEFAULT_USER_AGENT, alias="userAgent")
    product_container_selector: Optional[str] = Field(
        None, alias="productContainerSelector"
    )
    product_name_selector: Optional[str] = Field(None, alias="productNameSelector")
    product_price_selector: Optional[str] = Field(None, alias="productPriceSelector")
    product_image_selector: Optional[str] = Field(None, alias="productImageSelector")
    product_description_selector: Optional[str] = Field(
        None, alias="productDescriptionSelector"
    )
    product_link_selector: Optional[str] = Field(None, alias="productLinkSelector")
    pagination_selector: Optional[str] = Field(None, alias="paginationSelector")
    include_patterns: List[str] = Field(default_factory=list, alias="includePatterns")
    exclude_patterns: List[str] = Field(default_factory=list, alias="excludePatterns")
    custom_settings: Dict[str, str] = Field(
        default_factory=dict, alias="customSettings"
    )

    @field_validator("crawler_type")
    @classmethod
    def _normalize_type(cls, value: str) -> str:
        return (value or CrawlerType.GENERIC.value).strip().lower()

    @property
    def request_delay_seconds(self) -> float:
        return self.request_delay_ms / 1000.0

    def setting(self, key: str, default: Optional[str] = None) -> Optional[str]:
        """Case-insensitive lookup in ``custom_settings``."""
        for name, value in self.custom_settings.items():
            if name.lower() == key.lower():
                return value
        return default


# ============================================================================
# Strategy results
# ============================================================================


@dataclass
class CrawlPageResult:
    """Outcome of fetching and extracting a single URL."""

    url: URL
    success: bool
    http_status_code: Optional[HTTPStatusCode] = None
    content_type: Optional[str] = None
    title: Optional[str] = None
    content_hash: Optional[str] = None
    products: List[ExtractedProduct] = field(default_factory=list)
    discovered_urls: List[URL] = field(default_factory=list)
    error: Optional[str] = None


@dataclass
class RenderResult:
    """What a browser rendering session hands back to the extraction logic."""

    html: HTMLContent
    status_code: Optional[HTTPStatusCode] = None
    title: Optional[str] = None
    page_state: Optional[str] = None
    signals: Dict[str, Any] = field(default_factory=dict)


@dataclass
class JobStats:
    """Aggregate job counts per status."""

    total: int = 0
    queued: int = 0
    running: int = 0
    paused: int = 0
    succeeded: int = 0
    failed: int = 0
    canceled: int = 0


# ============================================================================
# Protocols
# ============================================================================


@runtime_checkable
class CrawlerStrategy(Protocol):
    """Fetches URLs for one kind of provider site."""

    crawler_type: str

    async def discover_urls(
        self, start_url: URL, sitemap_url: Optional[URL], config: CrawlerConfig
    ) -> List[URL]:
        ...

    async def fetch_and_extract(
        self, url: URL, config: CrawlerConfig
    ) -> CrawlPageResult:
        ...


class PageRenderer(Protocol):
    """Narrow capability around a headless browser."""

    async def render(
        self,
        url: URL,
        *,
        user_agent: Optional[str] = None,
        wait_for_selector: Optional[str] = None,
        state_expression: Optional[str] = None,
    ) -> RenderResult:
        ...


class JobStore(Protocol):
    """Persistence contract shared by the asyncpg and in-memory stores."""

    async def create_job(
        self,
        provider_id: ProviderID,
        start_url: URL,
        sitemap_url: Optional[URL] = None,
        max_pages: Optional[int] = None,
    ) -> CrawlJob:
        ...

    async def get_job(self, job_id: JobID) -> Optional[CrawlJob]:
        ...

    async def list_jobs(
        self,
        *,
        status: Optional[JobStatus] = None,
        provider_id: Optional[ProviderID] = None,
        limit: int = 20,
        offset: int = 0,
    ) -> List[CrawlJob]:
        ...

    async def count_jobs(
        self,
        *,
        status: Optional[JobStatus] = None,
        provider_id: Optional[ProviderID] = None,
    ) -> int:
        ...

    async def job_stats(self) -> JobStats:
        ...

    async def find_claimable_jobs(
        self, now: datetime, limit: int = 5
    ) -> List[CrawlJob]:
        ...

    async def update_job_if(
        self,
        job_id: JobID,
        *,
        expected_version: Optional[int] = None,
        expected_statuses: Optional[List[JobStatus]] = None,
        expected_owner: Optional[WorkerID] = None,
        **values: Any,
    ) -> Optional[CrawlJob]:
        ...

    async def delete_job(self, job_id: JobID) -> bool:
        ...

    async def get_provider(self, provider_id: ProviderID) -> Optional[Provider]:
        ...

    async def insert_page(
        self,
        job_id: JobID,
        result: CrawlPageResult,
    ) -> CrawlPage:
        ...

    async def get_job_pages(
        self, job_id: JobID, limit: Optional[int] = None
    ) -> List[CrawlPage]:
        ...

    async def get_fetched_urls(self, job_id: JobID) -> List[URL]:
        ...

    async def add_frontier_urls(self, job_id: JobID, urls: Sequence[URL]) -> None:
        ...

    async def get_frontier_urls(self, job_id: JobID) -> List[URL]:
        ...

    async def count_pages(self, job_id: JobID) -> int:
        ...

    async def insert_extracted_products(
        self,
        job_id: JobID,
        provider_id: ProviderID,
        page_id: Optional[int],
        products: List[ExtractedProduct],
    ) -> int:
        ...

    async def get_extracted_products(
        self, job_id: JobID
    ) -> List[ExtractedProductRecord]:
        ...
