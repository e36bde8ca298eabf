"""In-process job store with the same contract as ``DatabaseManager``.

Used for single-process runs and the test suite. All guarded updates run under
one ``asyncio.Lock`` so compare-and-swap semantics match the SQL store.
"""

from __future__ import annotations

import asyncio
import itertools
import logging
from dataclasses import replace
from datetime import UTC, datetime
from typing import Any, Callable, Dict, List, Optional, Sequence

from core.types import (
    CrawlJob,
    CrawlPage,
    CrawlPageResult,
    ExtractedProduct,
    ExtractedProductRecord,
    JobStats,
    JobStatus,
    PageStatus,
    Provider,
)
from database.manager import UPDATABLE_JOB_COLUMNS

logger = logging.getLogger(__name__)


def utc_now() -> datetime:
    return datetime.now(UTC)


class InMemoryJobStore:
    """Dict-backed store; returned records are copies."""

    def __init__(self, clock: Callable[[], datetime] = utc_now):
        self._clock = clock
        self._lock = asyncio.Lock()
        self._job_ids = itertools.count(1)
        self._page_ids = itertools.count(1)
        self._product_ids = itertools.count(1)
        self.jobs: Dict[int, CrawlJob] = {}
        self.pages: List[CrawlPage] = []
        self.products: List[ExtractedProductRecord] = []
        self.providers: Dict[int, Provider] = {}
        self.frontier: Dict[int, Dict[str, str]] = {}

    def add_provider(self, provider: Provider) -> Provider:
        self.providers[provider.id] = provider
        return provider

    # ==================== JOBS ====================

    async def create_job(
        self,
        provider_id: int,
        start_url: str,
        sitemap_url: Optional[str] = None,
        max_pages: Optional[int] = None,
    ) -> CrawlJob:
        async with self._lock:
            job = CrawlJob(
                id=next(self._job_ids),
                provider_id=provider_id,
                start_url=start_url,
                sitemap_url=sitemap_url,
                max_pages=max_pages,
                status=JobStatus.QUEUED,
                created_at=self._clock(),
            )
            self.jobs[job.id] = job
            return replace(job)

    async def get_job(self, job_id: int) -> Optional[CrawlJob]:
        job = self.jobs.get(job_id)
        return replace(job) if job else None

    def _filtered(
        self, status: Optional[JobStatus], provider_id: Optional[int]
    ) -> List[CrawlJob]:
        return [
            job
            for job in self.jobs.values()
            if (status is None or job.status == JobStatus(status))
            and (provider_id is None or job.provider_id == provider_id)
        ]

    async def list_jobs(
        self,
        *,
        status: Optional[JobStatus] = None,
        provider_id: Optional[int] = None,
        limit: int = 20,
        offset: int = 0,
    ) -> List[CrawlJob]:
        jobs = sorted(
            self._filtered(status, provider_id),
            key=lambda j: (j.created_at, j.id),
            reverse=True,
        )
        return [replace(j) for j in jobs[offset : offset + limit]]

    async def count_jobs(
        self,
        *,
        status: Optional[JobStatus] = None,
        provider_id: Optional[int] = None,
    ) -> int:
        return len(self._filtered(status, provider_id))

    async def job_stats(self) -> JobStats:
        stats = JobStats()
        for job in self.jobs.values():
            setattr(stats, job.status.value, getattr(stats, job.status.value) + 1)
            stats.total += 1
        return stats

    async def find_claimable_jobs(self, now: datetime, limit: int = 5) -> List[CrawlJob]:
        candidates = [
            job
            for job in self.jobs.values()
            if job.status == JobStatus.QUEUED
            or (
                job.status == JobStatus.RUNNING
                and job.lease_expires_at is not None
                and job.lease_expires_at < now
            )
        ]
        candidates.sort(key=lambda j: (j.created_at, j.id))
        return [replace(j) for j in candidates[:limit]]

    async def update_job_if(
        self,
        job_id: int,
        *,
        expected_version: Optional[int] = None,
        expected_statuses: Optional[List[JobStatus]] = None,
        expected_owner: Optional[str] = None,
        **values: Any,
    ) -> Optional[CrawlJob]:
        unknown = set(values) - UPDATABLE_JOB_COLUMNS
        if unknown:
            raise ValueError(f"Cannot update job columns: {sorted(unknown)}")

        async with self._lock:
            job = self.jobs.get(job_id)
            if job is None:
                return None
            if expected_version is not None and job.version != expected_version:
                return None
            if expected_statuses and job.status not in {
                JobStatus(s) for s in expected_statuses
            }:
                return None
            if expected_owner is not None and job.lease_owner != expected_owner:
                return None

            if "status" in values:
                values["status"] = JobStatus(values["status"])
            updated = replace(job, version=job.version + 1, **values)
            self.jobs[job_id] = updated
            return replace(updated)

    async def delete_job(self, job_id: int) -> bool:
        async with self._lock:
            job = self.jobs.get(job_id)
            if job is None or job.status in (JobStatus.QUEUED, JobStatus.RUNNING):
                return False
            del self.jobs[job_id]
            self.pages = [p for p in self.pages if p.job_id != job_id]
            self.frontier.pop(job_id, None)
            for record in self.products:
                if record.job_id == job_id:
                    record.job_id = None
                    record.page_id = None
            return True

    # ==================== PROVIDERS ====================

    async def get_provider(self, provider_id: int) -> Optional[Provider]:
        return self.providers.get(provider_id)

    # ==================== PAGES ====================

    async def insert_page(self, job_id: int, result: CrawlPageResult) -> CrawlPage:
        async with self._lock:
            page = CrawlPage(
                id=next(self._page_ids),
                job_id=job_id,
                url=result.url,
                status=PageStatus.SUCCEEDED if result.success else PageStatus.FAILED,
                fetched_at=self._clock(),
                http_status_code=result.http_status_code,
                content_type=result.content_type,
                title=result.title,
                error_message=result.error,
                content_hash=result.content_hash,
            )
            self.pages.append(page)
            return replace(page)

    async def get_job_pages(self, job_id: int, limit: Optional[int] = None) -> List[CrawlPage]:
        pages = [p for p in reversed(self.pages) if p.job_id == job_id]
        return [replace(p) for p in (pages[:limit] if limit else pages)]

    async def get_fetched_urls(self, job_id: int) -> List[str]:
        urls: List[str] = []
        for page in self.pages:
            if page.job_id == job_id and page.url not in urls:
                urls.append(page.url)
        return urls

    async def count_pages(self, job_id: int) -> int:
        return sum(1 for p in self.pages if p.job_id == job_id)

    # ==================== FRONTIER ====================

    async def add_frontier_urls(self, job_id: int, urls: Sequence[str]) -> None:
        async with self._lock:
            frontier = self.frontier.setdefault(job_id, {})
            for url in urls:
                frontier.setdefault(url.lower(), url)

    async def get_frontier_urls(self, job_id: int) -> List[str]:
        return list(self.frontier.get(job_id, {}).values())

    # ==================== EXTRACTED PRODUCTS ====================

    async def insert_extracted_products(
        self,
        job_id: int,
        provider_id: int,
        page_id: Optional[int],
        products: List[ExtractedProduct],
    ) -> int:
        async with self._lock:
            for product in products:
                self.products.append(
                    ExtractedProductRecord(
                        id=next(self._product_ids),
                        job_id=job_id,
                        provider_id=provider_id,
                        page_id=page_id,
                        product=product,
                        created_at=self._clock(),
                    )
                )
        return len(products)

    async def get_extracted_products(self, job_id: int) -> List[ExtractedProductRecord]:
        return [r for r in self.products if r.job_id == job_id]
