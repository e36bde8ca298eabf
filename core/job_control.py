"""
Job control operations used by the admin API.

Status changes go through the same guarded store update as the worker, keyed
on the version read a moment earlier. If a worker changes the job in between,
the write misses and the operation re-evaluates against the fresh row.
"""

import logging
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any, Callable, Dict, List, Optional

from core.job_state import RETRYABLE_STATUSES, UNDELETABLE_STATUSES, ensure_transition
from core.types import CrawlJob, CrawlPage, JobStats, JobStatus, JobStore
from utils.error_handling import (
    ConfigurationError,
    InvalidTransitionError,
    JobNotFoundError,
)

logger = logging.getLogger(__name__)

RECENT_PAGES_LIMIT = 100
MAX_GUARDED_ATTEMPTS = 3


@dataclass
class JobDetails:
    job: CrawlJob
    recent_pages: List[CrawlPage] = field(default_factory=list)
    pages_total: int = 0


@dataclass
class JobPage:
    jobs: List[CrawlJob]
    total_count: int
    page: int
    page_size: int
    page_counts: Dict[int, int] = field(default_factory=dict)


class JobControlService:
    """Create, inspect and steer crawl jobs."""

    def __init__(self, store: JobStore, clock: Optional[Callable[[], datetime]] = None):
        self.store = store
        self.clock = clock or (lambda: datetime.now(UTC))

    async def create(
        self,
        provider_id: int,
        start_url: Optional[str] = None,
        sitemap_url: Optional[str] = None,
        max_pages: Optional[int] = None,
    ) -> CrawlJob:
        """Queue a new job; ``start_url`` defaults to the provider's website.

        Raises:
            ConfigurationError: Unknown provider, no usable start URL or a
                non-positive ``max_pages``
        """
        provider = await self.store.get_provider(provider_id)
        if provider is None:
            raise ConfigurationError("Provider not found", {"provider_id": provider_id})

        effective_start = start_url or provider.website_url
        if not effective_start:
            raise ConfigurationError(
                "StartUrl is required when provider has no website URL",
                {"provider_id": provider_id},
            )
        if max_pages is not None and max_pages <= 0:
            raise ConfigurationError("max_pages must be positive")

        job = await self.store.create_job(
            provider_id, effective_start, sitemap_url=sitemap_url, max_pages=max_pages
        )
        logger.info(
            f"Queued crawl job {job.id} for provider {provider_id}",
            extra={"job_id": job.id, "provider_id": provider_id},
        )
        return job

    async def get(self, job_id: int) -> JobDetails:
        job = await self._require(job_id)
        pages = await self.store.get_job_pages(job_id, limit=RECENT_PAGES_LIMIT)
        total = await self.store.count_pages(job_id)
        return JobDetails(job=job, recent_pages=pages, pages_total=total)

    async def list(
        self,
        *,
        page: int = 1,
        page_size: int = 20,
        status: Optional[JobStatus] = None,
        provider_id: Optional[int] = None,
    ) -> JobPage:
        page = max(page, 1)
        page_size = max(1, min(page_size, 100))
        jobs = await self.store.list_jobs(
            status=status,
            provider_id=provider_id,
            limit=page_size,
            offset=(page - 1) * page_size,
        )
        total = await self.store.count_jobs(status=status, provider_id=provider_id)
        counts = {job.id: await self.store.count_pages(job.id) for job in jobs}
        return JobPage(
            jobs=jobs,
            total_count=total,
            page=page,
            page_size=page_size,
            page_counts=counts,
        )

    async def stats(self) -> JobStats:
        return await self.store.job_stats()

    async def cancel(self, job_id: int) -> CrawlJob:
        return await self._transition(
            job_id,
            JobStatus.CANCELED,
            "cancel",
            lambda now: {
                "canceled_at": now,
                "lease_owner": None,
                "lease_expires_at": None,
            },
        )

    async def pause(self, job_id: int) -> CrawlJob:
        return await self._transition(
            job_id,
            JobStatus.PAUSED,
            "pause",
            lambda now: {
                "paused_at": now,
                "lease_owner": None,
                "lease_expires_at": None,
            },
        )

    async def resume(self, job_id: int) -> CrawlJob:
        return await self._transition(
            job_id, JobStatus.QUEUED, "resume", lambda now: {"paused_at": None}
        )

    async def retry(self, job_id: int) -> CrawlJob:
        """Clone a failed or canceled job into a new queued job.

        The original job is left untouched so its history stays intact.
        """
        job = await self._require(job_id)
        if job.status not in RETRYABLE_STATUSES:
            raise InvalidTransitionError(
                job_id, job.status.value, JobStatus.QUEUED.value, "retry"
            )
        new_job = await self.store.create_job(
            job.provider_id,
            job.start_url,
            sitemap_url=job.sitemap_url,
            max_pages=job.max_pages,
        )
        logger.info(
            f"Retried job {job_id} as new job {new_job.id}",
            extra={"job_id": new_job.id, "provider_id": job.provider_id},
        )
        return new_job

    async def delete(self, job_id: int) -> None:
        job = await self._require(job_id)
        if job.status in UNDELETABLE_STATUSES or not await self.store.delete_job(job_id):
            current = await self._require(job_id)
            raise InvalidTransitionError(job_id, current.status.value, "deleted", "delete")

    async def _require(self, job_id: int) -> CrawlJob:
        job = await self.store.get_job(job_id)
        if job is None:
            raise JobNotFoundError(job_id)
        return job

    async def _transition(
        self,
        job_id: int,
        target: JobStatus,
        action: str,
        extra_fields: Callable[[datetime], dict],
    ) -> CrawlJob:
        for _ in range(MAX_GUARDED_ATTEMPTS):
            job = await self._require(job_id)
            ensure_transition(job.status, target, job_id, action)

            fields: dict[str, Any] = extra_fields(self.clock())
            updated = await self.store.update_job_if(
                job_id,
                expected_version=job.version,
                status=target,
                **fields,
            )
            if updated is not None:
                logger.info(
                    f"Job {job_id}: {job.status.value} -> {target.value}",
                    extra={"job_id": job_id},
                )
                return updated

        current = await self._require(job_id)
        raise InvalidTransitionError(job_id, current.status.value, target.value, action)
