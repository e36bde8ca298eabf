"""Job execution orchestrator."""

import asyncio
import logging
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Deque, List, Mapping, Optional, Set

from core.lease_manager import LeaseManager
from core.types import (
    CrawlerConfig,
    CrawlerStrategy,
    CrawlJob,
    CrawlPageResult,
    JobStatus,
    JobStore,
    PageStatus,
)
from network.strategies import parse_crawler_config, select_strategy
from utils.error_handling import (
    ConfigurationError,
    JobFatalError,
    summarize_page_errors,
)
from utils.helpers import dedupe_urls, truncate

logger = logging.getLogger(__name__)

DEFAULT_MAX_PAGES_PER_JOB = 1000
DEFAULT_RENEWAL_SECONDS = 120.0
DEFAULT_CONTROL_SECONDS = 5.0
MAX_ERROR_MESSAGE_LENGTH = 2000

STOP_PAUSED = "paused"
STOP_CANCELED = "canceled"
STOP_LEASE_LOST = "lease_lost"
STOP_SHUTDOWN = "shutdown"
STOP_ERROR = "error"


@dataclass
class _RunState:
    """Mutable bookkeeping for one execution of one job."""

    job: CrawlJob
    config: CrawlerConfig
    strategy: CrawlerStrategy
    limit: int
    frontier: Deque[str] = field(default_factory=deque)
    seen: Set[str] = field(default_factory=set)
    completed: Set[str] = field(default_factory=set)
    stop: asyncio.Event = field(default_factory=asyncio.Event)
    stop_reason: Optional[str] = None
    fatal: Optional[BaseException] = None
    processed: int = 0
    failed: int = 0
    skipped: int = 0
    products: int = 0

    def enqueue(self, url: str) -> bool:
        key = url.lower()
        if key in self.seen or len(self.seen) >= self.limit:
            return False
        self.seen.add(key)
        if key in self.completed:
            self.skipped += 1
            return False
        self.frontier.append(url)
        return True

    def halt(self, reason: str) -> None:
        if self.stop_reason is None:
            self.stop_reason = reason
        self.stop.set()


class JobExecutor:
    """Runs one claimed job to completion, pause, cancellation or lease loss.

    Page failures are recorded and never fail the job. Only a discovery or
    configuration failure, or an unexpected exception, moves it to ``failed``.
    """

    def __init__(
        self,
        store: JobStore,
        strategies: Mapping[str, CrawlerStrategy],
        lease_manager: LeaseManager,
        max_pages_per_job: int = DEFAULT_MAX_PAGES_PER_JOB,
        renewal_interval_seconds: float = DEFAULT_RENEWAL_SECONDS,
        control_interval_seconds: float = DEFAULT_CONTROL_SECONDS,
        shutdown: Optional[asyncio.Event] = None,
    ):
        """
        Initialize job executor.

        Args:
            store: Job store shared with the lease manager
            strategies: Crawler strategies keyed by crawler type
            lease_manager: Lease manager of the worker that claimed the job
            max_pages_per_job: Page bound for jobs without ``max_pages``
            renewal_interval_seconds: How often the heartbeat renews the lease
            control_interval_seconds: How often the heartbeat polls job status
            shutdown: Set by the worker process to stop between pages
        """
        self.store = store
        self.strategies = strategies
        self.lease_manager = lease_manager
        self.max_pages_per_job = max_pages_per_job
        self.renewal_interval_seconds = renewal_interval_seconds
        self.control_interval_seconds = control_interval_seconds
        self.shutdown = shutdown or asyncio.Event()

    @property
    def worker_id(self) -> str:
        return self.lease_manager.worker_id

    async def run(self, job: CrawlJob) -> Optional[CrawlJob]:
        """Execute a job this worker holds the lease for.

        Returns the job as last written by this worker, or the current stored
        job if it was paused, canceled or taken over while running.
        """
        log_extra = {"job_id": job.id, "worker_id": self.worker_id}
        logger.info(f"Starting crawl job {job.id}: {job.start_url}", extra=log_extra)

        heartbeat: Optional[asyncio.Task] = None
        try:
            run = await self._prepare(job)
            heartbeat = asyncio.create_task(self._heartbeat(run))
            await self._crawl(run)
        except Exception as e:
            logger.error(f"Crawl job {job.id} failed: {e}", extra=log_extra)
            return await self.lease_manager.release(
                job.id,
                JobStatus.FAILED,
                error_message=truncate(str(e) or type(e).__name__, MAX_ERROR_MESSAGE_LENGTH),
            )
        finally:
            if heartbeat is not None:
                heartbeat.cancel()
                await asyncio.gather(heartbeat, return_exceptions=True)

        return await self._finish(run)

    # ==================== SETUP ====================

    async def _prepare(self, job: CrawlJob) -> _RunState:
        provider = await self.store.get_provider(job.provider_id)
        if provider is None:
            raise JobFatalError("Provider not found", {"provider_id": job.provider_id})

        config = parse_crawler_config(provider.crawler_config)
        try:
            strategy = select_strategy(self.strategies, config.crawler_type)
        except ConfigurationError as e:
            raise JobFatalError(str(e)) from e

        limit = min(job.max_pages or self.max_pages_per_job, self.max_pages_per_job)
        run = _RunState(job=job, config=config, strategy=strategy, limit=limit)

        try:
            discovered = await strategy.discover_urls(job.start_url, job.sitemap_url, config)
        except Exception as e:
            raise JobFatalError(f"URL discovery failed: {e}") from e
        urls = dedupe_urls(discovered, limit) or [job.start_url]

        # Stored frontier first so a resumed job keeps the order and bound it had.
        stored = await self.store.get_frontier_urls(job.id)
        run.completed = {u.lower() for u in await self.store.get_fetched_urls(job.id)}
        accepted = [url for url in [*stored, *urls] if run.enqueue(url)]
        await self.store.add_frontier_urls(job.id, accepted)

        logger.info(
            f"Job {job.id}: {len(urls)} URLs discovered with {strategy.crawler_type} "
            f"strategy, {len(stored)} in stored frontier, {run.skipped} already fetched, "
            f"{len(run.frontier)} to fetch, limit {limit}",
            extra={"job_id": job.id},
        )
        return run

    # ==================== CRAWL LOOP ====================

    async def _crawl(self, run: _RunState) -> None:
        semaphore = asyncio.Semaphore(run.config.max_concurrency)
        in_flight: Set[asyncio.Task] = set()
        stopped = asyncio.ensure_future(run.stop.wait())

        try:
            while not run.stop.is_set():
                if not run.frontier:
                    if not in_flight:
                        break
                    await asyncio.wait(
                        in_flight | {stopped}, return_when=asyncio.FIRST_COMPLETED
                    )
                    continue

                await semaphore.acquire()
                if not run.frontier or await self._should_stop(run):
                    semaphore.release()
                    continue
                url = run.frontier.popleft()
                task = asyncio.create_task(self._process(run, url, semaphore))
                in_flight.add(task)
                task.add_done_callback(in_flight.discard)
        except Exception:
            run.halt(STOP_ERROR)
            raise
        finally:
            stopped.cancel()
            if in_flight:
                await asyncio.gather(*in_flight, return_exceptions=True)

        if run.fatal is not None:
            raise run.fatal

    async def _process(self, run: _RunState, url: str, semaphore: asyncio.Semaphore) -> None:
        job = run.job
        try:
            result = await self._fetch_interruptibly(run, url)
            if result is None:
                return

            # Links are stored before the page row: a stop in between re-fetches
            # the page on resume instead of losing its links.
            added: List[str] = []
            if result.success:
                added = [link for link in result.discovered_urls if run.enqueue(link)]
                await self.store.add_frontier_urls(job.id, added)

            page = await self.store.insert_page(job.id, result)
            run.processed += 1
            run.completed.add(url.lower())
            if result.success:
                if result.products:
                    run.products += await self.store.insert_extracted_products(
                        job.id, job.provider_id, page.id, result.products
                    )
                logger.debug(
                    f"Fetched {url}: {len(result.products)} products, {len(added)} new URLs",
                    extra={"job_id": job.id, "url": url},
                )
            else:
                run.failed += 1
                logger.warning(
                    f"Page failed {url}: {result.error}",
                    extra={"job_id": job.id, "url": url},
                )
        except Exception as e:
            if run.fatal is None:
                run.fatal = e
            run.halt(STOP_ERROR)
        finally:
            semaphore.release()

    async def _fetch_interruptibly(self, run: _RunState, url: str) -> Optional[CrawlPageResult]:
        """Fetch a page, abandoning it if the job is stopped meanwhile."""
        fetch = asyncio.ensure_future(run.strategy.fetch_and_extract(url, run.config))
        stopped = asyncio.ensure_future(run.stop.wait())
        try:
            await asyncio.wait({fetch, stopped}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            stopped.cancel()
        if not fetch.done():
            fetch.cancel()
            await asyncio.gather(fetch, return_exceptions=True)
            logger.info(
                f"Abandoned in-flight fetch of {url} ({run.stop_reason})",
                extra={"job_id": run.job.id, "url": url},
            )
            return None
        if fetch.exception() is not None:
            error = fetch.exception()
            logger.warning(
                f"Strategy raised while fetching {url}: {error}",
                extra={"job_id": run.job.id, "url": url},
            )
            return CrawlPageResult(url=url, success=False, error=str(error) or type(error).__name__)
        return fetch.result()

    # ==================== CONTROL ====================

    async def _should_stop(self, run: _RunState) -> bool:
        if run.stop.is_set():
            return True
        if self.shutdown.is_set():
            run.halt(STOP_SHUTDOWN)
            return True

        current = await self.store.get_job(run.job.id)
        if current is None or current.status != JobStatus.RUNNING or (
            current.lease_owner != self.worker_id
        ):
            if current is not None and current.status == JobStatus.PAUSED:
                run.halt(STOP_PAUSED)
            elif current is not None and current.status == JobStatus.CANCELED:
                run.halt(STOP_CANCELED)
            else:
                run.halt(STOP_LEASE_LOST)
            return True
        return False

    async def _heartbeat(self, run: _RunState) -> None:
        """Renew the lease and watch for control signals while the job runs."""
        last_renewal = time.monotonic()
        while not run.stop.is_set():
            try:
                await asyncio.wait_for(
                    run.stop.wait(), timeout=self.control_interval_seconds
                )
                return
            except asyncio.TimeoutError:
                pass

            try:
                if time.monotonic() - last_renewal >= self.renewal_interval_seconds:
                    if not await self.lease_manager.renew(run.job.id):
                        run.halt(STOP_LEASE_LOST)
                        return
                    last_renewal = time.monotonic()
                await self._should_stop(run)
            except Exception as e:
                logger.warning(
                    f"Heartbeat error on job {run.job.id}: {e}",
                    extra={"job_id": run.job.id, "worker_id": self.worker_id},
                )

    # ==================== COMPLETION ====================

    async def _finish(self, run: _RunState) -> Optional[CrawlJob]:
        job = run.job
        log_extra = {"job_id": job.id, "worker_id": self.worker_id}

        if run.stop_reason in (STOP_PAUSED, STOP_CANCELED, STOP_LEASE_LOST):
            logger.info(
                f"Crawl job {job.id} stopped ({run.stop_reason}) after "
                f"{run.processed} pages",
                extra=log_extra,
            )
            return await self.store.get_job(job.id)
        if run.stop_reason == STOP_SHUTDOWN:
            logger.info(
                f"Worker shutting down; job {job.id} stays running until its lease expires",
                extra=log_extra,
            )
            return await self.store.get_job(job.id)

        # Summarize every attempt of the job, including runs before a pause or takeover.
        pages = await self.store.get_job_pages(job.id)
        failed = [p for p in reversed(pages) if p.status == PageStatus.FAILED]
        summary = summarize_page_errors(
            [p.error_message for p in failed], len(failed), len(pages)
        )

        logger.info(
            f"Crawl job {job.id} completed: {run.processed} pages "
            f"({run.failed} failed), {run.products} products",
            extra=log_extra,
        )
        return await self.lease_manager.release(
            job.id, JobStatus.SUCCEEDED, error_message=summary
        )
