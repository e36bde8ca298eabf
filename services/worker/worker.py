"""Crawl worker process.

Polls the job store for claimable jobs and runs them one at a time. Several
worker processes can share one database; leases keep them from running the
same job twice.
"""
import asyncio
import logging
import signal
import socket
import uuid
from datetime import timedelta
from typing import Mapping, Optional

from core.async_playwright_manager import AsyncPlaywrightManager
from core.lease_manager import LeaseManager
from core.types import CrawlerStrategy, CrawlJob, JobStore
from database.manager import DatabaseManager
from network.httpx_scraper import build_http_client
from network.strategies import build_strategy_map
from services.api.config import Settings, get_settings
from services.worker.job_executor import JobExecutor
from utils.logger import setup_logger

logger = logging.getLogger(__name__)


def build_worker_id() -> str:
    return f"worker-{socket.gethostname()}-{uuid.uuid4().hex[:8]}"


class CrawlWorker:
    """Claim, run, sleep; repeat until asked to stop."""

    def __init__(
        self,
        store: JobStore,
        strategies: Mapping[str, CrawlerStrategy],
        settings: Settings,
        worker_id: Optional[str] = None,
    ):
        self.store = store
        self.settings = settings
        self.worker_id = worker_id or settings.worker_id or build_worker_id()
        self.shutdown = asyncio.Event()
        self.lease_manager = LeaseManager(
            store,
            self.worker_id,
            lease_duration=timedelta(seconds=settings.lease_seconds),
        )
        self.executor = JobExecutor(
            store,
            strategies,
            self.lease_manager,
            max_pages_per_job=settings.max_pages_per_job,
            renewal_interval_seconds=settings.lease_renewal_seconds,
            control_interval_seconds=settings.control_poll_seconds,
            shutdown=self.shutdown,
        )

    def request_shutdown(self) -> None:
        if not self.shutdown.is_set():
            logger.info("Shutdown requested", extra={"worker_id": self.worker_id})
        self.shutdown.set()

    async def run_once(self) -> Optional[CrawlJob]:
        """Claim and run a single job; returns None when nothing was claimable."""
        job = await self.lease_manager.claim()
        if job is None:
            return None
        return await self.executor.run(job)

    async def run_forever(self) -> None:
        logger.info(f"Crawl worker {self.worker_id} started", extra={"worker_id": self.worker_id})
        while not self.shutdown.is_set():
            try:
                job = await self.run_once()
                delay = 0 if job is not None else self.settings.poll_interval_seconds
            except Exception:
                logger.exception(
                    "Error in worker loop", extra={"worker_id": self.worker_id}
                )
                delay = self.settings.error_backoff_seconds

            if delay:
                try:
                    await asyncio.wait_for(self.shutdown.wait(), timeout=delay)
                except asyncio.TimeoutError:
                    pass
        logger.info(f"Crawl worker {self.worker_id} stopped", extra={"worker_id": self.worker_id})


async def serve(settings: Settings) -> None:
    db = DatabaseManager(settings.database_url)
    await db.init_pool(
        min_size=settings.db_min_pool_size, max_size=settings.db_max_pool_size
    )

    client = build_http_client(settings.fetch_timeout_seconds)
    renderer = None
    if settings.browser_enabled:
        renderer = AsyncPlaywrightManager(
            {
                "max_contexts": settings.browser_max_contexts,
                "navigation_timeout_ms": settings.render_timeout_ms,
                "wait_for_selector_timeout_ms": settings.selector_timeout_ms,
                "headless": settings.browser_headless,
            }
        )

    try:
        strategies = build_strategy_map(
            client, renderer, max_nested_sitemaps=settings.max_nested_sitemaps
        )
        worker = CrawlWorker(db, strategies, settings)

        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, worker.request_shutdown)
            except NotImplementedError:
                # Windows event loops
                signal.signal(sig, lambda *_: worker.request_shutdown())

        await worker.run_forever()
    finally:
        if renderer is not None:
            await renderer.stop()
        await client.aclose()
        await db.close()


def main() -> None:
    """
    Start a crawl worker.

    Environment variables (see ``Settings``):
        DATABASE_URL: PostgreSQL connection URL
        WORKER_ID: Stable worker identifier (default: worker-<host>-<random>)
        POLL_INTERVAL_SECONDS: Idle sleep between claim attempts

    Usage:
        python -m services.worker.worker
    """
    settings = get_settings()
    setup_logger(level=settings.log_level, log_file=settings.log_file)
    asyncio.run(serve(settings))


if __name__ == "__main__":
    main()
