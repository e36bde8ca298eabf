"""
Generic crawler strategy: plain HTTP fetch with httpx and HTML extraction.
"""

import asyncio
import logging
import time
from typing import Any, Awaitable, Callable, Dict, List, Optional
from urllib.parse import urlsplit

import httpx
from bs4 import BeautifulSoup

from core.robots_checker import RobotsTxtChecker
from core.sitemap_analyzer import SitemapAnalyzer
from core.types import CrawlerConfig, CrawlerType, CrawlPageResult
from parsers.product_parser import ProductExtractor
from utils.helpers import compute_hash, headers_for, sanitize_text

logger = logging.getLogger(__name__)

DEFAULT_FETCH_TIMEOUT_SECONDS = 30.0


def build_http_client(
    timeout_seconds: float = DEFAULT_FETCH_TIMEOUT_SECONDS,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> httpx.AsyncClient:
    """Create the shared httpx client used for page and sitemap fetches."""
    client_config: Dict[str, Any] = {
        "timeout": httpx.Timeout(timeout_seconds, connect=min(10.0, timeout_seconds)),
        "limits": httpx.Limits(
            max_keepalive_connections=20,
            max_connections=50,
            keepalive_expiry=60.0,
        ),
        "follow_redirects": True,
    }
    if transport is not None:
        client_config["transport"] = transport
    return httpx.AsyncClient(**client_config)


def extract_title(html: str) -> Optional[str]:
    soup = BeautifulSoup(html or "", "html.parser")
    if soup.title is None:
        return None
    return sanitize_text(soup.title.get_text())


class GenericCrawlerStrategy:
    """Sitemap discovery plus plain GET fetches; no JavaScript rendering."""

    crawler_type = CrawlerType.GENERIC.value

    def __init__(
        self,
        client: Optional[httpx.AsyncClient] = None,
        extractor: Optional[ProductExtractor] = None,
        timeout_seconds: float = DEFAULT_FETCH_TIMEOUT_SECONDS,
        max_nested_sitemaps: int = 50,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._owns_client = client is None
        self.client = client or build_http_client(timeout_seconds)
        self.extractor = extractor or ProductExtractor()
        self.analyzer = SitemapAnalyzer(self.client, max_nested_sitemaps)
        self.robots = RobotsTxtChecker(self.client)
        self._sleep = sleep
        self._clock = clock
        self._next_request_at: Dict[str, float] = {}

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.aclose()

    async def aclose(self) -> None:
        if self._owns_client:
            await self.client.aclose()

    async def discover_urls(
        self, start_url: str, sitemap_url: Optional[str], config: CrawlerConfig
    ) -> List[str]:
        return await self.analyzer.discover(start_url, sitemap_url, config)

    async def fetch_and_extract(self, url: str, config: CrawlerConfig) -> CrawlPageResult:
        """Fetch one page; every failure is returned as an unsuccessful result."""
        if config.respect_robots_txt and not await self.robots.check_url_allowed(
            url, config.user_agent
        ):
            return CrawlPageResult(url=url, success=False, error="Blocked by robots.txt")

        await self._pace(url, config.request_delay_seconds)
        try:
            response = await self.client.get(url, headers=headers_for(config.user_agent))
        except httpx.TimeoutException:
            logger.warning(f"Timeout crawling {url}", extra={"url": url})
            return CrawlPageResult(url=url, success=False, error="Request timed out")
        except httpx.HTTPError as e:
            logger.warning(f"HTTP error crawling {url}: {e}", extra={"url": url})
            return CrawlPageResult(url=url, success=False, error=f"HTTP error: {e}")

        status_code = response.status_code
        if not response.is_success:
            return CrawlPageResult(
                url=url,
                success=False,
                http_status_code=status_code,
                error=f"HTTP {status_code}: {response.reason_phrase}",
            )

        content_type = response.headers.get("content-type", "").split(";")[0].strip() or None
        html = response.text

        try:
            products = self.extractor.extract_products(html, url, config)
            discovered = self.extractor.extract_links(html, url, config)
            title = extract_title(html)
        except Exception as e:
            logger.error(f"Error extracting {url}: {e}", extra={"url": url})
            return CrawlPageResult(
                url=url,
                success=False,
                http_status_code=status_code,
                content_type=content_type,
                content_hash=compute_hash(html),
                error=str(e),
            )

        return CrawlPageResult(
            url=url,
            success=True,
            http_status_code=status_code,
            content_type=content_type,
            title=title,
            content_hash=compute_hash(html),
            products=products,
            discovered_urls=discovered,
        )

    async def _pace(self, url: str, delay_seconds: float) -> None:
        """Space requests to one host at least ``delay_seconds`` apart.

        The slot is reserved before sleeping, so concurrent fetches queue up
        behind each other instead of firing together.
        """
        if delay_seconds <= 0:
            return
        host = urlsplit(url).netloc.lower()
        now = self._clock()
        slot = max(now, self._next_request_at.get(host, now))
        self._next_request_at[host] = slot + delay_seconds
        if slot > now:
            await self._sleep(slot - now)
