"""
Browser-rendered crawler strategy for JavaScript heavy or bot-protected sites.

Pages are rendered through a ``PageRenderer`` (Playwright in production) and a
randomized politeness delay in ``[delay, 3 * delay]`` precedes every fetch.
Product data is read from an embedded page-state JSON blob when present,
otherwise from DOM selectors on the rendered HTML.

Strategy specific ``customSettings``:

* ``SitemapUrl``: sitemap used when the job has none
* ``ProductUrlPattern``: regex a sitemap URL must match (default ``-l\\d+``)
* ``MaxPages``: cap on discovered URLs
* ``DetailSelector``: marker waited for after network idle
* ``StateVariable``: window property holding the page-state JSON
"""

import asyncio
import json
import logging
import random
import re
from typing import Any, Awaitable, Callable, Dict, List, Optional

from bs4 import BeautifulSoup

from core.sitemap_analyzer import SitemapAnalyzer
from core.types import (
    DEFAULT_CURRENCY,
    CrawlerConfig,
    CrawlerType,
    CrawlPageResult,
    ExtractedProduct,
    PageRenderer,
)
from parsers.product_parser import dedupe_products
from utils.error_handling import DiscoveryError, FetchError
from utils.helpers import (
    compute_hash,
    dedupe_urls,
    filter_urls,
    parse_positive_int,
    parse_price,
    resolve_url,
    sanitize_text,
)

logger = logging.getLogger(__name__)

DEFAULT_PRODUCT_URL_PATTERN = r"-l\d+"
DEFAULT_DETAIL_SELECTOR = "[data-qa-qualifier='product-detail-info']"
DEFAULT_STATE_VARIABLE = "__PRELOADED_STATE__"
DEFAULT_NAME_SELECTOR = "h1.product-detail-info__header-name"
DEFAULT_PRICE_SELECTOR = "[data-qa-qualifier='product-detail-info-price-amount']"
DEFAULT_DESCRIPTION_SELECTOR = ".expandable-text__inner-content"
DEFAULT_IMAGE_SELECTOR = "picture.media-image img"
DEFAULT_PAGINATION_SELECTOR = "a[data-qa-qualifier='pagination-next']"
PRODUCT_ID_FROM_URL_RE = re.compile(r"-l(\d+)")
STATE_PRODUCT_KEYS = ("product", "productDetail")


def state_expression(variable: str) -> str:
    return f"() => window.{variable} ? JSON.stringify(window.{variable}) : null"


def product_id_from_url(url: str) -> Optional[str]:
    match = PRODUCT_ID_FROM_URL_RE.search(url)
    return match.group(1) if match else None


def politeness_delay_seconds(delay_ms: int, rng: random.Random) -> float:
    """Random delay in ``[delay, 3 * delay]`` milliseconds, as seconds."""
    if delay_ms <= 0:
        return 0.0
    return rng.uniform(delay_ms, delay_ms * 3) / 1000.0


class BrowserRenderedCrawlerStrategy:
    """Renders every page in a headless browser before extracting."""

    crawler_type = CrawlerType.BROWSER.value

    def __init__(
        self,
        renderer: PageRenderer,
        sitemap_analyzer: SitemapAnalyzer,
        rng: Optional[random.Random] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.renderer = renderer
        self.sitemap_analyzer = sitemap_analyzer
        self.rng = rng or random.Random()
        self._sleep = sleep

    async def discover_urls(
        self, start_url: str, sitemap_url: Optional[str], config: CrawlerConfig
    ) -> List[str]:
        effective_sitemap = sitemap_url or config.setting("SitemapUrl")
        pattern = config.setting("ProductUrlPattern") or DEFAULT_PRODUCT_URL_PATTERN

        urls: List[str] = []
        if effective_sitemap:
            logger.info(f"Discovering URLs from sitemap: {effective_sitemap}")
            try:
                found = await self.sitemap_analyzer.resolve(
                    effective_sitemap, config.user_agent
                )
                product_re = re.compile(pattern, re.IGNORECASE)
                urls = [u for u in found if product_re.search(u)]
                logger.info(f"Found {len(urls)} product URLs in sitemap")
            except (DiscoveryError, re.error) as e:
                logger.error(f"Failed to parse sitemap, falling back to start URL: {e}")
        else:
            logger.warning("No sitemap configured; crawling from start URL only")

        if not urls:
            urls = [start_url]

        urls = filter_urls(
            dedupe_urls(urls), config.include_patterns, config.exclude_patterns
        )
        max_pages = parse_positive_int(config.setting("MaxPages"))
        if max_pages is not None:
            urls = urls[:max_pages]
        return urls

    async def fetch_and_extract(self, url: str, config: CrawlerConfig) -> CrawlPageResult:
        await self._sleep(politeness_delay_seconds(config.request_delay_ms, self.rng))

        state_variable = config.setting("StateVariable") or DEFAULT_STATE_VARIABLE
        try:
            rendered = await self.renderer.render(
                url,
                user_agent=config.user_agent,
                wait_for_selector=config.setting("DetailSelector") or DEFAULT_DETAIL_SELECTOR,
                state_expression=state_expression(state_variable),
            )
        except FetchError as e:
            logger.warning(f"Render failed for {url}: {e}", extra={"url": url})
            return CrawlPageResult(url=url, success=False, error=str(e))

        status = rendered.status_code
        if status is None or not 200 <= status < 300:
            return CrawlPageResult(
                url=url,
                success=False,
                http_status_code=status,
                error=f"Page returned status: {status}",
            )

        soup = BeautifulSoup(rendered.html or "", "html.parser")
        products = self.extract_from_state(rendered.page_state, url)
        if not products:
            logger.debug(
                "Page state not found, falling back to DOM extraction",
                extra={"url": url},
            )
            products = self.extract_from_dom(soup, url, config)

        return CrawlPageResult(
            url=url,
            success=True,
            http_status_code=status,
            content_type="text/html",
            title=sanitize_text(rendered.title),
            content_hash=compute_hash(rendered.html or ""),
            products=dedupe_products(products),
            discovered_urls=self.extract_pagination(soup, url, config),
        )

    def extract_from_state(self, page_state: Optional[str], url: str) -> List[ExtractedProduct]:
        if not page_state:
            return []
        try:
            root = json.loads(page_state)
        except json.JSONDecodeError as e:
            logger.debug(f"Could not parse page state: {e}", extra={"url": url})
            return []
        if not isinstance(root, dict):
            return []

        for key in STATE_PRODUCT_KEYS:
            element = root.get(key)
            if isinstance(element, dict):
                product = self._product_from_state(element, url)
                return [product] if product else []
        return []

    @staticmethod
    def _product_from_state(element: Dict[str, Any], url: str) -> Optional[ExtractedProduct]:
        name = sanitize_text(element.get("name")) if isinstance(element.get("name"), str) else None
        raw_id = element.get("id")
        external_id = str(raw_id) if raw_id not in (None, "") else product_id_from_url(url)
        if not name or not external_id:
            return None

        # Prices in page state are stored in cents.
        price = None
        for key in ("price", "currentPrice"):
            value = element.get(key)
            if isinstance(value, (int, float)) and not isinstance(value, bool):
                price = value / 100.0
                break

        images: List[str] = []
        media = element.get("images")
        if not isinstance(media, list):
            media = element.get("media")
        if isinstance(media, list):
            for item in media:
                if not isinstance(item, dict):
                    continue
                image_url = resolve_url(
                    item.get("url") or item.get("src"), url, strip_query=False
                )
                if image_url:
                    images.append(image_url)

        category = element.get("category") or element.get("familyName")
        description = element.get("description")
        return ExtractedProduct(
            name=name,
            external_id=external_id,
            description=sanitize_text(description) if isinstance(description, str) else None,
            price=price,
            currency=DEFAULT_CURRENCY,
            product_url=url,
            image_urls=images,
            category=category if isinstance(category, str) else None,
            raw_payload=json.dumps(element, ensure_ascii=False),
        )

    def extract_from_dom(
        self, soup: BeautifulSoup, url: str, config: CrawlerConfig
    ) -> List[ExtractedProduct]:
        name = _text(soup, config.product_name_selector or DEFAULT_NAME_SELECTOR)
        external_id = product_id_from_url(url)
        if not name or not external_id:
            return []

        images = []
        for node in _select(soup, config.product_image_selector or DEFAULT_IMAGE_SELECTOR):
            image_url = resolve_url(
                node.get("src") or node.get("data-src"), url, strip_query=False
            )
            if image_url:
                images.append(image_url)

        return [
            ExtractedProduct(
                name=name,
                external_id=external_id,
                price=parse_price(
                    _text(soup, config.product_price_selector or DEFAULT_PRICE_SELECTOR)
                ),
                currency=DEFAULT_CURRENCY,
                description=_text(
                    soup, config.product_description_selector or DEFAULT_DESCRIPTION_SELECTOR
                ),
                image_urls=images,
                product_url=url,
            )
        ]

    @staticmethod
    def extract_pagination(soup: BeautifulSoup, url: str, config: CrawlerConfig) -> List[str]:
        selector = config.pagination_selector or DEFAULT_PAGINATION_SELECTOR
        links = []
        for node in _select(soup, selector):
            link = resolve_url(node.get("href"), url)
            if link:
                links.append(link)
        return dedupe_urls(links)


def _select(soup: BeautifulSoup, selector: str) -> list:
    try:
        return soup.select(selector)
    except Exception as e:
        logger.debug(f"Invalid selector '{selector}': {e}")
        return []


def _text(soup: BeautifulSoup, selector: str) -> Optional[str]:
    nodes = _select(soup, selector)
    return sanitize_text(nodes[0].get_text(" ", strip=True)) if nodes else None
