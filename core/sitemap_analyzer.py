"""
Sitemap based URL discovery.

``SitemapAnalyzer`` resolves a sitemap location (plain ``urlset``, gzip
compressed sitemap, ``sitemapindex`` or ``robots.txt``) into page URLs. Nested
sitemaps are followed recursively, bounded by ``max_nested_sitemaps`` fetches
per resolution so self-referencing or cyclic indices always terminate. A
failing nested sitemap is logged and skipped without affecting its siblings.
"""

from __future__ import annotations

import gzip
import logging
import xml.etree.ElementTree as ET
from dataclasses import dataclass, field
from typing import List, Optional, Set
from urllib.parse import urljoin

import httpx

from core.types import CrawlerConfig
from utils.error_handling import DiscoveryError
from utils.helpers import (
    dedupe_urls,
    filter_urls,
    headers_for,
    parse_robots_txt,
    site_root,
)

logger = logging.getLogger(__name__)

DEFAULT_MAX_NESTED_SITEMAPS = 50
COMMON_SITEMAP_PATHS = ("/sitemap.xml", "/sitemap_index.xml", "/robots.txt")
GZIP_MAGIC = b"\x1f\x8b"


@dataclass
class _ResolutionBudget:
    remaining: int
    visited: Set[str] = field(default_factory=set)


def decode_sitemap_body(body: bytes) -> str:
    """Return the sitemap text, gunzipping bodies that are still compressed."""
    if body[:2] == GZIP_MAGIC:
        try:
            body = gzip.decompress(body)
        except (OSError, EOFError) as exc:
            raise DiscoveryError(f"Corrupt gzip sitemap: {exc}") from exc
    return body.decode("utf-8", errors="replace")


def parse_sitemap_xml(xml_content: str) -> tuple[str, List[str]]:
    """Parse a sitemap document.

    Returns ``(kind, locations)`` where kind is ``"sitemapindex"`` or
    ``"urlset"``.

    Raises:
        DiscoveryError: If the document is not XML or not a sitemap
    """
    try:
        root = ET.fromstring(xml_content.strip())
    except ET.ParseError as exc:
        raise DiscoveryError(f"Sitemap XML parse error: {exc}") from exc

    # remove namespaces
    for elem in root.iter():
        if isinstance(elem.tag, str) and "}" in elem.tag:
            elem.tag = elem.tag.split("}", 1)[1]

    if root.tag == "sitemapindex":
        child = "sitemap"
    elif root.tag == "urlset":
        child = "url"
    else:
        raise DiscoveryError(f"Unexpected sitemap root element <{root.tag}>")

    locations = []
    for entry in root.findall(f".//{child}"):
        loc = entry.find("loc")
        if loc is not None and loc.text and loc.text.strip():
            locations.append(loc.text.strip())
    return root.tag, locations


class SitemapAnalyzer:
    """Resolves sitemaps and robots.txt pointers into page URLs."""

    def __init__(
        self,
        client: httpx.AsyncClient,
        max_nested_sitemaps: int = DEFAULT_MAX_NESTED_SITEMAPS,
    ):
        self.client = client
        self.max_nested_sitemaps = max_nested_sitemaps

    async def fetch_text(self, url: str, user_agent: Optional[str] = None) -> str:
        """Download a sitemap or robots.txt body.

        Raises:
            DiscoveryError: On transport errors or non-2xx responses
        """
        headers = headers_for(user_agent) if user_agent else None
        try:
            response = await self.client.get(url, headers=headers)
        except httpx.HTTPError as exc:
            raise DiscoveryError(f"Sitemap request failed for {url}: {exc}") from exc
        if not response.is_success:
            raise DiscoveryError(
                f"Sitemap request for {url} returned HTTP {response.status_code}",
                {"status_code": response.status_code},
            )
        return decode_sitemap_body(response.content)

    async def resolve(self, sitemap_url: str, user_agent: Optional[str] = None) -> List[str]:
        """Resolve one sitemap location into the page URLs it lists.

        Raises:
            DiscoveryError: If the top-level location itself is unusable
        """
        budget = _ResolutionBudget(remaining=self.max_nested_sitemaps)
        budget.visited.add(sitemap_url.lower())
        return await self._resolve(sitemap_url, user_agent, budget)

    async def resolve_quietly(
        self, sitemap_url: str, user_agent: Optional[str] = None
    ) -> List[str]:
        try:
            return await self.resolve(sitemap_url, user_agent)
        except DiscoveryError as exc:
            logger.debug(f"Could not resolve sitemap {sitemap_url}: {exc}")
            return []

    async def _resolve(
        self, sitemap_url: str, user_agent: Optional[str], budget: _ResolutionBudget
    ) -> List[str]:
        content = await self.fetch_text(sitemap_url, user_agent)

        if sitemap_url.lower().rstrip("/").endswith("robots.txt"):
            nested = parse_robots_txt(content)
            return await self._resolve_nested(nested, sitemap_url, user_agent, budget)

        kind, locations = parse_sitemap_xml(content)
        if kind == "sitemapindex":
            return await self._resolve_nested(locations, sitemap_url, user_agent, budget)
        return locations

    async def _resolve_nested(
        self,
        locations: List[str],
        parent_url: str,
        user_agent: Optional[str],
        budget: _ResolutionBudget,
    ) -> List[str]:
        urls: List[str] = []
        for location in locations:
            nested_url = urljoin(parent_url, location)
            key = nested_url.lower()
            if key in budget.visited:
                logger.debug(f"Skipping already visited sitemap {nested_url}")
                continue
            if budget.remaining <= 0:
                logger.warning(
                    f"Nested sitemap limit ({self.max_nested_sitemaps}) reached; "
                    f"ignoring remaining entries of {parent_url}"
                )
                break
            budget.remaining -= 1
            budget.visited.add(key)
            try:
                urls.extend(await self._resolve(nested_url, user_agent, budget))
            except DiscoveryError as exc:
                logger.warning(f"Skipping nested sitemap {nested_url}: {exc}")
        return urls

    async def discover(
        self,
        start_url: str,
        sitemap_url: Optional[str],
        config: CrawlerConfig,
        max_pages: Optional[int] = None,
    ) -> List[str]:
        """Find candidate page URLs for a site.

        Tries the given sitemap, then ``/sitemap.xml``, ``/sitemap_index.xml``
        and ``/robots.txt`` at the site root, stopping at the first source that
        yields URLs. Falls back to ``[start_url]``. The result is filtered by
        the configured exclude/include patterns, deduplicated
        case-insensitively and capped at ``max_pages``.
        """
        found: List[str] = []

        if sitemap_url:
            found = await self.resolve_quietly(sitemap_url, config.user_agent)

        if not found:
            root = site_root(start_url)
            for path in COMMON_SITEMAP_PATHS:
                found = await self.resolve_quietly(urljoin(root, path), config.user_agent)
                if found:
                    break

        if not found:
            logger.info(f"No sitemap found for {start_url}; crawling from start URL")
            found = [start_url]

        unique = dedupe_urls(found)
        filtered = filter_urls(unique, config.include_patterns, config.exclude_patterns)
        result = filtered[:max_pages] if max_pages is not None else filtered

        logger.info(
            f"Discovered {len(unique)} URLs, {len(filtered)} after filtering, "
            f"{len(result)} scheduled"
        )
        return result
