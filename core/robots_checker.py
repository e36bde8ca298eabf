"""
Robots.txt permission checks for the generic crawler.

Rules are fetched once per host through the shared httpx client and cached for
the lifetime of the checker. When robots.txt cannot be fetched the URL is
treated as allowed.
"""

import asyncio
import logging
import urllib.robotparser
from typing import Dict, Optional
from urllib.parse import urlsplit

import httpx

from utils.helpers import headers_for, site_root

logger = logging.getLogger(__name__)


class RobotsTxtChecker:
    """Answers "may this user agent fetch this URL" per robots.txt."""

    def __init__(self, client: httpx.AsyncClient):
        self.client = client
        self.parsed_robots: Dict[str, Optional[urllib.robotparser.RobotFileParser]] = {}
        self._lock = asyncio.Lock()

    async def check_url_allowed(self, url: str, user_agent: str) -> bool:
        parser = await self._get_robots_parser(url, user_agent)
        if parser is None:
            return True
        allowed = parser.can_fetch(user_agent, url)
        if not allowed:
            logger.info(f"URL disallowed by robots.txt: {url}", extra={"url": url})
        return allowed

    async def _get_robots_parser(
        self, url: str, user_agent: str
    ) -> Optional[urllib.robotparser.RobotFileParser]:
        domain = urlsplit(url).netloc.lower()
        async with self._lock:
            if domain in self.parsed_robots:
                return self.parsed_robots[domain]

            parser: Optional[urllib.robotparser.RobotFileParser] = None
            robots_url = f"{site_root(url)}/robots.txt"
            try:
                response = await self.client.get(robots_url, headers=headers_for(user_agent))
                if response.status_code == 200:
                    parser = urllib.robotparser.RobotFileParser(robots_url)
                    parser.parse(response.text.splitlines())
                else:
                    logger.debug(
                        f"robots.txt for {domain} returned HTTP {response.status_code}"
                    )
            except httpx.HTTPError as e:
                logger.warning(
                    f"Could not fetch robots.txt for {domain}, defaulting to allowed: {e}"
                )

            self.parsed_robots[domain] = parser
            return parser
