"""
Crawler strategy map and provider config resolution.

The map is an explicit ``dict`` built once at worker start and handed to the
job runner; there is no global registry.
"""

import json
import logging
from typing import Any, Dict, Mapping, Optional, Union

import httpx
from pydantic import ValidationError

from core.sitemap_analyzer import SitemapAnalyzer
from core.types import CrawlerConfig, CrawlerStrategy, CrawlerType, PageRenderer
from network.browser_strategy import BrowserRenderedCrawlerStrategy
from network.httpx_scraper import GenericCrawlerStrategy
from parsers.product_parser import ProductExtractor
from utils.error_handling import ConfigurationError

logger = logging.getLogger(__name__)

StrategyMap = Dict[str, CrawlerStrategy]


def build_strategy_map(
    client: httpx.AsyncClient,
    renderer: Optional[PageRenderer] = None,
    extractor: Optional[ProductExtractor] = None,
    max_nested_sitemaps: int = 50,
) -> StrategyMap:
    """Construct every available strategy, keyed by crawler type.

    The browser strategy is only registered when a renderer is supplied.
    """
    strategies: StrategyMap = {
        CrawlerType.GENERIC.value: GenericCrawlerStrategy(
            client=client,
            extractor=extractor,
            max_nested_sitemaps=max_nested_sitemaps,
        )
    }
    if renderer is not None:
        strategies[CrawlerType.BROWSER.value] = BrowserRenderedCrawlerStrategy(
            renderer=renderer,
            sitemap_analyzer=SitemapAnalyzer(client, max_nested_sitemaps),
        )
    return strategies


def select_strategy(strategies: Mapping[str, CrawlerStrategy], crawler_type: str) -> CrawlerStrategy:
    """Look up a strategy, falling back to ``generic`` for unknown types.

    Raises:
        ConfigurationError: If neither the type nor ``generic`` is registered
    """
    key = (crawler_type or "").strip().lower()
    strategy = strategies.get(key)
    if strategy is not None:
        return strategy

    logger.warning(
        f"No crawler strategy found for type '{crawler_type}', falling back to generic"
    )
    fallback = strategies.get(CrawlerType.GENERIC.value)
    if fallback is None:
        raise ConfigurationError(
            f"No crawler strategy registered for type '{crawler_type}' "
            "and no generic fallback available"
        )
    return fallback


def parse_crawler_config(raw: Union[None, str, Mapping[str, Any]]) -> CrawlerConfig:
    """Build a ``CrawlerConfig`` from a provider's stored JSON.

    Missing or invalid configuration degrades to the defaults.
    """
    if raw is None or raw == "":
        return CrawlerConfig()
    try:
        data = json.loads(raw) if isinstance(raw, str) else dict(raw)
        if not isinstance(data, dict):
            raise ValueError("crawler config must be a JSON object")
        return CrawlerConfig.model_validate(data)
    except (ValueError, TypeError, ValidationError) as e:
        logger.warning(f"Invalid provider crawler config, using defaults: {e}")
        return CrawlerConfig()
