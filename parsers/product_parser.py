"""
Layered product extraction from HTML pages.

``ProductExtractor`` runs three layers in a fixed order and unions the results
of the first two before deduplicating:

1. JSON-LD ``application/ld+json`` blocks typed as ``Product``
2. Provider-configured CSS selectors (container/name/price/...)
3. OpenGraph product metadata, only when layers 1 and 2 found nothing

Every layer degrades to an empty result on malformed input; nothing here raises
for bad markup.
"""

from __future__ import annotations

import json
import logging
from typing import Any, Dict, Iterable, List, Optional

from bs4 import BeautifulSoup, Tag

from core.types import DEFAULT_CURRENCY, CrawlerConfig, ExtractedProduct
from utils.error_handling import ExtractionError
from utils.helpers import (
    canonical_url,
    is_same_host,
    parse_price,
    resolve_url,
    sanitize_text,
)

logger = logging.getLogger(__name__)

IMAGE_SOURCE_ATTRIBUTES = ("src", "data-src", "data-lazy-src")
OPENGRAPH_PRODUCT_TYPES = ("product", "og:product")


def _build_soup(html: str) -> BeautifulSoup:
    return BeautifulSoup(html or "", "html.parser")


def dedupe_products(products: Iterable[ExtractedProduct]) -> List[ExtractedProduct]:
    """Keep the first product per ``sku:<external_id>`` or ``url:<canonical url>``.

    Items with neither key are kept as-is.
    """
    seen = set()
    unique: List[ExtractedProduct] = []
    for product in products:
        key = dedup_key(product)
        if key is not None:
            if key in seen:
                continue
            seen.add(key)
        unique.append(product)
    return unique


def dedup_key(product: ExtractedProduct) -> Optional[str]:
    if product.external_id:
        return f"sku:{product.external_id}".lower()
    url = canonical_url(product.product_url)
    if url:
        return f"url:{url}".lower()
    return None


class ProductExtractor:
    """Extracts candidate products and follow-up links from a page."""

    def extract_products(
        self, html: str, page_url: str, config: CrawlerConfig
    ) -> List[ExtractedProduct]:
        soup = _build_soup(html)

        products: List[ExtractedProduct] = []

        json_ld_products = self._safe_layer(
            "json-ld", page_url, lambda: self.extract_json_ld(soup, page_url)
        )
        if json_ld_products:
            logger.debug(
                f"Extracted {len(json_ld_products)} products from JSON-LD",
                extra={"url": page_url},
            )
            products.extend(json_ld_products)

        if config.product_container_selector:
            selector_products = self._safe_layer(
                "selectors",
                page_url,
                lambda: self.extract_with_selectors(soup, page_url, config),
            )
            if selector_products:
                logger.debug(
                    f"Extracted {len(selector_products)} products using selectors",
                    extra={"url": page_url},
                )
                products.extend(selector_products)

        if not products:
            og_product = self._safe_layer(
                "opengraph", page_url, lambda: self.extract_open_graph(soup, page_url)
            )
            if og_product:
                products.extend(og_product)

        return dedupe_products(products)

    def extract_links(
        self, html: str, page_url: str, config: CrawlerConfig
    ) -> List[str]:
        """Same-host anchors plus pagination selector matches, normalised."""
        soup = _build_soup(html)
        links: List[str] = []
        seen = set()

        def add(url: Optional[str]) -> None:
            if url and url.lower() not in seen:
                seen.add(url.lower())
                links.append(url)

        for anchor in soup.find_all("a", href=True):
            url = resolve_url(anchor.get("href"), page_url)
            if url and is_same_host(url, page_url):
                add(url)

        if config.pagination_selector:
            try:
                for node in soup.select(config.pagination_selector):
                    add(resolve_url(node.get("href"), page_url))
            except Exception as e:
                logger.warning(
                    f"Error extracting pagination links with selector "
                    f"'{config.pagination_selector}': {e}",
                    extra={"url": page_url},
                )

        return links

    # ==================== STRUCTURED DATA ====================

    def extract_json_ld(self, soup: BeautifulSoup, page_url: str) -> List[ExtractedProduct]:
        products: List[ExtractedProduct] = []
        for script in soup.find_all("script", attrs={"type": "application/ld+json"}):
            raw = (script.string or script.get_text() or "").strip()
            if not raw:
                continue
            try:
                root = json.loads(raw)
            except json.JSONDecodeError as e:
                logger.debug(f"Failed to parse JSON-LD: {e}", extra={"url": page_url})
                continue

            for item in self._json_ld_items(root):
                product = self._parse_json_ld_product(item, page_url)
                if product is not None:
                    products.append(product)
        return products

    @staticmethod
    def _json_ld_items(root: Any) -> List[Dict[str, Any]]:
        if isinstance(root, list):
            return [item for item in root if isinstance(item, dict)]
        if isinstance(root, dict):
            graph = root.get("@graph")
            if isinstance(graph, list):
                return [item for item in graph if isinstance(item, dict)]
            return [root]
        return []

    @staticmethod
    def _is_product_type(item: Dict[str, Any]) -> bool:
        type_value = item.get("@type")
        if isinstance(type_value, str):
            types = [type_value]
        elif isinstance(type_value, list):
            types = [t for t in type_value if isinstance(t, str)]
        else:
            return False
        return any(t.lower() == "product" for t in types)

    def _parse_json_ld_product(
        self, item: Dict[str, Any], page_url: str
    ) -> Optional[ExtractedProduct]:
        if not self._is_product_type(item):
            return None

        name = sanitize_text(_as_text(item.get("name")))
        if not name:
            return None

        price: Optional[float] = None
        currency: Optional[str] = None
        offers = item.get("offers")
        offer = offers[0] if isinstance(offers, list) and offers else offers
        if isinstance(offer, dict):
            raw_price = offer.get("price")
            if isinstance(raw_price, (int, float)) and not isinstance(raw_price, bool):
                price = float(raw_price)
            elif isinstance(raw_price, str):
                price = parse_price(raw_price)
            currency = _as_text(offer.get("priceCurrency"))

        sku = _as_text(item.get("sku")) or _as_text(item.get("productID"))

        return ExtractedProduct(
            name=name,
            external_id=sku,
            description=sanitize_text(_as_text(item.get("description"))),
            price=price,
            currency=currency or DEFAULT_CURRENCY,
            product_url=resolve_url(_as_text(item.get("url")), page_url, strip_query=False)
            or page_url,
            image_urls=self._json_ld_images(item.get("image"), page_url),
            category=_as_text(item.get("category")),
            raw_payload=json.dumps(item, ensure_ascii=False),
        )

    @staticmethod
    def _json_ld_images(value: Any, page_url: str) -> List[str]:
        candidates: List[Optional[str]] = []
        if isinstance(value, str):
            candidates.append(value)
        elif isinstance(value, list):
            for entry in value:
                if isinstance(entry, str):
                    candidates.append(entry)
                elif isinstance(entry, dict):
                    candidates.append(_as_text(entry.get("url")))
        elif isinstance(value, dict):
            candidates.append(_as_text(value.get("url")))

        images = []
        for candidate in candidates:
            url = resolve_url(candidate, page_url, strip_query=False)
            if url:
                images.append(url)
        return images

    # ==================== CONFIGURED SELECTORS ====================

    def extract_with_selectors(
        self, soup: BeautifulSoup, page_url: str, config: CrawlerConfig
    ) -> List[ExtractedProduct]:
        try:
            containers = soup.select(config.product_container_selector)
        except Exception as e:
            raise ExtractionError(
                f"Invalid container selector '{config.product_container_selector}': {e}",
                {"url": page_url},
            ) from e

        products: List[ExtractedProduct] = []
        for container in containers:
            name = _select_text(container, config.product_name_selector)
            if not name:
                continue

            product_url = None
            if config.product_link_selector:
                product_url = resolve_url(
                    _select_attribute(container, config.product_link_selector, "href"),
                    page_url,
                )

            products.append(
                ExtractedProduct(
                    name=name,
                    description=_select_text(container, config.product_description_selector),
                    price=parse_price(_select_text(container, config.product_price_selector)),
                    currency=DEFAULT_CURRENCY,
                    product_url=product_url or page_url,
                    image_urls=self._selector_images(container, config, page_url),
                )
            )
        return products

    @staticmethod
    def _selector_images(container: Tag, config: CrawlerConfig, page_url: str) -> List[str]:
        if not config.product_image_selector:
            return []
        try:
            nodes = container.select(config.product_image_selector)
        except Exception as e:
            logger.debug(f"Invalid image selector: {e}", extra={"url": page_url})
            return []

        images = []
        for node in nodes:
            source = next(
                (node.get(attr) for attr in IMAGE_SOURCE_ATTRIBUTES if node.get(attr)),
                None,
            )
            url = resolve_url(source, page_url, strip_query=False)
            if url:
                images.append(url)
        return images

    # ==================== PAGE METADATA ====================

    def extract_open_graph(
        self, soup: BeautifulSoup, page_url: str
    ) -> List[ExtractedProduct]:
        og_type = _meta_content(soup, "og:type")
        if not og_type or og_type.lower() not in OPENGRAPH_PRODUCT_TYPES:
            return []

        title = sanitize_text(_meta_content(soup, "og:title"))
        if not title:
            return []

        image = _meta_content(soup, "og:image")
        image_url = resolve_url(image, page_url, strip_query=False) if image else None
        return [
            ExtractedProduct(
                name=title,
                description=sanitize_text(_meta_content(soup, "og:description")),
                price=parse_price(_meta_content(soup, "product:price:amount")),
                currency=_meta_content(soup, "product:price:currency") or DEFAULT_CURRENCY,
                product_url=_meta_content(soup, "og:url") or page_url,
                image_urls=[image_url] if image_url else [],
            )
        ]

    def _safe_layer(self, layer: str, page_url: str, extract) -> List[ExtractedProduct]:
        try:
            return extract()
        except ExtractionError as e:
            logger.warning(
                f"Extraction layer '{layer}' yielded nothing: {e}",
                extra={"url": page_url},
            )
        except Exception as e:
            logger.warning(
                f"Unexpected error in extraction layer '{layer}': {e}",
                extra={"url": page_url},
            )
        return []


def _as_text(value: Any) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, (str, int, float)) and not isinstance(value, bool):
        text = str(value).strip()
        return text or None
    return None


def _meta_content(soup: BeautifulSoup, prop: str) -> Optional[str]:
    node = soup.find("meta", attrs={"property": prop}) or soup.find(
        "meta", attrs={"name": prop}
    )
    if node is None:
        return None
    content = node.get("content")
    return content.strip() if isinstance(content, str) and content.strip() else None


def _select_text(container: Tag, selector: Optional[str]) -> Optional[str]:
    if not selector:
        return None
    try:
        node = container.select_one(selector)
    except Exception:
        logger.debug(f"Invalid selector '{selector}'")
        return None
    return sanitize_text(node.get_text(" ", strip=True)) if node else None


def _select_attribute(container: Tag, selector: Optional[str], attribute: str) -> Optional[str]:
    if not selector:
        return None
    try:
        node = container.select_one(selector)
    except Exception:
        logger.debug(f"Invalid selector '{selector}'")
        return None
    if node is None:
        return None
    value = node.get(attribute)
    return value if isinstance(value, str) else None
