"""Tests for the layered product extraction chain."""

import json

from core.types import CrawlerConfig, ExtractedProduct
from parsers.product_parser import ProductExtractor, dedup_key, dedupe_products

PAGE = "https://shop.example/c/lamps"


def _json_ld(payload) -> str:
    return f'<script type="application/ld+json">{json.dumps(payload)}</script>'


def _html(head: str = "", body: str = "") -> str:
    return f"<html><head>{head}</head><body>{body}</body></html>"


def test_json_ld_product_with_offer_list_and_image_objects() -> None:
    html = _html(
        _json_ld(
            {
                "@context": "https://schema.org",
                "@type": ["Thing", "Product"],
                "name": "  Brass   Lamp ",
                "sku": "BL-1",
                "description": "Warm light",
                "url": "/p/brass-lamp?variant=2",
                "image": [{"url": "/img/1.jpg?w=800"}, "https://cdn.example/2.jpg"],
                "category": "Lighting",
                "offers": [{"price": "1.234,50", "priceCurrency": "USD"}, {"price": "1"}],
            }
        )
    )

    [product] = ProductExtractor().extract_products(html, PAGE, CrawlerConfig())

    assert product.name == "Brass Lamp"
    assert product.external_id == "BL-1"
    assert product.price == 1234.5
    assert product.currency == "USD"
    assert product.product_url == "https://shop.example/p/brass-lamp?variant=2"
    assert product.image_urls == [
        "https://shop.example/img/1.jpg?w=800",
        "https://cdn.example/2.jpg",
    ]
    assert product.category == "Lighting"
    assert json.loads(product.raw_payload)["sku"] == "BL-1"


def test_json_ld_graph_defaults_currency_and_drops_nameless_items() -> None:
    html = _html(
        _json_ld(
            {
                "@graph": [
                    {"@type": "BreadcrumbList", "name": "crumbs"},
                    {"@type": "Product", "name": "Desk Lamp", "offers": {"price": 35}},
                    {"@type": "Product", "sku": "NO-NAME"},
                ]
            }
        )
        + '<script type="application/ld+json">{not json</script>'
    )

    products = ProductExtractor().extract_products(html, PAGE, CrawlerConfig())

    assert [p.name for p in products] == ["Desk Lamp"]
    assert products[0].price == 35.0
    assert products[0].currency == "EUR"
    assert products[0].product_url == PAGE


def test_dedup_by_sku_then_canonical_url() -> None:
    products = [
        ExtractedProduct(name="A", external_id="SKU-1"),
        ExtractedProduct(name="A again", external_id="sku-1"),
        ExtractedProduct(name="B", product_url="https://shop.example/p/b?ref=1"),
        ExtractedProduct(name="B again", product_url="https://shop.example/p/b#reviews"),
        ExtractedProduct(name="No key"),
        ExtractedProduct(name="No key 2"),
    ]

    result = dedupe_products(products)

    assert [p.name for p in result] == ["A", "B", "No key", "No key 2"]
    assert dedup_key(products[2]) == "url:https://shop.example/p/b"


def test_selectors_extend_json_ld_results() -> None:
    config = CrawlerConfig(
        productContainerSelector=".card",
        productNameSelector=".name",
        productPriceSelector=".price",
        productImageSelector="img",
        productLinkSelector="a.link",
    )
    body = """
      <div class="card"><span class="name">Floor Lamp</span><span class="price">€ 89,90</span>
        <img data-src="/img/floor.jpg"><a class="link" href="/p/floor?utm=x">go</a></div>
      <div class="card"><span class="price">10</span></div>
    """
    html = _html(_json_ld({"@type": "Product", "name": "Desk Lamp", "sku": "D1"}), body)

    products = ProductExtractor().extract_products(html, PAGE, config)

    assert [p.name for p in products] == ["Desk Lamp", "Floor Lamp"]
    floor = products[1]
    assert floor.price == 89.9
    assert floor.product_url == "https://shop.example/p/floor"
    assert floor.image_urls == ["https://shop.example/img/floor.jpg"]


def test_invalid_container_selector_does_not_abort_extraction() -> None:
    config = CrawlerConfig(productContainerSelector="div[[", productNameSelector=".name")
    html = _html(_json_ld({"@type": "Product", "name": "Desk Lamp"}))

    products = ProductExtractor().extract_products(html, PAGE, config)

    assert [p.name for p in products] == ["Desk Lamp"]


def test_open_graph_only_when_nothing_else_found() -> None:
    head = """
      <meta property="og:type" content="product">
      <meta property="og:title" content="Wall Lamp">
      <meta property="og:image" content="/img/wall.jpg">
      <meta property="product:price:amount" content="49.00">
    """
    [product] = ProductExtractor().extract_products(_html(head), PAGE, CrawlerConfig())
    assert product.name == "Wall Lamp"
    assert product.price == 49.0
    assert product.image_urls == ["https://shop.example/img/wall.jpg"]

    with_json_ld = _html(head + _json_ld({"@type": "Product", "name": "Desk Lamp"}))
    products = ProductExtractor().extract_products(with_json_ld, PAGE, CrawlerConfig())
    assert [p.name for p in products] == ["Desk Lamp"]


def test_open_graph_requires_product_type() -> None:
    head = '<meta property="og:type" content="article"><meta property="og:title" content="News">'
    assert ProductExtractor().extract_products(_html(head), PAGE, CrawlerConfig()) == []


def test_extract_links_keeps_same_host_and_pagination() -> None:
    body = """
      <a href="/p/1?ref=home">1</a><a href="/P/1">dup</a><a href="#top">top</a>
      <a href="javascript:void(0)">js</a><a href="mailto:x@shop.example">mail</a>
      <a href="https://other.example/p/2">other</a>
      <a class="next" href="https://cdn.shop.example/page/2">next</a>
    """
    config = CrawlerConfig(paginationSelector="a.next")

    links = ProductExtractor().extract_links(_html(body=body), PAGE, config)

    assert links == ["https://shop.example/p/1", "https://cdn.shop.example/page/2"]
