"""Tests for URL, price and error summary helpers."""

import pytest

from utils.error_handling import summarize_page_errors
from utils.helpers import (
    canonical_url,
    dedupe_urls,
    filter_urls,
    parse_positive_int,
    parse_price,
    parse_robots_txt,
    resolve_url,
)


@pytest.mark.parametrize(
    "text,expected",
    [
        ("1.234,56", 1234.56),
        ("1,234.56", 1234.56),
        ("12,50", 12.5),
        ("1,234", 1234.0),
        ("€ 19.99", 19.99),
        ("$1,299.00", 1299.0),
        ("R 450", 450.0),
        ("29", 29.0),
        ("", None),
        ("   ", None),
        (None, None),
        ("free", None),
    ],
)
def test_parse_price(text, expected) -> None:
    assert parse_price(text) == expected


def test_canonical_url_strips_query_and_fragment() -> None:
    assert canonical_url("https://shop.example/p/1?utm=x#top") == "https://shop.example/p/1"
    assert canonical_url("/relative") is None
    assert canonical_url(None) is None


@pytest.mark.parametrize(
    "href",
    ["javascript:void(0)", "mailto:sales@shop.example", "tel:+3400000", "#reviews", "", None],
)
def test_resolve_url_skips_non_navigational_links(href) -> None:
    assert resolve_url(href, "https://shop.example/c/") is None


def test_resolve_url_normalises_relative_links() -> None:
    base = "https://shop.example/c/lamps/"
    assert resolve_url("../p/1?color=red#x", base) == "https://shop.example/c/p/1"
    assert resolve_url("img.jpg?w=200", base, strip_query=False) == "https://shop.example/c/lamps/img.jpg?w=200"
    assert resolve_url("ftp://shop.example/file", base) is None


def test_dedupe_urls_is_case_insensitive_and_keeps_first_spelling() -> None:
    urls = ["https://Shop.example/A", "https://shop.example/a", "https://shop.example/b"]
    assert dedupe_urls(urls) == ["https://Shop.example/A", "https://shop.example/b"]
    assert dedupe_urls(urls, limit=1) == ["https://Shop.example/A"]


def test_filter_urls_excludes_before_including() -> None:
    urls = [
        "https://shop.example/p/lamp-l1",
        "https://shop.example/p/LAMP-l2?sale",
        "https://shop.example/blog/lamps",
    ]
    result = filter_urls(urls, include_patterns=["/p/"], exclude_patterns=["sale", "(unclosed"])
    assert result == ["https://shop.example/p/lamp-l1"]
    assert filter_urls(urls, include_patterns=["LAMP-L\\d"]) == urls[:2]


def test_parse_robots_txt_returns_sitemap_directives() -> None:
    robots = "User-agent: *\nDisallow: /cart\nsitemap: https://shop.example/s1.xml\n  Sitemap: https://shop.example/s2.xml.gz\n"
    assert parse_robots_txt(robots) == [
        "https://shop.example/s1.xml",
        "https://shop.example/s2.xml.gz",
    ]
    assert parse_robots_txt(None) == []


def test_parse_positive_int() -> None:
    assert parse_positive_int("25") == 25
    assert parse_positive_int("0") is None
    assert parse_positive_int("many") is None
    assert parse_positive_int(None) is None


def test_summarize_page_errors() -> None:
    assert summarize_page_errors([], failed=0, total=0) == "No pages could be crawled."
    assert summarize_page_errors([], failed=0, total=4) is None

    errors = ["HTTP 500: Internal Server Error"] * 3 + ["x" * 150] + [f"e{n}" for n in range(6)]
    summary = summarize_page_errors(errors, failed=10, total=12)

    assert summary.startswith("Failed 10 of 12 pages. Errors: HTTP 500: Internal Server Error; ")
    assert ("x" * 97 + "...") in summary
    assert summary.count(";") == 4
    assert "e3" not in summary
