import hashlib
import logging
import re
from typing import Dict, Iterable, List, Optional
from urllib.parse import urljoin, urlsplit, urlunsplit

# Configure logging
logger = logging.getLogger(__name__)

PRICE_CLEANUP_RE = re.compile(r"[€$£¥₹₽R\s]")
ROBOTS_SITEMAP_RE = re.compile(r"^\s*Sitemap:\s*(.+)$", re.IGNORECASE | re.MULTILINE)
SKIPPED_HREF_PREFIXES = ("javascript:", "mailto:", "tel:", "#")


def parse_price(price_text: Optional[str]) -> Optional[float]:
    """Parse a displayed price into a number.

    Currency symbols and whitespace are stripped. When both ``,`` and ``.`` are
    present the right-most one is the decimal separator. A lone ``,`` is a
    decimal separator only when exactly two digits follow it.

    >>> parse_price("1.234,56")
    1234.56
    >>> parse_price("1,234")
    1234.0
    """
    if price_text is None:
        return None
    if not isinstance(price_text, str):
        price_text = str(price_text)
    if not price_text.strip():
        return None

    cleaned = PRICE_CLEANUP_RE.sub("", price_text).strip()

    if "," in cleaned and "." in cleaned:
        if cleaned.rfind(",") > cleaned.rfind("."):
            cleaned = cleaned.replace(".", "").replace(",", ".")
        else:
            cleaned = cleaned.replace(",", "")
    elif "," in cleaned:
        parts = cleaned.split(",")
        if len(parts) == 2 and len(parts[1]) == 2:
            cleaned = cleaned.replace(",", ".")
        else:
            cleaned = cleaned.replace(",", "")

    try:
        return float(cleaned)
    except ValueError:
        logger.debug("Unparseable price text: %r", price_text)
        return None


def canonical_url(url: Optional[str]) -> Optional[str]:
    """Strip query string and fragment from an absolute URL."""
    if not url:
        return None
    parts = urlsplit(url.strip())
    if not parts.scheme or not parts.netloc:
        return None
    return urlunsplit((parts.scheme, parts.netloc, parts.path, "", ""))


def resolve_url(
    href: Optional[str], base_url: str, *, strip_query: bool = True
) -> Optional[str]:
    """Resolve ``href`` against ``base_url``.

    Returns None for empty, ``javascript:``, ``mailto:`` and in-page anchors.
    Query and fragment are dropped unless ``strip_query`` is False, in which
    case only the fragment goes.
    """
    if not href or not href.strip():
        return None
    href = href.strip()
    if href.lower().startswith(SKIPPED_HREF_PREFIXES):
        return None

    absolute = urljoin(base_url, href)
    parts = urlsplit(absolute)
    if parts.scheme not in ("http", "https") or not parts.netloc:
        return None
    query = "" if strip_query else parts.query
    return urlunsplit((parts.scheme, parts.netloc, parts.path, query, ""))


def is_same_host(url: str, base_url: str) -> bool:
    return urlsplit(url).netloc.lower() == urlsplit(base_url).netloc.lower()


def site_root(url: str) -> str:
    parts = urlsplit(url)
    return f"{parts.scheme}://{parts.netloc}"


def parse_robots_txt(robots_content: Optional[str]) -> List[str]:
    """Return the ``Sitemap:`` directive targets of a robots.txt body."""
    if not isinstance(robots_content, str):
        logger.warning("Invalid robots_content input")
        return []
    return [
        match.strip()
        for match in ROBOTS_SITEMAP_RE.findall(robots_content)
        if match.strip()
    ]


def dedupe_urls(urls: Iterable[str], limit: Optional[int] = None) -> List[str]:
    """Case-insensitive dedup keeping the first spelling, then cap at ``limit``."""
    seen = set()
    result: List[str] = []
    for url in urls:
        key = url.lower()
        if key in seen:
            continue
        seen.add(key)
        result.append(url)
        if limit is not None and len(result) >= limit:
            break
    return result


def filter_urls(
    urls: Iterable[str],
    include_patterns: Optional[List[str]] = None,
    exclude_patterns: Optional[List[str]] = None,
) -> List[str]:
    """Apply exclude regexes, then include regexes, case-insensitively.

    Invalid patterns are logged and ignored.
    """
    excludes = _compile_patterns(exclude_patterns or [])
    includes = _compile_patterns(include_patterns or [])

    result = [u for u in urls if not any(p.search(u) for p in excludes)]
    if includes:
        result = [u for u in result if any(p.search(u) for p in includes)]
    return result


def _compile_patterns(patterns: List[str]) -> List[re.Pattern]:
    compiled = []
    for pattern in patterns:
        try:
            compiled.append(re.compile(pattern, re.IGNORECASE))
        except re.error as e:
            logger.warning("Ignoring invalid URL pattern %r: %s", pattern, e)
    return compiled


def compute_hash(content: str) -> str:
    """SHA-256 of the page body as lowercase hex."""
    return hashlib.sha256(content.encode("utf-8")).hexdigest()


def sanitize_text(text: Optional[str]) -> Optional[str]:
    """Collapse whitespace; returns None for empty text."""
    if not isinstance(text, str):
        return None
    sanitized = re.sub(r"[\x00-\x1f\x7f-\x9f]", " ", text)
    sanitized = re.sub(r"\s+", " ", sanitized).strip()
    return sanitized or None


def parse_positive_int(value: Optional[str]) -> Optional[int]:
    if value is None:
        return None
    try:
        parsed = int(str(value).strip())
    except (TypeError, ValueError):
        logger.warning("Expected a positive integer, got %r", value)
        return None
    return parsed if parsed > 0 else None


def truncate(text: Optional[str], limit: int) -> Optional[str]:
    if text is None or len(text) <= limit:
        return text
    return text[: limit - 3] + "..."


def headers_for(user_agent: str) -> Dict[str, str]:
    """Request headers sent with every crawler fetch."""
    return {
        "User-Agent": user_agent,
        "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8",
        "Accept-Language": "en-US,en;q=0.9",
    }
