#!/usr/bin/env python3
"""
Feed discovery from HTML pages.

Finds ``<link rel="alternate">`` elements advertising RSS, Atom or JSON
feeds and resolves them against the page URL.
"""

from dataclasses import dataclass
from typing import List, Optional, Union
from urllib.parse import urljoin, urlparse

from bs4 import BeautifulSoup

from config import get_logger

logger = get_logger("discovery")

FEED_MIME_TYPES = {
    "application/rss+xml": "rss",
    "application/atom+xml": "atom",
    "application/feed+json": "json",
    "application/json": "json",
    "application/xml": "unknown",
    "text/xml": "unknown",
}

COMMON_FEED_PATHS = [
    "/feed",
    "/feed.xml",
    "/rss",
    "/rss.xml",
    "/atom.xml",
    "/index.xml",
    "/feed.json",
    "/feed/",
    "/rss/",
    "/atom/",
    "/blog/feed",
    "/blog/rss",
    "/blog/feed.xml",
    "/blog/rss.xml",
    "/blog/atom.xml",
    "/.rss",
]


@dataclass(frozen=True)
class DiscoveredFeed:
    url: str
    feed_type: str
    title: Optional[str] = None


def _rel_values(rel) -> List[str]:
    # html.parser hands multi-valued rel back as a list
    if isinstance(rel, (list, tuple)):
        rel = " ".join(rel)
    return (rel or "").lower().split()


def _feed_type_for(mime_type: Optional[str]) -> Optional[str]:
    if not mime_type:
        return None
    return FEED_MIME_TYPES.get(mime_type.split(";", 1)[0].strip().lower())


def _resolve(href: Optional[str], base_url: str) -> Optional[str]:
    href = (href or "").strip()
    if not href:
        return None
    resolved = urljoin(base_url, href)
    if urlparse(resolved).scheme not in ("http", "https"):
        return None
    return resolved


def looks_like_html(content: Union[str, bytes]) -> bool:
    """True when a document starts like an HTML page rather than a feed."""
    if isinstance(content, bytes):
        content = content[:1024].decode("utf-8", errors="ignore")
    head = content.lstrip("\ufeff \t\r\n")[:1024].lower()
    return head.startswith("<!doctype html") or "<html" in head or "<head" in head


def discover_feeds(html: Union[str, bytes], base_url: str) -> List[DiscoveredFeed]:
    """Return the feeds a page advertises, in document order, without duplicates.

    Args:
        html: Page markup
        base_url: URL of the page, used to resolve relative hrefs

    Returns:
        List of DiscoveredFeed (possibly empty)
    """
    soup = BeautifulSoup(html, "html.parser")
    feeds: List[DiscoveredFeed] = []
    seen = set()
    for link in soup.find_all("link"):
        if "alternate" not in _rel_values(link.get("rel")):
            continue
        feed_type = _feed_type_for(link.get("type"))
        if feed_type is None:
            continue
        url = _resolve(link.get("href"), base_url)
        if url is None or url in seen:
            continue
        seen.add(url)
        feeds.append(DiscoveredFeed(url=url, feed_type=feed_type, title=link.get("title") or None))
    logger.debug(f"Discovered {len(feeds)} feeds on {base_url}")
    return feeds


def common_feed_urls(base_url: str) -> List[str]:
    """Conventional feed locations on the origin of ``base_url``."""
    parsed = urlparse(base_url)
    if parsed.scheme not in ("http", "https") or not parsed.netloc:
        return []
    origin = f"{parsed.scheme}://{parsed.netloc}"
    return [origin + feed_path for feed_path in COMMON_FEED_PATHS]
