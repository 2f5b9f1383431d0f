#!/usr/bin/env python3
"""
Content cleanup helpers for feed entries.

Includes a small registry of feed-specific cleanup rules keyed by feed URL,
relative URL resolution, HTML-to-text stripping for summaries, and optional
main-content extraction with readability for feeds that ship whole pages.
"""

import re
from dataclasses import dataclass
from typing import Callable, Iterable, List, Optional
from urllib.parse import urljoin, urlparse

from bs4 import BeautifulSoup
from readability import Document

from config import get_logger

logger = get_logger("content_cleaner")

SUMMARY_MAX_LENGTH = 300
WORD_BOUNDARY_WINDOW = 50
READABILITY_MIN_INPUT = 140
READABILITY_MIN_TEXT = 50

URL_ATTRIBUTES = {
    "a": ("href",),
    "img": ("src",),
    "source": ("src",),
    "video": ("src", "poster"),
    "audio": ("src",),
    "iframe": ("src",),
}


@dataclass(frozen=True)
class CleanupRule:
    """A feed-specific content transform applied when ``predicate(feed_url)`` holds."""
    name: str
    predicate: Callable[[str], bool]
    transform: Callable[[str], str]


def host_matches(*domains: str) -> Callable[[str], bool]:
    """Build a predicate matching feed URLs on any of ``domains`` or their subdomains."""
    def _predicate(feed_url: str) -> bool:
        host = (urlparse(feed_url).hostname or "").lower()
        return any(host == domain or host.endswith("." + domain) for domain in domains)
    return _predicate


_PUBLISHED_ON = re.compile(
    r"^\s*(?P<open><p[^>]*>)?\s*Published on [^<\n]*(?:\s*<br\s*/?>)*\s*(?P<close></p>)?\s*",
    re.I,
)


def strip_published_on_prefix(content: str) -> str:
    """Remove a leading "Published on <date>" line some publishers prepend."""
    match = _PUBLISHED_ON.match(content)
    if not match:
        return content
    rest = content[match.end():]
    if match.group("open") and not match.group("close") and rest:
        # The paragraph continues after the prefix; keep it well-formed
        rest = match.group("open") + rest
    return rest


CLEANUP_RULES: List[CleanupRule] = [
    CleanupRule(
        name="published-on-prefix",
        predicate=host_matches("lesswrong.com", "greaterwrong.com", "alignmentforum.org"),
        transform=strip_published_on_prefix,
    ),
]


def register_cleanup_rule(rule: CleanupRule) -> None:
    CLEANUP_RULES.append(rule)


def apply_cleanup_rules(content: str, feed_url: Optional[str], rules: Optional[Iterable[CleanupRule]] = None) -> str:
    """Run every rule whose predicate matches ``feed_url`` over ``content``."""
    if not content or not feed_url:
        return content
    for rule in (CLEANUP_RULES if rules is None else rules):
        try:
            if rule.predicate(feed_url):
                content = rule.transform(content)
        except (ValueError, TypeError, re.error) as e:
            logger.warning(f"Cleanup rule {rule.name} failed for {feed_url}: {e}")
    return content


def rewrite_relative_urls(html_content: str, base_url: Optional[str]) -> str:
    """Resolve relative href/src values against ``base_url``.

    The markup is only re-serialized when something actually changed, so
    content without relative links comes back byte-identical.
    """
    if not html_content or not base_url or "<" not in html_content:
        return html_content

    soup = BeautifulSoup(html_content, "html.parser")
    changed = False

    def _rewrite_url(value: str) -> Optional[str]:
        value = value.strip()
        if not value or value.startswith(("#", "mailto:", "data:", "javascript:", "tel:")):
            return None
        if urlparse(value).scheme:
            return None
        try:
            resolved = urljoin(base_url, value)
        except ValueError:
            return None
        if resolved.startswith(("http://", "https://")) and resolved != value:
            return resolved
        return None

    for tag in soup.find_all(list(URL_ATTRIBUTES)):
        for attr_name in URL_ATTRIBUTES[tag.name]:
            if not tag.has_attr(attr_name):
                continue
            rewritten = _rewrite_url(str(tag[attr_name]))
            if rewritten:
                tag[attr_name] = rewritten
                changed = True

    return str(soup) if changed else html_content


def strip_html(html_content: Optional[str]) -> str:
    """Convert HTML to collapsed plain text."""
    if not html_content:
        return ""
    if "<" not in html_content and "&" not in html_content:
        return re.sub(r"\s+", " ", html_content).strip()
    text = BeautifulSoup(html_content, "html.parser").get_text(" ")
    return re.sub(r"\s+", " ", text).strip()


def truncate_text(text: str, max_length: int = SUMMARY_MAX_LENGTH, window: int = WORD_BOUNDARY_WINDOW) -> str:
    """Truncate to ``max_length`` characters plus an ellipsis.

    Breaks at the last space when it falls within ``window`` characters of
    the limit, otherwise cuts hard.
    """
    trimmed = (text or "").strip()
    if len(trimmed) <= max_length:
        return trimmed
    truncated = trimmed[:max_length]
    last_space = truncated.rfind(" ")
    if last_space > max_length - window:
        truncated = truncated[:last_space]
    return truncated.rstrip() + "..."


def extract_main_content(html_content: str, url: Optional[str] = None) -> Optional[str]:
    """Extract the main article body with readability.

    Returns None for short inputs, when readability fails, or when the
    extracted text is too short to be the real article.
    """
    if not html_content or len(html_content) < READABILITY_MIN_INPUT:
        return None
    try:
        article = Document(html_content, url=url)
        extracted = article.summary(html_partial=True)
    except Exception as e:
        logger.warning(f"Readability parsing error for {url}: {e}")
        return None
    if not extracted or len(strip_html(extracted)) < READABILITY_MIN_TEXT:
        logger.debug(f"Readability extracted too little content for {url}")
        return None
    return extracted
