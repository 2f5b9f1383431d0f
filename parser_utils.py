#!/usr/bin/env python3
"""
Shared helpers for the feed parsers.

XML is parsed with BeautifulSoup's lxml-backed "xml" builder, which recovers
from most real-world breakage. Every text value goes through extract_text so
CDATA sections, entity-escaped markup and plain strings all come out the same
way, and the parsers only deal with feed semantics.
"""

import calendar
import re
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Any, Iterable, List, Optional, Union

import feedparser
from bs4 import BeautifulSoup, Tag, NavigableString
from bs4.element import Comment, Declaration, Doctype, ProcessingInstruction

from config import get_logger

logger = get_logger("parser")

_NUMERIC_ENTITY = re.compile(r"&#(?:[xX]([0-9a-fA-F]+)|([0-9]+));")
_IGNORED_STRINGS = (Comment, Declaration, Doctype, ProcessingInstruction)

# Abbreviations that parsedate/fromisoformat do not reliably understand
TIMEZONE_OFFSETS = {
    "PST": "-0800",
    "PDT": "-0700",
    "MST": "-0700",
    "MDT": "-0600",
    "CST": "-0600",
    "CDT": "-0500",
    "EST": "-0500",
    "EDT": "-0400",
    "AKST": "-0900",
    "AKDT": "-0800",
    "HST": "-1000",
    "AST": "-0400",
    "ADT": "-0300",
    "NST": "-0330",
    "GMT": "+0000",
    "UTC": "+0000",
    "UT": "+0000",
    "WET": "+0000",
    "WEST": "+0100",
    "BST": "+0100",
    "CET": "+0100",
    "CEST": "+0200",
    "EET": "+0200",
    "EEST": "+0300",
    "MSK": "+0300",
    "IST": "+0530",
    "SGT": "+0800",
    "HKT": "+0800",
    "AWST": "+0800",
    "JST": "+0900",
    "KST": "+0900",
    "ACST": "+0930",
    "AEST": "+1000",
    "AEDT": "+1100",
    "NZST": "+1200",
    "NZDT": "+1300",
}
_TZ_ABBREVIATION = re.compile(
    r"\b(" + "|".join(sorted(TIMEZONE_OFFSETS, key=len, reverse=True)) + r")\b"
)
_TRAILING_ZONE = re.compile(r"\s([A-Za-z]{2,5})$")


def decode_numeric_entities(text: str) -> str:
    """Decode numeric character references (``&#039;``, ``&#x27;``) left in text."""
    def _replace(match):
        hex_value, dec_value = match.groups()
        try:
            code_point = int(hex_value, 16) if hex_value else int(dec_value)
            return chr(code_point)
        except (ValueError, OverflowError):
            return match.group(0)

    return _NUMERIC_ENTITY.sub(_replace, text)


def _tag_text(tag: Tag) -> str:
    return "".join(
        str(node) for node in tag.descendants
        if isinstance(node, NavigableString) and not isinstance(node, _IGNORED_STRINGS)
    )


def extract_text(value: Any) -> Optional[str]:
    """Normalize any text-bearing value to a stripped string or None.

    Accepts bs4 tags (plain text or CDATA bodies), bare strings, and the
    ``{"#text": ...}``/``{"value": ...}`` shapes that appear in JSON sources.
    Empty results become None.
    """
    if value is None:
        return None
    if isinstance(value, Tag):
        text = _tag_text(value)
    elif isinstance(value, str):
        text = str(value)
    elif isinstance(value, dict):
        inner = value.get("#text", value.get("value"))
        return extract_text(inner)
    elif isinstance(value, (list, tuple)):
        return extract_text(value[0]) if value else None
    elif isinstance(value, (int, float)):
        text = str(value)
    else:
        return None
    text = decode_numeric_entities(text).strip()
    return text or None


def parse_xml(content: Union[str, bytes]) -> BeautifulSoup:
    """Parse XML leniently (lxml recover mode via BeautifulSoup)."""
    return BeautifulSoup(content, "xml")


def local_name(tag: Tag) -> str:
    return tag.name.rsplit(":", 1)[-1]


def tag_prefix(tag: Tag) -> Optional[str]:
    """Namespace prefix of a tag, including undeclared ``prefix:name`` forms."""
    if tag.prefix:
        return tag.prefix
    if ":" in tag.name:
        return tag.name.split(":", 1)[0]
    return None


def matches(tag: Any, name: str, namespace: Optional[str] = None, prefix: Optional[str] = None,
            unprefixed: Optional[bool] = None) -> bool:
    """Check whether ``tag`` is the element ``name`` in the requested namespace.

    With neither ``namespace`` nor ``prefix`` the element must carry no prefix
    (a default namespace is fine). Otherwise it matches by namespace URI or by
    prefix; ``unprefixed=True`` additionally accepts unprefixed elements.

    lxml drops prefixes it cannot resolve, so an element with neither prefix
    nor namespace also satisfies a namespaced lookup by local name.
    """
    if not isinstance(tag, Tag) or local_name(tag).lower() != name.lower():
        return False
    if unprefixed is None:
        unprefixed = namespace is None and prefix is None
    current_prefix = tag_prefix(tag)
    if unprefixed and not current_prefix:
        return True
    if namespace and tag.namespace == namespace:
        return True
    if prefix and current_prefix == prefix:
        return True
    if (namespace or prefix) and not current_prefix and tag.namespace is None:
        return True
    return False


def find_children(parent: Optional[Tag], name: str, **kwargs) -> List[Tag]:
    if parent is None:
        return []
    return [child for child in parent.children if matches(child, name, **kwargs)]


def find_child(parent: Optional[Tag], name: str, **kwargs) -> Optional[Tag]:
    if parent is None:
        return None
    for child in parent.children:
        if matches(child, name, **kwargs):
            return child
    return None


def child_text(parent: Optional[Tag], name: str, **kwargs) -> Optional[str]:
    return extract_text(find_child(parent, name, **kwargs))


def first_text(*values: Optional[str]) -> Optional[str]:
    for value in values:
        if value:
            return value
    return None


def attr(tag: Optional[Tag], name: str) -> Optional[str]:
    """Read an attribute by local name, ignoring any namespace prefix."""
    if tag is None:
        return None
    for key, value in tag.attrs.items():
        if str(key).rsplit(":", 1)[-1].lower() == name.lower():
            text = extract_text(value if isinstance(value, str) else " ".join(value))
            if text:
                return text
    return None


def iter_tags(nodes: Iterable[Any]) -> List[Tag]:
    return [node for node in nodes if isinstance(node, Tag)]


def _as_utc(dt: datetime) -> datetime:
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def _parse_rfc2822(value: str) -> Optional[datetime]:
    try:
        dt = parsedate_to_datetime(value)
    except (TypeError, ValueError, IndexError, OverflowError):
        return None
    return _as_utc(dt) if dt else None


def _parse_iso8601(value: str) -> Optional[datetime]:
    candidate = value
    if candidate.endswith(("Z", "z")):
        candidate = candidate[:-1] + "+00:00"
    try:
        return _as_utc(datetime.fromisoformat(candidate))
    except ValueError:
        return None


def _parse_with_feedparser(value: str) -> Optional[datetime]:
    try:
        parsed = feedparser._parse_date(value)
    except (ValueError, TypeError, AttributeError, OverflowError):
        return None
    if not parsed:
        return None
    # feedparser normalizes to a UTC struct_time
    return datetime.fromtimestamp(calendar.timegm(parsed), tz=timezone.utc)


def parse_date(value: Optional[str]) -> Optional[datetime]:
    """Parse a feed date leniently into an aware UTC datetime.

    Known timezone abbreviations are first replaced by numeric offsets. Then
    RFC 2822 is tried (a date without a zone is taken as GMT), then ISO 8601,
    and finally feedparser's date handlers. Unparseable values yield None
    rather than raising.
    """
    if not value:
        return None
    value = value.strip()
    if not value:
        return None

    substituted = _TZ_ABBREVIATION.sub(lambda m: TIMEZONE_OFFSETS[m.group(1)], value)
    unknown_zone = _TRAILING_ZONE.search(substituted)
    if unknown_zone:
        logger.debug(f"Unrecognised timezone {unknown_zone.group(1)!r} in {value!r}; reading it as UTC")

    parsed = _parse_rfc2822(substituted) or _parse_iso8601(substituted)
    if parsed:
        return parsed

    parsed = _parse_with_feedparser(value)
    if parsed is None:
        logger.debug(f"Unparseable date: {value!r}")
    return parsed
