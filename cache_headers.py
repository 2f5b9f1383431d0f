#!/usr/bin/env python3
"""
HTTP cache header parsing.

Turns ``Cache-Control``, ``ETag`` and ``Last-Modified`` response headers into
structured values used by the conditional GET logic and the scheduling engine.
"""

import re
from dataclasses import dataclass, field
from typing import Mapping, Optional

_LEADING_INT = re.compile(r"^\d+")


@dataclass(frozen=True)
class CacheControl:
    """Parsed Cache-Control directives. Unknown directives are ignored."""
    max_age: Optional[int] = None
    s_maxage: Optional[int] = None
    no_store: bool = False
    no_cache: bool = False
    private: bool = False
    public: bool = False
    must_revalidate: bool = False
    immutable: bool = False
    stale_while_revalidate: Optional[int] = None
    stale_if_error: Optional[int] = None


@dataclass(frozen=True)
class CacheHeaders:
    etag: Optional[str] = None
    last_modified: Optional[str] = None
    cache_control: CacheControl = field(default_factory=CacheControl)
    raw_cache_control: Optional[str] = None


_FLAG_DIRECTIVES = {
    "no-store": "no_store",
    "no-cache": "no_cache",
    "private": "private",
    "public": "public",
    "must-revalidate": "must_revalidate",
    "immutable": "immutable",
}

_SECONDS_DIRECTIVES = {
    "max-age": "max_age",
    "s-maxage": "s_maxage",
    "stale-while-revalidate": "stale_while_revalidate",
    "stale-if-error": "stale_if_error",
}


def _parse_seconds(raw: str) -> Optional[int]:
    value = raw.strip()
    if len(value) >= 2 and value.startswith('"') and value.endswith('"'):
        value = value[1:-1]
    match = _LEADING_INT.match(value)
    return int(match.group(0)) if match else None


def parse_cache_control(header: Optional[str]) -> CacheControl:
    """Parse a Cache-Control header value.

    Directive names are case-insensitive; numeric values may be quoted.
    Negative or non-numeric seconds are dropped rather than rejected.

    Args:
        header: Raw header value, or None

    Returns:
        A CacheControl with every recognised directive populated.
    """
    if not header:
        return CacheControl()

    values = {}
    normalized = re.sub(r"\s+", " ", header.lower()).strip()
    for directive in normalized.split(","):
        directive = directive.strip()
        if not directive:
            continue
        name, sep, raw_value = directive.partition("=")
        name = name.strip()
        if sep:
            attr = _SECONDS_DIRECTIVES.get(name)
            if attr:
                seconds = _parse_seconds(raw_value)
                if seconds is not None:
                    values[attr] = seconds
        else:
            attr = _FLAG_DIRECTIVES.get(name)
            if attr:
                values[attr] = True
    return CacheControl(**values)


def parse_cache_headers(headers: Mapping[str, str]) -> CacheHeaders:
    """Extract cache-related headers from a (case-insensitive) header mapping."""
    return CacheHeaders(
        etag=headers.get("ETag") or None,
        last_modified=headers.get("Last-Modified") or None,
        cache_control=parse_cache_control(headers.get("Cache-Control")),
        raw_cache_control=headers.get("Cache-Control") or None,
    )


def effective_max_age(cache_control: Optional[CacheControl]) -> Optional[int]:
    """Return the freshness lifetime in seconds, or None when there is none.

    ``s-maxage`` wins over ``max-age``; ``no-store`` voids both.
    """
    if cache_control is None or cache_control.no_store:
        return None
    if cache_control.s_maxage is not None:
        return cache_control.s_maxage
    return cache_control.max_age
