#!/usr/bin/env python3
"""
Feed format detection and parser dispatch.

Detection looks only at the document itself; Content-Type headers are
ignored because servers routinely mislabel feeds.
"""

import re
from typing import Union

from atom_parser import parse_atom
from config import get_logger
from errors import UnknownFeedFormatError
from feed_types import ParsedFeed
from json_parser import load_json_feed, parse_json_feed
from rss_parser import parse_rss
from telemetry import trace_span

logger = get_logger("feed_parser")

FEED_TYPE_RSS = "rss"
FEED_TYPE_ATOM = "atom"
FEED_TYPE_JSON = "json"
FEED_TYPE_UNKNOWN = "unknown"

# First element after any prolog, comments, doctype or processing instructions
_PROLOG = re.compile(r"\s*(?:<\?.*?\?>|<!--.*?-->|<!DOCTYPE[^>\[]*(?:\[.*?\])?\s*>|\s+)*", re.S | re.I)
_ROOT_ELEMENT = re.compile(r"<(?:([A-Za-z_][\w.\-]*):)?([A-Za-z_][\w.\-]*)")


def _to_text(content: Union[str, bytes]) -> str:
    if isinstance(content, str):
        return content.lstrip("\ufeff")
    if content.startswith((b"\xff\xfe", b"\xfe\xff")):
        return content.decode("utf-16", errors="replace")
    return content.decode("utf-8", errors="replace").lstrip("\ufeff")


def detect_feed_type(content: Union[str, bytes]) -> str:
    """Sniff the feed format from the document body.

    Returns:
        "rss" for ``<rss>`` and ``<rdf:RDF>`` roots, "atom" for ``<feed>``,
        "json" for JSON Feed objects, otherwise "unknown".
    """
    if not content:
        return FEED_TYPE_UNKNOWN
    text = _to_text(content)
    stripped = text.lstrip()
    if stripped.startswith("{"):
        return FEED_TYPE_JSON if load_json_feed(stripped) is not None else FEED_TYPE_UNKNOWN

    prolog = _PROLOG.match(stripped)
    match = _ROOT_ELEMENT.match(stripped, prolog.end() if prolog else 0)
    if not match:
        return FEED_TYPE_UNKNOWN
    root = match.group(2).lower()
    if root in ("rss", "rdf"):
        return FEED_TYPE_RSS
    if root == "feed":
        return FEED_TYPE_ATOM
    return FEED_TYPE_UNKNOWN


@trace_span(
    "parse_feed",
    tracer_name="parser",
    attr_from_args=lambda content: {"feed.bytes": len(content) if content else 0},
)
def parse_feed(content: Union[str, bytes]) -> ParsedFeed:
    """Detect the format of ``content`` and parse it into a ParsedFeed.

    Raises:
        UnknownFeedFormatError: when detection fails
        FeedParseError: when the matching parser rejects the document
    """
    feed_type = detect_feed_type(content)
    if feed_type == FEED_TYPE_RSS:
        parsed = parse_rss(content)
    elif feed_type == FEED_TYPE_ATOM:
        parsed = parse_atom(content)
    elif feed_type == FEED_TYPE_JSON:
        parsed = parse_json_feed(content)
    else:
        logger.warning("Unknown feed format; document does not look like RSS, Atom or JSON Feed")
        raise UnknownFeedFormatError()
    logger.debug(f"Parsed {feed_type} feed '{parsed.title}' with {len(parsed.items)} items")
    return parsed
