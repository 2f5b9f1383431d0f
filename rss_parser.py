#!/usr/bin/env python3
"""
RSS 2.0 and RSS 1.0 (RDF) parser.

Produces a ParsedFeed from ``rss > channel > item`` documents and from
``rdf:RDF`` documents where items are siblings of the channel. Extension
elements are matched by namespace URI or by their conventional prefix, so
feeds that forget to declare a namespace still parse.
"""

from typing import Optional, Union

from bs4 import Tag

from errors import FeedParseError
from feed_types import ParsedEntry, ParsedFeed, SyndicationHints, SYNDICATION_PERIODS
from parser_utils import (
    attr, child_text, extract_text, find_child, find_children, first_text,
    iter_tags, local_name, parse_date, parse_xml,
)

CONTENT_NS = "http://purl.org/rss/1.0/modules/content/"
DC_NS = "http://purl.org/dc/elements/1.1/"
SY_NS = "http://purl.org/rss/1.0/modules/syndication/"
ATOM_NS = "http://www.w3.org/2005/Atom"


def parse_syndication_hints(parent: Optional[Tag]) -> Optional[SyndicationHints]:
    """Read ``sy:updatePeriod``/``sy:updateFrequency`` from a channel or feed element.

    Unknown periods drop the hint entirely; a missing or non-positive
    frequency defaults to 1.
    """
    period = child_text(parent, "updatePeriod", namespace=SY_NS, prefix="sy")
    if not period:
        return None
    period = period.strip().lower()
    if period not in SYNDICATION_PERIODS:
        return None
    frequency = 1
    raw_frequency = child_text(parent, "updateFrequency", namespace=SY_NS, prefix="sy")
    if raw_frequency:
        try:
            value = int(raw_frequency.strip())
            if value > 0:
                frequency = value
        except ValueError:
            pass
    return SyndicationHints(update_period=period, update_frequency=frequency)


def parse_hub_links(parent: Optional[Tag]):
    """Return (hub_url, self_url) from ``atom:link`` elements on a channel."""
    hub_url = None
    self_url = None
    for link in find_children(parent, "link", namespace=ATOM_NS, prefix="atom"):
        rel = (attr(link, "rel") or "").lower()
        href = attr(link, "href")
        if not href:
            continue
        if rel == "hub" and hub_url is None:
            hub_url = href
        elif rel == "self" and self_url is None:
            self_url = href
    return hub_url, self_url


def _plain_link(parent: Optional[Tag]) -> Optional[str]:
    """Text of the first RSS ``link``, skipping Atom links that share the local name."""
    for link in find_children(parent, "link"):
        if link.namespace == ATOM_NS:
            continue
        text = extract_text(link)
        if text:
            return text
    return None


def _parse_ttl(channel: Tag) -> Optional[int]:
    raw = child_text(channel, "ttl")
    if not raw:
        return None
    try:
        value = int(raw.strip())
    except ValueError:
        return None
    return value if value > 0 else None


def _parse_item(item: Tag) -> ParsedEntry:
    description = child_text(item, "description")
    encoded = child_text(item, "encoded", namespace=CONTENT_NS, prefix="content")
    guid = first_text(child_text(item, "guid"), attr(item, "about"))
    link = _plain_link(item)
    if not link and guid and guid.startswith(("http://", "https://")):
        guid_tag = find_child(item, "guid")
        if (attr(guid_tag, "isPermaLink") or "true").lower() != "false":
            link = guid

    return ParsedEntry(
        guid=guid,
        link=link,
        title=child_text(item, "title"),
        author=first_text(
            child_text(item, "creator", namespace=DC_NS, prefix="dc"),
            child_text(item, "author"),
        ),
        content=encoded or description,
        summary=description,
        pub_date=(
            parse_date(child_text(item, "pubDate"))
            or parse_date(child_text(item, "date", namespace=DC_NS, prefix="dc"))
        ),
    )


def parse_rss(content: Union[str, bytes]) -> ParsedFeed:
    """Parse an RSS 2.0 or RSS 1.0/RDF document.

    Args:
        content: Raw document

    Returns:
        ParsedFeed with one ParsedEntry per item

    Raises:
        FeedParseError: missing root, missing channel, or missing channel title
    """
    soup = parse_xml(content)
    root = next(iter(iter_tags(soup.children)), None)
    if root is None or local_name(root).lower() not in ("rss", "rdf"):
        raise FeedParseError("Invalid RSS feed: missing rss or rdf:RDF root element", feed_type="rss")

    channel = find_child(root, "channel")
    if channel is None:
        raise FeedParseError("Invalid RSS feed: missing channel element", feed_type="rss")

    title = child_text(channel, "title")
    if not title:
        raise FeedParseError("Invalid RSS feed: channel has no title", feed_type="rss")

    # RSS 2.0 nests items in the channel; RDF puts them beside it
    items = find_children(channel, "item") or find_children(root, "item")

    image = find_child(channel, "image")
    hub_url, self_url = parse_hub_links(channel)

    return ParsedFeed(
        title=title,
        description=child_text(channel, "description"),
        site_url=_plain_link(channel),
        icon_url=child_text(image, "url") or attr(image, "resource"),
        items=[_parse_item(item) for item in items],
        hub_url=hub_url,
        self_url=self_url,
        ttl_minutes=_parse_ttl(channel),
        syndication=parse_syndication_hints(channel),
    )


