#!/usr/bin/env python3
"""
Atom 1.0 parser.

Text constructs may be plain text, escaped HTML, CDATA or inline XHTML. XHTML
bodies that are only text are flattened; anything with markup is serialized
so structure is kept rather than dropped.
"""

from typing import Optional, Union

from bs4 import Tag

from errors import FeedParseError
from feed_types import ParsedEntry, ParsedFeed
from parser_utils import (
    attr, decode_numeric_entities, extract_text, find_child, find_children,
    first_text, iter_tags, local_name, parse_date, parse_xml,
)
from rss_parser import parse_syndication_hints

ATOM_NS = "http://www.w3.org/2005/Atom"


def _atom_child(parent: Optional[Tag], name: str) -> Optional[Tag]:
    return find_child(parent, name, namespace=ATOM_NS, prefix="atom", unprefixed=True)


def _atom_children(parent: Optional[Tag], name: str):
    return find_children(parent, name, namespace=ATOM_NS, prefix="atom", unprefixed=True)


def _xhtml_body(element: Tag) -> Optional[str]:
    div = next((child for child in iter_tags(element.children) if local_name(child).lower() == "div"), None)
    container = div if div is not None else element
    if not iter_tags(container.descendants):
        return extract_text(container)
    serialized = "".join(str(node) for node in container.contents)
    serialized = decode_numeric_entities(serialized).strip()
    return serialized or None


def text_construct(element: Optional[Tag]) -> Optional[str]:
    """Extract an Atom text construct as a string (None when absent or empty)."""
    if element is None:
        return None
    if (attr(element, "type") or "").lower() == "xhtml":
        return _xhtml_body(element)
    return extract_text(element)


def _entry_content(entry: Tag) -> Optional[str]:
    content = _atom_child(entry, "content")
    if content is None:
        return None
    body = text_construct(content)
    # Out-of-line content: the body lives at src and is not fetched here
    if attr(content, "src") and not body:
        return None
    return body


def _alternate_link(parent: Tag) -> Optional[str]:
    links = _atom_children(parent, "link")
    for link in links:
        if (attr(link, "rel") or "").lower() == "alternate" and attr(link, "href"):
            return attr(link, "href")
    for link in links:
        if attr(link, "rel") is None and attr(link, "href"):
            return attr(link, "href")
    return None


def _link_with_rel(parent: Tag, rel: str) -> Optional[str]:
    for link in _atom_children(parent, "link"):
        if (attr(link, "rel") or "").lower() == rel and attr(link, "href"):
            return attr(link, "href")
    return None


def _author_name(parent: Tag) -> Optional[str]:
    for author in _atom_children(parent, "author"):
        name = extract_text(_atom_child(author, "name"))
        if name:
            return name
    return None


def _parse_entry(entry: Tag) -> ParsedEntry:
    summary = text_construct(_atom_child(entry, "summary"))
    content = _entry_content(entry)
    return ParsedEntry(
        guid=extract_text(_atom_child(entry, "id")),
        link=_alternate_link(entry),
        title=text_construct(_atom_child(entry, "title")),
        author=_author_name(entry),
        content=first_text(content, summary),
        summary=summary,
        pub_date=(
            parse_date(extract_text(_atom_child(entry, "published")))
            or parse_date(extract_text(_atom_child(entry, "updated")))
        ),
    )


def parse_atom(content: Union[str, bytes]) -> ParsedFeed:
    """Parse an Atom 1.0 document.

    Raises:
        FeedParseError: when the root is not ``feed`` or the feed has no title
    """
    soup = parse_xml(content)
    root = next(iter(iter_tags(soup.children)), None)
    if root is None or local_name(root).lower() != "feed":
        raise FeedParseError("Invalid Atom feed: missing feed root element", feed_type="atom")

    title = text_construct(_atom_child(root, "title"))
    if not title:
        raise FeedParseError("Invalid Atom feed: feed has no title", feed_type="atom")

    return ParsedFeed(
        title=title,
        description=text_construct(_atom_child(root, "subtitle")),
        site_url=_alternate_link(root),
        icon_url=first_text(
            extract_text(_atom_child(root, "icon")),
            extract_text(_atom_child(root, "logo")),
        ),
        items=[_parse_entry(entry) for entry in _atom_children(root, "entry")],
        hub_url=_link_with_rel(root, "hub"),
        self_url=_link_with_rel(root, "self"),
        syndication=parse_syndication_hints(root),
    )
