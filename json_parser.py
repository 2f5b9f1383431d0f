#!/usr/bin/env python3
"""JSON Feed (https://jsonfeed.org) parser."""

import json
from typing import Any, Dict, List, Optional, Union

from errors import FeedParseError
from feed_types import ParsedEntry, ParsedFeed
from parser_utils import extract_text, first_text, parse_date

JSON_FEED_VERSION_PREFIX = "https://jsonfeed.org/version/"


def load_json_feed(content: Union[str, bytes]) -> Optional[Dict[str, Any]]:
    """Decode content as a JSON Feed object, or None if it is not one."""
    if isinstance(content, bytes):
        content = content.decode("utf-8-sig", errors="replace")
    try:
        data = json.loads(content.lstrip("\ufeff"))
    except (ValueError, TypeError):
        return None
    if not isinstance(data, dict):
        return None
    version = data.get("version")
    if not isinstance(version, str) or not version.startswith(JSON_FEED_VERSION_PREFIX):
        return None
    return data


def _as_list(value: Any) -> List[Any]:
    if value is None:
        return []
    if isinstance(value, list):
        return value
    return [value]


def _author(obj: Dict[str, Any]) -> Optional[str]:
    for author in _as_list(obj.get("authors")):
        if isinstance(author, dict):
            name = extract_text(author.get("name"))
            if name:
                return name
    author = obj.get("author")
    if isinstance(author, dict):
        return extract_text(author.get("name"))
    return None


def _hub_url(data: Dict[str, Any]) -> Optional[str]:
    hubs = [hub for hub in _as_list(data.get("hubs")) if isinstance(hub, dict) and hub.get("url")]
    for hub in hubs:
        if str(hub.get("type", "")).lower() == "websub":
            return extract_text(hub["url"])
    return extract_text(hubs[0]["url"]) if hubs else None


def _parse_item(item: Dict[str, Any]) -> ParsedEntry:
    content_text = extract_text(item.get("content_text"))
    guid = item.get("id")
    return ParsedEntry(
        guid=extract_text(str(guid)) if guid is not None else None,
        link=first_text(extract_text(item.get("url")), extract_text(item.get("external_url"))),
        title=extract_text(item.get("title")),
        author=_author(item),
        content=first_text(extract_text(item.get("content_html")), content_text),
        summary=first_text(extract_text(item.get("summary")), content_text),
        pub_date=(
            parse_date(extract_text(item.get("date_published")))
            or parse_date(extract_text(item.get("date_modified")))
        ),
    )


def parse_json_feed(content: Union[str, bytes]) -> ParsedFeed:
    """Parse a JSON Feed document.

    Raises:
        FeedParseError: invalid JSON, wrong version, or no title
    """
    data = load_json_feed(content)
    if data is None:
        raise FeedParseError("Invalid JSON Feed: not a jsonfeed.org document", feed_type="json")

    title = extract_text(data.get("title"))
    if not title:
        raise FeedParseError("Invalid JSON Feed: feed has no title", feed_type="json")

    items = [item for item in _as_list(data.get("items")) if isinstance(item, dict)]
    return ParsedFeed(
        title=title,
        description=extract_text(data.get("description")),
        site_url=extract_text(data.get("home_page_url")),
        icon_url=first_text(extract_text(data.get("favicon")), extract_text(data.get("icon"))),
        items=[_parse_item(item) for item in items],
        hub_url=_hub_url(data),
        self_url=extract_text(data.get("feed_url")),
    )
